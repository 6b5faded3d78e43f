"""Spawning phase sessions of the ``claude`` CLI.

A phase session is ``claude -p <prompt>`` run in the run's workspace.  Three
launch paths exist:

- **direct**: inherit the terminal and block until the process exits
- **ntm**: when ``ntm`` is on PATH, run the agent inside a named tmux
  session (``rpi-<runID>-p<N>``) so it can be attached to, then poll until
  the session disappears
- **streaming**: ``--output-format stream-json``; stdout is parsed into
  :class:`PhaseProgress` and mirrored to the live-status file

External commands go through :class:`SpawnCapabilities` so tests can
substitute every process boundary.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import subprocess
import sys
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from rpi_orchestrator.live_status import write_live_status
from rpi_orchestrator.runner_common import session_env
from rpi_orchestrator.schemas import PhaseProgress
from rpi_orchestrator.stream_parser import parse_stream_events

logger = logging.getLogger(__name__)

DEFAULT_POLL_SECONDS = 5.0
SESSION_PREFIX = "rpi"


class SessionError(RuntimeError):
    """Raised when a phase session cannot be started or exits non-zero."""


def session_name(run_id: str, phase_num: int) -> str:
    return f"{SESSION_PREFIX}-{run_id}-p{phase_num}"


def prompt_metadata(prompt: str) -> dict[str, int | str]:
    """Length and short digest of a prompt, for logging without its text."""
    text = str(prompt or "")
    return {
        "length_chars": len(text),
        "sha256": hashlib.sha256(text.encode("utf-8")).hexdigest()[:16],
    }


# ---------------------------------------------------------------------------
# Process boundary
# ---------------------------------------------------------------------------


def _run_captured(
    cmd: Sequence[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        list(cmd),
        cwd=cwd,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )


def _run_inherited(
    cmd: Sequence[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> int:
    return subprocess.run(
        list(cmd),
        cwd=cwd,
        env=env,
        stdin=sys.stdin,
        stdout=sys.stdout,
        stderr=sys.stderr,
        check=False,
    ).returncode


def _open_stream(
    cmd: Sequence[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> subprocess.Popen[str]:
    return subprocess.Popen(
        list(cmd),
        cwd=cwd,
        env=env,
        stdout=subprocess.PIPE,
        stderr=None,
        text=True,
        encoding="utf-8",
        errors="replace",
        bufsize=1,
    )


@dataclass(slots=True)
class SpawnCapabilities:
    """The process operations a launcher is allowed to perform."""

    look_path: Callable[[str], str | None] = shutil.which
    run_captured: Callable[..., subprocess.CompletedProcess[str]] = _run_captured
    run_inherited: Callable[..., int] = _run_inherited
    open_stream: Callable[..., subprocess.Popen[str]] = _open_stream
    sleep: Callable[[float], None] = time.sleep
    env_factory: Callable[[], dict[str, str]] = field(default=session_env)


# ---------------------------------------------------------------------------
# Launcher
# ---------------------------------------------------------------------------


class ClaudeSessionLauncher:
    """Runs phase prompts as fresh ``claude`` sessions."""

    def __init__(
        self,
        binary: str = "claude",
        *,
        capabilities: SpawnCapabilities | None = None,
        poll_seconds: float = DEFAULT_POLL_SECONDS,
    ) -> None:
        self.binary = binary
        self.caps = capabilities or SpawnCapabilities()
        self.poll_seconds = poll_seconds

    def available(self) -> bool:
        return bool(self.caps.look_path(self.binary))

    def spawn(self, prompt: str, cwd: str | Path, run_id: str, phase_num: int) -> None:
        """Run *prompt* to completion, via ntm when it is installed."""
        meta = prompt_metadata(prompt)
        logger.info(
            "Spawning phase %d session (prompt %s chars, sha256 %s)",
            phase_num, meta["length_chars"], meta["sha256"],
        )
        ntm = self.caps.look_path("ntm")
        if ntm:
            self._spawn_ntm(ntm, prompt, Path(cwd), run_id, phase_num)
            return
        self.spawn_direct(prompt, cwd)

    def spawn_direct(self, prompt: str, cwd: str | Path) -> None:
        cmd = [self.binary, "-p", prompt]
        try:
            code = self.caps.run_inherited(cmd, cwd=Path(cwd), env=self.caps.env_factory())
        except OSError as exc:
            raise SessionError(f"{self.binary} execution failed: {exc}") from exc
        if code != 0:
            raise SessionError(f"{self.binary} exited with code {code}")

    def _spawn_ntm(self, ntm: str, prompt: str, cwd: Path, run_id: str, phase_num: int) -> None:
        name = session_name(run_id, phase_num)
        print(f"ntm session: {name} (attach with: ntm attach {name})")
        env = self.caps.env_factory()

        spawned = self.caps.run_captured(
            [ntm, "spawn", name, "--cc=1", "--no-user-pane", "--dir", str(cwd)],
            env=env,
        )
        if spawned.returncode != 0:
            print(f"ntm spawn failed, falling back to direct exec: {(spawned.stdout + spawned.stderr).strip()}")
            self.spawn_direct(prompt, cwd)
            return

        sent = self.caps.run_captured([ntm, "send", name, prompt], env=env)
        if sent.returncode != 0:
            print(f"ntm send failed: {(sent.stdout + sent.stderr).strip()}")
            self.caps.run_captured([ntm, "kill", name], env=env)
            raise SessionError(f"ntm send failed (rc={sent.returncode})")

        while True:
            self.caps.sleep(self.poll_seconds)
            alive = self.caps.run_captured(["tmux", "has-session", "-t", name])
            if alive.returncode != 0:
                break
        self.caps.run_captured([ntm, "kill", name], env=env)

    def spawn_streaming(
        self,
        prompt: str,
        cwd: str | Path,
        phase_num: int,
        status_path: str | Path,
        all_phases: list[PhaseProgress],
    ) -> PhaseProgress:
        """Run *prompt* with stream-json output, mirroring progress to *status_path*."""
        cmd = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        try:
            proc = self.caps.open_stream(cmd, cwd=Path(cwd), env=self.caps.env_factory())
        except OSError as exc:
            raise SessionError(f"start {self.binary}: {exc}") from exc

        index = phase_num - 1

        def _on_update(progress: PhaseProgress) -> None:
            if 0 <= index < len(all_phases):
                all_phases[index] = progress.model_copy()
            try:
                write_live_status(status_path, all_phases, index)
            except OSError as exc:
                logger.warning("Could not write live status: %s", exc)

        name = all_phases[index].name if 0 <= index < len(all_phases) else f"phase-{phase_num}"
        parse_error: Exception | None = None
        progress = PhaseProgress(name=name)
        try:
            if proc.stdout is not None:
                progress = parse_stream_events(proc.stdout, name=name, on_update=_on_update)
        except (OSError, ValueError) as exc:
            parse_error = exc
            if proc.stdout is not None:
                proc.stdout.close()
        code = proc.wait()

        if code != 0:
            raise SessionError(f"{self.binary} exited with code {code}")
        if parse_error is not None:
            raise SessionError(f"stream parse error: {parse_error}") from parse_error
        return progress
