"""Tests for phase session launching with substituted process capabilities."""

from __future__ import annotations

import io
import json
from pathlib import Path
from types import SimpleNamespace

import pytest

from rpi_orchestrator.claude_code import (
    ClaudeSessionLauncher,
    SessionError,
    SpawnCapabilities,
    prompt_metadata,
    session_name,
)
from rpi_orchestrator.live_status import initial_progress

pytestmark = pytest.mark.unit


def _done(code: int = 0, out: str = "", err: str = "") -> SimpleNamespace:
    return SimpleNamespace(returncode=code, stdout=out, stderr=err)


class FakeProcesses:
    """Records every command and replays scripted results."""

    def __init__(self, *, tools: set[str] | None = None, inherited_code: int = 0) -> None:
        self.tools = tools if tools is not None else {"claude"}
        self.inherited_code = inherited_code
        self.captured: list[list[str]] = []
        self.inherited: list[tuple[list[str], Path | None, dict[str, str] | None]] = []
        self.results: dict[str, list[SimpleNamespace]] = {}
        self.sleeps: list[float] = []
        self.stream_lines: list[str] = []
        self.stream_code = 0

    def script(self, key: str, *results: SimpleNamespace) -> None:
        self.results[key] = list(results)

    def look_path(self, name: str) -> str | None:
        return f"/usr/bin/{name}" if name in self.tools else None

    def run_captured(self, cmd, *, cwd=None, env=None):
        cmd = list(cmd)
        self.captured.append(cmd)
        key = f"{Path(cmd[0]).name} {cmd[1]}"
        queue = self.results.get(key)
        if queue:
            return queue.pop(0) if len(queue) > 1 else queue[0]
        return _done()

    def run_inherited(self, cmd, *, cwd=None, env=None) -> int:
        self.inherited.append((list(cmd), cwd, env))
        return self.inherited_code

    def open_stream(self, cmd, *, cwd=None, env=None):
        self.captured.append(list(cmd))
        return SimpleNamespace(stdout=io.StringIO("".join(self.stream_lines)), wait=lambda: self.stream_code)

    def capabilities(self) -> SpawnCapabilities:
        return SpawnCapabilities(
            look_path=self.look_path,
            run_captured=self.run_captured,
            run_inherited=self.run_inherited,
            open_stream=self.open_stream,
            sleep=self.sleeps.append,
            env_factory=lambda: {"PATH": "/usr/bin"},
        )


def test_session_name_and_prompt_metadata() -> None:
    assert session_name("abc123", 4) == "rpi-abc123-p4"
    meta = prompt_metadata("hello")
    assert meta["length_chars"] == 5
    assert len(str(meta["sha256"])) == 16


def test_available_checks_binary() -> None:
    procs = FakeProcesses(tools=set())
    assert ClaudeSessionLauncher(capabilities=procs.capabilities()).available() is False


class TestDirectSpawn:
    def test_runs_claude_with_prompt(self, tmp_path: Path) -> None:
        procs = FakeProcesses()
        launcher = ClaudeSessionLauncher(capabilities=procs.capabilities())

        launcher.spawn("/research \"g\"", tmp_path, "abc", 1)

        cmd, cwd, env = procs.inherited[0]
        assert cmd == ["claude", "-p", "/research \"g\""]
        assert cwd == tmp_path
        assert env == {"PATH": "/usr/bin"}

    def test_nonzero_exit_raises(self, tmp_path: Path) -> None:
        procs = FakeProcesses(inherited_code=3)
        launcher = ClaudeSessionLauncher(capabilities=procs.capabilities())
        with pytest.raises(SessionError, match="exited with code 3"):
            launcher.spawn_direct("p", tmp_path)

    def test_missing_binary_raises(self, tmp_path: Path) -> None:
        procs = FakeProcesses()

        def boom(cmd, *, cwd=None, env=None) -> int:
            raise FileNotFoundError("claude")

        caps = procs.capabilities()
        caps.run_inherited = boom
        with pytest.raises(SessionError, match="execution failed"):
            ClaudeSessionLauncher(capabilities=caps).spawn_direct("p", tmp_path)


class TestNtmSpawn:
    def test_polls_until_session_ends(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        procs = FakeProcesses(tools={"claude", "ntm"})
        procs.script("tmux has-session", _done(0), _done(0), _done(1))
        launcher = ClaudeSessionLauncher(capabilities=procs.capabilities(), poll_seconds=0.5)

        launcher.spawn("prompt", tmp_path, "abc", 2)

        assert procs.captured[0] == [
            "/usr/bin/ntm", "spawn", "rpi-abc-p2", "--cc=1", "--no-user-pane", "--dir", str(tmp_path)
        ]
        assert procs.captured[1] == ["/usr/bin/ntm", "send", "rpi-abc-p2", "prompt"]
        assert [c for c in procs.captured if c[0] == "tmux"] == [["tmux", "has-session", "-t", "rpi-abc-p2"]] * 3
        assert procs.captured[-1] == ["/usr/bin/ntm", "kill", "rpi-abc-p2"]
        assert procs.sleeps == [0.5, 0.5, 0.5]
        assert procs.inherited == []
        assert "attach with: ntm attach rpi-abc-p2" in capsys.readouterr().out

    def test_spawn_failure_falls_back_to_direct(self, tmp_path: Path) -> None:
        procs = FakeProcesses(tools={"claude", "ntm"})
        procs.script("ntm spawn", _done(1, err="no tmux server"))
        launcher = ClaudeSessionLauncher(capabilities=procs.capabilities())

        launcher.spawn("prompt", tmp_path, "abc", 1)

        assert procs.inherited[0][0] == ["claude", "-p", "prompt"]
        assert not any(c[1] == "send" for c in procs.captured)

    def test_send_failure_kills_session(self, tmp_path: Path) -> None:
        procs = FakeProcesses(tools={"claude", "ntm"})
        procs.script("ntm send", _done(2, err="pane gone"))
        launcher = ClaudeSessionLauncher(capabilities=procs.capabilities())

        with pytest.raises(SessionError, match="ntm send failed"):
            launcher.spawn("prompt", tmp_path, "abc", 3)

        assert procs.captured[-1] == ["/usr/bin/ntm", "kill", "rpi-abc-p3"]
        assert procs.inherited == []


class TestStreamingSpawn:
    def test_progress_is_mirrored_to_status_file(self, tmp_path: Path) -> None:
        procs = FakeProcesses()
        procs.stream_lines = [
            json.dumps({"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Edit"}]}}) + "\n",
            json.dumps({"type": "result", "num_turns": 2, "usage": {"input_tokens": 10, "output_tokens": 5}}) + "\n",
        ]
        launcher = ClaudeSessionLauncher(capabilities=procs.capabilities())
        status_path = tmp_path / "live-status.md"
        rows = initial_progress()

        progress = launcher.spawn_streaming("prompt", tmp_path, 4, status_path, rows)

        assert procs.captured[0] == ["claude", "-p", "prompt", "--output-format", "stream-json", "--verbose"]
        assert progress.name == "crank"
        assert progress.tool_count == 1
        assert rows[3].total_tokens == 15
        text = status_path.read_text(encoding="utf-8")
        assert "| crank | running |" in text
        assert "| research | done |" in text

    def test_nonzero_exit_raises(self, tmp_path: Path) -> None:
        procs = FakeProcesses()
        procs.stream_code = 1
        launcher = ClaudeSessionLauncher(capabilities=procs.capabilities())

        with pytest.raises(SessionError, match="exited with code 1"):
            launcher.spawn_streaming("p", tmp_path, 1, tmp_path / "s.md", initial_progress())
