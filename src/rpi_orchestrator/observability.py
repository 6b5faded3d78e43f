"""Best-effort run observability: agent-mail announcements and checkpoints.

Nothing here may fail a run.  Every external call is logged at debug level
when it fails and otherwise ignored.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)

MAIL_RECIPIENT = "mayor"
DEFAULT_CHECKPOINT_COMMAND: tuple[str, ...] = ("ao", "ratchet", "record")


def _run_quiet(cmd: Sequence[str]) -> int:
    return subprocess.run(list(cmd), capture_output=True, text=True, check=False, timeout=30).returncode


class RunObserver:
    """Announces run lifecycle to ``gt`` agent mail and records checkpoints."""

    def __init__(
        self,
        *,
        look_path: Callable[[str], str | None] = shutil.which,
        runner: Callable[[Sequence[str]], int] = _run_quiet,
        checkpoint_command: Sequence[str] = DEFAULT_CHECKPOINT_COMMAND,
    ) -> None:
        self._look_path = look_path
        self._runner = runner
        self._checkpoint_command = tuple(checkpoint_command)
        self._gt: str | None = None
        self._gt_resolved = False

    def _gt_path(self) -> str | None:
        if not self._gt_resolved:
            self._gt = self._look_path("gt")
            self._gt_resolved = True
        return self._gt

    def _best_effort(self, cmd: Sequence[str]) -> bool:
        try:
            code = self._runner(cmd)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("%s: %s", " ".join(cmd), exc)
            return False
        if code != 0:
            logger.debug("%s exited with %d", " ".join(cmd), code)
            return False
        return True

    @staticmethod
    def agent_name(run_id: str) -> str:
        return f"rpi-{run_id}"

    def register(self, run_id: str) -> bool:
        gt = self._gt_path()
        if not gt or not run_id:
            return False
        return self._best_effort([gt, "mail", "register", self.agent_name(run_id)])

    def emit_status(self, run_id: str, phase: str, status: str) -> bool:
        gt = self._gt_path()
        if not gt or not run_id:
            return False
        message = f"{self.agent_name(run_id)}: {phase} {status}"
        return self._best_effort([gt, "mail", "send", MAIL_RECIPIENT, message])

    def deregister(self, run_id: str) -> bool:
        gt = self._gt_path()
        if not gt or not run_id:
            return False
        return self._best_effort([gt, "mail", "deregister", self.agent_name(run_id)])

    def record_checkpoint(self, step: str) -> bool:
        if not self._checkpoint_command:
            return False
        return self._best_effort([*self._checkpoint_command, step])
