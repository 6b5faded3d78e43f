"""Per-run artifact manager.

Manages the files a run keeps under ``.agents/rpi`` in its workspace:

- **phase-N-summary.md** - Written by each phase session (or mechanically by
  the orchestrator) and read back as context by later phases
- **phase-N-handoff.md** - Written by a session that noticed its own context
  degrading; only its presence matters
- **phased-orchestration.log** - Append-only transition log
- **live-status.md** - Progress table when streaming is enabled
"""

from __future__ import annotations

import logging
from pathlib import Path

from rpi_orchestrator.file_io import read_text_if_exists, write_text_if_absent
from rpi_orchestrator.pipeline.phases import TOTAL_PHASES, phase_name
from rpi_orchestrator.schemas import RUN_DIR

logger = logging.getLogger(__name__)

SUMMARY_CHAR_CAP = 2000
LOG_FILE_NAME = "phased-orchestration.log"
LIVE_STATUS_FILE_NAME = "live-status.md"
NEXT_WORK_FILE_NAME = "next-work.jsonl"


class RunArtifacts:
    """Paths and helpers for one workspace's ``.agents/rpi`` directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.run_dir = self.root / RUN_DIR

    # ── Paths ────────────────────────────────────────────────────

    @property
    def log_path(self) -> Path:
        return self.run_dir / LOG_FILE_NAME

    @property
    def live_status_path(self) -> Path:
        return self.run_dir / LIVE_STATUS_FILE_NAME

    @property
    def next_work_path(self) -> Path:
        return self.run_dir / NEXT_WORK_FILE_NAME

    def summary_path(self, phase_num: int) -> Path:
        return self.run_dir / f"phase-{phase_num}-summary.md"

    def handoff_path(self, phase_num: int) -> Path:
        return self.run_dir / f"phase-{phase_num}-handoff.md"

    # ── Summaries ────────────────────────────────────────────────

    def read_summaries(self, current_phase: int) -> str:
        """Concatenate summaries of every phase before *current_phase*.

        Each summary is capped at ``SUMMARY_CHAR_CAP`` characters and
        prefixed with ``[Phase N: name]``.
        """
        blocks: list[str] = []
        for num in range(1, current_phase):
            content = read_text_if_exists(self.summary_path(num)).strip()
            if not content:
                continue
            if len(content) > SUMMARY_CHAR_CAP:
                content = content[:SUMMARY_CHAR_CAP] + "..."
            blocks.append(f"[Phase {num}: {phase_name(num)}]\n{content}")
        return "\n\n".join(blocks)

    def has_summary(self, phase_num: int) -> bool:
        return self.summary_path(phase_num).exists()

    def write_fallback_summary(self, phase_num: int, content: str) -> bool:
        """Write *content* as the phase summary unless one already exists.

        Returns True when the fallback was written.
        """
        if not content:
            return False
        return write_text_if_absent(self.summary_path(phase_num), content)

    def handoff_detected(self, phase_num: int) -> bool:
        return self.handoff_path(phase_num).exists()

    def clean_phase_artifacts(self) -> int:
        """Remove summaries and handoffs left by a previous run."""
        removed = 0
        for num in range(1, TOTAL_PHASES + 1):
            for path in (self.summary_path(num), self.handoff_path(num)):
                try:
                    path.unlink()
                    removed += 1
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    logger.debug("Could not remove stale artifact %s: %s", path, exc)
        return removed
