"""Continuous RPI cycles driven by the next-work queue.

Each cycle spawns a fresh agent session running ``/rpi "<goal>" --spawn-next``.
Goals come from unconsumed items in ``.agents/rpi/next-work.jsonl``, which
post-mortems append to; the highest-severity item wins.  The spawned session
owns marking items consumed, so the queue is re-read every cycle.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from pydantic import ValidationError

from rpi_orchestrator.claude_code import ClaudeSessionLauncher, SessionError
from rpi_orchestrator.history_log import format_duration
from rpi_orchestrator.pipeline.tracker import RunArtifacts
from rpi_orchestrator.schemas import NextWorkEntry, NextWorkItem

logger = logging.getLogger(__name__)

SEVERITY_RANK = {"high": 3, "medium": 2, "low": 1}


def severity_rank(severity: str) -> int:
    return SEVERITY_RANK.get(str(severity or ""), 0)


def parse_unconsumed_items(lines: Iterable[str], repo_filter: str = "") -> list[NextWorkItem]:
    """Flatten items of unconsumed queue entries, skipping malformed lines.

    With *repo_filter*, items targeting another repo are dropped; items with
    no target or target ``*`` always pass.
    """
    items: list[NextWorkItem] = []
    for line in lines:
        text = line.strip()
        if not text:
            continue
        try:
            entry = NextWorkEntry.model_validate_json(text)
        except ValidationError as exc:
            logger.debug("Skipping malformed next-work line: %s", exc)
            continue
        if entry.consumed:
            continue
        for item in entry.items:
            if repo_filter and item.target_repo not in ("", "*", repo_filter):
                continue
            items.append(item)
    return items


def read_unconsumed_items(path: str | Path, repo_filter: str = "") -> list[NextWorkItem]:
    """Unconsumed queue items from *path*; a missing file is an empty queue."""
    path = Path(path)
    if not path.exists():
        return []
    with path.open(encoding="utf-8", errors="replace") as handle:
        return parse_unconsumed_items(handle, repo_filter)


def select_highest_severity(items: list[NextWorkItem]) -> NextWorkItem | None:
    """First item among those with the highest severity."""
    if not items:
        return None
    return max(items, key=lambda item: severity_rank(item.severity))


class RpiLoop:
    """Runs ``/rpi`` sessions until the queue drains or the cycle cap is hit."""

    def __init__(
        self,
        cwd: str | Path,
        *,
        launcher: ClaudeSessionLauncher | None = None,
        max_cycles: int = 0,
        dry_run: bool = False,
        repo_filter: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cwd = Path(cwd)
        self.launcher = launcher or ClaudeSessionLauncher()
        self.max_cycles = max(0, max_cycles)
        self.dry_run = dry_run
        self.repo_filter = repo_filter
        self._clock = clock
        self.queue_path = RunArtifacts(self.cwd).next_work_path

    @staticmethod
    def rpi_command(goal: str) -> str:
        return f'/rpi "{goal}" --spawn-next'

    def _next_goal(self) -> str:
        items = read_unconsumed_items(self.queue_path, self.repo_filter)
        item = select_highest_severity(items)
        return item.title if item else ""

    def run(self, goal: str = "") -> int:
        """Run cycles; returns the number of completed cycles.

        Session failures raise :class:`SessionError`.
        """
        explicit = goal.strip()
        completed = 0
        cycle = 0
        while True:
            cycle += 1
            if self.max_cycles and cycle > self.max_cycles:
                print(f"\nReached max cycles ({self.max_cycles}). Stopping.")
                break

            print(f"\n=== RPI Loop: Cycle {cycle} ===")
            cycle_goal = explicit
            if not cycle_goal:
                cycle_goal = self._next_goal()
                if not cycle_goal:
                    print("No unconsumed work in queue. Flywheel stable.")
                    break
                print(f"From queue: {cycle_goal}")

            command = self.rpi_command(cycle_goal)
            if self.dry_run:
                print(f"[dry-run] Would spawn: {self.launcher.binary} -p '{command}'")
                if not explicit:
                    print("[dry-run] Queue not consumed in dry-run. Showing first cycle only.")
                break

            print(f"Spawning: {self.launcher.binary} -p '{command}'")
            started = self._clock()
            try:
                self.launcher.spawn_direct(command, self.cwd)
            except SessionError:
                print(f"Cycle {cycle} failed.")
                print("Stopping loop. Fix the issue and re-run rpi loop.")
                raise
            completed += 1
            print(f"Cycle {cycle} completed in {format_duration(self._clock() - started)}")

            if explicit:
                print("Explicit goal completed.")
                break

        print(f"\nRPI loop finished after {completed} cycle(s).")
        return completed
