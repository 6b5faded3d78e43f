"""Issue-tracker access for the plan and implementation phases.

The orchestrator needs three answers from the tracker: which open epic the
plan phase created, whether that epic is small enough for the fast path,
and whether its child issues are finished.  The default tracker shells out
to the ``bd`` CLI and classifies its free-text listing with keyword
heuristics; those heuristics live in the two ``parse_*`` functions below so
they can be replaced without touching the orchestrator.
"""

from __future__ import annotations

import abc
import logging
import re
import subprocess

from rpi_orchestrator.schemas import CrankStatus

logger = logging.getLogger(__name__)

FAST_PATH_MAX_ISSUES = 2

_EPIC_ID_RE = re.compile(r"(ag-[a-z0-9]+)")


class TrackerError(RuntimeError):
    """Raised when the issue tracker cannot be queried."""


def _listing_lines(output: str) -> list[str]:
    return [line for line in str(output or "").strip().splitlines() if line.strip()]


def parse_epic_id(output: str) -> str:
    """Return the first epic id in a tracker listing, or ``""``."""
    match = _EPIC_ID_RE.search(str(output or ""))
    return match.group(1) if match else ""


def parse_fast_path(output: str) -> bool:
    """True when the epic has at most two children and none is blocked."""
    lines = _listing_lines(output)
    blocked = sum(1 for line in lines if "blocked" in line.lower())
    return len(lines) <= FAST_PATH_MAX_ISSUES and blocked == 0


def parse_crank_completion(output: str) -> CrankStatus:
    """Classify child-issue completion from a tracker listing.

    An empty listing or one where every line is closed counts as DONE.
    """
    lines = _listing_lines(output)
    if not lines:
        return CrankStatus.DONE
    lowered = [line.lower() for line in lines]
    closed = sum(1 for line in lowered if "closed" in line or "✓" in line)
    if closed == len(lines):
        return CrankStatus.DONE
    if any("blocked" in line for line in lowered):
        return CrankStatus.BLOCKED
    return CrankStatus.PARTIAL


class IssueTracker(abc.ABC):
    """What the orchestrator needs from an issue tracker."""

    name: str = "base"

    @abc.abstractmethod
    def open_epic_id(self) -> str:
        """Return the id of the most recent open epic; raise TrackerError when none."""

    @abc.abstractmethod
    def detect_fast_path(self, epic_id: str) -> bool:
        """Return whether *epic_id* qualifies for the fast path."""

    @abc.abstractmethod
    def crank_status(self, epic_id: str) -> CrankStatus:
        """Return completion status of *epic_id*'s children."""


class BdIssueTracker(IssueTracker):
    """Tracker backed by the ``bd`` command-line tool."""

    name = "bd"

    def __init__(self, binary: str = "bd", *, timeout: int = 30) -> None:
        self.binary = binary
        self.timeout = timeout

    def _run(self, *args: str) -> str:
        cmd = [self.binary, *args]
        logger.debug("%s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise TrackerError(f"{' '.join(cmd)}: {exc}") from exc
        if result.returncode != 0:
            raise TrackerError(
                f"`{' '.join(cmd)}` failed (rc={result.returncode}): {result.stderr.strip()}"
            )
        return result.stdout

    def children_listing(self, epic_id: str) -> str:
        return self._run("children", epic_id)

    def open_epic_id(self) -> str:
        epic_id = parse_epic_id(self._run("list", "--type", "epic", "--status", "open"))
        if not epic_id:
            raise TrackerError("no epic found in bd list output")
        return epic_id

    def detect_fast_path(self, epic_id: str) -> bool:
        return parse_fast_path(self.children_listing(epic_id))

    def crank_status(self, epic_id: str) -> CrankStatus:
        return parse_crank_completion(self.children_listing(epic_id))
