"""Pydantic models for persisted run state, gate findings, progress, and log history."""

from __future__ import annotations

import datetime as dt
import logging
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from rpi_orchestrator.file_io import atomic_write_text

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1
RUN_DIR = Path(".agents") / "rpi"
STATE_FILE_NAME = "phased-state.json"


def rfc3339_now() -> str:
    """Current UTC time as an RFC3339 string with second precision."""
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> dt.datetime | None:
    """Parse an RFC3339 timestamp; return None when it is not one."""
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


# ── Gate results ─────────────────────────────────────────────────


class Verdict(str, Enum):
    """Tri-state council verdict for a gated phase."""

    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


class CrankStatus(str, Enum):
    """Completion status of the implementation phase's child issues."""

    DONE = "DONE"
    BLOCKED = "BLOCKED"
    PARTIAL = "PARTIAL"


class Finding(BaseModel):
    """One structured finding extracted from a failing report."""

    description: str
    fix: str = ""
    ref: str = ""

    def render(self) -> str:
        return f"FINDING: {self.description} | FIX: {self.fix} | REF: {self.ref}"


# ── Persisted run state ──────────────────────────────────────────


def _state_path(root: str | Path) -> Path:
    return Path(root) / RUN_DIR / STATE_FILE_NAME


class PhasedState(BaseModel):
    """Everything needed to resume a run after a crash or interrupt."""

    schema_version: int = STATE_SCHEMA_VERSION
    goal: str = ""
    epic_id: str = ""
    phase: int = 1
    cycle: int = 1
    parent_epic: str = ""
    fast_path: bool = False
    test_first: bool = False
    verdicts: dict[str, str] = Field(default_factory=dict)
    attempts: dict[str, int] = Field(default_factory=dict)
    started_at: str = ""
    workspace_path: str = Field(
        default="",
        validation_alias=AliasChoices("workspace_path", "worktree_path"),
    )
    run_id: str = ""

    @field_validator("verdicts", "attempts", mode="before")
    @classmethod
    def _null_map_is_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("goal", "epic_id", "parent_epic", "started_at", "workspace_path", "run_id", mode="before")
    @classmethod
    def _null_text_is_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @staticmethod
    def state_path(root: str | Path) -> Path:
        return _state_path(root)

    def save(self, root: str | Path) -> Path:
        """Persist state atomically under ``<root>/.agents/rpi``."""
        path = _state_path(root)
        atomic_write_text(path, self.model_dump_json(indent=2) + "\n")
        return path

    @classmethod
    def load(cls, root: str | Path) -> PhasedState | None:
        """Load persisted state, or return ``None`` when absent or unreadable."""
        path = _state_path(root)
        if not path.exists():
            return None
        try:
            raw = path.read_text(encoding="utf-8")
            if not raw.strip():
                logger.warning("State file is empty; ignoring: %s", path)
                return None
            return cls.model_validate_json(raw)
        except (OSError, ValidationError) as exc:
            logger.warning("Could not load state file %s: %s", path, exc)
            return None

    def started_datetime(self) -> dt.datetime | None:
        return parse_rfc3339(self.started_at)


# ── Progress streaming ───────────────────────────────────────────


class PhaseProgress(BaseModel):
    """Cumulative progress for one phase session, built from its event stream."""

    name: str
    session_id: str = ""
    model: str = ""
    tool_count: int = 0
    last_tool: str = ""
    turns: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    elapsed_seconds: float = 0.0
    last_update: dt.datetime | None = None


# ── Log history ──────────────────────────────────────────────────


class LogEntry(BaseModel):
    """One parsed line of the orchestration log."""

    timestamp: dt.datetime
    run_id: str = ""
    phase: str
    details: str = ""


class LogRun(BaseModel):
    """A run reconstructed from orchestration log lines."""

    run_id: str
    goal: str = ""
    status: str = "running"
    started_at: dt.datetime | None = None
    finished_at: dt.datetime | None = None
    duration_seconds: float = 0.0
    epic_id: str = ""
    last_phase: str = ""
    verdicts: dict[str, str] = Field(default_factory=dict)
    retries: dict[str, int] = Field(default_factory=dict)
    entries: list[LogEntry] = Field(default_factory=list)

    @property
    def total_retries(self) -> int:
        return sum(self.retries.values())


# ── Status registry ──────────────────────────────────────────────


class RunInfo(BaseModel):
    """A discovered run, from persisted state plus liveness checks."""

    run_id: str
    goal: str = ""
    phase: int = 0
    phase_name: str = ""
    status: str = "unknown"
    epic_id: str = ""
    elapsed: str = ""
    workspace_path: str = ""
    verdicts: dict[str, str] = Field(default_factory=dict)


class StatusReport(BaseModel):
    """Machine-readable payload of ``rpi status --output json``."""

    runs: list[RunInfo] = Field(default_factory=list)
    log_runs: list[LogRun] = Field(default_factory=list)
    count: int = 0


# ── Next-work queue ──────────────────────────────────────────────


class NextWorkItem(BaseModel):
    """A follow-up item harvested by a post-mortem."""

    title: str = ""
    type: str = ""
    severity: str = ""
    source: str = ""
    description: str = ""
    evidence: str = ""
    target_repo: str = ""


class NextWorkEntry(BaseModel):
    """One line of ``.agents/rpi/next-work.jsonl``."""

    source_epic: str = ""
    timestamp: str = ""
    items: list[NextWorkItem] = Field(default_factory=list)
    consumed: bool = False
    consumed_by: str | None = None
    consumed_at: str | None = None

    @field_validator("items", mode="before")
    @classmethod
    def _null_items_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value
