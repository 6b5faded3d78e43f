"""Phase definitions and run configuration.

The workflow is a fixed sequence of six phases:

    research → plan → pre-mortem → crank (implement) → vibe (validate) → post-mortem

Each phase has a number, a display name, and the "step" label that the
checkpoint recorder uses.  Everything that varies per phase (prompt
templates, budgets, post-processing) is looked up by phase number.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, Field, model_validator


@dataclass(frozen=True, slots=True)
class Phase:
    """One fixed stage of the workflow."""

    num: int
    name: str
    step: str


PHASES: tuple[Phase, ...] = (
    Phase(1, "research", "research"),
    Phase(2, "plan", "plan"),
    Phase(3, "pre-mortem", "pre-mortem"),
    Phase(4, "crank", "implement"),
    Phase(5, "vibe", "vibe"),
    Phase(6, "post-mortem", "post-mortem"),
)

TOTAL_PHASES = len(PHASES)

# Accepted spellings for --from
PHASE_ALIASES: dict[str, int] = {
    "research": 1,
    "plan": 2,
    "pre-mortem": 3,
    "premortem": 3,
    "pre_mortem": 3,
    "crank": 4,
    "implement": 4,
    "vibe": 5,
    "validate": 5,
    "post-mortem": 6,
    "postmortem": 6,
    "post_mortem": 6,
}

# Gate phases store their verdict under these keys in PhasedState.verdicts
VERDICT_KEYS: dict[int, str] = {3: "pre_mortem", 5: "vibe"}

# Report filename fragments searched in the council directory
REPORT_PATTERNS: dict[int, str] = {3: "pre-mortem", 5: "vibe"}


def phase_num_from_name(name: str) -> int:
    """Resolve a phase name or alias to its number; 0 when unknown."""
    return PHASE_ALIASES.get(str(name or "").strip().lower(), 0)


def phase_by_num(num: int) -> Phase | None:
    if 1 <= num <= TOTAL_PHASES:
        return PHASES[num - 1]
    return None


def phase_name(num: int) -> str:
    """Display name for *num*, or ``phase-<num>`` when out of range."""
    phase = phase_by_num(num)
    return phase.name if phase else f"phase-{num}"


def attempt_key(num: int) -> str:
    return f"phase_{num}"


class PhasedConfig(BaseModel):
    """Options for one ``rpi phased`` invocation."""

    from_phase: str = "research"
    test_first: bool = False
    fast_path: bool = False
    interactive: bool = False
    max_retries: int = Field(default=3, ge=1)
    no_worktree: bool = False
    live_status: bool = False
    dry_run: bool = False
    claude_binary: str = "claude"
    ntm_poll_seconds: float = Field(default=5.0, gt=0)
    max_findings: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def _validate_from_phase(self) -> PhasedConfig:
        if phase_num_from_name(self.from_phase) == 0:
            raise ValueError(
                f"unknown phase {self.from_phase!r} "
                "(valid: research, plan, pre-mortem, crank, vibe, post-mortem)"
            )
        return self

    @property
    def start_phase(self) -> int:
        return phase_num_from_name(self.from_phase)
