"""Phase prompt construction.

A phase prompt is four layers, joined in a fixed order.  Earlier layers
survive context compaction in the spawned session better than later ones:

1. context-discipline directive (phase number + phase budget)
2. summary contract
3. cross-phase context block (phases 3+): goal, verdicts, prior summaries
4. the phase's own command invocation
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from rpi_orchestrator.pipeline.phases import VERDICT_KEYS, phase_by_num
from rpi_orchestrator.pipeline.tracker import RunArtifacts
from rpi_orchestrator.prompts.catalog import PromptCatalog, get_catalog
from rpi_orchestrator.schemas import Finding, PhasedState

CONTEXT_MIN_PHASE = 3


class PromptError(ValueError):
    """Raised when no template exists for a phase."""


def _format_fields(state: PhasedState, phase_num: int, *, interactive: bool, budget: str) -> dict[str, object]:
    return {
        "goal": state.goal,
        "epic_id": state.epic_id,
        "phase_num": phase_num,
        "context_budget": budget,
        "auto_flag": "" if interactive else " --auto",
        "quick_flag": " --quick" if state.fast_path else "",
        "test_first_flag": " --test-first" if state.test_first else "",
    }


def build_phase_context(root: str | Path | None, state: PhasedState, phase_num: int, *, catalog: PromptCatalog | None = None) -> str:
    """Render the cross-phase context block, or ``""`` when there is nothing to say."""
    catalog = catalog or get_catalog()
    parts: list[str] = []
    if state.goal:
        parts.append(f"Goal: {state.goal}")
    for key, verdict in state.verdicts.items():
        parts.append(f"{key.replace('_', '-')} verdict: {verdict}")
    if root:
        summaries = RunArtifacts(root).read_summaries(phase_num)
        if summaries:
            parts.append(summaries)
    if not parts:
        return ""
    return catalog.context_header() + "\n" + "\n".join(parts)


def build_phase_prompt(
    root: str | Path | None,
    phase_num: int,
    state: PhasedState,
    *,
    interactive: bool = False,
    catalog: PromptCatalog | None = None,
) -> str:
    """Build the full prompt for *phase_num* from the run state."""
    catalog = catalog or get_catalog()
    if phase_by_num(phase_num) is None or not catalog.invocation(phase_num):
        raise PromptError(f"no prompt template for phase {phase_num}")

    fields = _format_fields(state, phase_num, interactive=interactive, budget=catalog.budget(phase_num))
    parts = [
        catalog.discipline().format(**fields),
        catalog.summary_contract().format(**fields),
    ]
    if phase_num >= CONTEXT_MIN_PHASE:
        context = build_phase_context(root, state, phase_num, catalog=catalog)
        if context:
            parts.append(context + "\n\n")
    parts.append(catalog.invocation(phase_num).format(**fields))
    return "".join(parts)


def render_findings(findings: Sequence[Finding]) -> str:
    return "\n".join(f.render() for f in findings)


def build_retry_prompt(
    root: str | Path | None,
    phase_num: int,
    state: PhasedState,
    *,
    attempt: int,
    max_retries: int,
    findings: Sequence[Finding],
    interactive: bool = False,
    catalog: PromptCatalog | None = None,
) -> str:
    """Build the feedback prompt for a failed gate.

    Phases without a retry template fall back to their normal prompt.
    """
    catalog = catalog or get_catalog()
    template = catalog.retry(phase_num)
    if not template:
        return build_phase_prompt(root, phase_num, state, interactive=interactive, catalog=catalog)

    fields = _format_fields(state, phase_num, interactive=interactive, budget=catalog.budget(phase_num))
    fields.update(
        retry_attempt=attempt,
        max_retries=max_retries,
        findings=render_findings(findings),
    )
    return template.format(**fields)


def build_fallback_summary(state: PhasedState, phase_num: int, *, catalog: PromptCatalog | None = None) -> str:
    """Mechanical summary used when a phase session did not write one."""
    catalog = catalog or get_catalog()
    template = catalog.fallback_summary(phase_num)
    if not template:
        return ""
    verdict_key = VERDICT_KEYS.get(phase_num, "")
    return template.format(
        goal=state.goal,
        epic_id=state.epic_id,
        verdict=state.verdicts.get(verdict_key) or "unknown",
        fast_path_note=" (micro-epic, fast path)" if state.fast_path else "",
    )
