"""Markdown live-status table for streamed phase sessions."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from rpi_orchestrator.file_io import atomic_write_text
from rpi_orchestrator.history_log import format_duration
from rpi_orchestrator.pipeline.phases import PHASES
from rpi_orchestrator.schemas import PhaseProgress


def initial_progress() -> list[PhaseProgress]:
    """One empty progress row per phase."""
    return [PhaseProgress(name=phase.name) for phase in PHASES]


def _row_status(index: int, current: int) -> str:
    if index < current:
        return "done"
    if index == current:
        return "running"
    return "pending"


def render_live_status(all_phases: Sequence[PhaseProgress], current: int) -> str:
    """Render the table; *current* is the 0-based index of the running phase."""
    lines = [
        "# Live Status",
        "",
        "| Phase | Status | Elapsed | Tools | Tokens | Cost |",
        "|-------|--------|---------|-------|--------|------|",
    ]
    for index, progress in enumerate(all_phases):
        lines.append(
            f"| {progress.name} | {_row_status(index, current)} "
            f"| {format_duration(progress.elapsed_seconds)} | {progress.tool_count} "
            f"| {progress.total_tokens} | ${progress.cost_usd:.4f} |"
        )
    return "\n".join(lines) + "\n"


def write_live_status(path: str | Path, all_phases: Sequence[PhaseProgress], current: int) -> None:
    """Write the table atomically so polling readers never see a partial file."""
    atomic_write_text(Path(path), render_live_status(all_phases, current))
