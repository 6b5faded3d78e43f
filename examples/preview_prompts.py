#!/usr/bin/env python3
"""Example: print the prompt each phase would receive for a goal.

Usage:
    python examples/preview_prompts.py "Add rate limiting to the API" [epic-id]
"""

from __future__ import annotations

import sys

from rpi_orchestrator.pipeline.phases import PHASES
from rpi_orchestrator.pipeline.prompting import build_phase_prompt
from rpi_orchestrator.schemas import PhasedState


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: preview_prompts.py <goal> [epic-id]")
        sys.exit(1)

    state = PhasedState(goal=sys.argv[1], epic_id=sys.argv[2] if len(sys.argv) > 2 else "ag-example")
    for phase in PHASES:
        prompt = build_phase_prompt(None, phase.num, state)
        print(f"=== Phase {phase.num}: {phase.name} ({len(prompt)} chars) ===")
        print(prompt)
        print()


if __name__ == "__main__":
    main()
