"""Phased orchestrator - drives one run through the six RPI phases.

Each phase runs as a fresh agent session in the run's workspace:

    research -> plan -> pre-mortem -> crank -> vibe -> post-mortem

After a session exits the orchestrator inspects the artifacts it was
contracted to leave behind (tracker epic, council reports, summaries),
applies the phase's gate, and persists run state so an interrupted run can
resume with ``--from``.  Gate failures enter a bounded retry loop that
feeds the report's findings back to the agent.

The orchestrator integrates with:
- :class:`ClaudeSessionLauncher` for spawning sessions
- :class:`IssueTracker` for epic discovery and completion
- :class:`WorktreeManager` for the isolated workspace
- :class:`RunObserver` for agent-mail announcements and checkpoints
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import time
from collections.abc import Callable
from pathlib import Path
from types import FrameType
from typing import Any

from rpi_orchestrator.claude_code import ClaudeSessionLauncher, SessionError
from rpi_orchestrator.git_tools import (
    GitError,
    Worktree,
    WorktreeManager,
    branch_name,
    generate_run_id,
    worktree_path_for,
)
from rpi_orchestrator.history_log import PhaseTransitionLog, format_duration, format_verdict_map
from rpi_orchestrator.issue_tracker import BdIssueTracker, IssueTracker, TrackerError
from rpi_orchestrator.live_status import initial_progress
from rpi_orchestrator.observability import RunObserver
from rpi_orchestrator.pipeline.phases import (
    PHASES,
    REPORT_PATTERNS,
    VERDICT_KEYS,
    PhasedConfig,
    attempt_key,
    phase_name,
)
from rpi_orchestrator.pipeline.prompting import (
    build_fallback_summary,
    build_phase_prompt,
    build_retry_prompt,
)
from rpi_orchestrator.pipeline.tracker import RunArtifacts
from rpi_orchestrator.prompts.catalog import PromptCatalog, get_catalog
from rpi_orchestrator.schemas import CrankStatus, Finding, PhasedState, Verdict, rfc3339_now
from rpi_orchestrator.verdicts import (
    COUNCIL_DIR,
    ReportNotFoundError,
    VerdictNotFoundError,
    extract_findings,
    extract_verdict,
    find_latest_report,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_GATE_FAIL = 10
EXIT_INTERRUPTED = 20

_GATE_LABELS = {3: "Pre-mortem", 5: "Vibe"}


class PhasedRunError(RuntimeError):
    """Hard failure: the run stops and the workspace is preserved."""


class GateFailure(Exception):
    """A phase gate evaluated to a failing status."""

    def __init__(self, phase: int, verdict: str, findings: list[Finding] | None = None, report: str = "") -> None:
        self.phase = phase
        self.verdict = verdict
        self.findings = list(findings or [])
        self.report = report
        super().__init__(f"gate {verdict} at phase {phase} (report: {report})")


class GateRetriesExhausted(PhasedRunError):
    """A gate kept failing until the retry budget ran out."""

    def __init__(self, phase: int, report: str) -> None:
        self.phase = phase
        self.report = report
        super().__init__(f"phase {phase} ({phase_name(phase)}): gate failed after max retries")


class RunInterrupted(Exception):
    """Raised from the SIGINT/SIGTERM handler."""

    def __init__(self, signal_name: str) -> None:
        self.signal_name = signal_name
        super().__init__(signal_name)


class PhasedOrchestrator:
    """Runs the six phases for one goal, with resume and gate retries."""

    def __init__(
        self,
        cwd: str | Path,
        config: PhasedConfig,
        *,
        launcher: ClaudeSessionLauncher | None = None,
        tracker: IssueTracker | None = None,
        observer: RunObserver | None = None,
        worktrees: WorktreeManager | None = None,
        catalog: PromptCatalog | None = None,
        clock: Callable[[], float] = time.monotonic,
        install_signal_handlers: bool = True,
    ) -> None:
        self.cwd = Path(cwd)
        self.config = config
        self.launcher = launcher or ClaudeSessionLauncher(
            config.claude_binary, poll_seconds=config.ntm_poll_seconds
        )
        self.tracker = tracker or BdIssueTracker()
        self.observer = observer or RunObserver()
        self.worktrees = worktrees or WorktreeManager()
        self.catalog = catalog or get_catalog()
        self._clock = clock
        self._install_signals = install_signal_handlers

        self.workspace = self.cwd
        self.artifacts = RunArtifacts(self.cwd)
        self.log = PhaseTransitionLog(self.artifacts.log_path)
        self.state: PhasedState | None = None
        self._created: Worktree | None = None
        self._progress = initial_progress()
        self._post_handlers: dict[int, Callable[[PhasedState, int], None]] = {
            2: self._after_plan,
            3: self._after_council_gate,
            4: self._after_crank,
            5: self._after_council_gate,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, goal: str = "") -> int:
        """Run phases from ``config.from_phase`` to the end.

        Returns an exit status.  Hard errors raise :class:`PhasedRunError`
        (or :class:`GitError`) after the workspace has been preserved.
        """
        start = self.config.start_phase
        if start == 0:
            raise PhasedRunError(
                f"unknown phase: {self.config.from_phase!r} "
                "(valid: research, plan, pre-mortem, crank, vibe, post-mortem)"
            )
        if not self.launcher.available():
            raise PhasedRunError(
                f"{self.launcher.binary} CLI not found on PATH (required for spawning phase sessions)"
            )

        state = self._initial_state(goal.strip(), start)
        self.state = state
        self._prepare_workspace(state)

        succeeded = False
        interrupted = False
        previous_handlers = self._set_signal_handlers()
        try:
            self._run_phases(state, start)
            succeeded = True
            self._final_report(state)
        except RunInterrupted as exc:
            interrupted = True
            print(f"\nInterrupted ({exc.signal_name}). Worktree preserved at: {self.workspace}", file=sys.stderr)
            return EXIT_INTERRUPTED
        except GateRetriesExhausted as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return EXIT_GATE_FAIL
        finally:
            self._restore_signal_handlers(previous_handlers)
            if not interrupted:
                self._finish_workspace(succeeded)
        return EXIT_OK

    # ------------------------------------------------------------------
    # State and workspace
    # ------------------------------------------------------------------

    def _initial_state(self, goal: str, start: int) -> PhasedState:
        existing = PhasedState.load(self.cwd) if start > 1 else None

        if start >= 4 and not goal and existing is not None and existing.epic_id:
            goal = existing.goal
        if not goal and start <= 2:
            raise PhasedRunError("goal is required (provide as argument)")

        state = PhasedState(
            goal=goal,
            phase=start,
            fast_path=self.config.fast_path,
            test_first=self.config.test_first,
            started_at=rfc3339_now(),
        )
        if existing is None:
            return state

        state.epic_id = existing.epic_id
        state.fast_path = existing.fast_path or self.config.fast_path
        state.test_first = existing.test_first or self.config.test_first
        state.verdicts = dict(existing.verdicts)
        state.attempts = dict(existing.attempts)
        state.run_id = existing.run_id
        if not goal:
            state.goal = existing.goal
        if not self.config.no_worktree and existing.workspace_path:
            if not Path(existing.workspace_path).exists():
                raise PhasedRunError(
                    f"worktree {existing.workspace_path} from previous run no longer exists (was it removed?)"
                )
            state.workspace_path = existing.workspace_path
            print(f"Resuming in existing worktree: {existing.workspace_path}")
        return state

    def _prepare_workspace(self, state: PhasedState) -> None:
        if state.workspace_path:
            self.workspace = Path(state.workspace_path)
        elif not self.config.no_worktree and not self.config.dry_run:
            try:
                worktree = self.worktrees.create(self.cwd)
            except GitError as exc:
                raise PhasedRunError(f"create worktree: {exc}") from exc
            self._created = worktree
            self.workspace = worktree.path
            state.workspace_path = str(worktree.path)
            state.run_id = worktree.run_id
            print(f"Worktree created: {worktree.path} (branch: {worktree.branch})")

        if not state.run_id:
            state.run_id = generate_run_id()

        self.artifacts = RunArtifacts(self.workspace)
        self.artifacts.run_dir.mkdir(parents=True, exist_ok=True)
        self.log = PhaseTransitionLog(self.artifacts.log_path, state.run_id)

    def _finish_workspace(self, succeeded: bool) -> None:
        worktree = self._created
        if worktree is None:
            if succeeded and self.workspace != self.cwd:
                print(f"Resumed worktree left in place: {self.workspace} (merge {branch_name(self.state.run_id)} manually)")
            elif not succeeded and self.workspace != self.cwd:
                print(f"Worktree preserved for debugging: {self.workspace}", file=sys.stderr)
            return
        if not succeeded:
            print(f"Worktree preserved for debugging: {worktree.path}", file=sys.stderr)
            return
        try:
            self.worktrees.merge(worktree.root, worktree.run_id)
        except GitError as exc:
            print(f"Merge failed: {exc}\nWorktree preserved at: {worktree.path}", file=sys.stderr)
            return
        try:
            self.worktrees.remove(worktree.root, worktree.path, worktree.run_id)
        except GitError as exc:
            print(f"Cleanup warning: {exc}", file=sys.stderr)

    def _save_state(self, state: PhasedState) -> None:
        try:
            path = state.save(self.workspace)
        except OSError as exc:
            logger.warning("Could not save state: %s", exc)
            return
        logger.debug("State saved to %s", path)

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        raise RunInterrupted(signal.Signals(signum).name)

    def _set_signal_handlers(self) -> dict[int, Any]:
        if not self._install_signals or self.workspace == self.cwd:
            return {}
        previous: dict[int, Any] = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                previous[signum] = signal.signal(signum, self._handle_signal)
            except ValueError:
                logger.debug("Cannot install handler for %s outside the main thread", signum)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: dict[int, Any]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    # ------------------------------------------------------------------
    # Phase loop
    # ------------------------------------------------------------------

    def _run_phases(self, state: PhasedState, start: int) -> None:
        if start == 1:
            removed = self.artifacts.clean_phase_artifacts()
            logger.debug("Removed %d stale phase artifact(s)", removed)

        print(f"\n=== RPI Phased: {state.goal} ===")
        print(f"Starting from phase {start} ({phase_name(start)})")
        self.log.append("start", f"goal={json.dumps(state.goal, ensure_ascii=False)} from={self.config.from_phase}")
        self.observer.register(state.run_id)

        for phase in PHASES[start - 1:]:
            num = phase.num
            print(f"\n--- Phase {num}: {phase.name} ---")
            state.phase = num
            prompt = self._phase_prompt(state, num)
            self.observer.emit_status(state.run_id, phase.name, "started")

            if self.config.dry_run:
                print(f"[dry-run] Would spawn: {self.launcher.binary} -p '{prompt}'")
                if not self.config.no_worktree and num == start and not state.workspace_path:
                    preview_id = generate_run_id()
                    preview = worktree_path_for(self.cwd, preview_id)
                    print(f"[dry-run] Would create worktree: {preview} (branch: {branch_name(preview_id)})")
                self.log.append(phase.name, "dry-run")
                continue

            started = self._clock()
            self._spawn(state, prompt, num)
            elapsed = format_duration(self._clock() - started)
            print(f"Phase {num} completed in {elapsed}")
            self.log.append(phase.name, f"completed in {elapsed}")
            self.observer.emit_status(state.run_id, phase.name, "completed")

            try:
                self._post_process(state, num)
            except GateFailure as gate:
                self._retry_gate(state, num, gate)

            if self.artifacts.handoff_detected(num):
                print(f"Phase {num}: handoff detected - phase reported context degradation")
                self.log.append(phase.name, "HANDOFF detected - context degradation")

            self._write_summary(state, num)
            self.observer.record_checkpoint(phase.step)
            self._save_state(state)

    def _phase_prompt(self, state: PhasedState, num: int) -> str:
        return build_phase_prompt(
            self.workspace, num, state, interactive=self.config.interactive, catalog=self.catalog
        )

    def _spawn(self, state: PhasedState, prompt: str, num: int) -> None:
        try:
            if self.config.live_status:
                self.launcher.spawn_streaming(
                    prompt, self.workspace, num, self.artifacts.live_status_path, self._progress
                )
            else:
                self.launcher.spawn(prompt, self.workspace, state.run_id, num)
        except SessionError as exc:
            self.log.append(phase_name(num), f"FAILED: {exc}")
            raise PhasedRunError(f"phase {num} ({phase_name(num)}) failed: {exc}") from exc

    def _write_summary(self, state: PhasedState, num: int) -> None:
        if self.artifacts.has_summary(num):
            print(f"Phase {num}: agent-written summary found")
            return
        print(f"Phase {num}: no agent summary found, writing fallback")
        try:
            self.artifacts.write_fallback_summary(num, build_fallback_summary(state, num, catalog=self.catalog))
        except OSError as exc:
            logger.debug("Could not write phase summary: %s", exc)

    def _final_report(self, state: PhasedState) -> None:
        print("\n=== RPI Phased Complete ===")
        print(f"Goal: {state.goal}")
        if state.epic_id:
            print(f"Epic: {state.epic_id}")
        print(f"Verdicts: {format_verdict_map(state.verdicts)}")
        self.log.append("complete", f"epic={state.epic_id} verdicts={format_verdict_map(state.verdicts)}")
        self.observer.deregister(state.run_id)

    # ------------------------------------------------------------------
    # Post-processing and gates
    # ------------------------------------------------------------------

    def _post_process(self, state: PhasedState, num: int) -> None:
        handler = self._post_handlers.get(num)
        if handler is not None:
            handler(state, num)

    def _after_plan(self, state: PhasedState, num: int) -> None:
        try:
            epic_id = self.tracker.open_epic_id()
        except TrackerError as exc:
            raise PhasedRunError(f"plan phase: could not extract epic ID (crank needs this): {exc}") from exc
        state.epic_id = epic_id
        print(f"Epic ID: {epic_id}")

        if self.config.fast_path:
            return
        try:
            fast = self.tracker.detect_fast_path(epic_id)
        except TrackerError as exc:
            logger.warning("Fast-path detection failed (continuing without): %s", exc)
            return
        if fast:
            state.fast_path = True
            print("Micro-epic detected - using fast path (--quick for gates)")

    def _after_council_gate(self, state: PhasedState, num: int) -> None:
        name = phase_name(num)
        label = _GATE_LABELS[num]
        try:
            report = find_latest_report(self.workspace / COUNCIL_DIR, REPORT_PATTERNS[num], state.epic_id)
        except ReportNotFoundError as exc:
            raise PhasedRunError(
                f"{name} phase: council report not found (phase may not have completed): {exc}"
            ) from exc
        try:
            verdict = extract_verdict(report)
        except (VerdictNotFoundError, OSError) as exc:
            raise PhasedRunError(f"{name} phase: could not extract verdict from {report}: {exc}") from exc

        state.verdicts[VERDICT_KEYS[num]] = verdict.value
        print(f"{label} verdict: {verdict.value}")
        if verdict is not Verdict.FAIL:
            return
        try:
            findings = extract_findings(report, self.config.max_findings)
        except OSError as exc:
            logger.debug("Could not extract findings from %s: %s", report, exc)
            findings = []
        raise GateFailure(num, verdict.value, findings, str(report))

    def _after_crank(self, state: PhasedState, num: int) -> None:
        if not state.epic_id:
            return
        try:
            status = self.tracker.crank_status(state.epic_id)
        except TrackerError as exc:
            logger.warning("Could not check crank completion (continuing to vibe): %s", exc)
            return
        print(f"Crank status: {status.value}")
        if status in (CrankStatus.BLOCKED, CrankStatus.PARTIAL):
            raise GateFailure(num, status.value, [], f"{self.tracker.name} children {state.epic_id}")

    def _retry_gate(self, state: PhasedState, num: int, gate: GateFailure) -> None:
        """Feed findings back and re-run *num* until its gate passes.

        Each failure costs one attempt; reaching ``max_retries`` attempts
        raises :class:`GateRetriesExhausted`.
        """
        name = phase_name(num)
        key = attempt_key(num)
        max_retries = self.config.max_retries

        while True:
            state.attempts[key] = state.attempts.get(key, 0) + 1
            attempt = state.attempts[key]
            if attempt >= max_retries:
                message = (
                    f"{name} failed {max_retries} times. Last report: {gate.report}. "
                    "Manual intervention needed."
                )
                print(message)
                self.log.append(name, message)
                raise GateRetriesExhausted(num, gate.report)

            print(f"{name}: {gate.verdict} (attempt {attempt}/{max_retries}) - retrying")
            self.log.append(name, f"RETRY attempt {attempt + 1}/{max_retries}")

            retry_prompt = build_retry_prompt(
                self.workspace,
                num,
                state,
                attempt=attempt + 1,
                max_retries=max_retries,
                findings=gate.findings,
                interactive=self.config.interactive,
                catalog=self.catalog,
            )
            print(f"Spawning retry for phase {num} ({len(gate.findings)} finding(s))")
            self._spawn(state, retry_prompt, num)

            print(f"Re-running phase {num} after retry")
            self._spawn(state, self._phase_prompt(state, num), num)

            try:
                self._post_process(state, num)
            except GateFailure as again:
                gate = again
                continue
            return
