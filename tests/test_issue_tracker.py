"""Tests for issue-tracker listing heuristics and the bd adapter."""

from __future__ import annotations

import subprocess
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from rpi_orchestrator.issue_tracker import (
    BdIssueTracker,
    TrackerError,
    parse_crank_completion,
    parse_epic_id,
    parse_fast_path,
)
from rpi_orchestrator.schemas import CrankStatus

pytestmark = pytest.mark.unit


def test_parse_epic_id() -> None:
    assert parse_epic_id("○ ag-5k2 [epic] Rate limiting\n○ ag-9x1 [epic] Other") == "ag-5k2"
    assert parse_epic_id("No issues found.") == ""


class TestFastPath:
    def test_two_open_children_is_fast(self) -> None:
        assert parse_fast_path("○ ag-1.1 open task\n○ ag-1.2 open task\n") is True

    def test_three_children_is_not_fast(self) -> None:
        assert parse_fast_path("○ a open\n○ b open\n○ c open\n") is False

    def test_blocked_child_is_not_fast(self) -> None:
        assert parse_fast_path("○ a open\n● b BLOCKED on a\n") is False

    def test_empty_listing_is_fast(self) -> None:
        assert parse_fast_path("\n") is True


class TestCrankCompletion:
    def test_all_closed(self) -> None:
        assert parse_crank_completion("✓ a closed\n✓ b closed\n") is CrankStatus.DONE

    def test_empty_is_done(self) -> None:
        assert parse_crank_completion("") is CrankStatus.DONE

    def test_blocked(self) -> None:
        assert parse_crank_completion("✓ a closed\n● b blocked\n") is CrankStatus.BLOCKED

    def test_partial(self) -> None:
        assert parse_crank_completion("✓ a closed\n○ b open\n") is CrankStatus.PARTIAL


class TestBdIssueTracker:
    def test_open_epic_id(self) -> None:
        result = SimpleNamespace(returncode=0, stdout="○ ag-77q [epic] Goal\n", stderr="")
        with patch("rpi_orchestrator.issue_tracker.subprocess.run", return_value=result) as run:
            assert BdIssueTracker().open_epic_id() == "ag-77q"

        assert run.call_args.args[0] == ["bd", "list", "--type", "epic", "--status", "open"]

    def test_no_epic_raises(self) -> None:
        result = SimpleNamespace(returncode=0, stdout="No issues found.\n", stderr="")
        with patch("rpi_orchestrator.issue_tracker.subprocess.run", return_value=result):
            with pytest.raises(TrackerError, match="no epic"):
                BdIssueTracker().open_epic_id()

    def test_nonzero_exit_raises(self) -> None:
        result = SimpleNamespace(returncode=1, stdout="", stderr="database locked")
        with patch("rpi_orchestrator.issue_tracker.subprocess.run", return_value=result):
            with pytest.raises(TrackerError, match="database locked"):
                BdIssueTracker().crank_status("ag-1")

    def test_missing_binary_raises(self) -> None:
        with patch("rpi_orchestrator.issue_tracker.subprocess.run", side_effect=FileNotFoundError("bd")):
            with pytest.raises(TrackerError):
                BdIssueTracker().detect_fast_path("ag-1")

    def test_timeout_raises(self) -> None:
        with patch(
            "rpi_orchestrator.issue_tracker.subprocess.run",
            side_effect=subprocess.TimeoutExpired(["bd"], 30),
        ):
            with pytest.raises(TrackerError):
                BdIssueTracker().crank_status("ag-1")

    def test_crank_status_uses_children(self) -> None:
        result = SimpleNamespace(returncode=0, stdout="○ ag-1.1 open\n", stderr="")
        with patch("rpi_orchestrator.issue_tracker.subprocess.run", return_value=result) as run:
            assert BdIssueTracker(binary="/opt/bd").crank_status("ag-1") is CrankStatus.PARTIAL

        assert run.call_args.args[0] == ["/opt/bd", "children", "ag-1"]
