"""Tests for council report verdict and finding extraction."""

from __future__ import annotations

from pathlib import Path

import pytest

from rpi_orchestrator.schemas import Verdict
from rpi_orchestrator.verdicts import (
    ReportNotFoundError,
    VerdictNotFoundError,
    extract_findings,
    extract_verdict,
    find_latest_report,
)

pytestmark = pytest.mark.unit

FAILING_REPORT = """\
# Pre-mortem: rate limiting

## Council Verdict: FAIL

FINDING: Limiter state is per-process | FIX: Move counters to Redis | REF: api/limits.py:42
FINDING: No load test | FIX: Add a locust scenario | REF: tests/load/
"""


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


class TestExtractVerdict:
    def test_council_heading(self, tmp_path: Path) -> None:
        report = _write(tmp_path / "r.md", FAILING_REPORT)
        assert extract_verdict(report) is Verdict.FAIL

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("intro\nverdict: warn\n", Verdict.WARN),
            ("## Council Verdict: **PASS**\n", Verdict.PASS),
            ("> Verdict: FAIL (two blockers)\n", Verdict.FAIL),
        ],
    )
    def test_marker_variants(self, tmp_path: Path, text: str, expected: Verdict) -> None:
        assert extract_verdict(_write(tmp_path / "r.md", text)) is expected

    def test_first_marker_wins(self, tmp_path: Path) -> None:
        report = _write(tmp_path / "r.md", "## Council Verdict: WARN\n\nverdict: FAIL\n")
        assert extract_verdict(report) is Verdict.WARN

    def test_missing_marker_raises(self, tmp_path: Path) -> None:
        report = _write(tmp_path / "r.md", "# Notes\n\nLooks fine overall.\n")
        with pytest.raises(VerdictNotFoundError):
            extract_verdict(report)


class TestExtractFindings:
    def test_structured_findings(self, tmp_path: Path) -> None:
        findings = extract_findings(_write(tmp_path / "r.md", FAILING_REPORT))

        assert [f.description for f in findings] == ["Limiter state is per-process", "No load test"]
        assert findings[0].fix == "Move counters to Redis"
        assert findings[0].ref == "api/limits.py:42"

    def test_cap(self, tmp_path: Path) -> None:
        text = "".join(f"FINDING: f{i} | FIX: x | REF: y\n" for i in range(8))
        assert len(extract_findings(_write(tmp_path / "r.md", text), max_findings=5)) == 5

    def test_numbered_list_fallback(self, tmp_path: Path) -> None:
        report = _write(
            tmp_path / "r.md",
            "## Council Verdict: FAIL\n\n1. **Race in cache** - two writers clobber\n2. **No docs** - README stale\n",
        )

        findings = extract_findings(report)

        assert [f.description for f in findings] == [
            "Race in cache: two writers clobber",
            "No docs: README stale",
        ]
        assert all(f.fix == "See council report" and f.ref == str(report) for f in findings)

    def test_no_findings(self, tmp_path: Path) -> None:
        assert extract_findings(_write(tmp_path / "r.md", "verdict: FAIL\n")) == []


class TestFindLatestReport:
    def test_lexicographically_last(self, tmp_path: Path) -> None:
        _write(tmp_path / "2026-01-01-pre-mortem-x.md", "")
        latest = _write(tmp_path / "2026-02-01-pre-mortem-y.md", "")
        _write(tmp_path / "2026-03-01-vibe-z.md", "")
        _write(tmp_path / "2026-04-01-pre-mortem-notes.txt", "")

        assert find_latest_report(tmp_path, "pre-mortem") == latest

    def test_epic_scoped_report_preferred(self, tmp_path: Path) -> None:
        scoped = _write(tmp_path / "2026-01-01-vibe-ag-5k2.md", "")
        _write(tmp_path / "2026-02-01-vibe-other.md", "")

        assert find_latest_report(tmp_path, "vibe", "ag-5k2") == scoped
        assert find_latest_report(tmp_path, "vibe", "ag-zzz").name == "2026-02-01-vibe-other.md"

    def test_no_match_raises(self, tmp_path: Path) -> None:
        _write(tmp_path / "2026-01-01-vibe.md", "")
        with pytest.raises(ReportNotFoundError):
            find_latest_report(tmp_path, "pre-mortem")

    def test_missing_directory_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ReportNotFoundError):
            find_latest_report(tmp_path / "nope", "vibe")
