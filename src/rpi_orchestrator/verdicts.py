"""Gate verdict and finding extraction from council reports.

Reports are markdown files under ``.agents/council``.  A gate-evaluable
report carries a marker line such as ``## Council Verdict: FAIL`` or
``verdict: WARN``; findings are either explicit
``FINDING: ... | FIX: ... | REF: ...`` lines or a numbered list of
``1. **Title** - detail`` items.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from rpi_orchestrator.schemas import Finding, Verdict

logger = logging.getLogger(__name__)

COUNCIL_DIR = Path(".agents") / "council"
REPORT_SUFFIX = ".md"
DEFAULT_MAX_FINDINGS = 5

_VERDICT_RE = re.compile(
    r"^[#>*\s]*(?:council\s+)?verdict:\s*\**\s*(PASS|WARN|FAIL)\b",
    re.IGNORECASE | re.MULTILINE,
)
_FINDING_RE = re.compile(
    r"FINDING:\s*(.+?)\s*\|\s*FIX:\s*(.+?)\s*\|\s*REF:\s*(.+?)\s*$",
    re.MULTILINE,
)
_NUMBERED_FINDING_RE = re.compile(r"^\d+\.\s+\*\*(.+?)\*\*\s*[—–-]\s*(.+)$", re.MULTILINE)


class VerdictNotFoundError(ValueError):
    """Raised when a report has no verdict marker line."""


class ReportNotFoundError(FileNotFoundError):
    """Raised when no council report matches the requested pattern."""


def extract_verdict(report_path: str | Path) -> Verdict:
    """Return the first verdict marker in *report_path*.

    Raises :class:`VerdictNotFoundError` when the report has none, since a
    gate cannot be evaluated without it.
    """
    path = Path(report_path)
    text = path.read_text(encoding="utf-8", errors="replace")
    match = _VERDICT_RE.search(text)
    if not match:
        raise VerdictNotFoundError(f"no verdict found in {path}")
    return Verdict(match.group(1).upper())


def extract_findings(report_path: str | Path, max_findings: int = DEFAULT_MAX_FINDINGS) -> list[Finding]:
    """Extract up to *max_findings* structured findings from a report.

    Falls back to the numbered ``**Title** - detail`` form when no explicit
    FINDING lines exist; the report path stands in for the reference.
    """
    path = Path(report_path)
    text = path.read_text(encoding="utf-8", errors="replace")
    if max_findings <= 0:
        return []

    findings = [
        Finding(description=m.group(1), fix=m.group(2), ref=m.group(3))
        for m in _FINDING_RE.finditer(text)
    ][:max_findings]
    if findings:
        return findings

    return [
        Finding(
            description=f"{m.group(1)}: {m.group(2).strip()}",
            fix="See council report",
            ref=str(path),
        )
        for m in _NUMBERED_FINDING_RE.finditer(text)
    ][:max_findings]


def find_latest_report(reports_dir: str | Path, pattern: str, epic_id: str = "") -> Path:
    """Return the lexicographically last ``*<pattern>*.md`` report.

    Report filenames are date-prefixed, so the last one is the most recent.
    When *epic_id* is given, reports naming that epic win over the rest.
    """
    directory = Path(reports_dir)
    try:
        candidates = sorted(
            entry
            for entry in directory.iterdir()
            if entry.is_file() and pattern in entry.name and entry.name.endswith(REPORT_SUFFIX)
        )
    except OSError as exc:
        raise ReportNotFoundError(f"read council directory {directory}: {exc}") from exc

    if epic_id:
        scoped = [entry for entry in candidates if epic_id in entry.name]
        if scoped:
            candidates = scoped
    if not candidates:
        raise ReportNotFoundError(f"no council report matching {pattern!r} found in {directory}")
    logger.debug("Selected %s report: %s", pattern, candidates[-1])
    return candidates[-1]
