"""Tests for atomic writes and the write-once helper used for summaries."""

from __future__ import annotations

from pathlib import Path

import pytest

import rpi_orchestrator.file_io as file_io

pytestmark = pytest.mark.unit


def test_path_lock_reuses_same_lock_for_resolved_aliases(tmp_path: Path) -> None:
    primary = tmp_path / "rpi" / "phased-state.json"
    alias = tmp_path / "rpi" / ".." / "rpi" / "phased-state.json"

    assert file_io._path_lock(primary) is file_io._path_lock(alias)


def test_replace_with_retry_retries_permission_denied_then_succeeds(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    src = tmp_path / "src.txt"
    dst = tmp_path / "dst.txt"
    src.write_text("new-content", encoding="utf-8")
    dst.write_text("old-content", encoding="utf-8")

    attempts = {"count": 0}
    original_replace = Path.replace

    def flaky_replace(self: Path, target: Path) -> Path:
        if self == src and Path(target) == dst and attempts["count"] < 2:
            attempts["count"] += 1
            raise PermissionError("file locked")
        return original_replace(self, target)

    monkeypatch.setattr(Path, "replace", flaky_replace)
    monkeypatch.setattr(file_io.time, "sleep", lambda _s: None)

    file_io._replace_with_retry(src, dst)

    assert attempts["count"] == 2
    assert dst.read_text(encoding="utf-8") == "new-content"


def test_atomic_write_text_creates_parents_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / ".agents" / "rpi" / "live-status.md"

    file_io.atomic_write_text(target, "# Live Status\n")
    file_io.atomic_write_text(target, "# Live Status\n\nupdated\n")

    assert target.read_text(encoding="utf-8") == "# Live Status\n\nupdated\n"
    assert sorted(p.name for p in target.parent.iterdir()) == ["live-status.md"]


def test_write_text_if_absent_never_overwrites_content(tmp_path: Path) -> None:
    target = tmp_path / "phase-1-summary.md"

    assert file_io.write_text_if_absent(target, "first") is True
    assert file_io.write_text_if_absent(target, "second") is False
    assert target.read_text(encoding="utf-8") == "first"


def test_write_text_if_absent_fills_empty_file(tmp_path: Path) -> None:
    target = tmp_path / "phase-2-summary.md"
    target.write_text("", encoding="utf-8")

    assert file_io.write_text_if_absent(target, "fallback") is True
    assert target.read_text(encoding="utf-8") == "fallback"


def test_append_text_appends_lines(tmp_path: Path) -> None:
    target = tmp_path / "logs" / "phased-orchestration.log"

    file_io.append_text(target, "one\n")
    file_io.append_text(target, "two\n")

    assert target.read_text(encoding="utf-8") == "one\ntwo\n"


def test_read_text_if_exists_returns_empty_for_missing(tmp_path: Path) -> None:
    assert file_io.read_text_if_exists(tmp_path / "missing.md") == ""
