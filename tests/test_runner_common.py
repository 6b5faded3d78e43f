"""Tests for session environment and payload coercion helpers."""

from __future__ import annotations

import pytest

from rpi_orchestrator.runner_common import (
    NESTING_GUARD_ENV,
    coerce_float,
    coerce_int,
    resolve_binary,
    session_env,
)

pytestmark = pytest.mark.unit


def test_session_env_strips_nesting_guard() -> None:
    env = session_env({NESTING_GUARD_ENV: "1", "PATH": "/usr/bin"})
    assert env == {"PATH": "/usr/bin"}


def test_session_env_copies_process_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(NESTING_GUARD_ENV, "1")
    monkeypatch.setenv("RPI_TEST_MARKER", "yes")

    env = session_env()

    assert NESTING_GUARD_ENV not in env
    assert env["RPI_TEST_MARKER"] == "yes"


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, 0), (True, 1), (7, 7), (3.9, 3), (float("inf"), 0), ("1,200", 1200), ("2.5", 2), ("x", 0)],
)
def test_coerce_int(value: object, expected: int) -> None:
    assert coerce_int(value) == expected


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, 0.0), (False, 0.0), ("0.25", 0.25), (float("nan"), 0.0), ("abc", 0.0), (2, 2.0)],
)
def test_coerce_float(value: object, expected: float) -> None:
    assert coerce_float(value) == expected


def test_resolve_binary_strips_quotes_and_keeps_unknown() -> None:
    assert resolve_binary('"/definitely/not/here/claude"') == "/definitely/not/here/claude"
    assert resolve_binary("   ") == ""
