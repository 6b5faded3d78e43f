"""Tests for best-effort agent mail and checkpoint calls."""

from __future__ import annotations

import subprocess
from collections.abc import Sequence

import pytest

from rpi_orchestrator.observability import RunObserver

pytestmark = pytest.mark.unit


class _Recorder:
    def __init__(self, code: int = 0, exc: Exception | None = None) -> None:
        self.calls: list[list[str]] = []
        self.code = code
        self.exc = exc

    def __call__(self, cmd: Sequence[str]) -> int:
        self.calls.append(list(cmd))
        if self.exc is not None:
            raise self.exc
        return self.code


def test_mail_lifecycle_when_gt_installed() -> None:
    runner = _Recorder()
    observer = RunObserver(look_path=lambda name: f"/usr/bin/{name}", runner=runner)

    assert observer.register("abc")
    assert observer.emit_status("abc", "crank", "started")
    assert observer.deregister("abc")

    assert runner.calls == [
        ["/usr/bin/gt", "mail", "register", "rpi-abc"],
        ["/usr/bin/gt", "mail", "send", "mayor", "rpi-abc: crank started"],
        ["/usr/bin/gt", "mail", "deregister", "rpi-abc"],
    ]


def test_mail_skipped_without_gt_or_run_id() -> None:
    runner = _Recorder()
    lookups: list[str] = []

    def look_path(name: str) -> None:
        lookups.append(name)
        return None

    observer = RunObserver(look_path=look_path, runner=runner)

    assert observer.register("abc") is False
    assert observer.emit_status("abc", "plan", "completed") is False
    assert RunObserver(look_path=lambda _n: "/bin/gt", runner=runner).register("") is False
    assert runner.calls == []
    assert lookups == ["gt"]


def test_failures_never_raise() -> None:
    missing = RunObserver(look_path=lambda _n: "/bin/gt", runner=_Recorder(exc=FileNotFoundError("ao")))
    timeout = RunObserver(
        look_path=lambda _n: "/bin/gt",
        runner=_Recorder(exc=subprocess.TimeoutExpired(["gt"], 30)),
    )
    failing = RunObserver(look_path=lambda _n: "/bin/gt", runner=_Recorder(code=2))

    assert missing.record_checkpoint("research") is False
    assert timeout.emit_status("abc", "vibe", "started") is False
    assert failing.register("abc") is False


def test_checkpoint_command() -> None:
    runner = _Recorder()
    assert RunObserver(runner=runner).record_checkpoint("implement")
    assert runner.calls == [["ao", "ratchet", "record", "implement"]]
    assert RunObserver(runner=runner, checkpoint_command=()).record_checkpoint("x") is False
