"""Tool checks run before a phased run starts."""

from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class PreflightCheck:
    """A single readiness check result."""

    key: str
    label: str
    status: str
    detail: str
    hint: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "key": self.key,
            "label": self.label,
            "status": self.status,
            "detail": self.detail,
            "hint": self.hint,
        }


@dataclass(frozen=True)
class PreflightReport:
    """Readiness of the external tools a run depends on."""

    checks: list[PreflightCheck]

    @property
    def ready(self) -> bool:
        return all(check.status != "fail" for check in self.checks)

    def failure_messages(self) -> list[str]:
        return [
            f"{check.label}: {check.hint or check.detail}"
            for check in self.checks
            if check.status == "fail"
        ]

    def to_dict(self) -> dict[str, object]:
        return {
            "checks": [c.to_dict() for c in self.checks],
            "ready": self.ready,
        }


def _binary_check(
    key: str,
    label: str,
    binary: str,
    *,
    required: bool,
    hint: str,
    look_path: Callable[[str], str | None],
) -> PreflightCheck:
    resolved = look_path(binary) if binary else None
    if resolved:
        return PreflightCheck(key, label, "pass", f"found at {resolved}")
    return PreflightCheck(
        key,
        label,
        "fail" if required else "warn",
        f"{binary or '(empty)'} not found on PATH",
        hint,
    )


def build_preflight_report(
    *,
    claude_binary: str = "claude",
    use_worktree: bool = True,
    look_path: Callable[[str], str | None] = shutil.which,
) -> PreflightReport:
    """Check the agent CLI (required), git (required for worktrees) and optional helpers."""
    checks = [
        _binary_check(
            "claude",
            "Agent CLI",
            claude_binary,
            required=True,
            hint=f"{claude_binary} CLI not found on PATH (required for spawning phase sessions)",
            look_path=look_path,
        ),
        _binary_check(
            "git",
            "Git",
            "git",
            required=use_worktree,
            hint="install git or pass --no-worktree",
            look_path=look_path,
        ),
        _binary_check(
            "bd",
            "Issue tracker",
            "bd",
            required=False,
            hint="plan and crank gates need the bd CLI",
            look_path=look_path,
        ),
        _binary_check(
            "ntm",
            "Session multiplexer",
            "ntm",
            required=False,
            hint="optional: install ntm to attach to running phases",
            look_path=look_path,
        ),
    ]
    return PreflightReport(checks=checks)
