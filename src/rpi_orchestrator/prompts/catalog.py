"""Prompt catalog for phase sessions.

Loads templates from ``templates.yaml`` (next to this module) and merges a
user-override file at ``~/.rpi_orchestrator/prompt_overrides.yaml`` on top
of the built-in defaults.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "templates.yaml"
_USER_OVERRIDE = Path.home() / ".rpi_orchestrator" / "prompt_overrides.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict on failure."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


class PromptCatalog:
    """Serves the per-phase prompt templates.

    Usage::

        catalog = PromptCatalog()
        catalog.invocation(1)   # '/research "{goal}"{auto_flag}'
        catalog.budget(4)
    """

    def __init__(self, extra_path: Path | None = None) -> None:
        self._data: dict[str, Any] = {}
        self._load(extra_path)

    def _load(self, extra_path: Path | None = None) -> None:
        self._data = _load_yaml(_BUILTIN_YAML)

        if _USER_OVERRIDE.exists():
            overrides = _load_yaml(_USER_OVERRIDE)
            if overrides:
                self._data = _deep_merge(self._data, overrides)
                logger.info("Loaded prompt overrides from %s", _USER_OVERRIDE)

        if extra_path and extra_path.exists():
            extra = _load_yaml(extra_path)
            if extra:
                self._data = _deep_merge(self._data, extra)
                logger.info("Loaded extra prompts from %s", extra_path)

    def _phase_entry(self, phase_num: int) -> dict[str, Any]:
        phases = self._data.get("phases", {}) or {}
        entry = phases.get(phase_num) or phases.get(str(phase_num)) or {}
        return entry if isinstance(entry, dict) else {}

    # ── Layers ───────────────────────────────────────────────────

    def discipline(self) -> str:
        return str(self._data.get("discipline") or "")

    def summary_contract(self) -> str:
        return str(self._data.get("summary_contract") or "")

    def context_header(self) -> str:
        return str(self._data.get("context_header") or "--- RPI Context (from prior phases) ---")

    # ── Per-phase entries ────────────────────────────────────────

    def budget(self, phase_num: int) -> str:
        return str(self._phase_entry(phase_num).get("budget") or "")

    def invocation(self, phase_num: int) -> str:
        return str(self._phase_entry(phase_num).get("invocation") or "")

    def retry(self, phase_num: int) -> str:
        """Retry template for a gated phase; empty when the phase has none."""
        return str(self._phase_entry(phase_num).get("retry") or "")

    def fallback_summary(self, phase_num: int) -> str:
        summaries = self._data.get("fallback_summaries", {}) or {}
        return str(summaries.get(phase_num) or summaries.get(str(phase_num)) or "")


_default_catalog: PromptCatalog | None = None


def get_catalog() -> PromptCatalog:
    """Return the module-level singleton catalog (lazy-loaded)."""
    global _default_catalog
    if _default_catalog is None:
        _default_catalog = PromptCatalog()
    return _default_catalog
