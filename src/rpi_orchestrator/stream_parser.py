"""Progress tracking from an agent session's ``stream-json`` output.

Three event shapes matter::

    {"type": "system", "subtype": "init", "session_id": "...", "model": "..."}
    {"type": "assistant", "message": {"content": [{"type": "tool_use", "name": "Read"}]}}
    {"type": "result", "total_cost_usd": 0.12, "num_turns": 7, "duration_ms": 93000,
     "usage": {"input_tokens": 1200, "output_tokens": 340}}

Everything else is ignored; malformed lines are skipped.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from collections.abc import Callable, Iterable
from typing import Any

from rpi_orchestrator.runner_common import coerce_float, coerce_int
from rpi_orchestrator.schemas import PhaseProgress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PhaseProgress], None]


def _tool_names(data: dict[str, Any]) -> list[str]:
    message = data.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [
        str(block.get("name") or "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("name")
    ]


def _apply_usage(progress: PhaseProgress, data: dict[str, Any]) -> None:
    usage = data.get("usage")
    if not isinstance(usage, dict):
        return
    input_tokens = max(0, coerce_int(usage.get("input_tokens", 0)))
    output_tokens = max(0, coerce_int(usage.get("output_tokens", 0)))
    cache_read = max(0, coerce_int(usage.get("cache_read_input_tokens", 0)))
    cache_creation = max(0, coerce_int(usage.get("cache_creation_input_tokens", 0)))
    progress.input_tokens = input_tokens
    progress.output_tokens = output_tokens
    progress.total_tokens = input_tokens + output_tokens + cache_read + cache_creation


def apply_event(progress: PhaseProgress, data: dict[str, Any]) -> bool:
    """Fold one decoded event into *progress*.  Returns False for non-events."""
    etype = str(data.get("type") or "").lower().strip()
    if not etype:
        return False

    if etype == "system" and data.get("subtype") == "init":
        progress.session_id = str(data.get("session_id") or "")
        progress.model = str(data.get("model") or "")
    elif etype == "assistant":
        for name in _tool_names(data):
            progress.tool_count += 1
            progress.last_tool = name
    elif etype == "result":
        progress.cost_usd = coerce_float(data.get("total_cost_usd"))
        progress.turns = max(0, coerce_int(data.get("num_turns", 0)))
        duration_ms = coerce_float(data.get("duration_ms"))
        if duration_ms > 0:
            progress.elapsed_seconds = duration_ms / 1000.0
        _apply_usage(progress, data)

    progress.last_update = dt.datetime.now(dt.timezone.utc)
    return True


def parse_stream_events(
    lines: Iterable[str],
    name: str = "",
    on_update: ProgressCallback | None = None,
) -> PhaseProgress:
    """Consume newline-delimited JSON events, returning cumulative progress.

    *on_update* is called after every successfully parsed event.
    """
    progress = PhaseProgress(name=name)
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON stream line: %s", line[:200])
            continue
        if not isinstance(data, dict) or not apply_event(progress, data):
            continue
        if on_update is not None:
            on_update(progress)
    return progress
