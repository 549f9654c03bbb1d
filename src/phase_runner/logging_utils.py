"""Configure loguru and format session events for logs."""

from __future__ import annotations

import json
import sys
from typing import Any

from loguru import logger

from .models import SessionEvent

_TEXT_LIMIT = 240


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _clip(text: str) -> str:
    return (text[:_TEXT_LIMIT] + "…") if len(text) > _TEXT_LIMIT else text


def summarize_session_event(event: SessionEvent | None) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a session event.

    Args:
        event: Event to summarize (or None).

    Returns:
        A dictionary suitable for logging or serialization.
    """
    if event is None:
        return {"event": None}

    d: dict[str, Any] = {"event": event.type, "session_id": event.session_id}
    props = event.properties

    if event.is_error:
        d["error"] = _clip(event.error_message)
    elif event.type.startswith("tool."):
        d["tool"] = props.get("tool") or props.get("name")
        if props.get("error"):
            d["error"] = _clip(str(props["error"]))
    elif event.type == "message.part.updated":
        part = props.get("part")
        if isinstance(part, dict):
            d["part_type"] = part.get("type")
            if part.get("type") == "text":
                d["text"] = _clip(str(part.get("text") or ""))

    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
