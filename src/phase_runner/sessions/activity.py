"""Translate raw agent session events into UI activity records."""

from __future__ import annotations

from typing import Any, Optional

from ..models import SessionEvent, now_iso

# Activity kind -> coarse notification category shown by clients.
NOTIFICATION_TYPES = {
    "task_update": "task_update",
    "agent_completed": "agent_completed",
    "agent_failed": "agent_failed",
    "agent_progress": "agent_progress",
    "agent_output": "agent_message",
    "agent_message": "agent_message",
    "tool_call": "agent_progress",
    "tool_result": "agent_progress",
    "tool_error": "agent_failed",
    "file_activity": "agent_progress",
    "command_running": "agent_progress",
    "command_output": "agent_progress",
    "command_complete": "agent_progress",
}


def _first(props: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = props.get(key)
        if value is not None:
            return value
    return None


def _message_part(props: dict[str, Any]) -> Optional[tuple[str, dict[str, Any]]]:
    part = props.get("part")
    if not isinstance(part, dict):
        return None
    if part.get("type") == "text":
        return "agent_output", {"content": part.get("text") or "", "streaming": True}
    if part.get("type") in ("tool-invocation", "tool-result", "tool"):
        tool = part.get("toolName") or part.get("tool") or "tool"
        state = part.get("state")
        if isinstance(state, dict):
            state = state.get("status")
        return "agent_output", {
            "content": f"[{tool}] {state or ''}".rstrip(),
            "streaming": True,
            "tool": {"name": tool, "state": state},
        }
    return None


def describe_event(event: SessionEvent) -> Optional[tuple[str, dict[str, Any]]]:
    """Map a session event to ``(kind, data)``, or None when it is not interesting."""
    props = event.properties
    kind = event.type

    if kind == "session.start":
        return "task_update", {"status": "running", "message": "Agent started working"}
    if kind == "session.idle":
        return "agent_completed", {"message": "Agent finished processing"}
    if kind == "session.error":
        return "agent_failed", {"error": event.error_message}
    if kind == "message.start":
        return "agent_progress", {"phase": "thinking", "message": "Agent is thinking"}
    if kind == "message.part.updated":
        return _message_part(props)
    if kind in ("message.delta", "message.chunk"):
        return "agent_output", {"content": _first(props, "content", "text") or "", "streaming": True}
    if kind == "message.complete":
        return "agent_message", {"content": props.get("content") or "", "role": "assistant"}
    if kind in ("tool.execute.before", "tool.start"):
        return "tool_call", {
            "tool": _first(props, "tool", "name"),
            "status": "running",
            "input": _first(props, "args", "input"),
        }
    if kind in ("tool.execute.after", "tool.complete"):
        return "tool_result", {
            "tool": _first(props, "tool", "name"),
            "status": "completed",
            "output": _first(props, "result", "output"),
            "success": props.get("success") is not False,
        }
    if kind == "tool.error":
        return "tool_error", {"tool": _first(props, "tool", "name"), "error": props.get("error")}
    if kind == "file.read":
        return "file_activity", {"action": "read", "path": props.get("path")}
    if kind in ("file.write", "file.edit"):
        return "file_activity", {"action": props.get("action") or "write", "path": props.get("path")}
    if kind in ("bash.start", "command.start"):
        return "command_running", {"command": props.get("command")}
    if kind in ("bash.output", "command.output"):
        return "command_output", {
            "output": _first(props, "output", "stdout"),
            "stderr": props.get("stderr"),
        }
    if kind in ("bash.complete", "command.complete"):
        return "command_complete", {"exit_code": _first(props, "exitCode", "exit_code")}
    return None


def activity_payload(task_id: str, event: SessionEvent) -> Optional[dict[str, Any]]:
    """Build the ``agent:activity`` payload for *event*, or None to skip it."""
    described = describe_event(event)
    if described is None:
        return None
    kind, data = described
    return {
        "task_id": task_id,
        "session_id": event.session_id,
        "type": kind,
        "notification_type": NOTIFICATION_TYPES.get(kind, "agent_progress"),
        "timestamp": now_iso(),
        **data,
    }


def extract_text(events: list[SessionEvent], session_id: Optional[str] = None) -> str:
    """Reassemble the assistant's final text from streamed message parts.

    ``message.part.updated`` events carry the whole part each time, so only the
    latest version of each part id is kept.
    """
    parts: dict[str, str] = {}
    order: list[str] = []
    for event in events:
        if session_id is not None and event.session_id != session_id:
            continue
        if event.type != "message.part.updated":
            continue
        part = event.properties.get("part")
        if not isinstance(part, dict) or part.get("type") != "text":
            continue
        key = str(part.get("id") or f"anon-{len(order)}")
        if key not in parts:
            order.append(key)
        parts[key] = str(part.get("text") or "")
    return "\n".join(parts[k] for k in order if parts[k])
