"""Per-task notification channels.

Observers join a task's channel and receive every event published to that
task while they are attached. Delivery is best effort: nothing is queued for
observers that join later, and an observer whose delivery raises is dropped.

Protocol (server -> client, for WebSocket observers)::

    {"event": "merge:approval_required", "data": {...}}
"""

from __future__ import annotations

import inspect
import itertools
import json
from typing import Any, Awaitable, Callable, Optional, Union

from fastapi import WebSocket
from loguru import logger

Observer = Callable[[str, dict[str, Any]], Awaitable[None]]
JoinHook = Callable[[str, str], Union[None, Awaitable[Any]]]


class WebSocketObserver:
    """Adapts a connected WebSocket to the observer call signature."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    async def __call__(self, event: str, data: dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps({"event": event, "data": data}, default=str))


class NotificationBridge:
    """Usage::

        bridge = NotificationBridge()
        observer_id = await bridge.join(task_id, observer)
        await bridge.to_task(task_id, "phase:start", {"phase": "analysis"})
        bridge.leave(task_id, observer_id)
    """

    def __init__(self) -> None:
        self._observers: dict[str, dict[str, Observer]] = {}
        self._join_hooks: list[JoinHook] = []
        self._ids = itertools.count(1)

    def on_observer_join(self, hook: JoinHook) -> None:
        """Run *hook(task_id, observer_id)* every time an observer joins a task channel."""
        self._join_hooks.append(hook)

    async def join(self, task_id: str, observer: Observer, observer_id: Optional[str] = None) -> str:
        oid = observer_id or f"obs-{next(self._ids)}"
        self._observers.setdefault(task_id, {})[oid] = observer
        logger.debug("Observer {} joined task {} (total={})", oid, task_id, self.observer_count(task_id))
        for hook in list(self._join_hooks):
            try:
                maybe = hook(task_id, oid)
                if inspect.isawaitable(maybe):
                    await maybe
            except Exception:
                logger.exception("Join hook failed for task {}", task_id)
        return oid

    def leave(self, task_id: str, observer_id: str) -> bool:
        observers = self._observers.get(task_id)
        if not observers or observers.pop(observer_id, None) is None:
            return False
        if not observers:
            self._observers.pop(task_id, None)
        logger.debug("Observer {} left task {}", observer_id, task_id)
        return True

    def observer_count(self, task_id: str) -> int:
        return len(self._observers.get(task_id, {}))

    def tasks(self) -> list[str]:
        return sorted(self._observers)

    async def to_task(self, task_id: str, event: str, payload: Optional[dict[str, Any]] = None) -> int:
        """Push an event to every observer of *task_id*. Returns the delivery count."""
        snapshot = list(self._observers.get(task_id, {}).items())
        if not snapshot:
            logger.trace("No observers for {} on task {}", event, task_id)
            return 0

        data = payload or {}
        delivered = 0
        stale: list[str] = []
        for oid, observer in snapshot:
            try:
                await observer(event, data)
                delivered += 1
            except Exception as exc:
                logger.warning("Dropping observer {} on task {}: {}", oid, task_id, exc)
                stale.append(oid)

        for oid in stale:
            self.leave(task_id, oid)
        return delivered

    async def to_observer(
        self, task_id: str, observer_id: str, event: str, payload: Optional[dict[str, Any]] = None
    ) -> bool:
        """Push an event to a single observer of *task_id*. Returns False if it is gone or failed."""
        observer = self._observers.get(task_id, {}).get(observer_id)
        if observer is None:
            return False
        try:
            await observer(event, payload or {})
        except Exception as exc:
            logger.warning("Dropping observer {} on task {}: {}", observer_id, task_id, exc)
            self.leave(task_id, observer_id)
            return False
        return True
