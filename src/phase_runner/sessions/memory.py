"""In-process session source for local runs and tests."""

from __future__ import annotations

import asyncio
import itertools
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from ..constants import SESSION_ERROR, SESSION_IDLE
from ..models import SessionEvent
from .base import SessionEventSource, SessionSubscription

# (source, session_id, text) -> None; emits events through source.emit()
Responder = Callable[["InMemorySessionSource", str, str], Awaitable[None]]

_CLOSED = object()


class _QueueSubscription(SessionSubscription):
    def __init__(self, source: "InMemorySessionSource") -> None:
        super().__init__()
        self._source = source
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def push(self, item: Any) -> None:
        self._queue.put_nowait(item)

    async def _next_event(self) -> SessionEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def _release(self) -> None:
        self._source._detach(self)


class InMemorySessionSource(SessionEventSource):
    """Multiplexes every session's events onto one in-process stream.

    ``emit()`` delivers an event to every subscription open at that moment.
    An optional *responder* is scheduled on each ``send_input`` call and plays
    the part of the agent by emitting events.
    """

    def __init__(self, responder: Optional[Responder] = None) -> None:
        self.responder = responder
        self.sessions: dict[str, dict[str, Any]] = {}
        self.inputs: list[tuple[str, str]] = []
        self.aborted: list[str] = []
        self._subscriptions: list[_QueueSubscription] = []
        self._counter = itertools.count(1)
        self._background: set[asyncio.Task[None]] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self, directory: Optional[Path | str] = None) -> SessionSubscription:
        sub = _QueueSubscription(self)
        self._subscriptions.append(sub)
        return sub

    def _detach(self, sub: _QueueSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    async def create_session(self, title: str, directory: Optional[Path | str] = None) -> str:
        session_id = f"ses-{next(self._counter)}"
        self.sessions[session_id] = {"title": title, "directory": str(directory) if directory else None}
        logger.debug("Created in-memory session {} ({})", session_id, title)
        return session_id

    async def send_input(
        self,
        session_id: str,
        text: str,
        directory: Optional[Path | str] = None,
    ) -> None:
        self.inputs.append((session_id, text))
        if self.responder is not None:
            task = asyncio.get_running_loop().create_task(self.responder(self, session_id, text))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def abort(self, session_id: str) -> None:
        self.aborted.append(session_id)

    def emit(self, event: SessionEvent) -> None:
        for sub in list(self._subscriptions):
            sub.push(event)

    def emit_idle(self, session_id: str) -> None:
        self.emit(SessionEvent(type=SESSION_IDLE, session_id=session_id, properties={"sessionID": session_id}))

    def emit_error(self, session_id: str, message: str) -> None:
        self.emit(
            SessionEvent(
                type=SESSION_ERROR,
                session_id=session_id,
                properties={"sessionID": session_id, "error": message},
            )
        )

    def emit_text(self, session_id: str, text: str) -> None:
        self.emit(
            SessionEvent(
                type="message.part.updated",
                session_id=session_id,
                properties={"sessionID": session_id, "part": {"type": "text", "text": text}},
            )
        )

    def close_stream(self) -> None:
        """End every open subscription, as a dropped connection would."""
        for sub in list(self._subscriptions):
            sub.push(_CLOSED)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        self.close_stream()
