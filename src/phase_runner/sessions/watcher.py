"""Wait for an agent session to reach a terminal state.

The watcher opens its subscription *before* the caller sends input, so a
session that finishes quickly cannot slip its ``session.idle`` event past us::

    async with watcher.watch(session_id, directory) as watch:
        await source.send_input(session_id, prompt, directory)
        events = await watch.wait_for_terminal(on_event=forward)
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from loguru import logger

from ..constants import DEFAULT_SESSION_TIMEOUT_SECONDS
from ..errors import SessionAborted, SessionError, SessionStreamClosed, SessionTimeout
from ..logging_utils import summarize_session_event
from ..models import SessionEvent
from .base import SessionEventSource, SessionSubscription

EventCallback = Callable[[SessionEvent], Union[None, Awaitable[None]]]


async def _next(subscription: SessionSubscription) -> Optional[SessionEvent]:
    try:
        return await subscription.__anext__()
    except StopAsyncIteration:
        return None


class SessionWatch:
    """One armed wait on a single session. Usable once."""

    def __init__(
        self,
        watcher: "CompletionWatcher",
        session_id: str,
        subscription: SessionSubscription,
        aborted: asyncio.Event,
    ) -> None:
        self._watcher = watcher
        self.session_id = session_id
        self._subscription = subscription
        self._aborted = aborted
        self.events: list[SessionEvent] = []

    async def wait_for_terminal(
        self,
        timeout: Optional[float] = None,
        on_event: Optional[EventCallback] = None,
    ) -> list[SessionEvent]:
        """Collect events until the session goes idle, errors or times out.

        Every event seen on the stream, including other sessions' events, is
        accumulated and passed to *on_event* before the terminal checks run.

        Returns:
            All collected events, the idle event last.

        Raises:
            SessionError: the session reported an error.
            SessionAborted: ``CompletionWatcher.abort`` was called for it.
            SessionStreamClosed: the stream ended first.
            SessionTimeout: no terminal event within *timeout* seconds.
        """
        limit = self._watcher.default_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        started = loop.time()
        abort_waiter = loop.create_task(self._aborted.wait())
        next_task: Optional[asyncio.Task[Optional[SessionEvent]]] = None
        try:
            while True:
                remaining = limit - (loop.time() - started)
                if remaining <= 0:
                    raise SessionTimeout(self.session_id, limit, self.events)

                next_task = loop.create_task(_next(self._subscription))
                done, _ = await asyncio.wait(
                    {next_task, abort_waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_task not in done:
                    next_task.cancel()
                    await asyncio.gather(next_task, return_exceptions=True)
                    if abort_waiter in done:
                        raise SessionAborted(self.session_id, "Session aborted", self.events)
                    raise SessionTimeout(self.session_id, limit, self.events)

                event = next_task.result()
                if event is None:
                    raise SessionStreamClosed(
                        self.session_id,
                        "Event stream closed before the session finished",
                        self.events,
                    )

                self.events.append(event)
                if on_event is not None:
                    maybe = on_event(event)
                    if inspect.isawaitable(maybe):
                        await maybe

                if event.session_id == self.session_id:
                    if event.is_idle:
                        logger.debug("Session {} idle after {} events", self.session_id, len(self.events))
                        return self.events
                    if event.is_error:
                        logger.warning("Session {} error: {}", self.session_id, summarize_session_event(event))
                        raise SessionError(self.session_id, event.error_message, self.events)

                if loop.time() - started > limit:
                    raise SessionTimeout(self.session_id, limit, self.events)
        finally:
            pending = [t for t in (abort_waiter, next_task) if t is not None and not t.done()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


class CompletionWatcher:
    def __init__(
        self,
        source: SessionEventSource,
        default_timeout: float = DEFAULT_SESSION_TIMEOUT_SECONDS,
    ) -> None:
        self.source = source
        self.default_timeout = default_timeout
        self._aborts: dict[str, asyncio.Event] = {}

    @asynccontextmanager
    async def watch(
        self,
        session_id: str,
        directory: Optional[Path | str] = None,
    ) -> AsyncIterator[SessionWatch]:
        """Subscribe now; yield a handle whose wait sees everything from here on."""
        subscription = await self.source.subscribe(directory)
        aborted = asyncio.Event()
        self._aborts[session_id] = aborted
        try:
            yield SessionWatch(self, session_id, subscription, aborted)
        finally:
            if self._aborts.get(session_id) is aborted:
                del self._aborts[session_id]
            await subscription.aclose()

    async def wait_for_terminal(
        self,
        session_id: str,
        timeout: Optional[float] = None,
        on_event: Optional[EventCallback] = None,
        directory: Optional[Path | str] = None,
    ) -> list[SessionEvent]:
        """Wait on a fresh subscription. Events emitted before this call are not seen."""
        async with self.watch(session_id, directory) as watch:
            return await watch.wait_for_terminal(timeout=timeout, on_event=on_event)

    def is_watching(self, session_id: str) -> bool:
        return session_id in self._aborts

    async def abort(self, session_id: str) -> None:
        """Abort the session upstream and end any wait on it."""
        await self.source.abort(session_id)
        aborted = self._aborts.get(session_id)
        if aborted is not None:
            aborted.set()
