"""Contract for external agent sessions and their event streams."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from ..models import SessionEvent


class SessionSubscription(ABC):
    """One open, ordered, non-restartable view of a session event stream.

    The subscription is connected when :meth:`SessionEventSource.subscribe`
    returns. Events emitted after that point are delivered in emission order.
    Once closed (or once the stream ends) iteration stops for good; a new
    subscription must be opened, and it may miss events emitted in between.
    """

    def __init__(self) -> None:
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "SessionSubscription":
        return self

    async def __anext__(self) -> SessionEvent:
        if self._closed:
            raise StopAsyncIteration
        try:
            return await self._next_event()
        except StopAsyncIteration:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._release()

    async def __aenter__(self) -> "SessionSubscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @abstractmethod
    async def _next_event(self) -> SessionEvent:
        """Return the next event or raise StopAsyncIteration."""
        ...

    @abstractmethod
    async def _release(self) -> None:
        ...


class SessionEventSource(ABC):
    """Drives external agent sessions and exposes their event stream."""

    @abstractmethod
    async def subscribe(self, directory: Optional[Path | str] = None) -> SessionSubscription:
        """Open a new subscription to the (possibly multiplexed) event stream."""
        ...

    @abstractmethod
    async def create_session(self, title: str, directory: Optional[Path | str] = None) -> str:
        ...

    @abstractmethod
    async def send_input(
        self,
        session_id: str,
        text: str,
        directory: Optional[Path | str] = None,
    ) -> None:
        """Send input to a session. Returns once the input is accepted, not when work finishes."""
        ...

    @abstractmethod
    async def abort(self, session_id: str) -> None:
        ...

    async def aclose(self) -> None:
        """Release any connection held by the source."""
