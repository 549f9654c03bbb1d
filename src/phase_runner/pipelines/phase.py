"""Base classes for pipeline phases.

Each phase is one stage of a pipeline. ``Phase.run`` is the only entry point
the orchestrator uses; subclasses implement ``execute``. ``run`` guarantees a
``phase:start`` / ``phase:complete`` pair on the task channel for every
invocation and turns any exception from ``execute`` into a failed result.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from ..constants import AGENT_ACTIVITY, PHASE_COMPLETE, PHASE_START, SESSION_CREATED
from ..errors import ExternalCallFailure
from ..models import PhaseContext, PhaseResult, SessionEvent
from ..realtime.hub import NotificationBridge
from ..sessions.activity import activity_payload, extract_text
from ..sessions.base import SessionEventSource
from ..sessions.watcher import CompletionWatcher


class Phase(ABC):
    """Abstract base for phase implementations."""

    description: str = ""

    def __init__(self, bridge: NotificationBridge) -> None:
        self.bridge = bridge

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique phase identifier within a pipeline."""
        ...

    @property
    def display_name(self) -> str:
        return self.name.replace("_", " ").title()

    @abstractmethod
    async def execute(self, context: PhaseContext) -> PhaseResult:
        ...

    def start_fields(self, context: PhaseContext) -> dict[str, Any]:
        """Extra fields for the ``phase:start`` notification."""
        return {}

    def complete_fields(self, context: PhaseContext, result: PhaseResult) -> dict[str, Any]:
        """Extra fields for the ``phase:complete`` notification."""
        return {}

    async def notify(self, context: PhaseContext, event: str, payload: dict[str, Any]) -> None:
        await self.bridge.to_task(context.task.id, event, payload)

    async def run(self, context: PhaseContext) -> PhaseResult:
        started = time.monotonic()
        logger.info("Phase {} starting for task {}", self.name, context.task.id)
        try:
            await self.notify(
                context,
                PHASE_START,
                {"phase": self.name, **context.notification_fields(), **self.start_fields(context)},
            )
            result = await self.execute(context)
        except asyncio.CancelledError:
            logger.warning("Phase {} cancelled for task {}", self.name, context.task.id)
            await self.notify(context, PHASE_COMPLETE, {"phase": self.name, "success": False, "error": "cancelled"})
            raise
        except Exception as exc:
            logger.exception("Phase {} failed for task {}", self.name, context.task.id)
            result = PhaseResult.failure(
                self.name,
                str(exc) or type(exc).__name__,
                error_type=type(exc).__name__,
            )

        result = result.with_duration(time.monotonic() - started)
        payload: dict[str, Any] = {"phase": self.name, "success": result.success}
        if not result.success:
            payload["error"] = result.error
        try:
            payload.update(self.complete_fields(context, result))
        except Exception:
            logger.exception("Could not build completion fields for phase {}", self.name)
        await self.notify(context, PHASE_COMPLETE, payload)

        if result.success:
            logger.info("Phase {} completed in {:.1f}s", self.name, result.duration_seconds)
        else:
            logger.warning("Phase {} failed: {}", self.name, result.error)
        return result


@dataclass
class AgentTurn:
    """One prompt sent to a session and everything it produced until idle."""

    session_id: str
    events: list[SessionEvent] = field(default_factory=list)
    text: str = ""


class AgentPhase(Phase):
    """A phase whose work is done by an external agent session."""

    def __init__(
        self,
        bridge: NotificationBridge,
        source: SessionEventSource,
        watcher: CompletionWatcher,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(bridge)
        self.source = source
        self.watcher = watcher
        self.timeout = timeout

    async def start_session(self, context: PhaseContext, title: str) -> str:
        session_id = await self.source.create_session(title, context.working_directory)
        await self.notify(
            context,
            SESSION_CREATED,
            {"phase": self.name, "session_id": session_id, "title": title},
        )
        return session_id

    async def converse(
        self,
        context: PhaseContext,
        session_id: str,
        prompt: str,
        *,
        timeout: Optional[float] = None,
    ) -> AgentTurn:
        """Send *prompt* and wait until the session goes idle.

        The watch is armed before the prompt goes out so a fast reply cannot be
        missed. Informational events of this session are forwarded to the
        task channel as ``agent:activity``.
        """

        async def forward(event: SessionEvent) -> None:
            if event.session_id != session_id:
                return
            payload = activity_payload(context.task.id, event)
            if payload is not None:
                payload["phase"] = self.name
                await self.notify(context, AGENT_ACTIVITY, payload)

        directory = context.working_directory
        try:
            async with self.watcher.watch(session_id, directory) as watch:
                await self.source.send_input(session_id, prompt, directory)
                events = await watch.wait_for_terminal(timeout=timeout or self.timeout, on_event=forward)
        except asyncio.CancelledError:
            await self._abort_quietly(session_id)
            raise
        return AgentTurn(session_id=session_id, events=events, text=extract_text(events, session_id))

    async def _abort_quietly(self, session_id: str) -> None:
        try:
            await self.source.abort(session_id)
        except ExternalCallFailure as exc:
            logger.warning("Could not abort session {}: {}", session_id, exc)
