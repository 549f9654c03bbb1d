"""Exception types raised by the orchestration engine."""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from .models import SessionEvent


class PhaseRunnerError(Exception):
    """Base class for all phase-runner errors."""


class ExternalCallFailure(PhaseRunnerError):
    """A version-control, persistence or agent-session call was rejected."""

    def __init__(self, operation: str, message: str, *, exit_code: Optional[int] = None) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.message = message
        self.exit_code = exit_code


class SessionError(PhaseRunnerError):
    """The external agent reported an error for a watched session."""

    def __init__(
        self,
        session_id: str,
        message: str,
        events: Iterable["SessionEvent"] = (),
    ) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.message = message
        self.events = list(events)


class SessionAborted(SessionError):
    """A watched session was aborted while its completion was awaited."""


class SessionStreamClosed(SessionError):
    """The event stream ended before the session reached a terminal state."""


class SessionTimeout(PhaseRunnerError):
    def __init__(
        self,
        session_id: str,
        timeout_seconds: float,
        events: Iterable["SessionEvent"] = (),
    ) -> None:
        super().__init__(f"Session {session_id} timed out after {timeout_seconds:g}s")
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        self.events = list(events)


class PipelineNotFound(PhaseRunnerError, KeyError):
    def __init__(self, name: str, available: Iterable[str] = ()) -> None:
        names = ", ".join(sorted(available)) or "none"
        super().__init__(f"Unknown pipeline '{name}' (available: {names})")
        self.name = name

    def __str__(self) -> str:
        return str(self.args[0])


class DuplicatePipelineName(PhaseRunnerError, ValueError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Pipeline '{name}' is already registered")
        self.name = name


class ApprovalAlreadyPending(PhaseRunnerError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"An approval is already pending for task {task_id}")
        self.task_id = task_id


class ApprovalCancelled(PhaseRunnerError):
    def __init__(self, task_id: str, reason: str = "cancelled") -> None:
        super().__init__(f"Approval for task {task_id} cancelled: {reason}")
        self.task_id = task_id
        self.reason = reason


class RunAlreadyActive(PhaseRunnerError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} already has an active pipeline run")
        self.task_id = task_id
