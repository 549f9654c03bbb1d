"""Domain records passed between the orchestrator, phases and collaborators."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Optional

from .constants import SESSION_ERROR, SESSION_IDLE

TaskStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
PullRequestState = Literal["open", "closed", "merged"]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


@dataclass
class Task:
    """The unit of work being orchestrated. Read-only to the engine."""

    id: str = field(default_factory=lambda: _id("task"))
    title: str = ""
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def summary(self) -> str:
        return self.description or self.title


@dataclass
class Story:
    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any], index: int = 0) -> "Story":
        criteria = data.get("acceptance_criteria", data.get("acceptanceCriteria")) or []
        return cls(
            id=str(data.get("id") or f"story-{index + 1}"),
            title=str(data.get("title") or f"Story {index + 1}"),
            description=str(data.get("description") or ""),
            acceptance_criteria=[str(c) for c in criteria if c],
        )


@dataclass(frozen=True)
class PhaseResult:
    """Outcome of one phase. Never mutated after it is produced."""

    phase: str
    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    context_updates: dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @classmethod
    def ok(
        cls,
        phase: str,
        output: Optional[dict[str, Any]] = None,
        *,
        context_updates: Optional[dict[str, Any]] = None,
    ) -> "PhaseResult":
        return cls(
            phase=phase,
            success=True,
            output=dict(output or {}),
            context_updates=dict(context_updates or {}),
        )

    @classmethod
    def failure(
        cls,
        phase: str,
        error: str,
        *,
        error_type: Optional[str] = None,
        output: Optional[dict[str, Any]] = None,
    ) -> "PhaseResult":
        return cls(
            phase=phase,
            success=False,
            output=dict(output or {}),
            error=error,
            error_type=error_type,
        )

    def with_duration(self, seconds: float) -> "PhaseResult":
        return PhaseResult(
            phase=self.phase,
            success=self.success,
            output=self.output,
            error=self.error,
            error_type=self.error_type,
            context_updates=self.context_updates,
            duration_seconds=seconds,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
            "duration_seconds": round(self.duration_seconds, 2),
        }


@dataclass
class PhaseContext:
    """Accumulating hand-off record for one pipeline run."""

    task: Task
    working_directory: Path
    branch_name: Optional[str] = None
    analysis: Optional[str] = None
    stories: list[Story] = field(default_factory=list)
    stories_completed: int = 0
    total_stories: int = 0
    auto_merge: Optional[bool] = None
    previous_results: dict[str, PhaseResult] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)

    _RESERVED = ("task", "previous_results", "variables")

    def apply(self, updates: dict[str, Any]) -> None:
        """Merge phase-produced updates into the context."""
        known = {f.name for f in fields(self)}
        for key, value in updates.items():
            if key in self._RESERVED:
                continue
            if key in known:
                if key == "working_directory":
                    value = Path(value)
                setattr(self, key, value)
            else:
                self.variables[key] = value

    def notification_fields(self) -> dict[str, Any]:
        data: dict[str, Any] = {"task_id": self.task.id}
        if self.branch_name:
            data["branch_name"] = self.branch_name
        if self.total_stories:
            data["total_stories"] = self.total_stories
            data["stories_completed"] = self.stories_completed
        return data


@dataclass(frozen=True)
class SessionEvent:
    """One event from an agent session stream."""

    type: str
    session_id: Optional[str] = None
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def is_idle(self) -> bool:
        return self.type == SESSION_IDLE

    @property
    def is_error(self) -> bool:
        return self.type == SESSION_ERROR

    @property
    def error_message(self) -> str:
        err = self.properties.get("error")
        if isinstance(err, dict):
            data = err.get("data")
            if isinstance(data, dict) and data.get("message"):
                return str(data["message"])
            return str(err.get("message") or err.get("name") or err)
        return str(err) if err else "Unknown error"

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "SessionEvent":
        props = data.get("properties") or {}
        if not isinstance(props, dict):
            props = {"value": props}
        session_id = props.get("sessionID") or props.get("session_id")
        if session_id is None:
            info = props.get("info") or props.get("part")
            if isinstance(info, dict):
                session_id = info.get("sessionID")
        return cls(
            type=str(data.get("type") or "unknown"),
            session_id=str(session_id) if session_id else None,
            properties=props,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "session_id": self.session_id, "properties": self.properties}


@dataclass
class ApprovalRequest:
    """A pending human decision for one task."""

    task_id: str
    event: str
    payload: dict[str, Any]
    subject_id: Optional[str] = None
    id: str = field(default_factory=lambda: _id("approval"))
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ApprovalDecision:
    approved: bool
    feedback: Optional[str] = None
    request_id: Optional[str] = None
    responded_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PullRequestSpec:
    title: str
    body: str
    base_branch: str = "main"
    draft: bool = False


@dataclass(frozen=True)
class PullRequestInfo:
    number: int
    url: str
    title: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CheckSummary:
    passed: int = 0
    failed: int = 0
    pending: int = 0


@dataclass(frozen=True)
class PullRequestStatus:
    state: PullRequestState
    mergeable: bool
    checks: CheckSummary = field(default_factory=CheckSummary)


@dataclass
class OrchestrationResult:
    """Aggregate outcome of one pipeline run."""

    task_id: str
    pipeline: str
    success: bool = True
    phase_results: list[PhaseResult] = field(default_factory=list)
    error: Optional[str] = None
    failed_phase: Optional[str] = None
    duration_seconds: float = 0.0

    def record(self, result: PhaseResult) -> None:
        self.phase_results.append(result)
        if not result.success and self.success:
            self.success = False
            self.error = result.error or f"Phase {result.phase} failed"
            self.failed_phase = result.phase

    def result_for(self, phase: str) -> Optional[PhaseResult]:
        for result in self.phase_results:
            if result.phase == phase:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "pipeline": self.pipeline,
            "success": self.success,
            "error": self.error,
            "failed_phase": self.failed_phase,
            "duration_seconds": round(self.duration_seconds, 2),
            "phases": [r.to_dict() for r in self.phase_results],
        }
