"""Shared fakes for phase-runner tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import pytest

from phase_runner.collaborators import VersionControl
from phase_runner.errors import ExternalCallFailure
from phase_runner.models import (
    CheckSummary,
    PhaseContext,
    PullRequestInfo,
    PullRequestSpec,
    PullRequestStatus,
    Task,
)
from phase_runner.realtime.hub import NotificationBridge
from phase_runner.sessions.memory import InMemorySessionSource
from phase_runner.stores import InMemoryTaskStore


class FakeVersionControl(VersionControl):
    def __init__(
        self,
        *,
        changes: bool = False,
        pr: Optional[PullRequestInfo] = None,
        status: Optional[PullRequestStatus] = None,
        create_error: Optional[Exception] = None,
        merge_error: Optional[Exception] = None,
    ) -> None:
        self.changes = changes
        self.pr = pr or PullRequestInfo(number=42, url="https://example/pr/42", title="[Task] Add login")
        self.status = status or PullRequestStatus(state="open", mergeable=True, checks=CheckSummary(passed=3))
        self.create_error = create_error
        self.merge_error = merge_error
        self.calls: list[tuple[Any, ...]] = []
        self.pr_specs: list[PullRequestSpec] = []
        self.merges: list[dict[str, Any]] = []

    async def has_changes(self, directory: Path) -> bool:
        self.calls.append(("has_changes",))
        return self.changes

    async def commit_and_push(self, directory: Path, message: str) -> None:
        self.calls.append(("commit_and_push", message))
        self.changes = False

    async def create_branch(self, directory: Path, branch_name: str) -> None:
        self.calls.append(("create_branch", branch_name))

    async def create_pull_request(self, directory: Path, spec: PullRequestSpec) -> PullRequestInfo:
        self.calls.append(("create_pull_request", spec.title))
        self.pr_specs.append(spec)
        if self.create_error is not None:
            raise self.create_error
        return self.pr

    async def get_pull_request_status(self, directory: Path, number: int) -> PullRequestStatus:
        self.calls.append(("get_pull_request_status", number))
        return self.status

    async def merge_pull_request(
        self,
        directory: Path,
        number: int,
        *,
        method: str = "squash",
        delete_after_merge: bool = True,
    ) -> None:
        self.calls.append(("merge_pull_request", number))
        if self.merge_error is not None:
            raise self.merge_error
        self.merges.append({"number": number, "method": method, "delete_after_merge": delete_after_merge})


class RecordingObserver:
    """Observer that records every (event, payload) it receives."""

    def __init__(self) -> None:
        self.received: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, event: str, data: dict[str, Any]) -> None:
        self.received.append((event, data))

    def events(self) -> list[str]:
        return [event for event, _ in self.received]

    def payloads(self, event: str) -> list[dict[str, Any]]:
        return [data for name, data in self.received if name == event]


def json_reply(data: dict[str, Any]) -> str:
    return "Done.\n\n```json\n" + json.dumps(data) + "\n```\n"


class ScriptedAgent:
    """Responder for InMemorySessionSource that answers prompts from a script.

    Each prompt is matched against the keys of *replies* (substring match, first
    hit wins); the reply text is emitted as a message part followed by idle.
    """

    def __init__(self, replies: Optional[dict[str, str]] = None, default: str = "ok") -> None:
        self.replies = replies or {}
        self.default = default
        self.prompts: list[str] = []

    async def __call__(self, source: InMemorySessionSource, session_id: str, text: str) -> None:
        self.prompts.append(text)
        reply = self.default
        for needle, answer in self.replies.items():
            if needle in text:
                reply = answer
                break
        source.emit_text(session_id, reply)
        source.emit_idle(session_id)


@pytest.fixture
def task() -> Task:
    return Task(id="task-1", title="Add login", description="Add a login form")


@pytest.fixture
def context(task: Task, tmp_path: Path) -> PhaseContext:
    return PhaseContext(task=task, working_directory=tmp_path, branch_name="task/task-1")


@pytest.fixture
def bridge() -> NotificationBridge:
    return NotificationBridge()


@pytest.fixture
def vcs() -> FakeVersionControl:
    return FakeVersionControl()


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def failing_call() -> ExternalCallFailure:
    return ExternalCallFailure("create_pull_request", "gh: authentication required", exit_code=4)
