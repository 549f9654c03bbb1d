"""Interfaces the engine needs from version control and task persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .models import PullRequestInfo, PullRequestSpec, PullRequestStatus, TaskStatus


class VersionControl(ABC):
    """Working-copy and pull-request operations. Failures raise ExternalCallFailure."""

    @abstractmethod
    async def has_changes(self, directory: Path) -> bool:
        ...

    @abstractmethod
    async def commit_and_push(self, directory: Path, message: str) -> None:
        ...

    @abstractmethod
    async def create_branch(self, directory: Path, branch_name: str) -> None:
        ...

    @abstractmethod
    async def create_pull_request(self, directory: Path, spec: PullRequestSpec) -> PullRequestInfo:
        ...

    @abstractmethod
    async def get_pull_request_status(self, directory: Path, number: int) -> PullRequestStatus:
        ...

    @abstractmethod
    async def merge_pull_request(
        self,
        directory: Path,
        number: int,
        *,
        method: str = "squash",
        delete_after_merge: bool = True,
    ) -> None:
        ...


class TaskStore(ABC):
    @abstractmethod
    async def set_pull_request(self, task_id: str, number: int, url: str) -> None:
        ...

    @abstractmethod
    async def update_status(self, task_id: str, status: TaskStatus, error: Optional[str] = None) -> None:
        ...
