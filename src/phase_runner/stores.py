"""Task store kept in process memory."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from loguru import logger

from .collaborators import TaskStore
from .models import TaskStatus, now_iso


@dataclass
class TaskRecord:
    task_id: str
    status: TaskStatus = "pending"
    error: Optional[str] = None
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    status_history: list[str] = field(default_factory=list)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class InMemoryTaskStore(TaskStore):
    def __init__(self) -> None:
        self.records: dict[str, TaskRecord] = {}

    def get(self, task_id: str) -> Optional[TaskRecord]:
        return self.records.get(task_id)

    def _record(self, task_id: str) -> TaskRecord:
        record = self.records.get(task_id)
        if record is None:
            record = self.records[task_id] = TaskRecord(task_id=task_id)
        return record

    async def set_pull_request(self, task_id: str, number: int, url: str) -> None:
        record = self._record(task_id)
        record.pr_number = number
        record.pr_url = url
        record.updated_at = now_iso()
        logger.debug("Task {} linked to PR #{}", task_id, number)

    async def update_status(self, task_id: str, status: TaskStatus, error: Optional[str] = None) -> None:
        record = self._record(task_id)
        record.status = status
        record.error = error
        record.status_history.append(status)
        record.updated_at = now_iso()
