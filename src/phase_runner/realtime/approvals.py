"""Human approval gate for pipeline runs.

At most one approval is pending per task. A request publishes its event on
the task's channel and suspends until an operator answers over the same
channel. There is no timeout; an operator cancel is the only other way out.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Union

from loguru import logger

from ..constants import MERGE_APPROVAL_REQUIRED
from ..errors import ApprovalAlreadyPending, ApprovalCancelled
from ..models import ApprovalDecision, ApprovalRequest
from .hub import NotificationBridge


@dataclass
class _Pending:
    request: ApprovalRequest
    future: asyncio.Future[ApprovalDecision]


def _published(request: ApprovalRequest) -> dict[str, Any]:
    return {**request.payload, "request_id": request.id}


class ApprovalGate:
    def __init__(self, bridge: NotificationBridge) -> None:
        self.bridge = bridge
        self._pending: dict[str, _Pending] = {}

    def has_pending(self, task_id: str) -> bool:
        return task_id in self._pending

    def pending(self, task_id: str) -> Optional[ApprovalRequest]:
        entry = self._pending.get(task_id)
        return entry.request if entry else None

    async def request(
        self,
        task_id: str,
        payload: dict[str, Any],
        *,
        event: str = MERGE_APPROVAL_REQUIRED,
        subject_id: Optional[str] = None,
    ) -> ApprovalDecision:
        """Publish an approval request and wait for the operator's answer.

        Raises:
            ApprovalAlreadyPending: another request for *task_id* is waiting.
            ApprovalCancelled: the request was cancelled via :meth:`cancel`.
        """
        if task_id in self._pending:
            raise ApprovalAlreadyPending(task_id)

        request = ApprovalRequest(task_id=task_id, event=event, payload=dict(payload), subject_id=subject_id)
        entry = _Pending(request=request, future=asyncio.get_running_loop().create_future())
        self._pending[task_id] = entry
        try:
            logger.info("Approval requested for task {} ({})", task_id, event)
            await self.bridge.to_task(task_id, event, _published(request))
            decision = await entry.future
        finally:
            if self._pending.get(task_id) is entry:
                del self._pending[task_id]

        logger.info(
            "Approval for task {} {}",
            task_id,
            "granted" if decision.approved else f"denied ({decision.feedback or 'no reason given'})",
        )
        return decision

    def resolve(
        self,
        task_id: str,
        decision: Union[ApprovalDecision, bool],
        feedback: Optional[str] = None,
    ) -> bool:
        """Answer the pending request for *task_id*.

        Returns False if none is waiting, or if the decision names a
        ``request_id`` other than the one pending.
        """
        entry = self._pending.get(task_id)
        if entry is None or entry.future.done():
            logger.debug("No pending approval to resolve for task {}", task_id)
            return False
        if not isinstance(decision, ApprovalDecision):
            decision = ApprovalDecision(approved=bool(decision), feedback=feedback)
        if decision.request_id is not None and decision.request_id != entry.request.id:
            logger.warning(
                "Ignoring decision for task {}: request {} is not the pending {}",
                task_id,
                decision.request_id,
                entry.request.id,
            )
            return False
        if decision.request_id is None:
            decision.request_id = entry.request.id
        entry.future.set_result(decision)
        return True

    async def resend_pending(self, task_id: str, observer_id: Optional[str] = None) -> bool:
        """Re-publish the pending request.

        With *observer_id* only that observer gets it, which is how an
        observer that just joined catches up. Otherwise the whole channel does.
        """
        entry = self._pending.get(task_id)
        if entry is None or entry.future.done():
            return False
        if observer_id is not None:
            return await self.bridge.to_observer(task_id, observer_id, entry.request.event, _published(entry.request))
        await self.bridge.to_task(task_id, entry.request.event, _published(entry.request))
        return True

    def cancel(self, task_id: str, reason: str = "cancelled") -> bool:
        entry = self._pending.get(task_id)
        if entry is None or entry.future.done():
            return False
        entry.future.set_exception(ApprovalCancelled(task_id, reason))
        logger.info("Approval for task {} cancelled: {}", task_id, reason)
        return True
