from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingObserver
from phase_runner.constants import MERGE_APPROVAL_REQUIRED, PHASE_APPROVAL_REQUIRED
from phase_runner.errors import ApprovalAlreadyPending, ApprovalCancelled
from phase_runner.models import ApprovalDecision
from phase_runner.realtime.approvals import ApprovalGate
from phase_runner.realtime.hub import NotificationBridge


async def _pending(gate: ApprovalGate, task_id: str, payload: dict, **kwargs) -> asyncio.Task:
    waiter = asyncio.create_task(gate.request(task_id, payload, **kwargs))
    while not gate.has_pending(task_id):
        await asyncio.sleep(0)
    return waiter


class TestApprovalGate:
    def test_request_publishes_and_resolves(self):
        async def _run():
            bridge = NotificationBridge()
            observer = RecordingObserver()
            await bridge.join("task-1", observer)
            gate = ApprovalGate(bridge)
            waiter = await _pending(gate, "task-1", {"pr_number": 42})
            # Publication happens before the wait starts.
            await asyncio.sleep(0)
            request_id = gate.pending("task-1").id
            assert observer.received == [(MERGE_APPROVAL_REQUIRED, {"pr_number": 42, "request_id": request_id})]
            assert gate.resolve("task-1", True, "lgtm") is True
            return await waiter, gate.has_pending("task-1")

        decision, still_pending = asyncio.run(_run())
        assert decision.approved is True
        assert decision.feedback == "lgtm"
        assert decision.request_id is not None
        assert still_pending is False

    def test_resolve_without_pending_returns_false(self):
        gate = ApprovalGate(NotificationBridge())
        assert gate.resolve("task-1", True) is False

    def test_explicit_decision_keeps_its_fields(self):
        async def _run():
            gate = ApprovalGate(NotificationBridge())
            waiter = await _pending(gate, "task-1", {}, event=PHASE_APPROVAL_REQUIRED, subject_id="judge")
            pending = gate.pending("task-1")
            assert pending.event == PHASE_APPROVAL_REQUIRED
            assert pending.subject_id == "judge"
            gate.resolve("task-1", ApprovalDecision(approved=False, feedback="needs tests"))
            return await waiter, pending.id

        decision, request_id = asyncio.run(_run())
        assert decision.approved is False
        assert decision.feedback == "needs tests"
        assert decision.request_id == request_id

    def test_decision_for_another_request_is_refused(self):
        async def _run():
            gate = ApprovalGate(NotificationBridge())
            waiter = await _pending(gate, "task-1", {"pr_number": 42})
            stale = ApprovalDecision(approved=True, request_id="approval-stale")
            accepted = gate.resolve("task-1", stale)
            still_pending = gate.has_pending("task-1")
            request_id = gate.pending("task-1").id
            gate.resolve("task-1", ApprovalDecision(approved=False, feedback="not yet", request_id=request_id))
            return accepted, still_pending, await waiter, request_id

        accepted, still_pending, decision, request_id = asyncio.run(_run())
        assert accepted is False
        assert still_pending is True
        assert decision.approved is False
        assert decision.request_id == request_id

    def test_second_request_for_same_task_is_refused(self):
        async def _run():
            gate = ApprovalGate(NotificationBridge())
            first = await _pending(gate, "task-1", {"n": 1})
            with pytest.raises(ApprovalAlreadyPending):
                await gate.request("task-1", {"n": 2})
            assert gate.pending("task-1").payload == {"n": 1}
            gate.resolve("task-1", True)
            return await first

        assert asyncio.run(_run()).approved is True

    def test_requests_for_different_tasks_are_independent(self):
        async def _run():
            gate = ApprovalGate(NotificationBridge())
            a = await _pending(gate, "task-a", {})
            b = await _pending(gate, "task-b", {})
            gate.resolve("task-b", False)
            gate.resolve("task-a", True)
            return (await a).approved, (await b).approved

        assert asyncio.run(_run()) == (True, False)

    def test_resend_pending_republishes_same_payload(self):
        async def _run():
            bridge = NotificationBridge()
            gate = ApprovalGate(bridge)
            assert await gate.resend_pending("task-1") is False

            waiter = await _pending(gate, "task-1", {"pr_number": 7})
            request_id = gate.pending("task-1").id
            observer = RecordingObserver()
            await bridge.join("task-1", observer)
            assert await gate.resend_pending("task-1") is True
            gate.resolve("task-1", True)
            await waiter
            return observer.received, request_id

        received, request_id = asyncio.run(_run())
        assert received == [(MERGE_APPROVAL_REQUIRED, {"pr_number": 7, "request_id": request_id})]

    def test_join_hook_delivers_pending_request_to_late_observer(self):
        async def _run():
            bridge = NotificationBridge()
            gate = ApprovalGate(bridge)
            bridge.on_observer_join(gate.resend_pending)
            early = RecordingObserver()
            await bridge.join("task-1", early)
            waiter = await _pending(gate, "task-1", {"pr_number": 7})
            await asyncio.sleep(0)
            late = RecordingObserver()
            await bridge.join("task-1", late)
            gate.resolve("task-1", True)
            await waiter
            return early.events(), late.events()

        early, late = asyncio.run(_run())
        assert late == [MERGE_APPROVAL_REQUIRED]
        # Observers already on the channel are not prompted again.
        assert early == [MERGE_APPROVAL_REQUIRED]

    def test_resend_to_departed_observer_reports_false(self):
        async def _run():
            bridge = NotificationBridge()
            gate = ApprovalGate(bridge)
            waiter = await _pending(gate, "task-1", {})
            sent = await gate.resend_pending("task-1", "obs-404")
            gate.resolve("task-1", True)
            await waiter
            return sent

        assert asyncio.run(_run()) is False

    def test_cancel_raises_in_requester(self):
        async def _run():
            gate = ApprovalGate(NotificationBridge())
            waiter = await _pending(gate, "task-1", {})
            assert gate.cancel("task-1", "operator stop") is True
            with pytest.raises(ApprovalCancelled) as info:
                await waiter
            return info.value, gate.has_pending("task-1"), gate.cancel("task-1")

        exc, pending, second_cancel = asyncio.run(_run())
        assert exc.reason == "operator stop"
        assert pending is False
        assert second_cancel is False

    def test_cancelled_requester_clears_entry(self):
        async def _run():
            gate = ApprovalGate(NotificationBridge())
            waiter = await _pending(gate, "task-1", {})
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
            return gate.has_pending("task-1")

        assert asyncio.run(_run()) is False
