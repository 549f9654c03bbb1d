"""Pipeline orchestrator: drive one task through a pipeline's phases.

The orchestrator:
1. Resolves the pipeline by name (unknown names fail before anything runs)
2. Builds a fresh ``PhaseContext`` owned by this run only
3. Runs each phase in order, merging its context updates into the context
4. Stops at the first failed phase and reports it as the run's failure
5. Optionally asks for human approval between phases

Runs for different tasks are independent and may overlap; a task has at most
one active run.
"""

from __future__ import annotations

import asyncio
import functools
import time
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..collaborators import TaskStore
from ..constants import (
    ORCHESTRATION_CANCELLED,
    ORCHESTRATION_COMPLETE,
    ORCHESTRATION_START,
    PHASE_APPROVAL_MODES,
    PHASE_APPROVAL_REQUIRED,
)
from ..errors import ApprovalCancelled, RunAlreadyActive
from ..models import OrchestrationResult, PhaseContext, Task, TaskStatus
from ..realtime.approvals import ApprovalGate
from ..realtime.hub import NotificationBridge
from .registry import Pipeline, PipelineRegistry


def build_context(task: Task, initial_context: Optional[dict[str, Any]] = None) -> PhaseContext:
    initial = dict(initial_context or {})
    working_directory = Path(initial.pop("working_directory", None) or Path.cwd())
    context = PhaseContext(task=task, working_directory=working_directory)
    context.apply(initial)
    return context


class Orchestrator:
    def __init__(
        self,
        registry: PipelineRegistry,
        bridge: NotificationBridge,
        gate: ApprovalGate,
        *,
        task_store: Optional[TaskStore] = None,
        phase_approval: str = "automatic",
    ) -> None:
        if phase_approval not in PHASE_APPROVAL_MODES:
            raise ValueError(f"Unknown phase approval mode: {phase_approval!r}")
        self.registry = registry
        self.bridge = bridge
        self.gate = gate
        self.task_store = task_store
        self.phase_approval = phase_approval
        self._runs: dict[str, asyncio.Task[Any]] = {}
        self._cancel_reasons: dict[str, str] = {}
        # Tasks whose run has taken its first step.
        self._entered: set[str] = set()

    def register_pipeline(self, pipeline: Pipeline) -> None:
        self.registry.register(pipeline)

    def is_running(self, task_id: str) -> bool:
        run = self._runs.get(task_id)
        return run is not None and not run.done()

    def active_tasks(self) -> list[str]:
        return sorted(tid for tid in self._runs if self.is_running(tid))

    # -- lifecycle -----------------------------------------------------------

    def start(
        self,
        pipeline_name: str,
        task: Task,
        initial_context: Optional[dict[str, Any]] = None,
    ) -> asyncio.Task[OrchestrationResult]:
        """Schedule a run in the background and return its asyncio task."""
        self.registry.get(pipeline_name)
        if self.is_running(task.id):
            raise RunAlreadyActive(task.id)
        run = asyncio.get_running_loop().create_task(
            self.run(pipeline_name, task, initial_context),
            name=f"pipeline-{pipeline_name}-{task.id}",
        )
        self._runs[task.id] = run
        run.add_done_callback(functools.partial(self._forget_run, task.id))
        return run

    def cancel(self, task_id: str, reason: str = "cancelled by operator") -> bool:
        """Cancel the task's active run, including any approval it is waiting on."""
        run = self._runs.get(task_id)
        if run is None or run.done():
            return False
        self._cancel_reasons[task_id] = reason
        if task_id not in self._entered:
            # The run reports the cancellation itself when it takes its first step.
            logger.info("Cancelling run for task {} before it started: {}", task_id, reason)
            return True
        self.gate.cancel(task_id, reason)
        run.cancel()
        logger.info("Cancelling run for task {}: {}", task_id, reason)
        return True

    async def run(
        self,
        pipeline_name: str,
        task: Task,
        initial_context: Optional[dict[str, Any]] = None,
    ) -> OrchestrationResult:
        """Run *task* through the named pipeline.

        Raises:
            PipelineNotFound: no pipeline is registered under *pipeline_name*.
            RunAlreadyActive: the task already has a run in progress.
        """
        pipeline = self.registry.get(pipeline_name)
        current = asyncio.current_task()
        existing = self._runs.get(task.id)
        if existing is not None and existing is not current and not existing.done():
            raise RunAlreadyActive(task.id)
        if current is not None:
            self._runs[task.id] = current
        try:
            if task.id in self._cancel_reasons:
                result = OrchestrationResult(task_id=task.id, pipeline=pipeline.name)
                await self._report_cancelled(pipeline, task, result)
                raise asyncio.CancelledError()
            self._entered.add(task.id)
            return await self._execute(pipeline, task, build_context(task, initial_context))
        finally:
            self._entered.discard(task.id)
            if self._runs.get(task.id) is current:
                del self._runs[task.id]
            self._cancel_reasons.pop(task.id, None)

    def _forget_run(self, task_id: str, run: asyncio.Task[Any]) -> None:
        # Covers runs cancelled from outside before their first step.
        if self._runs.get(task_id) is run:
            del self._runs[task_id]
            self._cancel_reasons.pop(task_id, None)

    # -- internals -----------------------------------------------------------

    async def _set_status(self, task_id: str, status: TaskStatus, error: Optional[str] = None) -> None:
        if self.task_store is None:
            return
        try:
            await self.task_store.update_status(task_id, status, error)
        except Exception as exc:
            logger.warning("Could not record status {} for task {}: {}", status, task_id, exc)

    async def _approve_next(self, task: Task, pipeline: Pipeline, index: int) -> tuple[bool, Optional[str]]:
        phase = pipeline.phases[index]
        payload = {
            "pipeline": pipeline.name,
            "phase": phase.name,
            "previous_phase": pipeline.phases[index - 1].name,
            "index": index,
            "total_phases": len(pipeline.phases),
        }
        try:
            decision = await self.gate.request(task.id, payload, event=PHASE_APPROVAL_REQUIRED, subject_id=phase.name)
        except ApprovalCancelled as exc:
            return False, str(exc)
        if decision.approved:
            return True, None
        reason = f"{phase.name} phase rejected"
        if decision.feedback:
            reason = f"{reason}: {decision.feedback}"
        return False, reason

    async def _report_cancelled(self, pipeline: Pipeline, task: Task, result: OrchestrationResult) -> None:
        reason = self._cancel_reasons.get(task.id, "cancelled")
        result.success = False
        result.error = reason
        logger.warning("Pipeline {} for task {} cancelled: {}", pipeline.name, task.id, reason)
        await self._set_status(task.id, "cancelled", reason)
        await self.bridge.to_task(
            task.id,
            ORCHESTRATION_CANCELLED,
            {"task_id": task.id, "pipeline": pipeline.name, "reason": reason, **result.to_dict()},
        )

    async def _execute(self, pipeline: Pipeline, task: Task, context: PhaseContext) -> OrchestrationResult:
        started = time.monotonic()
        result = OrchestrationResult(task_id=task.id, pipeline=pipeline.name)
        logger.info("Running pipeline {} for task {} ({})", pipeline.name, task.id, task.title)

        try:
            await self._set_status(task.id, "running")
            await self.bridge.to_task(
                task.id,
                ORCHESTRATION_START,
                {"task_id": task.id, "pipeline": pipeline.name, "phases": pipeline.phase_names()},
            )

            for index, phase in enumerate(pipeline.phases):
                if index > 0 and self.phase_approval == "manual":
                    approved, reason = await self._approve_next(task, pipeline, index)
                    if not approved:
                        result.success = False
                        result.error = reason
                        result.failed_phase = phase.name
                        break

                phase_result = await phase.run(context)
                result.record(phase_result)
                context.previous_results[phase.name] = phase_result
                if not phase_result.success:
                    break
                context.apply(phase_result.context_updates)
        except asyncio.CancelledError:
            result.duration_seconds = time.monotonic() - started
            await self._report_cancelled(pipeline, task, result)
            raise

        result.duration_seconds = time.monotonic() - started
        if result.success:
            logger.info("Pipeline {} for task {} completed in {:.1f}s", pipeline.name, task.id, result.duration_seconds)
            await self._set_status(task.id, "completed")
        else:
            logger.warning(
                "Pipeline {} for task {} failed at {}: {}",
                pipeline.name,
                task.id,
                result.failed_phase,
                result.error,
            )
            await self._set_status(task.id, "failed", result.error)

        await self.bridge.to_task(task.id, ORCHESTRATION_COMPLETE, result.to_dict())
        return result
