"""HTTP and WebSocket surface for observing and steering pipeline runs.

Protocol on ``/ws/tasks/{task_id}`` (client -> server)::

    {"action": "approve", "feedback": "ship it"}
    {"action": "reject", "feedback": "needs tests"}
    {"action": "ping"}

Server -> client frames are ``{"event": ..., "data": {...}}``. Joining a task
channel re-sends any approval still pending for that task.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from .errors import PipelineNotFound, RunAlreadyActive
from .models import ApprovalDecision, Task
from .pipelines.phases.merge import trigger_merge
from .realtime.hub import WebSocketObserver
from .runtime import Runtime


class ClientMessage(BaseModel):
    """A message sent by a task channel client."""

    action: Literal["approve", "reject", "ping"]
    feedback: Optional[str] = None
    request_id: Optional[str] = None


class ApprovalAction(BaseModel):
    approved: bool
    feedback: Optional[str] = None
    request_id: Optional[str] = None


class RunRequest(BaseModel):
    """Start a pipeline run for a task."""

    title: str
    description: str = ""
    pipeline: Optional[str] = None
    working_directory: Optional[str] = None
    auto_merge: Optional[bool] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MergeRequest(BaseModel):
    pr_number: int
    working_directory: Optional[str] = None
    method: Literal["squash", "merge", "rebase"] = "squash"


class ControlResponse(BaseModel):
    success: bool
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


def _event(event: str, data: Optional[dict[str, Any]] = None) -> str:
    return json.dumps({"event": event, "data": data or {}}, default=str)


def create_app(runtime: Runtime) -> FastAPI:
    """Create the FastAPI application around an already-built runtime."""
    app = FastAPI(
        title="Phase Runner",
        description="Observe and steer multi-phase agent pipelines",
        version="0.1.0",
    )
    app.state.runtime = runtime

    def _directory(value: Optional[str]) -> Path:
        return Path(value).resolve() if value else runtime.project_dir

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "pipelines": [p.name for p in runtime.registry.list_pipelines()],
            "active_tasks": runtime.orchestrator.active_tasks(),
        }

    @app.get("/api/pipelines")
    async def list_pipelines() -> list[dict[str, Any]]:
        return [
            {"name": p.name, "description": p.description, "phases": p.phase_names()}
            for p in runtime.registry.list_pipelines()
        ]

    @app.post("/api/tasks/{task_id}/runs", status_code=202)
    async def start_run(task_id: str, request: RunRequest) -> ControlResponse:
        pipeline = request.pipeline or runtime.default_pipeline
        task = Task(id=task_id, title=request.title, description=request.description, metadata=request.metadata)
        initial: dict[str, Any] = {"working_directory": _directory(request.working_directory)}
        if request.auto_merge is not None:
            initial["auto_merge"] = request.auto_merge
        try:
            runtime.orchestrator.start(pipeline, task, initial)
        except PipelineNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except RunAlreadyActive as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return ControlResponse(success=True, message=f"Started {pipeline}", data={"task_id": task_id, "pipeline": pipeline})

    @app.post("/api/tasks/{task_id}/cancel")
    async def cancel_run(task_id: str) -> ControlResponse:
        cancelled = runtime.orchestrator.cancel(task_id)
        return ControlResponse(
            success=cancelled,
            message="Run cancelled" if cancelled else "No active run for task",
            data={"task_id": task_id},
        )

    @app.get("/api/tasks/{task_id}/approval")
    async def get_pending_approval(task_id: str) -> dict[str, Any]:
        request = runtime.gate.pending(task_id)
        return {"pending": request.to_dict() if request else None}

    @app.post("/api/tasks/{task_id}/approval")
    async def respond_to_approval(task_id: str, action: ApprovalAction) -> ControlResponse:
        resolved = runtime.gate.resolve(
            task_id,
            ApprovalDecision(approved=action.approved, feedback=action.feedback, request_id=action.request_id),
        )
        if not resolved:
            return ControlResponse(success=False, message="No pending approval request found", data={"task_id": task_id})
        return ControlResponse(
            success=True,
            message=f"Approval request {'approved' if action.approved else 'rejected'}",
            data={"task_id": task_id, "approved": action.approved, "feedback": action.feedback},
        )

    @app.post("/api/tasks/{task_id}/merge")
    async def merge_pull_request(task_id: str, request: MergeRequest) -> ControlResponse:
        merged = await trigger_merge(
            runtime.vcs,
            runtime.bridge,
            task_id,
            _directory(request.working_directory),
            request.pr_number,
            method=request.method,
        )
        return ControlResponse(
            success=merged,
            message=f"PR #{request.pr_number} {'merged' if merged else 'could not be merged'}",
            data={"task_id": task_id, "pr_number": request.pr_number},
        )

    @app.websocket("/ws/tasks/{task_id}")
    async def task_channel(websocket: WebSocket, task_id: str):
        await websocket.accept()
        await websocket.send_text(_event("connected", {"task_id": task_id}))
        observer_id = await runtime.bridge.join(task_id, WebSocketObserver(websocket))
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = ClientMessage.model_validate_json(raw)
                except ValidationError as exc:
                    await websocket.send_text(_event("error", {"message": "Invalid message", "detail": exc.errors()}))
                    continue

                if message.action == "ping":
                    await websocket.send_text(_event("pong"))
                    continue

                approved = message.action == "approve"
                resolved = runtime.gate.resolve(
                    task_id,
                    ApprovalDecision(approved=approved, feedback=message.feedback, request_id=message.request_id),
                )
                logger.info(
                    "Task {} approval {} over WebSocket (resolved={})",
                    task_id,
                    "granted" if approved else "denied",
                    resolved,
                )
                await websocket.send_text(_event("approval:resolved", {"approved": approved, "resolved": resolved}))
        except WebSocketDisconnect:
            logger.debug("Client disconnected from task {}", task_id)
        finally:
            runtime.bridge.leave(task_id, observer_id)

    return app
