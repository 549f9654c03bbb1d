"""Provide the public `phase_runner` package exports."""

from __future__ import annotations

from .models import OrchestrationResult, PhaseContext, PhaseResult, Task
from .pipelines import Orchestrator, Phase, Pipeline, PipelineRegistry
from .runtime import Runtime

__all__ = [
    "OrchestrationResult",
    "Orchestrator",
    "Phase",
    "PhaseContext",
    "PhaseResult",
    "Pipeline",
    "PipelineRegistry",
    "Runtime",
    "Task",
]
