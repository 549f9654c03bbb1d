"""Pipelines, phases and the orchestrator that runs them."""

from .orchestrator import Orchestrator
from .phase import AgentPhase, AgentTurn, Phase
from .registry import Pipeline, PipelineRegistry

__all__ = [
    "Orchestrator",
    "AgentPhase",
    "AgentTurn",
    "Phase",
    "Pipeline",
    "PipelineRegistry",
]
