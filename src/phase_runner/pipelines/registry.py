"""Pipeline registry: named, ordered sequences of phases.

A *Pipeline* is immutable once registered. The registry is an explicit object
owned by the runtime; there is no module-level instance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable

from ..errors import DuplicatePipelineName, PipelineNotFound

if TYPE_CHECKING:
    from .phase import Phase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pipeline:
    """Immutable definition of how a task is carried through its phases."""
    name: str
    description: str
    phases: tuple["Phase", ...]

    @classmethod
    def of(cls, name: str, description: str, phases: Iterable["Phase"]) -> "Pipeline":
        return cls(name=name, description=description, phases=tuple(phases))

    def phase_names(self) -> list[str]:
        return [p.name for p in self.phases]


class PipelineRegistry:
    """Registry of pipelines keyed by unique name."""

    def __init__(self) -> None:
        self._pipelines: dict[str, Pipeline] = {}

    # -- query ---------------------------------------------------------------

    def get(self, name: str) -> Pipeline:
        if name not in self._pipelines:
            raise PipelineNotFound(name, self._pipelines.keys())
        return self._pipelines[name]

    def has(self, name: str) -> bool:
        return name in self._pipelines

    def list_pipelines(self) -> list[Pipeline]:
        return list(self._pipelines.values())

    # -- mutation ------------------------------------------------------------

    def register(self, pipeline: Pipeline) -> None:
        if pipeline.name in self._pipelines:
            raise DuplicatePipelineName(pipeline.name)
        names = pipeline.phase_names()
        if len(set(names)) != len(names):
            logger.warning("Pipeline '%s' repeats a phase name: %s", pipeline.name, names)
        self._pipelines[pipeline.name] = pipeline
        logger.debug("Registered pipeline '%s' (%s)", pipeline.name, ", ".join(names))
