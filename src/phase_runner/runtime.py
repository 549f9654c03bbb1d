"""Composition root: build and wire every long-lived service for a project."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from loguru import logger

from .collaborators import TaskStore, VersionControl
from .config import (
    DevelopmentSettings,
    MergeSettings,
    OrchestratorSettings,
    SessionSettings,
    get_development_settings,
    get_merge_settings,
    get_orchestrator_settings,
    get_session_settings,
    load_runner_config,
)
from .git import GitHubCli
from .pipelines.orchestrator import Orchestrator
from .pipelines.phases import AnalysisPhase, DevelopmentPhase, JudgePhase, MergePhase
from .pipelines.registry import Pipeline, PipelineRegistry
from .realtime.approvals import ApprovalGate
from .realtime.hub import NotificationBridge
from .sessions.base import SessionEventSource
from .sessions.opencode import OpenCodeSessionSource
from .sessions.watcher import CompletionWatcher
from .stores import InMemoryTaskStore


class Runtime:
    """Owns the bridge, gate, watcher, registry and orchestrator for one process."""

    def __init__(
        self,
        project_dir: Path,
        *,
        source: SessionEventSource,
        vcs: VersionControl,
        task_store: TaskStore,
        session_settings: SessionSettings,
        merge_settings: MergeSettings,
        orchestrator_settings: OrchestratorSettings,
        development_settings: DevelopmentSettings,
    ) -> None:
        self.project_dir = project_dir
        self.source = source
        self.vcs = vcs
        self.task_store = task_store
        self.session_settings = session_settings
        self.merge_settings = merge_settings
        self.orchestrator_settings = orchestrator_settings
        self.development_settings = development_settings

        self.bridge = NotificationBridge()
        self.gate = ApprovalGate(self.bridge)
        # Observers that (re)join a task channel get the pending approval again.
        self.bridge.on_observer_join(self.gate.resend_pending)
        self.watcher = CompletionWatcher(source, default_timeout=session_settings.timeout_seconds)
        self.registry = PipelineRegistry()
        self.orchestrator = Orchestrator(
            self.registry,
            self.bridge,
            self.gate,
            task_store=task_store,
            phase_approval=orchestrator_settings.phase_approval,
        )

    @classmethod
    def create(
        cls,
        project_dir: Path,
        *,
        source: Optional[SessionEventSource] = None,
        vcs: Optional[VersionControl] = None,
        task_store: Optional[TaskStore] = None,
        register_builtins: bool = True,
    ) -> "Runtime":
        project_dir = project_dir.resolve()
        config, err = load_runner_config(project_dir)
        if err:
            logger.warning("{}; using defaults", err)

        session_settings = get_session_settings(config)
        runtime = cls(
            project_dir,
            source=source
            or OpenCodeSessionSource(
                session_settings.base_url,
                directory=session_settings.directory,
                request_timeout=session_settings.request_timeout_seconds,
            ),
            vcs=vcs or GitHubCli(),
            task_store=task_store or InMemoryTaskStore(),
            session_settings=session_settings,
            merge_settings=get_merge_settings(config),
            orchestrator_settings=get_orchestrator_settings(config),
            development_settings=get_development_settings(config),
        )
        if register_builtins:
            runtime.register_builtin_pipelines()
        return runtime

    @property
    def default_pipeline(self) -> str:
        return self.orchestrator_settings.default_pipeline

    def register_builtin_pipelines(self) -> None:
        shared = dict(bridge=self.bridge, source=self.source, watcher=self.watcher, vcs=self.vcs)

        def analysis() -> AnalysisPhase:
            return AnalysisPhase(**shared)

        def development() -> DevelopmentPhase:
            return DevelopmentPhase(**shared)

        def judge() -> JudgePhase:
            return JudgePhase(**shared, max_fix_iterations=self.development_settings.max_fix_iterations)

        def merge() -> MergePhase:
            return MergePhase(
                self.bridge,
                self.vcs,
                gate=self.gate,
                task_store=self.task_store,
                settings=self.merge_settings,
            )

        self.orchestrator.register_pipeline(
            Pipeline.of(
                "standard",
                "Analyze, implement story by story, judge, then merge.",
                [analysis(), development(), judge(), merge()],
            )
        )
        self.orchestrator.register_pipeline(
            Pipeline.of("hotfix", "Implement directly, judge, then merge.", [development(), judge(), merge()])
        )
        self.orchestrator.register_pipeline(
            Pipeline.of("review", "Judge the current branch, then merge.", [judge(), merge()])
        )

    async def aclose(self) -> None:
        await self.source.aclose()
