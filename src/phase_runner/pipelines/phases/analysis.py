"""Analysis phase: create the working branch and split the task into stories."""

from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from ...collaborators import VersionControl
from ...models import PhaseContext, PhaseResult, Story
from ...realtime.hub import NotificationBridge
from ...sessions.base import SessionEventSource
from ...sessions.watcher import CompletionWatcher
from ..phase import AgentPhase
from ..prompts import build_analysis_prompt, extract_json


def render_analysis(data: dict[str, Any]) -> str:
    """Render the agent's analysis as markdown for humans and the PR body."""
    summary = str(data.get("summary") or "").strip()
    approach = str(data.get("approach") or "").strip()
    risks = [str(r) for r in data.get("risks") or [] if r]

    sections = []
    if summary:
        sections.append(f"### Summary\n{summary}")
    if approach:
        sections.append(f"### Approach\n{approach}")
    if risks:
        sections.append("### Risks\n" + "\n".join(f"- {r}" for r in risks))
    return "\n\n".join(sections)


def parse_analysis(text: str) -> tuple[Optional[dict[str, Any]], list[Story]]:
    data = extract_json(text)
    if data is None:
        return None, []
    # Accept both {"analysis": {...}, "stories": [...]} and a flat object.
    analysis = data.get("analysis") if isinstance(data.get("analysis"), dict) else data
    raw_stories = data.get("stories") or []
    stories = [
        Story.from_dict(raw, index)
        for index, raw in enumerate(raw_stories)
        if isinstance(raw, dict)
    ]
    return analysis, stories


class AnalysisPhase(AgentPhase):
    description = "Create the task branch and break the task into stories."

    def __init__(
        self,
        bridge: NotificationBridge,
        source: SessionEventSource,
        watcher: CompletionWatcher,
        vcs: VersionControl,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(bridge, source, watcher, timeout=timeout)
        self.vcs = vcs

    @property
    def name(self) -> str:
        return "analysis"

    def complete_fields(self, context: PhaseContext, result: PhaseResult) -> dict[str, Any]:
        if not result.success:
            return {}
        return {
            "branch_name": result.output.get("branch_name"),
            "total_stories": result.output.get("total_stories", 0),
        }

    async def execute(self, context: PhaseContext) -> PhaseResult:
        branch_name = context.branch_name or f"task/{context.task.id}"
        await self.vcs.create_branch(context.working_directory, branch_name)

        session_id = await self.start_session(context, f"Analysis: {context.task.title}")
        turn = await self.converse(context, session_id, build_analysis_prompt(context.task))

        analysis, stories = parse_analysis(turn.text)
        if analysis is None:
            return PhaseResult.failure(
                self.name,
                "Analysis output did not contain a JSON block",
                error_type="InvalidAgentOutput",
                output={"session_id": session_id, "branch_name": branch_name},
            )
        if not stories:
            return PhaseResult.failure(
                self.name,
                "Analysis produced no stories",
                error_type="InvalidAgentOutput",
                output={"session_id": session_id, "branch_name": branch_name},
            )

        markdown = render_analysis(analysis)
        logger.info("Analysis for task {} produced {} stories", context.task.id, len(stories))
        return PhaseResult.ok(
            self.name,
            {
                "session_id": session_id,
                "branch_name": branch_name,
                "total_stories": len(stories),
                "stories": [s.to_dict() for s in stories],
            },
            context_updates={
                "branch_name": branch_name,
                "analysis": markdown,
                "stories": stories,
                "total_stories": len(stories),
                "stories_completed": 0,
            },
        )
