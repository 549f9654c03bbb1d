"""Development phase: implement each story in its own agent session."""

from __future__ import annotations

from typing import Any, Optional

from loguru import logger

from ...collaborators import VersionControl
from ...constants import STORY_COMPLETE, STORY_START
from ...models import PhaseContext, PhaseResult, Story
from ...realtime.hub import NotificationBridge
from ...sessions.base import SessionEventSource
from ...sessions.watcher import CompletionWatcher
from ..phase import AgentPhase
from ..prompts import build_story_prompt


def stories_for(context: PhaseContext) -> list[Story]:
    """Stories to implement; without an analysis the task itself is the only story."""
    if context.stories:
        return list(context.stories)
    task = context.task
    return [Story(id="story-1", title=task.title, description=task.description)]


class DevelopmentPhase(AgentPhase):
    description = "Implement each story and push the result."

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
        return "development"

    def start_fields(self, context: PhaseContext) -> dict[str, Any]:
        return {"total_stories": len(stories_for(context))}

    def complete_fields(self, context: PhaseContext, result: PhaseResult) -> dict[str, Any]:
        return {"stories_completed": result.output.get("stories_completed", 0)}

    async def execute(self, context: PhaseContext) -> PhaseResult:
        stories = stories_for(context)
        total = len(stories)
        completed = 0
        commits: list[str] = []

        for index, story in enumerate(stories):
            await self.notify(
                context,
                STORY_START,
                {"story_id": story.id, "title": story.title, "index": index, "total": total},
            )
            try:
                session_id = await self.start_session(context, f"Story {index + 1}/{total}: {story.title}")
                await self.converse(context, session_id, build_story_prompt(story, index, total))

                committed = False
                if await self.vcs.has_changes(context.working_directory):
                    await self.vcs.commit_and_push(
                        context.working_directory,
                        f"{story.title}\n\nStory {story.id} of task {context.task.id}",
                    )
                    committed = True
                    commits.append(story.id)
                else:
                    logger.info("Story {} produced no changes", story.id)
            except Exception as exc:
                await self.notify(
                    context,
                    STORY_COMPLETE,
                    {"story_id": story.id, "success": False, "error": str(exc)},
                )
                return PhaseResult.failure(
                    self.name,
                    f"Story {story.id} failed: {exc}",
                    error_type=type(exc).__name__,
                    output={"stories_completed": completed, "total_stories": total},
                )

            completed += 1
            await self.notify(
                context,
                STORY_COMPLETE,
                {"story_id": story.id, "success": True, "committed": committed, "stories_completed": completed},
            )

        return PhaseResult.ok(
            self.name,
            {"stories_completed": completed, "total_stories": total, "committed_stories": commits},
            context_updates={"stories_completed": completed, "total_stories": total},
        )
