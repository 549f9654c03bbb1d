"""Judge phase: review the branch, feed issues back for fixes, re-judge."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from ...collaborators import VersionControl
from ...constants import AGENT_ACTIVITY
from ...models import PhaseContext, PhaseResult
from ...realtime.hub import NotificationBridge
from ...sessions.base import SessionEventSource
from ...sessions.watcher import CompletionWatcher
from ..phase import AgentPhase
from ..prompts import build_fix_prompt, build_judge_prompt, extract_json

VERDICTS = ("approved", "needs_revision", "rejected")


@dataclass
class JudgeVerdict:
    verdict: str
    score: int = 0
    summary: str = ""
    issues: list[dict[str, Any]] = field(default_factory=list)

    @property
    def approved(self) -> bool:
        return self.verdict == "approved"

    def to_dict(self) -> dict[str, Any]:
        return {"verdict": self.verdict, "score": self.score, "summary": self.summary, "issues": len(self.issues)}


def parse_verdict(text: str) -> Optional[JudgeVerdict]:
    data = extract_json(text)
    if data is None:
        return None
    verdict = str(data.get("verdict") or "").strip().lower()
    if verdict not in VERDICTS:
        return None
    try:
        score = int(data.get("score") or 0)
    except (TypeError, ValueError):
        score = 0
    issues = [i for i in data.get("issues") or [] if isinstance(i, dict)]
    return JudgeVerdict(verdict=verdict, score=score, summary=str(data.get("summary") or ""), issues=issues)


class JudgePhase(AgentPhase):
    description = "Judge the implementation and loop on fixes until approved."

    def __init__(
        self,
        bridge: NotificationBridge,
        source: SessionEventSource,
        watcher: CompletionWatcher,
        vcs: VersionControl,
        *,
        max_fix_iterations: int = 3,
        timeout: Optional[float] = None,
    ) -> None:
        super().__init__(bridge, source, watcher, timeout=timeout)
        self.vcs = vcs
        self.max_fix_iterations = max_fix_iterations

    @property
    def name(self) -> str:
        return "judge"

    def complete_fields(self, context: PhaseContext, result: PhaseResult) -> dict[str, Any]:
        return {
            "verdict": result.output.get("verdict"),
            "score": result.output.get("score"),
            "iterations": result.output.get("iterations", 0),
        }

    async def _judge(self, context: PhaseContext, session_id: str, iteration: int) -> JudgeVerdict:
        turn = await self.converse(context, session_id, build_judge_prompt(context))
        verdict = parse_verdict(turn.text)
        if verdict is None:
            raise ValueError("Judge output did not contain a valid verdict")
        logger.info("Judge verdict for task {}: {} (score {})", context.task.id, verdict.verdict, verdict.score)
        await self.notify(
            context,
            AGENT_ACTIVITY,
            {"phase": self.name, "type": "judge_verdict", "iteration": iteration, **verdict.to_dict()},
        )
        return verdict

    async def execute(self, context: PhaseContext) -> PhaseResult:
        session_id = await self.start_session(context, f"Judge: {context.task.title}")
        fixes = 0
        iteration = 0

        while True:
            iteration += 1
            verdict = await self._judge(context, session_id, iteration)
            if verdict.approved or verdict.verdict == "rejected":
                break
            if not verdict.issues:
                logger.info("Judge asked for revision without listing issues; accepting as-is")
                verdict.verdict = "approved"
                break
            if fixes >= self.max_fix_iterations:
                break
            fixes += 1
            await self.converse(context, session_id, build_fix_prompt(verdict.issues))
            if await self.vcs.has_changes(context.working_directory):
                await self.vcs.commit_and_push(
                    context.working_directory,
                    f"Address review feedback ({fixes}) for {context.task.title}",
                )

        output = {
            "session_id": session_id,
            "verdict": verdict.verdict,
            "score": verdict.score,
            "summary": verdict.summary,
            "iterations": iteration,
            "fixes": fixes,
        }
        if not verdict.approved:
            reason = verdict.summary or f"{len(verdict.issues)} unresolved issues"
            return PhaseResult.failure(
                self.name,
                f"Judge verdict {verdict.verdict} after {iteration} review(s): {reason}",
                error_type="JudgeRejected",
                output=output,
            )
        return PhaseResult.ok(
            self.name,
            output,
            context_updates={"judge_verdict": verdict.verdict, "judge_score": verdict.score},
        )
