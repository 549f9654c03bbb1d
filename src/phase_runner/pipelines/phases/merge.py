"""Merge phase: open a pull request, wait for approval, merge.

No agent session is involved; every step goes through the version-control
and task-store collaborators. Flow:

1. Push any uncommitted work.
2. Create the pull request and record it on the task.
3. Unless auto-merge is on, ask for approval and wait. A denial leaves the
   PR open and still counts as a successful phase.
4. Re-check the PR: it must still be open and free of conflicts. Failing
   checks are only a warning.
5. Merge exactly once.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from loguru import logger

from ...collaborators import TaskStore, VersionControl
from ...config import MergeSettings
from ...constants import MERGE_APPROVAL_REQUIRED, MERGE_COMPLETED, MERGE_PR_CREATED
from ...models import PhaseContext, PhaseResult, PullRequestInfo, PullRequestSpec, Task
from ...realtime.approvals import ApprovalGate
from ...realtime.hub import NotificationBridge
from ..phase import Phase

MergeApprovalCallback = Callable[[PullRequestInfo], Awaitable[bool]]


def build_pr_body(task: Task, analysis: str, stories_completed: int, total_stories: int) -> str:
    return f"""## Summary
{task.description or task.title}

## Analysis
{analysis or "_No analysis recorded._"}

## Stories Completed
{stories_completed}/{total_stories} stories implemented

## Checklist
- [ ] Code has been reviewed
- [ ] Tests pass
- [ ] No security issues
- [ ] Documentation updated (if needed)
"""


def _pr_fields(pr: PullRequestInfo) -> dict[str, Any]:
    return {"number": pr.number, "url": pr.url}


class MergePhase(Phase):
    description = "Open a pull request, wait for approval and merge it."

    def __init__(
        self,
        bridge: NotificationBridge,
        vcs: VersionControl,
        *,
        gate: Optional[ApprovalGate] = None,
        task_store: Optional[TaskStore] = None,
        settings: Optional[MergeSettings] = None,
        on_merge_approval_required: Optional[MergeApprovalCallback] = None,
    ) -> None:
        super().__init__(bridge)
        self.vcs = vcs
        self.gate = gate
        self.task_store = task_store
        self.settings = settings or MergeSettings()
        self.on_merge_approval_required = on_merge_approval_required

    @property
    def name(self) -> str:
        return "merge"

    def complete_fields(self, context: PhaseContext, result: PhaseResult) -> dict[str, Any]:
        fields: dict[str, Any] = {"merged": bool(result.output.get("merged", False))}
        if result.output.get("pull_request"):
            fields["pull_request"] = result.output["pull_request"]
        return fields

    async def _approve(self, context: PhaseContext, pr: PullRequestInfo) -> tuple[bool, Optional[str]]:
        payload = {
            "pr_number": pr.number,
            "pr_url": pr.url,
            "title": pr.title,
            "branch_name": context.branch_name,
        }
        if self.on_merge_approval_required is not None:
            await self.notify(context, MERGE_APPROVAL_REQUIRED, payload)
            return await self.on_merge_approval_required(pr), None
        if self.gate is not None:
            decision = await self.gate.request(
                context.task.id,
                payload,
                event=MERGE_APPROVAL_REQUIRED,
                subject_id=str(pr.number),
            )
            return decision.approved, decision.feedback
        logger.warning("No merge approver configured; leaving PR #{} open", pr.number)
        return False, "no approver configured"

    async def execute(self, context: PhaseContext) -> PhaseResult:
        task = context.task
        directory: Path = context.working_directory

        if await self.vcs.has_changes(directory):
            logger.info("Pushing remaining changes for task {}", task.id)
            await self.vcs.commit_and_push(directory, f"Final changes for {task.title}")

        spec = PullRequestSpec(
            title=f"[Task] {task.title}",
            body=build_pr_body(task, context.analysis or "", context.stories_completed, context.total_stories),
            base_branch=self.settings.base_branch,
            draft=self.settings.draft,
        )
        try:
            pr = await self.vcs.create_pull_request(directory, spec)
            if self.task_store is not None:
                await self.task_store.set_pull_request(task.id, pr.number, pr.url)
        except Exception as exc:
            logger.error("Failed to create PR for task {}: {}", task.id, exc)
            return PhaseResult.failure(
                self.name,
                f"Failed to create PR: {exc}",
                error_type=type(exc).__name__,
                output={"merged": False},
            )

        await self.notify(
            context,
            MERGE_PR_CREATED,
            {"pr_number": pr.number, "pr_url": pr.url, "title": pr.title, "branch_name": context.branch_name},
        )
        pr_output = _pr_fields(pr)

        auto_merge = self.settings.auto_merge if context.auto_merge is None else context.auto_merge
        if auto_merge:
            approved, feedback = True, None
        else:
            approved, feedback = await self._approve(context, pr)

        if not approved:
            logger.info("Merge of PR #{} not approved; PR remains open", pr.number)
            return PhaseResult.ok(
                self.name,
                {"merged": False, "pull_request": pr_output, "feedback": feedback},
                context_updates={"pr_number": pr.number, "pr_url": pr.url},
            )

        try:
            status = await self.vcs.get_pull_request_status(directory, pr.number)
            if status.state != "open":
                raise RuntimeError(f"PR is already {status.state}")
            if not status.mergeable:
                raise RuntimeError("PR has merge conflicts")
            if status.checks.failed > 0:
                logger.warning("PR #{} has {} failed checks; merging anyway", pr.number, status.checks.failed)

            await self.vcs.merge_pull_request(
                directory,
                pr.number,
                method=self.settings.method,
                delete_after_merge=self.settings.delete_branch,
            )
        except Exception as exc:
            logger.error("Merge of PR #{} failed: {}", pr.number, exc)
            return PhaseResult.failure(
                self.name,
                f"Merge failed: {exc}",
                error_type=type(exc).__name__,
                output={"merged": False, "pull_request": pr_output},
            )

        logger.info("PR #{} merged", pr.number)
        await self.notify(
            context,
            MERGE_COMPLETED,
            {"pr_number": pr.number, "pr_url": pr.url, "success": True},
        )
        return PhaseResult.ok(
            self.name,
            {"merged": True, "pull_request": pr_output},
            context_updates={"pr_number": pr.number, "pr_url": pr.url},
        )


async def trigger_merge(
    vcs: VersionControl,
    bridge: NotificationBridge,
    task_id: str,
    directory: Path,
    number: int,
    *,
    method: str = "squash",
) -> bool:
    """Merge an existing PR on operator request, outside any pipeline run."""
    try:
        await vcs.merge_pull_request(directory, number, method=method, delete_after_merge=True)
    except Exception as exc:
        logger.error("Manual merge of PR #{} failed: {}", number, exc)
        await bridge.to_task(task_id, MERGE_COMPLETED, {"pr_number": number, "success": False, "error": str(exc)})
        return False
    await bridge.to_task(task_id, MERGE_COMPLETED, {"pr_number": number, "success": True})
    return True
