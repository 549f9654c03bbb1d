"""Version control through the `git` and `gh` command line tools."""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import Any

from loguru import logger

from .collaborators import VersionControl
from .errors import ExternalCallFailure
from .models import CheckSummary, PullRequestInfo, PullRequestSpec, PullRequestStatus

_PR_URL_RE = re.compile(r"https?://\S+/pull/(\d+)")


def _summarize_checks(rollup: list[dict[str, Any]] | None) -> CheckSummary:
    passed = failed = pending = 0
    for check in rollup or []:
        # CheckRun carries `conclusion`; StatusContext carries `state`.
        outcome = str(check.get("conclusion") or check.get("state") or "").upper()
        if outcome == "SUCCESS":
            passed += 1
        elif outcome in ("FAILURE", "ERROR", "TIMED_OUT", "CANCELLED", "ACTION_REQUIRED"):
            failed += 1
        else:
            pending += 1
    return CheckSummary(passed=passed, failed=failed, pending=pending)


class GitHubCli(VersionControl):
    """Run `git` and `gh` in the working copy. Non-zero exits raise ExternalCallFailure."""

    def __init__(self, git_binary: str = "git", gh_binary: str = "gh", remote: str = "origin") -> None:
        self.git_binary = git_binary
        self.gh_binary = gh_binary
        self.remote = remote

    async def _run(self, operation: str, directory: Path, *args: str) -> str:
        logger.debug("Running {} in {}", " ".join(args[:3]), directory)
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(directory),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ExternalCallFailure(operation, f"{args[0]} not found") from exc
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip() or stdout.decode("utf-8", errors="replace").strip()
            raise ExternalCallFailure(operation, detail or f"exit code {process.returncode}", exit_code=process.returncode)
        return stdout.decode("utf-8", errors="replace")

    async def _git(self, operation: str, directory: Path, *args: str) -> str:
        return await self._run(operation, directory, self.git_binary, *args)

    async def _gh(self, operation: str, directory: Path, *args: str) -> str:
        return await self._run(operation, directory, self.gh_binary, *args)

    async def current_branch(self, directory: Path) -> str:
        return (await self._git("current_branch", directory, "rev-parse", "--abbrev-ref", "HEAD")).strip()

    async def has_changes(self, directory: Path) -> bool:
        output = await self._git("has_changes", directory, "status", "--porcelain")
        return bool(output.strip())

    async def commit_and_push(self, directory: Path, message: str) -> None:
        await self._git("commit_and_push", directory, "add", "-A")
        await self._git("commit_and_push", directory, "commit", "-m", message)
        branch = await self.current_branch(directory)
        await self._git("commit_and_push", directory, "push", "-u", self.remote, branch)
        logger.info("Pushed {} to {}/{}", message.splitlines()[0], self.remote, branch)

    async def create_branch(self, directory: Path, branch_name: str) -> None:
        try:
            await self._git("create_branch", directory, "rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}")
        except ExternalCallFailure:
            await self._git("create_branch", directory, "checkout", "-b", branch_name)
            logger.info("Created branch {}", branch_name)
            return
        await self._git("create_branch", directory, "checkout", branch_name)
        logger.info("Switched to existing branch {}", branch_name)

    async def create_pull_request(self, directory: Path, spec: PullRequestSpec) -> PullRequestInfo:
        branch = await self.current_branch(directory)
        await self._git("create_pull_request", directory, "push", "-u", self.remote, branch)
        args = [
            "pr", "create",
            "--base", spec.base_branch,
            "--head", branch,
            "--title", spec.title,
            "--body", spec.body,
        ]
        if spec.draft:
            args.append("--draft")
        output = await self._gh("create_pull_request", directory, *args)

        # `gh pr create` prints the PR URL; it has no --json output.
        match = _PR_URL_RE.search(output)
        if not match:
            raise ExternalCallFailure("create_pull_request", f"could not parse PR URL from: {output.strip()[:200]}")
        info = PullRequestInfo(number=int(match.group(1)), url=match.group(0), title=spec.title)
        logger.info("Created PR #{}: {}", info.number, spec.title)
        return info

    async def get_pull_request_status(self, directory: Path, number: int) -> PullRequestStatus:
        output = await self._gh(
            "get_pull_request_status",
            directory,
            "pr", "view", str(number), "--json", "state,mergeable,statusCheckRollup",
        )
        try:
            data = json.loads(output)
        except json.JSONDecodeError as exc:
            raise ExternalCallFailure("get_pull_request_status", f"invalid JSON: {exc}") from exc
        state = str(data.get("state") or "").lower()
        if state not in ("open", "closed", "merged"):
            raise ExternalCallFailure("get_pull_request_status", f"unexpected PR state {data.get('state')!r}")
        return PullRequestStatus(
            state=state,  # type: ignore[arg-type]
            mergeable=data.get("mergeable") == "MERGEABLE",
            checks=_summarize_checks(data.get("statusCheckRollup")),
        )

    async def merge_pull_request(
        self,
        directory: Path,
        number: int,
        *,
        method: str = "squash",
        delete_after_merge: bool = True,
    ) -> None:
        args = ["pr", "merge", str(number), f"--{method}"]
        if delete_after_merge:
            args.append("--delete-branch")
        await self._gh("merge_pull_request", directory, *args)
        logger.info("Merged PR #{} using {}", number, method)
