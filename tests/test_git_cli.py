from __future__ import annotations

import asyncio
import json

import pytest

from phase_runner.errors import ExternalCallFailure
from phase_runner.git import GitHubCli
from phase_runner.models import PullRequestSpec


class FakeProcess:
    def __init__(self, stdout: str = "", stderr: str = "", returncode: int = 0) -> None:
        self._stdout = stdout.encode()
        self._stderr = stderr.encode()
        self.returncode = returncode

    async def communicate(self):
        return self._stdout, self._stderr


class CommandScript:
    """Replacement for asyncio.create_subprocess_exec that answers by argv prefix."""

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.commands: list[tuple[str, ...]] = []

    async def __call__(self, *args, **kwargs):
        self.commands.append(args)
        for prefix, answer in self.answers.items():
            if args[: len(prefix)] == prefix:
                if isinstance(answer, BaseException):
                    raise answer
                return answer
        return FakeProcess()


@pytest.fixture
def script(monkeypatch):
    fake = CommandScript()
    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake)
    return fake


class TestGitOperations:
    def test_has_changes_reads_porcelain_status(self, script, tmp_path):
        script.answers[("git", "status")] = FakeProcess(stdout=" M app.py\n")
        assert asyncio.run(GitHubCli().has_changes(tmp_path)) is True

        script.answers[("git", "status")] = FakeProcess(stdout="")
        assert asyncio.run(GitHubCli().has_changes(tmp_path)) is False

    def test_commit_and_push(self, script, tmp_path):
        script.answers[("git", "rev-parse", "--abbrev-ref")] = FakeProcess(stdout="task/task-1\n")
        asyncio.run(GitHubCli().commit_and_push(tmp_path, "Form\n\nStory s1"))
        assert script.commands == [
            ("git", "add", "-A"),
            ("git", "commit", "-m", "Form\n\nStory s1"),
            ("git", "rev-parse", "--abbrev-ref", "HEAD"),
            ("git", "push", "-u", "origin", "task/task-1"),
        ]

    def test_create_branch_new_and_existing(self, script, tmp_path):
        script.answers[("git", "rev-parse", "--verify")] = FakeProcess(returncode=1)
        asyncio.run(GitHubCli().create_branch(tmp_path, "task/task-1"))
        assert script.commands[-1] == ("git", "checkout", "-b", "task/task-1")

        script.answers[("git", "rev-parse", "--verify")] = FakeProcess(stdout="abc123\n")
        asyncio.run(GitHubCli().create_branch(tmp_path, "task/task-1"))
        assert script.commands[-1] == ("git", "checkout", "task/task-1")

    def test_failure_carries_stderr_and_exit_code(self, script, tmp_path):
        script.answers[("git", "add")] = FakeProcess(stderr="fatal: not a git repository", returncode=128)
        with pytest.raises(ExternalCallFailure) as info:
            asyncio.run(GitHubCli().commit_and_push(tmp_path, "msg"))
        assert info.value.operation == "commit_and_push"
        assert info.value.exit_code == 128
        assert info.value.message == "fatal: not a git repository"

    def test_missing_binary(self, script, tmp_path):
        script.answers[("gh",)] = FileNotFoundError("gh")
        with pytest.raises(ExternalCallFailure, match="gh not found"):
            asyncio.run(GitHubCli().merge_pull_request(tmp_path, 42))


class TestPullRequests:
    def test_create_parses_url(self, script, tmp_path):
        script.answers[("git", "rev-parse")] = FakeProcess(stdout="task/task-1\n")
        script.answers[("gh", "pr", "create")] = FakeProcess(
            stdout="Creating pull request...\nhttps://github.com/acme/app/pull/42\n"
        )
        spec = PullRequestSpec(title="[Task] Add login", body="body", base_branch="develop", draft=True)
        info = asyncio.run(GitHubCli().create_pull_request(tmp_path, spec))

        assert info.number == 42
        assert info.url == "https://github.com/acme/app/pull/42"
        assert info.title == "[Task] Add login"
        create = script.commands[-1]
        assert create[:3] == ("gh", "pr", "create")
        assert create[create.index("--base") + 1] == "develop"
        assert create[create.index("--head") + 1] == "task/task-1"
        assert create[-1] == "--draft"

    def test_create_without_url_fails(self, script, tmp_path):
        script.answers[("gh", "pr", "create")] = FakeProcess(stdout="something odd\n")
        with pytest.raises(ExternalCallFailure, match="could not parse PR URL"):
            asyncio.run(GitHubCli().create_pull_request(tmp_path, PullRequestSpec(title="t", body="b")))

    def test_status_summarizes_checks(self, script, tmp_path):
        payload = {
            "state": "OPEN",
            "mergeable": "MERGEABLE",
            "statusCheckRollup": [
                {"__typename": "CheckRun", "conclusion": "SUCCESS"},
                {"__typename": "CheckRun", "conclusion": "FAILURE"},
                {"__typename": "StatusContext", "state": "PENDING"},
                {"__typename": "StatusContext", "state": "SUCCESS"},
            ],
        }
        script.answers[("gh", "pr", "view")] = FakeProcess(stdout=json.dumps(payload))
        status = asyncio.run(GitHubCli().get_pull_request_status(tmp_path, 42))

        assert status.state == "open"
        assert status.mergeable is True
        assert (status.checks.passed, status.checks.failed, status.checks.pending) == (2, 1, 1)

    def test_conflicting_status(self, script, tmp_path):
        script.answers[("gh", "pr", "view")] = FakeProcess(
            stdout=json.dumps({"state": "OPEN", "mergeable": "CONFLICTING", "statusCheckRollup": []})
        )
        status = asyncio.run(GitHubCli().get_pull_request_status(tmp_path, 42))
        assert status.mergeable is False

    def test_merge_flags(self, script, tmp_path):
        cli = GitHubCli()
        asyncio.run(cli.merge_pull_request(tmp_path, 42))
        asyncio.run(cli.merge_pull_request(tmp_path, 43, method="rebase", delete_after_merge=False))
        assert script.commands == [
            ("gh", "pr", "merge", "42", "--squash", "--delete-branch"),
            ("gh", "pr", "merge", "43", "--rebase"),
        ]
