from __future__ import annotations

import asyncio

from conftest import FakeVersionControl, RecordingObserver, ScriptedAgent, json_reply
from phase_runner.models import PhaseContext, Story
from phase_runner.pipelines.phases import AnalysisPhase, DevelopmentPhase, JudgePhase
from phase_runner.pipelines.phases.analysis import parse_analysis, render_analysis
from phase_runner.pipelines.phases.judge import parse_verdict
from phase_runner.sessions.memory import InMemorySessionSource
from phase_runner.sessions.watcher import CompletionWatcher

ANALYSIS = {
    "summary": "Add a login form",
    "approach": "Reuse the auth module",
    "risks": ["session fixation"],
    "stories": [
        {"id": "s1", "title": "Form", "description": "Render the form", "acceptance_criteria": ["form renders"]},
        {"id": "s2", "title": "Submit", "acceptance_criteria": ["posts credentials"]},
    ],
}


def _run_phase(phase_factory, agent, context):
    async def _run():
        source = InMemorySessionSource(responder=agent)
        watcher = CompletionWatcher(source)
        observer = RecordingObserver()
        phase = phase_factory(source, watcher)
        await phase.bridge.join(context.task.id, observer)
        result = await phase.run(context)
        return result, observer, source

    return asyncio.run(_run())


class TestAnalysisPhase:
    def test_creates_branch_and_parses_stories(self, bridge, vcs, task, tmp_path):
        context = PhaseContext(task=task, working_directory=tmp_path)
        agent = ScriptedAgent(default=json_reply(ANALYSIS))
        result, observer, source = _run_phase(
            lambda s, w: AnalysisPhase(bridge, s, w, vcs, timeout=5), agent, context
        )

        assert result.success, result.error
        assert vcs.calls[0] == ("create_branch", "task/task-1")
        updates = result.context_updates
        assert updates["branch_name"] == "task/task-1"
        assert updates["total_stories"] == 2
        assert updates["stories_completed"] == 0
        assert [s.id for s in updates["stories"]] == ["s1", "s2"]
        assert "### Approach\nReuse the auth module" in updates["analysis"]
        assert source.sessions["ses-1"]["title"] == "Analysis: Add login"
        assert "Add a login form" in agent.prompts[0]
        assert observer.payloads("phase:complete")[0]["total_stories"] == 2

    def test_existing_branch_name_is_kept(self, bridge, vcs, context):
        context.branch_name = "feature/login"
        agent = ScriptedAgent(default=json_reply(ANALYSIS))
        result, _, _ = _run_phase(lambda s, w: AnalysisPhase(bridge, s, w, vcs, timeout=5), agent, context)

        assert vcs.calls[0] == ("create_branch", "feature/login")
        assert result.context_updates["branch_name"] == "feature/login"

    def test_reply_without_json_fails(self, bridge, vcs, context):
        agent = ScriptedAgent(default="I looked around but have no plan.")
        result, _, _ = _run_phase(lambda s, w: AnalysisPhase(bridge, s, w, vcs, timeout=5), agent, context)

        assert result.success is False
        assert result.error == "Analysis output did not contain a JSON block"
        assert result.error_type == "InvalidAgentOutput"

    def test_reply_without_stories_fails(self, bridge, vcs, context):
        agent = ScriptedAgent(default=json_reply({"summary": "nothing to do", "stories": []}))
        result, _, _ = _run_phase(lambda s, w: AnalysisPhase(bridge, s, w, vcs, timeout=5), agent, context)

        assert result.error == "Analysis produced no stories"

    def test_parse_accepts_nested_analysis(self):
        text = json_reply({"analysis": {"summary": "S"}, "stories": [{"title": "Only"}]})
        analysis, stories = parse_analysis(text)
        assert analysis == {"summary": "S"}
        assert stories[0].id == "story-1"
        assert stories[0].title == "Only"

    def test_render_skips_empty_sections(self):
        assert render_analysis({"summary": "S", "risks": []}) == "### Summary\nS"


class TestDevelopmentPhase:
    def test_each_story_gets_a_session_and_commit(self, bridge, context):
        vcs = FakeVersionControl()
        context.stories = [Story(id="s1", title="Form"), Story(id="s2", title="Submit")]
        context.total_stories = 2

        async def agent(source, session_id, text):
            vcs.changes = True
            source.emit_idle(session_id)

        result, observer, source = _run_phase(
            lambda s, w: DevelopmentPhase(bridge, s, w, vcs, timeout=5), agent, context
        )

        assert result.success
        assert result.context_updates == {"stories_completed": 2, "total_stories": 2}
        assert [v["title"] for v in source.sessions.values()] == ["Story 1/2: Form", "Story 2/2: Submit"]
        commits = [c[1] for c in vcs.calls if c[0] == "commit_and_push"]
        assert commits == ["Form\n\nStory s1 of task task-1", "Submit\n\nStory s2 of task task-1"]
        assert observer.events().count("story:start") == 2
        assert [p["stories_completed"] for p in observer.payloads("story:complete")] == [1, 2]
        assert observer.payloads("story:start")[1] == {"story_id": "s2", "title": "Submit", "index": 1, "total": 2}

    def test_no_changes_means_no_commit(self, bridge, vcs, context):
        context.stories = [Story(id="s1", title="Form")]
        result, observer, _ = _run_phase(
            lambda s, w: DevelopmentPhase(bridge, s, w, vcs, timeout=5), ScriptedAgent(), context
        )

        assert result.success
        assert not any(c[0] == "commit_and_push" for c in vcs.calls)
        assert observer.payloads("story:complete")[0]["committed"] is False

    def test_without_stories_the_task_is_the_story(self, bridge, vcs, context):
        agent = ScriptedAgent()
        result, _, source = _run_phase(lambda s, w: DevelopmentPhase(bridge, s, w, vcs, timeout=5), agent, context)

        assert result.output["total_stories"] == 1
        assert source.sessions["ses-1"]["title"] == "Story 1/1: Add login"
        assert "Add a login form" in agent.prompts[0]

    def test_story_failure_stops_the_phase(self, bridge, vcs, context):
        context.stories = [Story(id="s1", title="Form"), Story(id="s2", title="Submit")]

        async def agent(source, session_id, text):
            if "Form" in text:
                source.emit_idle(session_id)
            else:
                source.emit_error(session_id, "tool crashed")

        result, observer, _ = _run_phase(
            lambda s, w: DevelopmentPhase(bridge, s, w, vcs, timeout=5), agent, context
        )

        assert result.success is False
        assert result.error == "Story s2 failed: tool crashed"
        assert result.output == {"stories_completed": 1, "total_stories": 2}
        assert observer.payloads("story:complete")[-1]["success"] is False


class TestJudgePhase:
    def test_approved_on_first_review(self, bridge, vcs, context):
        agent = ScriptedAgent(default=json_reply({"verdict": "approved", "score": 91, "summary": "good"}))
        result, observer, _ = _run_phase(lambda s, w: JudgePhase(bridge, s, w, vcs, timeout=5), agent, context)

        assert result.success
        assert result.context_updates == {"judge_verdict": "approved", "judge_score": 91}
        assert result.output["iterations"] == 1
        verdicts = [a for a in observer.payloads("agent:activity") if a.get("type") == "judge_verdict"]
        assert verdicts[0]["score"] == 91

    def test_revision_loop_fixes_then_approves(self, bridge, context):
        vcs = FakeVersionControl()
        reviews = iter(
            [
                json_reply({"verdict": "needs_revision", "score": 60, "issues": [{"severity": "major", "description": "no tests"}]}),
                json_reply({"verdict": "approved", "score": 85}),
            ]
        )

        async def agent(source, session_id, text):
            if text.startswith("# Fix"):
                vcs.changes = True
                source.emit_text(session_id, "fixed")
            else:
                source.emit_text(session_id, next(reviews))
            source.emit_idle(session_id)

        result, _, source = _run_phase(lambda s, w: JudgePhase(bridge, s, w, vcs, timeout=5), agent, context)

        assert result.success
        assert result.output["fixes"] == 1
        assert result.output["iterations"] == 2
        assert len(source.sessions) == 1
        assert ("commit_and_push", "Address review feedback (1) for Add login") in vcs.calls
        assert any("[MAJOR] no tests" in text for _, text in source.inputs)

    def test_fix_budget_exhausted_fails(self, bridge, vcs, context):
        needs = json_reply({"verdict": "needs_revision", "summary": "still broken", "issues": [{"description": "bug"}]})
        agent = ScriptedAgent({"# Evaluate": needs}, default="tried")
        result, _, _ = _run_phase(
            lambda s, w: JudgePhase(bridge, s, w, vcs, max_fix_iterations=2, timeout=5), agent, context
        )

        assert result.success is False
        assert result.error == "Judge verdict needs_revision after 3 review(s): still broken"
        assert result.error_type == "JudgeRejected"
        assert result.output["fixes"] == 2

    def test_revision_without_issues_is_accepted(self, bridge, vcs, context):
        agent = ScriptedAgent(default=json_reply({"verdict": "needs_revision", "score": 70, "issues": []}))
        result, _, _ = _run_phase(lambda s, w: JudgePhase(bridge, s, w, vcs, timeout=5), agent, context)

        assert result.success
        assert result.output["verdict"] == "approved"

    def test_rejected_fails_without_fixes(self, bridge, vcs, context):
        agent = ScriptedAgent(default=json_reply({"verdict": "rejected", "score": 10, "summary": "wrong approach"}))
        result, _, source = _run_phase(lambda s, w: JudgePhase(bridge, s, w, vcs, timeout=5), agent, context)

        assert result.success is False
        assert "wrong approach" in result.error
        assert len(source.inputs) == 1

    def test_unparseable_verdict_fails(self, bridge, vcs, context):
        result, _, _ = _run_phase(
            lambda s, w: JudgePhase(bridge, s, w, vcs, timeout=5), ScriptedAgent(default="looks fine to me"), context
        )

        assert result.success is False
        assert result.error_type == "ValueError"

    def test_parse_verdict_normalizes(self):
        verdict = parse_verdict(json_reply({"verdict": "APPROVED", "score": "88"}))
        assert verdict.approved
        assert verdict.score == 88
        assert parse_verdict(json_reply({"verdict": "maybe"})) is None
