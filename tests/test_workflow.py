"""Tests for the workflow engine and the phase steps.

Agent sessions are replaced by scripted clients; git is a Mock so tests can
assert exactly which commits were requested.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from task_agent.acp.client import PromptResult
from task_agent.artifacts import TaskFileManager
from task_agent.git_manager import CommitResult, TrackerResult
from task_agent.models import AgentConfig, PermissionMode, Task, TaskExecutionOptions, TaskRun
from task_agent.progress import TaskProgressReporter
from task_agent.prompts import PromptBuilder
from task_agent.protocols import GitOperations
from task_agent.questions import MarkdownQuestionExtractor, Question, QuestionsData
from task_agent.workflow import (
    CancellationHandle, ExecutionContext, StepDefinition, StepFailedError, StepResult,
    StepResults, StepStatus, TaskCancelledError, default_workflow, run_workflow,
)
from task_agent.workflow.git_actions import finalize_step_git_actions


RESEARCH_WITH_QUESTION = """\
# Research Findings

## Question 1: Which cache backend?
**Options:**
- a) Redis
- b) In-process LRU
**Recommended:** b) Simpler
"""


def scripted_client(text: str = "", stop_reason: str = "end_turn") -> Mock:
    client = Mock()
    client.start = AsyncMock()
    client.stop = AsyncMock()
    client.cancel = AsyncMock()
    client.create_session = AsyncMock(return_value="sess-1")
    client.prompt = AsyncMock(return_value=PromptResult(stop_reason=stop_reason, text=text))
    return client


class ClientFactory:
    """Hands out pre-built clients in order and remembers them."""

    def __init__(self, *clients: Mock):
        self._queue = list(clients)
        self.created: list[Mock] = []

    def __call__(self) -> Mock:
        if not self._queue:
            raise AssertionError("Unexpected agent session")
        client = self._queue.pop(0)
        self.created.append(client)
        return client


def make_git() -> Mock:
    git = Mock(spec=GitOperations)
    git.commit.return_value = CommitResult(created=True, sha="abc12345")
    tracker = Mock()
    tracker.finalize.return_value = TrackerResult(commit_created=True, pushed_branch=False, sha="def67890")
    git.track_operation.return_value = tracker
    return git


@pytest.fixture
def task() -> Task:
    return Task(id="T-1", title="Add caching", description="Cache the lookups")


def make_context(tmp_path, task, factory, cloud=False, git=None, extractor=None, options=None, events=None):
    files = TaskFileManager(tmp_path)
    return ExecutionContext(
        task=task,
        cwd=tmp_path,
        config=AgentConfig(),
        options=options or TaskExecutionOptions(is_cloud_mode=cloud),
        file_manager=files,
        git=git or make_git(),
        prompts=PromptBuilder(files),
        progress=TaskProgressReporter(None),
        extractor=extractor if extractor is not None else MarkdownQuestionExtractor(),
        emit=(events.append if events is not None else (lambda event: None)),
        client_factory=factory,
    )


def steps_by_id(push=False) -> dict[str, StepDefinition]:
    return {step.id: step for step in default_workflow(AgentConfig(), push=push)}


# =============================================================================
# Types
# =============================================================================

class TestStepResults:
    def test_record_once(self):
        results = StepResults()
        results.record("build", {"commit_created": True})
        assert "build" in results
        assert results.get("build") == {"commit_created": True}
        with pytest.raises(ValueError):
            results.record("build", {})

    def test_as_dict_is_a_copy(self):
        results = StepResults()
        results.record("a", 1)
        snapshot = results.as_dict()
        snapshot["b"] = 2
        assert len(results) == 1


class TestCancellationHandle:
    """Tests for the single live-session slot."""

    @pytest.mark.asyncio
    async def test_cancel_without_session_is_noop(self):
        assert await CancellationHandle().cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_reaches_bound_client(self):
        handle = CancellationHandle()
        client = scripted_client()
        with handle.bind(client):
            assert handle.is_active
            assert await handle.cancel() is True
        client.cancel.assert_awaited_once()
        assert not handle.is_active

    def test_bind_twice_raises(self):
        handle = CancellationHandle()
        with handle.bind(scripted_client()):
            with pytest.raises(RuntimeError):
                with handle.bind(scripted_client()):
                    pass
        assert handle.client is None

    def test_cleared_on_exception(self):
        handle = CancellationHandle()
        with pytest.raises(KeyError):
            with handle.bind(scripted_client()):
                raise KeyError("boom")
        assert handle.client is None


class TestDefaultWorkflow:
    def test_phase_profiles(self):
        config = AgentConfig(research_model="r-model", build_model="b-model")
        research, plan, build = default_workflow(config, push=True)

        assert [s.id for s in (research, plan, build)] == ["research", "plan", "build"]
        assert research.permission_mode == PermissionMode.PLAN
        assert plan.permission_mode == PermissionMode.PLAN
        assert build.permission_mode == PermissionMode.ACCEPT_EDITS
        assert research.model == "r-model"
        assert plan.model is None
        assert build.model == "b-model"
        assert all(s.commit and s.push for s in (research, plan, build))


# =============================================================================
# Engine
# =============================================================================

class TestRunWorkflow:
    """Tests for ordering, halting and error wrapping."""

    def _step(self, step_id, result=None, error=None, calls=None):
        async def run(step, context):
            if calls is not None:
                calls.append(step.id)
            if error is not None:
                raise error
            return result or StepResult.completed()

        return StepDefinition(id=step_id, name=step_id.title(), agent=step_id, run=run)

    @pytest.mark.asyncio
    async def test_runs_in_order(self, tmp_path, task):
        calls = []
        steps = [self._step("a", calls=calls), self._step("b", StepResult.skipped(), calls=calls)]
        outcome = await run_workflow(steps, make_context(tmp_path, task, ClientFactory()))

        assert calls == ["a", "b"]
        assert outcome.completed
        assert outcome.results["b"].status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_halt_stops_sequence(self, tmp_path, task):
        calls = []
        steps = [
            self._step("a", StepResult.completed(halt=True), calls=calls),
            self._step("b", calls=calls),
        ]
        outcome = await run_workflow(steps, make_context(tmp_path, task, ClientFactory()))

        assert calls == ["a"]
        assert outcome.halted
        assert outcome.halted_at == "a"

    @pytest.mark.asyncio
    async def test_error_is_wrapped_with_step(self, tmp_path, task):
        calls = []
        steps = [self._step("a", error=OSError("disk full"), calls=calls), self._step("b", calls=calls)]

        with pytest.raises(StepFailedError) as exc_info:
            await run_workflow(steps, make_context(tmp_path, task, ClientFactory()))

        assert calls == ["a"]
        assert exc_info.value.step_id == "a"
        assert isinstance(exc_info.value.cause, OSError)
        assert "disk full" in str(exc_info.value)


# =============================================================================
# Skip behaviour
# =============================================================================

class TestSkips:
    """Steps whose artifact exists open no session and make no commit."""

    @pytest.mark.asyncio
    async def test_all_artifacts_present(self, tmp_path):
        task = Task(
            id="T-1",
            title="Add caching",
            latest_run=TaskRun(id="run-1", output={"pr_url": "https://example.com/pr/1"}),
        )
        factory = ClientFactory()
        context = make_context(tmp_path, task, factory)
        context.file_manager.write_research(task.id, "findings")
        context.file_manager.write_plan(task.id, "plan")

        outcome = await run_workflow(default_workflow(context.config), context)

        assert factory.created == []
        assert all(r.status == StepStatus.SKIPPED for r in outcome.results.values())
        assert outcome.completed
        context.git.commit.assert_not_called()
        context.git.track_operation.assert_not_called()

    @pytest.mark.asyncio
    async def test_plan_halts_without_questions(self, tmp_path, task):
        factory = ClientFactory()
        context = make_context(tmp_path, task, factory)
        context.file_manager.write_research(task.id, "findings")

        result = await steps_by_id()["plan"].run(steps_by_id()["plan"], context)

        assert result.status == StepStatus.SKIPPED
        assert result.halt
        assert factory.created == []

    @pytest.mark.asyncio
    async def test_plan_halts_on_unanswered_questions(self, tmp_path, task):
        factory = ClientFactory()
        context = make_context(tmp_path, task, factory, cloud=True)
        context.file_manager.write_questions(task.id, QuestionsData(questions=[Question(id="q1", question="?")]))

        step = steps_by_id()["plan"]
        result = await step.run(step, context)

        assert result == StepResult.skipped(halt=True)
        assert factory.created == []
        context.git.commit.assert_not_called()


# =============================================================================
# Research
# =============================================================================

class TestResearchStep:
    """Tests for the research phase."""

    @pytest.mark.asyncio
    async def test_local_mode_writes_commits_and_halts(self, tmp_path, task):
        client = scripted_client(RESEARCH_WITH_QUESTION)
        events = []
        context = make_context(tmp_path, task, ClientFactory(client), events=events)
        step = steps_by_id()["research"]

        result = await step.run(step, context)

        assert result == StepResult.completed(halt=True)
        assert context.file_manager.read_research(task.id) == RESEARCH_WITH_QUESTION.strip()
        questions = context.file_manager.read_questions(task.id)
        assert [q.question for q in questions.questions] == ["Which cache backend?"]
        assert not questions.answered

        context.git.add_namespace.assert_called_once()
        context.git.commit.assert_called_once_with("Research phase for Add caching", push=False)
        client.create_session.assert_awaited_once()
        assert client.create_session.call_args.kwargs["permission_mode"] == "plan"
        assert client.create_session.call_args.kwargs["system_prompt"]
        client.stop.assert_awaited_once()
        assert "commit_made" in [getattr(e, "status", None) for e in events]

    @pytest.mark.asyncio
    async def test_empty_output_writes_nothing(self, tmp_path, task):
        context = make_context(tmp_path, task, ClientFactory(scripted_client("   ")))
        step = steps_by_id()["research"]

        result = await step.run(step, context)

        assert context.file_manager.read_research(task.id) is None
        assert context.file_manager.read_questions(task.id) is None
        # Local mode pauses after research regardless of output
        assert result.halt

    @pytest.mark.asyncio
    async def test_extraction_failure_is_best_effort(self, tmp_path, task):
        extractor = Mock()
        extractor.extract_questions = AsyncMock(side_effect=RuntimeError("extractor down"))
        events = []
        context = make_context(tmp_path, task, ClientFactory(scripted_client("findings")), extractor=extractor, events=events)
        step = steps_by_id()["research"]

        result = await step.run(step, context)

        assert result.halt
        assert context.file_manager.read_research(task.id) == "findings"
        assert context.file_manager.read_questions(task.id) is None
        context.git.commit.assert_called_once()
        errors = [e for e in events if getattr(e, "status", None) == "error"]
        assert errors[0].data["kind"] == "extraction_error"

    @pytest.mark.asyncio
    async def test_cloud_mode_auto_answers(self, tmp_path, task):
        context = make_context(tmp_path, task, ClientFactory(scripted_client(RESEARCH_WITH_QUESTION)), cloud=True)
        step = steps_by_id(push=True)["research"]

        result = await step.run(step, context)

        assert result == StepResult.completed()
        questions = context.file_manager.read_questions(task.id)
        assert questions.is_answered
        assert questions.answer_for("q1").selected_option == "b"
        assert [c.args[0] for c in context.git.commit.call_args_list] == [
            "Research phase for Add caching",
            "Answer research questions for Add caching",
        ]
        assert all(c.kwargs["push"] is True for c in context.git.commit.call_args_list)


# =============================================================================
# Plan and build
# =============================================================================

class TestPlanStep:
    """Tests for the planning phase."""

    @pytest.mark.asyncio
    async def test_empty_question_list_counts_as_answered(self, tmp_path, task):
        client = scripted_client("# Plan\n1. Do it")
        context = make_context(tmp_path, task, ClientFactory(client))
        context.file_manager.write_research(task.id, "findings")
        context.file_manager.write_questions(task.id, QuestionsData())
        step = steps_by_id()["plan"]

        result = await step.run(step, context)

        assert result == StepResult.completed(halt=True)
        assert context.file_manager.read_plan(task.id) == "# Plan\n1. Do it"
        context.git.commit.assert_called_once_with("Plan for Add caching", push=False)
        prompt = client.prompt.call_args.args[0]
        assert "## Research Analysis" in prompt
        assert client.create_session.call_args.kwargs["permission_mode"] == "plan"

    @pytest.mark.asyncio
    async def test_cloud_mode_continues(self, tmp_path, task):
        context = make_context(tmp_path, task, ClientFactory(scripted_client("plan")), cloud=True)
        context.file_manager.write_questions(task.id, QuestionsData(answered=True, answers=[]))
        step = steps_by_id()["plan"]

        assert await step.run(step, context) == StepResult.completed()


class TestBuildStep:
    """Tests for the build phase."""

    @pytest.mark.asyncio
    async def test_records_commit_result(self, tmp_path, task):
        client = scripted_client("done")
        context = make_context(tmp_path, task, ClientFactory(client))
        step = steps_by_id()["build"]

        result = await step.run(step, context)

        assert result == StepResult.completed()
        context.git.track_operation.return_value.finalize.assert_called_once_with(
            "Implement task: Add caching", push=False
        )
        assert context.step_results.get("build") == {"commit_created": True, "pushed_branch": False}
        assert client.create_session.call_args.kwargs["permission_mode"] == "acceptEdits"

    @pytest.mark.asyncio
    async def test_permission_mode_override(self, tmp_path, task):
        client = scripted_client("done")
        options = TaskExecutionOptions(permission_mode=PermissionMode.BYPASS)
        context = make_context(tmp_path, task, ClientFactory(client), options=options)
        step = steps_by_id()["build"]

        await step.run(step, context)
        assert client.create_session.call_args.kwargs["permission_mode"] == "bypassPermissions"

    @pytest.mark.asyncio
    async def test_no_changes(self, tmp_path, task):
        git = make_git()
        git.track_operation.return_value.finalize.return_value = TrackerResult(commit_created=False, pushed_branch=False)
        context = make_context(tmp_path, task, ClientFactory(scripted_client("nothing")), git=git)
        step = steps_by_id()["build"]

        await step.run(step, context)
        assert context.step_results.get("build") == {"commit_created": False, "pushed_branch": False}


# =============================================================================
# Full sequences
# =============================================================================

class TestSequences:
    """Tests for the default workflow end to end."""

    @pytest.mark.asyncio
    async def test_cloud_mode_runs_all_phases(self, tmp_path, task):
        factory = ClientFactory(
            scripted_client(RESEARCH_WITH_QUESTION),
            scripted_client("# Plan"),
            scripted_client("built"),
        )
        context = make_context(tmp_path, task, factory, cloud=True)

        outcome = await run_workflow(default_workflow(context.config, push=True), context)

        assert outcome.completed
        assert [r.status for r in outcome.results.values()] == [StepStatus.COMPLETED] * 3
        assert len(factory.created) == 3
        context.git.track_operation.return_value.finalize.assert_called_once_with(
            "Implement task: Add caching", push=True
        )
        assert context.cancellation.client is None

    @pytest.mark.asyncio
    async def test_cloud_mode_empty_research_halts_at_plan(self, tmp_path, task):
        factory = ClientFactory(scripted_client(""))
        context = make_context(tmp_path, task, factory, cloud=True)

        outcome = await run_workflow(default_workflow(context.config), context)

        assert outcome.results["research"].status == StepStatus.COMPLETED
        assert not outcome.results["research"].halt
        assert outcome.halted_at == "plan"
        assert outcome.results["plan"].status == StepStatus.SKIPPED
        assert len(factory.created) == 1


# =============================================================================
# Cancellation and failures
# =============================================================================

class TestSessionFailures:
    """The live-session slot is cleared on every exit path."""

    @pytest.mark.asyncio
    async def test_handle_cleared_when_prompt_raises(self, tmp_path, task):
        client = scripted_client()
        context = make_context(tmp_path, task, ClientFactory(client))
        seen_during_prompt = []

        async def failing_prompt(text):
            seen_during_prompt.append(context.cancellation.client)
            raise RuntimeError("agent crashed")

        client.prompt.side_effect = failing_prompt

        with pytest.raises(StepFailedError) as exc_info:
            await run_workflow(default_workflow(context.config), context)

        assert seen_during_prompt == [client]
        assert context.cancellation.client is None
        client.stop.assert_awaited_once()
        assert exc_info.value.step_id == "research"
        context.git.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancelled_turn_fails_step(self, tmp_path, task):
        client = scripted_client("partial", stop_reason="cancelled")
        context = make_context(tmp_path, task, ClientFactory(client))

        with pytest.raises(StepFailedError) as exc_info:
            await run_workflow(default_workflow(context.config), context)

        assert isinstance(exc_info.value.cause, TaskCancelledError)
        assert context.file_manager.read_research(task.id) is None
        assert context.cancellation.client is None

    @pytest.mark.asyncio
    async def test_step_without_commit(self, tmp_path, task):
        context = make_context(tmp_path, task, ClientFactory())
        step = StepDefinition(id="x", name="X", agent="x", run=AsyncMock(), commit=False)

        assert await finalize_step_git_actions(context, step, "msg") is None
        context.git.commit.assert_not_called()
