"""Unit tests for the workflow execution engine."""

import pytest

from secure_assessment.exceptions import AssessmentError, ErrorCode, configuration_error, network_violation
from secure_assessment.models import ResultFragment
from secure_assessment.recovery.manager import RecoveryManager
from secure_assessment.workflows.catalog import get_workflow
from secure_assessment.workflows.definition import parse_workflow
from secure_assessment.workflows.executor import (
    StepStatus,
    WorkflowContext,
    WorkflowExecutor,
    build_schedule,
    resolve_workflow,
)
from tests.mocks import RecordingToolAdapter, finding, recording_registry


def _workflow(steps, parallel=(), cleanup=()):
    return parse_workflow(
        {
            "name": "test-workflow",
            "version": "1.0.0",
            "codebase_types": ["*"],
            "steps": list(steps),
            "parallel_groups": [list(group) for group in parallel],
            "cleanup": list(cleanup),
        }
    )


def _step(name, **extra):
    return {"name": name, "tool": name, **extra}


def _adapters(*names, log=None, **kwargs):
    return {name: RecordingToolAdapter(name, log=log, **kwargs) for name in names}


@pytest.fixture
def context(nodejs_codebase):
    return WorkflowContext(
        environment_id="env-1",
        codebase_type="nodejs",
        detected_languages=["javascript", "typescript"],
        workspace_path=nodejs_codebase,
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_executor(test_settings, sleeps):
    async def record_sleep(delay):
        sleeps.append(delay)

    def factory(adapters, degrade=False, **kwargs):
        registry, _ = recording_registry(adapters)
        return WorkflowExecutor(
            registry,
            recovery=RecoveryManager(),
            settings=kwargs.pop("settings", test_settings),
            degrade_on_failure=degrade,
            sleep=record_sleep,
            **kwargs,
        )

    return factory


class TestBuildSchedule:
    def test_groups_placed_at_first_member(self):
        workflow = _workflow(
            [_step("a"), _step("b"), _step("c"), _step("d")],
            parallel=[["d", "b"]],
        )

        schedule = [[s.name for s in unit] for unit in build_schedule(workflow)]

        assert schedule == [["a"], ["b", "d"], ["c"]]

    def test_step_in_two_groups_runs_once(self):
        workflow = _workflow([_step("a"), _step("b"), _step("c")], parallel=[["a", "b"], ["b", "c"]])

        schedule = [[s.name for s in unit] for unit in build_schedule(workflow)]

        assert schedule == [["a", "b"], ["c"]]


class TestResolveWorkflow:
    def test_by_name(self):
        assert resolve_workflow("quick-scan", "nodejs", [], []).name == "quick-scan"

    def test_auto_select(self):
        assert resolve_workflow(None, "solidity", ["solidity"], []).name == "solidity-standard"

    def test_from_file(self, tmp_path):
        path = tmp_path / "wf.yaml"
        path.write_text("name: from-file\nversion: '1'\ncodebase_types: [nodejs]\nsteps:\n  - {name: a, tool: setup}\n")

        assert resolve_workflow(str(path), "nodejs", [], []).name == "from-file"

    def test_definition_passthrough(self):
        workflow = get_workflow("nodejs-standard")

        assert resolve_workflow(workflow, "solidity", [], []) is workflow


class TestSequentialExecution:
    async def test_declaration_order_and_merge(self, make_executor, context):
        log = []
        adapters = _adapters("a", "b", "c", log=log)
        adapters["b"].fragment = ResultFragment(security_findings=[finding("b", "one")])
        adapters["c"].fragment = ResultFragment(
            security_findings=[finding("c", "two")],
            test_results=[{"test": "t", "status": "passed"}],
        )

        result = await make_executor(adapters).execute(_workflow([_step("a"), _step("b"), _step("c")]), context)

        assert log == ["a", "b", "c"]
        assert result.success
        assert result.executed_steps == ["a", "b", "c"]
        assert len(result.results.security_findings) == 2
        assert result.results.total_findings == 3
        assert result.outcomes["b"].status is StepStatus.SUCCEEDED

    async def test_step_config_passed_to_adapter(self, make_executor, context):
        adapters = _adapters("a")

        await make_executor(adapters).execute(_workflow([_step("a", config={"audit_level": "high"})]), context)

        assert adapters["a"].calls == [{"audit_level": "high"}]

    async def test_unknown_tool_fails_step(self, make_executor, context):
        workflow = _workflow([{"name": "x", "tool": "not-registered", "continue_on_error": True}])

        result = await make_executor({}).execute(workflow, context)

        assert result.failed_steps == ["x"]
        assert result.errors == ["x: Unknown tool: not-registered"]


class TestParallelGroups:
    async def test_group_members_all_run(self, make_executor, context):
        log = []
        adapters = _adapters("setup", "lint", "scan", "tests", log=log)
        adapters["lint"].delay = 0.02
        workflow = _workflow(
            [_step("setup"), _step("lint"), _step("scan"), _step("tests")],
            parallel=[["lint", "scan"]],
        )

        result = await make_executor(adapters).execute(workflow, context)

        assert log[0] == "setup"
        assert sorted(log[1:3]) == ["lint", "scan"]
        assert log[3] == "tests"
        assert sorted(result.executed_steps) == ["lint", "scan", "setup", "tests"]

    async def test_security_violation_surfaces_after_group_settles(self, make_executor, context):
        log = []
        adapters = _adapters("lint", "scan", "teardown", log=log)
        adapters["lint"].delay = 0.02
        adapters["scan"].failures = 1
        adapters["scan"].error = network_violation("Outbound connection to evil.example.com")
        workflow = _workflow(
            [_step("lint"), _step("scan"), _step("after")],
            parallel=[["lint", "scan"]],
            cleanup=[_step("teardown")],
        )

        with pytest.raises(AssessmentError) as exc_info:
            await make_executor(adapters).execute(workflow, context)

        assert exc_info.value.code is ErrorCode.SECURITY_VIOLATION_NETWORK
        assert log == ["lint", "teardown"]


class TestRetries:
    async def test_transient_failures_retried(self, make_executor, context, sleeps):
        adapters = _adapters("flaky", failures=2)

        result = await make_executor(adapters).execute(_workflow([_step("flaky", retries=2)]), context)

        assert result.success
        assert result.errors == []
        assert result.outcomes["flaky"].attempts == 3
        assert [(e.step, e.attempt) for e in result.retry_events] == [("flaky", 1), ("flaky", 2)]
        assert sleeps == [0.0, 0.0]

    async def test_backoff_doubles(self, make_executor, context, sleeps, test_settings):
        settings = test_settings.model_copy(update={"step_backoff_base_seconds": 1.0})
        adapters = _adapters("flaky", failures=3)

        await make_executor(adapters, settings=settings).execute(_workflow([_step("flaky", retries=3)]), context)

        assert sleeps == [1.0, 2.0, 4.0]

    async def test_fail_fast_error_not_retried(self, make_executor, context):
        adapters = _adapters("bad", failures=5, error=configuration_error("missing rules file"))
        workflow = _workflow([_step("bad", retries=3, continue_on_error=True)])

        result = await make_executor(adapters).execute(workflow, context)

        assert result.outcomes["bad"].attempts == 1
        assert result.retry_events == []

    async def test_exhausted_retries_recorded(self, make_executor, context, sleeps):
        adapters = _adapters("flaky", failures=5)
        workflow = _workflow([_step("flaky", retries=1, continue_on_error=True)])

        result = await make_executor(adapters).execute(workflow, context)

        outcome = result.outcomes["flaky"]
        assert outcome.status is StepStatus.FAILED
        assert outcome.attempts == 2
        assert outcome.exception.message == "flaky failed"
        assert result.errors == ["flaky: flaky failed"]
        assert len(sleeps) == 1


class TestConditions:
    async def test_false_condition_skips(self, make_executor, context):
        adapters = _adapters("audit", "compile")
        workflow = _workflow(
            [
                _step("audit", condition={"type": "file-exists", "value": "package.json"}),
                _step("compile", condition={"type": "file-exists", "value": "contracts"}),
            ]
        )

        result = await make_executor(adapters).execute(workflow, context)

        assert result.executed_steps == ["audit"]
        assert result.skipped_steps == ["compile"]
        assert result.success
        assert adapters["compile"].calls == []

    async def test_custom_condition(self, make_executor, context):
        adapters = _adapters("gated")
        executor = make_executor(adapters, custom_conditions={"never": lambda ctx, cond: False})

        result = await executor.execute(
            _workflow([_step("gated", condition={"type": "custom", "value": "never"})]),
            context,
        )

        assert result.skipped_steps == ["gated"]

    async def test_raising_condition_fails_step(self, make_executor, context):
        def broken(ctx, cond):
            raise KeyError("missing")

        adapters = _adapters("gated")
        executor = make_executor(adapters, custom_conditions={"broken": broken})

        result = await executor.execute(
            _workflow([_step("gated", continue_on_error=True, condition={"type": "custom", "value": "broken"})]),
            context,
        )

        assert result.failed_steps == ["gated"]
        assert adapters["gated"].calls == []

    async def test_raising_condition_aborts_workflow(self, make_executor, context):
        def broken(ctx, cond):
            raise KeyError("missing")

        adapters = _adapters("gated", "after")
        executor = make_executor(adapters, custom_conditions={"broken": broken})

        with pytest.raises(AssessmentError) as exc_info:
            await executor.execute(
                _workflow([_step("gated", condition={"type": "custom", "value": "broken"}), _step("after")]),
                context,
            )

        assert exc_info.value.context["step"] == "gated"
        assert adapters["after"].calls == []


class TestFailureHandling:
    async def test_continue_on_error(self, make_executor, context):
        log = []
        adapters = _adapters("a", "b", "c", log=log)
        adapters["b"].failures = 1

        result = await make_executor(adapters).execute(
            _workflow([_step("a"), _step("b", continue_on_error=True), _step("c")]),
            context,
        )

        assert log == ["a", "c"]
        assert result.failed_steps == ["b"]
        assert result.errors == ["b: b failed"]
        assert not result.success

    async def test_abort_after_progress_is_partial(self, make_executor, context):
        adapters = _adapters("a", "b", "c")
        adapters["a"].fragment = ResultFragment(security_findings=[finding("a", "x")])
        adapters["b"].failures = 1
        executor = make_executor(adapters)

        with pytest.raises(AssessmentError) as exc_info:
            await executor.execute(_workflow([_step("a"), _step("b"), _step("c")]), context)

        error = exc_info.value
        assert error.code is ErrorCode.PARTIAL_ANALYSIS_FAILURE
        assert error.context["completed_steps"] == ["a"]
        assert error.context["workflow_result"].failed_steps == ["b"]
        assert adapters["c"].calls == []
        preserved = executor.recovery.get_preserved_results("env-1")
        assert preserved["completed_steps"] == ["a"]

    async def test_abort_on_first_step(self, make_executor, context):
        adapters = _adapters("a", "b", failures=1)

        with pytest.raises(AssessmentError) as exc_info:
            await make_executor(adapters).execute(_workflow([_step("a"), _step("b")]), context)

        assert exc_info.value.code is ErrorCode.WORKFLOW_EXECUTION_FAILED
        assert exc_info.value.context["step"] == "a"

    async def test_cleanup_runs_after_failure(self, make_executor, context):
        log = []
        adapters = _adapters("a", "teardown", log=log)
        adapters["a"].failures = 1

        with pytest.raises(AssessmentError):
            await make_executor(adapters).execute(_workflow([_step("a")], cleanup=[_step("teardown")]), context)

        assert log == ["teardown"]

    async def test_cleanup_failure_does_not_abort(self, make_executor, context):
        adapters = _adapters("a", "teardown")
        adapters["teardown"].failures = 1

        result = await make_executor(adapters).execute(
            _workflow([_step("a")], cleanup=[_step("teardown")]),
            context,
        )

        assert result.executed_steps == ["a"]
        assert result.outcomes["teardown"].cleanup
        assert result.outcomes["teardown"].status is StepStatus.FAILED


class TestDegradation:
    async def test_continues_with_reduced_plan(self, make_executor, context):
        log = []
        adapters = _adapters("a", "b", "optional-docs", "tests", "heavy", "final", log=log)
        adapters["b"].failures = 1
        workflow = _workflow(
            [
                _step("a"),
                _step("b"),
                _step("optional-docs"),
                _step("tests", type="test"),
                _step("heavy", timeoutMs=60000),
                _step("final"),
            ]
        )

        result = await make_executor(adapters, degrade=True).execute(workflow, context)

        assert log == ["a", "heavy", "final"]
        assert result.degraded
        assert result.skipped_steps == ["optional-docs", "tests"]
        assert "2 optional steps were skipped" in result.degradation_reason
        assert "1 steps were modified" in result.degradation_reason
        assert result.failed_steps == ["b"]
        assert not result.success

    async def test_nothing_left_to_run_aborts(self, make_executor, context):
        adapters = _adapters("a", "b", "optional-extra")
        adapters["b"].failures = 1
        workflow = _workflow([_step("a"), _step("b"), _step("optional-extra")])

        with pytest.raises(AssessmentError) as exc_info:
            await make_executor(adapters, degrade=True).execute(workflow, context)

        assert exc_info.value.code is ErrorCode.PARTIAL_ANALYSIS_FAILURE


class TestProgress:
    async def test_progress_reported(self, make_executor, context):
        updates = []
        adapters = _adapters("a", "b", "c", "teardown")
        workflow = _workflow(
            [_step("a", description="Prepare"), _step("b"), _step("c")],
            parallel=[["b", "c"]],
            cleanup=[_step("teardown")],
        )

        await make_executor(adapters).execute(workflow, context, on_progress=updates.append)

        assert [(u.stage, u.percent) for u in updates] == [
            ("analysis", 0),
            ("analysis", 33),
            ("cleanup", 95),
            ("complete", 100),
        ]
        assert updates[0].message == "Executing: Prepare"
        assert updates[1].message == "Executing parallel group: b, c"

    async def test_failing_callback_ignored(self, make_executor, context):
        async def broken(update):
            raise RuntimeError("listener gone")

        result = await make_executor(_adapters("a")).execute(_workflow([_step("a")]), context, on_progress=broken)

        assert result.success
