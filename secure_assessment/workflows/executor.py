"""Workflow execution engine.

Runs a WorkflowDefinition against one environment:

- steps outside parallel groups run strictly in declaration order
- a parallel group runs concurrently at the position of its first declared
  member and settles completely before execution moves on
- a step whose condition is false is skipped, not failed
- a failing step is retried ``retries`` times with exponential backoff;
  once exhausted it aborts the run unless ``continue_on_error`` is set
- cleanup steps always run, after success, failure or degradation

Step outputs are merged into one AnalysisResults as they complete.
"""

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from secure_assessment.exceptions import (
    AssessmentError,
    classify_exception,
    log_assessment_error,
    workflow_execution_error,
)
from secure_assessment.models import AnalysisResults, ProgressUpdate, ResultFragment
from secure_assessment.recovery.manager import RecoveryManager
from secure_assessment.recovery.strategies import RecoveryState
from secure_assessment.sandbox.runtime import ContainerRuntime
from secure_assessment.settings import Settings, get_settings
from secure_assessment.workflows.adapters import ToolRegistry, default_tool_registry
from secure_assessment.workflows.catalog import auto_select_workflow, get_workflow
from secure_assessment.workflows.definition import (
    CustomCondition,
    WorkflowDefinition,
    WorkflowStep,
    evaluate_condition,
    load_workflow,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], Awaitable[None] | None]


@dataclass
class WorkflowContext:
    """What a step can see of the environment it runs in."""

    environment_id: str
    codebase_type: str
    runtime: ContainerRuntime | None = None
    handle: str | None = None
    detected_languages: list[str] = field(default_factory=list)
    detected_frameworks: list[str] = field(default_factory=list)
    # Host-side copy of the mounted codebase, for file-exists conditions
    workspace_path: Path | None = None
    container_workspace: str = "/workspace"
    output_path: str = "/output"
    env: dict[str, str] = field(default_factory=dict)
    exec_ceiling_seconds: float | None = None


class StepStatus(StrEnum):
    PENDING = "pending"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StepOutcome(BaseModel):
    """Final state of one step."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    error: str | None = None
    duration_ms: float = 0.0
    cleanup: bool = False
    exception: AssessmentError | None = Field(default=None, exclude=True)


class RetryEvent(BaseModel):
    """One failed attempt that was followed by another."""

    step: str
    attempt: int = Field(..., description="1-based attempt that failed")
    error: str
    delay_seconds: float


class WorkflowResult(BaseModel):
    """Everything a workflow run produced."""

    workflow: str
    version: str
    environment_id: str
    success: bool = False
    results: AnalysisResults = Field(default_factory=AnalysisResults)
    executed_steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    outcomes: dict[str, StepOutcome] = Field(default_factory=dict)
    retry_events: list[RetryEvent] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    degraded: bool = False
    degradation_reason: str | None = None
    duration_ms: float = 0.0


def build_schedule(workflow: WorkflowDefinition) -> list[list[WorkflowStep]]:
    """Execution units in order; a unit with several steps runs concurrently.

    A parallel group is placed at its first declared member. A step named
    in several groups runs once, with the first group that reaches it.
    """
    scheduled: set[str] = set()
    units: list[list[WorkflowStep]] = []

    for step in workflow.steps:
        if step.name in scheduled:
            continue
        group = next((g for g in workflow.parallel_groups if step.name in g), None)
        if group is None:
            units.append([step])
            scheduled.add(step.name)
            continue
        members = [s for s in workflow.steps if s.name in group and s.name not in scheduled]
        units.append(members)
        scheduled.update(s.name for s in members)

    return units


def resolve_workflow(
    workflow: WorkflowDefinition | str | Path | None,
    codebase_type: str,
    detected_languages: list[str],
    detected_frameworks: list[str],
    quick_scan: bool = False,
) -> WorkflowDefinition:
    """Turn a definition, catalog name, file path or nothing into a definition."""
    if isinstance(workflow, WorkflowDefinition):
        resolved = workflow
    elif workflow is None:
        resolved = auto_select_workflow(codebase_type, detected_languages, detected_frameworks, quick_scan)
    else:
        resolved = get_workflow(str(workflow)) if isinstance(workflow, str) else None
        if resolved is None:
            resolved = load_workflow(workflow)

    if not resolved.is_compatible(codebase_type):
        logger.warning(
            "Workflow %s does not declare support for %s codebases",
            resolved.name,
            codebase_type,
        )
    return resolved


class WorkflowExecutor:
    """Executes workflow definitions through tool adapters.

    Usage:
        executor = WorkflowExecutor()
        result = await executor.execute(workflow, context, on_progress=print)
    """

    def __init__(
        self,
        tools: ToolRegistry | None = None,
        *,
        recovery: RecoveryManager | None = None,
        settings: Settings | None = None,
        custom_conditions: Mapping[str, CustomCondition] | None = None,
        degrade_on_failure: bool | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.tools = tools or default_tool_registry(self.settings)
        self.recovery = recovery or RecoveryManager()
        self.custom_conditions = dict(custom_conditions or {})
        self.degrade_on_failure = (
            self.settings.workflow_degrade_on_failure if degrade_on_failure is None else degrade_on_failure
        )
        self._sleep = sleep

    async def execute(
        self,
        workflow: WorkflowDefinition,
        context: WorkflowContext,
        on_progress: ProgressCallback | None = None,
    ) -> WorkflowResult:
        """Run ``workflow`` to completion.

        Returns:
            WorkflowResult when no step aborted the run

        Raises:
            AssessmentError: a security violation raised by a tool (after
                cleanup), PARTIAL_ANALYSIS_FAILURE when a step aborted the
                run after others completed, WORKFLOW_EXECUTION_FAILED when
                nothing completed
        """
        started = time.monotonic()
        result = WorkflowResult(
            workflow=workflow.name,
            version=workflow.version,
            environment_id=context.environment_id,
        )
        logger.info(
            "Executing workflow %s v%s in %s",
            workflow.name,
            workflow.version,
            context.environment_id,
        )

        aborted: tuple[str, AssessmentError] | None = None
        try:
            aborted = await self._run_main(workflow, context, result, on_progress)
        finally:
            if workflow.cleanup:
                await self._report(on_progress, "cleanup", 95, "Running cleanup steps")
                for step in workflow.cleanup:
                    await self._run_step(step, context, result, cleanup=True)
            result.duration_ms = (time.monotonic() - started) * 1000

        result.success = aborted is None and not result.errors
        if aborted is None:
            await self._report(on_progress, "complete", 100, f"Workflow {workflow.name} finished")
            logger.info(
                "Workflow %s finished in %.0fms: %d executed, %d skipped, %d failed",
                workflow.name,
                result.duration_ms,
                len(result.executed_steps),
                len(result.skipped_steps),
                len(result.failed_steps),
            )
            return result

        step_name, error = aborted
        if result.executed_steps:
            raise self._partial_failure(context, result, error)
        failure = workflow_execution_error(
            workflow.name,
            error.message,
            step=step_name,
            environment_id=context.environment_id,
            workflow_result=result,
        )
        failure.__cause__ = error
        log_assessment_error(logger, failure)
        raise failure

    async def _run_main(
        self,
        workflow: WorkflowDefinition,
        context: WorkflowContext,
        result: WorkflowResult,
        on_progress: ProgressCallback | None,
    ) -> tuple[str, AssessmentError] | None:
        units = build_schedule(workflow)
        total = len(workflow.steps)
        done = 0
        index = 0

        while index < len(units):
            unit = units[index]
            index += 1
            names = ", ".join(step.name for step in unit)
            description = unit[0].description or unit[0].name
            message = f"Executing: {description}" if len(unit) == 1 else f"Executing parallel group: {names}"
            await self._report(on_progress, "analysis", int(done / total * 100), message)

            if len(unit) == 1:
                outcomes = [await self._run_step(unit[0], context, result)]
            else:
                settled = await asyncio.gather(
                    *(self._run_step(step, context, result) for step in unit),
                    return_exceptions=True,
                )
                # Security violations surface only after the whole group settles
                for item in settled:
                    if isinstance(item, BaseException):
                        raise item
                outcomes = list(settled)
            done += len(unit)

            fatal = [
                (step, outcome.exception)
                for step, outcome in zip(unit, outcomes, strict=True)
                if outcome.status is StepStatus.FAILED
                and outcome.exception is not None
                and not step.continue_on_error
            ]
            if not fatal:
                continue

            step, error = fatal[0]
            remaining = [s for later in units[index:] for s in later]
            if self.degrade_on_failure and remaining:
                degraded_units = self._degrade(error, context, result, units[index:])
                if degraded_units is not None:
                    units[index:] = degraded_units
                    total = done + sum(len(u) for u in degraded_units)
                    continue
            logger.error("Step %s failed, aborting workflow %s", step.name, workflow.name)
            return step.name, error

        return None

    def _degrade(
        self,
        error: AssessmentError,
        context: WorkflowContext,
        result: WorkflowResult,
        remaining_units: list[list[WorkflowStep]],
    ) -> list[list[WorkflowStep]] | None:
        state = RecoveryState(
            environment_id=context.environment_id,
            completed_steps=list(result.executed_steps),
            failed_steps=list(result.failed_steps),
            partial_results=result.results,
            last_error=error,
        )
        remaining = [step for unit in remaining_units for step in unit]
        plan = self.recovery.create_degradation_plan(error, state, remaining)
        if not plan.can_continue:
            logger.warning("Degradation cannot continue: %s", plan.reason)
            return None

        result.degraded = True
        result.degradation_reason = plan.reason
        for name in plan.skipped_steps:
            result.skipped_steps.append(name)
            result.outcomes[name] = StepOutcome(name=name, status=StepStatus.SKIPPED)

        replacements = {step.name: step for step in plan.steps_to_run}
        units = []
        for unit in remaining_units:
            kept = [replacements[step.name] for step in unit if step.name in replacements]
            if kept:
                units.append(kept)
        logger.warning("Continuing degraded: %s", plan.reason)
        return units

    async def _run_step(
        self,
        step: WorkflowStep,
        context: WorkflowContext,
        result: WorkflowResult,
        cleanup: bool = False,
    ) -> StepOutcome:
        """Execute one step with its retries. Only security violations escape."""
        started = time.monotonic()
        outcome = StepOutcome(name=step.name, cleanup=cleanup)
        result.outcomes[step.name] = outcome

        try:
            should_run = step.condition is None or evaluate_condition(
                step.condition, context, self.custom_conditions
            )
        except Exception as e:
            error = classify_exception(e, step=step.name)
            return self._record_failure(step, outcome, result, error, started, cleanup)

        if not should_run:
            logger.info("Skipping step due to condition: %s", step.name)
            outcome.status = StepStatus.SKIPPED
            result.skipped_steps.append(step.name)
            return outcome

        logger.info("Executing step: %s (%s)", step.name, step.tool)
        attempt = 0
        while True:
            outcome.attempts = attempt + 1
            try:
                adapter = self.tools.get(step.tool)
                fragment = await adapter.execute(dict(step.config), context)
            except AssessmentError as e:
                if e.is_security_violation:
                    outcome.status = StepStatus.FAILED
                    outcome.error = e.message
                    raise
                error = e
            except Exception as e:
                error = classify_exception(e, step=step.name, tool=step.tool)
            else:
                if not isinstance(fragment, ResultFragment):
                    fragment = ResultFragment.model_validate(fragment or {})
                result.results.merge(fragment)
                result.executed_steps.append(step.name)
                outcome.status = StepStatus.SUCCEEDED
                outcome.duration_ms = (time.monotonic() - started) * 1000
                logger.info("Step completed successfully: %s", step.name)
                return outcome

            if error.is_fail_fast or attempt >= step.retries:
                return self._record_failure(step, outcome, result, error, started, cleanup)
            delay = self.settings.step_backoff_base_seconds * 2**attempt
            result.retry_events.append(
                RetryEvent(step=step.name, attempt=attempt + 1, error=error.message, delay_seconds=delay)
            )
            logger.warning(
                "Step failed, retrying (%d/%d): %s: %s",
                attempt + 1,
                step.retries,
                step.name,
                error.message,
            )
            await self._sleep(delay)
            attempt += 1

    def _record_failure(
        self,
        step: WorkflowStep,
        outcome: StepOutcome,
        result: WorkflowResult,
        error: AssessmentError,
        started: float,
        cleanup: bool,
    ) -> StepOutcome:
        outcome.status = StepStatus.FAILED
        outcome.error = error.message
        outcome.duration_ms = (time.monotonic() - started) * 1000
        result.failed_steps.append(step.name)
        result.errors.append(f"{step.name}: {error.message}")
        outcome.exception = error
        log_assessment_error(
            logger,
            error,
            f"Step {step.name} failed"
            + (" (continuing)" if step.continue_on_error or cleanup else ""),
        )
        return outcome

    def _partial_failure(
        self,
        context: WorkflowContext,
        result: WorkflowResult,
        error: AssessmentError,
    ) -> AssessmentError:
        partial = self.recovery.preserve_partial_results(
            context.environment_id,
            result.executed_steps,
            result.results,
            error,
            failed_steps=result.failed_steps,
        )
        partial.context["workflow_result"] = result
        log_assessment_error(logger, partial)
        return partial

    @staticmethod
    async def _report(
        on_progress: ProgressCallback | None,
        stage: str,
        percent: int,
        message: str,
    ) -> None:
        if on_progress is None:
            return
        try:
            outcome = on_progress(ProgressUpdate(stage=stage, percent=min(max(percent, 0), 100), message=message))
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.debug("Progress callback failed: %s", e)
