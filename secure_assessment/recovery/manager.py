"""Recovery manager.

Owns checkpoint history, the ordered recovery-strategy chain, degradation
planning for remaining workflow steps and preservation of partial results.
"""

import logging
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from secure_assessment.exceptions import (
    AssessmentError,
    ErrorFamily,
    partial_analysis_error,
)
from secure_assessment.recovery.checkpoints import (
    MAX_CHECKPOINTS,
    Checkpoint,
    CheckpointStore,
    snapshot,
)
from secure_assessment.recovery.strategies import (
    RecoveryResult,
    RecoveryState,
    RecoveryStrategy,
    default_strategies,
)

if TYPE_CHECKING:
    from secure_assessment.workflows.definition import WorkflowStep

logger = logging.getLogger(__name__)

_SKIPPABLE_CATEGORIES = frozenset({"test", "custom"})
_SKIPPABLE_NAME = re.compile(r"optional|enhancement|optimization", re.IGNORECASE)
_MEMORY_FLAG = re.compile(r"--memory=\d+[kmg]", re.IGNORECASE)
_TIMEOUT_FLAG = re.compile(r"--timeout=\d+", re.IGNORECASE)

LONG_TIMEOUT_MS = 10_000
MIN_DEGRADED_TIMEOUT_MS = 5_000
DEGRADED_MEMORY = "256m"
DEFAULT_STEP_TIMEOUT_MS = 300_000


class DegradationPlan(BaseModel):
    """Which remaining steps to skip or weaken after a failure."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    can_continue: bool
    steps_to_run: list[Any] = Field(
        default_factory=list,
        description="Remaining steps in order, modified where needed",
    )
    modified_steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    unmodified_steps: list[str] = Field(default_factory=list)
    reason: str


class RecoveryManager:
    """Checkpointing, recovery strategies and graceful degradation.

    Usage:
        recovery = RecoveryManager()
        recovery.create_checkpoint(env_id, "creation-start", state)
        result = await recovery.attempt_recovery(error, state)
        if result.should_continue:
            ...
    """

    def __init__(
        self,
        strategies: list[RecoveryStrategy] | None = None,
        checkpoint_capacity: int = MAX_CHECKPOINTS,
    ):
        self._strategies: list[RecoveryStrategy] = (
            list(strategies) if strategies is not None else default_strategies()
        )
        self._checkpoints = CheckpointStore(checkpoint_capacity)
        self._preserved: dict[str, dict[str, Any]] = {}

    # =========================================================================
    # CHECKPOINTS
    # =========================================================================

    def create_checkpoint(
        self,
        environment_id: str,
        step_name: str,
        state: Any,
        results: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> Checkpoint:
        checkpoint = self._checkpoints.append(environment_id, step_name, state, results, metadata)
        logger.debug("Checkpoint %s recorded for %s", step_name, environment_id)
        return checkpoint

    def get_checkpoints(self, environment_id: str) -> list[Checkpoint]:
        return self._checkpoints.history(environment_id)

    def get_latest_checkpoint(self, environment_id: str) -> Checkpoint | None:
        return self._checkpoints.latest(environment_id)

    # =========================================================================
    # STRATEGIES
    # =========================================================================

    @property
    def strategies(self) -> list[RecoveryStrategy]:
        return list(self._strategies)

    def register_strategy(self, strategy: RecoveryStrategy) -> None:
        """Append a strategy to the end of the chain."""
        self._strategies.append(strategy)
        logger.info("Registered recovery strategy: %s", strategy.name)

    async def attempt_recovery(self, error: AssessmentError, state: RecoveryState) -> RecoveryResult:
        """Run the strategy chain; the first strategy that succeeds wins.

        Security violations are never handed to a strategy. The caller is
        responsible for adopting ``result.new_state``.
        """
        logger.info(
            "Attempting recovery for %s on %s (attempt %d/%d)",
            error.code.value,
            state.environment_id,
            state.recovery_attempts,
            state.max_recovery_attempts,
        )

        if error.is_security_violation:
            return RecoveryResult(
                success=False,
                should_continue=False,
                message="Security violations are not recoverable",
            )

        if not state.can_attempt_recovery:
            return RecoveryResult(
                success=False,
                should_continue=False,
                message=f"Maximum recovery attempts ({state.max_recovery_attempts}) exceeded",
            )

        for strategy in self._strategies:
            if not strategy.can_recover(error, state):
                continue
            logger.info("Attempting recovery with strategy: %s", strategy.name)
            try:
                result = await strategy.recover(error, state)
            except Exception as e:
                logger.error("Recovery strategy %s raised: %s", strategy.name, e)
                continue
            if result.success:
                logger.info("Recovery successful with strategy: %s", strategy.name)
                if result.strategy is None:
                    result = result.model_copy(update={"strategy": strategy.name})
                return result
            logger.warning("Recovery failed with strategy %s: %s", strategy.name, result.message)

        return RecoveryResult(
            success=False,
            should_continue=False,
            message="No suitable recovery strategy found",
        )

    # =========================================================================
    # DEGRADATION
    # =========================================================================

    def create_degradation_plan(
        self,
        error: AssessmentError,
        state: RecoveryState,
        remaining_steps: list["WorkflowStep"],
    ) -> DegradationPlan:
        """Classify remaining steps as skippable, modifiable or unmodified.

        The run can continue while at least one remaining step is not skipped.
        """
        steps_to_run: list[WorkflowStep] = []
        skipped: list[str] = []
        modified: list[str] = []
        unmodified: list[str] = []

        for step in remaining_steps:
            if _can_skip(step):
                skipped.append(step.name)
                logger.info("Skipping step due to degradation: %s", step.name)
            elif _can_modify(step):
                steps_to_run.append(_degrade_step(step))
                modified.append(step.name)
                logger.info("Modified step for degradation: %s", step.name)
            else:
                steps_to_run.append(step)
                unmodified.append(step.name)

        return DegradationPlan(
            can_continue=len(skipped) < len(remaining_steps),
            steps_to_run=steps_to_run,
            modified_steps=modified,
            skipped_steps=skipped,
            unmodified_steps=unmodified,
            reason=_degradation_reason(error, len(skipped), len(modified)),
        )

    # =========================================================================
    # PARTIAL RESULTS
    # =========================================================================

    def preserve_partial_results(
        self,
        environment_id: str,
        completed_steps: list[str],
        partial_results: Any,
        error: AssessmentError,
        failed_steps: list[str] | None = None,
    ) -> AssessmentError:
        """Package completed work into a PARTIAL_ANALYSIS_FAILURE error."""
        latest = self.get_latest_checkpoint(environment_id)
        preserved = {
            "completed_steps": list(completed_steps),
            "partial_results": snapshot(partial_results),
            "last_checkpoint": latest.model_dump(mode="json") if latest else None,
            "preservation_timestamp": datetime.now(UTC).isoformat(),
            "error_context": error.to_dict(),
        }
        self._preserved[environment_id] = preserved
        logger.info(
            "Preserved partial results for %s: %d completed steps (%s)",
            environment_id,
            len(completed_steps),
            error.code.value,
        )

        partial = partial_analysis_error(
            f"Analysis partially completed. {len(completed_steps)} steps succeeded before failure.",
            completed_steps,
            failed_steps if failed_steps is not None else [error.code.value],
            partial_results=partial_results,
            environment_id=environment_id,
            preserved_data=preserved,
        )
        partial.__cause__ = error
        return partial

    def get_preserved_results(self, environment_id: str) -> dict[str, Any] | None:
        return self._preserved.get(environment_id)

    def clear_recovery_data(self, environment_id: str) -> None:
        self._checkpoints.clear(environment_id)
        self._preserved.pop(environment_id, None)
        logger.debug("Cleared recovery data for %s", environment_id)


def _can_skip(step: "WorkflowStep") -> bool:
    return (
        step.continue_on_error
        or step.category.value in _SKIPPABLE_CATEGORIES
        or bool(_SKIPPABLE_NAME.search(step.name))
    )


def _can_modify(step: "WorkflowStep") -> bool:
    if step.timeout_ms is not None and step.timeout_ms > LONG_TIMEOUT_MS:
        return True
    return any("--timeout" in arg or "--memory" in arg for arg in step.command)


def _degrade_step(step: "WorkflowStep") -> "WorkflowStep":
    timeout_ms = max(MIN_DEGRADED_TIMEOUT_MS, (step.timeout_ms or DEFAULT_STEP_TIMEOUT_MS) // 2)
    update: dict[str, Any] = {"timeout_ms": timeout_ms, "continue_on_error": True}
    if "command" in step.config:
        command = []
        for arg in step.command:
            arg = _MEMORY_FLAG.sub(f"--memory={DEGRADED_MEMORY}", arg)
            arg = _TIMEOUT_FLAG.sub(f"--timeout={timeout_ms}", arg)
            command.append(arg)
        update["config"] = {**step.config, "command": command}
    return step.model_copy(update=update)


def _degradation_reason(error: AssessmentError, skipped: int, modified: int) -> str:
    causes = []
    if error.family is ErrorFamily.RESOURCE:
        causes.append("insufficient system resources")
    if error.family is ErrorFamily.NETWORK:
        causes.append("network connectivity issues")
    if error.family is ErrorFamily.CONTAINER:
        causes.append("container management problems")

    reason = f"Analysis degraded due to {' and '.join(causes) or 'system limitations'}."
    if skipped:
        reason += f" {skipped} optional steps were skipped."
    if modified:
        reason += f" {modified} steps were modified with reduced requirements."
    return reason
