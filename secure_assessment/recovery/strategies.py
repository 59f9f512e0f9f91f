"""Recovery state and the built-in recovery strategies."""

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from secure_assessment.exceptions import AssessmentError, ErrorFamily


class RecoveryState(BaseModel):
    """Recovery bookkeeping for one environment."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    environment_id: str
    completed_steps: list[str] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    recovery_attempts: int = Field(default=0, ge=0)
    max_recovery_attempts: int = Field(default=3, ge=0)
    partial_results: Any = None
    last_error: AssessmentError | None = Field(default=None, exclude=True)

    @property
    def can_attempt_recovery(self) -> bool:
        return self.recovery_attempts < self.max_recovery_attempts

    def record_completed(self, step: str) -> None:
        self.completed_steps.append(step)

    def record_failed(self, step: str, error: AssessmentError | None = None) -> None:
        self.failed_steps.append(step)
        if error is not None:
            self.last_error = error

    def record_attempt(self) -> None:
        self.recovery_attempts = min(self.recovery_attempts + 1, self.max_recovery_attempts)

    def with_attempt(self) -> "RecoveryState":
        """Copy of this state with one more recovery attempt (clamped)."""
        state = self.model_copy(
            update={
                "completed_steps": list(self.completed_steps),
                "failed_steps": list(self.failed_steps),
            }
        )
        state.record_attempt()
        return state


class RecoveryResult(BaseModel):
    """Outcome of a recovery attempt."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    should_continue: bool
    message: str
    strategy: str | None = None
    new_state: RecoveryState | None = None
    partial_results: Any = None
    adjustments: dict[str, Any] = Field(
        default_factory=dict,
        description="Hints for the caller, e.g. reduce_resources",
    )


@runtime_checkable
class RecoveryStrategy(Protocol):
    """A predicate plus an action that tries to continue past an error."""

    name: str

    def can_recover(self, error: AssessmentError, state: RecoveryState) -> bool: ...

    async def recover(self, error: AssessmentError, state: RecoveryState) -> RecoveryResult: ...


class ContainerRecreationStrategy:
    """Recreate the container after a recoverable container-class failure."""

    name = "container-recreation"
    max_attempts = 2

    def can_recover(self, error: AssessmentError, state: RecoveryState) -> bool:
        return (
            error.family is ErrorFamily.CONTAINER
            and error.recoverable
            and state.recovery_attempts < self.max_attempts
        )

    async def recover(self, error: AssessmentError, state: RecoveryState) -> RecoveryResult:
        return RecoveryResult(
            success=True,
            should_continue=True,
            message="Container will be recreated",
            strategy=self.name,
            new_state=state.with_attempt(),
            adjustments={"recreate_container": True},
        )


class ResourceReductionStrategy:
    """Retry with reduced resource requirements after a resource-class failure."""

    name = "resource-reduction"
    max_attempts = 3

    def can_recover(self, error: AssessmentError, state: RecoveryState) -> bool:
        return (
            error.family is ErrorFamily.RESOURCE
            and error.recoverable
            and state.recovery_attempts < self.max_attempts
        )

    async def recover(self, error: AssessmentError, state: RecoveryState) -> RecoveryResult:
        return RecoveryResult(
            success=True,
            should_continue=True,
            message="Reduced resource requirements",
            strategy=self.name,
            new_state=state.with_attempt(),
            adjustments={"reduce_resources": True},
        )


class PartialContinuationStrategy:
    """Keep going with whatever already completed after an analysis failure."""

    name = "partial-continuation"

    def can_recover(self, error: AssessmentError, state: RecoveryState) -> bool:
        return error.family is ErrorFamily.ANALYSIS and len(state.completed_steps) > 0

    async def recover(self, error: AssessmentError, state: RecoveryState) -> RecoveryResult:
        return RecoveryResult(
            success=True,
            should_continue=True,
            message=f"Continuing with partial results from {len(state.completed_steps)} completed steps",
            strategy=self.name,
            new_state=state.with_attempt(),
            partial_results=state.partial_results,
        )


def default_strategies() -> list[RecoveryStrategy]:
    return [
        ContainerRecreationStrategy(),
        ResourceReductionStrategy(),
        PartialContinuationStrategy(),
    ]
