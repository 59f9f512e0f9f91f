"""Recovery: checkpoints, recovery strategies, degradation and partial results."""

from secure_assessment.recovery.checkpoints import MAX_CHECKPOINTS, Checkpoint, CheckpointStore
from secure_assessment.recovery.manager import DegradationPlan, RecoveryManager
from secure_assessment.recovery.strategies import (
    ContainerRecreationStrategy,
    PartialContinuationStrategy,
    RecoveryResult,
    RecoveryState,
    RecoveryStrategy,
    ResourceReductionStrategy,
    default_strategies,
)

__all__ = [
    # Checkpoints
    "MAX_CHECKPOINTS",
    "Checkpoint",
    "CheckpointStore",
    # Manager
    "DegradationPlan",
    "RecoveryManager",
    # Strategies
    "ContainerRecreationStrategy",
    "PartialContinuationStrategy",
    "RecoveryResult",
    "RecoveryState",
    "RecoveryStrategy",
    "ResourceReductionStrategy",
    "default_strategies",
]
