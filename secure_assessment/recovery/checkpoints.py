"""Per-environment checkpoint history.

Checkpoints are diagnostic snapshots; nothing reads them to decide the
primary state of an environment.
"""

import copy
from collections import deque
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

MAX_CHECKPOINTS = 10


def snapshot(value: Any) -> Any:
    """Structural copy of ``value`` detached from the caller's objects.

    Pydantic models become their JSON-compatible dump; containers are copied
    element by element; anything else is deep-copied.
    """
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, dict):
        return {key: snapshot(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [snapshot(item) for item in value]
    return copy.deepcopy(value)


class Checkpoint(BaseModel):
    """Timestamped snapshot of step state and results."""

    model_config = ConfigDict(frozen=True)

    environment_id: str
    step_name: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    state: Any = None
    results: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CheckpointStore:
    """Ring buffer of the most recent checkpoints per environment id."""

    def __init__(self, capacity: int = MAX_CHECKPOINTS):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._history: dict[str, deque[Checkpoint]] = {}

    def append(
        self,
        environment_id: str,
        step_name: str,
        state: Any,
        results: Any = None,
        metadata: dict[str, Any] | None = None,
    ) -> Checkpoint:
        history = self._history.setdefault(environment_id, deque(maxlen=self.capacity))
        timestamp = datetime.now(UTC)
        # Keep history time-ordered even if the wall clock steps backwards
        if history and timestamp < history[-1].timestamp:
            timestamp = history[-1].timestamp
        checkpoint = Checkpoint(
            environment_id=environment_id,
            step_name=step_name,
            timestamp=timestamp,
            state=snapshot(state),
            results=snapshot(results) if results is not None else None,
            metadata=snapshot(metadata or {}),
        )
        history.append(checkpoint)
        return checkpoint

    def history(self, environment_id: str) -> list[Checkpoint]:
        return list(self._history.get(environment_id, ()))

    def latest(self, environment_id: str) -> Checkpoint | None:
        history = self._history.get(environment_id)
        return history[-1] if history else None

    def clear(self, environment_id: str) -> None:
        self._history.pop(environment_id, None)

    def environment_ids(self) -> list[str]:
        return list(self._history)
