"""Registry of tracked environments.

All per-environment state the lifecycle manager needs lives in one record
keyed by environment id. Operations on one id are serialised by that id's
lock; different environments never wait on each other.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path

from secure_assessment.exceptions import environment_not_found_error, validation_error
from secure_assessment.models import Environment
from secure_assessment.recovery.strategies import RecoveryState
from secure_assessment.sandbox.security import NetworkConfig, ResourceQuota


@dataclass
class EnvironmentRecord:
    """Everything tracked for one environment."""

    environment: Environment
    recovery_state: RecoveryState
    quota: ResourceQuota
    handle: str | None = None
    network: NetworkConfig | None = None
    network_created: bool = False
    mount_source: Path | None = None
    mount_target: str | None = None

    @property
    def id(self) -> str:
        return self.environment.id


class EnvironmentRegistry:
    """Keyed map of environment records with per-id locks."""

    def __init__(self) -> None:
        self._records: dict[str, EnvironmentRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, environment_id: str) -> asyncio.Lock:
        return self._locks.setdefault(environment_id, asyncio.Lock())

    def add(self, record: EnvironmentRecord) -> None:
        if record.id in self._records:
            raise validation_error("environment_id", f"{record.id} is already active")
        self._records[record.id] = record

    def get(self, environment_id: str) -> EnvironmentRecord | None:
        return self._records.get(environment_id)

    def require(self, environment_id: str) -> EnvironmentRecord:
        record = self._records.get(environment_id)
        if record is None:
            raise environment_not_found_error(environment_id)
        return record

    def remove(self, environment_id: str) -> EnvironmentRecord | None:
        self._locks.pop(environment_id, None)
        return self._records.pop(environment_id, None)

    def ids(self) -> list[str]:
        return list(self._records)

    def records(self) -> list[EnvironmentRecord]:
        return list(self._records.values())

    def __contains__(self, environment_id: object) -> bool:
        return environment_id in self._records

    def __len__(self) -> int:
        return len(self._records)
