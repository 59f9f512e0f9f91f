"""Per-environment activity recording.

Records attempted egress and privilege actions for environments with
monitoring enabled. Egress to a host outside the allow-list, and any
privilege action, is a violation and is raised through the alerter.
"""

import logging
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from secure_assessment.exceptions import network_violation, privilege_escalation_violation
from secure_assessment.sandbox.alerts import SecurityAlerter

logger = logging.getLogger(__name__)


class ActivityKind(StrEnum):
    """Observed activity types."""

    EGRESS = "egress"
    PRIVILEGE = "privilege"


class ActivityEvent(BaseModel):
    """One observed action inside an environment."""

    environment_id: str
    kind: ActivityKind
    target: str = Field(..., description="Destination host or attempted action")
    detail: str = ""
    allowed: bool
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class _MonitorProfile(BaseModel):
    allowed_hosts: list[str] = Field(default_factory=list)
    unrestricted_egress: bool = False


def host_allowed(host: str, allowed_hosts: list[str]) -> bool:
    """Exact match, or ``*.example.com`` matching any subdomain."""
    host = host.strip().lower().rstrip(".")
    for pattern in allowed_hosts:
        pattern = pattern.strip().lower()
        if pattern.startswith("*."):
            if host.endswith(pattern[1:]):
                return True
        elif host == pattern:
            return True
    return False


class ActivityMonitor:
    """Activity recorder with violation alerting."""

    def __init__(self, alerter: SecurityAlerter) -> None:
        self._alerter = alerter
        self._profiles: dict[str, _MonitorProfile] = {}
        self._events: dict[str, list[ActivityEvent]] = {}

    def enable(
        self,
        environment_id: str,
        allowed_hosts: list[str] | None = None,
        unrestricted_egress: bool = False,
    ) -> None:
        self._profiles[environment_id] = _MonitorProfile(
            allowed_hosts=list(allowed_hosts or []),
            unrestricted_egress=unrestricted_egress,
        )
        self._events.setdefault(environment_id, [])
        logger.info("Activity monitoring enabled for %s", environment_id)

    def disable(self, environment_id: str) -> None:
        """Stop recording; the activity log stays queryable until cleared."""
        if self._profiles.pop(environment_id, None) is not None:
            logger.info("Activity monitoring disabled for %s", environment_id)

    def is_enabled(self, environment_id: str) -> bool:
        return environment_id in self._profiles

    async def record(
        self,
        environment_id: str,
        kind: ActivityKind | str,
        target: str,
        detail: str = "",
    ) -> ActivityEvent | None:
        """Record one action; returns None when monitoring is off."""
        profile = self._profiles.get(environment_id)
        if profile is None:
            logger.debug("Ignoring activity for unmonitored environment %s", environment_id)
            return None

        kind = ActivityKind(kind)
        if kind is ActivityKind.EGRESS:
            allowed = profile.unrestricted_egress or host_allowed(target, profile.allowed_hosts)
        else:
            allowed = False

        event = ActivityEvent(
            environment_id=environment_id,
            kind=kind,
            target=target,
            detail=detail,
            allowed=allowed,
        )
        self._events.setdefault(environment_id, []).append(event)

        if not allowed:
            if kind is ActivityKind.EGRESS:
                error = network_violation(
                    f"egress to {target} is not allowed",
                    environment_id=environment_id,
                    target=target,
                )
            else:
                error = privilege_escalation_violation(
                    f"{target} {detail}".strip(),
                    environment_id=environment_id,
                    action=target,
                )
            await self._alerter.raise_alert(environment_id, error, source="monitor")
        return event

    def get_activity(self, environment_id: str) -> list[ActivityEvent]:
        return list(self._events.get(environment_id, ()))

    def clear(self, environment_id: str) -> None:
        self._profiles.pop(environment_id, None)
        self._events.pop(environment_id, None)
