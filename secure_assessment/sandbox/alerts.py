"""Security alerting.

Every observed violation, whether found by the mount-time scan or by the
activity monitor, goes through ``SecurityAlerter.raise_alert``. Handlers
registered here (the lifecycle manager registers emergency termination)
are awaited in registration order.
"""

import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from secure_assessment.exceptions import AssessmentError

logger = logging.getLogger(__name__)

MAX_ALERT_HISTORY = 500


class SecurityAlert(BaseModel):
    """A recorded security alert."""

    environment_id: str
    code: str
    message: str
    source: str = Field(..., description="mount-scan, monitor, policy or workflow")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    context: dict[str, Any] = Field(default_factory=dict)


AlertHandler = Callable[[SecurityAlert, AssessmentError], Awaitable[None] | None]


class SecurityAlerter:
    """Single alerting path for security violations."""

    def __init__(self) -> None:
        self._handlers: list[AlertHandler] = []
        self._history: deque[SecurityAlert] = deque(maxlen=MAX_ALERT_HISTORY)

    def register_handler(self, handler: AlertHandler) -> None:
        self._handlers.append(handler)

    async def raise_alert(
        self,
        environment_id: str,
        error: AssessmentError,
        source: str,
    ) -> SecurityAlert:
        """Record the alert and notify every handler.

        A failing handler is logged and does not stop the others.
        """
        alert = SecurityAlert(
            environment_id=environment_id,
            code=error.code.value,
            message=error.message,
            source=source,
            context={key: str(value) for key, value in error.context.items()},
        )
        self._history.append(alert)
        logger.critical(
            "SECURITY ALERT [%s] %s from %s: %s",
            environment_id,
            alert.code,
            source,
            alert.message,
        )

        for handler in self._handlers:
            try:
                outcome = handler(alert, error)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.error("Security alert handler failed for %s: %s", environment_id, e)
        return alert

    def alerts(self, environment_id: str | None = None) -> list[SecurityAlert]:
        if environment_id is None:
            return list(self._history)
        return [alert for alert in self._history if alert.environment_id == environment_id]
