from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger("clinic_plans.notifications")


class NotificationPublisher(Protocol):
    def publish(self, event: str, payload: dict[str, Any]) -> None: ...


class LoggingNotificationPublisher:
    def publish(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("Notification %s: %s", event, payload)
