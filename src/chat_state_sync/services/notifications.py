"""User-facing notification sink."""

from abc import ABC, abstractmethod
from enum import Enum

import structlog

logger = structlog.get_logger()


class Severity(str, Enum):
    NORMAL = "normal"
    DESTRUCTIVE = "destructive"


class Notifier(ABC):
    """Shows a transient message to the user. Fire and forget."""

    @abstractmethod
    def notify(self, title: str, description: str, severity: Severity = Severity.NORMAL) -> None:
        pass


class LoggingNotifier(Notifier):
    """Notifier that only writes the notification to the log."""

    def notify(self, title: str, description: str, severity: Severity = Severity.NORMAL) -> None:
        logger.warning(
            "user_notification",
            title=title,
            description=description,
            severity=severity.value,
        )
