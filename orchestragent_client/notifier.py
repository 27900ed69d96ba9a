from __future__ import annotations

import logging
from abc import ABC, abstractmethod


class Notifier(ABC):
    """User-facing notifications, supplied by the host (IDE, bot, CLI)."""

    @abstractmethod
    def notify_info(self, title: str, message: str) -> None:
        ...

    @abstractmethod
    def notify_warning(self, title: str, message: str) -> None:
        ...

    @abstractmethod
    def notify_error(self, title: str, message: str) -> None:
        ...


class LoggingNotifier(Notifier):
    """Default notifier for hosts without a notification surface."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._log = logger or logging.getLogger("orchestragent_client.notifications")

    def notify_info(self, title: str, message: str) -> None:
        self._log.info("%s: %s", title, message)

    def notify_warning(self, title: str, message: str) -> None:
        self._log.warning("%s: %s", title, message)

    def notify_error(self, title: str, message: str) -> None:
        self._log.error("%s: %s", title, message)
