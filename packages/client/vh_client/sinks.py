"""
Notification and navigation sinks.

Both are fire-and-forget: the core calls them synchronously and never
observes a result.
"""

from __future__ import annotations

from typing import Literal, Protocol

import structlog

log = structlog.get_logger()

Severity = Literal["success", "info", "error"]


class Notifier(Protocol):
    def notify(self, severity: Severity, message: str) -> None: ...


class Navigator(Protocol):
    def navigate(self, path: str) -> None: ...


class LogNotifier:
    """Writes user-facing notifications to the log."""

    def notify(self, severity: Severity, message: str) -> None:
        if severity == "error":
            log.warning("notify.error", message=message)
        else:
            log.info(f"notify.{severity}", message=message)


class HistoryNavigator:
    """Keeps the route history and the current path."""

    def __init__(self, initial: str = "/") -> None:
        self.history: list[str] = [initial]

    @property
    def current(self) -> str:
        return self.history[-1]

    def navigate(self, path: str) -> None:
        if path == self.current:
            return
        self.history.append(path)
        log.info("navigate", path=path)
