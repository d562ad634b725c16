"""Event records and the observer hub consumed by front ends.

Three independent streams are exposed: log messages, progress percentages
and stage-completion records. Subscribers may be called from whatever
thread or event loop runs the pipeline and must marshal to their own.
Every log event is also forwarded to the ``logging`` module.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    STAGE = "stage"

    @property
    def logging_level(self) -> int:
        return _LOGGING_LEVELS[self]


_LOGGING_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.STAGE: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class LogEvent:
    message: str
    severity: Severity


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    percent: int

    def __post_init__(self) -> None:
        if not 0 <= self.percent <= 100:
            raise ValueError("percent must be within 0..100")


@dataclass(frozen=True)
class StageCompletedEvent:
    stage: str
    metric: str
    value: str
    status: str


E = TypeVar("E")


class _Channel(Generic[E]):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[E], None]] = []

    def subscribe(self, callback: Callable[[E], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: E) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(event)


class EventHub:
    """Fan-out point for pipeline events."""

    def __init__(self) -> None:
        self._log: _Channel[LogEvent] = _Channel()
        self._progress: _Channel[ProgressEvent] = _Channel()
        self._stage_completed: _Channel[StageCompletedEvent] = _Channel()

    def subscribe_log(self, callback: Callable[[LogEvent], None]) -> Callable[[], None]:
        return self._log.subscribe(callback)

    def subscribe_progress(self, callback: Callable[[ProgressEvent], None]) -> Callable[[], None]:
        return self._progress.subscribe(callback)

    def subscribe_stage_completed(
        self, callback: Callable[[StageCompletedEvent], None]
    ) -> Callable[[], None]:
        return self._stage_completed.subscribe(callback)

    def log(self, message: str, severity: Severity = Severity.INFO) -> None:
        logger.log(severity.logging_level, "%s", message)
        self._log.publish(LogEvent(message=message, severity=severity))

    def progress(self, stage: str, percent: int) -> None:
        self._progress.publish(ProgressEvent(stage=stage, percent=percent))

    def stage_completed(self, stage: str, metric: str, value: str, status: str) -> None:
        self._stage_completed.publish(
            StageCompletedEvent(stage=stage, metric=metric, value=value, status=status)
        )


__all__ = [
    "EventHub",
    "LogEvent",
    "ProgressEvent",
    "Severity",
    "StageCompletedEvent",
]
