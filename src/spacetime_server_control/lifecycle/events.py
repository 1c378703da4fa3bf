"""Event channel the lifecycle controller and command pipeline publish to."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from ..config.logging import sanitize_log_data

logger = structlog.get_logger(__name__)


class LogSeverity(Enum):
    """Severity of a published event."""

    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def log_method(self) -> str:
        """Name of the structlog method used to record this severity."""
        if self is LogSeverity.WARNING:
            return "warning"
        if self is LogSeverity.ERROR:
            return "error"
        return "info"


class EventKind(Enum):
    """What an event reports on."""

    STATE_CHANGED = "state_changed"
    COMMAND_OUTCOME = "command_outcome"
    CONFIGURATION_ERROR = "configuration_error"
    MESSAGE = "message"


@dataclass
class LifecycleEvent:
    """One message published to subscribers."""

    message: str
    severity: LogSeverity = LogSeverity.INFO
    kind: EventKind = EventKind.MESSAGE
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "severity": self.severity.value,
            "kind": self.kind.value,
            "details": self.details,
            "timestamp": self.timestamp,
        }


EventHandler = Callable[[LifecycleEvent], None]


class EventChannel:
    """Fan-out of lifecycle events to subscribers.

    Publishing never blocks on, or fails because of, a subscriber: a handler
    that raises is logged and the remaining handlers still run.
    """

    def __init__(self, history_size: int = 200):
        self._handlers: List[EventHandler] = []
        self._history: List[LifecycleEvent] = []
        self._history_size = history_size

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler.

        Returns:
            Callable that removes the handler again
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def subscribe_log_callback(
        self, callback: Callable[[str, LogSeverity], None]
    ) -> Callable[[], None]:
        """Register a plain ``(message, severity)`` callback."""
        return self.subscribe(lambda event: callback(event.message, event.severity))

    def publish(self, event: LifecycleEvent) -> LifecycleEvent:
        """Record, log and deliver an event to all subscribers."""
        self._history.append(event)
        if len(self._history) > self._history_size:
            del self._history[: len(self._history) - self._history_size]

        log = getattr(logger, event.severity.log_method)
        log(
            event.message,
            event_kind=event.kind.value,
            **sanitize_log_data(event.details),
        )

        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.warning(
                    "Event subscriber failed",
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                )
        return event

    def emit(
        self,
        message: str,
        severity: LogSeverity = LogSeverity.INFO,
        kind: EventKind = EventKind.MESSAGE,
        **details: Any,
    ) -> LifecycleEvent:
        """Build and publish an event in one call."""
        return self.publish(
            LifecycleEvent(
                message=message, severity=severity, kind=kind, details=details
            )
        )

    def recent(self, limit: Optional[int] = None) -> List[LifecycleEvent]:
        """Most recent events, oldest first."""
        if limit is None:
            return list(self._history)
        return self._history[-limit:]
