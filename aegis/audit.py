"""Bounded audit trail for pipeline stage transitions."""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, List, Optional

from .state import Severity

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


@dataclass(frozen=True)
class LogEvent:
    """Single append-only audit record."""

    timestamp: datetime
    category: str
    message: str
    severity: Severity
    envelope_id: Optional[str] = None

    def as_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp.isoformat(),
            "category": self.category,
            "message": self.message,
            "severity": self.severity.label,
        }
        if self.envelope_id is not None:
            payload["envelope_id"] = self.envelope_id
        return payload


class AuditLog:
    """Ring buffer of the most recent events, oldest evicted first."""

    def __init__(self, capacity: int = 100) -> None:
        if capacity <= 0:
            raise ValueError("Audit log capacity must be positive")
        self._capacity = capacity
        self._events: Deque[LogEvent] = deque(maxlen=capacity)
        self._lock = threading.RLock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def append(self, event: LogEvent) -> LogEvent:
        with self._lock:
            self._events.append(event)
        logger.log(
            _LOG_LEVELS[event.severity],
            "%s %s%s",
            event.category,
            event.message,
            f" [{event.envelope_id}]" if event.envelope_id else "",
        )
        return event

    def emit(
        self,
        timestamp: datetime,
        category: str,
        message: str,
        severity: Severity = Severity.INFO,
        *,
        envelope_id: Optional[str] = None,
    ) -> LogEvent:
        return self.append(
            LogEvent(
                timestamp=timestamp,
                category=category,
                message=message,
                severity=severity,
                envelope_id=envelope_id,
            )
        )

    def recent(self, n: Optional[int] = None) -> List[LogEvent]:
        """Return the last ``n`` events in arrival order."""

        with self._lock:
            events = list(self._events)
        if n is None:
            return events
        if n <= 0:
            return []
        return events[-n:]

    def filter(
        self,
        *,
        category: Optional[str] = None,
        min_severity: Optional[Severity] = None,
        envelope_id: Optional[str] = None,
    ) -> List[LogEvent]:
        with self._lock:
            events = list(self._events)
        return [
            event
            for event in events
            if (category is None or event.category == category)
            and (min_severity is None or event.severity >= min_severity)
            and (envelope_id is None or event.envelope_id == envelope_id)
        ]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


__all__ = ["AuditLog", "LogEvent"]
