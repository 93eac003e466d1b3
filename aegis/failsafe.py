"""Safe-mode fallback for rejected commands."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from .audit import AuditLog
from .fusion import Decision
from .state import Failure, Severity, VehicleState

logger = logging.getLogger(__name__)

_SEVERE_FAILURES = frozenset(
    {
        Failure.INTEGRITY_FAILURE,
        Failure.UNKNOWN_KEY,
        Failure.PHYSICAL_LIMIT_EXCEEDED,
    }
)
_MODERATE_FAILURES = frozenset(
    {
        Failure.REPLAYED_NONCE,
        Failure.VALIDATION_TIMEOUT,
        Failure.VALIDATION_ERROR,
    }
)


class SafeMode(str, Enum):
    NOMINAL = "NOMINAL"
    HOLD = "HOLD"
    RETURN_TO_LAUNCH = "RETURN_TO_LAUNCH"

    @property
    def flight_mode(self) -> Optional[str]:
        return {SafeMode.HOLD: "HOLD", SafeMode.RETURN_TO_LAUNCH: "RTL"}.get(self)

    @property
    def rank(self) -> int:
        return {SafeMode.NOMINAL: 0, SafeMode.HOLD: 1, SafeMode.RETURN_TO_LAUNCH: 2}[self]


@dataclass(frozen=True)
class SafeModeState:
    mode: SafeMode
    reason: str
    entered_at: datetime

    def as_dict(self) -> dict[str, object]:
        return {
            "mode": self.mode.value,
            "reason": self.reason,
            "entered_at": self.entered_at.isoformat(),
        }


@dataclass(frozen=True)
class SafeModeTransition:
    """Emitted whenever the machine changes state."""

    previous: SafeModeState
    current: SafeModeState
    trigger: str

    @property
    def escalation(self) -> bool:
        return self.previous.mode is not SafeMode.NOMINAL and self.current.mode.rank > self.previous.mode.rank

    def as_dict(self) -> dict[str, object]:
        return {
            "previous": self.previous.as_dict(),
            "current": self.current.as_dict(),
            "trigger": self.trigger,
        }


class DwellTimer:
    """Restartable recovery deadline.

    Every restart bumps ``generation`` so a scheduled expiry captured before
    the restart can recognise itself as stale.
    """

    def __init__(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError("Dwell duration must be positive")
        self.duration = timedelta(seconds=seconds)
        self.deadline: Optional[datetime] = None
        self.generation = 0

    @property
    def active(self) -> bool:
        return self.deadline is not None

    def restart(self, now: datetime) -> int:
        self.deadline = now + self.duration
        self.generation += 1
        return self.generation

    def cancel(self) -> None:
        self.deadline = None
        self.generation += 1

    def expired(self, now: datetime) -> bool:
        return self.deadline is not None and now >= self.deadline

    def remaining(self, now: datetime) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, (self.deadline - now).total_seconds())


class SafeModeMachine:
    """Nominal / Hold / Return-to-launch fallback driven by rejections."""

    def __init__(
        self,
        *,
        vehicle: VehicleState,
        audit: AuditLog,
        dwell_seconds: float,
        started_at: datetime,
        severe_threshold: float = -0.5,
    ) -> None:
        self._vehicle = vehicle
        self._audit = audit
        self._severe_threshold = severe_threshold
        self.timer = DwellTimer(dwell_seconds)
        self._state = SafeModeState(SafeMode.NOMINAL, "initial", started_at)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def state(self) -> SafeModeState:
        with self._lock:
            return self._state

    @property
    def mode(self) -> SafeMode:
        return self.state.mode

    def classify(self, decision: Decision) -> SafeMode:
        """Target mode for a decision; NOMINAL for accepted commands."""

        if decision.accepted:
            return SafeMode.NOMINAL
        if decision.failure in _SEVERE_FAILURES:
            return SafeMode.RETURN_TO_LAUNCH
        if decision.failure in _MODERATE_FAILURES:
            return SafeMode.HOLD
        if decision.trust.value < self._severe_threshold:
            return SafeMode.RETURN_TO_LAUNCH
        return SafeMode.HOLD

    def evaluate(
        self,
        decision: Decision,
        at: datetime,
        *,
        envelope_id: Optional[str] = None,
    ) -> Optional[SafeModeTransition]:
        """Feed a decision; returns the transition if the state changed.

        A rejection while already in safe mode restarts the dwell timer and
        only changes state when it escalates Hold to Return-to-launch.
        """

        target = self.classify(decision)
        if target is SafeMode.NOMINAL:
            return None

        with self._lock:
            self.timer.restart(at)
            if target.rank <= self._state.mode.rank:
                logger.debug(
                    "Rejection while in %s; dwell restarted until %s",
                    self._state.mode.value,
                    self.timer.deadline,
                )
                return None
            trigger = "escalation" if self._state.mode is not SafeMode.NOMINAL else "rejection"
            return self._enter(target, decision.reason, at, trigger, envelope_id)

    def poll(self, now: datetime) -> Optional[SafeModeTransition]:
        """Recover to NOMINAL if the dwell has elapsed without rejections."""

        with self._lock:
            if self._state.mode is SafeMode.NOMINAL or not self.timer.expired(now):
                return None
            return self._recover(now)

    def fire(self, generation: int, now: datetime) -> Optional[SafeModeTransition]:
        """Handle a scheduled expiry event armed for ``generation``."""

        with self._lock:
            if generation != self.timer.generation:
                return None
            return self.poll(now)

    def reset(self, at: datetime) -> None:
        with self._lock:
            self.timer.cancel()
            self._state = SafeModeState(SafeMode.NOMINAL, "reset", at)
            self._vehicle.clear_override(at)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _enter(
        self,
        mode: SafeMode,
        reason: str,
        at: datetime,
        trigger: str,
        envelope_id: Optional[str],
    ) -> SafeModeTransition:
        previous = self._state
        self._state = SafeModeState(mode, reason, at)
        self._vehicle.enter_override(mode.flight_mode, at)
        label = "Return to Launch" if mode is SafeMode.RETURN_TO_LAUNCH else "Hold Position"
        self._audit.emit(
            at,
            "SAFE_MODE",
            f"{label}: {reason}",
            Severity.ERROR if mode is SafeMode.RETURN_TO_LAUNCH else Severity.WARNING,
            envelope_id=envelope_id,
        )
        return SafeModeTransition(previous=previous, current=self._state, trigger=trigger)

    def _recover(self, at: datetime) -> SafeModeTransition:
        previous = self._state
        self.timer.cancel()
        self._state = SafeModeState(SafeMode.NOMINAL, "dwell elapsed without rejections", at)
        self._vehicle.clear_override(at)
        self._audit.emit(
            at,
            "SAFE_MODE_CLEARED",
            f"{previous.mode.value} cleared after {self.timer.duration.total_seconds():g}s dwell",
            Severity.INFO,
        )
        return SafeModeTransition(previous=previous, current=self._state, trigger="recovery")


__all__ = [
    "DwellTimer",
    "SafeMode",
    "SafeModeMachine",
    "SafeModeState",
    "SafeModeTransition",
]
