"""Shared vehicle state and primitive types for the AEGIS engine."""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Deque, Dict, Mapping, Optional, Protocol


__all__ = [
    "AegisError",
    "Clock",
    "CommandKind",
    "Failure",
    "ManualClock",
    "Severity",
    "SourceTag",
    "SystemClock",
    "VehicleSnapshot",
    "VehicleState",
]


class AegisError(RuntimeError):
    """Base error for integration mistakes surfaced by the engine."""


class CommandKind(str, Enum):
    ARM = "ARM"
    DISARM = "DISARM"
    TAKEOFF = "TAKEOFF"
    LAND = "LAND"
    RTL = "RTL"
    GOTO = "GOTO"
    SET_MODE = "SET_MODE"
    SET_VELOCITY = "SET_VELOCITY"

    @classmethod
    def parse(cls, value: object) -> "CommandKind":
        if isinstance(value, CommandKind):
            return value
        text = str(value or "").strip()
        key = text.replace("-", "").replace("_", "").replace(" ", "").upper()
        try:
            return _KIND_ALIASES[key]
        except KeyError:
            raise ValueError(f"Unknown command kind '{text}'") from None


_KIND_ALIASES: Dict[str, CommandKind] = {
    "ARM": CommandKind.ARM,
    "DISARM": CommandKind.DISARM,
    "TAKEOFF": CommandKind.TAKEOFF,
    "LAND": CommandKind.LAND,
    "RTL": CommandKind.RTL,
    "RETURNTOLAUNCH": CommandKind.RTL,
    "GOTO": CommandKind.GOTO,
    "GOTOPOSITION": CommandKind.GOTO,
    "SETMODE": CommandKind.SET_MODE,
    "SETVELOCITY": CommandKind.SET_VELOCITY,
}


class SourceTag(str, Enum):
    KNOWN_GROUND_STATION = "KNOWN_GROUND_STATION"
    UNVERIFIED = "UNVERIFIED"

    @classmethod
    def parse(cls, value: object) -> "SourceTag":
        if isinstance(value, SourceTag):
            return value
        text = str(value or "").strip().replace(" ", "_").upper()
        if text in {"KNOWN_GROUND_STATION", "KNOWNGROUNDSTATION", "GCS"}:
            return cls.KNOWN_GROUND_STATION
        return cls.UNVERIFIED


class Failure(str, Enum):
    """Failure taxonomy carried on verification, trust and decision results."""

    INTEGRITY_FAILURE = "IntegrityFailure"
    REPLAYED_NONCE = "ReplayedNonce"
    UNKNOWN_KEY = "UnknownKey"
    PHYSICAL_LIMIT_EXCEEDED = "PhysicalLimitExceeded"
    VALIDATION_TIMEOUT = "ValidationTimeout"
    VALIDATION_ERROR = "ValidationError"
    BEHAVIORAL_ANOMALY = "BehavioralAnomaly"


class Severity(int, Enum):
    INFO = 10
    SUCCESS = 20
    WARNING = 30
    ERROR = 40

    @property
    def label(self) -> str:
        return self.name.lower()


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(tz=timezone.utc)


class ManualClock:
    """Deterministic clock advanced explicitly by the caller."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now


@dataclass(frozen=True)
class VehicleSnapshot:
    """Consistent, immutable view of :class:`VehicleState`."""

    latitude: float
    longitude: float
    altitude: float
    heading: float
    speed: float
    armed: bool
    flight_mode: str
    updated_at: datetime
    last_accepted_at: Optional[datetime]
    mode_transitions: tuple[datetime, ...] = ()

    def as_dict(self) -> dict[str, object]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "altitude": self.altitude,
            "heading": self.heading,
            "speed": self.speed,
            "armed": self.armed,
            "flight_mode": self.flight_mode,
            "updated_at": self.updated_at.isoformat(),
        }


_MODE_FOR_KIND = {
    CommandKind.TAKEOFF: "GUIDED",
    CommandKind.GOTO: "GUIDED",
    CommandKind.LAND: "LAND",
    CommandKind.RTL: "RTL",
}


@dataclass
class VehicleState:
    """Single shared mutable vehicle snapshot.

    Readers take :meth:`snapshot`; every write goes through the lock so that
    accepted commands and safe-mode overrides are serialized.
    """

    updated_at: datetime
    latitude: float = 37.7749
    longitude: float = -122.4194
    altitude: float = 0.0
    heading: float = 0.0
    speed: float = 0.0
    armed: bool = False
    flight_mode: str = "STABILIZE"
    last_accepted_at: Optional[datetime] = None
    default_takeoff_altitude: float = 10.0
    mode_transitions: Deque[datetime] = field(default_factory=lambda: deque(maxlen=64))
    commanded_mode: str = "STABILIZE"
    override_mode: Optional[str] = None
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def snapshot(self) -> VehicleSnapshot:
        with self._lock:
            return VehicleSnapshot(
                latitude=self.latitude,
                longitude=self.longitude,
                altitude=self.altitude,
                heading=self.heading,
                speed=self.speed,
                armed=self.armed,
                flight_mode=self.flight_mode,
                updated_at=self.updated_at,
                last_accepted_at=self.last_accepted_at,
                mode_transitions=tuple(self.mode_transitions),
            )

    @staticmethod
    def mode_for(kind: CommandKind, parameters: Mapping[str, object]) -> Optional[str]:
        """Flight mode an accepted command of ``kind`` would select."""

        if kind is CommandKind.SET_MODE:
            mode = parameters.get("mode")
            return str(mode).upper() if mode else None
        return _MODE_FOR_KIND.get(kind)

    def apply(self, kind: CommandKind, parameters: Mapping[str, object], at: datetime) -> VehicleSnapshot:
        """Apply the effects of an accepted command."""

        with self._lock:
            if kind is CommandKind.ARM:
                self.armed = True
            elif kind is CommandKind.DISARM:
                self.armed = False
                self.speed = 0.0
            elif kind is CommandKind.TAKEOFF:
                self.altitude = float(parameters.get("altitude", self.default_takeoff_altitude))
            elif kind is CommandKind.LAND:
                self.altitude = 0.0
                self.speed = 0.0
            elif kind is CommandKind.GOTO:
                self.latitude = float(parameters["latitude"])
                self.longitude = float(parameters["longitude"])
                self.altitude = float(parameters["altitude"])
            elif kind is CommandKind.SET_VELOCITY:
                self.speed = float(parameters["speed"])
                if "heading" in parameters:
                    self.heading = float(parameters["heading"]) % 360.0

            mode = self.mode_for(kind, parameters)
            if mode is not None:
                self.commanded_mode = mode
                if self.override_mode is None:
                    self._set_mode(mode, at)

            self.last_accepted_at = at
            self.updated_at = at
            return self.snapshot()

    def enter_override(self, mode: str, at: datetime) -> None:
        """Force ``mode`` until :meth:`clear_override` is called."""

        with self._lock:
            if self.override_mode is None:
                self.commanded_mode = self.flight_mode
            self.override_mode = mode
            self._set_mode(mode, at)
            self.updated_at = at

    def clear_override(self, at: datetime) -> None:
        with self._lock:
            if self.override_mode is None:
                return
            self.override_mode = None
            self._set_mode(self.commanded_mode, at)
            self.updated_at = at

    def _set_mode(self, mode: str, at: datetime) -> None:
        if mode != self.flight_mode:
            self.flight_mode = mode
            self.mode_transitions.append(at)
