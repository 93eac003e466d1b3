"""Behavioural feature extraction for inbound commands."""
from __future__ import annotations

import math
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from statistics import mean, pstdev
from typing import Deque, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from .config import EngineSettings
from .envelope import CommandEnvelope
from .state import CommandKind, VehicleSnapshot, VehicleState

_EARTH_RADIUS_M = 6_371_000.0
# z-score anomalies below this share of the bound are ignored as noise
_ZSCORE_FLOOR = 0.25


@dataclass(frozen=True)
class Feature:
    """One named behavioural signal and its anomaly verdict."""

    name: str
    value: float
    unit: str
    bound: float
    anomalous: bool = False
    hard_limit: bool = False
    z_score: float = 0.0
    lower_bound: bool = False
    description: str = ""

    def severity(self) -> float:
        """How far the value sits past its bound (1.0 == at the bound)."""

        if self.bound <= 0:
            return 0.0
        if self.lower_bound:
            return self.bound / max(self.value, 1e-9)
        return self.value / self.bound

    def as_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "value": round(self.value, 4),
            "unit": self.unit,
            "bound": self.bound,
            "anomalous": self.anomalous,
            "hard_limit": self.hard_limit,
            "z_score": round(self.z_score, 4),
        }


@dataclass(frozen=True)
class FeatureVector:
    """Ordered features derived from a single envelope."""

    envelope_id: str
    kind: CommandKind
    features: Tuple[Feature, ...]

    def __iter__(self) -> Iterator[Feature]:
        return iter(self.features)

    def __getitem__(self, name: str) -> Feature:
        for feature in self.features:
            if feature.name == name:
                return feature
        raise KeyError(name)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(feature.name for feature in self.features)

    def anomalous(self) -> Tuple[Feature, ...]:
        return tuple(feature for feature in self.features if feature.anomalous)

    def hard_violations(self) -> Tuple[Feature, ...]:
        return tuple(feature for feature in self.features if feature.hard_limit)

    @property
    def physical_limit_exceeded(self) -> bool:
        return any(feature.hard_limit for feature in self.features)

    def dominant(self) -> Optional[Feature]:
        """Most severe anomalous feature, hard-limit violations first."""

        flagged = self.anomalous()
        if not flagged:
            return None
        return max(flagged, key=lambda feature: (feature.hard_limit, feature.severity()))

    def as_dict(self) -> dict[str, object]:
        return {
            "envelope_id": self.envelope_id,
            "kind": self.kind.value,
            "features": [feature.as_dict() for feature in self.features],
        }


@dataclass(frozen=True)
class CommandRecord:
    envelope_id: str
    kind: CommandKind
    received_at: datetime
    sequence: int
    accepted: Optional[bool] = None


class CommandHistory:
    """Bounded record of recently received commands."""

    def __init__(self, *, started_at: datetime, max_records: int = 256) -> None:
        self.started_at = started_at
        self._records: Deque[CommandRecord] = deque(maxlen=max_records)
        self._lock = threading.RLock()

    def record(self, envelope: CommandEnvelope) -> None:
        with self._lock:
            self._records.append(
                CommandRecord(
                    envelope_id=envelope.id,
                    kind=envelope.kind,
                    received_at=envelope.received_at,
                    sequence=envelope.sequence,
                )
            )

    def resolve(self, envelope_id: str, accepted: bool) -> None:
        with self._lock:
            for index, record in enumerate(self._records):
                if record.envelope_id == envelope_id:
                    self._records[index] = CommandRecord(
                        envelope_id=record.envelope_id,
                        kind=record.kind,
                        received_at=record.received_at,
                        sequence=record.sequence,
                        accepted=accepted,
                    )
                    return

    def before(self, envelope: CommandEnvelope) -> List[CommandRecord]:
        """Records received strictly before ``envelope``; later ones are invisible."""

        marker = (envelope.received_at, envelope.sequence)
        with self._lock:
            return [
                record
                for record in self._records
                if (record.received_at, record.sequence) < marker
            ]

    def last_before(self, envelope: CommandEnvelope) -> Optional[CommandRecord]:
        earlier = self.before(envelope)
        return earlier[-1] if earlier else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class ExpectationWindow:
    """Rolling per-(kind, feature) samples used for z-score expectations."""

    def __init__(self, *, size: int, min_samples: int) -> None:
        self._min_samples = min_samples
        self._samples: Dict[Tuple[CommandKind, str], Deque[float]] = defaultdict(lambda: deque(maxlen=size))
        self._lock = threading.RLock()

    def z_score(self, kind: CommandKind, name: str, value: float) -> float:
        with self._lock:
            samples = list(self._samples.get((kind, name), ()))
        if len(samples) < self._min_samples:
            return 0.0
        deviation = pstdev(samples)
        if deviation == 0.0:
            return 0.0
        return (value - mean(samples)) / deviation

    def observe(self, vector: FeatureVector) -> None:
        with self._lock:
            for feature in vector:
                self._samples[(vector.kind, feature.name)].append(feature.value)

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()


class FeatureExtractor:
    """Derives behavioural signals from a command and the vehicle state."""

    def __init__(self, settings: EngineSettings) -> None:
        self._settings = settings
        self.expectations = ExpectationWindow(
            size=settings.feature_window,
            min_samples=settings.min_window_samples,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def extract(
        self,
        envelope: CommandEnvelope,
        vehicle: VehicleSnapshot,
        history: CommandHistory,
    ) -> FeatureVector:
        features = tuple(self._features(envelope, vehicle, history))
        return FeatureVector(envelope_id=envelope.id, kind=envelope.kind, features=features)

    def observe(self, vector: FeatureVector) -> None:
        """Fold an admitted command's features into the expectation window."""

        self.expectations.observe(vector)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _features(
        self,
        envelope: CommandEnvelope,
        vehicle: VehicleSnapshot,
        history: CommandHistory,
    ) -> Iterable[Feature]:
        settings = self._settings
        kind = envelope.kind
        params = envelope.parameters

        position_delta = 0.0
        target_altitude = vehicle.altitude
        if kind is CommandKind.GOTO:
            position_delta = haversine_m(
                vehicle.latitude,
                vehicle.longitude,
                float(params["latitude"]),
                float(params["longitude"]),
            )
            target_altitude = float(params["altitude"])
        elif kind is CommandKind.TAKEOFF:
            target_altitude = float(params.get("altitude", settings.default_takeoff_altitude_m))
        elif kind is CommandKind.LAND:
            target_altitude = 0.0
        altitude_delta = abs(target_altitude - vehicle.altitude)

        yield self._bounded(
            kind,
            "position_delta",
            position_delta,
            "m",
            settings.max_position_delta_m,
            description="Sudden trajectory deviation",
        )
        yield self._bounded(
            kind,
            "altitude_delta",
            altitude_delta,
            "m",
            settings.max_altitude_m,
            description="Abrupt altitude change",
        )
        yield self._hard(
            "target_altitude",
            target_altitude,
            "m",
            settings.max_altitude_m,
            description="Commanded altitude exceeds the vehicle ceiling",
        )

        reference = vehicle.last_accepted_at or history.started_at
        elapsed = max((envelope.received_at - reference).total_seconds(), settings.min_elapsed_s)
        if kind is CommandKind.SET_VELOCITY:
            implied_velocity = abs(float(params["speed"]))
        elif kind in (CommandKind.GOTO, CommandKind.TAKEOFF):
            implied_velocity = math.hypot(position_delta, altitude_delta) / elapsed
        else:
            implied_velocity = 0.0
        yield self._hard(
            "implied_velocity",
            implied_velocity,
            "m/s",
            settings.max_speed_mps,
            description="Implied velocity exceeds physical limits",
        )

        previous = history.last_before(envelope)
        since_reference = previous.received_at if previous else history.started_at
        interval = max((envelope.received_at - since_reference).total_seconds(), 0.0)
        burst = previous is not None and interval < settings.min_command_interval_s
        yield Feature(
            name="time_since_last_command",
            value=interval,
            unit="s",
            bound=settings.min_command_interval_s,
            anomalous=burst,
            lower_bound=True,
            description="Command burst faster than the minimum interval",
        )

        yield self._mode_transitions(envelope, vehicle)

    def _mode_transitions(self, envelope: CommandEnvelope, vehicle: VehicleSnapshot) -> Feature:
        settings = self._settings
        window_start = envelope.received_at.timestamp() - settings.mode_window_s
        recent = sum(
            1
            for moment in vehicle.mode_transitions
            if window_start < moment.timestamp() <= envelope.received_at.timestamp()
        )
        requested = VehicleState.mode_for(envelope.kind, envelope.parameters)
        if requested is not None and requested != vehicle.flight_mode:
            recent += 1
        return Feature(
            name="mode_transitions",
            value=float(recent),
            unit="",
            bound=float(settings.max_mode_transitions),
            anomalous=recent > settings.max_mode_transitions,
            description="Command sequence inconsistent: excessive flight-mode changes",
        )

    def _bounded(
        self,
        kind: CommandKind,
        name: str,
        value: float,
        unit: str,
        bound: float,
        *,
        description: str,
    ) -> Feature:
        z_score = self.expectations.z_score(kind, name, value)
        unexpected = z_score > self._settings.zscore_threshold and value >= bound * _ZSCORE_FLOOR
        return Feature(
            name=name,
            value=value,
            unit=unit,
            bound=bound,
            anomalous=value > bound or unexpected,
            z_score=z_score,
            description=description,
        )

    @staticmethod
    def _hard(name: str, value: float, unit: str, bound: float, *, description: str) -> Feature:
        exceeded = value > bound
        return Feature(
            name=name,
            value=value,
            unit=unit,
            bound=bound,
            anomalous=exceeded,
            hard_limit=exceeded,
            description=description,
        )


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in metres."""

    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * _EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))


def features_from_values(
    envelope_id: str,
    kind: CommandKind,
    values: Sequence[Tuple[str, float, float, bool, bool]],
) -> FeatureVector:
    """Build a vector from ``(name, value, bound, anomalous, hard_limit)`` rows."""

    return FeatureVector(
        envelope_id=envelope_id,
        kind=kind,
        features=tuple(
            Feature(
                name=name,
                value=value,
                unit="",
                bound=bound,
                anomalous=anomalous or hard_limit,
                hard_limit=hard_limit,
            )
            for name, value, bound, anomalous, hard_limit in values
        ),
    )


__all__ = [
    "CommandHistory",
    "CommandRecord",
    "ExpectationWindow",
    "Feature",
    "FeatureExtractor",
    "FeatureVector",
    "features_from_values",
    "haversine_m",
]
