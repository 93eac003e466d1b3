"""Pluggable trust scoring for AEGIS."""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, Mapping, Optional, Protocol, Sequence, Tuple

from .config import EngineSettings
from .features import Feature, FeatureVector
from .state import Failure

TRUST_MIN = -1.0
TRUST_MAX = 1.0
HARD_LIMIT_MAX = -0.5

DEFAULT_FEATURE_WEIGHTS: Mapping[str, float] = {
    "position_delta": 0.15,
    "altitude_delta": 0.1,
    "target_altitude": 0.15,
    "implied_velocity": 0.35,
    "mode_transitions": 0.15,
}


@dataclass(frozen=True)
class TrustScore:
    """Behavioural plausibility of a command, higher is more trustworthy."""

    value: float
    features: Optional[FeatureVector] = None
    dominant_feature: Optional[Feature] = None
    failure: Optional[Failure] = None

    def __post_init__(self) -> None:
        if not TRUST_MIN <= self.value <= TRUST_MAX:
            raise ValueError(f"Trust score {self.value} outside [-1, 1]")

    @property
    def hard_limit(self) -> bool:
        return self.features is not None and self.features.physical_limit_exceeded

    @classmethod
    def timed_out(cls, features: Optional[FeatureVector] = None) -> "TrustScore":
        return cls(value=TRUST_MIN, features=features, failure=Failure.VALIDATION_TIMEOUT)

    @classmethod
    def errored(cls) -> "TrustScore":
        return cls(value=TRUST_MIN, failure=Failure.VALIDATION_ERROR)

    def as_dict(self) -> dict[str, object]:
        return {
            "value": self.value,
            "hard_limit": self.hard_limit,
            "dominant_feature": self.dominant_feature.name if self.dominant_feature else None,
            "failure": self.failure.value if self.failure else None,
        }


class ScoreHistory:
    """Fixed-size trailing window of prior trust scores."""

    def __init__(self, size: int = 10) -> None:
        if size <= 0:
            raise ValueError("Score history size must be positive")
        self._scores: Deque[float] = deque(maxlen=size)
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return self._scores.maxlen or 0

    def record(self, value: float) -> None:
        with self._lock:
            self._scores.append(value)

    def values(self) -> Tuple[float, ...]:
        with self._lock:
            return tuple(self._scores)

    def average(self) -> Optional[float]:
        values = self.values()
        if not values:
            return None
        return sum(values) / len(values)

    def __len__(self) -> int:
        with self._lock:
            return len(self._scores)

    def clear(self) -> None:
        with self._lock:
            self._scores.clear()


class TrustScorer(Protocol):
    """Capability interface for trust models."""

    def score(self, features: FeatureVector, history: ScoreHistory) -> TrustScore:
        ...


def finalize_score(value: float, features: FeatureVector, *, ceiling: float = HARD_LIMIT_MAX) -> TrustScore:
    """Clamp ``value`` and enforce the physical-limit ceiling.

    Any scorer output passes through here, so a hard-limit violation always
    ends at or below ``ceiling`` regardless of what the model produced.
    """

    value = max(TRUST_MIN, min(TRUST_MAX, value))
    failure = None
    if features.physical_limit_exceeded:
        value = min(value, min(ceiling, HARD_LIMIT_MAX))
        failure = Failure.PHYSICAL_LIMIT_EXCEEDED
    elif value < 0.0:
        failure = Failure.BEHAVIORAL_ANOMALY
    return TrustScore(
        value=round(value, 4),
        features=features,
        dominant_feature=features.dominant(),
        failure=failure,
    )


def enforce_physical_limits(score: TrustScore, features: FeatureVector) -> TrustScore:
    """Re-apply the hard ceiling to the output of an arbitrary scorer."""

    if features.physical_limit_exceeded and (score.value > HARD_LIMIT_MAX or score.failure is None):
        return finalize_score(score.value, features)
    if score.features is None:
        return TrustScore(
            value=score.value,
            features=features,
            dominant_feature=score.dominant_feature or features.dominant(),
            failure=score.failure,
        )
    return score


class RuleBasedTrustScorer:
    """Deterministic weighted-penalty model.

    ``raw = 1 - sum(penalties)`` where a flagged feature costs
    ``anomaly_penalty`` and an unflagged one costs ``weight * min(value / bound, 2)``.
    The result is blended with the mean of the trailing score window.
    """

    def __init__(
        self,
        settings: EngineSettings,
        *,
        weights: Optional[Mapping[str, float]] = None,
    ) -> None:
        self._anomaly_penalty = settings.anomaly_penalty
        self._history_weight = settings.history_weight
        self._ceiling = settings.hard_limit_ceiling
        self._weights: Dict[str, float] = dict(weights or DEFAULT_FEATURE_WEIGHTS)

    def score(self, features: FeatureVector, history: ScoreHistory) -> TrustScore:
        raw = 1.0 - sum(self._penalty(feature) for feature in features)
        baseline = history.average()
        if baseline is not None:
            raw = (1.0 - self._history_weight) * raw + self._history_weight * baseline
        return finalize_score(raw, features, ceiling=self._ceiling)

    def explain(self, features: Iterable[Feature]) -> Dict[str, float]:
        """Per-feature penalty contributions behind a score."""

        return {feature.name: round(self._penalty(feature), 4) for feature in features}

    def _penalty(self, feature: Feature) -> float:
        if feature.anomalous:
            return self._anomaly_penalty
        if feature.lower_bound or feature.bound <= 0:
            return 0.0
        weight = self._weights.get(feature.name, 0.0)
        return weight * min(feature.value / feature.bound, 2.0)


@dataclass
class StaticTrustScorer:
    """Returns injected scores, for exercising fusion and safe mode directly.

    A sequence is consumed in order and its last value repeats once exhausted.
    Physical-limit ceilings and clamping still apply.
    """

    scores: Sequence[float] | float = 1.0
    calls: int = field(default=0, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def score(self, features: FeatureVector, history: ScoreHistory) -> TrustScore:
        with self._lock:
            if isinstance(self.scores, (int, float)):
                value = float(self.scores)
            else:
                values = list(self.scores)
                if not values:
                    raise ValueError("StaticTrustScorer needs at least one score")
                value = float(values[min(self.calls, len(values) - 1)])
            self.calls += 1
        return finalize_score(value, features)


__all__ = [
    "DEFAULT_FEATURE_WEIGHTS",
    "RuleBasedTrustScorer",
    "ScoreHistory",
    "StaticTrustScorer",
    "TrustScore",
    "TrustScorer",
    "enforce_physical_limits",
    "finalize_score",
]
