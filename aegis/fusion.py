"""Decision fusion: the single admission point for commands."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .crypto import VerificationResult
from .scoring import TrustScore
from .state import Failure

_CRYPTO_REASONS = {
    Failure.INTEGRITY_FAILURE: "Cryptographic integrity failure: authentication tag mismatch",
    Failure.REPLAYED_NONCE: "Cryptographic replay detected: nonce already used",
    Failure.UNKNOWN_KEY: "Cryptographic key unknown: no key material for session",
    Failure.VALIDATION_TIMEOUT: "ValidationTimeout: verification exceeded its time budget",
    Failure.VALIDATION_ERROR: "ValidationError: verification failed with an internal error",
}
ACCEPT_REASON = "Command validated and authorized"


class Verdict(str, Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class Decision:
    """Fused admission verdict for one envelope."""

    verdict: Verdict
    reason: str
    verification: VerificationResult
    trust: TrustScore
    failure: Optional[Failure] = None

    @property
    def accepted(self) -> bool:
        return self.verdict is Verdict.ACCEPTED

    @property
    def rejected(self) -> bool:
        return self.verdict is Verdict.REJECTED

    def as_dict(self) -> dict[str, object]:
        return {
            "verdict": self.verdict.value,
            "reason": self.reason,
            "failure": self.failure.value if self.failure else None,
            "verification": self.verification.as_dict(),
            "trust": self.trust.as_dict(),
        }


def decide(verification: VerificationResult, trust: TrustScore) -> Decision:
    """Accept only when the envelope is authentic and its trust is non-negative.

    The rule is total: provenance, command kind and anything else about the
    envelope are irrelevant here.
    """

    if verification.valid and trust.value >= 0.0:
        return Decision(
            verdict=Verdict.ACCEPTED,
            reason=ACCEPT_REASON,
            verification=verification,
            trust=trust,
        )

    if not verification.valid:
        failure = verification.failure
        reason = _CRYPTO_REASONS.get(failure, f"Cryptographic verification failed: {failure}")
    else:
        failure = trust.failure or Failure.BEHAVIORAL_ANOMALY
        reason = _behavioral_reason(trust)

    return Decision(
        verdict=Verdict.REJECTED,
        reason=reason,
        verification=verification,
        trust=trust,
        failure=failure,
    )


def _behavioral_reason(trust: TrustScore) -> str:
    if trust.failure is Failure.VALIDATION_TIMEOUT:
        return "ValidationTimeout: trust scoring exceeded its time budget"
    if trust.failure is Failure.VALIDATION_ERROR:
        return "ValidationError: trust scoring failed with an internal error"
    feature = trust.dominant_feature
    if feature is not None:
        detail = feature.description or "Behavioral anomaly detected"
        observed = f"{feature.name}={feature.value:.2f}{feature.unit}"
        if feature.lower_bound:
            comparison = f"{observed} below {feature.bound:g}{feature.unit}"
        elif feature.value > feature.bound:
            comparison = f"{observed} exceeds {feature.bound:g}{feature.unit}"
        else:
            comparison = f"{observed} deviates from expectation, z={feature.z_score:.1f}"
        return f"{detail} ({comparison}; trust {trust.value:+.2f})"
    return f"Behavioral anomaly detected (trust {trust.value:+.2f})"


__all__ = ["ACCEPT_REASON", "Decision", "Verdict", "decide"]
