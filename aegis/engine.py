"""AEGIS orchestration engine."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Mapping, Optional, Tuple, Union

from .audit import AuditLog
from .config import EngineSettings, get_settings
from .crypto import CommandSigner, CryptoVerifier, SessionKeyring, VerificationResult, Verifier
from .envelope import CommandEnvelope, CommandQueue, LifecycleStatus
from .failsafe import SafeModeMachine, SafeModeTransition
from .features import CommandHistory, FeatureExtractor, FeatureVector
from .fusion import Decision, decide
from .scoring import RuleBasedTrustScorer, ScoreHistory, TrustScore, TrustScorer, enforce_physical_limits
from .state import Clock, Failure, Severity, SystemClock, VehicleSnapshot, VehicleState

logger = logging.getLogger(__name__)

# failures already logged by the stage that raised them
_STAGE_FAILURES = frozenset({Failure.VALIDATION_TIMEOUT, Failure.VALIDATION_ERROR})


@dataclass(frozen=True)
class CommandOutcome:
    """Full decision artifact for one envelope."""

    envelope: CommandEnvelope
    verification: VerificationResult
    features: Optional[FeatureVector]
    trust: TrustScore
    decision: Decision
    transition: Optional[SafeModeTransition]
    vehicle: VehicleSnapshot

    @property
    def accepted(self) -> bool:
        return self.decision.accepted

    def as_dict(self) -> dict[str, object]:
        payload = {
            "envelope": self.envelope.as_dict(),
            "decision": self.decision.as_dict(),
            "vehicle": self.vehicle.as_dict(),
        }
        if self.features is not None:
            payload["features"] = self.features.as_dict()
        if self.transition is not None:
            payload["safe_mode"] = self.transition.as_dict()
        return payload


EngineEvent = Union[CommandOutcome, SafeModeTransition]
Listener = Callable[[EngineEvent], None]


class AegisEngine:
    """Owns one session's validation state and runs the decision pipeline.

    Nothing here is module-global: two engines never share nonce marks,
    vehicle state or audit history, and :meth:`reset` tears it all down.
    """

    def __init__(
        self,
        *,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Clock] = None,
        keyring: Optional[SessionKeyring] = None,
        verifier: Optional[Verifier] = None,
        scorer: Optional[TrustScorer] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self._started_at = self.clock.now()
        self.audit = AuditLog(self.settings.log_capacity)
        self.keyring = keyring or SessionKeyring()
        self.verifier: Verifier = verifier or CryptoVerifier(self.keyring)
        self.scorer: TrustScorer = scorer or RuleBasedTrustScorer(self.settings)
        self.extractor = FeatureExtractor(self.settings)
        self.queue = CommandQueue(audit=self.audit, clock=self.clock)
        self._listeners: List[Listener] = []
        self._listener_lock = threading.Lock()
        self._build_session_state()

    def _build_session_state(self) -> None:
        started = self._started_at
        self.vehicle = VehicleState(
            updated_at=started,
            default_takeoff_altitude=self.settings.default_takeoff_altitude_m,
        )
        self.history = CommandHistory(started_at=started, max_records=self.settings.command_history_size)
        self.scores = ScoreHistory(self.settings.score_history_size)
        self.safe_mode = SafeModeMachine(
            vehicle=self.vehicle,
            audit=self.audit,
            dwell_seconds=self.settings.dwell_seconds,
            started_at=started,
            severe_threshold=self.settings.severe_threshold,
        )

    # ------------------------------------------------------------------
    # Session and subscribers
    # ------------------------------------------------------------------
    def establish_session(
        self,
        session_id: str,
        shared_secret: bytes,
        *,
        salt: Optional[bytes] = None,
    ) -> CommandSigner:
        session = self.keyring.establish(session_id, shared_secret, salt=salt)
        return CommandSigner(session_id, session.key)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a callback for decisions and safe-mode transitions."""

        with self._listener_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listener_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Synchronous pipeline
    # ------------------------------------------------------------------
    def submit(self, raw: Mapping[str, object]) -> CommandEnvelope:
        envelope = self.queue.submit(raw)
        self.history.record(envelope)
        return envelope

    def process(self, raw: Mapping[str, object]) -> CommandOutcome:
        """Submit one raw command and run it through every stage."""

        return self.run(self.submit(raw))

    def run(self, envelope: CommandEnvelope) -> CommandOutcome:
        self.dispatch(envelope)
        self.begin_validation(envelope)
        verification = self.verify(envelope)
        features, trust = self.assess(envelope, verification)
        return self.conclude(envelope, verification, features, trust)

    def run_pending(self) -> List[CommandOutcome]:
        """Process every queued envelope in submission order."""

        outcomes: List[CommandOutcome] = []
        while True:
            envelope = self.queue.next_pending()
            if envelope is None:
                return outcomes
            outcomes.append(self.run(envelope))

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def dispatch(self, envelope: CommandEnvelope) -> None:
        self.queue.advance(envelope.id, LifecycleStatus.DISPATCHED)

    def begin_validation(self, envelope: CommandEnvelope) -> None:
        self.queue.advance(envelope.id, LifecycleStatus.VALIDATING)

    def verify(self, envelope: CommandEnvelope) -> VerificationResult:
        result = self.verifier.verify(envelope)
        self.record_verification(envelope, result)
        return result

    def record_verification(self, envelope: CommandEnvelope, result: VerificationResult) -> None:
        if result.valid:
            self.audit.emit(
                self.clock.now(),
                "CRYPTO_OK",
                f"AES-GCM verified, nonce {envelope.nonce} fresh",
                Severity.SUCCESS,
                envelope_id=envelope.id,
            )
        elif result.failure not in _STAGE_FAILURES:
            self.audit.emit(
                self.clock.now(),
                "CRYPTO_FAIL",
                f"{result.failure.value} for session {envelope.session_id} nonce {envelope.nonce}",
                Severity.ERROR,
                envelope_id=envelope.id,
            )

    def assess(
        self,
        envelope: CommandEnvelope,
        verification: VerificationResult,
        vehicle: Optional[VehicleSnapshot] = None,
    ) -> Tuple[FeatureVector, TrustScore]:
        """Extract features and score them.

        Runs even for envelopes that failed verification so the audit trail
        carries a diagnostic score; the outcome is already fixed by fusion.
        ``vehicle`` pins the state the envelope is judged against; the live
        snapshot is used when omitted.
        """

        snapshot = vehicle if vehicle is not None else self.vehicle.snapshot()
        features = self.extractor.extract(envelope, snapshot, self.history)
        trust = enforce_physical_limits(self.scorer.score(features, self.scores), features)
        return features, trust

    def record_timeout(self, envelope: CommandEnvelope, stage: str) -> None:
        self.audit.emit(
            self.clock.now(),
            "VALIDATION_TIMEOUT",
            f"{stage} exceeded {self.settings.validation_timeout_s:g}s budget",
            Severity.ERROR,
            envelope_id=envelope.id,
        )

    def record_error(self, envelope: CommandEnvelope, stage: str, exc: BaseException) -> None:
        self.audit.emit(
            self.clock.now(),
            "VALIDATION_ERROR",
            f"{stage} raised {type(exc).__name__}: {exc}",
            Severity.ERROR,
            envelope_id=envelope.id,
        )

    def conclude(
        self,
        envelope: CommandEnvelope,
        verification: VerificationResult,
        features: Optional[FeatureVector],
        trust: TrustScore,
    ) -> CommandOutcome:
        now = self.clock.now()
        recovery = self.safe_mode.poll(now)
        if recovery is not None:
            self._notify(recovery)
        if features is not None:
            self._record_score(envelope, features, trust, now)

        decision = decide(verification, trust)
        self.queue.advance(
            envelope.id,
            LifecycleStatus.ACCEPTED if decision.accepted else LifecycleStatus.REJECTED,
        )
        self.history.resolve(envelope.id, decision.accepted)
        if trust.failure not in _STAGE_FAILURES:
            self.scores.record(trust.value)
        self.audit.emit(
            now,
            "DECISION",
            f"{decision.verdict.value}: {decision.reason}",
            Severity.SUCCESS if decision.accepted else Severity.ERROR,
            envelope_id=envelope.id,
        )

        transition = None
        if decision.accepted:
            self.vehicle.apply(envelope.kind, envelope.parameters, envelope.received_at)
            if features is not None:
                self.extractor.observe(features)
        else:
            transition = self.safe_mode.evaluate(decision, now, envelope_id=envelope.id)

        outcome = CommandOutcome(
            envelope=envelope,
            verification=verification,
            features=features,
            trust=trust,
            decision=decision,
            transition=transition,
            vehicle=self.vehicle.snapshot(),
        )
        self._notify(outcome)
        if transition is not None:
            self._notify(transition)
        return outcome

    # ------------------------------------------------------------------
    # Safe-mode timers
    # ------------------------------------------------------------------
    def tick(self) -> Optional[SafeModeTransition]:
        """Poll the dwell timer against the engine clock."""

        transition = self.safe_mode.poll(self.clock.now())
        if transition is not None:
            self._notify(transition)
        return transition

    def fire_dwell(self, generation: int) -> Optional[SafeModeTransition]:
        transition = self.safe_mode.fire(generation, self.clock.now())
        if transition is not None:
            self._notify(transition)
        return transition

    def reset(self) -> None:
        """Tear down all session state; key material is revoked."""

        self.keyring.reset()
        self.queue.clear()
        self.audit.clear()
        self.extractor.expectations.clear()
        self._started_at = self.clock.now()
        self._build_session_state()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _record_score(
        self,
        envelope: CommandEnvelope,
        features: FeatureVector,
        trust: TrustScore,
        now: datetime,
    ) -> None:
        if features.physical_limit_exceeded:
            violations = ", ".join(
                f"{feature.name}={feature.value:.2f}{feature.unit} > {feature.bound:g}{feature.unit}"
                for feature in features.hard_violations()
            )
            self.audit.emit(
                now,
                "PHYSICAL_LIMIT",
                f"{Failure.PHYSICAL_LIMIT_EXCEEDED.value}: {violations}",
                Severity.ERROR,
                envelope_id=envelope.id,
            )
        flagged = [feature.name for feature in features.anomalous()]
        message = f"{trust.value:+.2f}"
        if flagged:
            message += f" anomalous: {', '.join(flagged)}"
        self.audit.emit(
            now,
            "AI_SCORE",
            message,
            Severity.SUCCESS if trust.value >= 0.0 else Severity.WARNING,
            envelope_id=envelope.id,
        )

    def _notify(self, event: EngineEvent) -> None:
        with self._listener_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Engine listener %r failed", listener)


__all__ = ["AegisEngine", "CommandOutcome", "EngineEvent", "Listener"]
