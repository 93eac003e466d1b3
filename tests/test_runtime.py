from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from aegis.config import EngineSettings
from aegis.crypto import CryptoVerifier
from aegis.engine import AegisEngine
from aegis.envelope import LifecycleStatus
from aegis.failsafe import SafeMode
from aegis.runtime import AsyncCommandProcessor
from aegis.scoring import StaticTrustScorer, finalize_score
from aegis.state import Failure, SystemClock

SECRET = b"ground-station-shared-secret"


class SlowScorer:
    def __init__(self, delay: float) -> None:
        self.delay = delay

    def score(self, features, history):
        time.sleep(self.delay)
        return finalize_score(1.0, features)


class SlowVerifier:
    def __init__(self, inner: CryptoVerifier, delay: float) -> None:
        self.inner = inner
        self.delay = delay

    def verify(self, envelope):
        time.sleep(self.delay)
        return self.inner.verify(envelope)


class RaisingVerifier:
    def verify(self, envelope):
        raise KeyError("keyring unavailable")


class RaisingScorer:
    def score(self, features, history):
        raise ZeroDivisionError("empty window")


def build_engine(scorer=None, **settings):
    engine = AegisEngine(
        settings=EngineSettings(**settings),
        clock=SystemClock(),
        scorer=scorer or StaticTrustScorer(1.0),
    )
    signer = engine.establish_session("link-1", SECRET)
    return engine, signer


def test_concurrent_submissions_verify_in_order():
    engine, signer = build_engine()

    async def scenario():
        async with AsyncCommandProcessor(engine) as processor:
            futures = [processor.submit(signer.sign("ARM", nonce=nonce)) for nonce in range(1, 9)]
            return await asyncio.gather(*futures)

    outcomes = asyncio.run(scenario())

    assert all(outcome.accepted for outcome in outcomes)
    assert [outcome.envelope.nonce for outcome in outcomes] == list(range(1, 9))
    assert engine.keyring.require("link-1").peek_high_water() == 8


def test_replay_is_rejected_through_processor():
    engine, signer = build_engine()
    raw = signer.sign("ARM", nonce=3)

    async def scenario():
        async with AsyncCommandProcessor(engine) as processor:
            first = await processor.process(raw)
            second = await processor.process(dict(raw))
            return first, second

    first, second = asyncio.run(scenario())

    assert first.accepted
    assert second.decision.failure is Failure.REPLAYED_NONCE
    assert engine.safe_mode.mode is SafeMode.HOLD


def test_slow_scoring_times_out():
    engine, signer = build_engine(SlowScorer(0.5))

    async def scenario():
        async with AsyncCommandProcessor(engine, timeout=0.05) as processor:
            return await processor.process(signer.sign("ARM", nonce=1))

    outcome = asyncio.run(scenario())

    assert outcome.decision.rejected
    assert outcome.decision.failure is Failure.VALIDATION_TIMEOUT
    assert outcome.decision.reason.startswith("ValidationTimeout")
    assert outcome.features is None
    assert engine.safe_mode.mode is SafeMode.HOLD
    assert len(engine.audit.filter(category="VALIDATION_TIMEOUT")) == 1
    assert engine.audit.filter(category="CRYPTO_FAIL") == []


def test_slow_verification_times_out():
    engine, signer = build_engine()
    engine.verifier = SlowVerifier(CryptoVerifier(engine.keyring), 0.5)

    async def scenario():
        async with AsyncCommandProcessor(engine, timeout=0.05) as processor:
            return await processor.process(signer.sign("ARM", nonce=1))

    outcome = asyncio.run(scenario())

    assert outcome.verification.failure is Failure.VALIDATION_TIMEOUT
    assert outcome.decision.rejected
    assert "ValidationTimeout" in outcome.decision.reason


def test_dwell_timer_recovers_in_background():
    engine, signer = build_engine(StaticTrustScorer([-0.3, 1.0]), dwell_seconds=0.2)

    async def scenario():
        async with AsyncCommandProcessor(engine) as processor:
            await processor.process(signer.sign("ARM", nonce=1))
            held = engine.safe_mode.mode
            await asyncio.sleep(0.5)
            return held

    held = asyncio.run(scenario())

    assert held is SafeMode.HOLD
    assert engine.safe_mode.mode is SafeMode.NOMINAL
    assert len(engine.audit.filter(category="SAFE_MODE_CLEARED")) == 1


def test_rejection_during_dwell_postpones_recovery():
    engine, signer = build_engine(StaticTrustScorer(-0.3), dwell_seconds=0.3)

    async def scenario():
        async with AsyncCommandProcessor(engine) as processor:
            await processor.process(signer.sign("ARM", nonce=1))
            await asyncio.sleep(0.2)
            await processor.process(signer.sign("ARM", nonce=2))
            await asyncio.sleep(0.2)
            midway = engine.safe_mode.mode
            await asyncio.sleep(0.3)
            return midway

    midway = asyncio.run(scenario())

    assert midway is SafeMode.HOLD
    assert engine.safe_mode.mode is SafeMode.NOMINAL
    assert len(engine.audit.filter(category="SAFE_MODE")) == 1


def test_submit_requires_running_processor():
    engine, signer = build_engine()
    processor = AsyncCommandProcessor(engine)

    with pytest.raises(RuntimeError):
        processor.submit(signer.sign("ARM", nonce=1))


def test_scoring_sees_vehicle_as_of_its_turn():
    engine, signer = build_engine()
    original = engine.assess
    seen = {}

    def delayed(envelope, verification, vehicle=None):
        if envelope.nonce == 1:
            time.sleep(0.3)
        seen[envelope.nonce] = vehicle
        return original(envelope, verification, vehicle)

    engine.assess = delayed

    async def scenario():
        async with AsyncCommandProcessor(engine) as processor:
            first = processor.submit(signer.sign("DISARM", nonce=1))
            second = processor.submit(signer.sign("ARM", nonce=2))
            return await asyncio.gather(first, second)

    first, second = asyncio.run(scenario())

    assert first.accepted and second.accepted
    assert seen[1].armed is False
    assert seen[1].last_accepted_at is None
    assert seen[2].armed is False


def test_raising_verifier_rejects_and_closes_lifecycle():
    engine, signer = build_engine()
    engine.verifier = RaisingVerifier()

    async def scenario():
        async with AsyncCommandProcessor(engine) as processor:
            return await processor.process(signer.sign("ARM", nonce=1))

    outcome = asyncio.run(scenario())

    assert outcome.decision.rejected
    assert outcome.verification.failure is Failure.VALIDATION_ERROR
    assert outcome.decision.reason.startswith("ValidationError")
    assert engine.queue.get(outcome.envelope.id).status is LifecycleStatus.REJECTED
    assert engine.safe_mode.mode is SafeMode.HOLD
    assert len(engine.audit.filter(category="VALIDATION_ERROR")) == 1
    assert len(engine.audit.filter(category="DECISION")) == 1
    assert engine.audit.filter(category="CRYPTO_FAIL") == []


def test_raising_scorer_rejects_and_closes_lifecycle():
    engine, signer = build_engine(RaisingScorer())

    async def scenario():
        async with AsyncCommandProcessor(engine) as processor:
            return await processor.process(signer.sign("ARM", nonce=1))

    outcome = asyncio.run(scenario())

    assert outcome.verification.valid is True
    assert outcome.decision.rejected
    assert outcome.decision.failure is Failure.VALIDATION_ERROR
    assert outcome.features is None
    assert engine.queue.get(outcome.envelope.id).status is LifecycleStatus.REJECTED
    assert engine.safe_mode.mode is SafeMode.HOLD
    assert len(engine.scores) == 0
    assert len(engine.audit.filter(category="VALIDATION_ERROR")) == 1
    assert len(engine.audit.filter(category="DECISION")) == 1


def test_dispatch_loop_requires_running_processor():
    engine, _ = build_engine()
    processor = AsyncCommandProcessor(engine)

    with pytest.raises(RuntimeError):
        asyncio.run(processor._dispatch_loop())
