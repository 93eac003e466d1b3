from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from aegis.audit import AuditLog
from aegis.crypto import VerificationResult
from aegis.failsafe import DwellTimer, SafeMode, SafeModeMachine
from aegis.fusion import decide
from aegis.scoring import TrustScore
from aegis.state import CommandKind, Failure, ManualClock, Severity, VehicleState

DWELL = 10.0


class Harness:
    def __init__(self) -> None:
        self.clock = ManualClock()
        self.audit = AuditLog()
        self.vehicle = VehicleState(updated_at=self.clock.now())
        self.machine = SafeModeMachine(
            vehicle=self.vehicle,
            audit=self.audit,
            dwell_seconds=DWELL,
            started_at=self.clock.now(),
        )

    def reject(self, trust: float, failure: Failure | None = None):
        verification = VerificationResult(valid=failure is None, failure=failure)
        decision = decide(verification, TrustScore(value=trust))
        return self.machine.evaluate(decision, self.clock.now())

    def entries(self):
        return self.audit.filter(category="SAFE_MODE")


def test_escalates_hold_to_return_to_launch():
    harness = Harness()

    first = harness.reject(-0.3)
    second = harness.reject(-0.3)
    third = harness.reject(-0.6)

    assert first.current.mode is SafeMode.HOLD
    assert first.trigger == "rejection"
    assert second is None
    assert third.current.mode is SafeMode.RETURN_TO_LAUNCH
    assert third.escalation is True
    assert harness.machine.mode is SafeMode.RETURN_TO_LAUNCH
    assert harness.vehicle.flight_mode == "RTL"
    assert len(harness.entries()) == 2


def test_recovers_only_after_full_dwell():
    harness = Harness()
    harness.reject(-0.3)

    harness.clock.advance(DWELL - 0.1)
    assert harness.machine.poll(harness.clock.now()) is None
    assert harness.machine.mode is SafeMode.HOLD

    harness.clock.advance(0.1)
    transition = harness.machine.poll(harness.clock.now())

    assert transition.trigger == "recovery"
    assert harness.machine.mode is SafeMode.NOMINAL
    assert [event.category for event in harness.audit.recent()][-1] == "SAFE_MODE_CLEARED"


def test_rejection_restarts_dwell_without_relogging():
    harness = Harness()
    harness.reject(-0.3)

    harness.clock.advance(6)
    assert harness.reject(-0.2) is None
    harness.clock.advance(5)
    assert harness.machine.poll(harness.clock.now()) is None

    harness.clock.advance(5)
    assert harness.machine.poll(harness.clock.now()) is not None
    assert len(harness.entries()) == 1


def test_return_to_launch_never_downgrades():
    harness = Harness()
    harness.reject(-0.8)

    assert harness.reject(-0.1) is None
    assert harness.machine.mode is SafeMode.RETURN_TO_LAUNCH


@pytest.mark.parametrize(
    "failure, expected",
    [
        (Failure.INTEGRITY_FAILURE, SafeMode.RETURN_TO_LAUNCH),
        (Failure.UNKNOWN_KEY, SafeMode.RETURN_TO_LAUNCH),
        (Failure.REPLAYED_NONCE, SafeMode.HOLD),
        (Failure.VALIDATION_TIMEOUT, SafeMode.HOLD),
        (Failure.VALIDATION_ERROR, SafeMode.HOLD),
    ],
)
def test_crypto_failures_classify_by_severity(failure, expected):
    harness = Harness()
    harness.reject(0.9, failure)
    assert harness.machine.mode is expected


def test_scoring_timeout_holds():
    harness = Harness()
    decision = decide(VerificationResult(valid=True), TrustScore.timed_out())

    harness.machine.evaluate(decision, harness.clock.now())

    assert harness.machine.mode is SafeMode.HOLD


def test_entry_severity_matches_mode():
    hold = Harness()
    hold.reject(-0.3)
    rtl = Harness()
    rtl.reject(-0.9)

    assert hold.entries()[0].severity is Severity.WARNING
    assert hold.entries()[0].message.startswith("Hold Position")
    assert rtl.entries()[0].severity is Severity.ERROR
    assert rtl.entries()[0].message.startswith("Return to Launch")


def test_stale_generation_is_ignored():
    harness = Harness()
    harness.reject(-0.3)
    stale = harness.machine.timer.generation

    harness.clock.advance(4)
    harness.reject(-0.3)
    harness.clock.advance(DWELL - 4)

    assert harness.machine.fire(stale, harness.clock.now()) is None
    assert harness.machine.mode is SafeMode.HOLD

    harness.clock.advance(4)
    transition = harness.machine.fire(harness.machine.timer.generation, harness.clock.now())
    assert transition is not None
    assert harness.machine.mode is SafeMode.NOMINAL


def test_override_masks_accepted_modes_until_recovery():
    harness = Harness()
    harness.vehicle.apply(CommandKind.GOTO, {"latitude": 1.0, "longitude": 2.0, "altitude": 30.0}, harness.clock.now())
    harness.reject(-0.3)
    assert harness.vehicle.flight_mode == "HOLD"

    harness.vehicle.apply(CommandKind.LAND, {}, harness.clock.now())
    assert harness.vehicle.flight_mode == "HOLD"

    harness.clock.advance(DWELL)
    harness.machine.poll(harness.clock.now())
    assert harness.vehicle.flight_mode == "LAND"


def test_accepted_decisions_leave_state_alone():
    harness = Harness()

    result = harness.machine.evaluate(decide(VerificationResult(valid=True), TrustScore(value=0.4)), harness.clock.now())

    assert result is None
    assert harness.machine.mode is SafeMode.NOMINAL
    assert harness.machine.timer.active is False


def test_reset_returns_to_nominal():
    harness = Harness()
    harness.reject(-0.9)

    harness.machine.reset(harness.clock.now())

    assert harness.machine.mode is SafeMode.NOMINAL
    assert harness.machine.timer.active is False
    assert harness.vehicle.flight_mode == "STABILIZE"


def test_dwell_timer_generations():
    timer = DwellTimer(2.0)
    clock = ManualClock()

    first = timer.restart(clock.now())
    second = timer.restart(clock.now())
    timer.cancel()

    assert second == first + 1
    assert timer.generation == second + 1
    assert timer.remaining(clock.now()) is None
    with pytest.raises(ValueError):
        DwellTimer(0)
