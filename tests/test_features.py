from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from aegis.audit import AuditLog
from aegis.config import EngineSettings
from aegis.envelope import CommandQueue
from aegis.features import CommandHistory, FeatureExtractor, features_from_values, haversine_m
from aegis.state import CommandKind, ManualClock, VehicleState

HOME = (37.7749, -122.4194)


class Harness:
    def __init__(self, **overrides) -> None:
        self.clock = ManualClock()
        self.settings = EngineSettings(**overrides)
        self.vehicle = VehicleState(updated_at=self.clock.now())
        self.history = CommandHistory(started_at=self.clock.now())
        self.queue = CommandQueue(audit=AuditLog(), clock=self.clock)
        self.extractor = FeatureExtractor(self.settings)

    def submit(self, kind: str, after: float = 1.0, **params):
        self.clock.advance(after)
        envelope = self.queue.submit({"kind": kind, "parameters": params, "nonce": 0})
        self.history.record(envelope)
        return envelope

    def extract(self, envelope):
        return self.extractor.extract(envelope, self.vehicle.snapshot(), self.history)


def test_nominal_goto_has_no_anomalies():
    harness = Harness()
    envelope = harness.submit("GOTO", after=30, lat=37.7750, lon=-122.4195, alt=50)

    vector = harness.extract(envelope)

    assert vector.names == (
        "position_delta",
        "altitude_delta",
        "target_altitude",
        "implied_velocity",
        "time_since_last_command",
        "mode_transitions",
    )
    assert vector.anomalous() == ()
    assert vector.physical_limit_exceeded is False
    assert vector["altitude_delta"].value == 50.0
    assert vector["mode_transitions"].value == 1.0
    assert 10 < vector["position_delta"].value < 20


def test_high_altitude_goto_trips_hard_limits():
    harness = Harness()
    envelope = harness.submit("GOTO", after=5, lat=37.7750, lon=-122.4195, alt=500)

    vector = harness.extract(envelope)

    hard = {feature.name for feature in vector.hard_violations()}
    assert hard == {"target_altitude", "implied_velocity"}
    assert vector.physical_limit_exceeded is True
    assert vector.dominant().name == "implied_velocity"


def test_fast_lateral_jump_exceeds_velocity_only():
    harness = Harness()
    envelope = harness.submit("GOTO", after=1, lat=HOME[0] + 0.009, lon=HOME[1], alt=20)

    vector = harness.extract(envelope)

    assert vector["implied_velocity"].hard_limit is True
    assert vector["implied_velocity"].value > 900
    assert vector["position_delta"].anomalous is False
    assert vector["target_altitude"].hard_limit is False


def test_set_velocity_uses_requested_speed():
    harness = Harness()

    slow = harness.extract(harness.submit("SET_VELOCITY", speed=8))
    fast = harness.extract(harness.submit("SET_VELOCITY", speed=35))

    assert slow["implied_velocity"].value == 8.0
    assert slow.physical_limit_exceeded is False
    assert fast["implied_velocity"].hard_limit is True


def test_elapsed_time_is_floored():
    harness = Harness(min_elapsed_s=0.5)
    envelope = harness.submit("TAKEOFF", after=0.01, alt=5)

    vector = harness.extract(envelope)

    assert vector["implied_velocity"].value == 10.0


def test_takeoff_defaults_to_configured_altitude():
    harness = Harness()
    vector = harness.extract(harness.submit("TAKEOFF", after=10))
    assert vector["target_altitude"].value == 10.0


def test_command_burst_is_flagged():
    harness = Harness()
    first = harness.submit("ARM", after=1)
    second = harness.submit("DISARM", after=0.05)

    assert harness.extract(first)["time_since_last_command"].anomalous is False
    burst = harness.extract(second)["time_since_last_command"]
    assert burst.anomalous is True
    assert burst.lower_bound is True


def test_later_commands_are_invisible_to_earlier_ones():
    harness = Harness()
    first = harness.submit("ARM", after=1)
    before = harness.extract(first)

    harness.submit("DISARM", after=0.01)
    harness.submit("ARM", after=0.01)

    assert harness.extract(first) == before


def test_rapid_mode_changes_are_flagged():
    harness = Harness()
    for mode in ("LOITER", "GUIDED", "AUTO", "ALT_HOLD"):
        harness.clock.advance(2)
        harness.vehicle.apply(CommandKind.SET_MODE, {"mode": mode}, harness.clock.now())

    vector = harness.extract(harness.submit("SET_MODE", after=2, mode="POSHOLD"))

    assert vector["mode_transitions"].value == 5.0
    assert vector["mode_transitions"].anomalous is True


def test_mode_changes_outside_window_are_forgotten():
    harness = Harness(mode_window_s=5)
    for mode in ("LOITER", "GUIDED", "AUTO", "ALT_HOLD"):
        harness.clock.advance(2)
        harness.vehicle.apply(CommandKind.SET_MODE, {"mode": mode}, harness.clock.now())

    vector = harness.extract(harness.submit("SET_MODE", after=30, mode="POSHOLD"))

    assert vector["mode_transitions"].value == 1.0
    assert vector["mode_transitions"].anomalous is False


def test_unexpected_displacement_is_flagged_by_zscore():
    harness = Harness()
    for index, delta in enumerate((10.0, 12.0, 11.0, 13.0, 9.0, 10.0)):
        harness.extractor.observe(
            features_from_values(
                f"seed-{index}", CommandKind.GOTO, [("position_delta", delta, 2000.0, False, False)]
            )
        )

    far = harness.extract(harness.submit("GOTO", after=60, lat=HOME[0] + 0.0072, lon=HOME[1], alt=0))
    near = harness.extract(harness.submit("GOTO", after=60, lat=HOME[0] + 0.0009, lon=HOME[1], alt=0))

    assert far["position_delta"].anomalous is True
    assert far["position_delta"].z_score > 3
    assert far.physical_limit_exceeded is False
    # large z but well inside the bound
    assert near["position_delta"].z_score > 3
    assert near["position_delta"].anomalous is False


def test_expectations_are_tracked_per_kind():
    harness = Harness()
    for index in range(6):
        harness.extractor.observe(
            features_from_values(
                f"seed-{index}", CommandKind.TAKEOFF, [("position_delta", float(index), 2000.0, False, False)]
            )
        )

    vector = harness.extract(harness.submit("GOTO", after=60, lat=HOME[0] + 0.0072, lon=HOME[1], alt=0))

    assert vector["position_delta"].z_score == 0.0


def test_haversine_matches_known_distance():
    distance = haversine_m(HOME[0], HOME[1], HOME[0] + 1.0, HOME[1])
    assert 111_000 < distance < 111_400
    assert haversine_m(*HOME, *HOME) == 0.0
