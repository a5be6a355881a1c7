from datetime import datetime, UTC

import pytest

from charge_scheduler.actuator import Actuator, AdjustRate, NoOp, StartCharging, StopCharging
from charge_scheduler.backoff import BackoffPolicy
from charge_scheduler.errors import (ActuatorAuthError, ActuatorFatalError, ActuatorTransientError)
from charge_scheduler.observability import RecordingSink
from charge_scheduler.plan_state import Charging, Stopped
from charge_scheduler.simulate_vehicle import SimulatedVehicle

T0 = datetime(2024, 6, 1, 22, tzinfo=UTC)


@pytest.fixture
def vehicle():
    return SimulatedVehicle(capacity_kwh=60, initial_soc=0.2, max_charge_kw=11, clock=lambda: T0)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def actuator(vehicle, sink):
    sleeps = []
    actuator = Actuator(vehicle, BackoffPolicy(max_attempts=3, base_delay=1, max_delay=2), sink,
                        clock=lambda: T0, sleep=sleeps.append)
    actuator.sleeps = sleeps
    return actuator


def test_backoff_delays():
    policy = BackoffPolicy(max_attempts=6, base_delay=1, max_delay=5)
    assert [policy.delay(n) for n in range(1, 6)] == [1, 2, 4, 5, 5]


def test_backoff_stops_on_non_retryable():
    calls = []

    def fn():
        calls.append(1)
        raise ActuatorAuthError("401")

    with pytest.raises(ActuatorAuthError) as err:
        BackoffPolicy(max_attempts=5, base_delay=0).call(fn, sleep=lambda s: None)
    assert len(calls) == 1
    assert err.value.attempts == 1


def test_backoff_logs_each_retry(caplog):
    attempts = []

    def fn():
        attempts.append(1)
        if len(attempts) < 3:
            raise ActuatorTransientError("timeout")
        return "ok"

    sleeps = []
    with caplog.at_level("WARNING", logger="charge_scheduler.backoff"):
        assert BackoffPolicy(max_attempts=3, base_delay=1).call(fn, sleep=sleeps.append) == ("ok", 3)
    assert sleeps == [1, 2]
    assert [r.getMessage().startswith("Attempt") for r in caplog.records] == [True, True]


def test_start_confirms_charging(actuator, vehicle, sink):
    confirmation = actuator.apply(StartCharging(7.2))
    assert confirmation.new_state == Charging(7.2)
    assert confirmation.attempts == 1
    assert vehicle.charging and vehicle.rate_kw == 7.2
    assert sink.calls[-1]["outcome"] == "ok"


def test_repeated_decision_calls_vehicle_once(actuator, vehicle, sink):
    actuator.apply(StartCharging(7.2))
    second = actuator.apply(StartCharging(7.2))
    third = actuator.apply(AdjustRate(7.2))
    assert second.skipped and third.skipped
    assert vehicle.command_calls() == [("start_charge", 7.2)]
    assert [c["outcome"] for c in sink.calls] == ["ok", "skipped", "skipped"]

    actuator.apply(StopCharging())
    actuator.apply(StopCharging())
    assert vehicle.command_calls()[-1] == ("stop_charge",)
    assert len(vehicle.command_calls()) == 2


def test_rate_change_is_sent(actuator, vehicle):
    actuator.apply(StartCharging(7.2))
    confirmation = actuator.apply(AdjustRate(3.6))
    assert confirmation.new_state == Charging(3.6)
    assert vehicle.rate_kw == 3.6


def test_transient_errors_are_retried(actuator, vehicle):
    vehicle.fail_next(ActuatorTransientError("timeout"), times=2)
    confirmation = actuator.apply(StartCharging(7.2))
    assert confirmation.attempts == 3
    assert actuator.sleeps == [1, 2]
    assert vehicle.charging


def test_transient_errors_exhaust_retries(actuator, vehicle, sink):
    vehicle.fail_next(ActuatorTransientError("timeout"), times=3)
    with pytest.raises(ActuatorTransientError) as err:
        actuator.apply(StartCharging(7.2))
    assert err.value.attempts == 3
    assert actuator.confirmed is None
    assert sink.calls[-1]["outcome"] == "failed: ActuatorTransientError"


def test_auth_error_is_not_retried(actuator, vehicle):
    vehicle.fail_next(ActuatorAuthError("token expired"))
    with pytest.raises(ActuatorAuthError):
        actuator.apply(StopCharging())
    assert actuator.sleeps == []
    assert len(vehicle.command_calls()) == 1


def test_unexpected_error_becomes_fatal(actuator, vehicle):
    vehicle.fail_next(RuntimeError("boom"))
    with pytest.raises(ActuatorFatalError):
        actuator.apply(StartCharging(3.0))


def test_noop_never_calls_vehicle(actuator, vehicle):
    confirmation = actuator.apply(NoOp("holding"))
    assert confirmation.new_state is None
    assert vehicle.calls == []


def test_status_reconciles_confirmed_state(actuator, vehicle):
    actuator.apply(StartCharging(7.2))
    vehicle.charging = False
    status = actuator.status()
    assert not status.charging
    assert actuator.confirmed == Stopped()
    # After an external stop the next start must go out
    actuator.apply(StartCharging(7.2))
    assert vehicle.command_calls()[-1] == ("start_charge", 7.2)


def test_latency_histogram(actuator, sink):
    actuator.apply(StartCharging(7.2))
    actuator.apply(StartCharging(7.2))
    histogram = sink.latency_histogram()
    assert histogram.sum() == 1
    assert histogram.iloc[0] == 1
