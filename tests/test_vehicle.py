from datetime import datetime, timedelta, UTC
from unittest import mock

import pytest
import requests

from charge_scheduler.errors import ActuatorAuthError, ActuatorFatalError, ActuatorTransientError
from charge_scheduler.simulate_vehicle import SimulatedVehicle
from charge_scheduler.vehicle import OwnerApiVehicleClient


def response(status=200, body=None):
    r = mock.Mock()
    r.status_code = status
    r.ok = status < 400
    r.url = "https://owner-api.example/api/1/vehicles/42/command"
    r.json.return_value = body if body is not None else {"response": {"result": True, "reason": ""}}
    return r


@pytest.fixture
def session():
    s = mock.Mock()
    s.headers = {}
    return s


@pytest.fixture
def client(session):
    return OwnerApiVehicleClient("token", 42, base_url="https://owner-api.example", voltage=230, phases=1,
                                 wake_timeout=0, session=session)


def test_bearer_token_is_sent(client, session):
    assert session.headers["Authorization"] == "Bearer token"


def test_start_sets_amps_then_starts(client, session):
    session.request.return_value = response()
    client.start_charge(7.36)
    calls = session.request.call_args_list
    assert calls[0] == mock.call("POST", "https://owner-api.example/api/1/vehicles/42/command/set_charging_amps",
                                 timeout=10.0, json={"charging_amps": 32})
    assert calls[1][0][1].endswith("/command/charge_start")


def test_already_charging_counts_as_success(client, session):
    session.request.return_value = response(body={"response": {"result": False, "reason": "is_charging"}})
    client.start_charge(7.0)


def test_charge_complete_is_not_a_start(client, session):
    complete = response(body={"response": {"result": False, "reason": "complete"}})
    session.request.side_effect = [response(), complete, complete]
    with pytest.raises(ActuatorFatalError, match="charge_start rejected by vehicle: complete"):
        client.start_charge(7.0)
    # Stopping a vehicle that has finished is already done
    client.stop_charge()


def test_rejected_command_is_fatal(client, session):
    session.request.return_value = response(body={"response": {"result": False, "reason": "disconnected"}})
    with pytest.raises(ActuatorFatalError, match="disconnected"):
        client.stop_charge()


@pytest.mark.parametrize("status, error", [
    (401, ActuatorAuthError),
    (403, ActuatorAuthError),
    (429, ActuatorTransientError),
    (503, ActuatorTransientError),
    (404, ActuatorFatalError),
])
def test_http_errors_are_classified(client, session, status, error):
    session.request.return_value = response(status)
    with pytest.raises(error):
        client.stop_charge()


def test_connection_errors_are_transient(client, session):
    session.request.side_effect = requests.ConnectionError("reset")
    with pytest.raises(ActuatorTransientError):
        client.get_status()


def test_asleep_vehicle_is_woken(client, session):
    session.request.return_value = response(408)
    session.post.return_value = response(body={"response": {"state": "online"}})
    with pytest.raises(ActuatorTransientError):
        client.stop_charge()
    assert session.post.call_args[0][0].endswith("/42/wake_up")


def test_status_is_parsed(client, session):
    session.request.return_value = response(body={"response": {
        "charging_state": "Charging",
        "charger_power": 7,
        "battery_level": 64,
        "charge_energy_added": 12.5,
    }})
    status = client.get_status()
    assert status.charging
    assert status.rate_kw == 7.0
    assert status.state_of_charge == pytest.approx(0.64)
    assert status.energy_added_kwh == 12.5


def test_simulated_vehicle_charges_with_clock():
    now = [datetime(2024, 1, 1, tzinfo=UTC)]
    vehicle = SimulatedVehicle(capacity_kwh=10, initial_soc=0.5, max_charge_kw=4, efficiency=0.9,
                               clock=lambda: now[0])
    vehicle.start_charge(5)
    assert vehicle.rate_kw == 4
    now[0] += timedelta(hours=1)
    status = vehicle.get_status()
    assert status.state_of_charge == pytest.approx(0.86)
    assert status.energy_added_kwh == pytest.approx(4.0)

    # Full battery stops charging
    now[0] += timedelta(hours=1)
    status = vehicle.get_status()
    assert status.state_of_charge == pytest.approx(1.0)
    assert not status.charging
    assert vehicle.command_calls() == [("start_charge", 5)]
