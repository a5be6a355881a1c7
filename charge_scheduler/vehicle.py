import abc
import logging
import time

import requests

from charge_scheduler.errors import ActuatorAuthError, ActuatorFatalError, ActuatorTransientError
from charge_scheduler.models import VehicleStatus

logger = logging.getLogger(__name__)

OWNER_API_URL = "https://owner-api.teslamotors.com"

# Command "failures" that mean the vehicle is already in the requested state.
# On charge_start, "complete" means the charge limit is reached.
ALREADY_DONE_REASONS = {
    "charge_start": {"is_charging"},
    "charge_stop": {"not_charging", "complete"},
    "set_charging_amps": {"already_set"},
}


class VehicleClient(abc.ABC):
    """Commands and status of one vehicle."""

    @abc.abstractmethod
    def start_charge(self, rate_kw):
        ...

    @abc.abstractmethod
    def stop_charge(self):
        ...

    @abc.abstractmethod
    def set_rate(self, rate_kw):
        ...

    @abc.abstractmethod
    def get_status(self) -> VehicleStatus:
        ...


def classify_http_error(response):
    """Map a failed HTTP response onto the actuator error taxonomy."""
    message = f"HTTP {response.status_code} from {response.url}"
    if response.status_code in (401, 403):
        return ActuatorAuthError(message)
    if response.status_code in (408, 429) or response.status_code >= 500:
        return ActuatorTransientError(message)
    return ActuatorFatalError(message)


class OwnerApiVehicleClient(VehicleClient):
    """
    Vehicle commands over the Tesla owner API.

    Parameters
    ----------
    access_token : str
        Bearer token for the owner API.
    vehicle_id : int or str
        Id of the vehicle (the `id` field of /api/1/vehicles).
    voltage : float
        Supply voltage used to convert kW into charging amps.
    phases : int
        Number of supply phases.
    timeout : float
        Per-request timeout in seconds.
    wake_timeout : float
        Maximum seconds spent waking a sleeping vehicle.
    """

    def __init__(self, access_token, vehicle_id, base_url=OWNER_API_URL, voltage=240.0, phases=1,
                 timeout=10.0, wake_timeout=60.0, session=None):
        self.vehicle_id = vehicle_id
        self.base_url = base_url.rstrip("/")
        self.voltage = voltage
        self.phases = phases
        self.timeout = timeout
        self.wake_timeout = wake_timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "User-Agent": "ev-charge-scheduler",
        })

    def _url(self, path):
        return f"{self.base_url}/api/1/vehicles/{self.vehicle_id}/{path}"

    def _request(self, method, path, **kwargs):
        try:
            r = self.session.request(method, self._url(path), timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise ActuatorTransientError(f"{method} {path} failed: {e}") from e
        if r.status_code == 408:
            # Vehicle asleep: wake it so the retry can get through.
            self.wake()
            raise ActuatorTransientError(f"{method} {path}: vehicle unavailable")
        if not r.ok:
            raise classify_http_error(r)
        try:
            return r.json()["response"]
        except (ValueError, KeyError) as e:
            raise ActuatorTransientError(f"{method} {path}: malformed response") from e

    def _command(self, name, **payload):
        response = self._request("POST", f"command/{name}", json=payload or None)
        if response.get("result"):
            return response
        reason = response.get("reason", "")
        if reason in ALREADY_DONE_REASONS.get(name, ()):
            logger.debug("%s: vehicle already in requested state (%s)", name, reason)
            return response
        raise ActuatorFatalError(f"{name} rejected by vehicle: {reason or 'no reason given'}")

    def wake(self):
        """Wake the vehicle, returning once it reports online."""
        wait = 1.0
        deadline = time.monotonic() + self.wake_timeout
        while True:
            try:
                r = self.session.post(self._url("wake_up"), timeout=self.timeout)
                if r.ok and r.json()["response"]["state"] == "online":
                    logger.debug("Vehicle %s is awake", self.vehicle_id)
                    return
            except (requests.RequestException, ValueError, KeyError) as e:
                logger.debug("Wake request failed: %s", e)
            if time.monotonic() + wait > deadline:
                raise ActuatorTransientError(f"vehicle {self.vehicle_id} did not wake within {self.wake_timeout}s")
            logger.debug("Vehicle asleep, waiting %.0fs", wait)
            time.sleep(wait)
            wait += wait

    def rate_to_amps(self, rate_kw):
        return max(1, round(rate_kw * 1000 / (self.voltage * self.phases)))

    def set_rate(self, rate_kw):
        return self._command("set_charging_amps", charging_amps=self.rate_to_amps(rate_kw))

    def start_charge(self, rate_kw):
        self.set_rate(rate_kw)
        return self._command("charge_start")

    def stop_charge(self):
        return self._command("charge_stop")

    def get_status(self):
        state = self._request("GET", "data_request/charge_state")
        if state is None:
            raise ActuatorTransientError("null charge_state response")
        return VehicleStatus(
            charging=state.get("charging_state") == "Charging",
            rate_kw=float(state.get("charger_power") or 0.0),
            state_of_charge=float(state.get("battery_level", 0)) / 100,
            energy_added_kwh=state.get("charge_energy_added"),
            extra={"charging_state": state.get("charging_state")},
        )
