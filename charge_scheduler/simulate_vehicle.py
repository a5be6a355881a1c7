from collections import deque
from datetime import datetime, UTC

from charge_scheduler.models import VehicleStatus, hours
from charge_scheduler.vehicle import VehicleClient


class SimulatedVehicle(VehicleClient):
    """
    In-memory vehicle for backtests and tests.

    State of charge advances with the simulation clock while charging.

    Parameters
    ----------
    capacity_kwh : float
        Usable battery capacity in kWh.
    initial_soc : float
        Starting state of charge (0-1).
    max_charge_kw : float
        Charger limit; requested rates are clipped to it.
    efficiency : float
        Charging efficiency (0 < efficiency <= 1), applied to energy stored.
    clock : callable
        Returns the current (simulated) time.
    """

    def __init__(self, capacity_kwh=75.0, initial_soc=0.5, max_charge_kw=11.0, efficiency=1.0, clock=None):
        self.capacity_kwh = capacity_kwh
        self.soc = initial_soc
        self.max_charge_kw = max_charge_kw
        self.efficiency = efficiency
        self.clock = clock or (lambda: datetime.now(UTC))
        self.charging = False
        self.rate_kw = 0.0
        self.energy_added_kwh = 0.0
        self.calls = []
        self._failures = deque()
        self._updated_at = None

    def fail_next(self, exc, times=1):
        """Make the next `times` calls raise `exc`."""
        self._failures.extend([exc] * times)

    def _advance(self):
        now = self.clock()
        if self._updated_at is not None and self.charging and now > self._updated_at:
            room = (1.0 - self.soc) * self.capacity_kwh
            stored = hours(now - self._updated_at) * self.rate_kw * self.efficiency
            if stored >= room:
                # Full: the charger stops on its own
                stored = room
                self.soc = 1.0
                self.charging = False
                self.rate_kw = 0.0
            else:
                self.soc += stored / self.capacity_kwh
            self.energy_added_kwh += stored / self.efficiency
        self._updated_at = now

    def _call(self, name, *args):
        self._advance()
        self.calls.append((name,) + args)
        if self._failures:
            raise self._failures.popleft()

    def start_charge(self, rate_kw):
        self._call("start_charge", rate_kw)
        self.charging = True
        self.rate_kw = min(rate_kw, self.max_charge_kw)

    def stop_charge(self):
        self._call("stop_charge")
        self.charging = False
        self.rate_kw = 0.0

    def set_rate(self, rate_kw):
        self._call("set_rate", rate_kw)
        self.rate_kw = min(rate_kw, self.max_charge_kw)

    def get_status(self):
        self._call("get_status")
        return VehicleStatus(
            charging=self.charging,
            rate_kw=self.rate_kw,
            state_of_charge=self.soc,
            energy_added_kwh=self.energy_added_kwh,
        )

    def command_calls(self):
        return [call for call in self.calls if call[0] != "get_status"]
