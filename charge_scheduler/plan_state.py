import enum
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Union

from charge_scheduler.errors import InvalidTransition
from charge_scheduler.models import ChargingConstraints, ENERGY_TOLERANCE_KWH, Plan, hours

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Charging:
    rate_kw: float


@dataclass(frozen=True)
class Stopped:
    pass


@dataclass(frozen=True)
class Faulted:
    reason: str


ActuationState = Union[Idle, Charging, Stopped, Faulted]


def check_transition(current, new):
    """
    Raise InvalidTransition unless `current -> new` is an edge of the actuation state machine.

    Idle -> Charging | Stopped, Charging -> Charging | Stopped,
    Stopped -> Charging | Stopped, any -> Faulted, Faulted -> Idle.
    """
    if isinstance(new, Faulted):
        return
    if isinstance(current, Idle):
        allowed = isinstance(new, (Charging, Stopped, Idle))
    elif isinstance(current, Charging):
        allowed = isinstance(new, (Charging, Stopped))
    elif isinstance(current, Stopped):
        allowed = isinstance(new, (Charging, Stopped))
    elif isinstance(current, Faulted):
        allowed = isinstance(new, Idle)
    else:
        raise InvalidTransition(f"unknown actuation state {current!r}")
    if not allowed:
        raise InvalidTransition(f"{current!r} -> {new!r} is not a valid transition")


class SessionOutcome(enum.Enum):
    MET_TARGET = "met_target"
    DEADLINE_MISSED = "deadline_missed"
    FAULTED = "faulted"


class PlanState:
    """
    The accepted plan of one charging session and its execution progress.

    Only the control loop mutates it. `energy_delivered_kwh` grows only on
    confirmed actuator feedback, integrating the confirmed rate over the time
    since the previous confirmation.
    """

    def __init__(self, constraints: ChargingConstraints, started_at, energy_delivered_kwh=0.0,
                 forecast_version=0):
        self.constraints = constraints
        self.started_at = started_at
        self.plan: Optional[Plan] = None
        self.energy_delivered_kwh = energy_delivered_kwh
        self.last_optimized_at = None
        self.energy_at_plan_kwh = energy_delivered_kwh
        self.forecast_version = forecast_version
        self.actuation_state: ActuationState = Idle()
        self.last_confirmed_at = None
        # Vehicle's own energy counter at the last status query
        self.vehicle_energy_kwh: Optional[float] = None
        self.outcome: Optional[SessionOutcome] = None
        self.infeasible = False
        self._lock = threading.Lock()

    @property
    def energy_remaining_kwh(self):
        return max(0.0, self.constraints.energy_required_kwh - self.energy_delivered_kwh)

    @property
    def target_met(self):
        return self.energy_delivered_kwh >= self.constraints.energy_required_kwh - ENERGY_TOLERANCE_KWH

    @property
    def charging_rate_kw(self):
        if isinstance(self.actuation_state, Charging):
            return self.actuation_state.rate_kw
        return 0.0

    @property
    def finished(self):
        return self.outcome is not None

    def replace_plan(self, plan, now):
        with self._lock:
            self.plan = plan
            self.last_optimized_at = now
            self.energy_at_plan_kwh = self.energy_delivered_kwh
            self.forecast_version = plan.forecast_version
            self.infeasible = plan.infeasible

    def accrue(self, now):
        """Count energy delivered at the confirmed rate since the last confirmation."""
        with self._lock:
            if self.last_confirmed_at is not None and now > self.last_confirmed_at:
                elapsed = now - self.last_confirmed_at
                self.energy_delivered_kwh += hours(elapsed) * self.charging_rate_kw
            if self.last_confirmed_at is None or now > self.last_confirmed_at:
                self.last_confirmed_at = now
        return self.energy_delivered_kwh

    def reconcile(self, vehicle_energy_kwh, now):
        """
        Credit what the vehicle's energy counter gained since the last recorded reading.

        Used after a restart, when no confirmed rate covers the time the
        process was down. Returns False, crediting nothing, when either
        reading is missing or the counter went backwards (a new plug-in).
        """
        with self._lock:
            previous = self.vehicle_energy_kwh
            if vehicle_energy_kwh is None or previous is None or vehicle_energy_kwh < previous:
                return False
            self.energy_delivered_kwh += vehicle_energy_kwh - previous
            self.vehicle_energy_kwh = vehicle_energy_kwh
            self.last_confirmed_at = now
        return True

    def confirm(self, new_state, now):
        """Apply a confirmed actuation, accruing energy for the period that just ended."""
        check_transition(self.actuation_state, new_state)
        self.accrue(now)
        if new_state != self.actuation_state:
            logger.info("Actuation state %s -> %s", self.actuation_state, new_state)
        self.actuation_state = new_state

    def fault(self, reason, now):
        self.confirm(Faulted(reason), now)

    def reset_fault(self, now):
        if not isinstance(self.actuation_state, Faulted):
            return False
        self.confirm(Idle(), now)
        return True

    def finish(self, outcome):
        if self.outcome is None:
            self.outcome = outcome
