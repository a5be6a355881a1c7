import json
import logging
import os
import tempfile
from datetime import datetime, timedelta

from charge_scheduler.models import ChargingConstraints
from charge_scheduler.plan_state import Charging, Faulted, Idle, PlanState, SessionOutcome, Stopped

logger = logging.getLogger(__name__)


def _constraints_to_dict(c):
    return {
        "deadline": c.deadline.isoformat(),
        "energy_required_kwh": c.energy_required_kwh,
        "max_rate_kw": c.max_rate_kw,
        "min_rate_kw": c.min_rate_kw,
        "min_interval_s": c.min_interval_duration.total_seconds(),
    }


def _constraints_from_dict(d):
    return ChargingConstraints(
        deadline=datetime.fromisoformat(d["deadline"]),
        energy_required_kwh=d["energy_required_kwh"],
        max_rate_kw=d["max_rate_kw"],
        min_rate_kw=d["min_rate_kw"],
        min_interval_duration=timedelta(seconds=d["min_interval_s"]),
    )


def _actuation_to_dict(state):
    if isinstance(state, Charging):
        return {"state": "charging", "rate_kw": state.rate_kw}
    if isinstance(state, Stopped):
        return {"state": "stopped"}
    if isinstance(state, Faulted):
        return {"state": "faulted", "reason": state.reason}
    return {"state": "idle"}


def _actuation_from_dict(d):
    kind = d.get("state") if d else None
    if kind == "charging":
        return Charging(d["rate_kw"])
    if kind == "stopped":
        return Stopped()
    if kind == "faulted":
        # Restarting the process is the external intervention a fault waits for
        logger.warning("Saved session was faulted (%s), restarting from idle", d.get("reason"))
    return Idle()


class SessionStore:
    """
    Keeps the part of a PlanState that must survive a restart in a JSON file.

    The plan itself is saved for inspection only: a restored session always
    re-plans from the persisted energy. The confirmed actuation state, the
    time of the last confirmation and the vehicle's energy counter are kept
    so the first status query after a restart can account for the energy the
    vehicle took while the process was down.
    """

    def __init__(self, path):
        self.path = path

    def save(self, state):
        record = {
            "constraints": _constraints_to_dict(state.constraints),
            "started_at": state.started_at.isoformat(),
            "energy_delivered_kwh": state.energy_delivered_kwh,
            "actuation_state": _actuation_to_dict(state.actuation_state),
            "last_confirmed_at": state.last_confirmed_at.isoformat() if state.last_confirmed_at else None,
            "vehicle_energy_kwh": state.vehicle_energy_kwh,
            "forecast_version": state.forecast_version,
            "last_optimized_at": state.last_optimized_at.isoformat() if state.last_optimized_at else None,
            "outcome": state.outcome.value if state.outcome else None,
            "infeasible": state.infeasible,
            "plan": [
                {"start": i.start.isoformat(), "end": i.end.isoformat(), "rate_kw": i.rate_kw}
                for i in (state.plan.intervals if state.plan else ())
            ],
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        # Write then rename so a crash never leaves a truncated file.
        with tempfile.NamedTemporaryFile("w", dir=directory, delete=False, suffix=".tmp") as f:
            json.dump(record, f, indent=2)
            tmp = f.name
        os.replace(tmp, self.path)

    def load(self):
        """Return the saved PlanState, or None if there is no saved session."""
        if not os.path.exists(self.path):
            return None
        with open(self.path) as f:
            record = json.load(f)
        state = PlanState(
            _constraints_from_dict(record["constraints"]),
            started_at=datetime.fromisoformat(record["started_at"]),
            energy_delivered_kwh=record["energy_delivered_kwh"],
            forecast_version=record["forecast_version"],
        )
        if record.get("outcome"):
            state.outcome = SessionOutcome(record["outcome"])
        state.infeasible = record.get("infeasible", False)
        state.actuation_state = _actuation_from_dict(record.get("actuation_state"))
        if record.get("last_confirmed_at"):
            state.last_confirmed_at = datetime.fromisoformat(record["last_confirmed_at"])
        state.vehicle_energy_kwh = record.get("vehicle_energy_kwh")
        logger.info("Restored session: %.3f of %.3f kWh delivered", state.energy_delivered_kwh,
                    state.constraints.energy_required_kwh)
        return state

    def resume(self, constraints):
        """
        The saved session if it is still running for the same deadline and rates, else None.

        The saved energy target wins over `constraints`: a target derived from
        state of charge would otherwise shrink by what was already delivered.
        """
        state = self.load()
        if state is None or state.finished:
            return None
        saved = state.constraints
        if (saved.deadline, saved.max_rate_kw, saved.min_rate_kw) != (
                constraints.deadline, constraints.max_rate_kw, constraints.min_rate_kw):
            logger.info("Saved session has different constraints, starting a new one")
            return None
        return state

    def clear(self):
        if os.path.exists(self.path):
            os.remove(self.path)
