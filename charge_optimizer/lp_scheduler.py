import logging

import pandas as pd
import pulp

from charge_scheduler.greedy_scheduler import DEFAULT_SLOT_WIDTH, build_slots

logger = logging.getLogger(__name__)


def lp_schedule(forecast, constraints, now, energy_required_kwh=None, slot_width=DEFAULT_SLOT_WIDTH):
    """
    Compute the emission-minimal charging schedule with linear programming.

    Reference formulation for checking the greedy optimizer offline; the
    control loop never calls it.

    Parameters
    ----------
    forecast : sequence of EmissionsSample
        Forecast emissions curve.
    constraints : ChargingConstraints
        Deadline and rate limits. `min_rate_kw` and `min_interval_duration`
        are not modelled (they would need integer variables).
    now : datetime
        Start of the horizon.
    energy_required_kwh : float, optional
        Energy to deliver, defaults to `constraints.energy_required_kwh`.
    slot_width : timedelta
        Slot length, as for the greedy optimizer.

    Returns
    -------
    status : str
        pulp status, "Optimal" or "Infeasible".
    objective : float or None
        Total emissions of the schedule (g).
    pd.DataFrame
        One row per slot (indexed by slot start) with columns:
        - end, hours, rate: slot bounds and assumed emissions rate (g/kWh)
        - charge_kw: charging power in the slot
    """
    if energy_required_kwh is None:
        energy_required_kwh = constraints.energy_required_kwh
    slots = build_slots(forecast, now, constraints.deadline, slot_width)
    n = len(slots)

    # Variables
    charge = pulp.LpVariable.dicts("charge", range(n), lowBound=0, upBound=constraints.max_rate_kw)

    # Problem
    prob = pulp.LpProblem("ChargeSchedule", pulp.LpMinimize)

    # Objective: emissions of the energy drawn in each slot
    prob += pulp.lpSum([
        charge[t] * slots["hours"].iloc[t] * slots["rate"].iloc[t]
        for t in range(n)
    ])

    # Deliver exactly the required energy
    prob += pulp.lpSum([charge[t] * slots["hours"].iloc[t] for t in range(n)]) == energy_required_kwh

    prob.solve(pulp.PULP_CBC_CMD(msg=False))
    status = pulp.LpStatus[prob.status]
    objective = pulp.value(prob.objective) if status == "Optimal" else None
    logger.debug("LP status %s, objective %s", status, objective)

    results = slots.set_index("start")
    results["charge_kw"] = [pulp.value(charge[t]) or 0.0 for t in range(n)]
    return status, objective, results


def schedule_emissions(results):
    """Emissions (g) of an LP result frame."""
    return float((results["charge_kw"] * results["hours"] * results["rate"]).sum())


def schedule_energy(results):
    return float((results["charge_kw"] * results["hours"]).sum())


def to_frame(plan):
    """A greedy Plan in the same slot layout as an LP result, for side-by-side comparison."""
    rows = []
    for start, end, rate in plan.slot_rates:
        h = (end - start).total_seconds() / 3600
        rows.append({"start": start, "end": end, "hours": h, "rate": rate,
                     "charge_kw": plan.energy_between(start, end) / h})
    return pd.DataFrame(rows).set_index("start")
