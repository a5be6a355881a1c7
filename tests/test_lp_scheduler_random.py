import random
from datetime import datetime, timedelta, UTC

import pytest

from charge_optimizer.lp_scheduler import lp_schedule, schedule_emissions, schedule_energy, to_frame
from charge_scheduler.greedy_scheduler import optimize_schedule
from charge_scheduler.models import ChargingConstraints, EmissionsSample


@pytest.mark.parametrize("seed", list(range(30)))
def test_greedy_matches_lp(seed):
    random.seed(seed)

    # --- Randomize parameters ---
    n = random.randint(8, 48)  # between 4h and 24h of half-hourly samples
    start = datetime(2025, 1, 1, tzinfo=UTC)
    forecast = [
        EmissionsSample(start + i * timedelta(minutes=30), random.uniform(50, 400))
        for i in range(n)
    ]
    horizon = timedelta(minutes=30) * n
    max_rate_kw = random.uniform(1.4, 11)
    capacity = max_rate_kw * horizon.total_seconds() / 3600
    energy = random.uniform(0.05, 1.0) * capacity

    constraints = ChargingConstraints(start + horizon, energy, max_rate_kw)

    # --- Run both optimizers ---
    status, objective, results = lp_schedule(forecast, constraints, start)
    plan = optimize_schedule(forecast, constraints, start)
    greedy = to_frame(plan)

    print("Seed:", seed)
    print("max_rate_kw:", max_rate_kw)
    print("energy:", energy)
    print(results.assign(greedy_kw=greedy["charge_kw"]))

    # --- Assertions ---
    assert status == "Optimal"
    assert schedule_energy(results) == pytest.approx(energy, rel=1e-6)
    assert schedule_energy(greedy) == pytest.approx(energy, rel=1e-6)
    assert (results["charge_kw"] <= max_rate_kw + 1e-6).all()
    assert (greedy["charge_kw"] <= max_rate_kw + 1e-6).all()
    # Fractional knapsack: filling cheapest first is optimal
    assert schedule_emissions(greedy) == pytest.approx(objective, rel=1e-5)
    assert plan.expected_emissions_g == pytest.approx(objective, rel=1e-5)


def test_lp_reports_infeasible():
    start = datetime(2025, 1, 1, tzinfo=UTC)
    forecast = [EmissionsSample(start, 100.0)]
    constraints = ChargingConstraints(start + timedelta(hours=2), 50.0, 7.0)
    status, objective, _ = lp_schedule(forecast, constraints, start)
    assert status == "Infeasible"
    assert objective is None
