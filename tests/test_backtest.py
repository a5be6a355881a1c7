from datetime import datetime, timedelta, UTC

import pandas as pd
import pytest

from charge_optimizer import results_analysis as analysis
from charge_optimizer.backtest import run_backtest
from charge_scheduler.control_loop import ControlSettings
from charge_scheduler.greedy_scheduler import optimize_schedule
from charge_scheduler.models import ChargingConstraints

T0 = datetime(2024, 3, 1, 18, tzinfo=UTC)


@pytest.fixture
def signals():
    index = pd.date_range(T0, periods=24, freq="30min", name="time")
    rates = [300.0] * 4 + [100.0] * 8 + [300.0] * 12
    return pd.DataFrame({"forecast": rates, "actual": rates}, index=index)


@pytest.fixture
def constraints():
    return ChargingConstraints(T0 + timedelta(hours=12), 7.2, 7.2)


def test_backtest_meets_target_in_clean_window(signals, constraints):
    records, summary = run_backtest(signals, constraints, T0, capacity_kwh=75, initial_soc=0.3)

    assert summary["outcome"] == "met_target"
    assert summary["energy_kwh"] == pytest.approx(7.2)
    assert summary["immediate_emissions_g"] == pytest.approx(2160)
    assert summary["emissions_g"] == pytest.approx(summary["oracle_emissions_g"])
    assert summary["emissions_g"] < summary["immediate_emissions_g"]
    assert summary["replans"] >= 1

    charging = records[records["charging"]]
    assert charging.index.min() >= T0 + timedelta(hours=2)
    assert (charging["intensity"] == 100).all()
    assert records["soc"].iloc[-1] == pytest.approx(0.3 + 7.2 / 75)


def test_backtest_with_unreachable_target(signals):
    constraints = ChargingConstraints(T0 + timedelta(hours=1), 20.0, 7.2)
    records, summary = run_backtest(signals, constraints, T0, settings=ControlSettings(min_dwell=timedelta(0)))
    assert summary["outcome"] == "deadline_missed"
    assert summary["energy_kwh"] == pytest.approx(7.2)
    assert not records["charging"].iloc[-1]


def test_carbon_saved(signals, constraints):
    forecast = analysis.series_to_samples(signals["forecast"])
    plan = optimize_schedule(forecast, constraints, T0)
    assert analysis.plan_emissions(plan, forecast) == pytest.approx(720)
    assert analysis.carbon_saved(plan, forecast, constraints) == pytest.approx(1.44)
