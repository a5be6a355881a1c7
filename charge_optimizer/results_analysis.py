from datetime import timedelta

from charge_scheduler.greedy_scheduler import interval_emissions
from charge_scheduler.models import EmissionsSample, hours


def plan_emissions(plan, forecast):
    """Emissions (g) of a plan under an emissions curve."""
    return sum(interval_emissions(forecast, i.start, i.end, i.rate_kw) for i in plan.intervals)


def immediate_emissions(forecast, start, energy_kwh, rate_kw):
    """Emissions (g) of charging at `rate_kw` from `start` until `energy_kwh` is delivered."""
    end = start + timedelta(hours=energy_kwh / rate_kw)
    return interval_emissions(forecast, start, end, rate_kw)


def carbon_saved(plan, forecast, constraints):
    """Carbon saved (kg CO2) by the plan compared to charging immediately at max rate."""
    base = immediate_emissions(forecast, plan.created_at, plan.energy_required_kwh, constraints.max_rate_kw)
    return (base - plan_emissions(plan, forecast)) / 1000


def series_to_samples(series):
    """A Series of rates indexed by time as forecast-style samples, e.g. to score against actuals."""
    series = series.dropna()
    return [EmissionsSample(ts.to_pydatetime(), float(rate)) for ts, rate in series.items()]


def session_emissions(records, tick):
    """
    Emissions (g) and energy (kWh) of a recorded session.

    `records` holds one row per tick with the charging rate decided at that
    tick (rate_kw) and the emissions rate then in force (intensity).
    """
    step = hours(tick)
    energy = (records["rate_kw"] * step).sum()
    emissions = (records["rate_kw"] * step * records["intensity"]).sum()
    return float(emissions), float(energy)
