import logging
from dataclasses import replace
from datetime import timedelta

import pandas as pd

from charge_optimizer import results_analysis as analysis
from charge_optimizer.lp_scheduler import lp_schedule
from charge_scheduler.actuator import Actuator
from charge_scheduler.backoff import BackoffPolicy
from charge_scheduler.control_loop import ControlLoop, ControlSettings
from charge_scheduler.fetcher import SignalFetcher
from charge_scheduler.observability import RecordingSink
from charge_scheduler.prepare_data import ReplaySignalProvider
from charge_scheduler.signal_store import SignalStore
from charge_scheduler.simulate_vehicle import SimulatedVehicle

logger = logging.getLogger(__name__)


class SimClock:
    """Manually advanced clock."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now += delta


def run_backtest(signals, constraints, start, tick=timedelta(minutes=5), settings=None,
                 capacity_kwh=75.0, initial_soc=0.3, forecast_refresh=timedelta(minutes=30),
                 realtime_refresh=timedelta(minutes=5)):
    """
    Replay recorded signals through the control loop with a simulated vehicle.

    Parameters
    ----------
    signals : pd.DataFrame
        Indexed by UTC time with columns forecast and actual (see load_signal_csv).
    constraints : ChargingConstraints
        Session constraints; the session starts at `start`.
    start : datetime
        Simulation start.
    tick : timedelta
        Control loop period.
    settings : ControlSettings, optional
        Control settings; `tick_interval` is overridden by `tick`.
    capacity_kwh, initial_soc : float
        Simulated battery.

    Returns
    -------
    records : pd.DataFrame
        Indexed by tick time, with columns decision, charging, rate_kw, soc,
        energy_delivered_kwh and intensity (actual emissions rate, gCO2/kWh).
    summary : dict
        Session outcome, energy, emissions and comparison with charging
        immediately and with the LP optimum on actual intensities.
    """
    settings = replace(settings or ControlSettings(), tick_interval=tick)
    clock = SimClock(start)
    store = SignalStore(clock=clock)
    provider = ReplaySignalProvider(signals, clock)
    fetcher = SignalFetcher(provider, store, forecast_refresh, realtime_refresh, clock=clock)
    vehicle = SimulatedVehicle(capacity_kwh, initial_soc, constraints.max_rate_kw, clock=clock)
    sink = RecordingSink()
    actuator = Actuator(vehicle, BackoffPolicy(max_attempts=2, base_delay=0), sink, clock, sleep=lambda s: None)
    loop = ControlLoop(constraints, store, actuator, fetcher, sink, clock, settings)

    actual = signals["actual"].fillna(signals["forecast"])
    rows = []
    while not loop.state.finished and clock.now <= constraints.deadline + tick:
        decision = loop.tick()
        held = actual[actual.index <= pd.Timestamp(clock.now)]
        rows.append({
            "time": clock.now,
            "decision": type(decision).__name__,
            "charging": vehicle.charging,
            "rate_kw": vehicle.rate_kw,
            "soc": vehicle.soc,
            "energy_delivered_kwh": loop.state.energy_delivered_kwh,
            "intensity": float(held.iloc[-1]) if len(held) else float("nan"),
        })
        clock.advance(tick)

    records = pd.DataFrame(rows).set_index("time")
    emissions, energy = analysis.session_emissions(records, tick)

    actual_samples = analysis.series_to_samples(actual)
    immediate = analysis.immediate_emissions(actual_samples, start, constraints.energy_required_kwh,
                                             constraints.max_rate_kw)
    status, oracle, _ = lp_schedule(actual_samples, constraints, start)

    summary = {
        "outcome": loop.state.outcome.value if loop.state.outcome else None,
        "energy_kwh": energy,
        "emissions_g": emissions,
        "immediate_emissions_g": immediate,
        "oracle_emissions_g": oracle if status == "Optimal" else None,
        "replans": len(sink.plans),
        "actuator_calls": len([c for c in sink.calls if c["outcome"] != "skipped"]),
    }
    logger.info("Backtest from %s: %s", start.isoformat(), summary)
    return records, summary
