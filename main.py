import logging
import signal
from datetime import datetime, timedelta, UTC

import click
import pandas as pd

from charge_optimizer.backtest import run_backtest
from charge_scheduler import config as cfg
from charge_scheduler.actuator import Actuator
from charge_scheduler.control_loop import ControlLoop
from charge_scheduler.errors import ActuatorError, ChargeSchedulerError, Infeasible
from charge_scheduler.fetcher import SignalFetcher
from charge_scheduler.greedy_scheduler import optimize_schedule
from charge_scheduler.observability import LoggingSink
from charge_scheduler.persistence import SessionStore
from charge_scheduler.prepare_data import (CarbonIntensityProvider, ReplaySignalProvider,
                                           get_carbon_intensity, load_signal_csv)
from charge_scheduler.signal_store import SignalStore
from charge_scheduler.simulate_vehicle import SimulatedVehicle
from charge_scheduler.vehicle import OwnerApiVehicleClient

logger = logging.getLogger(__name__)


def build_provider(config, clock=None):
    s = config.signal
    if s.provider == "csv":
        return ReplaySignalProvider(load_signal_csv(s.csv_path), clock or (lambda: datetime.now(UTC)))
    return CarbonIntensityProvider(s.api_url, s.region_id, s.timeout_s, clock=clock)


def build_vehicle(config):
    v = config.vehicle
    if v.provider == "simulated":
        return SimulatedVehicle(config.charging.capacity_kwh, v.initial_soc, config.charging.max_rate_kw)
    return OwnerApiVehicleClient(v.access_token, v.vehicle_id, v.base_url, v.voltage, v.phases, v.timeout_s)


def session_constraints(config, vehicle, now):
    """Constraints for a session starting now, asking the vehicle for its charge level if needed."""
    if config.charging.energy_required_kwh is not None:
        return config.charging.constraints(now)
    status, _ = config.backoff.policy().call(vehicle.get_status)
    logger.info("Vehicle at %.0f%% charge", status.state_of_charge * 100)
    return config.charging.constraints(now, status.state_of_charge)


def _load(ctx):
    try:
        config = cfg.load_config(ctx.obj["config_path"])
    except (OSError, ChargeSchedulerError) as e:
        raise click.ClickException(str(e))
    logging.basicConfig(level=config.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return config


@click.group()
@click.option("--config", "-c", "config_path", default="config.yaml", help="Path to config file")
@click.pass_context
def cli(ctx, config_path):
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command("generate-config")
@click.option("--output", "-o", default="config.yaml", help="Where to write the config")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def generate_config(output, force):
    """Write a config file with every option at its default value."""
    try:
        with open(output, "w" if force else "x") as f:
            f.write(cfg.default_config_yaml())
    except FileExistsError:
        raise click.ClickException(f"{output} already exists (use --force to overwrite)")
    click.echo(f"Wrote {output}")


@cli.command()
@click.option("--state", "state_path", default=None, help="Session file (overrides state_path)")
@click.option("--fresh", is_flag=True, help="Ignore a saved session")
@click.pass_context
def start(ctx, state_path, fresh):
    """Run the control loop until the session finishes."""
    config = _load(ctx)
    now = datetime.now(UTC)
    vehicle = build_vehicle(config)
    try:
        constraints = session_constraints(config, vehicle, now)
        constraints.validate(now)
    except (ActuatorError, ValueError, ChargeSchedulerError) as e:
        raise click.ClickException(f"cannot start session: {e}")

    session_store = SessionStore(state_path or config.state_path)
    state = None if fresh else session_store.resume(constraints)
    if state is not None:
        constraints = state.constraints

    settings = config.control.settings()
    store = SignalStore()
    sink = LoggingSink()
    fetcher = SignalFetcher(build_provider(config), store,
                            timedelta(seconds=config.signal.forecast_refresh_s),
                            timedelta(seconds=config.signal.realtime_refresh_s))
    actuator = Actuator(vehicle, config.backoff.policy(), sink)
    loop = ControlLoop(constraints, store, actuator, fetcher, sink, settings=settings,
                       state=state, session_store=session_store)

    def handle_signal(signum, frame):
        logger.info("Received %s, stopping", signal.Signals(signum).name)
        loop.stop()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    click.echo(f"Charging {constraints.energy_required_kwh:.2f} kWh by {constraints.deadline.isoformat()}")
    outcome = loop.run()
    click.echo(f"Session ended: {outcome.value if outcome else 'stopped'} "
               f"({loop.state.energy_delivered_kwh:.2f} kWh delivered)")


@cli.command()
@click.option("--soc", type=float, default=None, help="Current state of charge (0-1) for target_soc configs")
@click.pass_context
def plan(ctx, soc):
    """Print the plan for a session starting now."""
    config = _load(ctx)
    now = datetime.now(UTC)
    try:
        constraints = config.charging.constraints(now, soc)
        forecast = build_provider(config).fetch_forecast()
        try:
            result = optimize_schedule(forecast, constraints, now,
                                       slot_width=config.control.settings().slot_width)
        except Infeasible as e:
            click.echo(f"Warning: {e}", err=True)
            result = e.best_effort_plan
    except (ChargeSchedulerError, ValueError) as e:
        raise click.ClickException(str(e))

    tz = constraints.deadline.tzinfo
    table = pd.DataFrame([
        {"start": i.start.astimezone(tz), "end": i.end.astimezone(tz), "rate_kw": i.rate_kw,
         "energy_kwh": i.energy_kwh}
        for i in result.intervals
    ])
    pd.set_option("display.max_columns", None)
    click.echo(table.to_string(index=False) if len(table) else "No charging needed")
    summary = result.summary()
    click.echo(f"Total {summary['energy_kwh']:.2f} kWh, expected {summary['expected_emissions_g'] / 1000:.2f} kg CO2")


@cli.command()
@click.option("--signals", "signals_path", required=True, help="CSV with columns time, forecast, actual")
@click.option("--start", "start_time", default=None, help="Simulation start (defaults to first signal)")
@click.option("--tick-minutes", default=5.0, show_default=True)
@click.option("--output", "-o", default="backtest.csv", show_default=True, help="Per-tick records")
@click.pass_context
def simulate(ctx, signals_path, start_time, tick_minutes, output):
    """Backtest the control loop on recorded signals with a simulated vehicle."""
    config = _load(ctx)
    signals = load_signal_csv(signals_path)
    start_at = pd.Timestamp(start_time) if start_time else signals.index[0]
    if start_at.tzinfo is None:
        start_at = start_at.tz_localize(config.charging.timezone)
    start_at = start_at.tz_convert("UTC").to_pydatetime()
    charging = config.charging
    try:
        constraints = charging.constraints(start_at, config.vehicle.initial_soc)
    except ChargeSchedulerError as e:
        raise click.ClickException(str(e))

    records, summary = run_backtest(
        signals, constraints, start_at,
        tick=timedelta(minutes=tick_minutes),
        settings=config.control.settings(),
        capacity_kwh=charging.capacity_kwh,
        initial_soc=config.vehicle.initial_soc,
        forecast_refresh=timedelta(seconds=config.signal.forecast_refresh_s),
        realtime_refresh=timedelta(seconds=config.signal.realtime_refresh_s),
    )
    records.to_csv(output)
    click.echo(f"Wrote {len(records)} ticks to {output}")
    for key, value in summary.items():
        click.echo(f"{key:>24}: {value:.1f}" if isinstance(value, float) else f"{key:>24}: {value}")


@cli.command("fetch-history")
@click.option("--days", default=7, show_default=True, help="Days of history to fetch")
@click.option("--output", "-o", default="signals.csv", show_default=True)
@click.pass_context
def fetch_history(ctx, days, output):
    """Save recorded carbon intensity as a signals CSV for `simulate`."""
    config = _load(ctx)
    end = datetime.now(UTC)
    frames = []
    # The API serves at most 14 days per request
    chunk_start = end - timedelta(days=days)
    while chunk_start < end:
        chunk_end = min(chunk_start + timedelta(days=14), end)
        try:
            frames.append(get_carbon_intensity(chunk_start, chunk_end, config.signal.api_url,
                                               config.signal.timeout_s))
        except ChargeSchedulerError as e:
            raise click.ClickException(str(e))
        chunk_start = chunk_end
    df = pd.concat(frames)
    df = df[~df.index.duplicated(keep="last")]
    df.to_csv(output)
    click.echo(f"Wrote {len(df)} rows to {output}")


if __name__ == "__main__":
    cli()
