import logging
from datetime import timedelta

import numpy as np
import pandas as pd

from charge_scheduler.errors import Infeasible, InvalidSignalData
from charge_scheduler.models import ChargingInterval, Plan

logger = logging.getLogger(__name__)

DEFAULT_SLOT_WIDTH = timedelta(minutes=15)
EPS = 1e-9


def forecast_series(forecast):
    """Forecast samples as a float Series indexed by UTC timestamp."""
    if not forecast:
        raise InvalidSignalData("forecast is empty")
    index = pd.to_datetime([s.timestamp for s in forecast], utc=True)
    return pd.Series([float(s.rate) for s in forecast], index=index, dtype=float)


def _utc(t):
    t = pd.Timestamp(t)
    if t.tzinfo is None:
        raise ValueError(f"timestamp {t} must be timezone aware")
    return t.tz_convert("UTC")


def _step_segments(series, breaks, end):
    """
    Step-held rate over the segments starting at each of `breaks`.

    The last known sample's rate is held forward; before the first sample
    the first sample's rate is used.

    Returns
    -------
    (np.ndarray, np.ndarray)
        Rate of each segment and its length in hours.
    """
    held = series.reindex(breaks, method="ffill").fillna(series.iloc[0])
    seg_ends = breaks[1:].append(pd.DatetimeIndex([end]))
    seg_hours = (seg_ends - breaks).total_seconds() / 3600
    return held.to_numpy(), np.asarray(seg_hours, dtype=float)


def interval_emissions(forecast, start, end, rate_kw=1.0):
    """Emissions (g) of charging at `rate_kw` over [start, end) under the step-held forecast."""
    series = forecast_series(forecast)
    start, end = _utc(start), _utc(end)
    if end <= start:
        return 0.0
    inner = series.index[(series.index > start) & (series.index < end)]
    breaks = pd.DatetimeIndex([start]).append(inner)
    rates, seg_hours = _step_segments(series, breaks, end)
    return float((rates * seg_hours).sum() * rate_kw)


def build_slots(forecast, start, end, slot_width=DEFAULT_SLOT_WIDTH):
    """
    Discretize [start, end) into fixed-width slots with their emissions rate.

    Parameters
    ----------
    forecast : sequence of EmissionsSample
        Time-ordered forecast samples.
    start, end : datetime
        Horizon bounds (timezone aware). The last slot is truncated at `end`.
    slot_width : timedelta
        Slot length.

    Returns
    -------
    pd.DataFrame
        One row per slot with columns:
        - start, end: slot bounds (UTC)
        - hours: slot length in hours
        - rate: time-weighted mean of the step-held forecast over the slot (g/kWh)
    """
    series = forecast_series(forecast)
    start, end = _utc(start), _utc(end)
    if end <= start:
        return pd.DataFrame(columns=["start", "end", "hours", "rate"])

    starts = pd.date_range(start=start, end=end, freq=pd.Timedelta(slot_width), inclusive="left")
    ends = starts[1:].append(pd.DatetimeIndex([end]))

    inner = series.index[(series.index > start) & (series.index < end)]
    breaks = starts.union(inner)
    rates, seg_hours = _step_segments(series, breaks, end)
    slot_id = starts.searchsorted(breaks, side="right") - 1

    segments = pd.DataFrame({"slot": slot_id, "weighted": rates * seg_hours, "hours": seg_hours})
    grouped = segments.groupby("slot").sum()

    return pd.DataFrame({
        "start": starts,
        "end": ends,
        "hours": np.asarray((ends - starts).total_seconds() / 3600, dtype=float),
        "rate": (grouped["weighted"] / grouped["hours"]).to_numpy(),
    })


def _select(rates, starts, slot_hours, energy_kwh, max_rate_kw, banned):
    """Fill slots cheapest first; returns {slot: energy} or None if the energy does not fit."""
    order = sorted(
        (i for i in range(len(rates)) if i not in banned),
        key=lambda i: (rates[i], starts[i]),
    )
    fills = {}
    remaining = energy_kwh
    for i in order:
        if remaining <= EPS:
            break
        take = min(max_rate_kw * slot_hours[i], remaining)
        fills[i] = take
        remaining -= take
    if remaining > EPS:
        return None
    return fills


def _pieces(fills, starts, ends, slot_hours, constraints):
    pieces = []
    for i, take in sorted(fills.items()):
        capacity = constraints.max_rate_kw * slot_hours[i]
        if take >= capacity - EPS:
            pieces.append((i, starts[i], ends[i], constraints.max_rate_kw))
            continue

        # Partial slot: shorten it at max rate, or spread it at a reduced rate
        # when the shortened piece would be too short to actuate or would
        # leave a gap between two charging slots.
        duration = timedelta(hours=take / constraints.max_rate_kw)
        spread_rate = take / slot_hours[i]
        bridges = (i - 1) in fills and (i + 1) in fills
        if ((duration < constraints.min_interval_duration or bridges)
                and spread_rate >= constraints.min_rate_kw):
            pieces.append((i, starts[i], ends[i], spread_rate))
            continue
        if duration <= timedelta(0):
            continue
        if (i + 1) in fills and (i - 1) not in fills:
            pieces.append((i, ends[i] - duration, ends[i], constraints.max_rate_kw))
        else:
            pieces.append((i, starts[i], starts[i] + duration, constraints.max_rate_kw))
    return pieces


def _runs(pieces):
    """Group pieces into runs of back-to-back charging."""
    runs = []
    for piece in pieces:
        if runs and runs[-1][-1][2] == piece[1]:
            runs[-1].append(piece)
        else:
            runs.append([piece])
    return runs


def _merge(pieces):
    intervals = []
    for _, start, end, rate in pieces:
        if intervals and intervals[-1].end == start and abs(intervals[-1].rate_kw - rate) <= EPS:
            intervals[-1] = ChargingInterval(intervals[-1].start, end, intervals[-1].rate_kw)
        else:
            intervals.append(ChargingInterval(start, end, rate))
    return tuple(intervals)


def optimize_schedule(forecast, constraints, now, energy_required_kwh=None,
                      slot_width=DEFAULT_SLOT_WIDTH, forecast_version=0):
    """
    Choose the emission-minimal charging intervals between `now` and the deadline.

    Slots are filled cheapest first (ties go to the earlier slot) at
    `max_rate_kw` until the energy is met; the last slot is only partly used.
    Runs of back-to-back charging shorter than `min_interval_duration` are
    removed and their energy re-placed in the next-cheapest slots.

    Parameters
    ----------
    forecast : sequence of EmissionsSample
        Forecast emissions curve; the last sample's rate is held forward.
    constraints : ChargingConstraints
        Session constraints.
    now : datetime
        Start of the planning horizon (timezone aware).
    energy_required_kwh : float, optional
        Energy still to deliver. Defaults to `constraints.energy_required_kwh`.
    slot_width : timedelta
        Slot length used to discretize the horizon.
    forecast_version : int
        Recorded on the plan so later ticks can tell whether it is current.

    Returns
    -------
    Plan

    Raises
    ------
    Infeasible
        If charging at max rate for the whole horizon cannot deliver the
        energy. The exception carries that best-effort plan.
    """
    constraints.validate(now)
    if energy_required_kwh is None:
        energy_required_kwh = constraints.energy_required_kwh
    if energy_required_kwh <= 0:
        raise ValueError("energy_required_kwh must be positive")

    slots = build_slots(forecast, now, constraints.deadline, slot_width)
    starts = [t.to_pydatetime() for t in slots["start"]]
    ends = [t.to_pydatetime() for t in slots["end"]]
    slot_hours = slots["hours"].tolist()
    rates = slots["rate"].tolist()
    slot_rates = tuple(zip(starts, ends, rates))

    def make_plan(intervals, infeasible=False):
        return Plan(
            intervals=intervals,
            created_at=now,
            deadline=constraints.deadline,
            energy_required_kwh=energy_required_kwh,
            forecast_version=forecast_version,
            slot_rates=slot_rates,
            infeasible=infeasible,
        )

    capacity = constraints.max_rate_kw * sum(slot_hours)
    if capacity < energy_required_kwh - EPS:
        all_slots = [(i, starts[i], ends[i], constraints.max_rate_kw) for i in range(len(starts))]
        best_effort = make_plan(_merge(all_slots), infeasible=True)
        raise Infeasible(
            f"{energy_required_kwh:.3f} kWh cannot be delivered by {constraints.deadline.isoformat()} "
            f"at {constraints.max_rate_kw} kW (at most {capacity:.3f} kWh)",
            best_effort_plan=best_effort,
            shortfall_kwh=energy_required_kwh - capacity,
        )

    banned = set()
    fills = _select(rates, starts, slot_hours, energy_required_kwh, constraints.max_rate_kw, banned)
    pieces = _pieces(fills, starts, ends, slot_hours, constraints)

    while constraints.min_interval_duration > timedelta(0):
        short = [run for run in _runs(pieces) if run[-1][2] - run[0][1] < constraints.min_interval_duration]
        if not short:
            break
        shortest = min(short, key=lambda run: (run[-1][2] - run[0][1], run[0][1]))
        candidate_banned = banned | {piece[0] for piece in shortest}
        candidate = _select(rates, starts, slot_hours, energy_required_kwh,
                            constraints.max_rate_kw, candidate_banned)
        if candidate is None:
            logger.warning("Keeping %d charging run(s) shorter than %s: no room to move their energy",
                           len(short), constraints.min_interval_duration)
            break
        banned = candidate_banned
        pieces = _pieces(candidate, starts, ends, slot_hours, constraints)

    plan = make_plan(_merge(pieces))
    logger.debug("Planned %.3f kWh in %d interval(s) over %d slots",
                 plan.total_energy_kwh, len(plan.intervals), len(starts))
    return plan
