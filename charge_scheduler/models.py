from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

FORECAST = "forecast"
REALTIME = "realtime"

ENERGY_TOLERANCE_KWH = 1e-6


def hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600


@dataclass(frozen=True)
class EmissionsSample:
    """Marginal emissions rate (g/kWh) starting at `timestamp`."""

    timestamp: datetime
    rate: float
    kind: str = FORECAST


@dataclass(frozen=True)
class ChargingConstraints:
    deadline: datetime
    energy_required_kwh: float
    max_rate_kw: float
    min_rate_kw: float = 0.0
    min_interval_duration: timedelta = timedelta(0)

    def validate(self, now):
        """Raise ValueError if the constraints cannot describe a session starting at `now`."""
        if self.deadline <= now:
            raise ValueError(f"deadline {self.deadline} is not after {now}")
        if self.energy_required_kwh <= 0:
            raise ValueError("energy_required_kwh must be positive")
        if self.max_rate_kw <= 0:
            raise ValueError("max_rate_kw must be positive")
        if not self.max_rate_kw >= self.min_rate_kw >= 0:
            raise ValueError(
                f"rates must satisfy max_rate >= min_rate >= 0, "
                f"got max={self.max_rate_kw} min={self.min_rate_kw}"
            )
        if self.min_interval_duration < timedelta(0):
            raise ValueError("min_interval_duration must not be negative")
        return self


@dataclass(frozen=True)
class ChargingInterval:
    start: datetime
    end: datetime
    rate_kw: float

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"interval end {self.end} must be after start {self.start}")

    @property
    def duration(self):
        return self.end - self.start

    @property
    def energy_kwh(self):
        return hours(self.duration) * self.rate_kw

    def contains(self, t):
        return self.start <= t < self.end


@dataclass(frozen=True)
class Plan:
    """
    An accepted charging plan.

    Plans are immutable: re-optimization builds a new one, so a reader holding
    a reference never sees a half-updated schedule.

    Attributes
    ----------
    intervals : tuple of ChargingInterval
        Sorted, non-overlapping charging intervals.
    created_at : datetime
        Start of the planning horizon.
    deadline : datetime
        End of the planning horizon.
    energy_required_kwh : float
        Energy the plan was asked to deliver.
    forecast_version : int
        SignalStore forecast version the plan was computed from.
    slot_rates : tuple of (start, end, rate)
        Emissions rate assumed for each slot of the horizon (g/kWh).
    infeasible : bool
        True for a best-effort plan that cannot deliver the requested energy.
    """

    intervals: tuple
    created_at: datetime
    deadline: datetime
    energy_required_kwh: float
    forecast_version: int = 0
    slot_rates: tuple = ()
    infeasible: bool = False

    @property
    def total_energy_kwh(self):
        return sum(interval.energy_kwh for interval in self.intervals)

    @property
    def expected_emissions_g(self):
        """Emissions of the plan under the assumed slot rates (grams)."""
        total = 0.0
        for interval in self.intervals:
            for start, end, rate in self.slot_rates:
                overlap = min(end, interval.end) - max(start, interval.start)
                if overlap > timedelta(0):
                    total += hours(overlap) * interval.rate_kw * rate
        return total

    def interval_at(self, t) -> Optional[ChargingInterval]:
        for interval in self.intervals:
            if interval.contains(t):
                return interval
            if interval.start > t:
                break
        return None

    def energy_between(self, start, end):
        """Energy (kWh) the plan schedules within [start, end)."""
        total = 0.0
        for interval in self.intervals:
            overlap = min(end, interval.end) - max(start, interval.start)
            if overlap > timedelta(0):
                total += hours(overlap) * interval.rate_kw
        return total

    def last_boundary_before(self, t):
        """
        Time the plan last switched between charging and not charging, at or before `t`.

        None when no switch has happened since the plan was made; an interval
        starting right at plan creation is not a switch.
        """
        boundary = None
        for interval in self.intervals:
            if interval.start > t:
                break
            if interval.start > self.created_at:
                boundary = interval.start
            if interval.end <= t:
                boundary = interval.end
        return boundary

    def assumed_rate_at(self, t) -> Optional[float]:
        for start, end, rate in self.slot_rates:
            if start <= t < end:
                return rate
        return None

    def summary(self):
        return {
            "intervals": len(self.intervals),
            "energy_kwh": round(self.total_energy_kwh, 6),
            "expected_emissions_g": round(self.expected_emissions_g, 3),
            "first_start": self.intervals[0].start.isoformat() if self.intervals else None,
            "last_end": self.intervals[-1].end.isoformat() if self.intervals else None,
            "forecast_version": self.forecast_version,
            "infeasible": self.infeasible,
        }


@dataclass(frozen=True)
class VehicleStatus:
    charging: bool
    rate_kw: float = 0.0
    state_of_charge: float = 0.0
    energy_added_kwh: Optional[float] = None
    extra: dict = field(default_factory=dict, compare=False)
