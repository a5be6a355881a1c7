import re
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pandas as pd
import yaml

from charge_scheduler.errors import ConfigError
from charge_scheduler.models import ChargingConstraints

TIMEZONE = "Europe/London"

SLOT_WIDTH = timedelta(minutes=15)           # optimizer resolution
TICK_INTERVAL = timedelta(minutes=1)         # control loop period
MIN_DWELL = timedelta(minutes=2)             # hysteresis around plan boundaries
DIVERGENCE_THRESHOLD = 0.25                  # relative realtime vs forecast gap that triggers re-planning
REALTIME_MAX_AGE = timedelta(minutes=15)     # older realtime readings are ignored
DRIFT_TOLERANCE_KWH = 0.5                    # delivered vs planned energy gap that triggers re-planning
SHUTDOWN_TIMEOUT = timedelta(seconds=10)

FORECAST_REFRESH = timedelta(minutes=15)
REALTIME_REFRESH = timedelta(minutes=5)
HTTP_TIMEOUT_S = 10.0

CARBON_API_URL = "https://api.carbonintensity.org.uk"
FORECAST_HOURS = 48       # how far ahead to pull data

DEADLINE_TIME = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass
class ChargingConfig:
    deadline: str = "07:00"               # HH:MM (next occurrence) or ISO timestamp
    timezone: str = TIMEZONE
    energy_required_kwh: float = None     # either this, or target_soc with capacity_kwh
    target_soc: float = 0.8
    capacity_kwh: float = 75.0
    max_rate_kw: float = 7.2
    min_rate_kw: float = 1.4
    min_interval_minutes: float = 15.0

    def resolve_deadline(self, now):
        tz = ZoneInfo(self.timezone)
        match = DEADLINE_TIME.match(str(self.deadline))
        if match:
            local_now = now.astimezone(tz)
            deadline = local_now.replace(hour=int(match.group(1)), minute=int(match.group(2)),
                                         second=0, microsecond=0)
            if deadline <= local_now:
                deadline += timedelta(days=1)
            return deadline
        deadline = pd.Timestamp(self.deadline)
        if deadline.tzinfo is None:
            deadline = deadline.tz_localize(tz)
        return deadline.to_pydatetime()

    def energy_needed(self, state_of_charge=None):
        if self.energy_required_kwh is not None:
            return float(self.energy_required_kwh)
        if state_of_charge is None:
            raise ConfigError("target_soc needs the vehicle's state of charge")
        return max(0.0, (self.target_soc - state_of_charge) * self.capacity_kwh)

    def constraints(self, now, state_of_charge=None):
        return ChargingConstraints(
            deadline=self.resolve_deadline(now),
            energy_required_kwh=self.energy_needed(state_of_charge),
            max_rate_kw=self.max_rate_kw,
            min_rate_kw=self.min_rate_kw,
            min_interval_duration=timedelta(minutes=self.min_interval_minutes),
        )


@dataclass
class ControlConfig:
    tick_interval_s: float = TICK_INTERVAL.total_seconds()
    min_dwell_s: float = MIN_DWELL.total_seconds()
    divergence_threshold: float = DIVERGENCE_THRESHOLD
    realtime_max_age_s: float = REALTIME_MAX_AGE.total_seconds()
    drift_tolerance_kwh: float = DRIFT_TOLERANCE_KWH
    slot_minutes: float = SLOT_WIDTH.total_seconds() / 60
    shutdown_timeout_s: float = SHUTDOWN_TIMEOUT.total_seconds()

    def settings(self):
        # Imported here: control_loop reads the module-level defaults above.
        from charge_scheduler.control_loop import ControlSettings
        return ControlSettings(
            tick_interval=timedelta(seconds=self.tick_interval_s),
            min_dwell=timedelta(seconds=self.min_dwell_s),
            divergence_threshold=self.divergence_threshold,
            realtime_max_age=timedelta(seconds=self.realtime_max_age_s),
            drift_tolerance_kwh=self.drift_tolerance_kwh,
            slot_width=timedelta(minutes=self.slot_minutes),
            shutdown_timeout=timedelta(seconds=self.shutdown_timeout_s),
        )


@dataclass
class BackoffConfig:
    max_attempts: int = 4
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0

    def policy(self):
        from charge_scheduler.backoff import BackoffPolicy
        return BackoffPolicy(self.max_attempts, self.base_delay_s, self.max_delay_s)


@dataclass
class SignalConfig:
    provider: str = "carbon_intensity"    # "carbon_intensity" or "csv"
    api_url: str = CARBON_API_URL
    region_id: int = None                 # regional forecast, national if unset
    csv_path: str = "signals.csv"
    forecast_refresh_s: float = FORECAST_REFRESH.total_seconds()
    realtime_refresh_s: float = REALTIME_REFRESH.total_seconds()
    timeout_s: float = HTTP_TIMEOUT_S


@dataclass
class VehicleConfig:
    provider: str = "owner_api"           # "owner_api" or "simulated"
    access_token: str = "your_access_token"
    vehicle_id: str = "your_vehicle_id"
    base_url: str = "https://owner-api.teslamotors.com"
    voltage: float = 240.0
    phases: int = 1
    timeout_s: float = HTTP_TIMEOUT_S
    initial_soc: float = 0.3              # simulated vehicle only


@dataclass
class Config:
    log_level: str = "INFO"
    state_path: str = "session.json"
    charging: ChargingConfig = field(default_factory=ChargingConfig)
    control: ControlConfig = field(default_factory=ControlConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    signal: SignalConfig = field(default_factory=SignalConfig)
    vehicle: VehicleConfig = field(default_factory=VehicleConfig)

    def validate(self):
        """Check the configuration, raising ConfigError on the first problem found."""
        c = self.charging
        try:
            ZoneInfo(c.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigError(f"unknown timezone {c.timezone!r}") from e
        if not DEADLINE_TIME.match(str(c.deadline)):
            try:
                pd.Timestamp(c.deadline)
            except ValueError as e:
                raise ConfigError(f"deadline {c.deadline!r} is neither HH:MM nor a timestamp") from e
        if c.energy_required_kwh is None:
            if not 0.0 < c.target_soc <= 1.0:
                raise ConfigError(f"target_soc {c.target_soc} must be in (0, 1]")
            if c.capacity_kwh <= 0:
                raise ConfigError("capacity_kwh must be positive")
        elif c.energy_required_kwh <= 0:
            raise ConfigError("energy_required_kwh must be positive")
        if not c.max_rate_kw >= c.min_rate_kw >= 0 or c.max_rate_kw <= 0:
            raise ConfigError(f"need max_rate_kw >= min_rate_kw >= 0, got {c.max_rate_kw}, {c.min_rate_kw}")
        if c.min_interval_minutes < 0:
            raise ConfigError("min_interval_minutes must not be negative")
        if self.control.tick_interval_s <= 0 or self.control.slot_minutes <= 0:
            raise ConfigError("tick_interval_s and slot_minutes must be positive")
        if self.control.divergence_threshold <= 0:
            raise ConfigError("divergence_threshold must be positive")
        if self.backoff.max_attempts < 1:
            raise ConfigError("backoff.max_attempts must be at least 1")
        if self.signal.provider not in ("carbon_intensity", "csv"):
            raise ConfigError(f"unknown signal provider {self.signal.provider!r}")
        if self.vehicle.provider not in ("owner_api", "simulated"):
            raise ConfigError(f"unknown vehicle provider {self.vehicle.provider!r}")
        if self.vehicle.provider == "owner_api" and self.vehicle.access_token == VehicleConfig.access_token:
            raise ConfigError("vehicle access_token must be changed from the default value")
        return self


SECTIONS = {
    "charging": ChargingConfig,
    "control": ControlConfig,
    "backoff": BackoffConfig,
    "signal": SignalConfig,
    "vehicle": VehicleConfig,
}


def config_from_dict(data):
    data = dict(data or {})
    kwargs = {}
    for name, cls in SECTIONS.items():
        section = data.pop(name, None) or {}
        unknown = set(section) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigError(f"unknown {name} option(s): {', '.join(sorted(unknown))}")
        kwargs[name] = cls(**section)
    unknown = set(data) - set(Config.__dataclass_fields__)
    if unknown:
        raise ConfigError(f"unknown option(s): {', '.join(sorted(unknown))}")
    return Config(**data, **kwargs)


def load_config(path, validate=True):
    with open(path) as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"{path}: {e}") from e
    config = config_from_dict(data)
    return config.validate() if validate else config


def default_config_yaml():
    return yaml.safe_dump(asdict(Config()), sort_keys=False)
