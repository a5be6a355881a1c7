import logging
from datetime import datetime, timedelta, UTC

import pandas as pd
import requests

from charge_scheduler import config
from charge_scheduler.errors import SignalFetchError
from charge_scheduler.models import EmissionsSample, FORECAST, REALTIME

logger = logging.getLogger(__name__)

API_TIME_FORMAT = "%Y-%m-%dT%H:%MZ"

# ---------------------------
# CARBON INTENSITY API
# ---------------------------


def _get(url, timeout):
    try:
        r = requests.get(url, headers={"Accept": "application/json"}, timeout=timeout)
        r.raise_for_status()
        return r.json()["data"]
    except (requests.RequestException, ValueError, KeyError) as e:
        raise SignalFetchError(f"GET {url} failed: {e}") from e


def _rows_to_frame(rows):
    """API intensity rows as a DataFrame indexed by period start, columns forecast and actual."""
    frame = pd.DataFrame(
        {
            "forecast": [row["intensity"].get("forecast") for row in rows],
            "actual": [row["intensity"].get("actual") for row in rows],
        },
        index=pd.to_datetime([row["from"] for row in rows], utc=True),
        dtype=float,
    )
    frame.index.name = "time"
    return frame[~frame.index.duplicated(keep="last")].sort_index()


def get_carbon_intensity(start, end, api_url=config.CARBON_API_URL, timeout=config.HTTP_TIMEOUT_S):
    """
    Fetch half-hourly national carbon intensity between two times.

    Parameters
    ----------
    start, end : datetime
        Period to fetch (timezone aware).
    api_url : str
        Base URL of the carbon intensity API.

    Returns
    -------
    pd.DataFrame indexed by UTC period start, with columns:
        - forecast: forecast intensity (gCO2/kWh)
        - actual: measured intensity (gCO2/kWh), NaN where not yet known
    """
    start_str = pd.Timestamp(start).tz_convert("UTC").strftime(API_TIME_FORMAT)
    end_str = pd.Timestamp(end).tz_convert("UTC").strftime(API_TIME_FORMAT)
    rows = _get(f"{api_url}/intensity/{start_str}/{end_str}", timeout)
    return _rows_to_frame(rows)


class CarbonIntensityProvider:
    """
    Forecast and realtime signals from the GB carbon intensity API.

    Parameters
    ----------
    api_url : str
        Base URL of the API.
    region_id : int, optional
        Regional forecast (1-17); the national forecast is used when None.
    timeout : float
        Request timeout in seconds.
    clock : callable
        Returns the current time.
    """

    def __init__(self, api_url=config.CARBON_API_URL, region_id=None, timeout=config.HTTP_TIMEOUT_S,
                 clock=None):
        self.api_url = api_url.rstrip("/")
        self.region_id = region_id
        self.timeout = timeout
        self.clock = clock or (lambda: datetime.now(UTC))

    def _from(self):
        # The API rounds to half hours; start one period back so "now" is covered.
        now = pd.Timestamp(self.clock()).tz_convert("UTC") - pd.Timedelta(minutes=30)
        return now.strftime(API_TIME_FORMAT)

    def fetch_forecast(self):
        if self.region_id is None:
            rows = _get(f"{self.api_url}/intensity/{self._from()}/fw48h", self.timeout)
        else:
            data = _get(f"{self.api_url}/regional/intensity/{self._from()}/fw48h/regionid/{self.region_id}",
                        self.timeout)
            rows = data["data"] if isinstance(data, dict) else data[0]["data"]
        frame = _rows_to_frame(rows)
        samples = [
            EmissionsSample(ts.to_pydatetime(), float(rate), FORECAST)
            for ts, rate in frame["forecast"].dropna().items()
        ]
        if not samples:
            raise SignalFetchError("forecast response contained no intensity values")
        return samples

    def fetch_realtime(self):
        if self.region_id is None:
            rows = _get(f"{self.api_url}/intensity", self.timeout)
        else:
            rows = _get(f"{self.api_url}/regional/regionid/{self.region_id}", self.timeout)[0]["data"]
        if not rows:
            raise SignalFetchError("realtime response was empty")
        intensity = rows[-1]["intensity"]
        rate = intensity.get("actual")
        if rate is None:
            rate = intensity.get("forecast")
        if rate is None:
            raise SignalFetchError("realtime response had no intensity value")
        return EmissionsSample(pd.Timestamp(rows[-1]["from"]).tz_convert("UTC").to_pydatetime(),
                               float(rate), REALTIME)


# ---------------------------
# HISTORICAL REPLAY
# ---------------------------


def load_signal_csv(path):
    """
    Read recorded signals from a CSV with columns time, forecast and (optionally) actual.

    Returns
    -------
    pd.DataFrame indexed by UTC time, with columns forecast and actual.
    """
    df = pd.read_csv(path)
    if "time" not in df.columns or "forecast" not in df.columns:
        raise ValueError(f"{path} must have at least columns: time, forecast")
    df["time"] = pd.to_datetime(df["time"], utc=True)
    df = df.set_index("time").sort_index()
    if "actual" not in df.columns:
        df["actual"] = float("nan")
    return df[["forecast", "actual"]].astype(float)


class ReplaySignalProvider:
    """
    Replays recorded signals against a (simulated) clock.

    The forecast covers `horizon` ahead of the current time; the realtime
    reading is the latest `actual` value at or before it, falling back to
    the forecast where no actual was recorded.
    """

    def __init__(self, signals, clock, horizon=timedelta(hours=config.FORECAST_HOURS)):
        self.signals = signals
        self.clock = clock
        self.horizon = horizon

    def fetch_forecast(self):
        now = pd.Timestamp(self.clock()).tz_convert("UTC")
        series = self.signals["forecast"].dropna()
        current = series[series.index <= now].index
        start = current[-1] if len(current) else now
        window = series[(series.index >= start) & (series.index <= now + self.horizon)]
        if window.empty:
            raise SignalFetchError(f"no recorded forecast after {now}")
        return [EmissionsSample(ts.to_pydatetime(), float(rate), FORECAST) for ts, rate in window.items()]

    def fetch_realtime(self):
        now = pd.Timestamp(self.clock()).tz_convert("UTC")
        past = self.signals[self.signals.index <= now]
        if past.empty:
            raise SignalFetchError(f"no recorded signal before {now}")
        row = past.iloc[-1]
        rate = row["actual"] if pd.notna(row["actual"]) else row["forecast"]
        return EmissionsSample(past.index[-1].to_pydatetime(), float(rate), REALTIME)
