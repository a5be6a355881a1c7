import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, UTC
from typing import Optional

from charge_scheduler.errors import InvalidSignalData
from charge_scheduler.models import EmissionsSample, FORECAST, REALTIME

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignalSnapshot:
    forecast: tuple = ()
    forecast_fetched_at: Optional[datetime] = None
    forecast_version: int = 0
    realtime: Optional[EmissionsSample] = None
    realtime_fetched_at: Optional[datetime] = None
    forecast_failures: int = 0
    realtime_failures: int = 0

    def forecast_age(self, now):
        if self.forecast_fetched_at is None:
            return None
        return now - self.forecast_fetched_at

    def realtime_age(self, now):
        if self.realtime_fetched_at is None:
            return None
        return now - self.realtime_fetched_at


def validate_forecast(samples):
    """
    Check a forecast sequence and return it as a tuple.

    Raises InvalidSignalData if the sequence is empty, contains a negative
    rate, is not strictly increasing in time or holds non-forecast samples.
    """
    samples = tuple(samples)
    if not samples:
        raise InvalidSignalData("forecast sequence is empty")
    previous = None
    for sample in samples:
        if sample.kind != FORECAST:
            raise InvalidSignalData(f"expected forecast sample, got {sample.kind!r}")
        if sample.rate < 0:
            raise InvalidSignalData(f"negative emissions rate {sample.rate} at {sample.timestamp}")
        if previous is not None and sample.timestamp <= previous.timestamp:
            raise InvalidSignalData(
                f"forecast timestamps must be strictly increasing: "
                f"{sample.timestamp} follows {previous.timestamp}"
            )
        previous = sample
    return samples


def validate_realtime(sample):
    if sample is None:
        raise InvalidSignalData("realtime sample is missing")
    if sample.kind != REALTIME:
        raise InvalidSignalData(f"expected realtime sample, got {sample.kind!r}")
    if sample.rate < 0:
        raise InvalidSignalData(f"negative emissions rate {sample.rate} at {sample.timestamp}")
    return sample


class SignalStore:
    """
    Latest forecast and realtime emissions readings.

    Every update builds a new frozen SignalSnapshot and swaps the reference,
    so readers always see one consistent snapshot. Writers are serialized by
    a lock. Stale data is never an error: readers get the age and decide.
    """

    def __init__(self, clock=None):
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._snapshot = SignalSnapshot()

    def snapshot(self) -> SignalSnapshot:
        return self._snapshot

    def get_forecast(self, now=None):
        snapshot = self._snapshot
        return snapshot.forecast, snapshot.forecast_age(now or self._clock())

    def get_realtime(self, now=None):
        snapshot = self._snapshot
        return snapshot.realtime, snapshot.realtime_age(now or self._clock())

    def update_forecast(self, samples, now=None):
        """Replace the cached forecast; returns True if the content changed."""
        samples = validate_forecast(samples)
        now = now or self._clock()
        with self._lock:
            current = self._snapshot
            changed = samples != current.forecast
            self._snapshot = replace(
                current,
                forecast=samples,
                forecast_fetched_at=now,
                forecast_version=current.forecast_version + 1 if changed else current.forecast_version,
                forecast_failures=0,
            )
        if changed:
            logger.info("Forecast updated to version %d (%d samples, %s to %s)",
                        self._snapshot.forecast_version, len(samples),
                        samples[0].timestamp.isoformat(), samples[-1].timestamp.isoformat())
        return changed

    def update_realtime(self, sample, now=None):
        sample = validate_realtime(sample)
        now = now or self._clock()
        with self._lock:
            current = self._snapshot
            changed = sample != current.realtime
            self._snapshot = replace(current, realtime=sample, realtime_fetched_at=now, realtime_failures=0)
        return changed

    def record_forecast_failure(self):
        with self._lock:
            current = self._snapshot
            self._snapshot = replace(current, forecast_failures=current.forecast_failures + 1)
        return self._snapshot.forecast_failures

    def record_realtime_failure(self):
        with self._lock:
            current = self._snapshot
            self._snapshot = replace(current, realtime_failures=current.realtime_failures + 1)
        return self._snapshot.realtime_failures
