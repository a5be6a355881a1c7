import logging
import threading
from datetime import datetime, timedelta, UTC

from charge_scheduler.errors import InvalidSignalData, SignalFetchError

logger = logging.getLogger(__name__)


class SignalFetcher:
    """
    Moves readings from a signal provider into a SignalStore.

    Fetch failures and malformed data never propagate: they are logged,
    counted in the store, and the previous snapshot stays in place. Can run
    its own background threads so a slow control tick never delays refresh.
    """

    def __init__(self, provider, store, forecast_interval=timedelta(minutes=15),
                 realtime_interval=timedelta(minutes=5), clock=None):
        self.provider = provider
        self.store = store
        self.forecast_interval = forecast_interval
        self.realtime_interval = realtime_interval
        self.clock = clock or (lambda: datetime.now(UTC))
        self._stop = threading.Event()
        self._threads = []
        self._last_forecast_attempt = None
        self._last_realtime_attempt = None

    def refresh_forecast(self):
        """Fetch the forecast once; returns True if the cached forecast changed."""
        self._last_forecast_attempt = self.clock()
        try:
            samples = self.provider.fetch_forecast()
            return self.store.update_forecast(samples, now=self.clock())
        except (SignalFetchError, InvalidSignalData) as e:
            failures = self.store.record_forecast_failure()
            logger.warning("Forecast refresh failed (%d in a row), keeping cached forecast: %s", failures, e)
        except Exception:
            failures = self.store.record_forecast_failure()
            logger.exception("Unexpected error refreshing forecast (%d in a row)", failures)
        return False

    def refresh_realtime(self):
        self._last_realtime_attempt = self.clock()
        try:
            sample = self.provider.fetch_realtime()
            return self.store.update_realtime(sample, now=self.clock())
        except (SignalFetchError, InvalidSignalData) as e:
            failures = self.store.record_realtime_failure()
            logger.warning("Realtime refresh failed (%d in a row), keeping cached reading: %s", failures, e)
        except Exception:
            failures = self.store.record_realtime_failure()
            logger.exception("Unexpected error refreshing realtime signal (%d in a row)", failures)
        return False

    @staticmethod
    def _due(last_attempt, interval, now):
        return last_attempt is None or now - last_attempt >= interval

    def refresh_due(self, now=None):
        """Refresh whichever signal has not been attempted within its interval."""
        now = now or self.clock()
        changed = False
        if self._due(self._last_forecast_attempt, self.forecast_interval, now):
            changed |= self.refresh_forecast()
        if self._due(self._last_realtime_attempt, self.realtime_interval, now):
            changed |= self.refresh_realtime()
        return changed

    def _run(self, refresh, interval, on_update):
        while not self._stop.is_set():
            if refresh() and on_update is not None:
                on_update()
            self._stop.wait(interval.total_seconds())

    def start(self, on_update=None):
        """Start background refresh threads; `on_update` is called after each changed reading."""
        for name, refresh, interval in (
            ("forecast", self.refresh_forecast, self.forecast_interval),
            ("realtime", self.refresh_realtime, self.realtime_interval),
        ):
            thread = threading.Thread(target=self._run, args=(refresh, interval, on_update),
                                      name=f"signal-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout=5.0):
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
