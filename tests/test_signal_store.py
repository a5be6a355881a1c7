from datetime import datetime, timedelta, UTC

import pytest

from charge_scheduler.errors import InvalidSignalData, SignalFetchError
from charge_scheduler.fetcher import SignalFetcher
from charge_scheduler.models import EmissionsSample, REALTIME
from charge_scheduler.signal_store import SignalStore

T0 = datetime(2024, 6, 1, 12, tzinfo=UTC)


def forecast(rates, start=T0):
    return [EmissionsSample(start + i * timedelta(minutes=30), r) for i, r in enumerate(rates)]


@pytest.fixture
def store():
    return SignalStore(clock=lambda: T0)


def test_empty_store_has_no_age(store):
    samples, age = store.get_forecast()
    assert samples == ()
    assert age is None
    assert store.get_realtime() == (None, None)


def test_version_bumps_only_on_change(store):
    assert store.update_forecast(forecast([100, 200]), now=T0)
    assert store.snapshot().forecast_version == 1
    assert not store.update_forecast(forecast([100, 200]), now=T0 + timedelta(minutes=15))
    assert store.snapshot().forecast_version == 1
    assert store.update_forecast(forecast([100, 250]), now=T0 + timedelta(minutes=30))
    assert store.snapshot().forecast_version == 2


def test_age_tracks_last_fetch(store):
    store.update_forecast(forecast([100]), now=T0)
    _, age = store.get_forecast(now=T0 + timedelta(hours=3))
    assert age == timedelta(hours=3)


@pytest.mark.parametrize("samples", [
    [],
    forecast([100, -1]),
    [EmissionsSample(T0, 100), EmissionsSample(T0, 120)],
    [EmissionsSample(T0 + timedelta(hours=1), 100), EmissionsSample(T0, 120)],
    [EmissionsSample(T0, 100, REALTIME)],
])
def test_invalid_forecast_is_rejected_and_cache_kept(store, samples):
    store.update_forecast(forecast([100, 200]), now=T0)
    before = store.snapshot()
    with pytest.raises(InvalidSignalData):
        store.update_forecast(samples)
    assert store.snapshot() is before


def test_realtime_must_be_realtime_and_non_negative(store):
    with pytest.raises(InvalidSignalData):
        store.update_realtime(EmissionsSample(T0, 100))
    with pytest.raises(InvalidSignalData):
        store.update_realtime(EmissionsSample(T0, -5, REALTIME))
    assert store.update_realtime(EmissionsSample(T0, 150, REALTIME), now=T0)
    sample, age = store.get_realtime(now=T0 + timedelta(minutes=5))
    assert sample.rate == 150
    assert age == timedelta(minutes=5)


def test_snapshots_are_not_mutated_by_updates(store):
    store.update_forecast(forecast([100]), now=T0)
    old = store.snapshot()
    store.update_forecast(forecast([300]), now=T0)
    assert old.forecast[0].rate == 100
    assert store.snapshot().forecast[0].rate == 300


class FlakyProvider:
    def __init__(self):
        self.forecast = forecast([100, 200])
        self.error = None

    def fetch_forecast(self):
        if self.error is not None:
            raise self.error
        return self.forecast

    def fetch_realtime(self):
        if self.error is not None:
            raise self.error
        return EmissionsSample(T0, 180, REALTIME)


def test_fetch_failures_keep_cached_data(store):
    provider = FlakyProvider()
    fetcher = SignalFetcher(provider, store, clock=lambda: T0)
    assert fetcher.refresh_forecast()
    fetcher.refresh_realtime()

    provider.error = SignalFetchError("connection refused")
    for _ in range(3):
        assert not fetcher.refresh_forecast()
        assert not fetcher.refresh_realtime()
    snapshot = store.snapshot()
    assert snapshot.forecast == tuple(provider.forecast)
    assert snapshot.realtime.rate == 180
    assert snapshot.forecast_failures == 3
    assert snapshot.realtime_failures == 3

    provider.error = None
    fetcher.refresh_forecast()
    assert store.snapshot().forecast_failures == 0


def test_unexpected_provider_error_is_contained(store):
    provider = FlakyProvider()
    provider.error = KeyError("data")
    fetcher = SignalFetcher(provider, store, clock=lambda: T0)
    assert not fetcher.refresh_forecast()
    assert store.snapshot().forecast_failures == 1


def test_refresh_due_respects_intervals(store):
    now = [T0]
    provider = FlakyProvider()
    fetcher = SignalFetcher(provider, store, timedelta(minutes=15), timedelta(minutes=5), clock=lambda: now[0])
    fetcher.refresh_due()
    provider.forecast = forecast([300, 200])
    now[0] = T0 + timedelta(minutes=10)
    fetcher.refresh_due()
    assert store.snapshot().forecast_version == 1
    now[0] = T0 + timedelta(minutes=15)
    assert fetcher.refresh_due()
    assert store.snapshot().forecast_version == 2
