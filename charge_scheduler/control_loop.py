import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC

from charge_scheduler import config
from charge_scheduler.actuator import AdjustRate, NoOp, StartCharging, StopCharging, decision_name
from charge_scheduler.errors import (ActuatorAuthError, ActuatorError, ActuatorFatalError,
                                     ActuatorTransientError, Infeasible, InvalidSignalData)
from charge_scheduler.greedy_scheduler import optimize_schedule
from charge_scheduler.models import EmissionsSample, FORECAST
from charge_scheduler.observability import LoggingSink
from charge_scheduler.plan_state import Charging, Faulted, PlanState, SessionOutcome, Stopped

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControlSettings:
    tick_interval: timedelta = config.TICK_INTERVAL
    min_dwell: timedelta = config.MIN_DWELL
    divergence_threshold: float = config.DIVERGENCE_THRESHOLD
    realtime_max_age: timedelta = config.REALTIME_MAX_AGE
    drift_tolerance_kwh: float = config.DRIFT_TOLERANCE_KWH
    slot_width: timedelta = config.SLOT_WIDTH
    shutdown_timeout: timedelta = config.SHUTDOWN_TIMEOUT


def should_reoptimize(state, snapshot, now, settings=ControlSettings()):
    """
    Decide whether the plan must be recomputed before acting at `now`.

    Returns
    -------
    (bool, str)
        The decision and a short reason for the log.
    """
    if not snapshot.forecast:
        return False, "no forecast"
    plan = state.plan
    if plan is None:
        return True, "no plan"
    if snapshot.forecast_version != plan.forecast_version:
        return True, f"forecast version {plan.forecast_version} -> {snapshot.forecast_version}"
    assumed = plan.assumed_rate_at(now)
    if assumed is None:
        return True, "outside plan horizon"

    realtime = snapshot.realtime
    age = snapshot.realtime_age(now)
    if realtime is not None and age is not None and age <= settings.realtime_max_age:
        divergence = abs(realtime.rate - assumed) / max(assumed, 1e-9)
        if divergence > settings.divergence_threshold:
            return True, f"realtime {realtime.rate:g} diverges from assumed {assumed:g} by {divergence:.0%}"

    planned = plan.energy_between(plan.created_at, now)
    delivered = state.energy_delivered_kwh - state.energy_at_plan_kwh
    if abs(planned - delivered) > settings.drift_tolerance_kwh:
        return True, f"delivered {delivered:.3f} kWh against {planned:.3f} kWh planned"
    return False, "plan current"


def blend_realtime(forecast, realtime, now, max_age, realtime_fetched_at=None):
    """
    Forecast with the current step replaced by a fresh realtime reading.

    The realtime rate is held from `now` until the next forecast sample.
    """
    if realtime is None or realtime_fetched_at is None or now - realtime_fetched_at > max_age:
        return tuple(forecast)
    before = [s for s in forecast if s.timestamp < now]
    after = [s for s in forecast if s.timestamp > now]
    return tuple(before + [EmissionsSample(now, realtime.rate, FORECAST)] + after)


class HysteresisFilter:
    """
    Debounces on/off changes around plan boundaries.

    A change whose boundary is at least `min_dwell` old, or that has no
    boundary behind it (the plan asked for it from the start), is applied at
    once. A younger one is applied only once a second consecutive tick still
    asks for it; until then the previous state holds.
    """

    def __init__(self, min_dwell):
        self.min_dwell = min_dwell
        self._pending = None
        self._seen = 0

    def reset(self):
        self._pending = None
        self._seen = 0

    def filter(self, desired_on, current_on, boundary_age):
        if desired_on == current_on:
            self.reset()
            return current_on
        if self._pending != desired_on:
            self._pending = desired_on
            self._seen = 0
        self._seen += 1
        if boundary_age is None or boundary_age >= self.min_dwell or self._seen >= 2:
            self.reset()
            return desired_on
        return current_on


class ControlLoop:
    """
    Keeps one vehicle's charging in line with the emission-minimal plan.

    Each tick refreshes signals, reconciles with the vehicle, re-plans when
    the inputs moved, decides an action and hands it to the actuator.
    Component failures degrade the tick instead of ending the process.
    """

    def __init__(self, constraints, store, actuator, fetcher=None, sink=None, clock=None,
                 settings=None, state=None, session_store=None):
        self.clock = clock or (lambda: datetime.now(UTC))
        self.store = store
        self.actuator = actuator
        self.fetcher = fetcher
        self.sink = sink or LoggingSink()
        self.settings = settings or ControlSettings()
        self.session_store = session_store
        self.state = state or PlanState(constraints, started_at=self.clock())
        self.hysteresis = HysteresisFilter(self.settings.min_dwell)
        self._optimize_lock = threading.Lock()
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._fault_reported = False
        self._resumed = state is not None

    @property
    def constraints(self):
        return self.state.constraints

    # -- planning --------------------------------------------------------

    def reoptimize(self, now, snapshot, reason):
        """Plan the remaining energy over the remaining horizon."""
        if not self._optimize_lock.acquire(blocking=False):
            logger.debug("Optimization already in progress, skipping")
            return self.state.plan
        try:
            forecast = blend_realtime(snapshot.forecast, snapshot.realtime, now,
                                      self.settings.realtime_max_age, snapshot.realtime_fetched_at)
            try:
                plan = optimize_schedule(
                    forecast, self.constraints, now,
                    energy_required_kwh=self.state.energy_remaining_kwh,
                    slot_width=self.settings.slot_width,
                    forecast_version=snapshot.forecast_version,
                )
            except Infeasible as e:
                logger.warning("Session infeasible, charging at max rate: %s (short by %.3f kWh)",
                               e, e.shortfall_kwh)
                plan = e.best_effort_plan
            except (InvalidSignalData, ValueError) as e:
                logger.error("Optimization failed, keeping current plan: %s", e)
                return self.state.plan
            self.state.replace_plan(plan, now)
            self.sink.plan(now, plan, reason)
            return plan
        finally:
            self._optimize_lock.release()

    # -- decisions -------------------------------------------------------

    def _terminal(self, now):
        state = self.state
        if state.target_met:
            return SessionOutcome.MET_TARGET
        if now > self.constraints.deadline:
            return SessionOutcome.DEADLINE_MISSED
        return None

    def decide(self, now):
        """
        Choose the next actuation.

        Returns
        -------
        (decision, SessionOutcome or None)
            The decision and, for terminal ticks, the outcome it concludes.
        """
        state = self.state
        current = state.actuation_state
        outcome = self._terminal(now)

        if isinstance(current, Faulted):
            if outcome is SessionOutcome.DEADLINE_MISSED:
                return NoOp("faulted past deadline"), SessionOutcome.FAULTED
            return NoOp(f"faulted: {current.reason}"), outcome
        if outcome is not None:
            if isinstance(current, Stopped):
                return NoOp("session finished"), outcome
            return StopCharging(), outcome

        plan = state.plan
        if plan is None:
            return NoOp("no plan"), None

        interval = plan.interval_at(now)
        desired_on = interval is not None
        current_on = isinstance(current, Charging)
        boundary = plan.last_boundary_before(now)
        boundary_age = now - boundary if boundary is not None else None
        on = self.hysteresis.filter(desired_on, current_on, boundary_age)

        if on and not current_on:
            return StartCharging(self._rate_for(interval)), None
        if on and desired_on and abs(current.rate_kw - self._rate_for(interval)) > 1e-6:
            return AdjustRate(self._rate_for(interval)), None
        if not on and current_on:
            return StopCharging(), None
        return NoOp("holding" if on == desired_on else "debouncing"), None

    def _rate_for(self, interval):
        c = self.constraints
        return min(max(interval.rate_kw, c.min_rate_kw), c.max_rate_kw)

    # -- tick ------------------------------------------------------------

    def _sync_vehicle(self, now):
        """Query the vehicle; confirms energy delivered and picks up external changes."""
        state = self.state
        if isinstance(state.actuation_state, Faulted):
            return None
        try:
            status = self.actuator.status()
        except ActuatorTransientError as e:
            logger.warning("Vehicle status unavailable: %s", e)
            return None
        except (ActuatorAuthError, ActuatorFatalError) as e:
            self._fault(str(e), now)
            return None

        if self._resumed:
            self._resumed = False
            if state.reconcile(status.energy_added_kwh, now):
                logger.info("Resumed session: vehicle counter puts delivered energy at %.3f kWh",
                            state.energy_delivered_kwh)

        current = state.actuation_state
        if status.charging and not isinstance(current, Charging):
            logger.info("Vehicle is charging at %.2f kW outside our control", status.rate_kw)
            state.confirm(Charging(status.rate_kw), now)
        elif not status.charging and isinstance(current, Charging):
            logger.info("Vehicle reports it is not charging")
            state.confirm(Stopped(), now)
        else:
            state.accrue(now)
        state.vehicle_energy_kwh = status.energy_added_kwh
        return status

    def _fault(self, reason, now):
        logger.error("Session faulted: %s", reason)
        self.state.fault(reason, now)
        self.actuator.invalidate()
        if not self._fault_reported:
            self._fault_reported = True
            self.sink.outcome(SessionOutcome.FAULTED, self.state)

    def _apply(self, decision, now):
        try:
            confirmation = self.actuator.apply(decision)
        except ActuatorTransientError as e:
            logger.warning("%s not confirmed, will retry next tick: %s", decision_name(decision), e)
            return False
        except ActuatorError as e:
            self._fault(f"{decision_name(decision)}: {e}", now)
            return False
        if confirmation.new_state is not None:
            # The confirmed rate now accounts for any downtime
            self._resumed = False
            self.state.confirm(confirmation.new_state, max(now, confirmation.confirmed_at))
        return True

    def tick(self):
        """Run one control step and return the decision taken."""
        now = self.clock()
        state = self.state
        if state.finished:
            return NoOp("session finished")

        if self.fetcher is not None:
            self.fetcher.refresh_due(now)
        self._sync_vehicle(now)

        snapshot = self.store.snapshot()
        if (self._terminal(now) is None and now < self.constraints.deadline
                and not isinstance(state.actuation_state, Faulted)):
            needed, reason = should_reoptimize(state, snapshot, now, self.settings)
            if needed:
                self.reoptimize(now, snapshot, reason)

        decision, outcome = self.decide(now)
        applied = self._apply(decision, now)
        if outcome is not None and applied:
            state.finish(outcome)
            if outcome is not SessionOutcome.FAULTED or not self._fault_reported:
                self.sink.outcome(outcome, state)

        realtime = snapshot.realtime
        self.sink.tick({
            "time": now,
            "decision": decision_name(decision),
            "actuation_state": repr(state.actuation_state),
            "energy_delivered_kwh": state.energy_delivered_kwh,
            "realtime_rate": realtime.rate if realtime is not None else None,
            "forecast_age_s": _seconds(snapshot.forecast_age(now)),
            "forecast_failures": snapshot.forecast_failures,
            "infeasible": state.infeasible,
        })
        if self.session_store is not None:
            self.session_store.save(state)
        return decision

    # -- lifecycle -------------------------------------------------------

    def wake(self):
        """Run the next tick now (fresh signal data arrived)."""
        self._wake.set()

    def stop(self):
        self._stopping.set()
        self._wake.set()

    def reset_fault(self):
        """External recovery: Faulted -> Idle."""
        if self.state.reset_fault(self.clock()):
            self.actuator.invalidate()
            self._fault_reported = False
            self.wake()
            return True
        return False

    def run(self):
        """Tick until the session finishes or `stop()` is called, then shut down."""
        if self.fetcher is not None:
            self.fetcher.start(on_update=self.wake)
        try:
            while not self._stopping.is_set() and not self.state.finished:
                self.tick()
                self._wake.wait(self.settings.tick_interval.total_seconds())
                self._wake.clear()
        finally:
            self.shutdown()
        return self.state.outcome

    def shutdown(self):
        """Best-effort stop if charging, bounded by `shutdown_timeout`."""
        if self.fetcher is not None:
            self.fetcher.stop()
        if not isinstance(self.state.actuation_state, Charging):
            logger.info("Shutting down (not charging)")
            if self.session_store is not None:
                self.session_store.save(self.state)
            return True
        timeout = self.settings.shutdown_timeout.total_seconds()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="shutdown")
        future = executor.submit(self.actuator.apply, StopCharging())
        try:
            confirmation = future.result(timeout=timeout)
            self.state.confirm(confirmation.new_state, self.clock())
            logger.info("Stopped charging on shutdown")
            return True
        except FutureTimeout:
            logger.warning("Stop on shutdown not confirmed within %.0fs, exiting anyway", timeout)
        except ActuatorError as e:
            logger.warning("Stop on shutdown failed: %s", e)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            if self.session_store is not None:
                self.session_store.save(self.state)
        return False


def _seconds(delta):
    return None if delta is None else delta.total_seconds()
