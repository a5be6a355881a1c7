import logging
import time
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Optional

from charge_scheduler.backoff import BackoffPolicy
from charge_scheduler.errors import ActuatorError, ActuatorFatalError
from charge_scheduler.plan_state import ActuationState, Charging, Stopped

logger = logging.getLogger(__name__)

RATE_TOLERANCE_KW = 1e-6


@dataclass(frozen=True)
class StartCharging:
    rate_kw: float


@dataclass(frozen=True)
class StopCharging:
    pass


@dataclass(frozen=True)
class AdjustRate:
    rate_kw: float


@dataclass(frozen=True)
class NoOp:
    reason: str = ""


def decision_name(decision):
    if isinstance(decision, (StartCharging, AdjustRate)):
        return f"{type(decision).__name__}({decision.rate_kw:g})"
    return type(decision).__name__


@dataclass(frozen=True)
class Confirmation:
    decision: object
    new_state: Optional[ActuationState]
    confirmed_at: datetime
    attempts: int = 0
    latency_s: float = 0.0
    skipped: bool = False


class Actuator:
    """
    Executes control decisions against a VehicleClient.

    Calls are retried with `policy`; authorization and fatal errors are not
    retried. A decision that matches the state already confirmed by this
    actuator is acknowledged without calling the vehicle. Every call outcome
    goes to `sink.actuator_call`.
    """

    def __init__(self, vehicle, policy=None, sink=None, clock=None, sleep=time.sleep):
        self.vehicle = vehicle
        self.policy = policy or BackoffPolicy()
        self.sink = sink
        self.clock = clock or (lambda: datetime.now(UTC))
        self.sleep = sleep
        self.confirmed: Optional[ActuationState] = None

    def invalidate(self):
        """Forget the confirmed vehicle state so the next command always goes out."""
        self.confirmed = None

    def _report(self, action, outcome, attempts, latency_s):
        if self.sink is not None:
            self.sink.actuator_call(action, outcome, attempts, latency_s)

    def _already_applied(self, decision):
        if isinstance(decision, (StartCharging, AdjustRate)):
            return (isinstance(self.confirmed, Charging)
                    and abs(self.confirmed.rate_kw - decision.rate_kw) <= RATE_TOLERANCE_KW)
        if isinstance(decision, StopCharging):
            return isinstance(self.confirmed, Stopped)
        return False

    def _call(self, action, fn, *args):
        started = time.monotonic()
        try:
            result, attempts = self.policy.call(fn, *args, sleep=self.sleep)
        except ActuatorError as e:
            self._report(action, f"failed: {type(e).__name__}", e.attempts, time.monotonic() - started)
            raise
        except Exception as e:
            attempts = getattr(e, "attempts", 1)
            self._report(action, f"failed: {type(e).__name__}", attempts, time.monotonic() - started)
            raise ActuatorFatalError(f"{action} failed unexpectedly: {e}", attempts=attempts) from e
        self._report(action, "ok", attempts, time.monotonic() - started)
        return result, attempts, time.monotonic() - started

    def apply(self, decision) -> Confirmation:
        """
        Execute `decision`.

        Returns
        -------
        Confirmation
            The actuation state the vehicle confirmed (None for NoOp).

        Raises
        ------
        ActuatorTransientError
            Retries exhausted on transient failures.
        ActuatorAuthError, ActuatorFatalError
            Non-retryable failures.
        """
        action = decision_name(decision)
        if isinstance(decision, NoOp):
            return Confirmation(decision, None, self.clock(), skipped=True)
        if self._already_applied(decision):
            logger.debug("%s already applied, skipping vehicle call", action)
            self._report(action, "skipped", 0, 0.0)
            return Confirmation(decision, self.confirmed, self.clock(), skipped=True)

        if isinstance(decision, StartCharging):
            _, attempts, latency = self._call(action, self.vehicle.start_charge, decision.rate_kw)
            new_state = Charging(decision.rate_kw)
        elif isinstance(decision, AdjustRate):
            _, attempts, latency = self._call(action, self.vehicle.set_rate, decision.rate_kw)
            new_state = Charging(decision.rate_kw)
        elif isinstance(decision, StopCharging):
            _, attempts, latency = self._call(action, self.vehicle.stop_charge)
            new_state = Stopped()
        else:
            raise TypeError(f"unknown decision {decision!r}")

        self.confirmed = new_state
        return Confirmation(decision, new_state, self.clock(), attempts, latency)

    def status(self):
        """Query the vehicle and reconcile the confirmed state with what it reports."""
        status, _, _ = self._call("GetStatus", self.vehicle.get_status)
        if not status.charging:
            self.confirmed = Stopped()
        elif not isinstance(self.confirmed, Charging):
            self.confirmed = Charging(status.rate_kw)
        return status
