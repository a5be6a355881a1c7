class ChargeSchedulerError(Exception):
    """Base class for all scheduler errors."""


class ConfigError(ChargeSchedulerError):
    pass


class InvalidSignalData(ChargeSchedulerError):
    """Malformed emissions data; the update is rejected and the cache kept."""


class SignalFetchError(ChargeSchedulerError):
    """The signal provider could not deliver data."""


class Infeasible(ChargeSchedulerError):
    """
    The requested energy cannot be delivered before the deadline.

    Carries a best-effort plan (charge at max rate for the whole horizon)
    and the energy that plan falls short by.
    """

    def __init__(self, message, best_effort_plan=None, shortfall_kwh=0.0):
        super().__init__(message)
        self.best_effort_plan = best_effort_plan
        self.shortfall_kwh = shortfall_kwh


class InvalidTransition(ChargeSchedulerError):
    """An actuation state transition outside the state machine."""


class ActuatorError(ChargeSchedulerError):
    retryable = False

    def __init__(self, message, attempts=1):
        super().__init__(message)
        self.attempts = attempts


class ActuatorTransientError(ActuatorError):
    retryable = True


class ActuatorAuthError(ActuatorError):
    pass


class ActuatorFatalError(ActuatorError):
    pass
