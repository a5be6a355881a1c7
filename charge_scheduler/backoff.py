import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def is_retryable(exc):
    return getattr(exc, "retryable", False)


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff for calls to unreliable external services.

    Attempt n (1-based) that fails with an exception accepted by
    `retryable` is followed by a sleep of min(base_delay * 2**(n-1), max_delay)
    seconds, until `max_attempts` calls have been made.
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    retryable: callable = field(default=is_retryable, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")

    def delay(self, attempt):
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    def call(self, fn, *args, sleep=time.sleep, **kwargs):
        """
        Call `fn` until it succeeds, fails with a non-retryable error or runs out of attempts.

        Returns
        -------
        (object, int)
            The result of `fn` and the number of attempts made.

        Raises
        ------
        Exception
            The last error raised by `fn`, with an `attempts` attribute set.
        """
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs), attempt
            except Exception as exc:
                if attempt >= self.max_attempts or not self.retryable(exc):
                    exc.attempts = attempt
                    raise
                wait = self.delay(attempt)
                logger.warning("Attempt %d/%d of %s failed (%s); retrying in %.1fs",
                               attempt, self.max_attempts, getattr(fn, "__name__", fn), exc, wait)
                sleep(wait)
                attempt += 1
