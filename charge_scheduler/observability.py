import logging

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

LATENCY_BINS_S = [0, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, float("inf")]


class LoggingSink:
    """Reports session events to the log."""

    def tick(self, record):
        logger.info("tick %s decision=%s state=%s delivered=%.3fkWh realtime=%s",
                    record["time"].isoformat(), record["decision"], record["actuation_state"],
                    record["energy_delivered_kwh"], record.get("realtime_rate"))

    def plan(self, now, plan, reason):
        logger.info("re-optimized at %s (%s): %s", now.isoformat(), reason, plan.summary())

    def actuator_call(self, action, outcome, attempts, latency_s):
        level = logging.INFO if outcome in ("ok", "skipped") else logging.WARNING
        logger.log(level, "actuator %s %s after %d attempt(s) in %.3fs", action, outcome, attempts, latency_s)

    def outcome(self, outcome, state):
        logger.info("session finished: %s (delivered %.3f of %.3f kWh)", outcome.value,
                    state.energy_delivered_kwh, state.constraints.energy_required_kwh)


class RecordingSink(LoggingSink):
    """LoggingSink that also keeps every event in memory for analysis."""

    def __init__(self):
        self.ticks = []
        self.plans = []
        self.calls = []
        self.outcomes = []

    def tick(self, record):
        super().tick(record)
        self.ticks.append(dict(record))

    def plan(self, now, plan, reason):
        super().plan(now, plan, reason)
        self.plans.append({"time": now, "reason": reason, **plan.summary()})

    def actuator_call(self, action, outcome, attempts, latency_s):
        super().actuator_call(action, outcome, attempts, latency_s)
        self.calls.append({"action": action, "outcome": outcome, "attempts": attempts, "latency_s": latency_s})

    def outcome(self, outcome, state):
        super().outcome(outcome, state)
        self.outcomes.append(outcome)

    def latency_histogram(self):
        """Counts of actuator call latencies per bin of LATENCY_BINS_S."""
        latencies = [call["latency_s"] for call in self.calls if call["outcome"] != "skipped"]
        counts, _ = np.histogram(latencies, bins=LATENCY_BINS_S)
        labels = [f"<={upper}s" for upper in LATENCY_BINS_S[1:]]
        return pd.Series(counts, index=labels, name="calls")
