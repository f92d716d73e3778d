"""Traffic accumulation and the polling loop."""

from netquota.tracker.accumulator import UsageAccumulator, active_minutes_per_poll, compute_delta
from netquota.tracker.poller import Poller, PollStats

__all__ = [
    "Poller",
    "PollStats",
    "UsageAccumulator",
    "active_minutes_per_poll",
    "compute_delta",
]
