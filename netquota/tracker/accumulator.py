"""Traffic accumulation for quota windows.

The controller reports cumulative tx/rx counters per client session, not
per-interval deltas, and sessions reset their counters on reconnect. The
accumulator turns consecutive samples into usage increments for the active
window:

- First sample in a window: store the counters as a baseline, charge nothing
  (so traffic from before the window is never attributed to it).
- Counters went down: the session was reset; the new total itself is the delta.
  Traffic between the last poll and the reset is lost.
- Otherwise: the delta is the difference of totals.

Active minutes are quantized to poll cycles: each cycle whose delta exceeds
the activity threshold adds ceil(poll_interval / 60) minutes (at least 1).
"""

import logging
import math
from datetime import datetime

from netquota.models import ActiveBlock, BlockUsage, ClientSample
from netquota.storage import QuotaStore

logger = logging.getLogger(__name__)

# Minimum bytes per poll for the cycle to count as active
DEFAULT_ACTIVITY_MIN_BYTES = 1024


def compute_delta(current_total: int, last_total: int) -> int:
    """Bytes transferred since the previous sample, tolerating counter resets."""
    if current_total < last_total:
        return current_total
    return current_total - last_total


def active_minutes_per_poll(poll_interval_seconds: float) -> int:
    """Minutes credited for one active poll cycle."""
    return max(1, math.ceil(poll_interval_seconds / 60))


class UsageAccumulator:
    """Converts cumulative controller counters into window usage."""

    def __init__(
        self,
        store: QuotaStore,
        poll_interval_seconds: float,
        activity_min_bytes: int = DEFAULT_ACTIVITY_MIN_BYTES,
    ) -> None:
        """Initialize accumulator.

        Args:
            store: Persistent store holding usage records
            poll_interval_seconds: Interval between polling cycles
            activity_min_bytes: Delta above which a cycle counts as active
        """
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self.activity_min_bytes = activity_min_bytes
        self.minutes_per_poll = active_minutes_per_poll(poll_interval_seconds)

    def process_sample(
        self,
        mac: str,
        sample: ClientSample,
        active: ActiveBlock,
        now: datetime,
    ) -> BlockUsage:
        """Charge a client sample to the active window's usage record.

        Args:
            mac: Device MAC address
            sample: Latest controller sample for the device
            active: Window resolved for `now`
            now: Sample timestamp (local time)

        Returns:
            The updated, persisted usage record

        Raises:
            StorageError: If the usage record cannot be read or written
        """
        usage = self.store.get_or_create_block_usage(
            mac, now.date(), active.index, active.block
        )

        current_total = sample.total_bytes
        last_total = usage.last_total

        if last_total == 0:
            logger.debug(f"{mac}: baseline {current_total} bytes for window {active.block.start}-{active.block.end}")
        else:
            if current_total < last_total:
                logger.debug(f"{mac}: counter reset ({last_total} -> {current_total})")

            delta = compute_delta(current_total, last_total)
            usage.used_bytes += delta

            if delta > self.activity_min_bytes:
                usage.used_minutes += self.minutes_per_poll

            logger.debug(
                f"{mac}: +{delta} bytes, used {usage.used_minutes} min / {usage.used_bytes} bytes"
            )

        usage.last_tx_bytes = sample.tx_bytes
        usage.last_rx_bytes = sample.rx_bytes
        self.store.update_block_usage(usage)
        return usage
