"""Polling loop driving quota accounting and enforcement.

One cycle:
1. List managed devices from the store (enabled only).
2. Fetch connected clients from the controller once.
3. For each connected managed device: resolve window, accumulate traffic, enforce.
4. For each managed device that is not connected: enforce without recording
   usage, so outside-hours blocks are applied (and lifted) while it is offline.

Failures are scoped to a single device; the rest of the cycle continues.
Cycles never overlap: the driver waits for a cycle to finish before it
schedules the next one.
"""

import asyncio
import logging
import signal
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from netquota.collectors.base import DeviceController
from netquota.errors import QuotaError, StorageError
from netquota.models import BlockReason, ClientSample, DeviceConfig
from netquota.policies.device_manager import DeviceManager
from netquota.policies.enforcer import EnforcementEngine
from netquota.policies.schedule import resolve_active_block
from netquota.storage import QuotaStore
from netquota.tracker.accumulator import UsageAccumulator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 30.0


@dataclass
class PollStats:
    """Counters for one polling cycle."""

    managed: int = 0
    connected: int = 0
    processed: int = 0
    swept: int = 0
    blocked: int = 0
    errors: int = 0
    completed: bool = False


class Poller:
    """Runs polling cycles over all managed devices."""

    def __init__(
        self,
        store: QuotaStore,
        controller: DeviceController,
        engine: EnforcementEngine,
        accumulator: UsageAccumulator,
        interval_seconds: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.controller = controller
        self.engine = engine
        self.accumulator = accumulator
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.cycles = 0
        self.last_stats: Optional[PollStats] = None
        self._stopping = False
        self._stop_event: Optional[asyncio.Event] = None

    def poll_once(self) -> PollStats:
        """Run one polling cycle and return its statistics.

        The store is connected only for the duration of the cycle (unless the
        caller already holds it open), so operator commands in other processes
        can write between cycles.
        """
        stats = PollStats()

        try:
            with self.store.session():
                self._run_cycle(stats)
        except StorageError as e:
            logger.error(f"Error opening store: {e}")

        return stats

    def _run_cycle(self, stats: PollStats) -> None:
        try:
            manager = DeviceManager(self.store.list_device_configs())
        except QuotaError as e:
            logger.error(f"Error listing device configs: {e}")
            return

        stats.managed = len(manager)
        if not manager:
            stats.completed = True
            return

        try:
            clients = self.controller.list_connected_clients()
        except QuotaError as e:
            logger.error(f"Error getting clients from controller: {e}")
            return

        now = self.clock()
        seen: set[str] = set()

        for sample in clients:
            config = manager.get_device(sample.mac)
            if config is None or config.mac in seen:
                continue
            seen.add(config.mac)
            stats.connected += 1

            if self._run_isolated(config, stats, lambda: self._process_client(config, sample, now)):
                stats.processed += 1

        for config in manager.get_all_devices():
            if config.mac in seen:
                continue
            if self._run_isolated(
                config,
                stats,
                lambda: self.engine.check_and_enforce(config.mac, config, now, record_usage=False),
            ):
                stats.swept += 1

        stats.completed = True
        self.cycles += 1
        logger.debug(
            f"Cycle {self.cycles}: {stats.connected}/{stats.managed} connected, "
            f"{stats.blocked} blocked, {stats.errors} errors"
        )

    def _run_isolated(
        self,
        config: DeviceConfig,
        stats: PollStats,
        action: Callable[[], BlockReason],
    ) -> bool:
        """Run one device's work, logging and counting any failure."""
        try:
            reason = action()
        except QuotaError as e:
            stats.errors += 1
            logger.warning(f"Error processing {config.display_name} ({config.mac}): {e}")
            return False
        except Exception:
            stats.errors += 1
            logger.exception(f"Unexpected error processing {config.display_name} ({config.mac})")
            return False

        if reason.is_blocked:
            stats.blocked += 1
        return True

    def _process_client(self, config: DeviceConfig, sample: ClientSample, now: datetime) -> BlockReason:
        """Accumulate a connected device's traffic and enforce its limits."""
        active = resolve_active_block(config.schedules, now)
        if active is not None:
            self.accumulator.process_sample(config.mac, sample, active, now)
        return self.engine.check_and_enforce(config.mac, config, now)

    def stop(self) -> None:
        """Ask the driver to stop after the in-flight cycle.

        Calling it before run_forever() starts makes run_forever() return
        without polling.
        """
        self._stopping = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def run_forever(self, install_signal_handlers: bool = True) -> None:
        """Poll immediately, then every interval, until stopped.

        SIGINT/SIGTERM (or stop()) end the loop once the current cycle has
        finished; a cycle is never interrupted mid-device.
        """
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        stop_event = self._stop_event
        if self._stopping:
            stop_event.set()

        def signal_handler() -> None:
            logger.info("Shutdown signal received")
            stop_event.set()

        signals = (signal.SIGINT, signal.SIGTERM) if install_signal_handlers else ()
        for sig in signals:
            try:
                loop.add_signal_handler(sig, signal_handler)
            except NotImplementedError:
                # Signal handlers not supported on this platform (e.g., Windows)
                pass

        logger.info(f"Starting poller with {self.interval_seconds:g}s interval")

        try:
            while not stop_event.is_set():
                # Blocking I/O runs off the loop so signals are still handled
                stats = await asyncio.to_thread(self.poll_once)
                self.last_stats = stats
                if not stats.completed:
                    logger.warning("Polling cycle aborted, retrying next interval")

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            for sig in signals:
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, ValueError):
                    pass
            logger.info("Poller stopped")
            self._stopping = False
            self._stop_event = None
