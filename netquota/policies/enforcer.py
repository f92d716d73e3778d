"""Quota enforcement.

Every evaluation recomputes the target posture from scratch (level-triggered):

1. No active window: OUTSIDE_HOURS if the device has block_outside, else UNBLOCKED.
2. used_minutes >= limit_minutes + bonus_minutes: TIME_LIMIT.
3. used_bytes >= limit_bytes + bonus_bytes: DATA_LIMIT.
4. Otherwise UNBLOCKED.

A MANUAL block is sticky: automated evaluation never replaces it. Only
manual_unblock() and remove_device() clear it.

The controller is only called when the target differs from the persisted
device state. The call happens before any state is written, so a failed call
leaves the previous state in place and the next cycle retries.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from netquota.collectors.base import DeviceController
from netquota.errors import DeviceNotFoundError, InvariantViolation, NoActiveWindowError
from netquota.models import (
    BlockReason,
    BlockUsage,
    DeviceConfig,
    DeviceState,
    TimeBlock,
    normalize_mac,
)
from netquota.policies.schedule import resolve_active_block
from netquota.storage import QuotaStore

logger = logging.getLogger(__name__)


def effective_limit(base: Optional[int], bonus: int) -> Optional[int]:
    """Add a bonus to a limit. An unset limit stays unset whatever the bonus."""
    if base is None:
        return None
    return base + bonus


def evaluate_limits(block: TimeBlock, usage: Optional[BlockUsage]) -> BlockReason:
    """Decide the posture for a window from its usage.

    Limits come from the configured block so schedule edits apply to the
    running window; bonuses come from the usage record. A window with no
    usage record yet has used nothing.
    """
    if usage is None:
        used_minutes = used_bytes = bonus_minutes = bonus_bytes = 0
    else:
        used_minutes = usage.used_minutes
        used_bytes = usage.used_bytes
        bonus_minutes = usage.bonus_minutes
        bonus_bytes = usage.bonus_bytes

    limit_minutes = effective_limit(block.limit_minutes, bonus_minutes)
    if limit_minutes is not None and used_minutes >= limit_minutes:
        return BlockReason.TIME_LIMIT

    limit_bytes = effective_limit(block.limit_bytes, bonus_bytes)
    if limit_bytes is not None and used_bytes >= limit_bytes:
        return BlockReason.DATA_LIMIT

    return BlockReason.UNBLOCKED


class EnforcementEngine:
    """Drives block/unblock decisions for managed devices."""

    def __init__(
        self,
        store: QuotaStore,
        controller: DeviceController,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Persistent store for usage and device state
            controller: Network controller performing the actual block/unblock
            clock: Source of local wall-clock time for operator actions
        """
        self.store = store
        self.controller = controller
        self.clock = clock

    def check_and_enforce(
        self,
        mac: str,
        config: DeviceConfig,
        now: datetime,
        record_usage: bool = True,
    ) -> BlockReason:
        """Evaluate a device against its schedule and apply the result.

        Args:
            mac: Device MAC address
            config: Device configuration
            now: Local wall-clock time of the evaluation
            record_usage: If False, do not create a usage record for the
                window (used for devices that are not currently connected)

        Returns:
            The device's blocking posture after enforcement

        Raises:
            InvariantViolation: If the device's schedules are malformed
            StorageError: If state cannot be read or written
            ControllerError: If the block/unblock call fails
        """
        mac = normalize_mac(mac)
        active = resolve_active_block(config.schedules, now)
        state = self.store.get_device_state(mac)

        usage: Optional[BlockUsage] = None
        if active is None:
            target = BlockReason.OUTSIDE_HOURS if config.block_outside else BlockReason.UNBLOCKED
        else:
            if record_usage:
                usage = self.store.get_or_create_block_usage(
                    mac, now.date(), active.index, active.block
                )
            else:
                usage = self.store.get_block_usage(mac, now.date(), active.index)
            target = evaluate_limits(active.block, usage)

        if state.blocked_reason is BlockReason.MANUAL:
            if target is not BlockReason.MANUAL:
                logger.debug(f"{mac}: manual block is sticky, ignoring {target.label}")
            return BlockReason.MANUAL

        if target is BlockReason.TIME_LIMIT and state.blocked_reason is not target and usage:
            logger.info(
                f"Device {config.display_name} ({mac}) reached time limit "
                f"({usage.used_minutes} min used, {usage.bonus_minutes} bonus)"
            )
        elif target is BlockReason.DATA_LIMIT and state.blocked_reason is not target and usage:
            logger.info(
                f"Device {config.display_name} ({mac}) reached data limit "
                f"({usage.used_bytes} bytes used, {usage.bonus_bytes} bonus)"
            )

        self._transition(state, target, now)

        if usage is not None and usage.blocked_reason is not target:
            usage.blocked_reason = target
            self.store.update_block_usage(usage)

        return target

    def block_device(
        self,
        mac: str,
        reason: BlockReason,
        now: Optional[datetime] = None,
    ) -> bool:
        """Block a device for a reason.

        A device that is manually blocked keeps its manual reason. Blocking
        again with the reason already persisted does nothing.

        Returns:
            True if the controller was called
        """
        if not reason.is_blocked:
            raise ValueError("block_device requires a blocking reason")

        state = self.store.get_device_state(mac)
        if state.blocked_reason is BlockReason.MANUAL and reason is not BlockReason.MANUAL:
            return False
        return self._transition(state, reason, now or self.clock())

    def unblock_device(self, mac: str, now: Optional[datetime] = None) -> bool:
        """Unblock a device whatever its current reason, including MANUAL.

        Returns:
            True if the controller was called
        """
        state = self.store.get_device_state(mac)
        return self._transition(state, BlockReason.UNBLOCKED, now or self.clock())

    def _transition(self, state: DeviceState, target: BlockReason, now: datetime) -> bool:
        """Move a device to a target posture if it is not already there."""
        if state.blocked_reason is target:
            logger.debug(f"{state.mac}: already {target.label}")
            return False

        if target.is_blocked:
            self.controller.block_client(state.mac)
            state.blocked_at = now
            logger.info(f"Blocked {state.mac} ({target.label})")
        else:
            self.controller.unblock_client(state.mac)
            state.unblocked_at = now
            logger.info(f"Unblocked {state.mac} (was {state.blocked_reason.label})")

        state.blocked_reason = target
        self.store.save_device_state(state)
        return True

    def manual_block(self, mac: str) -> bool:
        """Block a device until it is manually unblocked."""
        return self.block_device(mac, BlockReason.MANUAL)

    def manual_unblock(self, mac: str) -> bool:
        """Clear any block, including a manual one.

        The active window's usage record, if any, is marked unblocked as well.
        A device still over its limits is blocked again by the next cycle.

        Returns:
            True if the controller was called
        """
        mac = normalize_mac(mac)
        now = self.clock()
        called = self.unblock_device(mac, now)

        config = self.store.get_device_config(mac)
        if config is None:
            return called

        try:
            active = resolve_active_block(config.schedules, now)
        except InvariantViolation as e:
            logger.warning(f"{mac}: cannot resync window usage: {e}")
            return called

        if active is not None:
            usage = self.store.get_block_usage(mac, now.date(), active.index)
            if usage is not None and usage.is_blocked:
                usage.blocked_reason = BlockReason.UNBLOCKED
                self.store.update_block_usage(usage)

        return called

    def remove_device(self, mac: str) -> bool:
        """Stop managing a device and make sure it is left unblocked.

        The device is unblocked first; if the controller call fails the
        configuration is kept so the device stays managed. Usage history is kept.

        Returns:
            True if a configuration was deleted

        Raises:
            ControllerError: If the unblock call fails
        """
        self.manual_unblock(mac)
        deleted = self.store.delete_device_config(mac)
        if deleted:
            logger.info(f"Removed device {normalize_mac(mac)}")
        return deleted

    def add_bonus_time(self, mac: str, minutes: int) -> BlockReason:
        """Grant extra minutes in the active window and re-evaluate the device.

        Raises:
            DeviceNotFoundError: If the device is not managed
            NoActiveWindowError: If no window is active now
        """
        if minutes <= 0:
            raise ValueError("Bonus minutes must be positive")

        config, active_index, now = self._prepare_bonus(mac)
        self.store.add_bonus_time(config.mac, now.date(), active_index, minutes)
        logger.info(f"Granted {minutes} bonus minutes to {config.display_name}")
        return self.check_and_enforce(config.mac, config, now)

    def add_bonus_data(self, mac: str, num_bytes: int) -> BlockReason:
        """Grant extra bytes in the active window and re-evaluate the device.

        Raises:
            DeviceNotFoundError: If the device is not managed
            NoActiveWindowError: If no window is active now
        """
        if num_bytes <= 0:
            raise ValueError("Bonus bytes must be positive")

        config, active_index, now = self._prepare_bonus(mac)
        self.store.add_bonus_data(config.mac, now.date(), active_index, num_bytes)
        logger.info(f"Granted {num_bytes} bonus bytes to {config.display_name}")
        return self.check_and_enforce(config.mac, config, now)

    def _prepare_bonus(self, mac: str) -> tuple[DeviceConfig, int, datetime]:
        config = self.store.get_device_config(mac)
        if config is None:
            raise DeviceNotFoundError(f"Device {normalize_mac(mac)} is not managed")

        now = self.clock()
        active = resolve_active_block(config.schedules, now)
        if active is None:
            raise NoActiveWindowError(f"No active time block for {config.display_name}")

        # Bonus rows are updated in place, so the window needs a record
        self.store.get_or_create_block_usage(config.mac, now.date(), active.index, active.block)
        return config, active.index, now

    def is_device_blocked(self, mac: str) -> tuple[bool, BlockReason]:
        """Return (blocked, reason) from the persisted device state."""
        state = self.store.get_device_state(mac)
        return state.is_blocked, state.blocked_reason
