"""Tests for quota evaluation and the enforcement state machine."""

from datetime import datetime

import pytest

from conftest import MB, MONDAY, FakeController, at, make_device
from netquota.errors import ControllerError, DeviceNotFoundError, NoActiveWindowError
from netquota.models import BlockReason, BlockUsage, DeviceConfig, TimeBlock
from netquota.policies import EnforcementEngine, effective_limit, evaluate_limits
from netquota.storage import QuotaStore

MAC = "aa:bb:cc:00:00:01"


def _set_usage(store: QuotaStore, config: DeviceConfig, now: datetime, minutes: int = 0, num_bytes: int = 0) -> None:
    block = config.schedules[0].time_blocks[0]
    usage = store.get_or_create_block_usage(config.mac, now.date(), 0, block)
    usage.used_minutes = minutes
    usage.used_bytes = num_bytes
    store.update_block_usage(usage)


class TestEffectiveLimit:
    def test_unset_limit_stays_unset(self) -> None:
        assert effective_limit(None, 30) is None

    def test_bonus_added(self) -> None:
        assert effective_limit(60, 15) == 75

    def test_zero_limit(self) -> None:
        assert effective_limit(0, 0) == 0


class TestEvaluateLimits:
    def _usage(self, **kwargs: int) -> BlockUsage:
        return BlockUsage(mac=MAC, date=MONDAY.date(), block_index=0, start_time="08:00", end_time="09:00", **kwargs)

    def test_no_usage_record(self) -> None:
        block = TimeBlock(start="08:00", end="09:00", limit_minutes=60)
        assert evaluate_limits(block, None) is BlockReason.UNBLOCKED

    def test_zero_limit_blocks_immediately(self) -> None:
        block = TimeBlock(start="08:00", end="09:00", limit_minutes=0)
        assert evaluate_limits(block, None) is BlockReason.TIME_LIMIT

    def test_time_limit_at_boundary(self) -> None:
        block = TimeBlock(start="08:00", end="09:00", limit_minutes=60)
        assert evaluate_limits(block, self._usage(used_minutes=59)) is BlockReason.UNBLOCKED
        assert evaluate_limits(block, self._usage(used_minutes=60)) is BlockReason.TIME_LIMIT

    def test_data_limit(self) -> None:
        block = TimeBlock(start="08:00", end="09:00", limit_bytes=100)
        assert evaluate_limits(block, self._usage(used_bytes=100)) is BlockReason.DATA_LIMIT

    def test_time_checked_before_data(self) -> None:
        block = TimeBlock(start="08:00", end="09:00", limit_minutes=10, limit_bytes=100)
        usage = self._usage(used_minutes=10, used_bytes=100)
        assert evaluate_limits(block, usage) is BlockReason.TIME_LIMIT

    def test_bonus_raises_limit(self) -> None:
        block = TimeBlock(start="08:00", end="09:00", limit_minutes=60)
        assert evaluate_limits(block, self._usage(used_minutes=70, bonus_minutes=15)) is BlockReason.UNBLOCKED

    def test_unlimited_ignores_bonus(self) -> None:
        block = TimeBlock(start="08:00", end="09:00")
        usage = self._usage(used_minutes=10_000, used_bytes=10**12, bonus_bytes=5)
        assert evaluate_limits(block, usage) is BlockReason.UNBLOCKED


class TestCheckAndEnforce:
    """Tests for EnforcementEngine.check_and_enforce."""

    def test_under_limits_stays_unblocked(
        self, engine: EnforcementEngine, controller: FakeController, device: DeviceConfig
    ) -> None:
        reason = engine.check_and_enforce(MAC, device, at(MONDAY, "08:10"))
        assert reason is BlockReason.UNBLOCKED
        assert controller.block_calls == []
        assert controller.unblock_calls == []

    def test_creates_usage_record(self, engine: EnforcementEngine, store: QuotaStore, device: DeviceConfig) -> None:
        engine.check_and_enforce(MAC, device, at(MONDAY, "08:10"))
        usage = store.get_block_usage(MAC, MONDAY.date(), 0)
        assert usage is not None
        assert usage.limit_minutes == 60
        assert usage.limit_bytes == 100 * MB

    def test_over_time_limit_blocks_once(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        device: DeviceConfig,
    ) -> None:
        now = at(MONDAY, "08:40")
        _set_usage(store, device, now, minutes=60)

        assert engine.check_and_enforce(MAC, device, now) is BlockReason.TIME_LIMIT
        assert engine.check_and_enforce(MAC, device, now) is BlockReason.TIME_LIMIT
        assert controller.block_calls == [MAC]

        state = store.get_device_state(MAC)
        assert state.blocked_reason is BlockReason.TIME_LIMIT
        assert state.blocked_at == now

        usage = store.get_block_usage(MAC, now.date(), 0)
        assert usage is not None
        assert usage.blocked_reason is BlockReason.TIME_LIMIT

    def test_reason_change_calls_controller_again(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        device: DeviceConfig,
    ) -> None:
        now = at(MONDAY, "08:40")
        _set_usage(store, device, now, num_bytes=100 * MB)
        assert engine.check_and_enforce(MAC, device, now) is BlockReason.DATA_LIMIT

        _set_usage(store, device, now, minutes=60, num_bytes=100 * MB)
        assert engine.check_and_enforce(MAC, device, now) is BlockReason.TIME_LIMIT
        assert controller.block_calls == [MAC, MAC]

    def test_outside_window_unblocks(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        device: DeviceConfig,
    ) -> None:
        _set_usage(store, device, at(MONDAY, "08:40"), minutes=60)
        engine.check_and_enforce(MAC, device, at(MONDAY, "08:40"))

        reason = engine.check_and_enforce(MAC, device, at(MONDAY, "09:00"))
        assert reason is BlockReason.UNBLOCKED
        assert controller.unblock_calls == [MAC]
        assert store.get_device_state(MAC).unblocked_at == at(MONDAY, "09:00")

    def test_block_outside_hours(
        self, engine: EnforcementEngine, store: QuotaStore, controller: FakeController
    ) -> None:
        config = make_device(block_outside=True)
        store.save_device_config(config)

        assert engine.check_and_enforce(MAC, config, at(MONDAY, "07:00")) is BlockReason.OUTSIDE_HOURS
        assert controller.block_calls == [MAC]

        # Window opens: unblocked again
        assert engine.check_and_enforce(MAC, config, at(MONDAY, "08:00")) is BlockReason.UNBLOCKED
        assert controller.unblock_calls == [MAC]

    def test_controller_failure_leaves_state_for_retry(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        device: DeviceConfig,
    ) -> None:
        now = at(MONDAY, "08:40")
        _set_usage(store, device, now, minutes=60)
        controller.fail_calls = True

        with pytest.raises(ControllerError):
            engine.check_and_enforce(MAC, device, now)
        assert store.get_device_state(MAC).blocked_reason is BlockReason.UNBLOCKED

        controller.fail_calls = False
        assert engine.check_and_enforce(MAC, device, now) is BlockReason.TIME_LIMIT
        assert controller.block_calls == [MAC]

    def test_offline_check_does_not_create_usage(
        self, engine: EnforcementEngine, store: QuotaStore, device: DeviceConfig
    ) -> None:
        engine.check_and_enforce(MAC, device, at(MONDAY, "08:10"), record_usage=False)
        assert store.get_block_usage(MAC, MONDAY.date(), 0) is None

    def test_schedule_edit_applies_to_running_window(
        self, engine: EnforcementEngine, store: QuotaStore, device: DeviceConfig
    ) -> None:
        now = at(MONDAY, "08:40")
        _set_usage(store, device, now, minutes=30)
        assert engine.check_and_enforce(MAC, device, now) is BlockReason.UNBLOCKED

        tighter = make_device(limit_minutes=20)
        store.save_device_config(tighter)
        assert engine.check_and_enforce(MAC, tighter, now) is BlockReason.TIME_LIMIT


class TestManualBlocking:
    """Manual blocks are sticky against automated enforcement."""

    def test_manual_block_is_sticky(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        device: DeviceConfig,
    ) -> None:
        assert engine.manual_block(MAC) is True
        assert controller.block_calls == [MAC]

        # Under limits and outside the window: still manual, no controller calls
        assert engine.check_and_enforce(MAC, device, at(MONDAY, "08:10")) is BlockReason.MANUAL
        assert engine.check_and_enforce(MAC, device, at(MONDAY, "12:00")) is BlockReason.MANUAL
        assert controller.unblock_calls == []
        assert engine.is_device_blocked(MAC) == (True, BlockReason.MANUAL)

    def test_manual_block_twice_calls_once(self, engine: EnforcementEngine, controller: FakeController) -> None:
        assert engine.manual_block(MAC) is True
        assert engine.manual_block(MAC) is False
        assert controller.block_calls == [MAC]

    def test_automated_block_does_not_replace_manual(
        self, engine: EnforcementEngine, store: QuotaStore
    ) -> None:
        engine.manual_block(MAC)
        assert engine.block_device(MAC, BlockReason.TIME_LIMIT) is False
        assert store.get_device_state(MAC).blocked_reason is BlockReason.MANUAL

    def test_manual_replaces_automated_block(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        device: DeviceConfig,
    ) -> None:
        now = at(MONDAY, "08:40")
        _set_usage(store, device, now, minutes=60)
        engine.check_and_enforce(MAC, device, now)

        assert engine.manual_block(MAC) is True
        assert store.get_device_state(MAC).blocked_reason is BlockReason.MANUAL

    def test_block_device_rejects_unblocked_reason(self, engine: EnforcementEngine) -> None:
        with pytest.raises(ValueError):
            engine.block_device(MAC, BlockReason.UNBLOCKED)

    def test_manual_unblock_clears_manual(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        device: DeviceConfig,
    ) -> None:
        engine.manual_block(MAC)
        assert engine.manual_unblock(MAC) is True
        assert controller.unblock_calls == [MAC]
        assert engine.is_device_blocked(MAC) == (False, BlockReason.UNBLOCKED)

    def test_manual_unblock_resets_window_usage_reason(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        clock: list[datetime],
        device: DeviceConfig,
    ) -> None:
        now = at(MONDAY, "08:40")
        clock[0] = now
        _set_usage(store, device, now, minutes=60)
        engine.check_and_enforce(MAC, device, now)

        engine.manual_unblock(MAC)
        usage = store.get_block_usage(MAC, now.date(), 0)
        assert usage is not None
        assert usage.blocked_reason is BlockReason.UNBLOCKED

        # Still over the limit: the next evaluation blocks again
        assert engine.check_and_enforce(MAC, device, now) is BlockReason.TIME_LIMIT

    def test_unblock_when_not_blocked(self, engine: EnforcementEngine, controller: FakeController) -> None:
        assert engine.manual_unblock(MAC) is False
        assert controller.unblock_calls == []


class TestRemoveDevice:
    def test_remove_unblocks_and_deletes(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        device: DeviceConfig,
    ) -> None:
        engine.manual_block(MAC)
        engine.check_and_enforce(MAC, device, at(MONDAY, "08:10"))

        assert engine.remove_device(MAC) is True
        assert store.get_device_config(MAC) is None
        assert controller.unblock_calls == [MAC]
        # History is kept
        assert store.get_block_usage(MAC, MONDAY.date(), 0) is not None

    def test_remove_unknown_device(self, engine: EnforcementEngine) -> None:
        assert engine.remove_device("de:ad:be:ef:00:00") is False

    def test_failed_unblock_keeps_device_managed(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        device: DeviceConfig,
    ) -> None:
        engine.manual_block(MAC)
        controller.fail_calls = True

        with pytest.raises(ControllerError):
            engine.remove_device(MAC)

        assert store.get_device_config(MAC) is not None
        assert store.get_device_state(MAC).blocked_reason is BlockReason.MANUAL

        controller.fail_calls = False
        assert engine.remove_device(MAC) is True
        assert controller.unblock_calls == [MAC]
        assert store.get_device_config(MAC) is None


class TestBonus:
    """Tests for bonus time and data grants."""

    def test_bonus_time_unblocks(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        clock: list[datetime],
        device: DeviceConfig,
    ) -> None:
        now = at(MONDAY, "08:40")
        clock[0] = now
        _set_usage(store, device, now, minutes=60)
        engine.check_and_enforce(MAC, device, now)

        assert engine.add_bonus_time(MAC, 15) is BlockReason.UNBLOCKED
        assert controller.unblock_calls == [MAC]

        usage = store.get_block_usage(MAC, now.date(), 0)
        assert usage is not None
        assert usage.bonus_minutes == 15
        assert usage.blocked_reason is BlockReason.UNBLOCKED

    def test_bonus_data_accumulates(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        device: DeviceConfig,
    ) -> None:
        engine.add_bonus_data(MAC, 10 * MB)
        engine.add_bonus_data(MAC, 5 * MB)

        usage = store.get_block_usage(MAC, MONDAY.date(), 0)
        assert usage is not None
        assert usage.bonus_bytes == 15 * MB

    def test_insufficient_bonus_keeps_block(
        self,
        engine: EnforcementEngine,
        store: QuotaStore,
        controller: FakeController,
        clock: list[datetime],
        device: DeviceConfig,
    ) -> None:
        now = at(MONDAY, "08:40")
        clock[0] = now
        _set_usage(store, device, now, minutes=80)
        engine.check_and_enforce(MAC, device, now)

        assert engine.add_bonus_time(MAC, 10) is BlockReason.TIME_LIMIT
        assert controller.unblock_calls == []

    def test_bonus_does_not_clear_manual(
        self,
        engine: EnforcementEngine,
        device: DeviceConfig,
    ) -> None:
        engine.manual_block(MAC)
        assert engine.add_bonus_time(MAC, 30) is BlockReason.MANUAL

    def test_bonus_requires_managed_device(self, engine: EnforcementEngine) -> None:
        with pytest.raises(DeviceNotFoundError):
            engine.add_bonus_time("de:ad:be:ef:00:00", 10)

    def test_bonus_requires_active_window(
        self, engine: EnforcementEngine, clock: list[datetime], device: DeviceConfig
    ) -> None:
        clock[0] = at(MONDAY, "12:00")
        with pytest.raises(NoActiveWindowError):
            engine.add_bonus_data(MAC, MB)

    @pytest.mark.parametrize("amount", [0, -5])
    def test_bonus_must_be_positive(self, engine: EnforcementEngine, device: DeviceConfig, amount: int) -> None:
        with pytest.raises(ValueError):
            engine.add_bonus_time(MAC, amount)
