"""Usage summaries and history for operators."""

from datetime import datetime
from typing import Optional

from netquota.models import (
    BlockSummary,
    BlockUsage,
    CurrentBlock,
    DeviceConfig,
    HistoryEntry,
    UsageSummary,
    normalize_mac,
)
from netquota.policies.enforcer import effective_limit
from netquota.policies.schedule import resolve_active_block
from netquota.storage import QuotaStore


def _remaining(limit: Optional[int], bonus: int, used: int) -> Optional[int]:
    total = effective_limit(limit, bonus)
    if total is None:
        return None
    return max(0, total - used)


def _block_summary(usage: BlockUsage) -> BlockSummary:
    return BlockSummary(
        start_time=usage.start_time,
        end_time=usage.end_time,
        used_minutes=usage.used_minutes,
        used_bytes=usage.used_bytes,
        limit_minutes=usage.limit_minutes,
        limit_bytes=usage.limit_bytes,
    )


def build_usage_summary(store: QuotaStore, config: DeviceConfig, now: datetime) -> UsageSummary:
    """Summarize a device's usage for the day of `now`.

    Args:
        store: Store to read usage records from
        config: Device configuration
        now: Local wall-clock time; decides which window is active

    Returns:
        UsageSummary with per-window rows, day totals and the current window
    """
    active = resolve_active_block(config.schedules, now)
    current_time = now.strftime("%H:%M")

    summary = UsageSummary(mac=config.mac, name=config.name)

    for usage in store.get_block_usage_for_date(config.mac, now.date()):
        summary.total_minutes += usage.used_minutes
        summary.total_bytes += usage.used_bytes

        block_summary = _block_summary(usage)
        if active is not None and usage.block_index == active.index:
            block_summary.active = True
            summary.current_block = CurrentBlock(
                start_time=usage.start_time,
                end_time=usage.end_time,
                used_minutes=usage.used_minutes,
                used_bytes=usage.used_bytes,
                limit_minutes=usage.limit_minutes,
                limit_bytes=usage.limit_bytes,
                remaining_minutes=_remaining(usage.limit_minutes, usage.bonus_minutes, usage.used_minutes),
                remaining_bytes=_remaining(usage.limit_bytes, usage.bonus_bytes, usage.used_bytes),
                bonus_minutes=usage.bonus_minutes,
                bonus_bytes=usage.bonus_bytes,
                blocked_reason=usage.blocked_reason,
            )
        elif current_time >= usage.end_time:
            block_summary.completed = True

        summary.blocks.append(block_summary)

    return summary


def build_usage_history(
    store: QuotaStore,
    mac: str,
    days: int,
    now: datetime,
) -> list[HistoryEntry]:
    """Per-day usage for the last `days` days, newest first."""
    mac = normalize_mac(mac)
    history = []

    for day, total_minutes, total_bytes in store.get_usage_history(mac, days, now.date()):
        entry = HistoryEntry(date=day, total_minutes=total_minutes, total_bytes=total_bytes)
        for usage in store.get_block_usage_for_date(mac, day):
            block_summary = _block_summary(usage)
            block_summary.completed = day < now.date()
            entry.blocks.append(block_summary)
        history.append(entry)

    return history
