"""Data models for netquota."""

from netquota.models.quota import (
    ActiveBlock,
    BlockReason,
    BlockSummary,
    BlockUsage,
    ClientSample,
    CurrentBlock,
    DaySchedule,
    DeviceConfig,
    DeviceState,
    HistoryEntry,
    TimeBlock,
    UsageSummary,
    normalize_mac,
)

__all__ = [
    "ActiveBlock",
    "BlockReason",
    "BlockSummary",
    "BlockUsage",
    "ClientSample",
    "CurrentBlock",
    "DaySchedule",
    "DeviceConfig",
    "DeviceState",
    "HistoryEntry",
    "TimeBlock",
    "UsageSummary",
    "normalize_mac",
]
