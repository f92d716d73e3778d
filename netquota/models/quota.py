"""Data models for quota tracking and enforcement."""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional


def normalize_mac(mac: str) -> str:
    """Normalize a hardware address for lookups (MACs compare case-insensitively)."""
    return mac.strip().lower()


class BlockReason(Enum):
    """Blocking posture of a device.

    UNBLOCKED is stored as the empty reason string; every other member is a
    blocked state. MANUAL is sticky: automated enforcement never clears it.
    """

    UNBLOCKED = ""
    TIME_LIMIT = "time_limit"
    DATA_LIMIT = "data_limit"
    OUTSIDE_HOURS = "outside_hours"
    MANUAL = "manual"

    @property
    def is_blocked(self) -> bool:
        return self is not BlockReason.UNBLOCKED

    @property
    def label(self) -> str:
        """Human-readable label for console output."""
        if self is BlockReason.UNBLOCKED:
            return "unblocked"
        return self.value.replace("_", " ")


@dataclass
class TimeBlock:
    """A wall-clock window [start, end) with optional limits.

    Attributes:
        start: Start time in HH:MM format (24-hour, inclusive)
        end: End time in HH:MM format (24-hour, exclusive)
        limit_minutes: Active-minute allowance, None for unlimited
        limit_bytes: Transfer allowance in bytes, None for unlimited
        warning_threshold_percent: Usage percentage shown as a warning
    """

    start: str  # "08:00"
    end: str  # "09:00"
    limit_minutes: Optional[int] = None
    limit_bytes: Optional[int] = None
    warning_threshold_percent: int = 80

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "limit_minutes": self.limit_minutes,
            "limit_bytes": self.limit_bytes,
            "warning_threshold_percent": self.warning_threshold_percent,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TimeBlock":
        return cls(
            start=str(data.get("start", "")),
            end=str(data.get("end", "")),
            limit_minutes=data.get("limit_minutes"),
            limit_bytes=data.get("limit_bytes"),
            warning_threshold_percent=data.get("warning_threshold_percent", 80),
        )


@dataclass
class DaySchedule:
    """Time blocks that apply on a set of days.

    Attributes:
        days: Day selectors: "weekdays", "weekends" or full weekday names
        time_blocks: Windows in evaluation order (first match wins)
    """

    days: list[str]  # ["weekdays"] or ["saturday", "sunday"]
    time_blocks: list[TimeBlock] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "days": list(self.days),
            "time_blocks": [block.to_dict() for block in self.time_blocks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DaySchedule":
        return cls(
            days=list(data.get("days", [])),
            time_blocks=[TimeBlock.from_dict(b) for b in data.get("time_blocks", [])],
        )


@dataclass
class DeviceConfig:
    """A managed device and its schedules.

    Attributes:
        mac: Hardware address (normalized to lowercase)
        name: Human-readable device name (e.g., "alice-tablet")
        enabled: Disabled devices are ignored by the poller
        block_outside: Block the device whenever no window is active
        schedules: Day schedules in evaluation order
    """

    mac: str
    name: str = ""
    enabled: bool = True
    block_outside: bool = False
    schedules: list[DaySchedule] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.mac = normalize_mac(self.mac)

    @property
    def display_name(self) -> str:
        return self.name or self.mac


@dataclass
class ActiveBlock:
    """A time block resolved for a timestamp, with its index in its schedule."""

    block: TimeBlock
    index: int


@dataclass
class BlockUsage:
    """Accounting record for one quota window, keyed by (mac, date, block_index)."""

    mac: str
    date: date
    block_index: int
    start_time: str
    end_time: str
    used_bytes: int = 0
    used_minutes: int = 0
    limit_bytes: Optional[int] = None
    limit_minutes: Optional[int] = None
    blocked_reason: BlockReason = BlockReason.UNBLOCKED
    bonus_minutes: int = 0
    bonus_bytes: int = 0
    # Raw cumulative controller counters from the previous sample
    last_tx_bytes: int = 0
    last_rx_bytes: int = 0
    last_updated: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_blocked(self) -> bool:
        return self.blocked_reason.is_blocked

    @property
    def last_total(self) -> int:
        return self.last_tx_bytes + self.last_rx_bytes


@dataclass
class DeviceState:
    """Current blocking state of a device, independent of any window."""

    mac: str
    blocked_reason: BlockReason = BlockReason.UNBLOCKED
    blocked_at: Optional[datetime] = None
    unblocked_at: Optional[datetime] = None

    @property
    def is_blocked(self) -> bool:
        return self.blocked_reason.is_blocked


@dataclass(frozen=True)
class ClientSample:
    """A client as currently reported by the network controller.

    tx_bytes/rx_bytes are cumulative for the client's current session and
    reset when the client reconnects.
    """

    mac: str
    tx_bytes: int = 0
    rx_bytes: int = 0
    name: Optional[str] = None
    hostname: Optional[str] = None
    ip: Optional[str] = None
    blocked: bool = False
    is_wired: bool = False
    last_seen: Optional[datetime] = None

    @property
    def total_bytes(self) -> int:
        return self.tx_bytes + self.rx_bytes

    @property
    def display_name(self) -> str:
        return self.name or self.hostname or self.mac


@dataclass
class BlockSummary:
    """One window's usage for reporting."""

    start_time: str
    end_time: str
    used_minutes: int
    used_bytes: int
    limit_minutes: Optional[int] = None
    limit_bytes: Optional[int] = None
    active: bool = False
    completed: bool = False


@dataclass
class CurrentBlock:
    """The active window with bonus and remaining allowance."""

    start_time: str
    end_time: str
    used_minutes: int
    used_bytes: int
    limit_minutes: Optional[int] = None
    limit_bytes: Optional[int] = None
    remaining_minutes: Optional[int] = None
    remaining_bytes: Optional[int] = None
    bonus_minutes: int = 0
    bonus_bytes: int = 0
    blocked_reason: BlockReason = BlockReason.UNBLOCKED


@dataclass
class UsageSummary:
    """A device's usage for one day."""

    mac: str
    name: str
    total_minutes: int = 0
    total_bytes: int = 0
    current_block: Optional[CurrentBlock] = None
    blocks: list[BlockSummary] = field(default_factory=list)


@dataclass
class HistoryEntry:
    """Summed usage for one past day."""

    date: date
    total_minutes: int
    total_bytes: int
    blocks: list[BlockSummary] = field(default_factory=list)
