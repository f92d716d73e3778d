"""Quota window resolution.

Maps a device's schedules and a wall-clock instant to the time block that is
active at that instant. Schedules are evaluated in stored order, then blocks
within a schedule in stored order; the first match wins and overlapping
blocks are not detected.
"""

import re
from datetime import datetime
from typing import Optional

from netquota.errors import InvariantViolation
from netquota.models import ActiveBlock, DaySchedule

# Indexed by datetime.weekday() (Monday=0)
DAY_NAMES = [
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
]

WEEKEND_DAYS = frozenset({"saturday", "sunday"})

DAY_SELECTORS = frozenset(DAY_NAMES) | {"weekdays", "weekends"}

# Zero-padded 24-hour HH:MM; "24:00" is accepted as an end of day
_HHMM_PATTERN = re.compile(r"^(?:[01]\d|2[0-3]):[0-5]\d$")


def day_matches(selectors: list[str], day_name: str) -> bool:
    """Check if a lowercase weekday name is covered by a schedule's day selectors."""
    for selector in selectors:
        selector = selector.lower()
        if selector == "weekdays":
            if day_name not in WEEKEND_DAYS:
                return True
        elif selector == "weekends":
            if day_name in WEEKEND_DAYS:
                return True
        elif selector == day_name:
            return True
    return False


def validate_schedules(schedules: list[DaySchedule]) -> None:
    """Raise InvariantViolation if any schedule is malformed.

    Checks day selectors and the HH:MM format of every block boundary.
    Blocks with start >= end are legal but never match (no midnight wrap).
    """
    for position, schedule in enumerate(schedules):
        for selector in schedule.days:
            if selector.lower() not in DAY_SELECTORS:
                raise InvariantViolation(
                    f"Schedule {position}: unknown day selector '{selector}'"
                )
        for index, block in enumerate(schedule.time_blocks):
            if not _HHMM_PATTERN.match(block.start):
                raise InvariantViolation(
                    f"Schedule {position} block {index}: invalid start time '{block.start}'"
                )
            if block.end != "24:00" and not _HHMM_PATTERN.match(block.end):
                raise InvariantViolation(
                    f"Schedule {position} block {index}: invalid end time '{block.end}'"
                )


def resolve_active_block(
    schedules: list[DaySchedule],
    now: datetime,
) -> Optional[ActiveBlock]:
    """Find the time block active at `now`.

    Args:
        schedules: Device schedules in stored order
        now: Local wall-clock timestamp

    Returns:
        ActiveBlock with the block and its zero-based index within its
        schedule, or None if `now` falls outside every block

    Raises:
        InvariantViolation: If the schedules are malformed
    """
    validate_schedules(schedules)

    day_name = DAY_NAMES[now.weekday()]
    current_time = now.strftime("%H:%M")

    for schedule in schedules:
        if not day_matches(schedule.days, day_name):
            continue

        for index, block in enumerate(schedule.time_blocks):
            # Half-open: a block ending at "20:00" excludes 20:00 itself
            if block.start <= current_time < block.end:
                return ActiveBlock(block=block, index=index)

    return None
