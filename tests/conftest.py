"""Shared fixtures: a temp DuckDB store and an in-memory controller."""

import subprocess
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import pytest

from netquota.errors import ControllerError
from netquota.models import ClientSample, DaySchedule, DeviceConfig, TimeBlock, normalize_mac
from netquota.policies import EnforcementEngine
from netquota.storage import QuotaStore

MB = 1024 * 1024

# 2024-03-04 is a Monday, 2024-03-09 a Saturday
MONDAY = datetime(2024, 3, 4)
SATURDAY = datetime(2024, 3, 9)

# Runs in a separate interpreter: takes the DuckDB file lock, reports, holds it
HOLD_LOCK_SCRIPT = """
import sys
import time

import duckdb

conn = duckdb.connect(sys.argv[1])
print("locked", flush=True)
time.sleep(float(sys.argv[2]))
conn.close()
"""


def at(day: datetime, hhmm: str) -> datetime:
    """Build a timestamp on `day` at HH:MM."""
    hour, minute = (int(part) for part in hhmm.split(":"))
    return day.replace(hour=hour, minute=minute)


def make_device(
    mac: str = "AA:BB:CC:00:00:01",
    start: str = "08:00",
    end: str = "09:00",
    limit_minutes: int | None = 60,
    limit_bytes: int | None = 100 * MB,
    days: list[str] | None = None,
    block_outside: bool = False,
    name: str = "kid-tablet",
) -> DeviceConfig:
    """Build a device with a single time block."""
    return DeviceConfig(
        mac=mac,
        name=name,
        block_outside=block_outside,
        schedules=[
            DaySchedule(
                days=days or ["weekdays"],
                time_blocks=[
                    TimeBlock(
                        start=start,
                        end=end,
                        limit_minutes=limit_minutes,
                        limit_bytes=limit_bytes,
                    )
                ],
            )
        ],
    )


class FakeController:
    """In-memory DeviceController that records every block/unblock call."""

    def __init__(self) -> None:
        self.clients: list[ClientSample] = []
        self.block_calls: list[str] = []
        self.unblock_calls: list[str] = []
        self.fail_list = False
        self.fail_calls = False
        self.fail_macs: set[str] = set()

    def set_client(self, mac: str, tx_bytes: int, rx_bytes: int = 0) -> None:
        """Report a connected client with the given session counters."""
        mac = normalize_mac(mac)
        self.clients = [c for c in self.clients if c.mac != mac]
        self.clients.append(ClientSample(mac=mac, tx_bytes=tx_bytes, rx_bytes=rx_bytes))

    def disconnect(self, mac: str) -> None:
        mac = normalize_mac(mac)
        self.clients = [c for c in self.clients if c.mac != mac]

    def list_connected_clients(self) -> list[ClientSample]:
        if self.fail_list:
            raise ControllerError("controller unreachable")
        return list(self.clients)

    def block_client(self, mac: str) -> None:
        self._check(mac)
        self.block_calls.append(mac)

    def unblock_client(self, mac: str) -> None:
        self._check(mac)
        self.unblock_calls.append(mac)

    def _check(self, mac: str) -> None:
        if self.fail_calls or mac in self.fail_macs:
            raise ControllerError(f"stamgr failed for {mac}")


@contextmanager
def database_locked_by_other_process(db_path: Path, seconds: float) -> Iterator[subprocess.Popen]:
    """Hold a read-write lock on db_path from another process for `seconds`.

    Yields once the lock is taken; on exit waits for the holder to release it.
    """
    holder = subprocess.Popen(
        [sys.executable, "-c", HOLD_LOCK_SCRIPT, str(db_path), str(seconds)],
        stdout=subprocess.PIPE,
        text=True,
    )
    try:
        assert holder.stdout is not None
        assert holder.stdout.readline().strip() == "locked", "lock holder failed to start"
        yield holder
    finally:
        holder.wait(timeout=60)
        if holder.stdout is not None:
            holder.stdout.close()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def tmp_db_path(tmp_path: Path) -> Path:
    """Provide a temporary DuckDB path."""
    return tmp_path / "test_quota.db"


@pytest.fixture()
def store(tmp_db_path: Path) -> QuotaStore:
    """Provide a connected QuotaStore on a temp DB."""
    quota_store = QuotaStore(tmp_db_path)
    quota_store.connect()
    yield quota_store  # type: ignore[misc]
    quota_store.close()


@pytest.fixture()
def controller() -> FakeController:
    return FakeController()


@pytest.fixture()
def clock() -> list[datetime]:
    """Mutable wall clock: set clock[0] to move time for operator actions."""
    return [at(MONDAY, "08:10")]


@pytest.fixture()
def engine(store: QuotaStore, controller: FakeController, clock: list[datetime]) -> EnforcementEngine:
    return EnforcementEngine(store, controller, clock=lambda: clock[0])


@pytest.fixture()
def device(store: QuotaStore) -> DeviceConfig:
    """A managed device with an 08:00-09:00 weekday window (60 min / 100 MB)."""
    config = make_device()
    store.save_device_config(config)
    return config
