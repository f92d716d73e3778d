"""DuckDB storage for netquota.

Holds three kinds of records:
- device_configs: managed devices and their schedules (schedules as JSON)
- block_usage: one accounting row per (device, date, window index), kept for history
- device_states: the single current block/unblock state per device
"""

import json
import logging
import shutil
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import duckdb

from netquota.errors import InvariantViolation, StorageError
from netquota.models import (
    BlockReason,
    BlockUsage,
    DaySchedule,
    DeviceConfig,
    DeviceState,
    TimeBlock,
    normalize_mac,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Seconds a read-write open waits for another process to release the file lock
DEFAULT_LOCK_TIMEOUT = 15.0

USAGE_COLUMNS = """
    id, mac, date, block_index, start_time, end_time, used_bytes, used_minutes,
    limit_bytes, limit_minutes, blocked_reason, bonus_minutes, bonus_bytes,
    last_tx_bytes, last_rx_bytes, last_updated
"""

CONFIG_COLUMNS = "mac, name, enabled, block_outside, schedules, created_at, updated_at"


class QuotaStore:
    """DuckDB-backed storage for quota configuration, usage and device state."""

    def __init__(
        self,
        db_path: Path,
        read_only: bool = False,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        """Initialize the store.

        Args:
            db_path: Path to the DuckDB database file. Use ":memory:" for in-memory.
            read_only: If True, open in read-only mode (allows reading while the daemon runs).
            lock_timeout: How long a read-write open retries while another process
                holds the database lock.
        """
        self.db_path = db_path
        self.read_only = read_only
        self.lock_timeout = lock_timeout
        self._conn: Optional[duckdb.DuckDBPyConnection] = None
        self._temp_db_path: Optional[Path] = None

    def connect(self) -> None:
        """Open database connection and ensure schema exists."""
        db_str = str(self.db_path) if self.db_path != Path(":memory:") else ":memory:"

        try:
            if self.read_only and self.db_path != Path(":memory:"):
                if not Path(self.db_path).exists():
                    raise StorageError(f"Database {self.db_path} does not exist yet")
                try:
                    self._conn = duckdb.connect(db_str, read_only=True)
                except duckdb.IOException:
                    # Locked by the running daemon: read from a snapshot copy
                    temp_dir = tempfile.mkdtemp(prefix="netquota_")
                    self._temp_db_path = Path(temp_dir) / "quota.db"
                    shutil.copy2(self.db_path, self._temp_db_path)
                    wal_path = Path(str(self.db_path) + ".wal")
                    if wal_path.exists():
                        shutil.copy2(wal_path, Path(temp_dir) / "quota.db.wal")
                    self._conn = duckdb.connect(str(self._temp_db_path), read_only=True)
            else:
                self._conn = self._connect_waiting_for_lock(db_str)
        except duckdb.Error as e:
            raise StorageError(f"Failed to open database {self.db_path}: {e}") from e

        if not self.read_only:
            self._ensure_schema()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
        if self._temp_db_path and self._temp_db_path.exists():
            shutil.rmtree(self._temp_db_path.parent, ignore_errors=True)
            self._temp_db_path = None

    def _connect_waiting_for_lock(self, db_str: str) -> duckdb.DuckDBPyConnection:
        """Open read-write, retrying while another process holds the file lock."""
        deadline = time.monotonic() + self.lock_timeout
        delay = 0.05

        while True:
            try:
                return duckdb.connect(db_str)
            except duckdb.IOException:
                if time.monotonic() >= deadline:
                    raise
                logger.debug(f"Database {self.db_path} is locked, retrying in {delay:.2f}s")
                time.sleep(delay)
                delay = min(delay * 2, 0.5)

    @contextmanager
    def session(self) -> Iterator["QuotaStore"]:
        """Hold a connection for the duration of a block.

        An already connected store is left open; otherwise the connection is
        opened here and closed on exit, releasing the file lock for other
        processes.
        """
        if self._conn is not None:
            yield self
            return

        self.connect()
        try:
            yield self
        finally:
            self.close()

    def __enter__(self) -> "QuotaStore":
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get the database connection, raising if not connected."""
        if self._conn is None:
            raise RuntimeError("QuotaStore not connected. Call connect() first.")
        return self._conn

    def _execute(self, sql: str, params: Optional[list[Any]] = None) -> duckdb.DuckDBPyConnection:
        """Run a statement, translating driver errors into StorageError."""
        try:
            return self.conn.execute(sql, params or [])
        except duckdb.Error as e:
            raise StorageError(str(e)) from e

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        self._execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        result = self._execute("SELECT MAX(version) FROM schema_version").fetchone()
        current_version = result[0] if result and result[0] else 0

        if current_version < SCHEMA_VERSION:
            self._apply_schema()
            self._execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                [SCHEMA_VERSION],
            )

    def _apply_schema(self) -> None:
        """Apply the database schema."""
        self._execute("""
            CREATE TABLE IF NOT EXISTS device_configs (
                mac VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL DEFAULT '',
                enabled BOOLEAN NOT NULL DEFAULT TRUE,
                block_outside BOOLEAN NOT NULL DEFAULT FALSE,
                schedules VARCHAR NOT NULL DEFAULT '[]',  -- JSON list of DaySchedule
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)

        self._execute("CREATE SEQUENCE IF NOT EXISTS block_usage_id_seq")
        self._execute("""
            CREATE TABLE IF NOT EXISTS block_usage (
                id BIGINT PRIMARY KEY DEFAULT nextval('block_usage_id_seq'),
                mac VARCHAR NOT NULL,
                date DATE NOT NULL,
                block_index INTEGER NOT NULL,
                start_time VARCHAR NOT NULL,
                end_time VARCHAR NOT NULL,
                used_bytes BIGINT NOT NULL DEFAULT 0,
                used_minutes INTEGER NOT NULL DEFAULT 0,
                limit_bytes BIGINT,  -- NULL = unlimited
                limit_minutes INTEGER,  -- NULL = unlimited
                blocked_reason VARCHAR NOT NULL DEFAULT '',
                bonus_minutes INTEGER NOT NULL DEFAULT 0,
                bonus_bytes BIGINT NOT NULL DEFAULT 0,

                -- Raw controller counters from the previous sample
                last_tx_bytes BIGINT NOT NULL DEFAULT 0,
                last_rx_bytes BIGINT NOT NULL DEFAULT 0,
                last_updated TIMESTAMP,

                UNIQUE (mac, date, block_index)
            )
        """)

        self._execute("""
            CREATE TABLE IF NOT EXISTS device_states (
                mac VARCHAR PRIMARY KEY,
                is_blocked BOOLEAN NOT NULL DEFAULT FALSE,
                blocked_reason VARCHAR NOT NULL DEFAULT '',
                blocked_at TIMESTAMP,
                unblocked_at TIMESTAMP
            )
        """)

        self._execute("""
            CREATE INDEX IF NOT EXISTS idx_block_usage_date
            ON block_usage (date)
        """)

    # -- device configuration -------------------------------------------------

    def save_device_config(self, config: DeviceConfig) -> None:
        """Insert or update a device configuration."""
        schedules = json.dumps([s.to_dict() for s in config.schedules])
        now = datetime.now()

        self._execute("""
            INSERT INTO device_configs (mac, name, enabled, block_outside, schedules, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (mac) DO UPDATE SET
                name = EXCLUDED.name,
                enabled = EXCLUDED.enabled,
                block_outside = EXCLUDED.block_outside,
                schedules = EXCLUDED.schedules,
                updated_at = EXCLUDED.updated_at
        """, [
            normalize_mac(config.mac),
            config.name,
            config.enabled,
            config.block_outside,
            schedules,
            now,
            now,
        ])

    def get_device_config(self, mac: str) -> Optional[DeviceConfig]:
        """Get a device configuration by MAC, or None if not managed.

        Raises:
            InvariantViolation: If the stored schedules cannot be decoded
        """
        row = self._execute(
            f"SELECT {CONFIG_COLUMNS} FROM device_configs WHERE mac = ?",
            [normalize_mac(mac)],
        ).fetchone()
        return self._row_to_config(row) if row else None

    def list_device_configs(self) -> list[DeviceConfig]:
        """List all device configurations.

        Rows whose schedules cannot be decoded are logged and left out so one
        corrupt device does not hide the others.
        """
        rows = self._execute(
            f"SELECT {CONFIG_COLUMNS} FROM device_configs ORDER BY mac"
        ).fetchall()

        configs = []
        for row in rows:
            try:
                configs.append(self._row_to_config(row))
            except InvariantViolation as e:
                logger.error(f"Skipping device {row[0]}: {e}")
        return configs

    def delete_device_config(self, mac: str) -> bool:
        """Delete a device configuration. Returns True if a row was removed."""
        mac = normalize_mac(mac)
        existed = self._execute(
            "SELECT 1 FROM device_configs WHERE mac = ?", [mac]
        ).fetchone() is not None
        self._execute("DELETE FROM device_configs WHERE mac = ?", [mac])
        return existed

    def _row_to_config(self, row: tuple) -> DeviceConfig:
        mac, name, enabled, block_outside, schedules_json, created_at, updated_at = row
        try:
            schedules = [DaySchedule.from_dict(s) for s in json.loads(schedules_json)]
        except (ValueError, TypeError, AttributeError) as e:
            raise InvariantViolation(f"Malformed schedules for {mac}: {e}") from e

        return DeviceConfig(
            mac=mac,
            name=name,
            enabled=enabled,
            block_outside=block_outside,
            schedules=schedules,
            created_at=created_at,
            updated_at=updated_at,
        )

    # -- window usage ---------------------------------------------------------

    def get_or_create_block_usage(
        self,
        mac: str,
        day: date,
        block_index: int,
        block: TimeBlock,
    ) -> BlockUsage:
        """Get the usage record for a window, creating it seeded from the block."""
        mac = normalize_mac(mac)
        self._execute("""
            INSERT INTO block_usage (
                mac, date, block_index, start_time, end_time,
                limit_minutes, limit_bytes, last_updated
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (mac, date, block_index) DO NOTHING
        """, [
            mac,
            day,
            block_index,
            block.start,
            block.end,
            block.limit_minutes,
            block.limit_bytes,
            datetime.now(),
        ])

        usage = self.get_block_usage(mac, day, block_index)
        if usage is None:
            raise StorageError(f"Usage record for {mac} {day} #{block_index} vanished after insert")
        return usage

    def get_block_usage(self, mac: str, day: date, block_index: int) -> Optional[BlockUsage]:
        """Get the usage record for a window without creating it."""
        row = self._execute(
            f"SELECT {USAGE_COLUMNS} FROM block_usage WHERE mac = ? AND date = ? AND block_index = ?",
            [normalize_mac(mac), day, block_index],
        ).fetchone()
        return self._row_to_usage(row) if row else None

    def update_block_usage(self, usage: BlockUsage) -> None:
        """Persist the mutable fields of a usage record."""
        if usage.id is None:
            raise StorageError("Cannot update a usage record that was never stored")

        usage.last_updated = datetime.now()
        self._execute("""
            UPDATE block_usage SET
                used_bytes = ?, used_minutes = ?, blocked_reason = ?,
                bonus_minutes = ?, bonus_bytes = ?,
                last_tx_bytes = ?, last_rx_bytes = ?, last_updated = ?
            WHERE id = ?
        """, [
            usage.used_bytes,
            usage.used_minutes,
            usage.blocked_reason.value,
            usage.bonus_minutes,
            usage.bonus_bytes,
            usage.last_tx_bytes,
            usage.last_rx_bytes,
            usage.last_updated,
            usage.id,
        ])

    def get_block_usage_for_date(self, mac: str, day: date) -> list[BlockUsage]:
        """Get all usage records for a device on a date, ordered by window index."""
        rows = self._execute(
            f"SELECT {USAGE_COLUMNS} FROM block_usage WHERE mac = ? AND date = ? ORDER BY block_index",
            [normalize_mac(mac), day],
        ).fetchall()
        return [self._row_to_usage(row) for row in rows]

    def get_usage_history(self, mac: str, days: int, today: date) -> list[tuple[date, int, int]]:
        """Get per-day totals for the last N days, newest first.

        Returns:
            List of (date, total_minutes, total_bytes)
        """
        cutoff = today - timedelta(days=days)
        rows = self._execute("""
            SELECT date, SUM(used_minutes) AS total_minutes, SUM(used_bytes) AS total_bytes
            FROM block_usage
            WHERE mac = ? AND date >= ?
            GROUP BY date
            ORDER BY date DESC
        """, [normalize_mac(mac), cutoff]).fetchall()
        return [(row[0], int(row[1] or 0), int(row[2] or 0)) for row in rows]

    def add_bonus_time(self, mac: str, day: date, block_index: int, minutes: int) -> None:
        """Add bonus minutes to a window's usage record."""
        self._execute("""
            UPDATE block_usage SET bonus_minutes = bonus_minutes + ?, last_updated = ?
            WHERE mac = ? AND date = ? AND block_index = ?
        """, [minutes, datetime.now(), normalize_mac(mac), day, block_index])

    def add_bonus_data(self, mac: str, day: date, block_index: int, num_bytes: int) -> None:
        """Add bonus bytes to a window's usage record."""
        self._execute("""
            UPDATE block_usage SET bonus_bytes = bonus_bytes + ?, last_updated = ?
            WHERE mac = ? AND date = ? AND block_index = ?
        """, [num_bytes, datetime.now(), normalize_mac(mac), day, block_index])

    def _row_to_usage(self, row: tuple) -> BlockUsage:
        (
            usage_id, mac, day, block_index, start_time, end_time, used_bytes, used_minutes,
            limit_bytes, limit_minutes, blocked_reason, bonus_minutes, bonus_bytes,
            last_tx_bytes, last_rx_bytes, last_updated,
        ) = row
        return BlockUsage(
            id=usage_id,
            mac=mac,
            date=day,
            block_index=block_index,
            start_time=start_time,
            end_time=end_time,
            used_bytes=used_bytes,
            used_minutes=used_minutes,
            limit_bytes=limit_bytes,
            limit_minutes=limit_minutes,
            blocked_reason=self._parse_reason(blocked_reason),
            bonus_minutes=bonus_minutes,
            bonus_bytes=bonus_bytes,
            last_tx_bytes=last_tx_bytes,
            last_rx_bytes=last_rx_bytes,
            last_updated=last_updated,
        )

    # -- device state ---------------------------------------------------------

    def get_device_state(self, mac: str) -> DeviceState:
        """Get the current state of a device, defaulting to unblocked."""
        mac = normalize_mac(mac)
        row = self._execute("""
            SELECT blocked_reason, blocked_at, unblocked_at
            FROM device_states WHERE mac = ?
        """, [mac]).fetchone()

        if row is None:
            return DeviceState(mac=mac)

        return DeviceState(
            mac=mac,
            blocked_reason=self._parse_reason(row[0]),
            blocked_at=row[1],
            unblocked_at=row[2],
        )

    def save_device_state(self, state: DeviceState) -> None:
        """Insert or update the current state of a device."""
        self._execute("""
            INSERT INTO device_states (mac, is_blocked, blocked_reason, blocked_at, unblocked_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (mac) DO UPDATE SET
                is_blocked = EXCLUDED.is_blocked,
                blocked_reason = EXCLUDED.blocked_reason,
                blocked_at = EXCLUDED.blocked_at,
                unblocked_at = EXCLUDED.unblocked_at
        """, [
            normalize_mac(state.mac),
            state.is_blocked,
            state.blocked_reason.value,
            state.blocked_at,
            state.unblocked_at,
        ])

    def list_device_states(self) -> dict[str, DeviceState]:
        """Get all stored device states keyed by MAC."""
        rows = self._execute(
            "SELECT mac, blocked_reason, blocked_at, unblocked_at FROM device_states"
        ).fetchall()
        return {
            row[0]: DeviceState(
                mac=row[0],
                blocked_reason=self._parse_reason(row[1]),
                blocked_at=row[2],
                unblocked_at=row[3],
            )
            for row in rows
        }

    @staticmethod
    def _parse_reason(value: str) -> BlockReason:
        try:
            return BlockReason(value or "")
        except ValueError as e:
            raise InvariantViolation(f"Unknown blocked reason '{value}'") from e
