"""Configuration loading for netquota.

Loads settings from TOML config file with CLI override support.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import tomli

from netquota.models import DaySchedule, DeviceConfig, TimeBlock
from netquota.units import to_bytes

logger = logging.getLogger(__name__)


def get_config_search_paths() -> list[Path]:
    """Get list of paths to search for config file."""
    return [
        Path("netquota.toml"),  # Current directory
        Path.home() / ".config" / "netquota" / "netquota.toml",
        Path("/etc/netquota/netquota.toml"),
    ]


def find_config_file() -> Optional[Path]:
    """Find the first existing config file."""
    for path in get_config_search_paths():
        if path.exists():
            return path
    return None


@dataclass
class Config:
    """Loaded configuration with all sections."""

    # Database
    db_path: Path = field(default_factory=lambda: Path.home() / ".local" / "share" / "netquota" / "quota.db")

    # Controller
    controller_url: str = "https://192.168.1.1"
    controller_username: str = ""
    controller_password: str = ""
    controller_site: str = "default"
    controller_is_udm: bool = False
    controller_verify_tls: bool = True
    controller_timeout: float = 10.0

    # Tracker
    poll_interval: float = 30.0
    activity_min_bytes: int = 1024

    # Devices declared in the config file (synced into the store on start)
    devices: list[DeviceConfig] = field(default_factory=list)


def _parse_time_block(data: dict[str, Any]) -> TimeBlock:
    limit_bytes = data.get("limit_bytes")
    if limit_bytes is None and "limit_data" in data:
        limit_bytes = to_bytes(data["limit_data"], data.get("limit_unit", "MB"))

    return TimeBlock(
        start=data.get("start", "00:00"),
        end=data.get("end", "24:00"),
        limit_minutes=data.get("limit_minutes"),
        limit_bytes=limit_bytes,
        warning_threshold_percent=data.get("warning_threshold_percent", 80),
    )


def _parse_device(data: dict[str, Any]) -> Optional[DeviceConfig]:
    mac = data.get("mac")
    if not mac:
        logger.warning(f"Ignoring device without mac: {data.get('name', 'unknown')}")
        return None

    try:
        schedules = []
        for schedule_data in data.get("schedules", []):
            schedules.append(
                DaySchedule(
                    days=schedule_data.get("days", []),
                    time_blocks=[_parse_time_block(b) for b in schedule_data.get("time_blocks", [])],
                )
            )

        return DeviceConfig(
            mac=mac,
            name=data.get("name", ""),
            enabled=data.get("enabled", True),
            block_outside=data.get("block_outside", False),
            schedules=schedules,
        )
    except (ValueError, TypeError, AttributeError) as e:
        logger.warning(f"Ignoring device {mac}: invalid schedule: {e}")
        return None


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from TOML file.

    Args:
        config_path: Explicit path to config file, or None to search

    Returns:
        Config object with loaded values
    """
    config = Config()

    if config_path is None:
        config_path = find_config_file()

    if config_path is None or not config_path.exists():
        logger.debug("No config file found, using defaults")
        return config

    logger.info(f"Loading config from {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        logger.warning(f"Failed to load config file: {e}")
        return config

    # Database section
    if "database" in data:
        db = data["database"]
        if "path" in db:
            config.db_path = Path(db["path"]).expanduser()

    # Controller section
    if "controller" in data:
        ctl = data["controller"]
        if "url" in ctl:
            config.controller_url = ctl["url"]
        if "username" in ctl:
            config.controller_username = ctl["username"]
        if "password" in ctl:
            config.controller_password = ctl["password"]
        if "site" in ctl:
            config.controller_site = ctl["site"]
        if "is_udm" in ctl:
            config.controller_is_udm = ctl["is_udm"]
        if "verify_tls" in ctl:
            config.controller_verify_tls = ctl["verify_tls"]
        if "timeout" in ctl:
            config.controller_timeout = float(ctl["timeout"])

    # Tracker section
    if "tracker" in data:
        tracker = data["tracker"]
        if "poll_interval" in tracker:
            config.poll_interval = float(tracker["poll_interval"])
        if "activity_min_bytes" in tracker:
            config.activity_min_bytes = tracker["activity_min_bytes"]

    # Devices
    for device_data in data.get("devices", []):
        if not isinstance(device_data, dict):
            logger.warning(f"Ignoring malformed device entry: {device_data!r}")
            continue
        device = _parse_device(device_data)
        if device is not None:
            config.devices.append(device)

    return config
