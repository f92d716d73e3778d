"""Byte unit helpers (1024-based)."""

UNIT_MULTIPLIERS: dict[str, int] = {
    "bytes": 1,
    "kb": 1024,
    "mb": 1024 ** 2,
    "gb": 1024 ** 3,
}


def to_bytes(amount: int, unit: str = "bytes") -> int:
    """Convert an amount in bytes/KB/MB/GB to bytes.

    Raises:
        ValueError: If the unit is unknown
    """
    multiplier = UNIT_MULTIPLIERS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"Unknown byte unit '{unit}' (use bytes, KB, MB or GB)")
    return int(amount * multiplier)


def format_bytes(num_bytes: int) -> str:
    """Format a byte count for humans (e.g., 1536 -> "1.5 KB")."""
    if num_bytes < 1024:
        return f"{num_bytes} B"

    value = num_bytes / 1024
    for suffix in ("KB", "MB", "GB"):
        if value < 1024:
            return f"{value:.1f} {suffix}"
        value /= 1024
    return f"{value:.1f} TB"
