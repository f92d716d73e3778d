"""Persistent storage for device configuration, usage and state."""

from netquota.storage.db import QuotaStore

__all__ = ["QuotaStore"]
