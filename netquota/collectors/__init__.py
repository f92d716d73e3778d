"""Network controller clients."""

from netquota.collectors.base import DeviceController
from netquota.collectors.unifi import UniFiClient, UniFiConfig

__all__ = [
    "DeviceController",
    "UniFiClient",
    "UniFiConfig",
]
