"""Managed-device lookup by hardware address."""

from typing import Optional

from netquota.models import DeviceConfig, normalize_mac


class DeviceManager:
    """Indexes enabled device configurations for quick lookup.

    Provides O(1) case-insensitive lookup from MAC address to device.
    Disabled devices are not managed and never returned.
    """

    def __init__(self, devices: list[DeviceConfig]) -> None:
        """Initialize device manager.

        Args:
            devices: Device configurations as listed by the store
        """
        self._mac_to_device: dict[str, DeviceConfig] = {}

        for device in devices:
            if device.enabled:
                self._mac_to_device[normalize_mac(device.mac)] = device

    def get_device(self, mac: str) -> Optional[DeviceConfig]:
        """Look up a managed device by MAC address.

        Args:
            mac: Hardware address in any case

        Returns:
            DeviceConfig if managed, None otherwise
        """
        return self._mac_to_device.get(normalize_mac(mac))

    def is_managed(self, mac: str) -> bool:
        return normalize_mac(mac) in self._mac_to_device

    def get_all_devices(self) -> list[DeviceConfig]:
        """Return all managed devices."""
        return list(self._mac_to_device.values())

    def __len__(self) -> int:
        return len(self._mac_to_device)
