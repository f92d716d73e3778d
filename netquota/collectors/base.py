"""Device-control contract consumed by the quota core."""

from typing import Protocol

from netquota.models import ClientSample


class DeviceController(Protocol):
    """Lists connected clients with traffic counters and blocks/unblocks them.

    All calls are synchronous, network-bound and may raise ControllerError.
    """

    def list_connected_clients(self) -> list[ClientSample]:
        ...

    def block_client(self, mac: str) -> None:
        ...

    def unblock_client(self, mac: str) -> None:
        ...
