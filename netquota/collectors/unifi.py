"""UniFi Network controller client.

Talks to the controller's private JSON API:
- classic controllers: /api/login, /api/s/<site>/...
- UDM-class consoles: /api/auth/login, /proxy/network/api/s/<site>/...

Session cookies live in the httpx client; UDM consoles additionally require
the X-CSRF-Token header, which is refreshed from every response.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from netquota.errors import ControllerError
from netquota.models import ClientSample, normalize_mac

logger = logging.getLogger(__name__)

CSRF_HEADER = "X-CSRF-Token"


@dataclass
class UniFiConfig:
    """Configuration for the UniFi controller client."""

    url: str
    username: str = ""
    password: str = ""
    site: str = "default"

    # UDM / UDM Pro / UDM SE / Cloud Gateway consoles
    is_udm: bool = False

    # Controllers usually ship self-signed certificates
    verify_tls: bool = True

    # Per-request timeout in seconds
    timeout: float = 10.0


class UniFiClient:
    """Synchronous client for a UniFi controller.

    The CSRF token is owned by the instance and guarded by a lock, so a
    client can be shared by concurrent callers and separate instances never
    see each other's session.
    """

    def __init__(
        self,
        config: UniFiConfig,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Controller connection settings
            transport: Optional httpx transport (used by tests)
        """
        self.config = config
        self._base_url = config.url.rstrip("/")
        self._http = httpx.Client(
            verify=config.verify_tls,
            timeout=config.timeout,
            transport=transport,
        )
        self._csrf_token: Optional[str] = None
        self._token_lock = threading.Lock()
        self._login_lock = threading.Lock()

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "UniFiClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    @property
    def csrf_token(self) -> Optional[str]:
        with self._token_lock:
            return self._csrf_token

    def _api_prefix(self) -> str:
        return "/proxy/network" if self.config.is_udm else ""

    def _build_url(self, endpoint: str) -> str:
        return f"{self._base_url}{self._api_prefix()}{endpoint}"

    def _site_url(self, endpoint: str) -> str:
        return self._build_url(f"/api/s/{self.config.site}{endpoint}")

    def _request(
        self,
        method: str,
        url: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request with the current CSRF token and capture the new one."""
        headers = {"Content-Type": "application/json"}
        token = self.csrf_token
        if token:
            headers[CSRF_HEADER] = token

        try:
            resp = self._http.request(method, url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ControllerError(f"{method} {url} failed: {e}") from e

        new_token = resp.headers.get(CSRF_HEADER)
        if new_token:
            with self._token_lock:
                self._csrf_token = new_token

        return resp

    def _call(
        self,
        method: str,
        url: str,
        payload: Optional[dict[str, Any]] = None,
        action: str = "request",
    ) -> httpx.Response:
        """Send an API request, logging in again once if the session expired."""
        resp = self._request(method, url, payload)

        if resp.status_code == 401:
            logger.info("Controller session expired, logging in again")
            self.login()
            resp = self._request(method, url, payload)

        if resp.status_code != 200:
            raise ControllerError(
                f"Failed to {action}: status {resp.status_code}: {resp.text[:200]}"
            )
        return resp

    def login(self) -> None:
        """Authenticate with the controller.

        Raises:
            ControllerError: If the controller is unreachable or rejects the credentials
        """
        if self.config.is_udm:
            login_url = f"{self._base_url}/api/auth/login"
        else:
            login_url = f"{self._base_url}/api/login"

        payload = {"username": self.config.username, "password": self.config.password}

        with self._login_lock:
            resp = self._request("POST", login_url, payload)

        if resp.status_code != 200:
            raise ControllerError(
                f"Login failed with status {resp.status_code}: {resp.text[:200]}"
            )
        logger.info(f"Logged in to controller at {self._base_url}")

    def list_connected_clients(self) -> list[ClientSample]:
        """Get all currently connected clients with their session counters."""
        resp = self._call("GET", self._site_url("/stat/sta"), action="get clients")
        return self._parse_clients(resp)

    def list_known_clients(self) -> list[ClientSample]:
        """Get all clients the controller knows about, including offline and blocked ones."""
        resp = self._call("GET", self._site_url("/rest/user"), action="get known clients")
        return self._parse_clients(resp)

    def get_client(self, mac: str) -> Optional[ClientSample]:
        """Get a connected client by MAC, or None if it is not connected."""
        mac = normalize_mac(mac)
        for client in self.list_connected_clients():
            if client.mac == mac:
                return client
        return None

    def block_client(self, mac: str) -> None:
        """Block a client by MAC address."""
        self._stamgr("block-sta", mac)
        logger.debug(f"Controller blocked {mac}")

    def unblock_client(self, mac: str) -> None:
        """Unblock a client by MAC address."""
        self._stamgr("unblock-sta", mac)
        logger.debug(f"Controller unblocked {mac}")

    def _stamgr(self, cmd: str, mac: str) -> None:
        payload = {"cmd": cmd, "mac": normalize_mac(mac)}
        self._call("POST", self._site_url("/cmd/stamgr"), payload, action=cmd)

    def _parse_clients(self, resp: httpx.Response) -> list[ClientSample]:
        try:
            body = resp.json()
        except ValueError as e:
            raise ControllerError(f"Failed to decode controller response: {e}") from e

        clients = []
        for row in body.get("data", []):
            client = self._row_to_sample(row)
            if client is not None:
                clients.append(client)
        return clients

    @staticmethod
    def _row_to_sample(row: dict[str, Any]) -> Optional[ClientSample]:
        """Convert one controller client entry to a ClientSample."""
        mac = row.get("mac")
        if not mac:
            return None

        last_seen = None
        if row.get("last_seen"):
            last_seen = datetime.fromtimestamp(int(row["last_seen"]), tz=timezone.utc)

        return ClientSample(
            mac=normalize_mac(mac),
            tx_bytes=int(row.get("tx_bytes") or 0),
            rx_bytes=int(row.get("rx_bytes") or 0),
            name=row.get("name"),
            hostname=row.get("hostname"),
            ip=row.get("ip"),
            blocked=bool(row.get("blocked", False)),
            is_wired=bool(row.get("is_wired", False)),
            last_seen=last_seen,
        )
