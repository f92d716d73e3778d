"""Tests for the UniFi controller client using httpx.MockTransport."""

import json
from collections.abc import Callable

import httpx
import pytest

from netquota.collectors import UniFiClient, UniFiConfig
from netquota.errors import ControllerError

BASE = "https://unifi.local:8443"

CLIENT_ROWS = [
    {
        "mac": "AA:BB:CC:00:00:01",
        "name": "kid-tablet",
        "hostname": "tablet",
        "ip": "192.168.1.20",
        "tx_bytes": 1000,
        "rx_bytes": 2500,
        "last_seen": 1709539200,
    },
    {"mac": "aa:bb:cc:00:00:02", "hostname": "laptop", "is_wired": True},
    {"hostname": "no-mac"},
]


class Recorder:
    """Routes requests to a handler and keeps every request for assertions."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


def _client(recorder: Recorder, **kwargs: object) -> UniFiClient:
    config = UniFiConfig(url=BASE, username="admin", password="secret", **kwargs)  # type: ignore[arg-type]
    return UniFiClient(config, transport=httpx.MockTransport(recorder))


def _ok(data: list | None = None, headers: dict[str, str] | None = None) -> httpx.Response:
    return httpx.Response(200, json={"meta": {"rc": "ok"}, "data": data or []}, headers=headers)


class TestLogin:
    def test_classic_login(self) -> None:
        recorder = Recorder(lambda request: _ok())
        with _client(recorder) as client:
            client.login()

        assert recorder.paths == ["/api/login"]
        body = json.loads(recorder.requests[0].content)
        assert body == {"username": "admin", "password": "secret"}

    def test_udm_login_and_prefix(self) -> None:
        recorder = Recorder(lambda request: _ok(CLIENT_ROWS))
        with _client(recorder, is_udm=True) as client:
            client.login()
            client.list_connected_clients()

        assert recorder.paths == ["/api/auth/login", "/proxy/network/api/s/default/stat/sta"]

    def test_login_rejected(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(400, text="api.err.Invalid"))
        with _client(recorder) as client, pytest.raises(ControllerError):
            client.login()

    def test_unreachable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with _client(Recorder(handler)) as client, pytest.raises(ControllerError):
            client.login()


class TestCsrfToken:
    def test_token_captured_and_sent(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/login"):
                return _ok(headers={"X-CSRF-Token": "token-1"})
            return _ok()

        recorder = Recorder(handler)
        with _client(recorder, is_udm=True) as client:
            client.login()
            assert client.csrf_token == "token-1"
            client.block_client("aa:bb:cc:00:00:01")

        assert "x-csrf-token" not in recorder.requests[0].headers
        assert recorder.requests[1].headers["x-csrf-token"] == "token-1"

    def test_token_refreshed(self) -> None:
        tokens = iter(["token-1", "token-2"])

        recorder = Recorder(lambda request: _ok(headers={"X-CSRF-Token": next(tokens)}))
        with _client(recorder) as client:
            client.login()
            client.list_connected_clients()
            assert client.csrf_token == "token-2"

    def test_instances_do_not_share_tokens(self) -> None:
        recorder = Recorder(lambda request: _ok(headers={"X-CSRF-Token": "mine"}))
        with _client(recorder) as first, _client(Recorder(lambda request: _ok())) as second:
            first.login()
            second.login()
            assert first.csrf_token == "mine"
            assert second.csrf_token is None


class TestClients:
    def test_parse_connected_clients(self) -> None:
        recorder = Recorder(lambda request: _ok(CLIENT_ROWS))
        with _client(recorder, site="home") as client:
            clients = client.list_connected_clients()

        assert recorder.paths == ["/api/s/home/stat/sta"]
        assert len(clients) == 2

        tablet = clients[0]
        assert tablet.mac == "aa:bb:cc:00:00:01"
        assert tablet.total_bytes == 3500
        assert tablet.display_name == "kid-tablet"
        assert tablet.ip == "192.168.1.20"
        assert tablet.last_seen is not None

        laptop = clients[1]
        assert laptop.total_bytes == 0
        assert laptop.is_wired
        assert laptop.display_name == "laptop"

    def test_known_clients(self) -> None:
        recorder = Recorder(lambda request: _ok([{"mac": "aa:bb:cc:00:00:03", "blocked": True}]))
        with _client(recorder) as client:
            clients = client.list_known_clients()

        assert recorder.paths == ["/api/s/default/rest/user"]
        assert clients[0].blocked

    def test_get_client(self) -> None:
        recorder = Recorder(lambda request: _ok(CLIENT_ROWS))
        with _client(recorder) as client:
            assert client.get_client("AA:BB:CC:00:00:02") is not None
            assert client.get_client("aa:bb:cc:00:00:09") is None

    def test_invalid_json(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(200, text="<html>"))
        with _client(recorder) as client, pytest.raises(ControllerError):
            client.list_connected_clients()


class TestBlocking:
    @pytest.mark.parametrize(("method", "cmd"), [("block_client", "block-sta"), ("unblock_client", "unblock-sta")])
    def test_stamgr_command(self, method: str, cmd: str) -> None:
        recorder = Recorder(lambda request: _ok())
        with _client(recorder) as client:
            getattr(client, method)("AA:BB:CC:00:00:01")

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/api/s/default/cmd/stamgr"
        assert json.loads(request.content) == {"cmd": cmd, "mac": "aa:bb:cc:00:00:01"}

    def test_failure_raises(self) -> None:
        recorder = Recorder(lambda request: httpx.Response(500, text="boom"))
        with _client(recorder) as client, pytest.raises(ControllerError):
            client.block_client("aa:bb:cc:00:00:01")

    def test_relogin_on_expired_session(self) -> None:
        responses = iter([httpx.Response(401), _ok(), _ok()])

        recorder = Recorder(lambda request: next(responses))
        with _client(recorder) as client:
            client.unblock_client("aa:bb:cc:00:00:01")

        assert recorder.paths == [
            "/api/s/default/cmd/stamgr",
            "/api/login",
            "/api/s/default/cmd/stamgr",
        ]

    def test_relogin_only_once(self) -> None:
        responses = iter([httpx.Response(401), _ok(), httpx.Response(401)])

        recorder = Recorder(lambda request: next(responses))
        with _client(recorder) as client, pytest.raises(ControllerError):
            client.block_client("aa:bb:cc:00:00:01")
        assert len(recorder.requests) == 3
