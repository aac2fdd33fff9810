"""Unit tests for myhome._http — device RPC over HTTP.

Test Techniques Used:
    - Specification-based Testing: GET query encoding vs. POST body
    - Mock-based Isolation: httpx.MockTransport in place of the network
    - Error Guessing: 5xx, 429, Retry-After, device error bodies
    - State-based Testing: host cleared after retries are exhausted
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

import httpx
import pytest

from myhome._device import Device
from myhome._errors import RemoteError, TransportError, UnreachableError
from myhome._http import HttpChannel, parse_retry_after, query_params, rpc_url
from myhome._methods import MethodRegistry
from myhome._settings import HttpSettings
from myhome.components.switch import SetParams, ToggleResult
from myhome.testing import FakeShelly

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _Sleeps:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _channel(handler: Any, sleeps: _Sleeps, **settings: Any) -> HttpChannel:
    return HttpChannel(
        HttpSettings(**settings),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleeps,
    )


@pytest.fixture
def sleeps() -> _Sleeps:
    return _Sleeps()


@pytest.fixture
def device() -> Device:
    return Device(id="shelly1minig3-abc123", host="192.168.1.20")


# ---------------------------------------------------------------------------
# Helpers under test
# ---------------------------------------------------------------------------


class TestRpcUrl:
    """Technique: Equivalence Partitioning."""

    @pytest.mark.parametrize(
        ("host", "expected"),
        [
            ("192.168.1.20", "http://192.168.1.20/rpc/Switch.Toggle"),
            ("shelly.lan", "http://shelly.lan/rpc/Switch.Toggle"),
            ("fe80::1", "http://[fe80::1]/rpc/Switch.Toggle"),
            ("[2001:db8::0:1]", "http://[2001:db8::1]/rpc/Switch.Toggle"),
        ],
    )
    def test_url(self, host: str, expected: str) -> None:
        assert rpc_url(host, "Switch.Toggle") == expected


class TestQueryParams:
    """Technique: Specification-based Testing."""

    def test_values_json_encoded(self) -> None:
        assert query_params({"id": 0, "key": "a b", "on": True}) == {
            "id": "0",
            "key": '"a b"',
            "on": "true",
        }

    def test_empty(self) -> None:
        assert query_params(None) == {}


class TestParseRetryAfter:
    """Technique: Equivalence Partitioning."""

    def test_seconds(self) -> None:
        assert parse_retry_after("3") == 3.0

    def test_http_date(self) -> None:
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        assert parse_retry_after("Thu, 01 Jan 2026 12:00:05 GMT", now=now) == 5.0

    def test_past_date_is_zero(self) -> None:
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        assert parse_retry_after("Thu, 01 Jan 2026 11:00:00 GMT", now=now) == 0.0

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_unparseable(self, value: str | None) -> None:
        assert parse_retry_after(value) is None


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


class TestCall:
    """Technique: Specification-based Testing with MockTransport."""

    async def test_post_sends_json_body(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        fake = FakeShelly(device.id)
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return fake.handle_http(request)

        channel = _channel(handler, sleeps)
        result = await channel.call(device, method_registry.lookup("Switch.Toggle"), {"id": 0})

        assert result == ToggleResult(was_on=False)
        (request,) = seen
        assert request.method == "POST"
        assert str(request.url) == "http://192.168.1.20/rpc/Switch.Toggle"
        assert json.loads(request.content) == {"id": 0}

    async def test_post_without_params_sends_empty_object(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        bodies: list[bytes] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(request.content)
            return httpx.Response(200, json=None)

        await _channel(handler, sleeps).call(device, method_registry.lookup("Shelly.Reboot"))
        assert json.loads(bodies[0]) == {}

    async def test_get_sends_query(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        fake = FakeShelly(device.id, switches={0: True})
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return fake.handle_http(request)

        status = await _channel(handler, sleeps).call(
            device,
            method_registry.lookup("Switch.GetStatus"),
            {"id": 0},
        )

        assert status.output is True
        assert seen[0].method == "GET"
        assert seen[0].url.params["id"] == "0"

    async def test_model_params(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        fake = FakeShelly(device.id)

        result = await _channel(fake.handle_http, sleeps).call(
            device,
            method_registry.lookup("Switch.Set"),
            SetParams(id=0, on=True),
        )
        assert result.was_on is False
        assert fake.switches[0] is True
        assert fake.requests == [("http", "Switch.Set", {"id": 0, "on": True})]

    async def test_no_host_is_unreachable(
        self,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        channel = _channel(lambda r: httpx.Response(200), sleeps)
        with pytest.raises(UnreachableError):
            await channel.call(Device(id="d"), method_registry.lookup("Switch.Toggle"))

    async def test_non_json_body_is_transport_error(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        channel = _channel(lambda r: httpx.Response(200, text="<html>"), sleeps)
        with pytest.raises(TransportError, match="non-JSON"):
            await channel.call(device, method_registry.lookup("Switch.Toggle"), {"id": 0})


class TestRetries:
    """Technique: Error Guessing."""

    async def test_retries_server_errors(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        answers = iter([httpx.Response(503), httpx.Response(200, json={"was_on": True})])
        channel = _channel(lambda r: next(answers), sleeps, retry_initial=0.5)

        result = await channel.call(device, method_registry.lookup("Switch.Toggle"), {"id": 0})

        assert result.was_on is True
        assert sleeps.calls == [0.5]
        assert device.host == "192.168.1.20"

    async def test_honours_retry_after(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        answers = iter(
            [
                httpx.Response(429, headers={"Retry-After": "2"}),
                httpx.Response(200, json={"was_on": False}),
            ],
        )
        channel = _channel(lambda r: next(answers), sleeps)
        await channel.call(device, method_registry.lookup("Switch.Toggle"), {"id": 0})
        assert sleeps.calls == [2.0]

    async def test_caps_long_retry_after(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        answers = iter(
            [
                httpx.Response(503, headers={"Retry-After": "86400"}),
                httpx.Response(200, json={"was_on": False}),
            ],
        )
        channel = _channel(lambda r: next(answers), sleeps, retry_after_max=10.0)
        with caplog.at_level(logging.WARNING, logger="myhome._http"):
            await channel.call(device, method_registry.lookup("Switch.Toggle"), {"id": 0})
        assert sleeps.calls == [10.0]
        assert "capping at 10s" in caplog.text

    async def test_backoff_doubles_up_to_max(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        channel = _channel(
            lambda r: httpx.Response(500),
            sleeps,
            retry_attempts=5,
            retry_initial=1.0,
            retry_max=3.0,
        )
        with pytest.raises(TransportError):
            await channel.call(device, method_registry.lookup("Switch.Toggle"), {"id": 0})
        assert sleeps.calls == [1.0, 2.0, 3.0, 3.0]

    async def test_exhausted_retries_clear_host(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            msg = "connection refused"
            raise httpx.ConnectError(msg, request=request)

        channel = _channel(refuse, sleeps, retry_attempts=3)
        with pytest.raises(TransportError, match="after 3 attempts"):
            await channel.call(device, method_registry.lookup("Switch.Toggle"), {"id": 0})

        assert device.host == ""
        assert not device.http_ready()
        assert len(sleeps.calls) == 2

    async def test_client_error_not_retried(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        channel = _channel(lambda r: httpx.Response(401, text="unauthorized"), sleeps)
        with pytest.raises(RemoteError) as exc_info:
            await channel.call(device, method_registry.lookup("Switch.Toggle"), {"id": 0})
        assert exc_info.value.remote_code == 401
        assert sleeps.calls == []
        assert device.host == "192.168.1.20"

    async def test_device_error_body_is_remote_error(
        self,
        device: Device,
        sleeps: _Sleeps,
        method_registry: MethodRegistry,
    ) -> None:
        fake = FakeShelly(device.id)
        channel = _channel(fake.handle_http, sleeps)
        with pytest.raises(RemoteError) as exc_info:
            await channel.call(device, method_registry.lookup("KVS.Get"), {"key": "missing"})
        assert exc_info.value.remote_code == -105
        assert sleeps.calls == []

    async def test_aclose_closes_client(self, sleeps: _Sleeps) -> None:
        channel = _channel(lambda r: httpx.Response(200), sleeps)
        client = await channel._get_client()  # noqa: SLF001
        await channel.aclose()
        assert client.is_closed
