"""Unit tests for myhome._device — devices and channel selection.

Test Techniques Used:
    - Decision Table: channel selection from host, readiness and request
    - Equivalence Partitioning: Channel.parse inputs, MAC spellings
    - State Transition Testing: host set/cleared, MQTT channel started
    - Mock-based Isolation: FakeShelly over MockMqttClient and MockTransport
"""

from __future__ import annotations

import httpx
import pytest

from myhome._correlator import MqttChannel
from myhome._device import Channel, Device, Dispatcher, normalize_mac
from myhome._errors import BadRequestError, InternalError, MethodUnknownError, UnreachableError
from myhome._http import HttpChannel
from myhome._methods import MethodRegistry
from myhome._mqtt import MockMqttClient
from myhome._settings import HttpSettings
from myhome.testing import FakeShelly


@pytest.fixture
def fake(mock_mqtt: MockMqttClient) -> FakeShelly:
    return FakeShelly("shelly1minig3-abc123", mqtt=mock_mqtt, name="Kitchen")


@pytest.fixture
def dispatcher(
    method_registry: MethodRegistry,
    mock_mqtt: MockMqttClient,
    fake: FakeShelly,
) -> Dispatcher:
    return Dispatcher(
        methods=method_registry,
        http=HttpChannel(
            HttpSettings(),
            client=httpx.AsyncClient(transport=httpx.MockTransport(fake.handle_http)),
        ),
        mqtt=MqttChannel(mock_mqtt, client_id="myhome-test", timeout=1.0),
    )


class TestChannelParse:
    """Technique: Equivalence Partitioning."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (None, Channel.DEFAULT),
            ("", Channel.DEFAULT),
            ("http", Channel.HTTP),
            ("MQTT", Channel.MQTT),
            (Channel.MQTT, Channel.MQTT),
        ],
    )
    def test_valid(self, value: str | None, expected: Channel) -> None:
        assert Channel.parse(value) is expected

    def test_invalid(self) -> None:
        with pytest.raises(BadRequestError, match="unknown channel"):
            Channel.parse("carrier-pigeon")


class TestNormalizeMac:
    """Technique: Equivalence Partitioning."""

    @pytest.mark.parametrize("mac", ["aa:bb:cc:dd:ee:ff", "AA-BB-CC-DD-EE-FF", "aabbccddeeff"])
    def test_spellings(self, mac: str) -> None:
        assert normalize_mac(mac) == "AABBCCDDEEFF"

    def test_empty(self) -> None:
        assert normalize_mac("") is None
        assert normalize_mac(None) is None


class TestDeviceState:
    """Technique: State Transition Testing."""

    def test_http_ready_requires_host(self) -> None:
        assert not Device(id="d").http_ready()
        assert Device(id="d", host="10.0.0.2").http_ready()

    def test_clear_then_set_host(self) -> None:
        device = Device(id="d", host="10.0.0.2")
        device.clear_host()
        assert device.host == ""
        assert not device.http_ready()
        device.set_host("10.0.0.3")
        assert device.http_ready()

    async def test_unbound_device_cannot_call(self) -> None:
        with pytest.raises(InternalError, match="not bound"):
            await Device(id="d").call("Switch.Toggle")

    def test_summary(self) -> None:
        device = Device(id="d", name="Hall", host="10.0.0.2", model="S3SW", room_id="hall")
        summary = device.summary()
        assert summary.id == "d"
        assert summary.room_id == "hall"

    def test_private_state_not_serialised(self, dispatcher: Dispatcher) -> None:
        device = Device(id="d").bind(dispatcher)
        assert "_dispatcher" not in device.model_dump()


class TestSelectChannel:
    """Technique: Decision Table."""

    async def test_default_prefers_http(self, dispatcher: Dispatcher) -> None:
        device = Device(id="d", host="10.0.0.2").bind(dispatcher)
        assert await dispatcher.select_channel(device, Channel.DEFAULT) is Channel.HTTP

    async def test_default_without_host_uses_mqtt(self, dispatcher: Dispatcher) -> None:
        device = Device(id="d").bind(dispatcher)
        assert await dispatcher.select_channel(device, Channel.DEFAULT) is Channel.MQTT
        assert dispatcher.mqtt is not None
        assert dispatcher.mqtt.ready

    async def test_default_after_host_cleared_uses_mqtt(self, dispatcher: Dispatcher) -> None:
        device = Device(id="d", host="10.0.0.2").bind(dispatcher)
        device.clear_host()
        assert await dispatcher.select_channel(device, Channel.DEFAULT) is Channel.MQTT

    async def test_explicit_http_without_host(self, dispatcher: Dispatcher) -> None:
        device = Device(id="d").bind(dispatcher)
        with pytest.raises(UnreachableError, match="HTTP"):
            await dispatcher.select_channel(device, Channel.HTTP)

    async def test_explicit_mqtt_with_host(self, dispatcher: Dispatcher) -> None:
        device = Device(id="d", host="10.0.0.2").bind(dispatcher)
        assert await dispatcher.select_channel(device, Channel.MQTT) is Channel.MQTT

    async def test_no_transport_at_all(self, method_registry: MethodRegistry) -> None:
        dispatcher = Dispatcher(methods=method_registry)
        device = Device(id="d").bind(dispatcher)
        with pytest.raises(UnreachableError, match="no transport"):
            await dispatcher.select_channel(device, Channel.DEFAULT)


class TestCall:
    """Technique: Mock-based Isolation."""

    async def test_http_call(self, dispatcher: Dispatcher, fake: FakeShelly) -> None:
        device = Device(id=fake.device_id, host="10.0.0.2").bind(dispatcher)
        result = await device.call("Switch.Toggle", {"id": 0})
        assert result.was_on is False
        assert fake.requests[0][0] == "http"

    async def test_mqtt_call(self, dispatcher: Dispatcher, fake: FakeShelly) -> None:
        device = Device(id=fake.device_id).bind(dispatcher)
        result = await device.call("Switch.Toggle", {"id": 0})
        assert result.was_on is False
        assert fake.requests[0][0] == "mqtt"

    async def test_forced_mqtt(self, dispatcher: Dispatcher, fake: FakeShelly) -> None:
        device = Device(id=fake.device_id, host="10.0.0.2").bind(dispatcher)
        await device.call("Switch.GetStatus", {"id": 0}, channel=Channel.MQTT)
        assert fake.requests[0][0] == "mqtt"

    async def test_unknown_method(self, dispatcher: Dispatcher, fake: FakeShelly) -> None:
        device = Device(id=fake.device_id, host="10.0.0.2").bind(dispatcher)
        with pytest.raises(MethodUnknownError):
            await device.call("Nope.Nope")
        assert fake.requests == []


class TestRefresh:
    """Technique: State-based Testing."""

    async def test_refresh_fills_info(self, dispatcher: Dispatcher, fake: FakeShelly) -> None:
        device = Device(id=fake.device_id, host="10.0.0.2").bind(dispatcher)

        assert await device.refresh() is True

        assert device.model == "S3SW-001X8EU"
        assert device.generation == 3
        assert device.mac == "AABBCCDDEEFF"
        assert device.name == "Kitchen"
        assert device.capabilities == {"switch", "sys", "wifi", "mqtt"}
        assert device.last_seen is not None

    async def test_second_refresh_reports_no_change(
        self,
        dispatcher: Dispatcher,
        fake: FakeShelly,
    ) -> None:
        device = Device(id=fake.device_id, host="10.0.0.2").bind(dispatcher)
        await device.refresh()
        assert await device.refresh() is False

    async def test_refresh_keeps_existing_name(
        self,
        dispatcher: Dispatcher,
        fake: FakeShelly,
    ) -> None:
        device = Device(id=fake.device_id, host="10.0.0.2", name="Pantry").bind(dispatcher)
        await device.refresh()
        assert device.name == "Pantry"
