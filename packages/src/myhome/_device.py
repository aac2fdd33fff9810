"""Devices and the channel dispatcher.

A :class:`Device` is identity plus cached information.  It holds a
non-owning handle to the :class:`Dispatcher`, which owns the method
registry, both channels and the rate limiter.  The registry owns the
devices; channels own neither.

Channel selection for ``Channel.DEFAULT``:

1. HTTP when the device has a host and its HTTP readiness flag is set;
2. MQTT when the reply topic is already being dispatched;
3. otherwise a one-shot MQTT setup is attempted before giving up with
   ``UnreachableError``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, PrivateAttr

from myhome._correlator import MqttChannel
from myhome._errors import BadRequestError, InternalError, MyHomeError, UnreachableError
from myhome._http import HttpChannel
from myhome._methods import MethodRegistry
from myhome._ratelimit import RateLimiter
from myhome.components import shelly

logger = logging.getLogger(__name__)


class Channel(StrEnum):
    DEFAULT = "default"
    HTTP = "http"
    MQTT = "mqtt"

    @classmethod
    def parse(cls, value: str | Channel | None) -> Channel:
        if value is None or value == "":
            return cls.DEFAULT
        try:
            return cls(str(value).lower())
        except ValueError:
            msg = f"unknown channel {value!r} (expected one of {', '.join(cls)})"
            raise BadRequestError(msg) from None


def normalize_mac(mac: str | None) -> str | None:
    """Return *mac* as upper-case hex without separators."""
    if not mac:
        return None
    return mac.replace(":", "").replace("-", "").upper()


class DeviceSummary(BaseModel):
    id: str
    name: str | None = None
    host: str = ""
    model: str | None = None
    generation: int | None = None
    room_id: str | None = None


class Device(BaseModel):
    """A device of the fleet.

    ``host`` is empty when the device is only reachable over MQTT.
    """

    id: str
    name: str | None = None
    manufacturer: str = "Shelly"
    model: str | None = None
    generation: int | None = None
    host: str = ""
    mac: str | None = None
    last_seen: datetime | None = None
    capabilities: set[str] = Field(default_factory=set)
    room_id: str | None = None
    groups: set[str] = Field(default_factory=set)
    info: dict[str, Any] = Field(default_factory=dict)

    _dispatcher: Dispatcher | None = PrivateAttr(default=None)
    _http_ready: bool = PrivateAttr(default=True)

    def bind(self, dispatcher: Dispatcher) -> Device:
        self._dispatcher = dispatcher
        return self

    # -- Readiness --------------------------------------------------------------

    def http_ready(self) -> bool:
        return bool(self.host) and self._http_ready

    def mqtt_ready(self) -> bool:
        dispatcher = self._dispatcher
        return dispatcher is not None and dispatcher.mqtt is not None and dispatcher.mqtt.ready

    def set_host(self, host: str) -> None:
        self.host = host
        self._http_ready = bool(host)

    def clear_host(self) -> None:
        """Forget the LAN address; the next default call goes over MQTT."""
        logger.info("Host of %s cleared", self.id, extra={"device": self.id})
        self.host = ""
        self._http_ready = False

    # -- Calls ------------------------------------------------------------------

    async def call(
        self,
        method: str,
        params: Any = None,
        *,
        channel: Channel | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Invoke *method* on the device and return the decoded result."""
        if self._dispatcher is None:
            msg = f"{self.id} is not bound to a dispatcher"
            raise InternalError(msg)
        return await self._dispatcher.call(
            self,
            method,
            params,
            channel=channel or Channel.DEFAULT,
            timeout=timeout,
        )

    async def refresh(self) -> bool:
        """Re-fetch device info and components.  Return True if anything changed."""
        before = self.model_dump(exclude={"last_seen"})
        info = await shelly.get_device_info(self)
        components = await shelly.get_components(self)

        self.model = info.model or self.model
        self.generation = info.gen or self.generation
        self.mac = normalize_mac(info.mac) or self.mac
        if not self.name and info.name:
            self.name = info.name
        self.info = info.model_dump(mode="json", exclude_none=True)
        self.capabilities = {component.kind for component in components.components}
        self.last_seen = datetime.now(UTC)
        return self.model_dump(exclude={"last_seen"}) != before

    def summary(self) -> DeviceSummary:
        return DeviceSummary(
            id=self.id,
            name=self.name,
            host=self.host,
            model=self.model,
            generation=self.generation,
            room_id=self.room_id,
        )


@dataclass
class Dispatcher:
    """Routes device calls through the method registry, limiter and channels."""

    methods: MethodRegistry
    http: HttpChannel | None = None
    mqtt: MqttChannel | None = None
    limiter: RateLimiter = field(default_factory=RateLimiter)

    async def call(
        self,
        device: Device,
        method: str,
        params: Any = None,
        *,
        channel: Channel = Channel.DEFAULT,
        timeout: float | None = None,
    ) -> Any:
        descriptor = self.methods.lookup(method)
        selected = await self.select_channel(device, channel)
        await self.limiter.wait(device.id)
        logger.debug(
            "Calling %s on %s via %s",
            method,
            device.id,
            selected,
            extra={"device": device.id, "method": method, "channel": str(selected)},
        )
        if selected is Channel.HTTP and self.http is not None:
            return await self.http.call(device, descriptor, params)
        if selected is Channel.MQTT and self.mqtt is not None:
            return await self.mqtt.call(device.id, descriptor, params, timeout=timeout)
        msg = f"selected channel {selected} has no transport"
        raise InternalError(msg)

    async def select_channel(self, device: Device, channel: Channel) -> Channel:
        """Pick the transport for one call.

        Raises:
            UnreachableError: No transport is viable for *device*.
        """
        if channel is Channel.HTTP:
            if self.http is None or not device.host:
                msg = f"{device.id} is not reachable over HTTP"
                raise UnreachableError(msg)
            return Channel.HTTP
        if channel is Channel.MQTT:
            await self._ensure_mqtt(device)
            return Channel.MQTT

        if self.http is not None and device.http_ready():
            return Channel.HTTP
        if device.mqtt_ready():
            return Channel.MQTT
        await self._ensure_mqtt(device)
        return Channel.MQTT

    async def _ensure_mqtt(self, device: Device) -> None:
        if self.mqtt is None:
            msg = f"no transport available for {device.id}"
            raise UnreachableError(msg)
        if self.mqtt.ready:
            return
        try:
            await self.mqtt.start()
        except MyHomeError as exc:
            msg = f"no transport available for {device.id}: {exc}"
            raise UnreachableError(msg) from exc
