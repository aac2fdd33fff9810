"""``Shelly.*`` device-wide methods.

See Also:
    https://shelly-api-docs.shelly.cloud/gen2/ComponentsAndServices/Shelly
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import Field

from myhome._methods import HttpVerb, MethodRegistry
from myhome.components._base import ShellyModel

if TYPE_CHECKING:
    from myhome._device import Device

GET_DEVICE_INFO = "Shelly.GetDeviceInfo"
GET_COMPONENTS = "Shelly.GetComponents"
GET_STATUS = "Shelly.GetStatus"


class DeviceInfo(ShellyModel):
    id: str
    mac: str | None = None
    model: str | None = None
    gen: int | None = None
    fw_id: str | None = None
    ver: str | None = None
    app: str | None = None
    name: str | None = None
    profile: str | None = None
    auth_en: bool = False
    auth_domain: str | None = None


class Component(ShellyModel):
    key: str
    status: dict[str, Any] | None = None
    config: dict[str, Any] | None = None

    @property
    def kind(self) -> str:
        """Component type: ``"switch"`` for ``"switch:0"``."""
        return self.key.split(":", 1)[0]


class ComponentsResult(ShellyModel):
    components: list[Component] = Field(default_factory=list)
    cfg_rev: int | None = None
    offset: int = 0
    total: int = 0


class MethodList(ShellyModel):
    methods: list[str] = Field(default_factory=list)


class FirmwareRelease(ShellyModel):
    version: str
    build_id: str | None = None


class UpdateCheck(ShellyModel):
    stable: FirmwareRelease | None = None
    beta: FirmwareRelease | None = None


class Timezones(ShellyModel):
    timezones: list[str] = Field(default_factory=list)


class Location(ShellyModel):
    tz: str | None = None
    lat: float | None = None
    lon: float | None = None


def register(registry: MethodRegistry) -> None:
    registry.register(GET_DEVICE_INFO, DeviceInfo, HttpVerb.GET)
    registry.register(GET_STATUS, None, HttpVerb.GET)
    registry.register("Shelly.GetConfig", None, HttpVerb.GET)
    registry.register("Shelly.ListMethods", MethodList, HttpVerb.GET)
    registry.register(GET_COMPONENTS, ComponentsResult, HttpVerb.POST)
    registry.register("Shelly.CheckForUpdate", UpdateCheck, HttpVerb.GET)
    registry.register("Shelly.ListTimezones", Timezones, HttpVerb.GET)
    registry.register("Shelly.DetectLocation", Location, HttpVerb.GET)
    registry.register("Shelly.Reboot")
    registry.register("Shelly.Update")
    registry.register("Shelly.FactoryReset")
    registry.register("Shelly.ResetWiFiConfig")


async def get_device_info(device: Device) -> DeviceInfo:
    return await device.call(GET_DEVICE_INFO, {"ident": True})


async def get_components(device: Device) -> ComponentsResult:
    """Fetch every component key, following ``offset`` pagination."""
    result = await device.call(GET_COMPONENTS, {"offset": 0})
    components = list(result.components)
    while len(components) < result.total and result.components:
        result = await device.call(GET_COMPONENTS, {"offset": len(components)})
        components.extend(result.components)
    return ComponentsResult(components=components, cfg_rev=result.cfg_rev, total=len(components))


async def get_status(device: Device) -> dict[str, Any]:
    return await device.call(GET_STATUS)
