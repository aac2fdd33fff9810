"""``Switch.*`` relay component.

See Also:
    https://shelly-api-docs.shelly.cloud/gen2/ComponentsAndServices/Switch
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from myhome._methods import HttpVerb, MethodRegistry
from myhome.components._base import SetConfigResult, ShellyModel

if TYPE_CHECKING:
    from myhome._device import Channel, Device

TOGGLE = "Switch.Toggle"
SET = "Switch.Set"
GET_STATUS = "Switch.GetStatus"


class SwitchConfig(ShellyModel):
    id: int
    name: str | None = None
    in_mode: str | None = None
    initial_state: str | None = None
    auto_on: bool = False
    auto_on_delay: float = 0.0
    auto_off: bool = False
    auto_off_delay: float = 0.0


class SwitchStatus(ShellyModel):
    id: int
    source: str | None = None
    output: bool = False
    apower: float | None = None
    voltage: float | None = None
    current: float | None = None
    temperature: dict[str, float | None] | None = None


class ToggleResult(ShellyModel):
    was_on: bool


class SetParams(ShellyModel):
    id: int
    on: bool
    toggle_after: float | None = None


def register(registry: MethodRegistry) -> None:
    registry.register("Switch.GetConfig", SwitchConfig, HttpVerb.GET)
    registry.register("Switch.SetConfig", SetConfigResult)
    registry.register(GET_STATUS, SwitchStatus, HttpVerb.GET)
    registry.register(TOGGLE, ToggleResult)
    registry.register(SET, ToggleResult)


async def toggle(device: Device, switch_id: int, channel: Channel | None = None) -> ToggleResult:
    return await device.call(TOGGLE, {"id": switch_id}, channel=channel)


async def set_output(
    device: Device,
    switch_id: int,
    on: bool,
    *,
    toggle_after: float | None = None,
    channel: Channel | None = None,
) -> ToggleResult:
    params = SetParams(id=switch_id, on=on, toggle_after=toggle_after)
    return await device.call(SET, params, channel=channel)


async def get_status(device: Device, switch_id: int, channel: Channel | None = None) -> SwitchStatus:
    return await device.call(GET_STATUS, {"id": switch_id}, channel=channel)
