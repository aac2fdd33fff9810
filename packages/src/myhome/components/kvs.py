"""``KVS.*`` on-device key/value store.

Values are strings on the wire; structured values are stored as JSON
text by the callers that need them.

See Also:
    https://shelly-api-docs.shelly.cloud/gen2/ComponentsAndServices/KVS
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import Field

from myhome._methods import HttpVerb, MethodRegistry
from myhome.components._base import ShellyModel

if TYPE_CHECKING:
    from myhome._device import Device

SET = "KVS.Set"
GET = "KVS.Get"
GET_MANY = "KVS.GetMany"
LIST = "KVS.List"
DELETE = "KVS.Delete"


class KvsStatus(ShellyModel):
    etag: str | None = None
    rev: int | None = None


class KvsValue(KvsStatus):
    value: Any = None


class KvsItem(KvsValue):
    key: str


class KvsItems(ShellyModel):
    items: list[KvsItem] = Field(default_factory=list)


class KvsKeys(ShellyModel):
    keys: dict[str, KvsStatus] = Field(default_factory=dict)
    rev: int | None = None


def register(registry: MethodRegistry) -> None:
    registry.register(SET, KvsStatus)
    registry.register(GET, KvsValue, HttpVerb.GET)
    registry.register(GET_MANY, KvsItems, HttpVerb.GET)
    registry.register(LIST, KvsKeys, HttpVerb.GET)
    registry.register(DELETE, KvsStatus)


async def set_value(device: Device, key: str, value: str) -> KvsStatus:
    return await device.call(SET, {"key": key, "value": value})


async def get_value(device: Device, key: str) -> KvsValue:
    return await device.call(GET, {"key": key})


async def get_many(device: Device, match: str = "*") -> KvsItems:
    return await device.call(GET_MANY, {"match": match})


async def delete_value(device: Device, key: str) -> KvsStatus:
    return await device.call(DELETE, {"key": key})
