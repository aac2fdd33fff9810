"""Device groups and their on-device KVS mirror.

A group is a named set of devices plus a key/value map of settings.
The map is written as JSON to every member's on-device KVS under
``group/<name>`` so scripts running on the device can read it.  Adding a
device mirrors the settings to it; removing a device deletes the key;
``sync`` rewrites the key on every member.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from myhome._errors import NotFoundError
from myhome.components import kvs

if TYPE_CHECKING:
    from myhome._device import Device
    from myhome._registry import DeviceOutcome, DeviceRegistry
    from myhome._storage import Storage

logger = logging.getLogger(__name__)

KVS_PREFIX = "group/"


def kvs_key(group_name: str) -> str:
    return f"{KVS_PREFIX}{group_name}"


class Group(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    kvs: dict[str, str] = Field(default_factory=dict)
    devices: set[str] = Field(default_factory=set)


class GroupService:
    """Group CRUD backed by :class:`Storage`, membership mirrored to devices."""

    def __init__(self, storage: Storage, registry: DeviceRegistry) -> None:
        self.storage = storage
        self.registry = registry

    async def list(self) -> list[Group]:
        return await self.storage.list_groups()

    async def show(self, name: str) -> Group:
        group = await self.storage.get_group(name)
        if group is None:
            msg = f"no group named {name!r}"
            raise NotFoundError(msg)
        return group

    async def create(self, name: str, description: str = "", kvs: dict[str, str] | None = None) -> Group:
        group = Group(name=name, description=description, kvs=kvs or {})
        await self.storage.create_group(group)
        logger.info("Created group %s", name)
        return group

    async def delete(self, name: str) -> None:
        group = await self.show(name)
        await self.storage.delete_group(name)
        for device_id in group.devices:
            device = self.registry.find(device_id)
            if device is not None:
                device.groups.discard(name)
        logger.info("Deleted group %s", name)

    async def add_device(self, name: str, identifier: str) -> dict[str, DeviceOutcome]:
        """Add the device(s) matching *identifier* and mirror the settings."""
        group = await self.show(name)
        devices = self.registry.resolve(identifier)
        for device in devices:
            await self.storage.add_member(name, device.id)
            device.groups.add(name)
        return await self.registry.run_each(devices, self._mirror, group)

    async def remove_device(self, name: str, identifier: str) -> dict[str, DeviceOutcome]:
        await self.show(name)
        devices = self.registry.resolve(identifier)
        for device in devices:
            await self.storage.remove_member(name, device.id)
            device.groups.discard(name)
        return await self.registry.run_each(devices, _forget_mirror, name)

    async def sync(self, name: str) -> dict[str, DeviceOutcome]:
        group = await self.show(name)
        devices = [d for d in (self.registry.find(i) for i in sorted(group.devices)) if d]
        if not devices:
            return {}
        return await self.registry.run_each(devices, self._mirror, group)

    @staticmethod
    async def _mirror(device: Device, group: Group) -> Any:
        return await kvs.set_value(device, kvs_key(group.name), json.dumps(group.kvs))


async def _forget_mirror(device: Device, name: str) -> Any:
    return await kvs.delete_value(device, kvs_key(name))
