"""Server methods: ``device.*``, ``group.*``, ``switch.*``, ``temperature.*``,
``room.*`` and ``follow.*``.

Methods that take an ``identifier`` act on one device when it is a plain
id, name, host or MAC.  When it contains glob characters the work fans
out over every match and the result is a per-device map::

    {"shelly1minig3-abc123": {"device_id": "...", "device_name": "...",
                              "result": {...}},
     "shelly1minig3-def456": {"device_id": "...", "device_name": "...",
                              "error": {"code": 503, "kind": "unreachable", ...}}}
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from myhome._device import Channel, Device
from myhome._errors import NotFoundError
from myhome._follow import FollowService
from myhome._groups import GroupService
from myhome._methods import MethodRegistry
from myhome._registry import DeviceOutcome, DeviceRegistry, is_pattern
from myhome._server import RpcServer
from myhome._temperature import TemperatureRoom, TemperatureService
from myhome.components import shelly, switch


@dataclass
class Services:
    methods: MethodRegistry
    registry: DeviceRegistry
    groups: GroupService
    temperature: TemperatureService
    follow: FollowService


# ---------------------------------------------------------------------------
# Params
# ---------------------------------------------------------------------------


class PatternParams(BaseModel):
    pattern: str = "*"


class IdentifierParams(BaseModel):
    identifier: str


class DeviceUpdateParams(BaseModel):
    id: str
    name: str | None = None
    room_id: str | None = None
    host: str | None = None
    manufacturer: str | None = None
    model: str | None = None
    generation: int | None = None
    mac: str | None = None


class SetRoomParams(BaseModel):
    identifier: str
    room_id: str | None = None


class DeviceCallParams(BaseModel):
    identifier: str
    method: str
    params: dict[str, Any] | None = None
    channel: str | None = None
    timeout: float | None = Field(default=None, gt=0)


class ImportParams(BaseModel):
    devices: list[dict[str, Any]]


class GroupNameParams(BaseModel):
    name: str


class GroupCreateParams(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    kvs: dict[str, str] = Field(default_factory=dict)


class GroupMemberParams(BaseModel):
    group: str
    identifier: str


class SwitchParams(BaseModel):
    identifier: str
    switch_id: int = Field(default=0, ge=0)


class RoomParams(BaseModel):
    room_id: str


class SetpointParams(BaseModel):
    room_id: str
    at: datetime | None = None


class FollowParams(BaseModel):
    follower: str
    followed: str
    switch_id: str = "switch:0"
    follow_id: str = "switch:0"


class UnfollowParams(BaseModel):
    follower: str
    followed: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def outcome_map(outcomes: dict[str, DeviceOutcome]) -> dict[str, dict[str, Any]]:
    return {device_id: outcome.to_dict() for device_id, outcome in outcomes.items()}


async def per_device(registry: DeviceRegistry, identifier: str, fn: Any, *args: Any) -> Any:
    """Run ``fn(device, *args)`` on one device, or fan out for a glob."""
    if is_pattern(identifier):
        return outcome_map(await registry.foreach(identifier, fn, *args))
    return await fn(registry.get(identifier), *args)


def _switch_result(device: Device, switch_id: int, **fields: Any) -> dict[str, Any]:
    return {"device_id": device.id, "device_name": device.name, "switch_id": switch_id, **fields}


async def _toggle(device: Device, switch_id: int) -> dict[str, Any]:
    result = await switch.toggle(device, switch_id)
    return _switch_result(device, switch_id, was_on=result.was_on)


async def _set(device: Device, switch_id: int, on: bool) -> dict[str, Any]:
    result = await switch.set_output(device, switch_id, on)
    return _switch_result(device, switch_id, was_on=result.was_on)


async def _status(device: Device, switch_id: int) -> dict[str, Any]:
    status = await switch.get_status(device, switch_id)
    return _switch_result(device, switch_id, output=status.output, status=status)


async def _all_switches(device: Device) -> dict[str, Any]:
    status = await shelly.get_status(device)
    switches = {
        key.split(":", 1)[1]: value
        for key, value in status.items()
        if key.startswith("switch:") and isinstance(value, dict)
    }
    return {"device_id": device.id, "device_name": device.name, "switches": switches}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_handlers(server: RpcServer, services: Services) -> None:
    """Add every control-plane method to *server*."""
    _register_device(server, services)
    _register_groups(server, services.groups)
    _register_switch(server, services.registry)
    _register_temperature(server, services)
    _register_follow(server, services.follow)


def _register_device(server: RpcServer, services: Services) -> None:
    registry = services.registry

    @server.method("device.match", PatternParams)
    async def match(p: PatternParams) -> list[Any]:
        return [device.summary() for device in registry.match(p.pattern)]

    @server.method("device.lookup", IdentifierParams)
    async def lookup(p: IdentifierParams) -> list[Any]:
        return [device.summary() for device in registry.resolve(p.identifier)]

    @server.method("device.show", IdentifierParams)
    async def show(p: IdentifierParams) -> Device:
        return registry.get(p.identifier)

    @server.method("device.update", DeviceUpdateParams)
    async def update(p: DeviceUpdateParams) -> Device:
        return await registry.update(p.id, p.model_dump(exclude_unset=True, exclude={"id"}))

    @server.method("device.forget", IdentifierParams)
    async def forget(p: IdentifierParams) -> dict[str, str]:
        device = await registry.forget(p.identifier)
        return {"forgotten": device.id}

    @server.method("device.set-room", SetRoomParams)
    async def set_room(p: SetRoomParams) -> Device:
        return await registry.set_room(p.identifier, p.room_id)

    async def refresh_one(device: Device) -> dict[str, Any]:
        changed = await device.refresh()
        await registry.save(device)
        return {"changed": changed, "capabilities": sorted(device.capabilities)}

    @server.method("device.refresh", IdentifierParams)
    async def refresh(p: IdentifierParams) -> Any:
        return await per_device(registry, p.identifier, refresh_one)

    @server.method("device.call", DeviceCallParams)
    async def call(p: DeviceCallParams) -> Any:
        services.methods.lookup(p.method)
        channel = Channel.parse(p.channel)

        async def call_one(device: Device) -> Any:
            return await device.call(p.method, p.params, channel=channel, timeout=p.timeout)

        return await per_device(registry, p.identifier, call_one)

    @server.method("device.import", ImportParams)
    async def import_(p: ImportParams) -> dict[str, Any]:
        devices = await registry.import_devices(p.devices)
        return {"imported": len(devices), "devices": [device.id for device in devices]}

    @server.method("device.export")
    async def export() -> list[dict[str, Any]]:
        return registry.export()


def _register_groups(server: RpcServer, groups: GroupService) -> None:
    @server.method("group.list")
    async def list_() -> list[Any]:
        return await groups.list()

    @server.method("group.create", GroupCreateParams)
    async def create(p: GroupCreateParams) -> Any:
        return await groups.create(p.name, p.description, p.kvs)

    @server.method("group.delete", GroupNameParams)
    async def delete(p: GroupNameParams) -> dict[str, str]:
        await groups.delete(p.name)
        return {"deleted": p.name}

    @server.method("group.show", GroupNameParams)
    async def show(p: GroupNameParams) -> Any:
        return await groups.show(p.name)

    @server.method("group.add-device", GroupMemberParams)
    async def add_device(p: GroupMemberParams) -> Any:
        return outcome_map(await groups.add_device(p.group, p.identifier))

    @server.method("group.remove-device", GroupMemberParams)
    async def remove_device(p: GroupMemberParams) -> Any:
        return outcome_map(await groups.remove_device(p.group, p.identifier))

    @server.method("group.sync", GroupNameParams)
    async def sync(p: GroupNameParams) -> Any:
        return outcome_map(await groups.sync(p.name))


def _register_switch(server: RpcServer, registry: DeviceRegistry) -> None:
    @server.method("switch.toggle", SwitchParams)
    async def toggle(p: SwitchParams) -> Any:
        return await per_device(registry, p.identifier, _toggle, p.switch_id)

    @server.method("switch.on", SwitchParams)
    async def on(p: SwitchParams) -> Any:
        return await per_device(registry, p.identifier, _set, p.switch_id, True)

    @server.method("switch.off", SwitchParams)
    async def off(p: SwitchParams) -> Any:
        return await per_device(registry, p.identifier, _set, p.switch_id, False)

    @server.method("switch.status", SwitchParams)
    async def status(p: SwitchParams) -> Any:
        return await per_device(registry, p.identifier, _status, p.switch_id)

    @server.method("switch.all", IdentifierParams)
    async def all_(p: IdentifierParams) -> Any:
        return await per_device(registry, p.identifier, _all_switches)


def _register_temperature(server: RpcServer, services: Services) -> None:
    temperature = services.temperature
    registry = services.registry

    @server.method("temperature.get", RoomParams)
    async def get(p: RoomParams) -> TemperatureRoom:
        return await temperature.get(p.room_id)

    @server.method("temperature.set", TemperatureRoom)
    async def set_(p: TemperatureRoom) -> TemperatureRoom:
        return await temperature.set(p)

    @server.method("temperature.list")
    async def list_() -> list[TemperatureRoom]:
        return await temperature.list()

    @server.method("temperature.delete", RoomParams)
    async def delete(p: RoomParams) -> dict[str, str]:
        await temperature.delete(p.room_id)
        return {"deleted": p.room_id}

    @server.method("temperature.setpoint", SetpointParams)
    async def setpoint(p: SetpointParams) -> Any:
        return await temperature.setpoint(p.room_id, p.at)

    @server.method("room.list")
    async def room_list() -> list[dict[str, Any]]:
        rooms = {room.room_id: room.name for room in await temperature.list()}
        members: dict[str, list[str]] = {}
        for device in registry.devices():
            if device.room_id:
                members.setdefault(device.room_id, []).append(device.id)
                rooms.setdefault(device.room_id, device.room_id)
        return [
            {"room_id": room_id, "name": name, "devices": members.get(room_id, [])}
            for room_id, name in sorted(rooms.items())
        ]

    @server.method("room.show", RoomParams)
    async def room_show(p: RoomParams) -> dict[str, Any]:
        settings = await services.registry.storage.get_room(p.room_id)
        devices = [d.summary() for d in registry.devices() if d.room_id == p.room_id]
        if settings is None and not devices:
            msg = f"no room {p.room_id!r}"
            raise NotFoundError(msg)
        return {"room_id": p.room_id, "temperature": settings, "devices": devices}


def _register_follow(server: RpcServer, follow: FollowService) -> None:
    @server.method("follow.shelly", FollowParams)
    async def follow_shelly(p: FollowParams) -> Any:
        outcomes = await follow.follow(p.follower, p.followed, p.switch_id, p.follow_id)
        return outcome_map(outcomes)

    @server.method("follow.unfollow", UnfollowParams)
    async def unfollow(p: UnfollowParams) -> Any:
        return outcome_map(await follow.unfollow(p.follower, p.followed))
