"""Device registry: persistent store, identifier resolution and fan-out.

The registry owns every :class:`Device` and binds each to the
dispatcher.  Devices are cached in memory and written through to
:class:`Storage`.

Identifiers resolve, in order, against id, name, host and MAC.  Patterns
are shell globs (``*``, ``?``, ``[...]``) matched case-insensitively
against the same four fields; ``*`` matches every device.

:meth:`DeviceRegistry.foreach` runs one task per matched device and
waits for all of them.  A failing device never aborts the others: its
error is kept in that device's :class:`DeviceOutcome`.  Cancelling the
caller cancels every child.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from fnmatch import fnmatchcase
from typing import Any

from pydantic import TypeAdapter, ValidationError

from myhome._device import Device, Dispatcher, normalize_mac
from myhome._discovery import DeviceCandidate
from myhome._errors import BadRequestError, MyHomeError, NotFoundError, as_error
from myhome._storage import Storage

logger = logging.getLogger(__name__)

_GLOB_CHARS = frozenset("*?[")
_JSON = TypeAdapter(Any)

DeviceFn = Callable[..., Awaitable[Any]]


def is_pattern(identifier: str) -> bool:
    return any(char in _GLOB_CHARS for char in identifier)


def jsonable(value: Any) -> Any:
    """Convert models, sets and datetimes to plain JSON values."""
    return _JSON.dump_python(value, mode="json")


@dataclass
class DeviceOutcome:
    """Result of one device's share of a fan-out."""

    device_id: str
    device_name: str | None = None
    result: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"device_id": self.device_id, "device_name": self.device_name}
        if self.error is not None:
            entry["error"] = as_error(self.error)
        else:
            entry["result"] = jsonable(self.result)
        return entry


class DeviceRegistry:
    def __init__(self, storage: Storage, dispatcher: Dispatcher) -> None:
        self.storage = storage
        self.dispatcher = dispatcher
        self._devices: dict[str, Device] = {}

    async def load(self) -> int:
        """Fill the cache from storage; return the device count."""
        self._devices = {
            device.id: device.bind(self.dispatcher)
            for device in await self.storage.load_devices()
        }
        logger.info("Loaded %d device(s)", len(self._devices))
        return len(self._devices)

    def devices(self) -> list[Device]:
        return sorted(self._devices.values(), key=lambda d: d.id)

    def __len__(self) -> int:
        return len(self._devices)

    # -- Lookup -----------------------------------------------------------------

    def find(self, identifier: str) -> Device | None:
        if identifier in self._devices:
            return self._devices[identifier]
        wanted = identifier.lower()
        mac = normalize_mac(identifier)
        for device in self._devices.values():
            if device.name and device.name.lower() == wanted:
                return device
        for device in self._devices.values():
            if device.host and device.host == identifier:
                return device
        for device in self._devices.values():
            if device.mac and device.mac == mac:
                return device
        return None

    def get(self, identifier: str) -> Device:
        """Return the device whose id, name, host or MAC is *identifier*.

        Raises:
            NotFoundError: Nothing matches.
        """
        device = self.find(identifier)
        if device is None:
            msg = f"no device matches {identifier!r}"
            raise NotFoundError(msg)
        return device

    def match(self, pattern: str) -> list[Device]:
        """Return every device with a field matching the glob *pattern*."""
        wanted = pattern.lower()
        matched = []
        for device in self.devices():
            fields = (device.id, device.name, device.host, device.mac)
            if any(f and fnmatchcase(f.lower(), wanted) for f in fields):
                matched.append(device)
        return matched

    def resolve(self, identifier: str) -> list[Device]:
        """Resolve a glob or a single identifier to a non-empty device list."""
        if not is_pattern(identifier):
            return [self.get(identifier)]
        devices = self.match(identifier)
        if not devices:
            msg = f"no device matches {identifier!r}"
            raise NotFoundError(msg)
        return devices

    # -- Fan-out ----------------------------------------------------------------

    async def foreach(self, pattern: str, fn: DeviceFn, *args: Any) -> dict[str, DeviceOutcome]:
        """Run ``fn(device, *args)`` for every match of *pattern* in parallel.

        Raises:
            NotFoundError: *pattern* matches nothing.
        """
        devices = self.match(pattern) or ([d] if (d := self.find(pattern)) else [])
        if not devices:
            msg = f"no device matches {pattern!r}"
            raise NotFoundError(msg)
        return await self.run_each(devices, fn, *args)

    @staticmethod
    async def run_each(
        devices: Iterable[Device],
        fn: DeviceFn,
        *args: Any,
    ) -> dict[str, DeviceOutcome]:
        by_id = {d.id: d for d in devices}
        outcomes = {d.id: DeviceOutcome(device_id=d.id, device_name=d.name) for d in by_id.values()}

        async def run_one(device: Device) -> None:
            outcome = outcomes[device.id]
            try:
                outcome.result = await fn(device, *args)
            except MyHomeError as exc:
                outcome.error = exc
                logger.info("%s failed: %s", device.id, exc, extra={"device": device.id})
            except Exception as exc:
                outcome.error = exc
                logger.warning(
                    "%s failed unexpectedly",
                    device.id,
                    exc_info=True,
                    extra={"device": device.id},
                )

        async with asyncio.TaskGroup() as group:
            for device in by_id.values():
                group.create_task(run_one(device), name=f"foreach-{device.id}")
        return outcomes

    # -- Mutation ---------------------------------------------------------------

    async def upsert(self, device: Device) -> Device:
        """Insert *device* or merge it into the known one with the same id.

        Mutable facts (host, model, generation, MAC, last-seen,
        capabilities, info) take the incoming value when it is set.  An
        existing name or room is kept; groups are never touched here.
        """
        existing = self._devices.get(device.id)
        if existing is None:
            self._check_name(device.id, device.name)
            device.mac = normalize_mac(device.mac)
            device.bind(self.dispatcher)
            await self.storage.save_device(device)
            self._devices[device.id] = device
            logger.info("Registered %s", device.id, extra={"device": device.id})
            return device

        if device.host:
            existing.set_host(device.host)
        existing.manufacturer = device.manufacturer or existing.manufacturer
        existing.model = device.model or existing.model
        existing.generation = device.generation or existing.generation
        existing.mac = normalize_mac(device.mac) or existing.mac
        if device.last_seen and (not existing.last_seen or device.last_seen > existing.last_seen):
            existing.last_seen = device.last_seen
        if device.capabilities:
            existing.capabilities = set(device.capabilities)
        if device.info:
            existing.info = dict(device.info)
        if not existing.name and device.name:
            self._check_name(existing.id, device.name)
            existing.name = device.name
        if not existing.room_id and device.room_id:
            existing.room_id = device.room_id
        await self.storage.save_device(existing)
        return existing

    async def update(self, identifier: str, changes: dict[str, Any]) -> Device:
        """Apply an explicit edit (name, room, host, ...) to one device."""
        device = self.get(identifier)
        allowed = {"name", "room_id", "host", "manufacturer", "model", "generation", "mac"}
        unknown = set(changes) - allowed
        if unknown:
            msg = f"cannot update field(s): {', '.join(sorted(unknown))}"
            raise BadRequestError(msg)
        if "name" in changes:
            self._check_name(device.id, changes["name"])
        try:
            candidate = Device.model_validate({**device.model_dump(), **changes})
        except ValidationError as exc:
            raise BadRequestError(str(exc)) from exc

        for key in changes:
            if key == "host":
                device.set_host(candidate.host)
            elif key == "mac":
                device.mac = normalize_mac(candidate.mac)
            else:
                setattr(device, key, getattr(candidate, key))
        await self.storage.save_device(device)
        return device

    async def set_room(self, identifier: str, room_id: str | None) -> Device:
        device = self.get(identifier)
        device.room_id = room_id or None
        await self.storage.save_device(device)
        return device

    async def save(self, device: Device) -> None:
        await self.storage.save_device(device)

    async def forget(self, identifier: str) -> Device:
        device = self.get(identifier)
        await self.storage.delete_device(device.id)
        del self._devices[device.id]
        self.dispatcher.limiter.forget(device.id)
        logger.info("Forgot %s", device.id, extra={"device": device.id})
        return device

    async def observe(self, candidate: DeviceCandidate) -> Device:
        """Apply a discovery candidate: refresh host and last-seen, never evict.

        Facts fetched by :meth:`Device.refresh` win over the advertisement;
        model, generation and info are only filled in when still unknown.
        """
        existing = self._devices.get(candidate.id)
        info = {k: v for k, v in (("app", candidate.app), ("ver", candidate.version)) if v}
        if existing is None:
            return await self.upsert(
                Device(
                    id=candidate.id,
                    model=candidate.model,
                    generation=candidate.generation,
                    host=candidate.host,
                    last_seen=datetime.now(UTC),
                    info=info,
                ),
            )

        if candidate.host:
            existing.set_host(candidate.host)
        existing.last_seen = datetime.now(UTC)
        existing.model = existing.model or candidate.model
        existing.generation = existing.generation or candidate.generation
        if not existing.info:
            existing.info = info
        await self.storage.save_device(existing)
        logger.debug("Observed %s at %s", existing.id, candidate.host, extra={"device": existing.id})
        return existing

    async def import_devices(self, items: list[dict[str, Any]]) -> list[Device]:
        """Upsert a JSON array of device objects.

        Every item is validated, and every new name checked, before
        anything is written: a rejected import leaves the registry as it was.

        Raises:
            BadRequestError: An item is not a valid device, or its name
                clashes with a known device or another item.
        """
        try:
            devices = [Device.model_validate(item) for item in items]
        except ValidationError as exc:
            raise BadRequestError(str(exc)) from exc

        claimed: dict[str, str] = {}
        for device in devices:
            existing = self._devices.get(device.id)
            if not device.name or (existing is not None and existing.name) or device.id in claimed.values():
                continue
            self._check_name(device.id, device.name)
            owner = claimed.setdefault(device.name.lower(), device.id)
            if owner != device.id:
                msg = f"name {device.name!r} is used by both {owner} and {device.id}"
                raise BadRequestError(msg)
        return [await self.upsert(device) for device in devices]

    def export(self) -> list[dict[str, Any]]:
        return [device.model_dump(mode="json") for device in self.devices()]

    def _check_name(self, device_id: str, name: str | None) -> None:
        if not name:
            return
        for other in self._devices.values():
            if other.id != device_id and other.name and other.name.lower() == name.lower():
                msg = f"name {name!r} is already used by {other.id}"
                raise BadRequestError(msg)
