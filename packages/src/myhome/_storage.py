"""Persistent store for devices, groups and temperature rooms.

A single long-lived aiosqlite connection serves the daemon; sqlite
serialises writers and the registry keeps an in-memory cache in front
of the ``devices`` table.  Pass ``":memory:"`` as the path for tests.

Schema::

    devices(id PK, manufacturer, name UNIQUE, model, generation, host,
            mac UNIQUE, last_seen, capabilities json, room_id, info json)
    groups(name PK, description, kvs json)
    group_members(group_name -> groups, device_id -> devices)
    temperature_rooms(room_id PK, name, comfort_temp, eco_temp,
                      weekday_schedule_json, weekend_schedule_json)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from types import TracebackType
from typing import Any

import aiosqlite

from myhome._device import Device
from myhome._errors import BadRequestError, InternalError
from myhome._groups import Group
from myhome._temperature import TemperatureRoom

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS devices (
    id TEXT PRIMARY KEY,
    manufacturer TEXT NOT NULL DEFAULT 'Shelly',
    name TEXT UNIQUE,
    model TEXT,
    generation INTEGER,
    host TEXT NOT NULL DEFAULT '',
    mac TEXT UNIQUE,
    last_seen TEXT,
    capabilities TEXT NOT NULL DEFAULT '[]',
    room_id TEXT,
    info TEXT NOT NULL DEFAULT '{}'
);
CREATE TABLE IF NOT EXISTS groups (
    name TEXT PRIMARY KEY,
    description TEXT NOT NULL DEFAULT '',
    kvs TEXT NOT NULL DEFAULT '{}'
);
CREATE TABLE IF NOT EXISTS group_members (
    group_name TEXT NOT NULL REFERENCES groups(name) ON DELETE CASCADE,
    device_id TEXT NOT NULL REFERENCES devices(id) ON DELETE CASCADE,
    PRIMARY KEY (group_name, device_id)
);
CREATE TABLE IF NOT EXISTS temperature_rooms (
    room_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    comfort_temp REAL NOT NULL,
    eco_temp REAL NOT NULL,
    weekday_schedule_json TEXT NOT NULL DEFAULT '[]',
    weekend_schedule_json TEXT NOT NULL DEFAULT '[]'
);
"""


class Storage:
    """aiosqlite-backed persistence.

    Usage::

        async with Storage("myhome.db") as storage:
            devices = await storage.load_devices()
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def open(self) -> None:
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.info("Opened device store %s", self.path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> Storage:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            msg = "storage is not open"
            raise InternalError(msg)
        return self._db

    async def _write(self, sql: str, args: tuple[Any, ...]) -> int:
        """Run one write statement and commit; return the affected row count."""
        async with self._write_lock:
            try:
                cursor = await self.db.execute(sql, args)
            except sqlite3.IntegrityError as exc:
                await self.db.rollback()
                msg = f"constraint violated: {exc}"
                raise BadRequestError(msg) from exc
            await self.db.commit()
            return cursor.rowcount

    # -----------------------------------------------------------------------
    # Devices
    # -----------------------------------------------------------------------

    async def save_device(self, device: Device) -> None:
        await self._write(
            """
            INSERT INTO devices (id, manufacturer, name, model, generation, host,
                                 mac, last_seen, capabilities, room_id, info)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                manufacturer = excluded.manufacturer,
                name = excluded.name,
                model = excluded.model,
                generation = excluded.generation,
                host = excluded.host,
                mac = excluded.mac,
                last_seen = excluded.last_seen,
                capabilities = excluded.capabilities,
                room_id = excluded.room_id,
                info = excluded.info
            """,
            (
                device.id,
                device.manufacturer,
                device.name or None,
                device.model,
                device.generation,
                device.host,
                device.mac,
                device.last_seen.isoformat() if device.last_seen else None,
                json.dumps(sorted(device.capabilities)),
                device.room_id,
                json.dumps(device.info, default=str),
            ),
        )

    async def load_devices(self) -> list[Device]:
        members: dict[str, set[str]] = {}
        async with self.db.execute("SELECT group_name, device_id FROM group_members") as cur:
            async for row in cur:
                members.setdefault(row["device_id"], set()).add(row["group_name"])

        devices: list[Device] = []
        async with self.db.execute("SELECT * FROM devices ORDER BY id") as cur:
            async for row in cur:
                devices.append(
                    Device(
                        id=row["id"],
                        manufacturer=row["manufacturer"],
                        name=row["name"],
                        model=row["model"],
                        generation=row["generation"],
                        host=row["host"],
                        mac=row["mac"],
                        last_seen=datetime.fromisoformat(row["last_seen"])
                        if row["last_seen"]
                        else None,
                        capabilities=set(json.loads(row["capabilities"])),
                        room_id=row["room_id"],
                        groups=members.get(row["id"], set()),
                        info=json.loads(row["info"]),
                    ),
                )
        return devices

    async def delete_device(self, device_id: str) -> bool:
        return await self._write("DELETE FROM devices WHERE id = ?", (device_id,)) > 0

    # -----------------------------------------------------------------------
    # Groups
    # -----------------------------------------------------------------------

    async def create_group(self, group: Group) -> None:
        await self._write(
            "INSERT INTO groups (name, description, kvs) VALUES (?, ?, ?)",
            (group.name, group.description, json.dumps(group.kvs)),
        )

    async def update_group(self, group: Group) -> None:
        await self._write(
            "UPDATE groups SET description = ?, kvs = ? WHERE name = ?",
            (group.description, json.dumps(group.kvs), group.name),
        )

    async def delete_group(self, name: str) -> bool:
        return await self._write("DELETE FROM groups WHERE name = ?", (name,)) > 0

    async def get_group(self, name: str) -> Group | None:
        async with self.db.execute("SELECT * FROM groups WHERE name = ?", (name,)) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        return Group(
            name=row["name"],
            description=row["description"],
            kvs=json.loads(row["kvs"]),
            devices=await self.group_members(name),
        )

    async def list_groups(self) -> list[Group]:
        groups: list[Group] = []
        async with self.db.execute("SELECT name FROM groups ORDER BY name") as cur:
            names = [row["name"] async for row in cur]
        for name in names:
            group = await self.get_group(name)
            if group is not None:
                groups.append(group)
        return groups

    async def group_members(self, name: str) -> set[str]:
        async with self.db.execute(
            "SELECT device_id FROM group_members WHERE group_name = ?",
            (name,),
        ) as cur:
            return {row["device_id"] async for row in cur}

    async def add_member(self, name: str, device_id: str) -> None:
        await self._write(
            "INSERT OR IGNORE INTO group_members (group_name, device_id) VALUES (?, ?)",
            (name, device_id),
        )

    async def remove_member(self, name: str, device_id: str) -> bool:
        return (
            await self._write(
                "DELETE FROM group_members WHERE group_name = ? AND device_id = ?",
                (name, device_id),
            )
            > 0
        )

    # -----------------------------------------------------------------------
    # Temperature rooms
    # -----------------------------------------------------------------------

    async def save_room(self, room: TemperatureRoom) -> None:
        await self._write(
            """
            INSERT INTO temperature_rooms (room_id, name, comfort_temp, eco_temp,
                                           weekday_schedule_json, weekend_schedule_json)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(room_id) DO UPDATE SET
                name = excluded.name,
                comfort_temp = excluded.comfort_temp,
                eco_temp = excluded.eco_temp,
                weekday_schedule_json = excluded.weekday_schedule_json,
                weekend_schedule_json = excluded.weekend_schedule_json
            """,
            (
                room.room_id,
                room.name,
                room.comfort_temp,
                room.eco_temp,
                json.dumps(room.weekday_schedule),
                json.dumps(room.weekend_schedule),
            ),
        )

    async def get_room(self, room_id: str) -> TemperatureRoom | None:
        async with self.db.execute(
            "SELECT * FROM temperature_rooms WHERE room_id = ?",
            (room_id,),
        ) as cur:
            row = await cur.fetchone()
        return _room_from_row(row) if row is not None else None

    async def list_rooms(self) -> list[TemperatureRoom]:
        async with self.db.execute("SELECT * FROM temperature_rooms ORDER BY room_id") as cur:
            return [_room_from_row(row) async for row in cur]

    async def delete_room(self, room_id: str) -> bool:
        return (
            await self._write("DELETE FROM temperature_rooms WHERE room_id = ?", (room_id,))
            > 0
        )


def _room_from_row(row: aiosqlite.Row) -> TemperatureRoom:
    return TemperatureRoom(
        room_id=row["room_id"],
        name=row["name"],
        comfort_temp=row["comfort_temp"],
        eco_temp=row["eco_temp"],
        weekday_schedule=json.loads(row["weekday_schedule_json"]),
        weekend_schedule=json.loads(row["weekend_schedule_json"]),
    )
