"""Room temperature settings and comfort schedules.

Each room has a comfort and an eco target.  A schedule is a list of
``HH:MM-HH:MM`` comfort ranges; outside them the eco target applies.
Monday to Friday use the weekday schedule, Saturday and Sunday the
weekend one.  A range whose end is before its start wraps past midnight.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, time
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator, model_validator

from myhome._errors import NotFoundError

if TYPE_CHECKING:
    from myhome._storage import Storage

logger = logging.getLogger(__name__)

_RANGE_RE = re.compile(r"^(\d{2}):(\d{2})-(\d{2}):(\d{2})$")


class DayType(StrEnum):
    WORK_DAY = "work-day"
    DAY_OFF = "day-off"


class Mode(StrEnum):
    COMFORT = "comfort"
    ECO = "eco"


def parse_range(spec: str) -> tuple[time, time]:
    """Parse ``"06:30-08:00"`` into two times.

    Raises:
        ValueError: Malformed range.
    """
    match = _RANGE_RE.match(spec.strip())
    if match is None:
        msg = f"invalid time range {spec!r} (expected HH:MM-HH:MM)"
        raise ValueError(msg)
    h1, m1, h2, m2 = (int(part) for part in match.groups())
    return time(h1, m1), time(h2, m2)


def in_range(moment: time, start: time, end: time) -> bool:
    if start <= end:
        return start <= moment < end
    return moment >= start or moment < end


class TemperatureRoom(BaseModel):
    room_id: str = Field(min_length=1)
    name: str
    comfort_temp: float = Field(ge=5, le=30)
    eco_temp: float = Field(ge=5, le=30)
    weekday_schedule: list[str] = Field(default_factory=list)
    weekend_schedule: list[str] = Field(default_factory=list)

    @field_validator("weekday_schedule", "weekend_schedule")
    @classmethod
    def _check_ranges(cls, value: list[str]) -> list[str]:
        for spec in value:
            parse_range(spec)
        return value

    @model_validator(mode="after")
    def _eco_not_above_comfort(self) -> TemperatureRoom:
        if self.eco_temp > self.comfort_temp:
            msg = "eco_temp must not exceed comfort_temp"
            raise ValueError(msg)
        return self

    def schedule_for(self, day_type: DayType) -> list[str]:
        if day_type is DayType.WORK_DAY:
            return self.weekday_schedule
        return self.weekend_schedule


class Setpoint(BaseModel):
    room_id: str
    at: datetime
    day_type: DayType
    mode: Mode
    setpoint: float


def day_type_of(moment: datetime) -> DayType:
    return DayType.WORK_DAY if moment.weekday() < 5 else DayType.DAY_OFF


def setpoint_at(room: TemperatureRoom, moment: datetime) -> Setpoint:
    """Return the target temperature in force at *moment*."""
    day_type = day_type_of(moment)
    clock = moment.time().replace(second=0, microsecond=0)
    mode = Mode.ECO
    for spec in room.schedule_for(day_type):
        start, end = parse_range(spec)
        if in_range(clock, start, end):
            mode = Mode.COMFORT
            break
    return Setpoint(
        room_id=room.room_id,
        at=moment,
        day_type=day_type,
        mode=mode,
        setpoint=room.comfort_temp if mode is Mode.COMFORT else room.eco_temp,
    )


class TemperatureService:
    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    async def get(self, room_id: str) -> TemperatureRoom:
        room = await self.storage.get_room(room_id)
        if room is None:
            msg = f"no temperature settings for room {room_id!r}"
            raise NotFoundError(msg)
        return room

    async def set(self, room: TemperatureRoom) -> TemperatureRoom:
        await self.storage.save_room(room)
        logger.info("Saved temperature settings of room %s", room.room_id)
        return room

    async def list(self) -> list[TemperatureRoom]:
        return await self.storage.list_rooms()

    async def delete(self, room_id: str) -> None:
        if not await self.storage.delete_room(room_id):
            msg = f"no temperature settings for room {room_id!r}"
            raise NotFoundError(msg)

    async def setpoint(self, room_id: str, at: datetime | None = None) -> Setpoint:
        room = await self.get(room_id)
        return setpoint_at(room, at or datetime.now().astimezone())
