"""``Schedule.*`` cron-like jobs."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from myhome._methods import HttpVerb, MethodRegistry
from myhome.components._base import Revision, ShellyModel


class ScheduleJob(ShellyModel):
    id: int | None = None
    enable: bool = True
    timespec: str
    calls: list[dict[str, Any]] = Field(default_factory=list)


class ScheduleJobs(ShellyModel):
    jobs: list[ScheduleJob] = Field(default_factory=list)
    rev: int | None = None


class ScheduleCreated(Revision):
    id: int


def register(registry: MethodRegistry) -> None:
    registry.register("Schedule.Create", ScheduleCreated)
    registry.register("Schedule.Update", Revision)
    registry.register("Schedule.List", ScheduleJobs, HttpVerb.GET)
    registry.register("Schedule.Delete", Revision)
    registry.register("Schedule.DeleteAll", Revision)
