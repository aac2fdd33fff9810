"""``Sys.*`` system component."""

from __future__ import annotations

from myhome._methods import HttpVerb, MethodRegistry
from myhome.components._base import SetConfigResult, ShellyModel


class SysConfig(ShellyModel):
    device: dict[str, object] | None = None
    location: dict[str, object] | None = None
    sntp: dict[str, object] | None = None
    cfg_rev: int | None = None


class SysStatus(ShellyModel):
    mac: str | None = None
    restart_required: bool = False
    time: str | None = None
    unixtime: int | None = None
    uptime: int | None = None
    ram_size: int | None = None
    ram_free: int | None = None
    fs_size: int | None = None
    fs_free: int | None = None
    cfg_rev: int | None = None
    kvs_rev: int | None = None
    schedule_rev: int | None = None


def register(registry: MethodRegistry) -> None:
    registry.register("Sys.GetConfig", SysConfig, HttpVerb.GET)
    registry.register("Sys.GetStatus", SysStatus, HttpVerb.GET)
    registry.register("Sys.SetConfig", SetConfigResult)
