"""``BLE.*`` Bluetooth gateway component (BLU sensors report through it)."""

from __future__ import annotations

from myhome._methods import HttpVerb, MethodRegistry
from myhome.components._base import SetConfigResult, ShellyModel


class BleConfig(ShellyModel):
    enable: bool = False
    rpc: dict[str, object] | None = None
    observer: dict[str, object] | None = None


class BleStatus(ShellyModel):
    pass


def register(registry: MethodRegistry) -> None:
    registry.register("BLE.GetConfig", BleConfig, HttpVerb.GET)
    registry.register("BLE.SetConfig", SetConfigResult)
    registry.register("BLE.GetStatus", BleStatus, HttpVerb.GET)
