"""``WiFi.*`` station and access-point configuration."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from myhome._methods import HttpVerb, MethodRegistry
from myhome.components._base import SetConfigResult, ShellyModel


class WifiConfig(ShellyModel):
    ap: dict[str, Any] | None = None
    sta: dict[str, Any] | None = None
    sta1: dict[str, Any] | None = None
    roam: dict[str, Any] | None = None


class WifiStatus(ShellyModel):
    sta_ip: str | None = None
    status: str | None = None
    ssid: str | None = None
    rssi: int | None = None
    ap_client_count: int | None = None


class WifiScan(ShellyModel):
    results: list[dict[str, Any]] = Field(default_factory=list)


class ApClients(ShellyModel):
    ts: int | None = None
    ap_clients: list[dict[str, Any]] = Field(default_factory=list)


def register(registry: MethodRegistry) -> None:
    registry.register("WiFi.GetConfig", WifiConfig, HttpVerb.GET)
    registry.register("WiFi.SetConfig", SetConfigResult)
    registry.register("WiFi.GetStatus", WifiStatus, HttpVerb.GET)
    registry.register("WiFi.Scan", WifiScan, HttpVerb.GET)
    registry.register("WiFi.ListAPClients", ApClients, HttpVerb.GET)
