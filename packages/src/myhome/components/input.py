"""``Input.*`` component."""

from __future__ import annotations

from myhome._methods import HttpVerb, MethodRegistry
from myhome.components._base import ShellyModel


class InputConfig(ShellyModel):
    id: int
    name: str | None = None
    type: str | None = None
    invert: bool = False


class InputStatus(ShellyModel):
    id: int
    state: bool | None = None


def register(registry: MethodRegistry) -> None:
    registry.register("Input.GetConfig", InputConfig, HttpVerb.GET)
    registry.register("Input.GetStatus", InputStatus, HttpVerb.GET)
