"""``Script.*`` on-device JavaScript management."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from myhome._methods import HttpVerb, MethodRegistry
from myhome.components._base import SetConfigResult, ShellyModel


class ScriptConfig(ShellyModel):
    id: int
    name: str | None = None
    enable: bool = False


class ScriptStatus(ShellyModel):
    id: int
    running: bool = False
    mem_used: int | None = None
    mem_peak: int | None = None
    mem_free: int | None = None
    errors: list[str] = Field(default_factory=list)


class ScriptList(ShellyModel):
    scripts: list[ScriptStatus | ScriptConfig] = Field(default_factory=list)


class ScriptCreated(ShellyModel):
    id: int


class CodeLength(ShellyModel):
    len: int


class ScriptCode(ShellyModel):
    data: str = ""
    left: int = 0


class RunState(ShellyModel):
    was_running: bool


class EvalResult(ShellyModel):
    result: Any = None


def register(registry: MethodRegistry) -> None:
    registry.register("Script.Create", ScriptCreated)
    registry.register("Script.PutCode", CodeLength)
    registry.register("Script.GetCode", ScriptCode, HttpVerb.GET)
    registry.register("Script.Start", RunState)
    registry.register("Script.Stop", RunState)
    registry.register("Script.Delete")
    registry.register("Script.List", ScriptList, HttpVerb.GET)
    registry.register("Script.Eval", EvalResult)
    registry.register("Script.GetConfig", ScriptConfig, HttpVerb.GET)
    registry.register("Script.SetConfig", SetConfigResult)
    registry.register("Script.GetStatus", ScriptStatus, HttpVerb.GET)
