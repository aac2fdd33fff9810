"""``HTTP.*`` outbound requests issued by the device itself."""

from __future__ import annotations

from myhome._methods import MethodRegistry
from myhome.components._base import ShellyModel


class HttpResponse(ShellyModel):
    code: int
    message: str | None = None
    headers: dict[str, str] | None = None
    body: str | None = None
    body_b64: str | None = None


def register(registry: MethodRegistry) -> None:
    # side effects happen on the remote end, so never a GET hint here
    registry.register("HTTP.GET", HttpResponse)
    registry.register("HTTP.POST", HttpResponse)
    registry.register("HTTP.Request", HttpResponse)
