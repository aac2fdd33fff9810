"""``Mqtt.*`` device-side MQTT client configuration."""

from __future__ import annotations

from myhome._methods import HttpVerb, MethodRegistry
from myhome.components._base import SetConfigResult, ShellyModel


class MqttConfig(ShellyModel):
    enable: bool = False
    server: str | None = None
    client_id: str | None = None
    user: str | None = None
    topic_prefix: str | None = None
    rpc_ntf: bool = True
    status_ntf: bool = False
    enable_control: bool = True


class MqttStatus(ShellyModel):
    connected: bool = False


def register(registry: MethodRegistry) -> None:
    registry.register("Mqtt.GetConfig", MqttConfig, HttpVerb.GET)
    registry.register("Mqtt.SetConfig", SetConfigResult)
    registry.register("Mqtt.GetStatus", MqttStatus, HttpVerb.GET)
