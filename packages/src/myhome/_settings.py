"""Daemon configuration via pydantic-settings.

Configuration is loaded from environment variables and/or a ``.env``
file.  Every variable carries the ``MYHOME_`` prefix and nested models
use ``__`` as the delimiter, e.g. ``MYHOME_MQTT__HOST=broker.lan``.

Sections:

* **mqtt** — broker resolution, credentials, RPC deadline, close grace.
* **http** — device HTTP timeout and retry budget.
* **ratelimit** — per-device minimum spacing between commands.
* **storage** — sqlite database location.
* **server** — RPC server identity and HTTP listener.
* **discovery** — periodic mDNS rediscovery.
* **logging** — level, format, optional file sink, rotation.

All durations are in **seconds**.
"""

from __future__ import annotations

import socket
from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# -------------------------------------------------------------------
# Sub-models (BaseModel, NOT BaseSettings — nested via composition)
# -------------------------------------------------------------------


def _default_client_id() -> str:
    return f"myhome-{socket.gethostname().split('.')[0].lower()}"


class MqttSettings(BaseModel):
    """MQTT broker connection and correlator configuration.

    The broker is resolved in order: ``host`` when set, then a DNS
    lookup of ``broker_hostname``, then an mDNS browse of
    ``_mqtt._tcp.local.`` bounded by ``mdns_timeout``.

    Environment variables (with ``__`` nesting)::

        MYHOME_MQTT__HOST=broker.lan
        MYHOME_MQTT__USERNAME=user
        MYHOME_MQTT__PASSWORD=secret
    """

    host: str | None = Field(
        default=None,
        description="Explicit broker hostname or IP.  Skips discovery when set.",
    )
    port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=1883,
        description="MQTT broker port.",
    )
    username: str | None = Field(default=None, description="Broker username.")
    password: SecretStr | None = Field(default=None, description="Broker password.")
    client_id: str = Field(
        default_factory=_default_client_id,
        description=(
            "MQTT client identifier.  Devices answer RPCs on '<client_id>/rpc'."
        ),
    )
    broker_hostname: str = Field(
        default="mqtt",
        description="Well-known hostname tried with DNS before mDNS.",
    )
    mdns_timeout: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Seconds to browse _mqtt._tcp.local. for a broker.",
    )
    connect_timeout: Annotated[float, Field(gt=0)] = Field(
        default=10.0,
        description="Seconds a caller waits for the broker to acknowledge.",
    )
    rpc_timeout: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Default deadline for a correlated MQTT RPC.",
    )
    grace: Annotated[float, Field(ge=0)] = Field(
        default=3.0,
        description="Seconds in-flight calls may still complete after close.",
    )
    reconnect_interval: Annotated[float, Field(gt=0)] = Field(
        default=2.0,
        description="Initial reconnect delay; doubles up to the maximum.",
    )
    reconnect_max_interval: Annotated[float, Field(gt=0)] = Field(
        default=60.0,
        description="Upper bound for the reconnect backoff.",
    )
    qos: Annotated[int, Field(ge=0, le=2)] = Field(
        default=1,
        description="QoS used for subscriptions and RPC publishes.",
    )


class HttpSettings(BaseModel):
    """Device HTTP channel timeouts and retry budget."""

    timeout: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Per-request timeout handed to the HTTP client.",
    )
    retry_attempts: Annotated[int, Field(ge=1)] = Field(
        default=4,
        description="Total attempts (first try included) for retryable failures.",
    )
    retry_initial: Annotated[float, Field(ge=0)] = Field(
        default=0.2,
        description="First backoff delay; doubles on each retry.",
    )
    retry_max: Annotated[float, Field(ge=0)] = Field(
        default=3.0,
        description="Upper bound for a single backoff delay.",
    )
    retry_after_max: Annotated[float, Field(ge=0)] = Field(
        default=30.0,
        description="Ceiling for a device-supplied ``Retry-After`` delay.",
    )


class RateLimitSettings(BaseModel):
    min_interval: Annotated[float, Field(ge=0)] = Field(
        default=0.0,
        description="Minimum start-to-start spacing per device.  0 disables.",
    )


class StorageSettings(BaseModel):
    path: str = Field(default="myhome.db", description="sqlite database file.")


class ServerSettings(BaseModel):
    """RPC server identity and listeners."""

    id: str = Field(
        default="myhome",
        description="Server id; requests arrive on '<id>/rpc'.",
    )
    http_host: str = Field(default="0.0.0.0", description="HTTP bind address.")
    http_port: Annotated[int, Field(ge=0, le=65535)] = Field(
        default=8080,
        description="HTTP port for POST /rpc.  0 disables the HTTP surface.",
    )
    heartbeat_interval: Annotated[float, Field(gt=0)] = Field(
        default=60.0,
        description="Seconds between retained status heartbeats.",
    )


class DiscoverySettings(BaseModel):
    enabled: bool = Field(default=True, description="Run periodic mDNS discovery.")
    interval: Annotated[float, Field(gt=0)] = Field(
        default=300.0,
        description="Seconds between rediscovery rounds.",
    )
    browse_timeout: Annotated[float, Field(gt=0)] = Field(
        default=5.0,
        description="Length of one mDNS browse window.",
    )


class LoggingSettings(BaseModel):
    """Logging configuration.

    ``format="json"`` emits one JSON object per line for log
    aggregators; ``"text"`` is a human-readable timestamped format.
    When ``file`` is set, logs are also written to a rotating file.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Root log level.",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format.",
    )
    file: str | None = Field(
        default=None,
        description="Optional log file path. ``None`` means stderr only.",
    )
    max_file_size_mb: Annotated[int, Field(ge=1)] = Field(
        default=10,
        description="Maximum log file size in megabytes before rotation.",
    )
    backup_count: Annotated[int, Field(ge=0)] = Field(
        default=3,
        description="Number of rotated log files to keep.",
    )


# -------------------------------------------------------------------
# Root settings
# -------------------------------------------------------------------


class Settings(BaseSettings):
    """Root settings for the myhome daemon.

    Example ``.env``::

        MYHOME_MQTT__HOST=broker.lan
        MYHOME_MQTT__PASSWORD=secret
        MYHOME_RATELIMIT__MIN_INTERVAL=0.25
        MYHOME_STORAGE__PATH=/var/lib/myhome/myhome.db
        MYHOME_LOGGING__FORMAT=text
    """

    model_config = SettingsConfigDict(
        env_prefix="MYHOME_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mqtt: MqttSettings = Field(default_factory=MqttSettings)
    http: HttpSettings = Field(default_factory=HttpSettings)
    ratelimit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @model_validator(mode="after")
    def _reply_topic_differs(self) -> Settings:
        if self.mqtt.client_id == self.server.id:
            msg = "mqtt.client_id must differ from server.id (they name distinct RPC topics)"
            raise ValueError(msg)
        return self
