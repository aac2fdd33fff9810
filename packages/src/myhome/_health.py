"""Server heartbeat and availability over MQTT.

Topic layout::

    {server_id}/status   <- retained JSON heartbeat, "offline" as LWT

Heartbeat payload schema::

    {
        "status": "online",
        "uptime_s": 3600.0,
        "version": "0.1.0",
        "devices": 12,
        "pending_calls": 0
    }

LWT integration:

- The broker publishes ``"offline"`` to ``{server_id}/status`` if the
  daemon disconnects unexpectedly.
- :func:`build_will_config` creates the matching :class:`WillConfig`.
- On graceful shutdown the daemon publishes ``"offline"`` itself.

Publication is retained, QoS 1 and fire-and-forget: failures are
logged, never propagated.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field

from myhome._clock import ClockPort
from myhome._mqtt import MqttPort, WillConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class HeartbeatPayload:
    """Immutable status snapshot ready for JSON serialisation."""

    status: str
    uptime_s: float
    version: str
    devices: int = 0
    pending_calls: int = 0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def build_will_config(server_id: str) -> WillConfig:
    """Create the LWT for ``{server_id}/status``: ``"offline"``, QoS 1, retained."""
    return WillConfig(
        topic=f"{server_id}/status",
        payload="offline",
        qos=1,
        retain=True,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@dataclass
class HealthReporter:
    """Publishes heartbeats for the daemon.

    Parameters
    ----------
    mqtt:
        MQTT port used for publishing.
    server_id:
        Topic root, e.g. ``"myhome"``.
    version:
        Version string included in heartbeats.
    clock:
        Monotonic clock for uptime measurement.
    devices:
        Returns the number of registered devices.
    pending_calls:
        Returns the number of in-flight MQTT device calls.
    """

    mqtt: MqttPort
    server_id: str
    version: str
    clock: ClockPort
    devices: Callable[[], int] = field(default=lambda: 0, repr=False)
    pending_calls: Callable[[], int] = field(default=lambda: 0, repr=False)
    _start_time: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._start_time = self.clock.now()

    @property
    def topic(self) -> str:
        return f"{self.server_id}/status"

    def snapshot(self) -> HeartbeatPayload:
        return HeartbeatPayload(
            status="online",
            uptime_s=self.clock.now() - self._start_time,
            version=self.version,
            devices=self.devices(),
            pending_calls=self.pending_calls(),
        )

    async def publish_heartbeat(self) -> None:
        logger.debug("Publishing heartbeat to %s", self.topic)
        await self._safe_publish(self.snapshot().to_json())

    async def run(self, interval: float) -> None:
        """Publish every *interval* seconds until cancelled.

        The first heartbeat is published separately at startup, so the
        loop sleeps first.
        """
        while True:
            await asyncio.sleep(interval)
            await self.publish_heartbeat()

    async def shutdown(self) -> None:
        logger.info("Publishing offline status")
        await self._safe_publish("offline")

    async def _safe_publish(self, payload: str) -> None:
        try:
            await self.mqtt.publish(self.topic, payload, retain=True, qos=1)
        except Exception:
            logger.exception("Failed to publish health to %s", self.topic)
