"""MQTT client port and adapters.

Provides MqttPort (Protocol) and two implementations:

- MqttClient — the process-wide aiomqtt connection, created lazily
- MockMqttClient — test double that records calls and can stand in
  for a broker

Design decisions:

- aiomqtt imported lazily inside MqttClient._connection_loop() so the
  mock works without aiomqtt installed
- The broker is resolved on every (re)connect: explicit host, then DNS
  for the well-known ``mqtt`` name, then an mDNS browse of
  ``_mqtt._tcp.local.``
- ``connect()`` blocks the first caller until the broker acknowledges;
  concurrent callers wait on the same event
- Subscriptions are tracked and restored on reconnect
- Inbound messages fan out to callbacks; :func:`open_stream` adapts that
  into a bounded async stream so consumers never see the callbacks
- Disconnect callbacks let the correlator fail in-flight calls
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from myhome._discovery import MQTT_SERVICE, browse_first
from myhome._errors import TransportError
from myhome._settings import MqttSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MessageCallback = Callable[[str, str], Awaitable[None]]
"""Async callback receiving (topic, payload) for each inbound message."""

DisconnectCallback = Callable[[], None]
"""Called synchronously whenever an established connection is lost."""

BrokerResolver = Callable[[MqttSettings], Awaitable[tuple[str, int]]]

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WillConfig:
    """Last-Will-and-Testament configuration.

    Abstracts ``aiomqtt.Will`` so callers never depend on aiomqtt.
    """

    topic: str
    payload: str = "offline"
    qos: int = 1
    retain: bool = True


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class MqttPort(Protocol):
    """Port contract for MQTT publish/subscribe."""

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None: ...

    async def subscribe(self, topic: str) -> None: ...

    def on_message(self, callback: MessageCallback) -> None: ...

    def on_disconnect(self, callback: DisconnectCallback) -> None: ...


# ---------------------------------------------------------------------------
# Topic matching and streams
# ---------------------------------------------------------------------------


def topic_matches(topic_filter: str, topic: str) -> bool:
    """Return True when *topic* matches the MQTT *topic_filter*.

    Supports the ``+`` (one level) and ``#`` (remaining levels) wildcards.
    """
    filter_parts = topic_filter.split("/")
    topic_parts = topic.split("/")
    for index, part in enumerate(filter_parts):
        if part == "#":
            return True
        if index >= len(topic_parts):
            return False
        if part not in ("+", topic_parts[index]):
            return False
    return len(filter_parts) == len(topic_parts)


class Subscription:
    """Bounded async stream of ``(topic, payload)`` for one topic filter.

    When the consumer falls behind, the oldest queued message is dropped
    so the client's dispatch path never blocks.
    """

    def __init__(self, topic_filter: str, maxsize: int = 256) -> None:
        self.topic_filter = topic_filter
        self._queue: asyncio.Queue[tuple[str, str] | None] = asyncio.Queue(maxsize)
        self._closed = False
        self.dropped = 0

    async def offer(self, topic: str, payload: str) -> None:
        """Message callback: enqueue when the topic matches."""
        if self._closed or not topic_matches(self.topic_filter, topic):
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning("Subscription %s overflow, dropped oldest", self.topic_filter)
        self._queue.put_nowait((topic, payload))

    def close(self) -> None:
        """End the stream; pending messages are still delivered first."""
        if self._closed:
            return
        self._closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> tuple[str, str]:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


async def open_stream(mqtt: MqttPort, topic: str, maxsize: int = 256) -> Subscription:
    """Subscribe to *topic* and return a stream of its messages."""
    subscription = Subscription(topic, maxsize)
    mqtt.on_message(subscription.offer)
    await mqtt.subscribe(topic)
    return subscription


# ---------------------------------------------------------------------------
# Broker resolution
# ---------------------------------------------------------------------------


async def resolve_broker(settings: MqttSettings) -> tuple[str, int]:
    """Find the broker: explicit host, DNS ``mqtt``, then mDNS.

    Raises:
        TransportError: No broker could be located.
    """
    if settings.host:
        return settings.host, settings.port

    loop = asyncio.get_running_loop()
    try:
        await loop.getaddrinfo(
            settings.broker_hostname,
            settings.port,
            type=socket.SOCK_STREAM,
        )
    except OSError:
        logger.info(
            "No DNS entry for %s, browsing %s",
            settings.broker_hostname,
            MQTT_SERVICE,
        )
    else:
        return settings.broker_hostname, settings.port

    found = await browse_first(MQTT_SERVICE, timeout=settings.mdns_timeout)
    if found is None:
        msg = f"no MQTT broker found (DNS {settings.broker_hostname!r}, mDNS)"
        raise TransportError(msg)
    return found


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockMqttClient:
    """In-memory test double that records MQTT interactions.

    Records publishes and subscriptions for assertion.  ``deliver()``
    simulates an inbound message; ``on_publish()`` hooks let a fake
    device answer requests as they are published; ``disconnect()``
    simulates a dropped broker connection.
    """

    published: list[tuple[str, str, bool, int]] = field(default_factory=list)
    subscriptions: list[str] = field(default_factory=list)
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _publish_hooks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _disconnect_callbacks: list[DisconnectCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Record a publish call, then run the publish hooks."""
        self.published.append((topic, payload, retain, qos))
        for hook in list(self._publish_hooks):
            await hook(topic, payload)

    async def subscribe(self, topic: str) -> None:
        self.subscriptions.append(topic)

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    def on_disconnect(self, callback: DisconnectCallback) -> None:
        self._disconnect_callbacks.append(callback)

    # -- Test helpers -------------------------------------------------------

    def on_publish(self, hook: MessageCallback) -> None:
        """Register a hook run after every recorded publish."""
        self._publish_hooks.append(hook)

    async def deliver(self, topic: str, payload: str) -> None:
        """Simulate an inbound message by invoking all callbacks."""
        for cb in list(self._callbacks):
            await cb(topic, payload)

    def disconnect(self) -> None:
        """Simulate the broker connection dropping."""
        for cb in list(self._disconnect_callbacks):
            cb()

    def get_messages_for(self, topic: str) -> list[tuple[str, bool, int]]:
        """Return ``(payload, retain, qos)`` tuples for *topic*."""
        return [
            (payload, retain, qos)
            for t, payload, retain, qos in self.published
            if t == topic
        ]

    def reset(self) -> None:
        self.published.clear()
        self.subscriptions.clear()


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


@dataclass
class MqttClient:
    """Production MQTT adapter backed by *aiomqtt*.

    The connection is created lazily: the background loop starts on the
    first ``connect()`` or ``publish()``.  It then reconnects with
    exponential backoff until ``stop()``.
    """

    settings: MqttSettings
    will: WillConfig | None = None
    resolver: BrokerResolver = field(default=resolve_broker, repr=False)

    # internal state --------------------------------------------------------
    _callbacks: list[MessageCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _disconnect_callbacks: list[DisconnectCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _subscriptions: set[str] = field(default_factory=set, init=False, repr=False)
    _client: Any = field(default=None, init=False, repr=False)
    _listen_task: asyncio.Task[None] | None = field(
        default=None,
        init=False,
        repr=False,
    )
    _connected: asyncio.Event = field(
        default_factory=asyncio.Event,
        init=False,
        repr=False,
    )
    _stopping: bool = field(default=False, init=False, repr=False)
    broker: tuple[str, int] | None = field(default=None, init=False)

    # -- MqttPort methods --------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: str,
        *,
        retain: bool = False,
        qos: int = 1,
    ) -> None:
        """Publish a message, connecting first if needed.

        Raises:
            TransportError: The broker is unreachable or the publish failed.
        """
        if self._client is None:
            await self.connect()
        client = self._client
        if client is None:
            msg = "MQTT connection lost before publish"
            raise TransportError(msg)
        try:
            await client.publish(topic, payload, retain=retain, qos=qos)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            msg = f"MQTT publish to {topic} failed: {exc}"
            raise TransportError(msg) from exc
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, qos, retain)

    async def subscribe(self, topic: str) -> None:
        """Subscribe to *topic*, restored automatically after reconnects."""
        self._subscriptions.add(topic)
        if self._client is not None:
            await self._client.subscribe(topic, qos=self.settings.qos)

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    def on_disconnect(self, callback: DisconnectCallback) -> None:
        self._disconnect_callbacks.append(callback)

    # -- Lifecycle ----------------------------------------------------------

    async def connect(self, timeout: float | None = None) -> None:
        """Start the connection if needed and wait for the broker.

        Raises:
            TransportError: Not connected within *timeout* (defaults to
                ``settings.connect_timeout``).
        """
        await self.start()
        wait = timeout if timeout is not None else self.settings.connect_timeout
        try:
            await asyncio.wait_for(self._connected.wait(), wait)
        except TimeoutError:
            msg = f"MQTT broker did not acknowledge within {wait:.1f}s"
            raise TransportError(msg) from None

    async def start(self) -> None:
        """Start the background connection loop."""
        if self._listen_task is not None and not self._listen_task.done():
            return
        self._stopping = False
        self._listen_task = asyncio.create_task(self._connection_loop())

    async def stop(self) -> None:
        """Stop the connection loop.  Idempotent."""
        self._stopping = True
        if self._listen_task is not None:
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
            self._listen_task = None
        self._client = None
        self._connected.clear()

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    # -- Internal -----------------------------------------------------------

    async def _connection_loop(self) -> None:
        try:
            import aiomqtt  # noqa: PLC0415
        except ModuleNotFoundError as exc:
            msg = "aiomqtt is required to use MqttClient"
            raise RuntimeError(msg) from exc

        delay = self.settings.reconnect_interval
        while not self._stopping:
            try:
                host, port = await self.resolver(self.settings)
                self.broker = (host, port)

                password: str | None = None
                if self.settings.password is not None:
                    password = self.settings.password.get_secret_value()

                will: aiomqtt.Will | None = None
                if self.will is not None:
                    will = aiomqtt.Will(
                        topic=self.will.topic,
                        payload=self.will.payload,
                        qos=self.will.qos,
                        retain=self.will.retain,
                    )

                async with aiomqtt.Client(
                    hostname=host,
                    port=port,
                    username=self.settings.username,
                    password=password,
                    identifier=self.settings.client_id or None,
                    will=will,
                ) as client:
                    self._client = client
                    try:
                        for topic in list(self._subscriptions):
                            await client.subscribe(topic, qos=self.settings.qos)

                        self._connected.set()
                        delay = self.settings.reconnect_interval
                        logger.info("MQTT connected to %s:%d", host, port)

                        async for message in client.messages:
                            await self._dispatch(message)
                    finally:
                        self._connected.clear()
                        self._client = None
                        self._notify_disconnect()

            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "MQTT connection unavailable, retrying in %.1fs",
                    delay,
                    exc_info=True,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.settings.reconnect_max_interval)

    def _notify_disconnect(self) -> None:
        for cb in self._disconnect_callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Error in MQTT disconnect callback")

    async def _dispatch(self, message: Any) -> None:
        """Decode and fan-out an inbound message to callbacks."""
        topic = str(message.topic)

        if message.payload is None:
            logger.debug("Skipping message with None payload on %s", topic)
            return

        payload = (
            message.payload.decode("utf-8")
            if isinstance(message.payload, (bytes, bytearray))
            else str(message.payload)
        )

        for cb in self._callbacks:
            try:
                await cb(topic, payload)
            except Exception:
                logger.exception("Error in message callback for %s", topic)
