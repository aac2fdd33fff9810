"""Daemon composition root.

:class:`Home` wires the control plane from settings, leaves first::

    storage -> MQTT client -> MQTT channel -> HTTP channel -> rate limiter
    -> dispatcher -> registry -> services -> RPC server -> discovery loop
    -> heartbeat

Every component is created once here and handed to its users
explicitly; there are no module-level singletons.  Tests inject a
:class:`MockMqttClient`, a :class:`FakeClock`, an ``httpx`` client with a
mock transport and a fake discovery.

Shutdown order: stop accepting requests, give in-flight device calls
the MQTT grace period, publish ``offline``, stop MQTT, close storage.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Any

import httpx
import uvicorn

from myhome._api import create_api
from myhome._clock import ClockPort, SystemClock
from myhome._correlator import MqttChannel
from myhome._device import Dispatcher
from myhome._discovery import SHELLY_SERVICE, Discovery, DiscoveryLoop
from myhome._errors import ErrorPublisher
from myhome._follow import FollowService
from myhome._groups import GroupService
from myhome._handlers import Services, register_handlers
from myhome._health import HealthReporter, build_will_config
from myhome._http import HttpChannel
from myhome._logging import configure_logging
from myhome._mqtt import MqttClient, MqttPort
from myhome._ratelimit import RateLimiter
from myhome._registry import DeviceRegistry
from myhome._server import RpcServer
from myhome._settings import Settings
from myhome._storage import Storage
from myhome._temperature import TemperatureService
from myhome._version import __version__
from myhome.components import build_method_registry

logger = logging.getLogger(__name__)


class Home:
    """The running control plane.

    Args:
        settings: Resolved configuration.
        mqtt: Override the broker connection (e.g. ``MockMqttClient``).
        clock: Override the monotonic clock.
        http_client: Override the ``httpx.AsyncClient`` used for devices.
        discovery: Override the mDNS browser.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        mqtt: MqttPort | None = None,
        clock: ClockPort | None = None,
        http_client: httpx.AsyncClient | None = None,
        discovery: Discovery | None = None,
    ) -> None:
        self.settings = settings
        self.clock = clock if clock is not None else SystemClock()
        server_id = settings.server.id

        self.storage = Storage(settings.storage.path)
        self.mqtt: MqttPort = (
            mqtt
            if mqtt is not None
            else MqttClient(settings=settings.mqtt, will=build_will_config(server_id))
        )
        self.methods = build_method_registry()
        self.mqtt_channel = MqttChannel(
            self.mqtt,
            client_id=settings.mqtt.client_id,
            timeout=settings.mqtt.rpc_timeout,
            qos=settings.mqtt.qos,
        )
        self.http_channel = HttpChannel(settings.http, client=http_client)
        self.limiter = RateLimiter(settings.ratelimit.min_interval, clock=self.clock)
        self.dispatcher = Dispatcher(
            methods=self.methods,
            http=self.http_channel,
            mqtt=self.mqtt_channel,
            limiter=self.limiter,
        )
        self.registry = DeviceRegistry(self.storage, self.dispatcher)
        self.services = Services(
            methods=self.methods,
            registry=self.registry,
            groups=GroupService(self.storage, self.registry),
            temperature=TemperatureService(self.storage),
            follow=FollowService(self.registry),
        )
        self.errors = ErrorPublisher(mqtt=self.mqtt, topic_prefix=server_id)
        self.server = RpcServer(
            server_id,
            mqtt=self.mqtt,
            error_publisher=self.errors,
            qos=settings.mqtt.qos,
        )
        register_handlers(self.server, self.services)
        self.health = HealthReporter(
            mqtt=self.mqtt,
            server_id=server_id,
            version=__version__,
            clock=self.clock,
            devices=lambda: len(self.registry),
            pending_calls=lambda: len(self.mqtt_channel.pending),
        )
        self.discovery_loop = DiscoveryLoop(
            discovery=discovery or Discovery(service_types=(SHELLY_SERVICE,)),
            sink=self.registry.observe,
            interval=settings.discovery.interval,
            browse_timeout=settings.discovery.browse_timeout,
        )
        self.api = create_api(self.server, health=self.health_status, version=__version__)
        self._tasks: list[asyncio.Task[Any]] = []
        self._api_server: uvicorn.Server | None = None

    def health_status(self) -> dict[str, object]:
        return self.health.snapshot().to_dict()

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def start(self, shutdown_event: asyncio.Event) -> None:
        """Open storage, connect the surfaces and start background tasks."""
        await self.storage.open()
        await self.registry.load()

        if isinstance(self.mqtt, MqttClient):
            await self.mqtt.start()
        await self.server.start()
        await self.health.publish_heartbeat()

        self._tasks.append(
            asyncio.create_task(
                self.health.run(self.settings.server.heartbeat_interval),
                name="heartbeat",
            ),
        )
        if self.settings.discovery.enabled:
            self._tasks.append(
                asyncio.create_task(self.discovery_loop.run(shutdown_event), name="discovery"),
            )
        if self.settings.server.http_port:
            self._start_api(shutdown_event)
        logger.info("myhome %s up (%d device(s))", __version__, len(self.registry))

    def _start_api(self, shutdown_event: asyncio.Event) -> None:
        config = uvicorn.Config(
            self.api,
            host=self.settings.server.http_host,
            port=self.settings.server.http_port,
            log_config=None,
            lifespan="off",
        )
        self._api_server = uvicorn.Server(config)
        task = asyncio.create_task(self._api_server.serve(), name="http-api")
        # uvicorn exiting on its own (signal, bind failure) ends the daemon
        task.add_done_callback(lambda _task: shutdown_event.set())
        self._tasks.append(task)

    async def stop(self) -> None:
        """Tear down in reverse order."""
        grace = self.settings.mqtt.grace
        await self.server.stop(grace)
        if self._api_server is not None:
            self._api_server.should_exit = True
        await self._cancel_tasks()
        await self.mqtt_channel.close(grace)
        await self.health.shutdown()
        await self.http_channel.aclose()
        if isinstance(self.mqtt, MqttClient):
            await self.mqtt.stop()
        await self.storage.close()
        logger.info("Shutdown complete")

    async def run(self, shutdown_event: asyncio.Event) -> None:
        try:
            await self.start(shutdown_event)
            await shutdown_event.wait()
        finally:
            await self.stop()

    async def _cancel_tasks(self) -> None:
        for task in self._tasks:
            if task.get_name() != "http-api":
                task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Task error during shutdown: %s", result)
        self._tasks.clear()


# ---------------------------------------------------------------------------
# Entrypoint helpers
# ---------------------------------------------------------------------------


def _install_signal_handlers(shutdown_event: asyncio.Event | None) -> asyncio.Event:
    """Install SIGTERM/SIGINT handlers.  Returns the shutdown event."""
    if shutdown_event is not None:
        return shutdown_event
    event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, event.set)
    return event


async def run_async(
    settings: Settings,
    *,
    shutdown_event: asyncio.Event | None = None,
    mqtt: MqttPort | None = None,
    clock: ClockPort | None = None,
    http_client: httpx.AsyncClient | None = None,
    discovery: Discovery | None = None,
) -> None:
    """Configure logging, build :class:`Home` and run it until shutdown."""
    configure_logging(settings.logging, service="myhome", version=__version__)
    home = Home(
        settings,
        mqtt=mqtt,
        clock=clock,
        http_client=http_client,
        discovery=discovery,
    )
    await home.run(_install_signal_handlers(shutdown_event))
