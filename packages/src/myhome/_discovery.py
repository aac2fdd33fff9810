"""mDNS discovery of Shelly devices and MQTT brokers.

Two service types are browsed in parallel during one browse window:

- ``_shelly._tcp.local.`` — Gen2+ devices.  The TXT record carries
  ``gen``, ``app`` and ``ver``; the host name follows
  ``<model>-<serial>.local.``.
- ``_mqtt._tcp.local.`` — brokers, used as the last step of broker
  resolution.

Candidates are de-duplicated by (service, IPv4 address) within a browse
window and link-local addresses are ignored.  Discovery is advisory:
the registry uses candidates to refresh host and last-seen, never to
evict a device.
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
import re
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from zeroconf import IPVersion, ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

logger = logging.getLogger(__name__)

SHELLY_SERVICE = "_shelly._tcp.local."
MQTT_SERVICE = "_mqtt._tcp.local."

_RESOLVE_TIMEOUT_MS = 3000

_HOSTNAME_RE = re.compile(
    r"^(?P<model>[A-Za-z0-9]+)-(?P<serial>[A-Za-z0-9]+)\.local\.?$",
)


@dataclass(frozen=True, slots=True)
class DeviceCandidate:
    """One resolved mDNS advertisement."""

    service: str
    name: str
    host: str
    port: int
    hostname: str = ""
    model: str | None = None
    serial: str | None = None
    generation: int | None = None
    app: str | None = None
    version: str | None = None

    @property
    def is_shelly(self) -> bool:
        return self.service == SHELLY_SERVICE

    @property
    def id(self) -> str:
        """Device id as Shelly builds it: ``<model>-<serial>`` lowercased."""
        return self.name.lower()

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, **asdict(self)}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_hostname(hostname: str) -> tuple[str, str] | None:
    """Split ``shelly1minig3-54320464a1d0.local.`` into (model, serial)."""
    match = _HOSTNAME_RE.match(hostname)
    if match is None:
        return None
    return match["model"], match["serial"]


def parse_txt(properties: dict[bytes | str, Any]) -> dict[str, str]:
    """Decode a zeroconf TXT property map into plain strings."""
    decoded: dict[str, str] = {}
    for key, value in properties.items():
        k = key.decode("utf-8", "replace") if isinstance(key, bytes) else str(key)
        if value is None:
            decoded[k] = ""
        elif isinstance(value, bytes):
            decoded[k] = value.decode("utf-8", "replace")
        else:
            decoded[k] = str(value)
    return decoded


def _instance_name(service_type: str, name: str) -> str:
    suffix = f".{service_type}"
    return name[: -len(suffix)] if name.endswith(suffix) else name


def _usable_ipv4(addresses: Sequence[str]) -> str | None:
    for address in addresses:
        try:
            ip = ipaddress.ip_address(address)
        except ValueError:
            continue
        if ip.version == 4 and not ip.is_link_local and not ip.is_unspecified:
            return address
    return None


def candidate_from_info(service_type: str, name: str, info: Any) -> DeviceCandidate | None:
    """Build a candidate from a resolved ``AsyncServiceInfo``.

    Returns ``None`` when the advertisement has no usable IPv4 address.
    """
    host = _usable_ipv4(info.parsed_addresses(IPVersion.V4Only))
    if host is None:
        logger.debug("Ignoring %s: no usable IPv4 address", name)
        return None

    txt = parse_txt(info.properties or {})
    hostname = info.server or ""
    model: str | None = None
    serial: str | None = None
    parsed = parse_hostname(hostname)
    if parsed is not None:
        model, serial = parsed

    generation: int | None = None
    if txt.get("gen", "").isdigit():
        generation = int(txt["gen"])

    return DeviceCandidate(
        service=service_type,
        name=_instance_name(service_type, name),
        host=host,
        port=info.port or 0,
        hostname=hostname,
        model=model,
        serial=serial,
        generation=generation,
        app=txt.get("app") or None,
        version=txt.get("ver") or None,
    )


# ---------------------------------------------------------------------------
# Browsing
# ---------------------------------------------------------------------------


@dataclass
class Discovery:
    """Browse mDNS for a fixed set of service types.

    Args:
        service_types: Service types browsed in parallel.
        zeroconf_factory: Builds the ``AsyncZeroconf`` for one browse
            window; tests substitute a fake.
    """

    service_types: tuple[str, ...] = (SHELLY_SERVICE, MQTT_SERVICE)
    zeroconf_factory: Callable[[], Any] = field(
        default=lambda: AsyncZeroconf(ip_version=IPVersion.V4Only),
        repr=False,
    )

    async def discover(self, timeout: float) -> AsyncIterator[DeviceCandidate]:
        """Yield candidates found within a *timeout*-second browse window."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[DeviceCandidate] = asyncio.Queue()
        resolving: set[asyncio.Task[None]] = set()
        seen: set[tuple[str, str]] = set()

        aiozc = self.zeroconf_factory()

        async def resolve(service_type: str, name: str) -> None:
            info = AsyncServiceInfo(service_type, name)
            if not await info.async_request(aiozc.zeroconf, _RESOLVE_TIMEOUT_MS):
                logger.debug("mDNS resolve of %s timed out", name)
                return
            candidate = candidate_from_info(service_type, name, info)
            if candidate is not None:
                queue.put_nowait(candidate)

        def on_change(
            zeroconf: Any,  # noqa: ARG001
            service_type: str,
            name: str,
            state_change: ServiceStateChange,
        ) -> None:
            if state_change is ServiceStateChange.Removed:
                return
            task = loop.create_task(resolve(service_type, name))
            resolving.add(task)
            task.add_done_callback(resolving.discard)

        browser = AsyncServiceBrowser(
            aiozc.zeroconf,
            list(self.service_types),
            handlers=[on_change],
        )
        deadline = loop.time() + timeout
        try:
            while (remaining := deadline - loop.time()) > 0:
                try:
                    candidate = await asyncio.wait_for(queue.get(), remaining)
                except TimeoutError:
                    break
                key = (candidate.service, candidate.host)
                if key in seen:
                    continue
                seen.add(key)
                logger.debug("Discovered %s at %s", candidate.name, candidate.host)
                yield candidate
        finally:
            await browser.async_cancel()
            for task in list(resolving):
                task.cancel()
            await aiozc.async_close()


async def browse_first(service_type: str, timeout: float) -> tuple[str, int] | None:
    """Return ``(address, port)`` of the first *service_type* advertised."""
    discovery = Discovery(service_types=(service_type,))
    async with contextlib.aclosing(discovery.discover(timeout)) as candidates:
        async for candidate in candidates:
            logger.info("Found %s at %s:%d", service_type, candidate.host, candidate.port)
            return candidate.host, candidate.port
    return None


# ---------------------------------------------------------------------------
# Periodic rediscovery
# ---------------------------------------------------------------------------


@dataclass
class DiscoveryLoop:
    """Run a browse window every *interval* seconds and feed *sink*.

    Only Shelly candidates reach the sink.  Errors in one round are
    logged and the loop carries on.
    """

    discovery: Discovery
    sink: Callable[[DeviceCandidate], Awaitable[object]]
    interval: float
    browse_timeout: float

    async def run_once(self) -> int:
        """Run one browse window; return the number of Shelly candidates."""
        count = 0
        async with contextlib.aclosing(
            self.discovery.discover(self.browse_timeout),
        ) as candidates:
            async for candidate in candidates:
                if not candidate.is_shelly:
                    continue
                await self.sink(candidate)
                count += 1
        logger.info("Discovery round found %d Shelly device(s)", count)
        return count

    async def run(self, shutdown_event: asyncio.Event) -> None:
        while not shutdown_event.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Discovery round failed")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(shutdown_event.wait(), self.interval)
