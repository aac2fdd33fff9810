"""HTTP channel: one device RPC as an HTTP GET or POST.

``GET http://<host>/rpc/<Method>?<param>=<json>`` for side-effect-free
methods, ``POST http://<host>/rpc/<Method>`` with a JSON body otherwise.
IPv6 hosts are bracketed.  The response body is the bare result value.

Transport errors, 5xx and 429 are retried with exponential backoff
(``retry_initial`` doubling up to ``retry_max``, ``retry_attempts``
tries in total), honouring ``Retry-After`` up to ``retry_after_max``.  When the budget is spent
the device's cached host is cleared so the next call goes over MQTT.
Other 4xx answers are never retried.  A non-2xx answer whose body is a
Shelly error object (``{"code": K, "message": M}``) means the device
itself rejected the call; it surfaces as :class:`RemoteError` at once.
"""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

import httpx

from myhome._errors import RemoteError, TransportError, UnreachableError
from myhome._methods import HttpVerb, MethodDescriptor, dump_params
from myhome._settings import HttpSettings

logger = logging.getLogger(__name__)


class HttpTarget(Protocol):
    """What the channel needs from a device."""

    id: str
    host: str

    def clear_host(self) -> None: ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def rpc_url(host: str, method: str) -> str:
    """Return ``http://<host>/rpc/<method>``, bracketing IPv6 literals."""
    bare = host.strip("[]")
    try:
        address = ipaddress.ip_address(bare)
    except ValueError:
        return f"http://{host}/rpc/{method}"
    if address.version == 6:
        return f"http://[{address.compressed}]/rpc/{method}"
    return f"http://{address}/rpc/{method}"


def query_params(params: dict[str, Any] | None) -> dict[str, str]:
    """Encode each top-level field as a JSON scalar query parameter."""
    if not params:
        return {}
    return {key: json.dumps(value) for key, value in params.items()}


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse ``Retry-After`` as delta-seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    current = now if now is not None else datetime.now(UTC)
    return max((when - current).total_seconds(), 0.0)


def _device_error(response: httpx.Response) -> RemoteError | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and "code" in body and "message" in body:
        return RemoteError(int(body["code"]), str(body["message"]))
    return None


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


class HttpChannel:
    """Executes device RPCs over HTTP with retry and host clearing.

    Args:
        settings: Timeout and retry budget.
        client: Optional pre-built client (tests pass one wired to
            ``httpx.MockTransport``).  Created lazily otherwise.
        sleep: Backoff sleep, injectable for tests.
    """

    def __init__(
        self,
        settings: HttpSettings,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._client = client
        self._sleep = sleep

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def call(
        self,
        device: HttpTarget,
        descriptor: MethodDescriptor,
        params: Any = None,
    ) -> Any:
        """Round-trip one RPC to *device*.

        Raises:
            UnreachableError: The device has no cached host.
            RemoteError: The device rejected the call.
            TransportError: Retries exhausted; the host has been cleared.
        """
        if not device.host:
            msg = f"{device.id} has no known host"
            raise UnreachableError(msg)

        url = rpc_url(device.host, descriptor.name)
        body = dump_params(params)
        client = await self._get_client()
        attempts = self.settings.retry_attempts
        backoff = self.settings.retry_initial
        failure = ""

        for attempt in range(1, attempts + 1):
            retry_after: float | None = None
            try:
                if descriptor.verb is HttpVerb.GET:
                    response = await client.get(url, params=query_params(body))
                else:
                    response = await client.post(url, json=body or {})
            except httpx.TransportError as exc:
                failure = f"{type(exc).__name__}: {exc}"
            else:
                if response.is_success:
                    return self._decode(response, descriptor)
                remote = _device_error(response)
                if remote is not None:
                    raise remote
                if response.status_code != 429 and response.status_code < 500:
                    raise RemoteError(
                        response.status_code,
                        f"HTTP {response.status_code} from {device.id}: {response.reason_phrase}",
                    )
                failure = f"HTTP {response.status_code}"
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                ceiling = self.settings.retry_after_max
                if retry_after is not None and retry_after > ceiling:
                    logger.warning(
                        "%s asked to wait %.0fs, capping at %.0fs",
                        device.id,
                        retry_after,
                        ceiling,
                        extra={"device": device.id, "method": descriptor.name, "channel": "http"},
                    )
                    retry_after = ceiling

            if attempt == attempts:
                break
            pause = retry_after if retry_after is not None else backoff
            logger.warning(
                "%s to %s failed (%s), attempt %d/%d, retrying in %.2fs",
                descriptor.name,
                device.id,
                failure,
                attempt,
                attempts,
                pause,
                extra={"device": device.id, "method": descriptor.name, "channel": "http"},
            )
            await self._sleep(pause)
            backoff = min(backoff * 2, self.settings.retry_max)

        logger.warning(
            "Clearing host %s of %s after %d failed HTTP attempts",
            device.host,
            device.id,
            attempts,
            extra={"device": device.id, "channel": "http"},
        )
        device.clear_host()
        msg = f"{descriptor.name} to {device.id} failed after {attempts} attempts: {failure}"
        raise TransportError(msg)

    @staticmethod
    def _decode(response: httpx.Response, descriptor: MethodDescriptor) -> Any:
        if not response.content:
            return descriptor.decode(None)
        try:
            data = response.json()
        except ValueError as exc:
            msg = f"{descriptor.name} returned non-JSON body"
            raise TransportError(msg) from exc
        return descriptor.decode(data)
