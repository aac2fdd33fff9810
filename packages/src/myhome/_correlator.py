"""MQTT channel: correlated request/response over a pub/sub broker.

A Shelly Gen2 device subscribes to ``<device_id>/rpc`` and answers on
``<src>/rpc`` where ``src`` is taken from the request.  One reply topic,
``<client_id>/rpc``, serves every call this process makes::

    -> <device_id>/rpc   {"id": 7, "src": "myhome-nas", "method": "Switch.Toggle", "params": {"id": 0}}
    <- myhome-nas/rpc    {"id": 7, "src": "<device_id>", "result": {"was_on": false}}

Each call owns one entry of the pending table.  The entry is inserted
before publishing and removed by the calling task when it finishes,
whether a response arrived, the deadline passed or the task was
cancelled, so every entry is removed exactly once.  A single dispatcher
task reads the reply stream and resolves futures; it never blocks and
drops replies whose id is no longer pending.

On broker disconnect every pending call fails with ``TransportError``.
``close(grace)`` lets in-flight calls finish for *grace* seconds, then
fails the rest with ``CallCancelledError``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from myhome._errors import (
    CallCancelledError,
    RemoteError,
    RpcTimeoutError,
    TransportError,
)
from myhome._methods import MethodDescriptor, dump_params
from myhome._mqtt import MqttPort, Subscription, open_stream

logger = logging.getLogger(__name__)

REQUEST_ID_LIMIT = 2**31
"""Request ids run from 1 to ``REQUEST_ID_LIMIT - 1`` and then wrap."""


@dataclass
class PendingCall:
    request_id: int
    device_id: str
    method: str
    deadline: float
    future: asyncio.Future[dict[str, Any]]


class MqttChannel:
    """Correlates device RPC requests with their replies.

    Args:
        mqtt: The shared broker connection.
        client_id: Source id placed in requests; replies arrive on
            ``<client_id>/rpc``.
        timeout: Default per-call deadline in seconds.
        qos: QoS of the request publishes.
    """

    def __init__(
        self,
        mqtt: MqttPort,
        *,
        client_id: str,
        timeout: float = 5.0,
        qos: int = 1,
    ) -> None:
        self.mqtt = mqtt
        self.src = client_id
        self.reply_topic = f"{client_id}/rpc"
        self.timeout = timeout
        self.qos = qos
        self._pending: dict[int, PendingCall] = {}
        self._last_id = 0
        self._stream: Subscription | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._start_lock = asyncio.Lock()
        self._closing = False
        self._drained = asyncio.Event()
        mqtt.on_disconnect(self._on_disconnect)

    # -- State ----------------------------------------------------------------

    @property
    def ready(self) -> bool:
        """Whether the reply topic is subscribed and being dispatched."""
        return self._dispatcher is not None and not self._dispatcher.done()

    @property
    def pending(self) -> Mapping[int, PendingCall]:
        return MappingProxyType(self._pending)

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to the reply topic and start the dispatcher.  Idempotent."""
        async with self._start_lock:
            if self.ready:
                return
            self._stream = await open_stream(self.mqtt, self.reply_topic)
            self._dispatcher = asyncio.create_task(
                self._dispatch_loop(self._stream),
                name=f"mqtt-dispatch-{self.reply_topic}",
            )
            logger.info("MQTT RPC replies on %s", self.reply_topic)

    async def close(self, grace: float) -> None:
        """Refuse new calls, wait up to *grace* seconds, then cancel the rest."""
        self._closing = True
        self._drained.clear()
        if self._pending and grace > 0:
            logger.info(
                "Waiting up to %.1fs for %d in-flight MQTT call(s)",
                grace,
                len(self._pending),
            )
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._drained.wait(), grace)
        if self._pending:
            logger.warning("Cancelling %d MQTT call(s) after grace", len(self._pending))
            self.fail_all(CallCancelledError("MQTT channel closed"))
            await asyncio.sleep(0)

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatcher
            self._dispatcher = None
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    # -- Calls ----------------------------------------------------------------

    async def call(
        self,
        device_id: str,
        descriptor: MethodDescriptor,
        params: Any = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send one RPC to *device_id* and wait for its reply.

        Raises:
            RpcTimeoutError: No reply before the deadline.
            RemoteError: The device replied with an error.
            TransportError: The broker connection dropped.
            CallCancelledError: The channel was closed.
        """
        if self._closing:
            msg = "MQTT channel is closing"
            raise CallCancelledError(msg)
        await self.start()

        loop = asyncio.get_running_loop()
        wait = timeout if timeout is not None else self.timeout
        request_id = self._allocate_id()
        entry = PendingCall(
            request_id=request_id,
            device_id=device_id,
            method=descriptor.name,
            deadline=loop.time() + wait,
            future=loop.create_future(),
        )
        self._pending[request_id] = entry
        published = False
        try:
            request = {
                "id": request_id,
                "src": self.src,
                "method": descriptor.name,
                "params": dump_params(params) or {},
            }
            await self.mqtt.publish(f"{device_id}/rpc", json.dumps(request), qos=self.qos)
            published = True
            logger.debug(
                "Sent %s to %s",
                descriptor.name,
                device_id,
                extra={"device": device_id, "method": descriptor.name, "request_id": request_id},
            )
            remaining = max(entry.deadline - loop.time(), 0.0)
            try:
                reply = await asyncio.wait_for(entry.future, remaining)
            except TimeoutError:
                msg = f"{descriptor.name} on {device_id} timed out after {wait:.1f}s"
                raise RpcTimeoutError(msg) from None
        finally:
            self._remove(request_id)
            if not published and self._last_id == request_id:
                self._last_id -= 1

        error = reply.get("error")
        if error is not None:
            raise RemoteError(
                int(error.get("code", -1)),
                str(error.get("message", "remote error")),
            )
        return descriptor.decode(reply.get("result"))

    def fail_all(self, error: Exception) -> None:
        """Fail every pending call with *error*; owners remove their entries."""
        for entry in list(self._pending.values()):
            if not entry.future.done():
                entry.future.set_exception(error)

    # -- Internal -------------------------------------------------------------

    def _allocate_id(self) -> int:
        while True:
            self._last_id = self._last_id % (REQUEST_ID_LIMIT - 1) + 1
            if self._last_id not in self._pending:
                return self._last_id

    def _remove(self, request_id: int) -> None:
        self._pending.pop(request_id, None)
        if self._closing and not self._pending:
            self._drained.set()

    def _on_disconnect(self) -> None:
        if self._pending:
            logger.warning(
                "Broker connection lost with %d MQTT call(s) pending",
                len(self._pending),
            )
            self.fail_all(TransportError("MQTT connection lost"))

    async def _dispatch_loop(self, stream: Subscription) -> None:
        async for _topic, payload in stream:
            self._deliver(payload)

    def _deliver(self, payload: str) -> None:
        try:
            reply = json.loads(payload)
        except ValueError:
            logger.warning("Dropping non-JSON reply on %s", self.reply_topic)
            return
        if not isinstance(reply, dict) or not isinstance(reply.get("id"), int):
            logger.warning("Dropping reply without integer id on %s", self.reply_topic)
            return

        entry = self._pending.get(reply["id"])
        if entry is None or entry.future.done():
            logger.debug("Dropping reply for unknown request id %s", reply["id"])
            return
        entry.future.set_result(reply)
