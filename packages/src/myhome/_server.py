"""RPC server: the control plane's own method surface.

Requests mirror the Shelly Gen2 envelope::

    -> myhome/rpc      {"id": 3, "src": "ui-1", "method": "switch.toggle",
                        "params": {"identifier": "kitchen", "switch_id": 0}}
    <- ui-1/rpc        {"id": 3, "src": "myhome", "dst": "ui-1",
                        "result": {"device_id": "...", "was_on": false}}

Errors travel in the envelope, never as transport failures::

    {"id": 3, "src": "myhome", "error": {"code": 404, "kind": "not_found",
                                         "message": "no device matches 'x'"}}

Each method declares a pydantic params model.  Params may be an object,
omitted, or a bare value when the model has exactly one required field
(or a single optional one).  Unknown methods and invalid params fail with
``bad_request``.

Over MQTT every request runs in its own task and the reply goes to
``<src>/rpc``.  Requests without ``src`` cannot be answered and are
dropped.  The HTTP surface calls :meth:`RpcServer.handle` directly.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError

from myhome._errors import (
    BadRequestError,
    ErrorPublisher,
    MyHomeError,
    RegistrationError,
    as_error,
)
from myhome._mqtt import MqttPort, Subscription, open_stream
from myhome._registry import jsonable

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class ServerMethod:
    name: str
    handler: Handler
    params: type[BaseModel] | None = None

    def parse(self, raw: Any) -> BaseModel | None:
        """Validate *raw* into the params model.

        Raises:
            BadRequestError: *raw* does not fit the model.
        """
        if self.params is None:
            if raw not in (None, {}, []):
                msg = f"{self.name} takes no params"
                raise BadRequestError(msg)
            return None
        if raw is None:
            raw = {}
        elif not isinstance(raw, dict):
            fields = self.params.model_fields
            required = [n for n, f in fields.items() if f.is_required()]
            if len(required) != 1:
                # a lone optional field still takes a bare value
                required = list(fields) if len(fields) == 1 and not required else []
            if not required:
                msg = f"{self.name} params must be an object"
                raise BadRequestError(msg)
            raw = {required[0]: raw}
        try:
            return self.params.model_validate(raw)
        except ValidationError as exc:
            msg = f"invalid params for {self.name}: {exc.errors(include_url=False)}"
            raise BadRequestError(msg) from exc


class RpcServer:
    """Method table plus the MQTT request loop.

    Args:
        server_id: Name of the server; requests arrive on
            ``<server_id>/rpc``.
        mqtt: Broker connection for the MQTT surface.
        error_publisher: Receives every failed request.
        qos: QoS of reply publishes.
    """

    def __init__(
        self,
        server_id: str,
        *,
        mqtt: MqttPort | None = None,
        error_publisher: ErrorPublisher | None = None,
        qos: int = 1,
    ) -> None:
        self.server_id = server_id
        self.mqtt = mqtt
        self.error_publisher = error_publisher
        self.qos = qos
        self.topic = f"{server_id}/rpc"
        self._methods: dict[str, ServerMethod] = {}
        self._stream: Subscription | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._requests: set[asyncio.Task[None]] = set()
        self._accepting = False

    # -----------------------------------------------------------------------
    # Method table
    # -----------------------------------------------------------------------

    def register(self, name: str, handler: Handler, params: type[BaseModel] | None = None) -> None:
        """Add a method.

        Raises:
            RegistrationError: *name* is already registered.
        """
        if name in self._methods:
            msg = f"server method {name!r} already registered"
            raise RegistrationError(msg)
        self._methods[name] = ServerMethod(name, handler, params)

    def method(self, name: str, params: type[BaseModel] | None = None) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(name, handler, params)
            return handler

        return decorator

    def names(self) -> list[str]:
        return sorted(self._methods)

    def __contains__(self, name: object) -> bool:
        return name in self._methods

    # -----------------------------------------------------------------------
    # Request handling
    # -----------------------------------------------------------------------

    async def handle(self, request: Any) -> dict[str, Any]:
        """Run one request and return its response envelope."""
        request_id = request.get("id") if isinstance(request, dict) else None
        src = request.get("src") if isinstance(request, dict) else None
        envelope: dict[str, Any] = {"id": request_id, "src": self.server_id}
        if src:
            envelope["dst"] = src

        name = None
        try:
            if not isinstance(request, dict) or not isinstance(request.get("method"), str):
                msg = "request must be an object with a string 'method'"
                raise BadRequestError(msg)
            name = request["method"]
            entry = self._methods.get(name)
            if entry is None:
                msg = f"unknown method {name!r}"
                raise BadRequestError(msg)
            params = entry.parse(request.get("params"))
            result = await (entry.handler(params) if entry.params else entry.handler())
            envelope["result"] = jsonable(result)
        except MyHomeError as exc:
            logger.info("%s failed: %s", name, exc, extra={"method": name})
            envelope["error"] = exc.to_error()
            await self._publish_error(exc, name)
        except Exception as exc:
            logger.exception("%s raised", name, extra={"method": name})
            envelope["error"] = as_error(exc)
            await self._publish_error(exc, name)
        return envelope

    async def _publish_error(self, exc: Exception, name: str | None) -> None:
        if self.error_publisher is not None:
            await self.error_publisher.publish(exc, details={"method": name})

    # -----------------------------------------------------------------------
    # MQTT surface
    # -----------------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to ``<server_id>/rpc`` and start serving."""
        if self.mqtt is None:
            msg = "RpcServer has no MQTT connection"
            raise RegistrationError(msg)
        if self._serve_task is not None:
            return
        self._accepting = True
        self._stream = await open_stream(self.mqtt, self.topic)
        self._serve_task = asyncio.create_task(self._serve(self._stream), name="rpc-server")
        logger.info("Serving %d RPC method(s) on %s", len(self._methods), self.topic)

    async def stop(self, grace: float = 0.0) -> None:
        """Stop accepting, let in-flight requests finish for *grace* s, cancel the rest."""
        self._accepting = False
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._serve_task is not None:
            self._serve_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._serve_task
            self._serve_task = None
        if not self._requests:
            return
        still_running = set(self._requests)
        if grace > 0:
            _, still_running = await asyncio.wait(still_running, timeout=grace)
        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._requests)

    async def _serve(self, stream: Subscription) -> None:
        async for _topic, payload in stream:
            if not self._accepting:
                break
            task = asyncio.create_task(self._answer(payload))
            self._requests.add(task)
            task.add_done_callback(self._requests.discard)

    async def _answer(self, payload: str) -> None:
        try:
            request = json.loads(payload)
        except ValueError:
            logger.warning("Dropping non-JSON request on %s", self.topic)
            return
        src = request.get("src") if isinstance(request, dict) else None
        if not isinstance(src, str) or not src:
            logger.warning("Dropping request without 'src' on %s", self.topic)
            return

        envelope = await self.handle(request)
        if self.mqtt is None:
            return
        try:
            await self.mqtt.publish(f"{src}/rpc", json.dumps(envelope), qos=self.qos)
        except MyHomeError:
            logger.warning("Could not reply to %s", src, exc_info=True)
