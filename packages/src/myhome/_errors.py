"""Error taxonomy and structured error publication.

Every failure that can cross a component boundary is a subclass of
:class:`MyHomeError`.  Each class carries a machine-readable ``kind``
and a JSON-RPC style integer ``code`` so that the RPC server can turn
any of them into an error envelope without a lookup table::

    {"code": 504, "kind": "timeout", "message": "Switch.Toggle timed out"}

Taxonomy:

- ``method_unknown`` — method registry lookup failed.
- ``bad_request`` — params failed to decode or validate.
- ``not_found`` — identifier or pattern matched nothing.
- ``unreachable`` — no transport currently viable for the device.
- ``transport`` — HTTP error after retries, or MQTT disconnect.
- ``timeout`` — deadline elapsed before the response arrived.
- ``cancelled`` — the call was torn down before completion.
- ``remote`` — the device answered with an error envelope.
- ``internal`` — an invariant of the dispatcher itself was violated.

Server-side failures are also published to ``{server_id}/error`` by
:class:`ErrorPublisher` so that unattended daemons stay observable.
Publication is fire-and-forget: failures are logged, never propagated.

Payload schema::

    {
        "error_type": "unreachable",
        "message": "no transport available for shelly1minig3-abc123",
        "device": "shelly1minig3-abc123" | null,
        "timestamp": "2026-02-14T12:34:56+00:00",
        "details": {"method": "switch.toggle"}
    }
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from myhome._mqtt import MqttPort

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class MyHomeError(Exception):
    """Base class of every error surfaced by the control plane."""

    kind: ClassVar[str] = "error"
    code: ClassVar[int] = -32000

    def to_error(self) -> dict[str, Any]:
        """Render the ``error`` member of a JSON-RPC envelope."""
        return {"code": self.code, "kind": self.kind, "message": str(self)}


class RegistrationError(MyHomeError):
    """Method registry misconfiguration (conflict or registration after seal)."""

    kind = "configuration"
    code = -32000


class MethodUnknownError(MyHomeError):
    kind = "method_unknown"
    code = -32601


class BadRequestError(MyHomeError):
    kind = "bad_request"
    code = -32602


class NotFoundError(MyHomeError):
    kind = "not_found"
    code = 404


class UnreachableError(MyHomeError):
    kind = "unreachable"
    code = 503


class TransportError(MyHomeError):
    kind = "transport"
    code = 502


class RpcTimeoutError(MyHomeError):
    kind = "timeout"
    code = 504


class CallCancelledError(MyHomeError):
    kind = "cancelled"
    code = 499


class InternalError(MyHomeError):
    kind = "internal"
    code = -32603


class RemoteError(MyHomeError):
    """The device answered with ``{"error": {"code": K, "message": M}}``.

    The device's own code replaces the class-level one so callers see
    exactly what the firmware reported.
    """

    kind = "remote"

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.remote_code = code

    def to_error(self) -> dict[str, Any]:
        return {"code": self.remote_code, "kind": self.kind, "message": str(self)}


def as_error(error: BaseException) -> dict[str, Any]:
    """Render any exception as an envelope ``error`` member.

    Errors outside the taxonomy are reported as ``internal``.
    """
    if isinstance(error, MyHomeError):
        return error.to_error()
    return InternalError(f"{type(error).__name__}: {error}").to_error()


# ---------------------------------------------------------------------------
# Structured error publication
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ErrorPayload:
    """Immutable structured error event ready for MQTT publication."""

    error_type: str
    message: str
    device: str | None
    timestamp: str
    details: dict[str, object] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialise to a JSON string."""
        return json.dumps(asdict(self), default=str)


def build_error_payload(
    error: Exception,
    *,
    device: str | None = None,
    details: dict[str, object] | None = None,
    clock: Callable[[], datetime] | None = None,
) -> ErrorPayload:
    """Convert an exception into an :class:`ErrorPayload`.

    Taxonomy errors report their ``kind``; anything else is an
    ``internal`` error.
    """
    error_type = error.kind if isinstance(error, MyHomeError) else InternalError.kind
    now = clock() if clock is not None else datetime.now(UTC)
    return ErrorPayload(
        error_type=error_type,
        message=str(error),
        device=device,
        timestamp=now.isoformat(),
        details=details or {},
    )


@dataclass
class ErrorPublisher:
    """Publishes structured error payloads to ``{topic_prefix}/error``.

    Args:
        mqtt: MQTT port used for publishing.
        topic_prefix: The server id, e.g. ``"myhome"``.
        clock: Optional callable returning a :class:`~datetime.datetime`
            for deterministic testing.
    """

    mqtt: MqttPort
    topic_prefix: str
    clock: Callable[[], datetime] | None = field(default=None, repr=False)

    async def publish(
        self,
        error: Exception,
        *,
        device: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Build an error payload and publish it, never raising."""
        try:
            payload = build_error_payload(
                error,
                device=device,
                details=details,
                clock=self.clock,
            )
            payload_json = payload.to_json()
        except Exception:
            logger.exception("Failed to build error payload for %r", error)
            return

        topic = f"{self.topic_prefix}/error"
        logger.warning(
            "Publishing error: %s (type=%s, device=%s)",
            payload.message,
            payload.error_type,
            device,
        )
        try:
            await self.mqtt.publish(topic, payload_json, retain=False, qos=1)
        except Exception:
            logger.exception("Failed to publish error to %s", topic)
