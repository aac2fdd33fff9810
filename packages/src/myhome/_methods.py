"""Method registry: dotted RPC names to typed descriptors.

A descriptor ties a device method such as ``Switch.Toggle`` to the
pydantic model its response decodes into and to a transport hint:
``GET`` methods have no side effects and travel as HTTP query strings,
everything else is POSTed as a JSON body.

Component packages register their methods once at startup, then the
registry is sealed and becomes read-only.  Reads take no lock.

See Also:
    :mod:`myhome.components` for the registered catalogue.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ValidationError

from myhome._errors import (
    BadRequestError,
    MethodUnknownError,
    RegistrationError,
    TransportError,
)

logger = logging.getLogger(__name__)

_METHOD_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]*\.[A-Za-z][A-Za-z0-9]*$")


class HttpVerb(StrEnum):
    GET = "GET"
    POST = "POST"


@dataclass(frozen=True, slots=True)
class MethodDescriptor:
    """Registry entry for one device method.

    Attributes:
        name: Dotted ``<Component>.<Verb>`` name.
        result_type: Model the response decodes into.  ``None`` means
            the raw JSON value is returned unchanged.
        verb: HTTP transport hint.
    """

    name: str
    result_type: type[BaseModel] | None = None
    verb: HttpVerb = HttpVerb.POST

    def decode(self, data: Any) -> Any:
        """Decode a response ``result`` member into a fresh typed value.

        Raises:
            TransportError: The device sent something that does not
                match the result model.
        """
        if self.result_type is None or data is None:
            return data
        try:
            return self.result_type.model_validate(data)
        except ValidationError as exc:
            msg = f"malformed {self.name} response: {exc.error_count()} error(s)"
            raise TransportError(msg) from exc


@dataclass
class MethodRegistry:
    """Seal-after-init table of :class:`MethodDescriptor` by dotted name."""

    _methods: dict[str, MethodDescriptor] = field(
        default_factory=dict,
        init=False,
        repr=False,
    )
    _sealed: bool = field(default=False, init=False)

    def register(
        self,
        name: str,
        result_type: type[BaseModel] | None = None,
        verb: HttpVerb = HttpVerb.POST,
    ) -> MethodDescriptor:
        """Register *name*, returning its descriptor.

        Re-registering an identical descriptor is a no-op.

        Raises:
            RegistrationError: The registry is sealed, the name is not
                dotted, or *name* is already bound to a different
                descriptor.
        """
        if self._sealed:
            msg = f"cannot register {name}: method registry is sealed"
            raise RegistrationError(msg)
        if not _METHOD_RE.match(name):
            msg = f"invalid method name {name!r} (expected '<Component>.<Verb>')"
            raise RegistrationError(msg)

        descriptor = MethodDescriptor(name=name, result_type=result_type, verb=verb)
        existing = self._methods.get(name)
        if existing is not None:
            if existing != descriptor:
                msg = f"conflicting registration for {name}: {existing} vs {descriptor}"
                raise RegistrationError(msg)
            return existing

        self._methods[name] = descriptor
        logger.debug("Registered %s (%s)", name, verb)
        return descriptor

    def seal(self) -> None:
        """Forbid further registration.  Idempotent."""
        if not self._sealed:
            logger.info("Method registry sealed with %d methods", len(self._methods))
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def lookup(self, name: str) -> MethodDescriptor:
        """Return the descriptor for *name*.

        Raises:
            MethodUnknownError: No such method is registered.
        """
        try:
            return self._methods[name]
        except KeyError:
            msg = f"unknown method {name}"
            raise MethodUnknownError(msg) from None

    def names(self) -> list[str]:
        return sorted(self._methods)

    def __contains__(self, name: object) -> bool:
        return name in self._methods

    def __len__(self) -> int:
        return len(self._methods)


def dump_params(params: Any) -> dict[str, Any] | None:
    """Normalise call params to a JSON-ready dict (or ``None``)."""
    if params is None:
        return None
    if isinstance(params, BaseModel):
        return params.model_dump(mode="json", exclude_none=True)
    if isinstance(params, dict):
        return params
    msg = f"params must be an object, got {type(params).__name__}"
    raise BadRequestError(msg)
