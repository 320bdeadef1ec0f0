"""Error reply messages.

An error reply answers a method call that failed. It names the failure with a
dot-separated bus identifier (``org.example.Error.Denied``), points back at
the serial of the call it answers, and may carry a body; conventionally a
single string with the failure's message.

On the receiving side ``ErrorReply.get_exception()`` turns the reply back
into a Python exception, using the error registry to find a concrete
``DBusExecutionError`` subclass for the identifier.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from enum import IntEnum
from types import MappingProxyType
from typing import Any, Protocol

from dbuswire.error import (
    DBusExecutionError,
    ErrorFormatError,
    ErrorRegistry,
    MarshalError,
    bus_name,
    default_registry,
)
from dbuswire.marshalling import Marshaller, get_default_marshaller
from dbuswire.types import Connection, Signature, UInt32
from dbuswire.wire import WireVariant

logger = logging.getLogger(__name__)


class HeaderField(IntEnum):
    """Message header field codes."""

    PATH = 1
    INTERFACE = 2
    MEMBER = 3
    ERROR_NAME = 4
    REPLY_SERIAL = 5
    DESTINATION = 6
    SENDER = 7
    SIGNATURE = 8


# Wire type of each header field value.
HEADER_SIGNATURES: dict[HeaderField, str] = {
    HeaderField.PATH: "o",
    HeaderField.INTERFACE: "s",
    HeaderField.MEMBER: "s",
    HeaderField.ERROR_NAME: "s",
    HeaderField.REPLY_SERIAL: "u",
    HeaderField.DESTINATION: "s",
    HeaderField.SENDER: "s",
    HeaderField.SIGNATURE: "g",
}


class Request(Protocol):
    """The parts of a received method call an error reply needs."""

    @property
    def sender(self) -> str | None: ...

    @property
    def serial(self) -> int: ...


class ErrorReply:
    """An immutable error reply.

    Args:
        destination: Unique name of the peer the reply goes to
        error_name: Dot-separated error identifier
        reply_serial: Serial of the method call being answered
        signature: Body signature, or None for an empty body
        *args: Body values, marshalled against ``signature``
        marshaller: Marshaller to use (default instance if omitted)

    Raises:
        ErrorFormatError: If destination or error name is missing
        MarshalError: If the body values do not fit the signature

    Example:
        reply = ErrorReply(":1.42", "org.example.Error.Denied", 7, "s", "no access")
        reply.body          # ('no access',)
        reply.headers[HeaderField.REPLY_SERIAL]  # 7
    """

    __slots__ = ("_headers", "_body", "_marshaller")

    def __init__(
        self,
        destination: str,
        error_name: str,
        reply_serial: int,
        signature: str | None = None,
        *args: Any,
        marshaller: Marshaller | None = None,
    ) -> None:
        _check_required(destination, error_name)
        self._marshaller = marshaller or get_default_marshaller()

        headers: dict[HeaderField, Any] = {
            HeaderField.REPLY_SERIAL: int(UInt32(reply_serial)),
            HeaderField.ERROR_NAME: error_name,
            HeaderField.DESTINATION: destination,
        }
        body: tuple[Any, ...] = ()
        if signature is not None:
            headers[HeaderField.SIGNATURE] = str(Signature(signature))
            body = tuple(self._marshaller.marshal_signature(args, signature))
        elif args:
            msg = f"Error reply has {len(args)} body arguments but no signature"
            raise MarshalError(msg, data={"expected": 0, "actual": len(args)})

        self._headers = MappingProxyType(headers)
        self._body = body

    @classmethod
    def from_exception(
        cls,
        request: Request,
        exc: BaseException,
        *,
        marshaller: Marshaller | None = None,
    ) -> ErrorReply:
        """Build the reply for a method call that raised ``exc``.

        The error name is the exception's bus name (module and qualified class
        name joined by dots), the body is its message as a single string.
        A DBusExecutionError received from another peer keeps the identifier
        it arrived with.
        """
        if isinstance(exc, DBusExecutionError):
            name = exc.type
            message = exc.message
        else:
            name = bus_name(type(exc))
            message = str(exc)
        return cls(request.sender, name, request.serial, "s", message, marshaller=marshaller)

    @classmethod
    def from_wire(
        cls,
        headers: Mapping[int, Any],
        body: Sequence[Any] = (),
        *,
        marshaller: Marshaller | None = None,
    ) -> ErrorReply:
        """Wrap a received error reply.

        Args:
            headers: Header fields keyed by HeaderField (or its integer code)
            body: The wire values of the body

        Raises:
            ErrorFormatError: If destination or error name is missing
        """
        fields: dict[HeaderField, Any] = {}
        for code, value in headers.items():
            try:
                fields[HeaderField(code)] = value
            except ValueError:
                msg = f"Unknown header field code {code!r}"
                raise ErrorFormatError(msg, data={"code": code}) from None
        _check_required(fields.get(HeaderField.DESTINATION), fields.get(HeaderField.ERROR_NAME))

        reply = cls.__new__(cls)
        reply._marshaller = marshaller or get_default_marshaller()
        reply._headers = MappingProxyType(fields)
        reply._body = tuple(body)
        return reply

    # ---------- Accessors ----------

    @property
    def destination(self) -> str:
        return self._headers[HeaderField.DESTINATION]

    @property
    def error_name(self) -> str:
        return self._headers[HeaderField.ERROR_NAME]

    @property
    def reply_serial(self) -> int:
        return self._headers.get(HeaderField.REPLY_SERIAL, 0)

    @property
    def signature(self) -> str | None:
        return self._headers.get(HeaderField.SIGNATURE)

    @property
    def headers(self) -> Mapping[HeaderField, Any]:
        """Read-only view of the header fields."""
        return self._headers

    @property
    def body(self) -> tuple[Any, ...]:
        """The marshalled body values."""
        return self._body

    @property
    def header_fields(self) -> tuple[tuple[int, WireVariant], ...]:
        """The header array as sent on the wire: ``a(yv)``."""
        order = (
            HeaderField.ERROR_NAME,
            HeaderField.DESTINATION,
            HeaderField.REPLY_SERIAL,
            HeaderField.SIGNATURE,
        )
        return tuple(
            (int(code), WireVariant(HEADER_SIGNATURES[code], self._headers[code]))
            for code in order
            if code in self._headers
        )

    def get_parameters(self, connection: Connection | None = None) -> list[Any]:
        """Demarshal the body into host values."""
        if self.signature is None:
            return []
        return self._marshaller.demarshal_signature(self._body, self.signature, connection)

    # ---------- Typed error recovery ----------

    def get_exception(self, registry: ErrorRegistry | None = None) -> DBusExecutionError:
        """Turn this reply into an exception of the matching type.

        The error name is looked up in the registry (trying nested-class
        spellings as well). If no suitable DBusExecutionError subclass is
        found, or building it fails, a plain DBusExecutionError is returned.
        Either way the exception's ``type`` is this reply's error name.

        This method never raises.
        """
        name = self.error_name
        try:
            cls = (registry or default_registry).resolve(name)
            if cls is None or not (isinstance(cls, type) and issubclass(cls, DBusExecutionError)):
                cls = DBusExecutionError
            exc = cls(self._message_text())
            exc.type = name
            return exc
        except Exception:
            logger.debug("Could not build typed exception for %s", name, exc_info=True)

        try:
            text = self._message_text()
        except Exception:
            logger.debug("Could not read body of error reply %s", name, exc_info=True)
            text = ""
        exc = DBusExecutionError(text)
        exc.type = name
        return exc

    def raise_exception(self, registry: ErrorRegistry | None = None) -> None:
        """Raise the exception this reply describes."""
        raise self.get_exception(registry)

    def _message_text(self) -> str:
        return " ".join(str(arg) for arg in self.get_parameters()).strip()

    def __repr__(self) -> str:
        return (
            f"ErrorReply(destination={self.destination!r}, error_name={self.error_name!r}, "
            f"reply_serial={self.reply_serial}, signature={self.signature!r})"
        )


def _check_required(destination: Any, error_name: Any) -> None:
    if not destination or not error_name:
        msg = "Must specify destination and error name to Errors."
        raise ErrorFormatError(msg, data={"destination": destination, "error_name": error_name})
