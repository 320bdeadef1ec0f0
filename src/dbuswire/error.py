"""Error taxonomy and typed-error registry for dbuswire.

Two families of exceptions live here:

- ``DBusError`` and its subclasses are raised by the marshalling core itself
  (signature compilation/parsing, value conversion, error-reply construction).
  Each carries an ``ErrorCode`` so callers can branch without isinstance chains.
- ``DBusExecutionError`` is the base of *typed remote failures*: exceptions
  that travel over the bus as error replies and are turned back into concrete
  Python exceptions on the receiving side via ``ErrorRegistry``.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Final

# Separator used for nested classes when looking up a bus identifier.
DEFAULT_NESTED_SEPARATOR: Final[str] = "$"


class ErrorCode(Enum):
    """Categories of marshalling failures."""

    SIGNATURE = "signature"
    MARSHAL = "marshal"
    PROTOCOL_VIOLATION = "protocol_violation"
    ERROR_FORMAT = "error_format"


class DBusError(Exception):
    """Base class for errors raised by the marshalling core.

    Attributes:
        code: The error category
        message: Human readable description
        data: Optional structured context (offending type, counts, limits)
    """

    default_code: ErrorCode = ErrorCode.MARSHAL

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code if code is not None else self.default_code
        self.data = data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code.value})"

    @classmethod
    def signature(cls, message: str, **data: Any) -> SignatureError:
        """A type cannot be expressed as, or parsed from, a wire signature."""
        return SignatureError(message, data=data or None)

    @classmethod
    def marshal(cls, message: str, **data: Any) -> MarshalError:
        """A value cannot be converted to or from its wire shape."""
        return MarshalError(message, data=data or None)

    @classmethod
    def protocol_violation(cls, message: str, **data: Any) -> ProtocolViolation:
        """Wire data does not match the shape a peer promised."""
        return ProtocolViolation(message, data=data or None)

    @classmethod
    def error_format(cls, message: str, **data: Any) -> ErrorFormatError:
        """An error reply is missing required header fields."""
        return ErrorFormatError(message, data=data or None)


class SignatureError(DBusError):
    """Raised when a type has no wire signature or a signature is malformed."""

    default_code = ErrorCode.SIGNATURE


class MarshalError(DBusError):
    """Raised when a value cannot be marshalled (limits, key types, arity)."""

    default_code = ErrorCode.MARSHAL


class ProtocolViolation(SignatureError):
    """Raised when received wire data breaks the protocol.

    Subclasses ``SignatureError`` because an unknown type code is both a
    malformed signature and a protocol violation by the sender.
    """

    default_code = ErrorCode.PROTOCOL_VIOLATION


class ErrorFormatError(DBusError):
    """Raised when an error reply lacks its destination or error name."""

    default_code = ErrorCode.ERROR_FORMAT


# =============================================================================
# Typed remote failures
# =============================================================================


class DBusExecutionError(Exception):
    """Base class for failures that can be sent as, and recovered from, error replies.

    Subclasses must accept a single message string. Every subclass is
    registered with the default ``ErrorRegistry`` under its bus name, so an
    error reply naming it can be turned back into an instance.

    Example:
        class NotAuthorized(DBusExecutionError):
            pass

        reply = ErrorReply.from_exception(request, NotAuthorized("denied"))
        # ... on the other side:
        reply.get_exception()  # -> NotAuthorized("denied")
    """

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message
        self._type: str | None = None

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        default_registry.register(cls)

    @property
    def type(self) -> str:
        """The bus identifier this failure was received as (or its own bus name)."""
        if self._type is not None:
            return self._type
        return bus_name(type(self))

    @type.setter
    def type(self, value: str) -> None:
        self._type = value


def bus_name(cls: type) -> str:
    """Return the dot-separated bus identifier for an exception class.

    Nested classes use their qualified name, so ``pkg.mod`` / ``Outer.Inner``
    becomes ``pkg.mod.Outer.Inner``. Built-in exceptions keep their module
    too (``builtins.KeyError``) so every identifier has at least two elements.
    """
    qualname = cls.__qualname__.replace(".<locals>", "")
    return f"{cls.__module__}.{qualname}"


class ErrorRegistry:
    """Thread-safe mapping from bus error identifiers to exception classes.

    Classes are stored under their *registry key*: the module path joined to
    the qualified name with ``nested_separator`` between nested class levels
    (``pkg.mod.Outer$Inner``). Explicit aliases may also be registered under
    any identifier, e.g. well-known bus errors.

    Lookup rewrites the identifier when the plain name is unknown: the
    rightmost remaining '.' is replaced with the nested separator and the
    lookup retried until a class is found or no '.' remains.
    """

    def __init__(self, nested_separator: str = DEFAULT_NESTED_SEPARATOR) -> None:
        self.nested_separator = nested_separator
        self._classes: dict[str, type[BaseException]] = {}
        self._lock = threading.Lock()

    def key_for(self, cls: type) -> str:
        """Return the registry key used for ``cls``."""
        qualname = cls.__qualname__.replace(".<locals>", "")
        nested = qualname.replace(".", self.nested_separator)
        return f"{cls.__module__}.{nested}"

    def register(self, cls: type[BaseException], name: str | None = None) -> type[BaseException]:
        """Register ``cls`` under ``name`` (or its registry key).

        The first registration of a name wins; re-registering the same class
        is a no-op.
        """
        key = name if name is not None else self.key_for(cls)
        with self._lock:
            self._classes.setdefault(key, cls)
        return cls

    def unregister(self, name: str) -> None:
        with self._lock:
            self._classes.pop(name, None)

    def candidates(self, identifier: str) -> list[str]:
        """Return the lookup names tried for ``identifier``, in order."""
        names = [identifier]
        name = identifier
        while "." in name:
            head, _, tail = name.rpartition(".")
            name = f"{head}{self.nested_separator}{tail}"
            names.append(name)
        return names

    def resolve(self, identifier: str) -> type[BaseException] | None:
        """Find the class registered for ``identifier``, or None."""
        with self._lock:
            for name in self.candidates(identifier):
                cls = self._classes.get(name)
                if cls is not None:
                    return cls
        return None

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._classes


default_registry = ErrorRegistry()


def register_error(name: str, registry: ErrorRegistry | None = None):
    """Class decorator registering an exception under an explicit bus identifier.

    Example:
        @register_error("org.freedesktop.DBus.Error.ServiceUnknown")
        class ServiceUnknown(DBusExecutionError):
            pass
    """

    def decorator(cls: type[BaseException]) -> type[BaseException]:
        (registry or default_registry).register(cls, name)
        return cls

    return decorator
