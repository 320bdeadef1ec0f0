"""Host-side type definitions for dbuswire.

Python's ``int`` is unbounded and ``str`` says nothing about object paths, so
the bus-specific scalar types get small marker classes here. The container
and user-type base classes describe how application classes map onto the
wire:

- ``DBusStruct``: a dataclass whose fields carry an explicit wire position
- ``DBusSerializable``: a class that decomposes itself into several values
- ``DBusInterface``: a handle to a remote object, sent as its object path
- ``Variant``: a value paired with its wire signature
"""

from __future__ import annotations

import dataclasses
import re
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Final, Generic, Protocol, TypeVar

from dbuswire.error import MarshalError, SignatureError

T = TypeVar("T")

# Key under which the wire position is stored in dataclass field metadata.
POSITION_KEY: Final[str] = "dbus_position"

_OBJECT_PATH_RE: Final = re.compile(r"^/$|^(/[A-Za-z0-9_]+)+$")


# =============================================================================
# Fixed-width integers
# =============================================================================


class _BoundedInt(int):
    """An int that refuses values outside [MIN, MAX]."""

    MIN: ClassVar[int]
    MAX: ClassVar[int]

    def __new__(cls, value: Any = 0) -> _BoundedInt:
        if isinstance(value, bool):
            msg = f"{cls.__name__} cannot hold a bool"
            raise MarshalError(msg)
        number = super().__new__(cls, value)
        if not cls.MIN <= number <= cls.MAX:
            msg = f"{int(number)} is out of range for {cls.__name__} [{cls.MIN}, {cls.MAX}]"
            raise MarshalError(msg, data={"type": cls.__name__, "value": int(number)})
        return number

    def __repr__(self) -> str:
        return f"{type(self).__name__}({int(self)})"


class Byte(_BoundedInt):
    MIN = 0
    MAX = 0xFF


class Int16(_BoundedInt):
    MIN = -(2**15)
    MAX = 2**15 - 1


class UInt16(_BoundedInt):
    MIN = 0
    MAX = 2**16 - 1


class Int32(_BoundedInt):
    MIN = -(2**31)
    MAX = 2**31 - 1


class UInt32(_BoundedInt):
    MIN = 0
    MAX = 2**32 - 1


class Int64(_BoundedInt):
    MIN = -(2**63)
    MAX = 2**63 - 1


class UInt64(_BoundedInt):
    MIN = 0
    MAX = 2**64 - 1


# =============================================================================
# String-like scalars
# =============================================================================


class ObjectPath(str):
    """An object path such as ``/org/example/Thing``."""

    def __new__(cls, value: str) -> ObjectPath:
        if not isinstance(value, str) or not _OBJECT_PATH_RE.match(value):
            msg = f"Invalid object path: {value!r}"
            raise MarshalError(msg, data={"path": value})
        return super().__new__(cls, value)

    def __repr__(self) -> str:
        return f"ObjectPath({str(self)!r})"


class Signature(str):
    """A wire type signature such as ``a{sv}``."""

    def __new__(cls, value: str) -> Signature:
        from dbuswire.signature import parse_signature

        if not isinstance(value, str):
            msg = f"Signature must be a string, got {type(value).__name__}"
            raise SignatureError(msg)
        result = parse_signature(value)
        if result.consumed != len(value):
            msg = f"Trailing characters in signature {value!r}"
            raise SignatureError(msg, data={"signature": value})
        return super().__new__(cls, value)

    @property
    def types(self) -> tuple[Any, ...]:
        """The TypeDescriptors this signature holds."""
        from dbuswire.signature import parse_signature

        return parse_signature(self).types

    def __repr__(self) -> str:
        return f"Signature({str(self)!r})"


# =============================================================================
# Variant
# =============================================================================


class Variant(Generic[T]):
    """A value explicitly paired with its wire type.

    Args:
        value: The wrapped value
        signature: A signature string, a host type, or a TypeDescriptor.
            When omitted it is inferred from the value, which works for
            scalars, structs, tuples and nested variants; lists and dicts
            need it spelled out.

    Example:
        Variant(42)                      # signature "i"
        Variant(UInt32(7))               # signature "u"
        Variant([1, 2], "ai")
        Variant({"a": 1}, dict[str, int])
    """

    __slots__ = ("value", "signature")

    def __init__(self, value: T, signature: Any = None) -> None:
        from dbuswire.compiler import signature_of, single_fragment
        from dbuswire.signature import parse_single

        if signature is None:
            sig = signature_of(value)
        elif isinstance(signature, str):
            parse_single(signature)
            sig = str(signature)
        else:
            sig = single_fragment(signature)
        self.value = value
        self.signature = sig

    @property
    def type(self) -> Any:
        """The TypeDescriptor of the wrapped value."""
        from dbuswire.signature import parse_single

        return parse_single(self.signature)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Variant):
            return NotImplemented
        return self.signature == other.signature and self.value == other.value

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Variant({self.value!r}, {self.signature!r})"


# =============================================================================
# User-defined types
# =============================================================================

_MISSING: Any = object()


def position(
    index: int,
    *,
    default: Any = _MISSING,
    default_factory: Any = _MISSING,
) -> Any:
    """Declare a DBusStruct field and its wire position.

    Args:
        index: Zero-based position of the field in the wire struct
        default: Default value for the field
        default_factory: Factory function for the default value

    Returns:
        A dataclass field with the position attached as metadata.
    """
    if index < 0:
        msg = f"Struct field position must be non-negative, got {index}"
        raise SignatureError(msg)
    metadata = {POSITION_KEY: index}
    if default is not _MISSING:
        return dataclasses.field(default=default, metadata=metadata)
    if default_factory is not _MISSING:
        return dataclasses.field(default_factory=default_factory, metadata=metadata)
    return dataclasses.field(metadata=metadata)


class DBusStruct:
    """Base class for user structs.

    Subclasses are dataclasses; the fields sent on the wire are those declared
    with ``position()``, ordered by position rather than declaration order.

    Example:
        @dataclass
        class Point(DBusStruct):
            label: str = position(1)
            x: int = position(0)
            visible: bool = position(2)

        # signature "(isb)"
    """

    def get_parameters(self) -> tuple[Any, ...]:
        """Return the positioned field values in wire order."""
        from dbuswire.compiler import struct_fields

        return tuple(getattr(self, f.name) for f in struct_fields(type(self)))


class DBusSerializable(ABC):
    """Base class for types that choose their own wire decomposition.

    The annotated parameters of ``deserialize`` declare the wire shape;
    ``serialize`` returns values in the same order. Subclasses need a
    constructor callable without arguments, which is used before
    ``deserialize`` fills the instance in.

    Example:
        class Temperature(DBusSerializable):
            def __init__(self, celsius: float = 0.0) -> None:
                self.celsius = celsius

            def serialize(self) -> tuple[Any, ...]:
                return (self.celsius, "C")

            def deserialize(self, value: float, unit: str) -> None:
                self.celsius = value
    """

    @abstractmethod
    def serialize(self) -> tuple[Any, ...]:
        """Return the wire values for this object."""
        ...

    @abstractmethod
    def deserialize(self, *args: Any) -> None:
        """Populate this object from its wire values."""
        ...


class DBusInterface(ABC):
    """Base class for remote-object handles.

    Values of these types travel as object paths; on receipt they are looked
    up in the connection's exported-object registry.
    """

    @abstractmethod
    def get_object_path(self) -> str:
        """Return the object path this handle refers to."""
        ...


class Connection(Protocol):
    """The part of a bus connection the demarshaller needs."""

    def get_exported_object(self, source: str | None, path: str) -> Any:
        """Return the object exported by peer ``source`` at ``path``.

        Returns None (or raises) when nothing is exported there.
        """
        ...
