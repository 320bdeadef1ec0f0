"""Marshaller - converts between host values and the wire value tree.

Marshalling walks a host value alongside its TypeDescriptor and produces the
wire value tree from ``dbuswire.wire``:

- lists, tuples and dicts become WireArray / WireDict containers carrying
  their signature
- structs become WireStruct, fields in position order
- a bare value in a variant slot is wrapped into a WireVariant
- DBusInterface handles become WireObjectPath

Demarshalling is the inverse, guided by the target type:

- WireSignature becomes a list of TypeDescriptors
- WireVariant is unwrapped for an open target (TypeVar / Any) and kept as
  a Variant for a Variant target
- WireObjectPath becomes an ObjectPath, or for a DBusInterface target the
  object the connection exports at that path
- positional field tuples become DBusStruct instances
- sequences are finally coerced into the target shape (list, tuple, bytes)
- a value that does not fit a concrete target is a MarshalError; only
  variant slots take their type from the wire

Both directions enforce the array-length and nesting limits from
``MarshallingConfig``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Final

from dbuswire.compiler import describe, get_dbus_signature, struct_fields
from dbuswire.config import DEFAULT_CONFIG, MarshallingConfig
from dbuswire.error import MarshalError, ProtocolViolation, SignatureError
from dbuswire.signature import (
    ArrayType,
    DictType,
    ObjectReferenceType,
    Primitive,
    SignatureType,
    StructType,
    TypeDescriptor,
    UserSerializableType,
    VariantType,
    parse_signature,
    parse_single,
)
from dbuswire.types import (
    Byte,
    Connection,
    DBusInterface,
    DBusSerializable,
    DBusStruct,
    Int16,
    Int32,
    Int64,
    ObjectPath,
    Signature,
    UInt16,
    UInt32,
    UInt64,
    Variant,
)
from dbuswire.wire import (
    WIRE_CONTAINERS,
    WireArray,
    WireDict,
    WireObjectPath,
    WireSignature,
    WireStruct,
    WireVariant,
)

# Range checks for each integer code.
_INT_TYPES: Final[dict[str, type[int]]] = {
    "y": Byte,
    "n": Int16,
    "q": UInt16,
    "i": Int32,
    "u": UInt32,
    "x": Int64,
    "t": UInt64,
}

_OPEN: Final[VariantType] = VariantType(open=True)

# Host types for received integers when the target names none. Plain int
# stays int.
_DECODE_INT_TYPES: Final[dict[str, type[int]]] = {
    code: cls for code, cls in _INT_TYPES.items() if code != "i"
}


class Marshaller:
    """Converts host values to and from the wire value tree.

    Example:
        >>> m = Marshaller()
        >>> m.marshal([1, 2, 3], list[int])
        WireArray(signature='ai', items=(1, 2, 3))
        >>> m.demarshal(WireArray("ai", (1, 2, 3)), tuple[int, ...])
        (1, 2, 3)
    """

    __slots__ = ("config",)

    def __init__(self, config: MarshallingConfig = DEFAULT_CONFIG) -> None:
        """Initialize the marshaller.

        Args:
            config: Length and depth limits
        """
        self.config = config

    # ---------- Public API: host -> wire ----------

    def marshal(self, value: Any, tp: Any) -> Any:
        """Marshal one value of host type ``tp``.

        Raises:
            MarshalError: If the value does not fit the type or a limit is exceeded
            SignatureError: If ``tp`` has no wire representation
        """
        descriptor = describe(tp)
        if isinstance(descriptor, UserSerializableType) and len(descriptor.fields) != 1:
            msg = (
                f"{descriptor.host_type.__name__} expands to {len(descriptor.fields)} "
                "wire values; marshal it with marshal_args"
            )
            raise MarshalError(msg, data={"type": descriptor.host_type.__name__})
        return self._enc(value, descriptor, depth=0)

    def marshal_args(self, values: Sequence[Any], types: Sequence[Any]) -> list[Any]:
        """Marshal an argument list against its parameter types.

        DBusSerializable arguments expand into one wire value per
        ``deserialize`` parameter.

        Raises:
            MarshalError: If the argument count does not match
        """
        descriptors = [describe(tp) for tp in types]
        if len(values) != len(descriptors):
            msg = f"Expected {len(descriptors)} arguments, got {len(values)}"
            raise MarshalError(msg, data={"expected": len(descriptors), "actual": len(values)})

        out: list[Any] = []
        for value, descriptor in zip(values, descriptors):
            if isinstance(descriptor, UserSerializableType):
                out.extend(self._enc_serializable(value, descriptor, depth=0))
            else:
                out.append(self._enc(value, descriptor, depth=0))
        return out

    def marshal_signature(self, values: Sequence[Any], signature: str) -> list[Any]:
        """Marshal values against a wire signature, one value per top-level type.

        Raises:
            SignatureError: If the signature is malformed
            MarshalError: If the number of values does not match the signature
        """
        types = _parse_complete(signature)
        if len(values) != len(types):
            msg = (
                f"Signature {signature!r} declares {len(types)} arguments, "
                f"got {len(values)}"
            )
            raise MarshalError(msg, data={"expected": len(types), "actual": len(values)})
        return [self._enc(value, t, depth=0) for value, t in zip(values, types)]

    # ---------- Public API: wire -> host ----------

    def demarshal(self, wire: Any, tp: Any, connection: Connection | None = None) -> Any:
        """Rebuild a host value of type ``tp`` from a wire value.

        Args:
            wire: The wire value
            tp: The target host type or TypeDescriptor
            connection: Resolves object paths for DBusInterface targets

        Raises:
            ProtocolViolation: If a wire aggregate has the wrong number of fields
            MarshalError: If a value cannot be converted
        """
        descriptor = describe(tp)
        if isinstance(descriptor, UserSerializableType) and len(descriptor.fields) != 1:
            msg = (
                f"{descriptor.host_type.__name__} is built from {len(descriptor.fields)} "
                "wire values; demarshal it with demarshal_args"
            )
            raise MarshalError(msg, data={"type": descriptor.host_type.__name__})
        return self._dec(wire, descriptor, connection, depth=0)

    def demarshal_args(
        self,
        values: Sequence[Any],
        types: Sequence[Any],
        connection: Connection | None = None,
    ) -> list[Any]:
        """Rebuild an argument list from wire values.

        A DBusSerializable parameter consumes as many consecutive wire values
        as its ``deserialize`` method takes.

        Raises:
            ProtocolViolation: If there are too few or too many wire values
        """
        descriptors = [describe(tp) for tp in types]
        out: list[Any] = []
        index = 0
        for descriptor in descriptors:
            remaining = len(values) - index
            if isinstance(descriptor, UserSerializableType):
                needed = len(descriptor.fields)
                if remaining < needed:
                    msg = (
                        "Not enough elements to create custom object from serialized "
                        f"data ({remaining} < {needed})"
                    )
                    raise ProtocolViolation(
                        msg,
                        data={
                            "type": descriptor.host_type.__name__,
                            "remaining": remaining,
                            "expected": needed,
                        },
                    )
                parts = values[index : index + needed]
                out.append(self._dec_serializable(parts, descriptor, connection, depth=0))
                index += needed
            else:
                if remaining < 1:
                    msg = f"Not enough elements to construct type {descriptor.signature} (0 < 1)"
                    raise ProtocolViolation(
                        msg,
                        data={"type": descriptor.signature, "remaining": 0, "expected": 1},
                    )
                out.append(self._dec(values[index], descriptor, connection, depth=0))
                index += 1

        if index != len(values):
            msg = f"Too many elements: {len(values)} wire values for {index} parameters"
            raise ProtocolViolation(msg, data={"remaining": len(values) - index, "expected": 0})
        return out

    def demarshal_signature(
        self,
        values: Sequence[Any],
        signature: str,
        connection: Connection | None = None,
    ) -> list[Any]:
        """Rebuild host values from a message body and its signature."""
        return self.demarshal_args(values, _parse_complete(signature), connection)

    # ---------- Encoding Internals ----------

    def _enc(self, value: Any, t: TypeDescriptor, *, depth: int) -> Any:
        """Internal recursive encoder."""
        self._check_depth(depth)

        if value is None:
            msg = f"None cannot be marshalled as {t.signature!r}"
            raise MarshalError(msg, data={"signature": t.signature})

        # Already-wrapped containers pass through unchanged.
        if isinstance(value, WIRE_CONTAINERS) and value.signature == t.signature:
            return value

        if isinstance(t, VariantType):
            if isinstance(value, WireVariant):
                return value
            variant = value if isinstance(value, Variant) else Variant(value)
            inner = self._enc(variant.value, variant.type, depth=depth + 1)
            return WireVariant(variant.signature, inner)

        if isinstance(t, Primitive):
            return self._enc_primitive(value, t)

        if isinstance(t, ObjectReferenceType):
            if isinstance(value, WireObjectPath):
                return value
            if isinstance(value, DBusInterface):
                return WireObjectPath(ObjectPath(value.get_object_path()))
            if isinstance(value, str):
                return WireObjectPath(ObjectPath(value))
            raise self._mismatch(value, t)

        if isinstance(t, SignatureType):
            return WireSignature(self._enc_signature(value))

        if isinstance(t, ArrayType):
            return self._enc_array(value, t, depth=depth)

        if isinstance(t, DictType):
            return self._enc_dict(value, t, depth=depth)

        if isinstance(t, StructType):
            return self._enc_struct(value, t, depth=depth)

        if isinstance(t, UserSerializableType):
            # Only single-field serializables can sit inside a container.
            (wire,) = self._enc_serializable(value, t, depth=depth)
            return wire

        msg = f"Unsupported type descriptor: {t!r}"
        raise MarshalError(msg)

    def _enc_primitive(self, value: Any, t: Primitive) -> Any:
        code = t.code
        if code == "b":
            if not isinstance(value, bool):
                raise self._mismatch(value, t)
            return value
        if code == "d":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise self._mismatch(value, t)
            return float(value)
        if code == "s":
            if not isinstance(value, str):
                raise self._mismatch(value, t)
            return str(value)
        if isinstance(value, bool) or not isinstance(value, int):
            raise self._mismatch(value, t)
        return int(_INT_TYPES[code](value))

    def _enc_signature(self, value: Any) -> str:
        if isinstance(value, WireSignature):
            return value.signature
        if isinstance(value, str):
            return str(Signature(value))
        if isinstance(value, Sequence):
            return str(Signature(get_dbus_signature(value)))
        msg = f"Cannot marshal {type(value).__name__} as a type signature"
        raise MarshalError(msg, data={"type": type(value).__name__})

    def _enc_array(self, value: Any, t: ArrayType, *, depth: int) -> WireArray:
        if isinstance(value, (str, Mapping)) or not hasattr(value, "__iter__"):
            raise self._mismatch(value, t)
        if not isinstance(value, Sequence):
            value = list(value)
        self._check_len(len(value))

        if isinstance(value, (bytes, bytearray, memoryview)):
            if t.element.signature != "y":
                raise self._mismatch(value, t)
            return WireArray(t.signature, bytes(value))

        items = tuple(self._enc(item, t.element, depth=depth + 1) for item in value)
        return WireArray(t.signature, items)

    def _enc_dict(self, value: Any, t: DictType, *, depth: int) -> WireDict:
        if not t.key.is_basic:
            msg = f"Dict key type {t.key.signature!r} is not a basic type"
            raise MarshalError(msg, data={"signature": t.signature})
        if not isinstance(value, Mapping):
            raise self._mismatch(value, t)
        self._check_len(len(value))

        entries = tuple(
            (self._enc(k, t.key, depth=depth + 1), self._enc(v, t.value, depth=depth + 1))
            for k, v in value.items()
        )
        return WireDict(t.signature, entries)

    def _enc_struct(self, value: Any, t: StructType, *, depth: int) -> WireStruct:
        if isinstance(value, DBusStruct):
            fields = value.get_parameters()
        elif isinstance(value, (tuple, list)):
            fields = tuple(value)
        else:
            raise self._mismatch(value, t)

        if len(fields) != len(t.fields):
            msg = (
                f"Struct {t.signature} has {len(t.fields)} fields, "
                f"value provides {len(fields)}"
            )
            raise MarshalError(msg, data={"expected": len(t.fields), "actual": len(fields)})
        items = tuple(
            self._enc(item, field_type, depth=depth + 1)
            for item, field_type in zip(fields, t.fields)
        )
        return WireStruct(t.signature, items)

    def _enc_serializable(
        self, value: Any, t: UserSerializableType, *, depth: int
    ) -> list[Any]:
        if not isinstance(value, DBusSerializable):
            raise self._mismatch(value, t)
        parts = tuple(value.serialize())
        if len(parts) != len(t.fields):
            msg = (
                f"{type(value).__name__}.serialize() returned {len(parts)} values, "
                f"deserialize takes {len(t.fields)}"
            )
            raise MarshalError(msg, data={"expected": len(t.fields), "actual": len(parts)})
        return [self._enc(part, f, depth=depth + 1) for part, f in zip(parts, t.fields)]

    # ---------- Decoding Internals ----------

    def _dec(
        self,
        wire: Any,
        t: TypeDescriptor,
        connection: Connection | None,
        *,
        depth: int,
    ) -> Any:
        """Internal recursive decoder."""
        self._check_depth(depth)

        if wire is None:
            return None

        # Variant slots accept any wire value and take its type from the wire.
        loose = isinstance(t, VariantType)

        if isinstance(wire, WireSignature):
            if isinstance(t, SignatureType) and t.host_type is Signature:
                return Signature(wire.signature)
            if not (loose or isinstance(t, SignatureType)):
                raise self._unexpected(wire, t)
            return list(parse_signature(wire.signature).types)

        if isinstance(wire, WireVariant):
            if not loose:
                raise self._unexpected(wire, t)
            inner = self._dec(wire.value, parse_single(wire.signature), connection, depth=depth + 1)
            if t.open:
                return inner
            return Variant(inner, wire.signature)

        if isinstance(t, UserSerializableType):
            return self._dec_serializable((wire,), t, connection, depth=depth)

        if isinstance(wire, (WireDict, WireArray, WireStruct)):
            if loose:
                t = parse_single(wire.signature)
            elif wire.signature != t.signature:
                raise self._unexpected(wire, t)

        if isinstance(wire, WireDict):
            if not isinstance(t, DictType):
                raise self._unexpected(wire, t)
            self._check_len(len(wire.entries))
            return self._dec_entries(wire.entries, t, connection, depth=depth)

        if isinstance(wire, WireArray):
            if not isinstance(t, ArrayType):
                raise self._unexpected(wire, t)
            self._check_len(len(wire.items))
            values = [self._dec(item, t.element, connection, depth=depth + 1) for item in wire.items]
            return self._coerce_sequence(values, t)

        if isinstance(wire, WireStruct):
            if not isinstance(t, StructType):
                raise self._unexpected(wire, t)
            return self._dec_struct(wire.fields, t, connection, depth=depth)

        if isinstance(wire, WireObjectPath):
            return self._dec_object_path(wire.path, wire.source, t, connection)

        if isinstance(wire, (list, tuple)) or (
            isinstance(wire, (bytes, bytearray)) and isinstance(t, ArrayType)
        ):
            if isinstance(t, StructType):
                return self._dec_struct(tuple(wire), t, connection, depth=depth)
            if not (loose or isinstance(t, ArrayType)):
                raise self._unexpected(wire, t)
            # Generic sequence: every element gets the collection's element type.
            element = t.element if isinstance(t, ArrayType) else _OPEN
            self._check_len(len(wire))
            values = [self._dec(item, element, connection, depth=depth + 1) for item in wire]
            return self._coerce_sequence(values, t)

        if isinstance(wire, Mapping):
            if loose:
                return dict(wire)
            if not isinstance(t, DictType):
                raise self._unexpected(wire, t)
            self._check_len(len(wire))
            return self._dec_entries(wire.items(), t, connection, depth=depth)

        return self._coerce_scalar(wire, t, connection)

    def _dec_entries(
        self,
        entries: Any,
        t: DictType,
        connection: Connection | None,
        *,
        depth: int,
    ) -> dict[Any, Any]:
        return {
            self._dec(k, t.key, connection, depth=depth + 1): self._dec(
                v, t.value, connection, depth=depth + 1
            )
            for k, v in entries
        }

    def _dec_struct(
        self,
        fields: tuple[Any, ...],
        t: StructType,
        connection: Connection | None,
        *,
        depth: int,
    ) -> Any:
        type_name = _type_name(t)
        if len(fields) < len(t.fields):
            msg = (
                f"Not enough elements to construct type {type_name} "
                f"({len(fields)} < {len(t.fields)})"
            )
            raise ProtocolViolation(
                msg,
                data={"type": type_name, "remaining": len(fields), "expected": len(t.fields)},
            )
        if len(fields) > len(t.fields):
            msg = (
                f"Too many elements to construct type {type_name} "
                f"({len(fields)} > {len(t.fields)})"
            )
            raise ProtocolViolation(
                msg,
                data={"type": type_name, "remaining": len(fields), "expected": len(t.fields)},
            )

        values = [
            self._dec(item, field_type, connection, depth=depth + 1)
            for item, field_type in zip(fields, t.fields)
        ]
        host = t.host_type
        if isinstance(host, type) and issubclass(host, DBusStruct):
            names = [f.name for f in struct_fields(host)]
            return host(**dict(zip(names, values)))
        return tuple(values)

    def _dec_serializable(
        self,
        parts: Sequence[Any],
        t: UserSerializableType,
        connection: Connection | None,
        *,
        depth: int,
    ) -> Any:
        values = [
            self._dec(part, f, connection, depth=depth + 1) for part, f in zip(parts, t.fields)
        ]
        obj = t.host_type()
        obj.deserialize(*values)
        return obj

    def _dec_object_path(
        self,
        path: str,
        source: str | None,
        t: TypeDescriptor,
        connection: Connection | None,
    ) -> Any:
        if not isinstance(t, (ObjectReferenceType, VariantType)):
            raise self._unexpected(WireObjectPath(path, source), t)
        host = getattr(t, "host_type", None)
        if not (isinstance(host, type) and issubclass(host, DBusInterface)):
            return ObjectPath(path)

        if connection is None:
            msg = f"Cannot resolve remote object {path} without a connection"
            raise MarshalError(msg, data={"path": path, "source": source})
        obj = connection.get_exported_object(source, path)
        if obj is None:
            msg = f"No object exported at {path} by {source}"
            raise MarshalError(msg, data={"path": path, "source": source})
        return obj

    def _coerce_scalar(self, value: Any, t: TypeDescriptor, connection: Connection | None) -> Any:
        if isinstance(t, VariantType):
            return value
        if isinstance(t, Primitive):
            code = t.code
            if code == "b":
                if isinstance(value, bool):
                    return value
            elif code == "d":
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    return float(value)
            elif code == "s":
                if isinstance(value, str):
                    return value
            elif isinstance(value, int) and not isinstance(value, bool):
                checked = _INT_TYPES[code](value)
                host = t.host_type if t.host_type is not None else _DECODE_INT_TYPES.get(code, int)
                return host(checked)
            raise self._unexpected(value, t)
        if isinstance(t, ObjectReferenceType) and isinstance(value, str):
            return self._dec_object_path(value, None, t, connection)
        if isinstance(t, SignatureType) and isinstance(value, str):
            if t.host_type is Signature:
                return Signature(value)
            return list(parse_signature(value).types)
        raise self._unexpected(value, t)

    def _coerce_sequence(self, values: list[Any], t: TypeDescriptor) -> Any:
        host = getattr(t, "host_type", None)
        if host is tuple:
            return tuple(values)
        if host is bytes:
            return bytes(values)
        return values

    # ---------- Validation Helpers ----------

    def _check_depth(self, depth: int) -> None:
        """Check recursion depth limit."""
        if depth > self.config.max_depth:
            msg = f"Max nesting depth exceeded ({self.config.max_depth})"
            raise MarshalError(msg, data={"limit": self.config.max_depth})

    def _check_len(self, n: int) -> None:
        """Check container length limit."""
        if n > self.config.max_array_length:
            msg = f"Array exceeds maximum length of {self.config.max_array_length}"
            raise MarshalError(msg, data={"limit": self.config.max_array_length, "length": n})

    @staticmethod
    def _mismatch(value: Any, t: TypeDescriptor) -> MarshalError:
        msg = f"Cannot marshal {type(value).__name__} as {t.signature!r}"
        return MarshalError(msg, data={"type": type(value).__name__, "signature": t.signature})

    @staticmethod
    def _unexpected(wire: Any, t: TypeDescriptor) -> MarshalError:
        wire_signature = getattr(wire, "signature", None)
        shown = f"{type(wire).__name__} {wire_signature!r}" if wire_signature else type(wire).__name__
        msg = f"Cannot demarshal {shown} as {t.signature!r}"
        return MarshalError(
            msg,
            data={"type": type(wire).__name__, "wire_signature": wire_signature, "signature": t.signature},
        )


def _parse_complete(signature: str) -> tuple[TypeDescriptor, ...]:
    result = parse_signature(signature)
    if result.consumed != len(signature):
        msg = f"Trailing characters in signature {signature!r}"
        raise SignatureError(msg, data={"signature": signature})
    return result.types


def _type_name(t: TypeDescriptor) -> str:
    host = getattr(t, "host_type", None)
    if isinstance(host, type) and host is not tuple:
        return host.__name__
    return t.signature


# =============================================================================
# Convenience Functions
# =============================================================================


# Global default marshaller instance
_default_marshaller: Marshaller | None = None


def get_default_marshaller() -> Marshaller:
    """Get the global default Marshaller instance."""
    global _default_marshaller
    if _default_marshaller is None:
        _default_marshaller = Marshaller()
    return _default_marshaller


def marshal(value: Any, tp: Any) -> Any:
    """Marshal a value using the default marshaller."""
    return get_default_marshaller().marshal(value, tp)


def marshal_args(values: Sequence[Any], types: Sequence[Any]) -> list[Any]:
    """Marshal an argument list using the default marshaller."""
    return get_default_marshaller().marshal_args(values, types)


def demarshal(wire: Any, tp: Any, connection: Connection | None = None) -> Any:
    """Demarshal a wire value using the default marshaller."""
    return get_default_marshaller().demarshal(wire, tp, connection)


def demarshal_args(
    values: Sequence[Any],
    types: Sequence[Any],
    connection: Connection | None = None,
) -> list[Any]:
    """Demarshal an argument list using the default marshaller."""
    return get_default_marshaller().demarshal_args(values, types, connection)
