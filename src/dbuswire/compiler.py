"""Type-signature compiler: Python types to wire signatures.

``describe()`` turns a host type (``int``, ``list[str]``, ``dict[str, Variant]``,
a DBusStruct subclass, ...) into a TypeDescriptor; ``get_dbus_type()`` renders
that descriptor as signature fragments. Compiled results are cached per host
type for the life of the process.

Rules, in priority order:
1. TypeVar / Any                       -> ``v``
2. tuple[T, ...]                       -> ``a`` + T  (``g`` for tuple[type, ...])
3. dict[K, V] / Mapping[K, V]          -> ``a{KV}``, K must be basic
4. list[T] / Sequence[T]               -> ``a`` + T  (``g`` for list[type])
5. Variant / Variant[T]                -> ``v``
6. DBusInterface subclasses            -> ``o``
7. Scalars (bool, int, float, str, bytes, Byte .. UInt64, ObjectPath, Signature)
8. tuple[A, B, ...]                    -> ``(AB...)``
9. DBusStruct subclasses               -> ``(`` + positioned field types + ``)``
10. DBusSerializable subclasses        -> one fragment per ``deserialize`` parameter

Only rule 10 may produce more than one fragment, and only at the top level
of an argument list.
"""

from __future__ import annotations

import collections.abc
import dataclasses
import inspect
import logging
import threading
import typing
from dataclasses import dataclass
from typing import Any, Final, TypeVar, get_args, get_origin, get_type_hints

from dbuswire.config import MAX_NESTING_DEPTH
from dbuswire.error import SignatureError
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
    is_descriptor,
)
from dbuswire.types import (
    POSITION_KEY,
    Byte,
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

logger = logging.getLogger(__name__)

_SCALARS: Final[dict[type, TypeDescriptor]] = {
    bool: Primitive("b", host_type=bool),
    Byte: Primitive("y", host_type=Byte),
    Int16: Primitive("n", host_type=Int16),
    UInt16: Primitive("q", host_type=UInt16),
    int: Primitive("i", host_type=int),
    Int32: Primitive("i", host_type=Int32),
    UInt32: Primitive("u", host_type=UInt32),
    Int64: Primitive("x", host_type=Int64),
    UInt64: Primitive("t", host_type=UInt64),
    float: Primitive("d", host_type=float),
    str: Primitive("s", host_type=str),
    bytes: ArrayType(Primitive("y", host_type=Byte), host_type=bytes),
    ObjectPath: ObjectReferenceType(host_type=ObjectPath),
    Signature: SignatureType(host_type=Signature),
}

_MAPPING_ORIGINS: Final = frozenset(
    {dict, collections.abc.Mapping, collections.abc.MutableMapping}
)
_SEQUENCE_ORIGINS: Final = frozenset(
    {list, collections.abc.Sequence, collections.abc.MutableSequence}
)


@dataclass(frozen=True, slots=True)
class StructField:
    """One positioned field of a DBusStruct."""

    name: str
    position: int
    type: Any


@dataclass(frozen=True, slots=True)
class CompiledType:
    """Cache entry: a host type's descriptor and its signature fragments."""

    descriptor: TypeDescriptor
    fragments: tuple[str, ...]


# Process-wide caches. Reads go straight to the dict; writes publish under
# the lock with setdefault so the first writer wins.
_type_cache: dict[Any, CompiledType] = {}
_struct_cache: dict[type, tuple[StructField, ...]] = {}
_cache_lock = threading.Lock()


def clear_caches() -> None:
    """Forget every compiled type and struct layout."""
    with _cache_lock:
        _type_cache.clear()
        _struct_cache.clear()


# =============================================================================
# Public API
# =============================================================================


def compile_type(tp: Any) -> CompiledType:
    """Compile a host type, using the process-wide cache.

    Raises:
        SignatureError: If the type has no wire representation
    """
    if is_descriptor(tp):
        # Descriptors compare equal regardless of host_type, so they would
        # alias each other in the cache.
        return _compile(tp)
    try:
        cached = _type_cache.get(tp)
    except TypeError:
        # Unhashable type expressions are compiled every time.
        return _compile(tp)
    if cached is not None:
        return cached

    compiled = _compile(tp)
    with _cache_lock:
        published = _type_cache.setdefault(tp, compiled)
    if published is compiled:
        logger.debug("Compiled %r to %s", tp, compiled.fragments)
    return published


def describe(tp: Any, basic: bool = False) -> TypeDescriptor:
    """Return the TypeDescriptor for a host type.

    Args:
        tp: A host type, type expression or TypeDescriptor
        basic: If True the type must be a basic (non-container) type

    Raises:
        SignatureError: If the type cannot be mapped, or is not basic when
            ``basic`` is set
    """
    if basic:
        return _describe(tp, basic=True, depth=0)
    return compile_type(tp).descriptor


def get_dbus_type(tp: Any, basic: bool = False) -> tuple[str, ...]:
    """Return the signature fragments for a host type.

    Most types produce exactly one fragment. A DBusSerializable produces
    one per ``deserialize`` parameter.

    Example:
        >>> get_dbus_type(dict[str, Variant])
        ('a{sv}',)
    """
    if basic:
        return _fragments(_describe(tp, basic=True, depth=0))
    return compile_type(tp).fragments


def get_dbus_signature(types: typing.Iterable[Any]) -> str:
    """Return the concatenated signature of an argument list."""
    return "".join(fragment for tp in types for fragment in get_dbus_type(tp))


def single_fragment(tp: Any) -> str:
    """Return the one signature fragment of ``tp``.

    Raises:
        SignatureError: If ``tp`` expands to several fragments
    """
    fragments = get_dbus_type(tp)
    if len(fragments) != 1:
        msg = f"{_name(tp)} expands to {len(fragments)} signature fragments, expected one"
        raise SignatureError(msg, data={"type": _name(tp), "fragments": fragments})
    return fragments[0]


def signature_of(value: Any) -> str:
    """Infer the wire signature of a value, for wrapping it in a Variant.

    Raises:
        SignatureError: For lists, dicts and other values whose element
            types cannot be inferred
    """
    if isinstance(value, Variant):
        return "v"
    if isinstance(value, DBusInterface):
        return "o"
    if isinstance(value, tuple) and not isinstance(value, DBusStruct):
        return "(" + "".join(signature_of(item) for item in value) + ")"
    if isinstance(value, (list, dict, set, frozenset)):
        msg = (
            f"Cannot infer the signature of a {type(value).__name__}; "
            "give the Variant an explicit signature"
        )
        raise SignatureError(msg, data={"type": type(value).__name__})
    return single_fragment(type(value))


def struct_fields(cls: type) -> tuple[StructField, ...]:
    """Return the positioned fields of a DBusStruct, in wire order.

    Raises:
        SignatureError: If ``cls`` is not a dataclass, two fields share
            a position, or an unpositioned field has no default
    """
    cached = _struct_cache.get(cls)
    if cached is not None:
        return cached

    if not dataclasses.is_dataclass(cls):
        msg = f"Struct type {cls.__name__} must be a dataclass"
        raise SignatureError(msg, data={"type": cls.__name__})

    hints = get_type_hints(cls)
    positioned: list[StructField] = []
    for f in dataclasses.fields(cls):
        index = f.metadata.get(POSITION_KEY)
        if index is None:
            if f.init and f.default is dataclasses.MISSING and f.default_factory is dataclasses.MISSING:
                msg = (
                    f"Field {f.name!r} of {cls.__name__} has no wire position and no default, "
                    "so the struct cannot be rebuilt from the wire"
                )
                raise SignatureError(msg, data={"type": cls.__name__, "field": f.name})
            continue
        positioned.append(StructField(f.name, index, hints[f.name]))
    positioned.sort(key=lambda f: f.position)

    for before, after in zip(positioned, positioned[1:]):
        if before.position == after.position:
            msg = (
                f"Fields {before.name!r} and {after.name!r} of {cls.__name__} "
                f"share position {before.position}"
            )
            raise SignatureError(msg, data={"type": cls.__name__})

    with _cache_lock:
        return _struct_cache.setdefault(cls, tuple(positioned))


def serializable_parameters(cls: type) -> tuple[Any, ...]:
    """Return the annotated parameter types of ``cls.deserialize``."""
    method = getattr(cls, "deserialize", None)
    if method is None or getattr(method, "__isabstractmethod__", False):
        msg = f"Serializable class {cls.__name__} must implement a deserialize method"
        raise SignatureError(msg, data={"type": cls.__name__})

    hints = get_type_hints(method)
    params = list(inspect.signature(method).parameters.values())[1:]
    types = []
    for param in params:
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD) or param.name not in hints:
            msg = (
                f"Parameter {param.name!r} of {cls.__name__}.deserialize "
                "needs a concrete type annotation"
            )
            raise SignatureError(msg, data={"type": cls.__name__})
        types.append(hints[param.name])
    return tuple(types)


# =============================================================================
# Compilation
# =============================================================================


def _compile(tp: Any) -> CompiledType:
    descriptor = _describe(tp, basic=False, depth=0)
    return CompiledType(descriptor, _fragments(descriptor))


def _fragments(descriptor: TypeDescriptor) -> tuple[str, ...]:
    if isinstance(descriptor, UserSerializableType):
        return descriptor.fragments
    return (descriptor.signature,)


def _name(tp: Any) -> str:
    return tp.__name__ if isinstance(tp, type) else repr(tp)


def _contained(tp: Any, *, depth: int, basic: bool = False) -> TypeDescriptor:
    """Describe a type that sits inside a container: exactly one fragment."""
    descriptor = _describe(tp, basic=basic, depth=depth)
    if isinstance(descriptor, UserSerializableType) and len(descriptor.fields) != 1:
        msg = f"Multi-valued array types not permitted: {_name(tp)}"
        raise SignatureError(msg, data={"type": _name(tp)})
    return descriptor


def _describe(tp: Any, *, basic: bool, depth: int) -> TypeDescriptor:
    if depth > MAX_NESTING_DEPTH:
        msg = f"Type nesting deeper than {MAX_NESTING_DEPTH} levels at {_name(tp)}"
        raise SignatureError(msg, data={"type": _name(tp)})

    if is_descriptor(tp):
        descriptor = tp
    elif basic and not isinstance(tp, type):
        msg = f"{_name(tp)} is not a basic type"
        raise SignatureError(msg, data={"type": _name(tp)})
    else:
        descriptor = _describe_host(tp, depth=depth)

    if basic and not descriptor.is_basic:
        msg = f"{_name(tp)} is not a basic type"
        raise SignatureError(msg, data={"type": _name(tp)})
    return descriptor


def _describe_host(tp: Any, *, depth: int) -> TypeDescriptor:
    # 1. Open type parameters
    if isinstance(tp, TypeVar) or tp is Any:
        return VariantType(open=True)

    origin = get_origin(tp)
    args = get_args(tp)

    if origin is not None:
        # 2 and 8. Tuples: homogeneous arrays or anonymous structs
        if origin is tuple:
            if len(args) == 2 and args[1] is Ellipsis:
                if args[0] is type:
                    return SignatureType(host_type=tuple)
                return ArrayType(_contained(args[0], depth=depth + 1), host_type=tuple)
            fields = tuple(_contained(a, depth=depth + 1) for a in args if a != ())
            return StructType(fields, host_type=tuple)

        # 3. Maps
        if origin in _MAPPING_ORIGINS:
            if len(args) != 2:
                msg = f"Map must have 2 parameters: {tp!r}"
                raise SignatureError(msg, data={"type": repr(tp)})
            key = _contained(args[0], depth=depth + 1, basic=True)
            value = _contained(args[1], depth=depth + 1)
            return DictType(key, value, host_type=dict)

        # 4. Lists
        if origin in _SEQUENCE_ORIGINS:
            if len(args) != 1:
                msg = f"List must have 1 parameter: {tp!r}"
                raise SignatureError(msg, data={"type": repr(tp)})
            if args[0] is type:
                return SignatureType(host_type=list)
            return ArrayType(_contained(args[0], depth=depth + 1), host_type=list)

        if isinstance(origin, type):
            # 5. Parameterized variants
            if issubclass(origin, Variant):
                return VariantType()
            # 6. Parameterized remote interfaces
            if issubclass(origin, DBusInterface):
                return ObjectReferenceType(host_type=origin)
            # 10. Parameterized serializables
            if issubclass(origin, DBusSerializable):
                return _describe_serializable(origin, depth=depth)

        msg = f"Exporting non-exportable parameterized type {tp!r}"
        raise SignatureError(msg, data={"type": repr(tp)})

    if not isinstance(tp, type):
        msg = f"Exporting non-exportable type {tp!r}"
        raise SignatureError(msg, data={"type": repr(tp)})

    # 5. Variants
    if issubclass(tp, Variant):
        return VariantType()
    # 6. Remote interfaces
    if issubclass(tp, DBusInterface):
        return ObjectReferenceType(host_type=tp)
    # 7. Scalars
    scalar = _SCALARS.get(tp)
    if scalar is not None:
        return scalar
    if tp in (dict, list, tuple):
        msg = f"Container type {tp.__name__} needs type parameters"
        raise SignatureError(msg, data={"type": tp.__name__})
    # 9. User structs
    if issubclass(tp, DBusStruct):
        fields = tuple(_contained(f.type, depth=depth + 1) for f in struct_fields(tp))
        return StructType(fields, host_type=tp)
    # 10. User serializables
    if issubclass(tp, DBusSerializable):
        return _describe_serializable(tp, depth=depth)

    msg = f"Exporting non-exportable type {tp.__name__}"
    raise SignatureError(msg, data={"type": tp.__name__})


def _describe_serializable(cls: type, *, depth: int) -> UserSerializableType:
    fields = []
    for param in serializable_parameters(cls):
        descriptor = _describe(param, basic=False, depth=depth + 1)
        if isinstance(descriptor, UserSerializableType):
            msg = f"Serializable class {cls.__name__} must serialize to native bus types"
            raise SignatureError(msg, data={"type": cls.__name__})
        fields.append(descriptor)
    return UserSerializableType(cls, tuple(fields))
