"""Signature grammar and parser.

A wire signature is a string of single-character type codes. Basic types
are one character each; containers are built from the array marker ``a``,
the dict-entry braces ``a{KV}``, the struct parentheses ``(...)`` and the
variant code ``v``.

This module holds the type-code alphabet, the TypeDescriptor dataclasses
that a signature parses into, and ``parse_signature`` itself.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Final, Union

from dbuswire.config import MAX_NESTING_DEPTH
from dbuswire.error import ProtocolViolation, SignatureError

# =============================================================================
# Type-code alphabet
# =============================================================================

BYTE: Final[str] = "y"
BOOLEAN: Final[str] = "b"
INT16: Final[str] = "n"
UINT16: Final[str] = "q"
INT32: Final[str] = "i"
UINT32: Final[str] = "u"
INT64: Final[str] = "x"
UINT64: Final[str] = "t"
DOUBLE: Final[str] = "d"
STRING: Final[str] = "s"
OBJECT_PATH: Final[str] = "o"
SIGNATURE: Final[str] = "g"
VARIANT: Final[str] = "v"

ARRAY: Final[str] = "a"
STRUCT_OPEN: Final[str] = "("
STRUCT_CLOSE: Final[str] = ")"
DICT_ENTRY_OPEN: Final[str] = "{"
DICT_ENTRY_CLOSE: Final[str] = "}"

PRIMITIVE_CODES: Final[frozenset[str]] = frozenset(
    {BYTE, BOOLEAN, INT16, UINT16, INT32, UINT32, INT64, UINT64, DOUBLE, STRING}
)

MAX_SIGNATURE_LENGTH: Final[int] = 255


# =============================================================================
# Type descriptors
# =============================================================================

# ``host_type`` records the Python type a descriptor was compiled from so that
# values can be rebuilt in that shape. It takes no part in equality: a parsed
# descriptor equals the compiled one.


@dataclass(frozen=True, slots=True)
class Primitive:
    """A fixed scalar type: one of ``ybnqiuxtds``."""

    code: str
    host_type: Any = field(default=None, compare=False, repr=False)

    @property
    def signature(self) -> str:
        return self.code

    @property
    def is_basic(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class ArrayType:
    """Array of one element type: ``a<element>``."""

    element: TypeDescriptor
    host_type: Any = field(default=None, compare=False, repr=False)

    @property
    def signature(self) -> str:
        return ARRAY + self.element.signature

    @property
    def is_basic(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class DictType:
    """Array of dict entries: ``a{<key><value>}``. The key must be basic."""

    key: TypeDescriptor
    value: TypeDescriptor
    host_type: Any = field(default=None, compare=False, repr=False)

    @property
    def signature(self) -> str:
        return f"{ARRAY}{DICT_ENTRY_OPEN}{self.key.signature}{self.value.signature}{DICT_ENTRY_CLOSE}"

    @property
    def is_basic(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class StructType:
    """Ordered field types: ``(<f0><f1>...)``."""

    fields: tuple[TypeDescriptor, ...]
    host_type: Any = field(default=None, compare=False, repr=False)

    @property
    def signature(self) -> str:
        inner = "".join(f.signature for f in self.fields)
        return f"{STRUCT_OPEN}{inner}{STRUCT_CLOSE}"

    @property
    def is_basic(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class VariantType:
    """Self-describing value: ``v``."""

    open: bool = field(default=False, compare=False)

    @property
    def signature(self) -> str:
        return VARIANT

    @property
    def is_basic(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class ObjectReferenceType:
    """Object path: ``o``."""

    host_type: Any = field(default=None, compare=False, repr=False)

    @property
    def signature(self) -> str:
        return OBJECT_PATH

    @property
    def is_basic(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class SignatureType:
    """Type signature value: ``g``."""

    host_type: Any = field(default=None, compare=False, repr=False)

    @property
    def signature(self) -> str:
        return SIGNATURE

    @property
    def is_basic(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class UserSerializableType:
    """A user type that decomposes into several wire values.

    Unlike every other descriptor this one stands for more than one
    signature fragment, so it may only appear at the top level of an
    argument list, never inside a container.
    """

    host_type: Any
    fields: tuple[TypeDescriptor, ...]

    @property
    def fragments(self) -> tuple[str, ...]:
        return tuple(f.signature for f in self.fields)

    @property
    def signature(self) -> str:
        return "".join(self.fragments)

    @property
    def is_basic(self) -> bool:
        return False


TypeDescriptor = Union[
    Primitive,
    ArrayType,
    DictType,
    StructType,
    VariantType,
    ObjectReferenceType,
    SignatureType,
    UserSerializableType,
]

DESCRIPTOR_TYPES: Final[tuple[type, ...]] = (
    Primitive,
    ArrayType,
    DictType,
    StructType,
    VariantType,
    ObjectReferenceType,
    SignatureType,
    UserSerializableType,
)

_SINGLE_CODES: Final[dict[str, TypeDescriptor]] = {
    **{code: Primitive(code) for code in PRIMITIVE_CODES},
    VARIANT: VariantType(),
    OBJECT_PATH: ObjectReferenceType(),
    SIGNATURE: SignatureType(),
}


def is_descriptor(obj: object) -> bool:
    """Check whether obj is one of the TypeDescriptor dataclasses."""
    return isinstance(obj, DESCRIPTOR_TYPES)


# =============================================================================
# Parser
# =============================================================================


@dataclass(frozen=True, slots=True)
class ParseResult:
    """Outcome of parsing a signature.

    Attributes:
        types: The top-level descriptors, in order
        consumed: Number of signature characters the descriptors span
    """

    types: tuple[TypeDescriptor, ...]
    consumed: int


def parse_signature(signature: str, limit: int | None = None) -> ParseResult:
    """Parse a wire signature into type descriptors.

    Args:
        signature: The signature string, e.g. ``"a{sv}i"``
        limit: Stop after this many top-level types (None for all)

    Returns:
        The parsed descriptors and the number of characters consumed

    Raises:
        SignatureError: On bracket mismatch, truncation or a bad dict entry
        ProtocolViolation: On an unknown type code
    """
    if not signature or limit == 0:
        return ParseResult((), 0)
    if len(signature) > MAX_SIGNATURE_LENGTH:
        msg = f"Signature is longer than {MAX_SIGNATURE_LENGTH} characters: {signature!r}"
        raise SignatureError(msg, data={"signature": signature})

    types: list[TypeDescriptor] = []
    pos = 0
    while pos < len(signature) and (limit is None or len(types) < limit):
        descriptor, pos = _parse_one(signature, pos, depth=0)
        types.append(descriptor)
    return ParseResult(tuple(types), pos)


def parse_single(signature: str) -> TypeDescriptor:
    """Parse a signature that must hold exactly one complete type."""
    result = parse_signature(signature, limit=1)
    if not result.types or result.consumed != len(signature):
        msg = f"Expected exactly one complete type in signature {signature!r}"
        raise SignatureError(msg, data={"signature": signature})
    return result.types[0]


def _fail(signature: str, pos: int, reason: str) -> SignatureError:
    msg = f"Failed to parse signature {signature!r} at position {pos}: {reason}"
    return SignatureError(msg, data={"signature": signature, "position": pos})


def _parse_one(signature: str, pos: int, *, depth: int) -> tuple[TypeDescriptor, int]:
    """Parse one complete type starting at pos; return it and the next position."""
    if depth > MAX_NESTING_DEPTH:
        raise _fail(signature, pos, f"nesting deeper than {MAX_NESTING_DEPTH}")
    if pos >= len(signature):
        raise _fail(signature, pos, "unexpected end of signature")

    code = signature[pos]

    simple = _SINGLE_CODES.get(code)
    if simple is not None:
        return simple, pos + 1

    if code == STRUCT_OPEN:
        fields: list[TypeDescriptor] = []
        cursor = pos + 1
        while True:
            if cursor >= len(signature):
                raise _fail(signature, pos, "unterminated struct")
            if signature[cursor] == STRUCT_CLOSE:
                break
            field_type, cursor = _parse_one(signature, cursor, depth=depth + 1)
            fields.append(field_type)
        return StructType(tuple(fields)), cursor + 1

    if code == ARRAY:
        if pos + 1 >= len(signature):
            raise _fail(signature, pos, "array has no element type")
        if signature[pos + 1] != DICT_ENTRY_OPEN:
            element, cursor = _parse_one(signature, pos + 1, depth=depth + 1)
            return ArrayType(element), cursor

        key, cursor = _parse_one(signature, pos + 2, depth=depth + 1)
        if not key.is_basic:
            raise _fail(signature, pos + 2, f"dict key {key.signature!r} is not a basic type")
        value, cursor = _parse_one(signature, cursor, depth=depth + 1)
        if cursor >= len(signature):
            raise _fail(signature, pos, "unterminated dict entry")
        if signature[cursor] != DICT_ENTRY_CLOSE:
            raise _fail(signature, cursor, "dict entry must hold exactly two types")
        return DictType(key, value), cursor + 1

    if code in (STRUCT_CLOSE, DICT_ENTRY_CLOSE):
        raise _fail(signature, pos, f"unmatched {code!r}")
    if code == DICT_ENTRY_OPEN:
        raise _fail(signature, pos, "dict entry outside of an array")

    msg = f"Failed to parse signature {signature!r}: unknown type code {code!r} at position {pos}"
    raise ProtocolViolation(msg, data={"signature": signature, "position": pos, "code": code})
