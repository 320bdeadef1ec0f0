"""Wire value tree for dbuswire.

These classes are the generic, already-decoded form of bus values: what a
transport produces after reading a message body and consumes before writing
one. Basic values (ints, floats, bools, strings) appear as plain Python
scalars; everything that carries its own type information gets a wrapper:

- WireVariant:    a value with its embedded signature (``v``)
- WireSignature:  a type-signature value (``g``)
- WireObjectPath: an object path plus the peer that sent it (``o``)
- WireArray:      an array with its full signature (``a...``)
- WireDict:       a dict-entry array with its full signature (``a{..}``)
- WireStruct:     a positional field tuple with its signature (``(...)``)

Arrays, dicts and structs are the value containers the marshaller builds:
they keep the type metadata needed to emit the right signature later.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class WireVariant:
    """Variant value: ``v``"""

    signature: str
    value: Any


@dataclass(frozen=True, slots=True)
class WireSignature:
    """Signature value: ``g``"""

    signature: str


@dataclass(frozen=True, slots=True)
class WireObjectPath:
    """Object path value: ``o``

    ``source`` is the unique name of the peer the path came from, needed to
    look the object up in the connection's registry.
    """

    path: str
    source: str | None = None


@dataclass(frozen=True, slots=True)
class WireArray:
    """Array value: ``a<element>``

    For byte arrays ``items`` may be a ``bytes`` object.
    """

    signature: str
    items: Sequence[Any]

    @property
    def element_signature(self) -> str:
        return self.signature[1:]

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True, slots=True)
class WireDict:
    """Dict-entry array value: ``a{<key><value>}``"""

    signature: str
    entries: tuple[tuple[Any, Any], ...]

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(frozen=True, slots=True)
class WireStruct:
    """Struct value: ``(<fields>)``"""

    signature: str
    fields: tuple[Any, ...]

    def __len__(self) -> int:
        return len(self.fields)


WIRE_CONTAINERS: tuple[type, ...] = (WireArray, WireDict, WireStruct)
