"""Tests for the Marshaller.

These tests verify:
1. Host values become the right wire containers
2. Variant slots wrap bare values and demarshal per target type
3. Array length and nesting limits
4. Object paths resolve through the connection
5. Struct and serializable reconstruction from positional wire values
6. marshal followed by demarshal gives back the original value
7. Received values that do not fit a concrete target are rejected
"""

from dataclasses import dataclass
from typing import Any, TypeVar

import pytest

from dbuswire.config import MarshallingConfig
from dbuswire.error import MarshalError, ProtocolViolation, SignatureError
from dbuswire.marshalling import Marshaller, demarshal, marshal, marshal_args
from dbuswire.signature import DictType, Primitive, VariantType
from dbuswire.types import (
    Byte,
    DBusInterface,
    DBusSerializable,
    DBusStruct,
    Int16,
    Int64,
    ObjectPath,
    Signature,
    UInt16,
    UInt32,
    UInt64,
    Variant,
    position,
)
from dbuswire.wire import (
    WireArray,
    WireDict,
    WireObjectPath,
    WireSignature,
    WireStruct,
    WireVariant,
)

T = TypeVar("T")


@dataclass
class Point(DBusStruct):
    x: int = position(0)
    y: int = position(1)


@dataclass
class Record(DBusStruct):
    label: str = position(1)
    where: Point = position(0)
    attrs: dict[str, list[int]] = position(2)


@dataclass
class MissingDefault(DBusStruct):
    extra: str
    x: int = position(0)


class Temperature(DBusSerializable):
    def __init__(self, celsius: float = 0.0) -> None:
        self.celsius = celsius

    def serialize(self) -> tuple[Any, ...]:
        return (self.celsius, "C")

    def deserialize(self, value: float, unit: str) -> None:
        self.celsius = value

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Temperature) and other.celsius == self.celsius


class Remote(DBusInterface):
    def __init__(self, path: str = "/org/example/Remote") -> None:
        self.path = path

    def get_object_path(self) -> str:
        return self.path


class TestMarshalScalars:
    """Test scalar conversion and range checks."""

    def test_plain_values(self) -> None:
        assert marshal(5, int) == 5
        assert marshal(True, bool) is True
        assert marshal("hi", str) == "hi"
        assert marshal(2, float) == 2.0

    def test_out_of_range(self) -> None:
        with pytest.raises(MarshalError, match="out of range"):
            marshal(300, Byte)
        with pytest.raises(MarshalError):
            marshal(-1, UInt32)
        with pytest.raises(MarshalError):
            marshal(2**31, int)

    def test_type_mismatch(self) -> None:
        with pytest.raises(MarshalError):
            marshal(True, int)
        with pytest.raises(MarshalError):
            marshal("1", int)
        with pytest.raises(MarshalError):
            marshal(1, bool)
        with pytest.raises(MarshalError):
            marshal(b"x", str)

    def test_none_rejected(self) -> None:
        with pytest.raises(MarshalError, match="None"):
            marshal(None, str)


class TestMarshalContainers:
    """Test arrays, dicts, structs and signatures."""

    def test_list(self) -> None:
        assert marshal([1, 2, 3], list[int]) == WireArray("ai", (1, 2, 3))

    def test_generator_is_accepted(self) -> None:
        assert marshal((i for i in range(3)), list[int]) == WireArray("ai", (0, 1, 2))

    def test_bytes(self) -> None:
        assert marshal(b"\x01\x02", bytes) == WireArray("ay", b"\x01\x02")

    def test_dict(self) -> None:
        wire = marshal({"a": 1, "b": 2}, dict[str, int])
        assert wire == WireDict("a{si}", (("a", 1), ("b", 2)))

    def test_string_is_not_an_array(self) -> None:
        with pytest.raises(MarshalError):
            marshal("abc", list[str])

    def test_struct_in_position_order(self) -> None:
        value = Record(label="home", where=Point(1, 2), attrs={"n": [7]})
        wire = marshal(value, Record)
        assert wire == WireStruct(
            "((ii)sa{sai})",
            (
                WireStruct("(ii)", (1, 2)),
                "home",
                WireDict("a{sai}", (("n", WireArray("ai", (7,))),)),
            ),
        )

    def test_tuple_as_struct(self) -> None:
        assert marshal((1, "a"), tuple[int, str]) == WireStruct("(is)", (1, "a"))
        with pytest.raises(MarshalError, match="has 2 fields"):
            marshal((1,), tuple[int, str])

    def test_object_path(self) -> None:
        assert marshal(Remote(), Remote) == WireObjectPath("/org/example/Remote")
        assert marshal("/a/b", ObjectPath) == WireObjectPath("/a/b")
        with pytest.raises(MarshalError, match="Invalid object path"):
            marshal("not/a/path", ObjectPath)

    def test_signature_values(self) -> None:
        assert marshal([int, dict[str, Variant]], list[type]) == WireSignature("ia{sv}")
        assert marshal("a{sv}", Signature) == WireSignature("a{sv}")
        with pytest.raises(SignatureError):
            marshal("a{", Signature)

    def test_wrapped_container_passes_through(self) -> None:
        wire = WireArray("ai", (1, 2))
        assert marshal(wire, list[int]) is wire


class TestMarshalVariants:
    """Test variant wrapping."""

    def test_bare_value_is_wrapped(self) -> None:
        assert marshal(5, Variant) == WireVariant("i", 5)
        assert marshal("x", T) == WireVariant("s", "x")

    def test_explicit_variant(self) -> None:
        assert marshal(Variant([1, 2], "ai"), Variant) == WireVariant(
            "ai", WireArray("ai", (1, 2))
        )
        assert marshal(Variant(UInt16(3)), Variant) == WireVariant("q", 3)

    def test_dict_of_variants(self) -> None:
        wire = marshal({"n": 1, "s": "x", "p": Point(3, 4)}, dict[str, Variant])
        assert wire == WireDict(
            "a{sv}",
            (
                ("n", WireVariant("i", 1)),
                ("s", WireVariant("s", "x")),
                ("p", WireVariant("(ii)", WireStruct("(ii)", (3, 4)))),
            ),
        )

    def test_list_needs_explicit_signature(self) -> None:
        with pytest.raises(SignatureError, match="explicit signature"):
            marshal([1, 2], Variant)

    def test_nested_variant(self) -> None:
        assert marshal(Variant(Variant(1)), Variant) == WireVariant("v", WireVariant("i", 1))


class TestLimits:
    """Test array-length and nesting limits."""

    def test_array_at_limit(self) -> None:
        m = Marshaller(MarshallingConfig(max_array_length=3))
        assert m.marshal([1, 2, 3], list[int]) == WireArray("ai", (1, 2, 3))

    def test_array_over_limit(self) -> None:
        m = Marshaller(MarshallingConfig(max_array_length=3))
        with pytest.raises(MarshalError, match="maximum length of 3") as exc_info:
            m.marshal([1, 2, 3, 4], list[int])
        assert exc_info.value.data["limit"] == 3

    def test_dict_and_bytes_count_against_limit(self) -> None:
        m = Marshaller(MarshallingConfig(max_array_length=2))
        with pytest.raises(MarshalError, match="maximum length of 2"):
            m.marshal({"a": 1, "b": 2, "c": 3}, dict[str, int])
        with pytest.raises(MarshalError, match="maximum length of 2"):
            m.marshal(b"abc", bytes)

    def test_received_array_over_limit(self) -> None:
        m = Marshaller(MarshallingConfig(max_array_length=2))
        with pytest.raises(MarshalError, match="maximum length of 2"):
            m.demarshal(WireArray("ai", (1, 2, 3)), list[int])

    def test_nesting_limit(self) -> None:
        m = Marshaller(MarshallingConfig(max_depth=2))
        assert m.marshal([[1]], list[list[int]]) == WireArray("aai", (WireArray("ai", (1,)),))
        with pytest.raises(MarshalError, match="nesting depth"):
            m.marshal([[[1]]], list[list[list[int]]])


class TestArgs:
    """Test argument lists."""

    def test_serializable_expands(self) -> None:
        assert marshal_args([1, Temperature(21.5)], [int, Temperature]) == [1, 21.5, "C"]

    def test_argument_count(self) -> None:
        with pytest.raises(MarshalError, match="Expected 2 arguments, got 1"):
            marshal_args([1], [int, str])

    def test_multi_valued_serializable_needs_args(self) -> None:
        with pytest.raises(MarshalError, match="marshal_args"):
            marshal(Temperature(1.0), Temperature)

    def test_marshal_signature(self) -> None:
        m = Marshaller()
        assert m.marshal_signature(["x", 1], "si") == ["x", 1]
        with pytest.raises(MarshalError, match="declares 2 arguments"):
            m.marshal_signature(["x"], "si")

    def test_demarshal_args_compresses(self) -> None:
        m = Marshaller()
        result = m.demarshal_args([3, 21.5, "C"], [int, Temperature])
        assert result == [3, Temperature(21.5)]

    def test_not_enough_elements_for_serializable(self) -> None:
        m = Marshaller()
        with pytest.raises(ProtocolViolation) as exc_info:
            m.demarshal_args([21.5], [Temperature])
        assert "Not enough elements to create custom object" in str(exc_info.value)
        assert "(1 < 2)" in str(exc_info.value)

    def test_not_enough_elements_for_plain_type(self) -> None:
        with pytest.raises(ProtocolViolation, match="Not enough elements"):
            Marshaller().demarshal_args([1], [int, str])

    def test_too_many_elements(self) -> None:
        with pytest.raises(ProtocolViolation, match="Too many elements"):
            Marshaller().demarshal_args([1, 2], [int])

    def test_demarshal_signature(self) -> None:
        m = Marshaller()
        body = [WireDict("a{sv}", (("k", WireVariant("u", 9)),)), "tail"]
        assert m.demarshal_signature(body, "a{sv}s") == [{"k": Variant(9, "u")}, "tail"]


class TestDemarshal:
    """Test rebuilding host values."""

    def test_signature_becomes_descriptors(self) -> None:
        result = demarshal(WireSignature("a{sv}i"), list[type])
        assert result == [DictType(Primitive("s"), VariantType()), Primitive("i")]

    def test_signature_host_type(self) -> None:
        result = demarshal(WireSignature("a{sv}"), Signature)
        assert isinstance(result, Signature)
        assert result == "a{sv}"

    def test_variant_unwrapped_for_open_target(self) -> None:
        assert demarshal(WireVariant("i", 5), T) == 5
        assert demarshal(WireVariant("i", 5), Any) == 5

    def test_variant_kept_for_variant_target(self) -> None:
        assert demarshal(WireVariant("i", 5), Variant) == Variant(5, "i")

    def test_dict_of_variants(self) -> None:
        wire = WireDict("a{sv}", (("k", WireVariant("s", "v")),))
        assert demarshal(wire, dict[str, Any]) == {"k": "v"}
        assert demarshal(wire, dict[str, Variant]) == {"k": Variant("v", "s")}

    def test_variant_with_container(self) -> None:
        wire = WireVariant("a{sai}", WireDict("a{sai}", (("a", WireArray("ai", (1,))),)))
        assert demarshal(wire, Any) == {"a": [1]}

    def test_sequence_shape_follows_target(self) -> None:
        wire = WireArray("ai", (1, 2, 3))
        assert demarshal(wire, list[int]) == [1, 2, 3]
        assert demarshal(wire, tuple[int, ...]) == (1, 2, 3)
        assert demarshal(WireArray("ay", b"\x01\x02"), bytes) == b"\x01\x02"

    def test_plain_sequence_of_variants(self) -> None:
        wire = [WireVariant("i", 1), WireVariant("s", "a")]
        assert demarshal(wire, list[Any]) == [1, "a"]

    def test_integer_host_types(self) -> None:
        value = demarshal(7, UInt32)
        assert isinstance(value, UInt32)
        assert value == 7
        assert isinstance(demarshal(WireVariant("n", -2), Any), Int16)

    def test_struct_from_wire_struct(self) -> None:
        assert demarshal(WireStruct("(ii)", (1, 2)), Point) == Point(1, 2)

    def test_struct_from_plain_tuple(self) -> None:
        assert demarshal((1, 2), Point) == Point(1, 2)

    def test_struct_not_enough_elements(self) -> None:
        with pytest.raises(ProtocolViolation) as exc_info:
            demarshal((1,), Point)
        assert str(exc_info.value) == "Not enough elements to construct type Point (1 < 2)"

    def test_struct_too_many_elements(self) -> None:
        with pytest.raises(ProtocolViolation, match="Too many elements"):
            demarshal((1, 2, 3), Point)

    def test_anonymous_struct(self) -> None:
        assert demarshal(WireStruct("(is)", (1, "a")), tuple[int, str]) == (1, "a")


class TestObjectReferences:
    """Test object-path resolution through a connection."""

    def test_resolved_from_connection(self, connection) -> None:
        remote = Remote()
        connection.export(":1.5", "/org/example/Remote", remote)

        wire = WireObjectPath("/org/example/Remote", ":1.5")
        assert demarshal(wire, Remote, connection) is remote
        assert connection.lookups == [(":1.5", "/org/example/Remote")]

    def test_missing_object(self, connection) -> None:
        with pytest.raises(MarshalError, match="No object exported"):
            demarshal(WireObjectPath("/nothing", ":1.5"), Remote, connection)

    def test_no_connection(self) -> None:
        with pytest.raises(MarshalError, match="without a connection"):
            demarshal(WireObjectPath("/x", ":1.5"), Remote)

    def test_plain_object_path(self) -> None:
        result = demarshal(WireObjectPath("/x", ":1.5"), ObjectPath)
        assert isinstance(result, ObjectPath)
        assert result == "/x"

    def test_array_of_remotes(self, connection) -> None:
        first, second = Remote("/a"), Remote("/b")
        connection.export(":1.9", "/a", first)
        connection.export(":1.9", "/b", second)

        wire = WireArray("ao", (WireObjectPath("/a", ":1.9"), WireObjectPath("/b", ":1.9")))
        assert demarshal(wire, list[Remote], connection) == [first, second]

    def test_plain_string_path_resolved_from_connection(self, connection) -> None:
        """A bare path string gets the same lookup as a WireObjectPath."""
        remote = Remote()
        connection.export(None, "/org/example/Remote", remote)

        assert demarshal("/org/example/Remote", Remote, connection) is remote
        assert connection.lookups == [(None, "/org/example/Remote")]

    def test_plain_string_path_needs_connection(self) -> None:
        with pytest.raises(MarshalError, match="without a connection"):
            demarshal("/org/example/Remote", Remote)

    def test_plain_string_path_for_object_path_target(self) -> None:
        result = demarshal("/x", ObjectPath)
        assert isinstance(result, ObjectPath)


class TestTargetMismatch:
    """Received values must fit the target type."""

    @pytest.mark.parametrize(
        ("wire", "tp"),
        [
            ("not an int", int),
            (1.5, UInt32),
            (True, Int16),
            (7, str),
            (1, bool),
            ("yes", bool),
            ("1.0", float),
            (False, float),
        ],
    )
    def test_scalar_of_wrong_kind(self, wire: Any, tp: Any) -> None:
        with pytest.raises(MarshalError, match="Cannot demarshal") as exc_info:
            demarshal(wire, tp)
        assert exc_info.value.data["type"] == type(wire).__name__

    def test_integer_out_of_range(self) -> None:
        with pytest.raises(MarshalError, match="out of range"):
            demarshal(300, Byte)

    @pytest.mark.parametrize(
        ("wire", "tp"),
        [
            (WireArray("ai", (1, 2)), dict[str, int]),
            (WireArray("ai", (1, 2)), list[str]),
            (WireDict("a{si}", (("a", 1),)), dict[str, str]),
            (WireDict("a{si}", (("a", 1),)), list[int]),
            (WireStruct("(ii)", (1, 2)), tuple[int, str]),
            (WireStruct("(is)", (1, "a")), Point),
        ],
    )
    def test_container_signature_must_match(self, wire: Any, tp: Any) -> None:
        with pytest.raises(MarshalError, match="Cannot demarshal") as exc_info:
            demarshal(wire, tp)
        assert exc_info.value.data["wire_signature"] == wire.signature

    def test_plain_collections_of_wrong_shape(self) -> None:
        with pytest.raises(MarshalError):
            demarshal([1, 2], dict[str, int])
        with pytest.raises(MarshalError):
            demarshal({"a": 1}, list[int])
        with pytest.raises(MarshalError):
            demarshal([1, 2], int)

    def test_plain_mapping_for_dict_target(self) -> None:
        assert demarshal({"a": 1}, dict[str, UInt32]) == {"a": UInt32(1)}

    def test_self_typed_values_need_matching_target(self) -> None:
        with pytest.raises(MarshalError):
            demarshal(WireVariant("i", 1), int)
        with pytest.raises(MarshalError):
            demarshal(WireSignature("i"), str)
        with pytest.raises(MarshalError):
            demarshal(WireObjectPath("/x"), str)

    def test_variant_slots_take_type_from_wire(self) -> None:
        """Only open and variant targets fall back to the wire signature."""
        assert demarshal(WireArray("ai", (1, 2)), Any) == [1, 2]
        assert demarshal(WireStruct("(is)", (1, "a")), T) == (1, "a")
        assert demarshal([WireArray("ai", (1,))], list[Any]) == [[1]]

    def test_element_mismatch_inside_container(self) -> None:
        with pytest.raises(MarshalError, match="Cannot demarshal str as 'i'"):
            demarshal(["a"], list[int])

    def test_error_body_of_wrong_kind(self) -> None:
        with pytest.raises(MarshalError):
            Marshaller().demarshal_signature([42], "s")

    def test_unrebuildable_struct_is_rejected_up_front(self) -> None:
        with pytest.raises(SignatureError, match="no wire position and no default"):
            marshal(MissingDefault("e", 1), MissingDefault)


class TestRoundTrip:
    """marshal then demarshal yields an equal value."""

    @pytest.mark.parametrize(
        ("value", "tp"),
        [
            (True, bool),
            (Byte(7), Byte),
            (-5, Int16),
            (2**40, Int64),
            (2**63, UInt64),
            (1.5, float),
            ("hi", str),
            (ObjectPath("/x/y"), ObjectPath),
            (b"abc", bytes),
            ({"a": [1, 2]}, dict[str, list[int]]),
            ((1, 2), tuple[int, ...]),
            ((1, "a"), tuple[int, str]),
            ([Point(1, 2), Point(3, 4)], list[Point]),
            (Record("r", Point(0, 0), {"k": []}), Record),
            (Variant(3), Variant),
            ({"opts": Variant({"n": 1}, dict[str, int])}, dict[str, Variant]),
        ],
    )
    def test_round_trip(self, value: Any, tp: Any) -> None:
        m = Marshaller()
        assert m.demarshal(m.marshal(value, tp), tp) == value
