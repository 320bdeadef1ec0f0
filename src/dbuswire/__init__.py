"""dbuswire - Marshalling core for a D-Bus style message bus.

This package converts between Python values and the bus's self-describing
wire representation: it compiles Python types to wire signatures, parses
signatures back into type descriptors, marshals and demarshals values, and
builds and decodes error replies.
"""

from dbuswire.config import MarshallingConfig
from dbuswire.error import (
    DBusError,
    DBusExecutionError,
    ErrorCode,
    ErrorFormatError,
    ErrorRegistry,
    MarshalError,
    ProtocolViolation,
    SignatureError,
    bus_name,
    register_error,
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
    position,
)
from dbuswire.signature import (
    ArrayType,
    DictType,
    ObjectReferenceType,
    ParseResult,
    Primitive,
    SignatureType,
    StructType,
    TypeDescriptor,
    UserSerializableType,
    VariantType,
    parse_signature,
    parse_single,
)
from dbuswire.compiler import (
    clear_caches,
    describe,
    get_dbus_signature,
    get_dbus_type,
    struct_fields,
)
from dbuswire.wire import (
    WireArray,
    WireDict,
    WireObjectPath,
    WireSignature,
    WireStruct,
    WireVariant,
)
from dbuswire.marshalling import (
    Marshaller,
    demarshal,
    demarshal_args,
    marshal,
    marshal_args,
)
from dbuswire.message import ErrorReply, HeaderField

__version__ = "0.1.0"

__all__ = [
    # Configuration (Pydantic models)
    "MarshallingConfig",
    # Errors
    "DBusError",
    "ErrorCode",
    "SignatureError",
    "MarshalError",
    "ProtocolViolation",
    "ErrorFormatError",
    "DBusExecutionError",
    "ErrorRegistry",
    "register_error",
    "bus_name",
    # Host types
    "Byte",
    "Int16",
    "UInt16",
    "Int32",
    "UInt32",
    "Int64",
    "UInt64",
    "ObjectPath",
    "Signature",
    "Variant",
    "DBusStruct",
    "position",
    "DBusSerializable",
    "DBusInterface",
    "Connection",
    # Type descriptors and signature parsing
    "TypeDescriptor",
    "Primitive",
    "ArrayType",
    "DictType",
    "StructType",
    "VariantType",
    "ObjectReferenceType",
    "SignatureType",
    "UserSerializableType",
    "ParseResult",
    "parse_signature",
    "parse_single",
    # Type-signature compiler
    "describe",
    "get_dbus_type",
    "get_dbus_signature",
    "struct_fields",
    "clear_caches",
    # Wire value tree
    "WireVariant",
    "WireSignature",
    "WireObjectPath",
    "WireArray",
    "WireDict",
    "WireStruct",
    # Marshalling
    "Marshaller",
    "marshal",
    "marshal_args",
    "demarshal",
    "demarshal_args",
    # Error replies
    "ErrorReply",
    "HeaderField",
]
