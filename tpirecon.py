"""Type-record reconstruction engine for CodeView debug databases.

Rebuilds layout-faithful C/C++ declarations (structs, classes, unions, enums,
bitfields, anonymous nested aggregates, inheritance, statics and virtual
tables) from the TPI type-record stream of a PDB.

Usage:
    python tpirecon.py --tpi build/app.tpi --type ns::Widget --deps
    python tpirecon.py --tpi build/app.tpi --list Widget -i
"""

import argparse
import difflib
import enum
import re
import sys
import threading
from collections import defaultdict
from collections.abc import Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import NamedTuple

import construct as cs

__version__ = "0.3.0"


# ===--- Constants ---=== #

FIRST_NON_PRIMITIVE = 0x1000

# Type record leaves.
LF_VTSHAPE = 0x000A
LF_MODIFIER = 0x1001
LF_POINTER = 0x1002
LF_PROCEDURE = 0x1008
LF_MFUNCTION = 0x1009
LF_ARGLIST = 0x1201
LF_FIELDLIST = 0x1203
LF_BITFIELD = 0x1205
LF_METHODLIST = 0x1206
LF_ARRAY = 0x1503
LF_CLASS = 0x1504
LF_STRUCTURE = 0x1505
LF_UNION = 0x1506
LF_ENUM = 0x1507
LF_INTERFACE = 0x1519

# Field list sub-leaves.
LF_BCLASS = 0x1400
LF_VBCLASS = 0x1401
LF_IVBCLASS = 0x1402
LF_INDEX = 0x1404
LF_VFUNCTAB = 0x1409
LF_ENUMERATE = 0x1502
LF_MEMBER = 0x150D
LF_STMEMBER = 0x150E
LF_METHOD = 0x150F
LF_NESTTYPE = 0x1510
LF_ONEMETHOD = 0x1511

# Numeric leaves.
LF_NUMERIC = 0x8000
LF_CHAR = 0x8000
LF_SHORT = 0x8001
LF_USHORT = 0x8002
LF_LONG = 0x8003
LF_ULONG = 0x8004
LF_QUADWORD = 0x8009
LF_UQUADWORD = 0x800A
LF_PAD0 = 0xF0

# Aggregate property bits.
PROP_PACKED = 0x0001
PROP_NESTED = 0x0008
PROP_FWDREF = 0x0080
PROP_SCOPED = 0x0100
PROP_HAS_UNIQUE_NAME = 0x0200

# Member attribute bits beyond access and method property.
ATTR_PSEUDO = 0x0020
ATTR_COMPGENX = 0x0100

# Member function attribute bits.
FUNC_CTOR = 0x02
FUNC_CTOR_VBASE = 0x04

# Pointer record attribute fields.
PTR_KIND_NEAR32 = 0x0A
PTR_KIND_FAR32 = 0x0B
PTR_KIND_64 = 0x0C
PTR_MODE_POINTER = 0
PTR_MODE_LVALUE_REF = 1
PTR_MODE_DATA_MEMBER = 2
PTR_MODE_METHOD = 3
PTR_MODE_RVALUE_REF = 4

TPI_HEADER_SIZE = 56
TPI_VERSIONS = {19950410, 19951122, 19961031, 19990903, 20040203}

UNNAMED_MARKERS = ("<anonymous-", "<unnamed-", "__unnamed")

# Common primitive type indices.
T_NOTYPE = 0x0000
T_VOID = 0x0003
T_HRESULT = 0x0008
T_CHAR = 0x0010
T_SHORT = 0x0011
T_LONG = 0x0012
T_QUAD = 0x0013
T_UCHAR = 0x0020
T_USHORT = 0x0021
T_ULONG = 0x0022
T_UQUAD = 0x0023
T_BOOL08 = 0x0030
T_BOOL32 = 0x0032
T_REAL32 = 0x0040
T_REAL64 = 0x0041
T_REAL80 = 0x0042
T_INT1 = 0x0068
T_UINT1 = 0x0069
T_RCHAR = 0x0070
T_WCHAR = 0x0071
T_INT2 = 0x0072
T_UINT2 = 0x0073
T_INT4 = 0x0074
T_UINT4 = 0x0075
T_INT8 = 0x0076
T_UINT8 = 0x0077
T_CHAR16 = 0x007A
T_CHAR32 = 0x007B
T_CHAR8 = 0x007C
T_64PVOID = 0x0603


class PrimitiveKindInfo(NamedTuple):
    name: str
    size: int
    portable: str
    raw: str
    microsoft: str


PRIMITIVE_KINDS: dict[int, PrimitiveKindInfo] = {
    0x00: PrimitiveKindInfo("notype", 0, "...", "...", "..."),
    0x03: PrimitiveKindInfo("void", 0, "void", "void", "VOID"),
    0x08: PrimitiveKindInfo("hresult", 4, "int32_t", "HRESULT", "HRESULT"),
    # Characters
    0x10: PrimitiveKindInfo("char", 1, "char", "signed char", "CHAR"),
    0x20: PrimitiveKindInfo("uchar", 1, "unsigned char", "unsigned char", "UCHAR"),
    0x70: PrimitiveKindInfo("rchar", 1, "char", "char", "CHAR"),
    0x71: PrimitiveKindInfo("wchar", 2, "wchar_t", "wchar_t", "WCHAR"),
    0x7A: PrimitiveKindInfo("char16", 2, "char16_t", "char16_t", "char16_t"),
    0x7B: PrimitiveKindInfo("char32", 4, "char32_t", "char32_t", "char32_t"),
    0x7C: PrimitiveKindInfo("char8", 1, "char8_t", "char8_t", "char8_t"),
    # Integers
    0x68: PrimitiveKindInfo("int8", 1, "int8_t", "__int8", "INT8"),
    0x69: PrimitiveKindInfo("uint8", 1, "uint8_t", "unsigned __int8", "UINT8"),
    0x11: PrimitiveKindInfo("short", 2, "int16_t", "short", "SHORT"),
    0x21: PrimitiveKindInfo("ushort", 2, "uint16_t", "unsigned short", "USHORT"),
    0x72: PrimitiveKindInfo("int16", 2, "int16_t", "__int16", "INT16"),
    0x73: PrimitiveKindInfo("uint16", 2, "uint16_t", "unsigned __int16", "UINT16"),
    0x12: PrimitiveKindInfo("long", 4, "int32_t", "long", "LONG"),
    0x22: PrimitiveKindInfo("ulong", 4, "uint32_t", "unsigned long", "ULONG"),
    0x74: PrimitiveKindInfo("int32", 4, "int32_t", "int", "INT"),
    0x75: PrimitiveKindInfo("uint32", 4, "uint32_t", "unsigned int", "UINT"),
    0x13: PrimitiveKindInfo("quad", 8, "int64_t", "long long", "LONGLONG"),
    0x23: PrimitiveKindInfo("uquad", 8, "uint64_t", "unsigned long long", "ULONGLONG"),
    0x76: PrimitiveKindInfo("int64", 8, "int64_t", "__int64", "INT64"),
    0x77: PrimitiveKindInfo("uint64", 8, "uint64_t", "unsigned __int64", "UINT64"),
    0x14: PrimitiveKindInfo("octa", 16, "__int128", "__int128", "__int128"),
    0x24: PrimitiveKindInfo(
        "uocta", 16, "unsigned __int128", "unsigned __int128", "unsigned __int128"
    ),
    0x78: PrimitiveKindInfo("int128", 16, "__int128", "__int128", "__int128"),
    0x79: PrimitiveKindInfo(
        "uint128", 16, "unsigned __int128", "unsigned __int128", "unsigned __int128"
    ),
    # Booleans
    0x30: PrimitiveKindInfo("bool8", 1, "bool", "bool", "bool"),
    0x31: PrimitiveKindInfo("bool16", 2, "int16_t", "short", "SHORT"),
    0x32: PrimitiveKindInfo("bool32", 4, "int32_t", "int", "BOOL"),
    0x33: PrimitiveKindInfo("bool64", 8, "int64_t", "long long", "LONGLONG"),
    # Floating points
    0x46: PrimitiveKindInfo("float16", 2, "_Float16", "_Float16", "_Float16"),
    0x40: PrimitiveKindInfo("float32", 4, "float", "float", "FLOAT"),
    0x45: PrimitiveKindInfo("float32pp", 4, "float", "float", "FLOAT"),
    0x41: PrimitiveKindInfo("float64", 8, "double", "double", "DOUBLE"),
    0x42: PrimitiveKindInfo("float80", 10, "long double", "long double", "long double"),
    0x43: PrimitiveKindInfo("float128", 16, "__float128", "__float128", "__float128"),
}

# Indirection mode (bits 8-11 of a primitive index) to pointer size.
PRIMITIVE_POINTER_SIZES = {1: 2, 2: 2, 3: 2, 4: 4, 5: 4, 6: 8, 7: 16}


# ===--- Diagnostics and errors ---=== #


DIAGNOSTIC_CODES = {
    "UNRESOLVED_REFERENCE",
    "MALFORMED_RECORD",
    "LAYOUT_OVERLAP",
    "CYCLIC_DEFINITION_DEPTH_EXCEEDED",
    "SIZE_MISMATCH",
}


@dataclass(frozen=True)
class Diagnostic:
    code: str
    type_id: int | None
    message: str

    def __post_init__(self):
        if self.code not in DIAGNOSTIC_CODES:
            raise ValueError(f"Unknown diagnostic code: {self.code}")

    def __str__(self) -> str:
        where = f" [{self.type_id:#06x}]" if self.type_id is not None else ""
        return f"{self.code}{where}: {self.message}"


class ReconstructionError(Exception):
    """Recoverable engine error; reported as a diagnostic, never fatal."""

    code = "MALFORMED_RECORD"

    def __init__(self, message: str, type_id: int | None = None):
        super().__init__(message)
        self.message = message
        self.type_id = type_id

    def to_diagnostic(self) -> Diagnostic:
        return Diagnostic(self.code, self.type_id, self.message)


class UnresolvedReference(ReconstructionError):
    code = "UNRESOLVED_REFERENCE"


class MalformedRecord(ReconstructionError):
    code = "MALFORMED_RECORD"


class LayoutOverlap(ReconstructionError):
    code = "LAYOUT_OVERLAP"


class CyclicDefinitionDepthExceeded(ReconstructionError):
    code = "CYCLIC_DEFINITION_DEPTH_EXCEEDED"


class SizeMismatch(ReconstructionError):
    code = "SIZE_MISMATCH"


class ReconstructionCancelled(Exception):
    """Raised between top-level types once the caller's cancel flag is set.

    Carries the blocks completed before the check so a caller may keep them;
    no block is ever cut in the middle of an aggregate.
    """

    def __init__(self, blocks: tuple["DeclarationBlock", ...]):
        super().__init__(f"reconstruction cancelled after {len(blocks)} blocks")
        self.blocks = blocks


class TypeNotFound(Exception):
    def __init__(self, name: str):
        super().__init__(f"type not found: {name}")
        self.name = name


class DiagnosticLog:
    """Append-only, de-duplicated diagnostic collection shared by one session.

    Safe to use from resolver worker threads.
    """

    def __init__(self):
        self._items: list[Diagnostic] = []
        self._seen: set[Diagnostic] = set()
        self._lock = threading.Lock()

    def add(self, diagnostic: Diagnostic) -> None:
        with self._lock:
            if diagnostic in self._seen:
                return
            self._seen.add(diagnostic)
            self._items.append(diagnostic)

    def report(self, err: ReconstructionError) -> None:
        self.add(err.to_diagnostic())

    def items(self) -> tuple[Diagnostic, ...]:
        with self._lock:
            return tuple(self._items)

    def codes(self) -> list[str]:
        return [d.code for d in self.items()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self.items())


# ===--- Data model ---=== #


class Access(enum.IntEnum):
    NONE = 0
    PRIVATE = 1
    PROTECTED = 2
    PUBLIC = 3

    @property
    def keyword(self) -> str:
        return "" if self is Access.NONE else self.name.lower()


class MethodProperty(enum.IntEnum):
    VANILLA = 0
    VIRTUAL = 1
    STATIC = 2
    FRIEND = 3
    INTRO_VIRTUAL = 4
    PURE_VIRTUAL = 5
    PURE_INTRO_VIRTUAL = 6

    @property
    def is_virtual(self) -> bool:
        return self in (
            MethodProperty.VIRTUAL,
            MethodProperty.INTRO_VIRTUAL,
            MethodProperty.PURE_VIRTUAL,
            MethodProperty.PURE_INTRO_VIRTUAL,
        )

    @property
    def is_pure(self) -> bool:
        return self in (MethodProperty.PURE_VIRTUAL, MethodProperty.PURE_INTRO_VIRTUAL)

    @property
    def is_intro(self) -> bool:
        return self in (MethodProperty.INTRO_VIRTUAL, MethodProperty.PURE_INTRO_VIRTUAL)


class AggregateKind(enum.Enum):
    CLASS = "class"
    STRUCT = "struct"
    UNION = "union"
    INTERFACE = "interface"


AGGREGATE_LEAVES = {
    LF_CLASS: AggregateKind.CLASS,
    LF_STRUCTURE: AggregateKind.STRUCT,
    LF_INTERFACE: AggregateKind.INTERFACE,
    LF_UNION: AggregateKind.UNION,
}


def split_attributes(raw: int) -> tuple[Access, MethodProperty]:
    access = Access(raw & 0x3)
    prop_bits = (raw >> 2) & 0x7
    prop = MethodProperty(prop_bits) if prop_bits <= 6 else MethodProperty.VANILLA
    return access, prop


def is_unnamed_type(name: str) -> bool:
    return not name or any(marker in name for marker in UNNAMED_MARKERS)


@dataclass(frozen=True)
class RawRecord:
    type_id: int
    kind: int
    payload: bytes


@dataclass(frozen=True)
class Primitive:
    kind: int
    size: int
    indirection: int = 0

    @property
    def info(self) -> PrimitiveKindInfo:
        return PRIMITIVE_KINDS[self.kind]


@dataclass(frozen=True)
class Pointer:
    target: int
    width: int
    is_const: bool = False
    is_volatile: bool = False
    mode: int = PTR_MODE_POINTER
    containing_class: int = 0

    @property
    def is_reference(self) -> bool:
        return self.mode == PTR_MODE_LVALUE_REF

    @property
    def is_rvalue_reference(self) -> bool:
        return self.mode == PTR_MODE_RVALUE_REF

    @property
    def is_member_pointer(self) -> bool:
        return self.mode in (PTR_MODE_DATA_MEMBER, PTR_MODE_METHOD)


@dataclass(frozen=True)
class Modifier:
    base: int
    const: bool = False
    volatile: bool = False
    unaligned: bool = False


@dataclass(frozen=True)
class Array:
    element: int
    size: int
    index_type: int = 0
    name: str = ""


@dataclass(frozen=True)
class Bitfield:
    base: int
    width: int
    position: int


@dataclass(frozen=True)
class Procedure:
    return_type: int
    arg_list: int
    calling_convention: int = 0
    attributes: int = 0
    param_count: int = 0


@dataclass(frozen=True)
class MemberFunction:
    return_type: int
    class_type: int
    this_type: int
    arg_list: int
    calling_convention: int = 0
    attributes: int = 0
    param_count: int = 0
    this_adjust: int = 0

    @property
    def is_constructor(self) -> bool:
        return bool(self.attributes & (FUNC_CTOR | FUNC_CTOR_VBASE))


@dataclass(frozen=True)
class ArgList:
    args: tuple[int, ...]


@dataclass(frozen=True)
class VtShape:
    descriptors: tuple[int, ...]


@dataclass(frozen=True)
class UnknownRecord:
    kind: int
    payload: bytes


@dataclass(frozen=True)
class Member:
    name: str
    type: int
    access: Access = Access.PUBLIC
    offset: int | None = None


@dataclass(frozen=True)
class StaticMember:
    name: str
    type: int
    access: Access = Access.PUBLIC


@dataclass(frozen=True)
class BaseClass:
    type: int
    offset: int | None
    access: Access = Access.PUBLIC


@dataclass(frozen=True)
class VirtualBaseClass:
    type: int
    vbptr_type: int
    vbptr_offset: int
    vbtable_index: int
    access: Access = Access.PUBLIC
    is_indirect: bool = False


@dataclass(frozen=True)
class VFuncTab:
    type: int


@dataclass(frozen=True)
class OneMethod:
    name: str
    type: int
    access: Access
    prop: MethodProperty
    attributes: int = 0
    vtable_offset: int | None = None


@dataclass(frozen=True)
class OverloadedMethod:
    name: str
    count: int
    method_list: int


@dataclass(frozen=True)
class NestedType:
    name: str
    type: int


@dataclass(frozen=True)
class Enumerator:
    name: str
    value: int
    access: Access = Access.PUBLIC


@dataclass(frozen=True)
class ListContinuation:
    type: int


@dataclass(frozen=True)
class FieldList:
    entries: tuple[object, ...]


@dataclass(frozen=True)
class MethodListEntry:
    type: int
    access: Access
    prop: MethodProperty
    attributes: int = 0
    vtable_offset: int | None = None


@dataclass(frozen=True)
class MethodList:
    entries: tuple[MethodListEntry, ...]


@dataclass(frozen=True)
class Aggregate:
    kind: AggregateKind
    name: str
    size: int
    field_list: int = 0
    member_count: int = 0
    properties: int = 0
    derived_from: int = 0
    vshape: int = 0
    unique_name: str = ""

    @property
    def is_forward_ref(self) -> bool:
        return bool(self.properties & PROP_FWDREF)

    @property
    def is_packed(self) -> bool:
        return bool(self.properties & PROP_PACKED)

    @property
    def is_nested(self) -> bool:
        return bool(self.properties & PROP_NESTED)

    @property
    def is_anonymous(self) -> bool:
        return is_unnamed_type(self.name)

    @property
    def is_union(self) -> bool:
        return self.kind is AggregateKind.UNION


@dataclass(frozen=True)
class Enum:
    name: str
    underlying_type: int
    field_list: int = 0
    member_count: int = 0
    properties: int = 0
    unique_name: str = ""

    @property
    def is_forward_ref(self) -> bool:
        return bool(self.properties & PROP_FWDREF)

    @property
    def is_anonymous(self) -> bool:
        return is_unnamed_type(self.name)


NAMED_NODES = (Aggregate, Enum)


# ===--- Primitive types ---=== #


class PrimitiveFlavor(enum.Enum):
    PORTABLE = "portable"
    RAW = "raw"
    MICROSOFT = "microsoft"


def decode_primitive(type_id: int) -> Primitive:
    kind = type_id & 0xFF
    mode = (type_id >> 8) & 0xF
    info = PRIMITIVE_KINDS.get(kind)
    if info is None or type_id >= FIRST_NON_PRIMITIVE:
        raise UnresolvedReference(f"unknown primitive type {type_id:#06x}", type_id)
    if mode:
        if mode not in PRIMITIVE_POINTER_SIZES:
            raise UnresolvedReference(
                f"unknown primitive indirection mode {mode} in {type_id:#06x}", type_id
            )
        return Primitive(kind, PRIMITIVE_POINTER_SIZES[mode], mode)
    return Primitive(kind, info.size)


def primitive_spelling(primitive: Primitive, flavor: PrimitiveFlavor) -> str:
    info = primitive.info
    spelling = getattr(info, flavor.value)
    if primitive.indirection:
        return spelling + "*"
    return spelling


# ===--- Record decoding ---=== #


class _Decoded(cs.Adapter):
    """Hands a parsed container to a factory that builds the graph node."""

    def __init__(self, subcon, factory):
        super().__init__(subcon)
        self.factory = factory

    def _decode(self, obj, context, path):
        return self.factory(obj)


class _UnknownLeaf(cs.Construct):
    def __init__(self, message: str):
        super().__init__()
        self.message = message

    def _parse(self, stream, context, path):
        raise cs.ExplicitError(f"{self.message} {context.leaf:#06x}")


NUMERIC_VALUES = {
    LF_CHAR: cs.Int8sl,
    LF_SHORT: cs.Int16sl,
    LF_USHORT: cs.Int16ul,
    LF_LONG: cs.Int32sl,
    LF_ULONG: cs.Int32ul,
    LF_QUADWORD: cs.Int64sl,
    LF_UQUADWORD: cs.Int64ul,
}

# Leaves below LF_NUMERIC are the value itself.
Numeric = _Decoded(
    cs.Struct(
        "leaf" / cs.Int16ul,
        "value" / cs.IfThenElse(
            cs.this.leaf < LF_NUMERIC,
            cs.Computed(cs.this.leaf),
            cs.Switch(
                cs.this.leaf,
                NUMERIC_VALUES,
                default=_UnknownLeaf("unsupported numeric leaf"),
            ),
        ),
    ),
    lambda c: c.value,
)

Name = _Decoded(
    cs.NullTerminated(cs.GreedyBytes),
    lambda raw: raw.decode("utf-8", errors="replace"),
)

# Construct reads bit fields most significant first.
PointerAttributes = cs.ByteSwapped(
    cs.BitStruct(
        cs.Padding(10),
        "is_rvalue_ref" / cs.Flag,
        "is_lvalue_ref" / cs.Flag,
        "is_mocom" / cs.Flag,
        "width" / cs.BitsInteger(6),
        "is_restrict" / cs.Flag,
        "is_unaligned" / cs.Flag,
        "is_const" / cs.Flag,
        "is_volatile" / cs.Flag,
        "is_flat32" / cs.Flag,
        "mode" / cs.BitsInteger(3),
        "kind" / cs.BitsInteger(5),
    )
)

ModifierAttributes = cs.ByteSwapped(
    cs.BitStruct(
        cs.Padding(13),
        "unaligned" / cs.Flag,
        "volatile" / cs.Flag,
        "const" / cs.Flag,
    )
)

PadAlign = cs.If(
    lambda ctx: ctx._pad is not None and ctx._pad > LF_PAD0,
    cs.Padding(lambda ctx: ctx._pad & 0x0F),
)


def _is_intro(ctx) -> bool:
    return split_attributes(ctx.attributes)[1].is_intro


def _unique_name(ctx) -> bool:
    return bool(ctx.properties & PROP_HAS_UNIQUE_NAME)


def _pointer_width(kind: int, size_field: int) -> int:
    if size_field:
        return size_field
    if kind == PTR_KIND_64:
        return 8
    if kind in (PTR_KIND_NEAR32, PTR_KIND_FAR32):
        return 4
    if kind <= 0x02:
        return 2
    return 4


def _pointer(c) -> Pointer:
    attrs = c.attributes
    return Pointer(
        target=c.target,
        width=_pointer_width(attrs.kind, attrs.width),
        is_const=attrs.is_const,
        is_volatile=attrs.is_volatile,
        mode=attrs.mode,
        containing_class=c.containing_class or 0,
    )


def _vtshape(c) -> VtShape:
    descriptors = []
    for i in range(c.count):
        byte = c.nibbles[i // 2]
        descriptors.append(byte >> 4 & 0x0F if i % 2 else byte & 0x0F)
    return VtShape(tuple(descriptors))


def _class_layout(kind: AggregateKind):
    return _Decoded(
        cs.Struct(
            "member_count" / cs.Int16ul,
            "properties" / cs.Int16ul,
            "field_list" / cs.Int32ul,
            "derived_from" / cs.Int32ul,
            "vshape" / cs.Int32ul,
            "size" / Numeric,
            "name" / Name,
            "unique_name" / cs.If(_unique_name, cs.Optional(Name)),
        ),
        lambda c: Aggregate(
            kind=kind,
            name=c.name,
            size=c.size,
            field_list=c.field_list,
            member_count=c.member_count,
            properties=c.properties,
            derived_from=c.derived_from,
            vshape=c.vshape,
            unique_name=c.unique_name or "",
        ),
    )


UnionRecord = _Decoded(
    cs.Struct(
        "member_count" / cs.Int16ul,
        "properties" / cs.Int16ul,
        "field_list" / cs.Int32ul,
        "size" / Numeric,
        "name" / Name,
        "unique_name" / cs.If(_unique_name, cs.Optional(Name)),
    ),
    lambda c: Aggregate(
        kind=AggregateKind.UNION,
        name=c.name,
        size=c.size,
        field_list=c.field_list,
        member_count=c.member_count,
        properties=c.properties,
        unique_name=c.unique_name or "",
    ),
)

EnumRecord = _Decoded(
    cs.Struct(
        "member_count" / cs.Int16ul,
        "properties" / cs.Int16ul,
        "underlying_type" / cs.Int32ul,
        "field_list" / cs.Int32ul,
        "name" / Name,
        "unique_name" / cs.If(_unique_name, cs.Optional(Name)),
    ),
    lambda c: Enum(
        c.name, c.underlying_type, c.field_list, c.member_count, c.properties,
        c.unique_name or "",
    ),
)

MethodListEntryRecord = _Decoded(
    cs.Struct(
        "attributes" / cs.Int16ul,
        cs.Padding(2),
        "method_type" / cs.Int32ul,
        "vtable_offset" / cs.If(_is_intro, cs.Int32ul),
    ),
    lambda c: MethodListEntry(
        c.method_type, *split_attributes(c.attributes), c.attributes, c.vtable_offset
    ),
)


def _virtual_base(indirect: bool):
    return _Decoded(
        cs.Struct(
            "attributes" / cs.Int16ul,
            "base_type" / cs.Int32ul,
            "vbptr_type" / cs.Int32ul,
            "vbptr_offset" / Numeric,
            "vbtable_index" / Numeric,
        ),
        lambda c: VirtualBaseClass(
            c.base_type, c.vbptr_type, c.vbptr_offset, c.vbtable_index,
            split_attributes(c.attributes)[0], is_indirect=indirect,
        ),
    )


FIELD_ENTRIES = {
    LF_MEMBER: _Decoded(
        cs.Struct(
            "attributes" / cs.Int16ul,
            "member_type" / cs.Int32ul,
            "offset" / Numeric,
            "name" / Name,
        ),
        lambda c: Member(
            c.name, c.member_type, split_attributes(c.attributes)[0], c.offset
        ),
    ),
    LF_STMEMBER: _Decoded(
        cs.Struct(
            "attributes" / cs.Int16ul,
            "member_type" / cs.Int32ul,
            "name" / Name,
        ),
        lambda c: StaticMember(c.name, c.member_type, split_attributes(c.attributes)[0]),
    ),
    LF_BCLASS: _Decoded(
        cs.Struct(
            "attributes" / cs.Int16ul,
            "base_type" / cs.Int32ul,
            "offset" / Numeric,
        ),
        lambda c: BaseClass(c.base_type, c.offset, split_attributes(c.attributes)[0]),
    ),
    LF_VBCLASS: _virtual_base(indirect=False),
    LF_IVBCLASS: _virtual_base(indirect=True),
    LF_VFUNCTAB: _Decoded(
        cs.Struct(cs.Padding(2), "table_type" / cs.Int32ul),
        lambda c: VFuncTab(c.table_type),
    ),
    LF_INDEX: _Decoded(
        cs.Struct(cs.Padding(2), "next_list" / cs.Int32ul),
        lambda c: ListContinuation(c.next_list),
    ),
    LF_ENUMERATE: _Decoded(
        cs.Struct(
            "attributes" / cs.Int16ul,
            "value" / Numeric,
            "name" / Name,
        ),
        lambda c: Enumerator(c.name, c.value, split_attributes(c.attributes)[0]),
    ),
    LF_ONEMETHOD: _Decoded(
        cs.Struct(
            "attributes" / cs.Int16ul,
            "method_type" / cs.Int32ul,
            "vtable_offset" / cs.If(_is_intro, cs.Int32ul),
            "name" / Name,
        ),
        lambda c: OneMethod(
            c.name, c.method_type, *split_attributes(c.attributes), c.attributes,
            c.vtable_offset,
        ),
    ),
    LF_METHOD: _Decoded(
        cs.Struct(
            "overloads" / cs.Int16ul,
            "method_list" / cs.Int32ul,
            "name" / Name,
        ),
        lambda c: OverloadedMethod(c.name, c.overloads, c.method_list),
    ),
    LF_NESTTYPE: _Decoded(
        cs.Struct(cs.Padding(2), "nested_type" / cs.Int32ul, "name" / Name),
        lambda c: NestedType(c.name, c.nested_type),
    ),
}

FieldEntry = cs.Struct(
    "leaf" / cs.Int16ul,
    "entry" / cs.Switch(
        cs.this.leaf, FIELD_ENTRIES, default=_UnknownLeaf("unknown field list leaf")
    ),
    "_pad" / cs.Peek(cs.Int8ul),
    PadAlign,
)

RECORD_LAYOUTS = {
    LF_MODIFIER: _Decoded(
        cs.Struct("base" / cs.Int32ul, "attributes" / ModifierAttributes),
        lambda c: Modifier(
            c.base, c.attributes.const, c.attributes.volatile, c.attributes.unaligned
        ),
    ),
    LF_POINTER: _Decoded(
        cs.Struct(
            "target" / cs.Int32ul,
            "attributes" / PointerAttributes,
            "containing_class" / cs.If(
                lambda ctx: ctx.attributes.mode in (PTR_MODE_DATA_MEMBER, PTR_MODE_METHOD),
                cs.Optional(cs.Int32ul),
            ),
        ),
        _pointer,
    ),
    LF_PROCEDURE: _Decoded(
        cs.Struct(
            "return_type" / cs.Int32ul,
            "calling_convention" / cs.Int8ul,
            "attributes" / cs.Int8ul,
            "param_count" / cs.Int16ul,
            "arg_list" / cs.Int32ul,
        ),
        lambda c: Procedure(
            c.return_type, c.arg_list, c.calling_convention, c.attributes, c.param_count
        ),
    ),
    LF_MFUNCTION: _Decoded(
        cs.Struct(
            "return_type" / cs.Int32ul,
            "class_type" / cs.Int32ul,
            "this_type" / cs.Int32ul,
            "calling_convention" / cs.Int8ul,
            "attributes" / cs.Int8ul,
            "param_count" / cs.Int16ul,
            "arg_list" / cs.Int32ul,
            "this_adjust" / cs.Int32sl,
        ),
        lambda c: MemberFunction(
            return_type=c.return_type,
            class_type=c.class_type,
            this_type=c.this_type,
            arg_list=c.arg_list,
            calling_convention=c.calling_convention,
            attributes=c.attributes,
            param_count=c.param_count,
            this_adjust=c.this_adjust,
        ),
    ),
    LF_ARGLIST: _Decoded(
        cs.Struct(
            "count" / cs.Int32ul,
            "args" / cs.Array(cs.this.count, cs.Int32ul),
        ),
        lambda c: ArgList(tuple(c.args)),
    ),
    LF_FIELDLIST: _Decoded(
        cs.Struct("entries" / cs.GreedyRange(FieldEntry), cs.Terminated),
        lambda c: FieldList(tuple(e.entry for e in c.entries)),
    ),
    LF_BITFIELD: _Decoded(
        cs.Struct(
            "base" / cs.Int32ul,
            "width" / cs.Int8ul,
            "position" / cs.Int8ul,
        ),
        lambda c: Bitfield(c.base, c.width, c.position),
    ),
    LF_METHODLIST: _Decoded(
        cs.GreedyRange(MethodListEntryRecord),
        lambda entries: MethodList(tuple(entries)),
    ),
    LF_ARRAY: _Decoded(
        cs.Struct(
            "element" / cs.Int32ul,
            "index_type" / cs.Int32ul,
            "size" / Numeric,
            "name" / cs.Optional(Name),
        ),
        lambda c: Array(c.element, c.size, c.index_type, c.name or ""),
    ),
    LF_UNION: UnionRecord,
    LF_ENUM: EnumRecord,
    LF_VTSHAPE: _Decoded(
        cs.Struct(
            "count" / cs.Int16ul,
            "nibbles" / cs.Bytes((cs.this.count + 1) // 2),
        ),
        _vtshape,
    ),
}
RECORD_LAYOUTS.update(
    (leaf, _class_layout(kind))
    for leaf, kind in AGGREGATE_LEAVES.items()
    if kind is not AggregateKind.UNION
)


def decode_record(raw: RawRecord) -> object:
    """Decode one raw record; raises MalformedRecord on bad payloads."""
    layout = RECORD_LAYOUTS.get(raw.kind)
    if layout is None:
        return UnknownRecord(raw.kind, raw.payload)
    try:
        return layout.parse(raw.payload)
    except cs.ConstructError as err:
        lines = str(err).strip().splitlines() or [type(err).__name__]
        raise MalformedRecord(
            f"record does not decode: {lines[-1]}", raw.type_id
        ) from err


RecordPrefix = cs.Struct("length" / cs.Int16ul, "kind" / cs.Int16ul)

TpiHeader = cs.Struct(
    "version" / cs.Int32ul,
    "header_size" / cs.Int32ul,
    "type_index_begin" / cs.Int32ul,
    "type_index_end" / cs.Int32ul,
    "type_record_bytes" / cs.Int32ul,
)


def iter_raw_records(
    data: bytes,
    first_type_id: int = FIRST_NON_PRIMITIVE,
    diagnostics: DiagnosticLog | None = None,
) -> Iterator[RawRecord]:
    """Split a record byte sequence into RawRecords, numbering them in order.

    A truncated tail is reported as MALFORMED_RECORD and ends the iteration;
    every record before it is still yielded.
    """
    pos = 0
    type_id = first_type_id
    while pos < len(data):
        if len(data) - pos < RecordPrefix.sizeof():
            _report_tail(diagnostics, type_id, f"{len(data) - pos} trailing bytes")
            return
        prefix = RecordPrefix.parse(data[pos : pos + RecordPrefix.sizeof()])
        if prefix.length < 2 or pos + 2 + prefix.length > len(data):
            _report_tail(
                diagnostics, type_id, f"record length {prefix.length} overruns stream"
            )
            return
        yield RawRecord(type_id, prefix.kind, bytes(data[pos + 4 : pos + 2 + prefix.length]))
        pos += 2 + prefix.length
        type_id += 1


def _report_tail(diagnostics: DiagnosticLog | None, type_id: int, detail: str) -> None:
    if diagnostics is not None:
        diagnostics.report(MalformedRecord(f"truncated record stream: {detail}", type_id))


class TpiStream(NamedTuple):
    first_type_id: int
    end_type_id: int | None
    record_bytes: bytes


def read_tpi_stream(data: bytes) -> TpiStream:
    """Strip a TPI stream header if present.

    Bare record sequences (no recognised header) are returned as-is with the
    conventional first type index.
    """
    if len(data) >= TPI_HEADER_SIZE:
        header = TpiHeader.parse(data)
        if header.version in TPI_VERSIONS and header.header_size == TPI_HEADER_SIZE:
            body = data[TPI_HEADER_SIZE : TPI_HEADER_SIZE + header.type_record_bytes]
            return TpiStream(header.type_index_begin, header.type_index_end, bytes(body))
    return TpiStream(FIRST_NON_PRIMITIVE, None, bytes(data))


# ===--- Type record store ---=== #


class TypeStore:
    """Immutable TypeId -> node table for one reconstruction session.

    Primitive indices (below 0x1000) are decoded on demand. Forward-declared
    aggregates and enums forward to the complete record of the same name.
    """

    def __init__(
        self,
        nodes: dict[int, object],
        order: Iterable[int],
        forwarders: dict[int, int] | None = None,
    ):
        self._nodes = dict(nodes)
        self._order = tuple(order)
        self._forwarders = dict(forwarders or {})
        # Enums and aggregates may share a name, as in C.
        self._by_name: dict[tuple[type, str], int] = {}
        for type_id in self._order:
            node = self._nodes.get(type_id)
            if isinstance(node, NAMED_NODES) and not node.is_forward_ref:
                if not node.is_anonymous:
                    self._by_name.setdefault((_name_space(node), node.name), type_id)

    def get(self, type_id: int) -> object:
        if type_id < FIRST_NON_PRIMITIVE:
            return decode_primitive(type_id)
        node = self._nodes.get(type_id)
        if node is None:
            raise UnresolvedReference(f"type {type_id:#06x} is not defined", type_id)
        return node

    def contains(self, type_id: int) -> bool:
        if type_id < FIRST_NON_PRIMITIVE:
            return (type_id & 0xFF) in PRIMITIVE_KINDS
        return type_id in self._nodes

    def all_ids(self) -> tuple[int, ...]:
        return self._order

    def complete_index(self, type_id: int) -> int:
        return self._forwarders.get(type_id, type_id)

    def resolve(self, type_id: int) -> tuple[int, object]:
        complete = self.complete_index(type_id)
        return complete, self.get(complete)

    def find_by_name(self, name: str, kind: type | None = None) -> int | None:
        """Complete type named `name`; aggregates win unless `kind` is given."""
        spaces = (kind,) if kind is not None else (Aggregate, Enum)
        for space in spaces:
            type_id = self._by_name.get((space, name))
            if type_id is not None:
                return type_id
        return None

    def complete_types(self) -> list[tuple[str, int]]:
        return [(name, type_id) for (_, name), type_id in self._by_name.items()]

    def field_entries(self, field_list: int) -> tuple[object, ...]:
        """Entries of a field list, following LF_INDEX continuations."""
        if not field_list:
            return ()
        entries: list[object] = []
        seen = set()
        current = field_list
        while current and current not in seen:
            seen.add(current)
            node = self.get(current)
            if not isinstance(node, FieldList):
                raise MalformedRecord(
                    f"expected a field list at {current:#06x}, got {type(node).__name__}",
                    current,
                )
            current = 0
            for entry in node.entries:
                if isinstance(entry, ListContinuation):
                    current = entry.type
                else:
                    entries.append(entry)
        return tuple(entries)


def display_name(node: object, type_id: int) -> str:
    name = getattr(node, "name", "")
    if is_unnamed_type(name):
        return f"_unnamed_{type_id:#06x}"
    return name


def build_type_store(
    records: Iterable[RawRecord], diagnostics: DiagnosticLog | None = None
) -> TypeStore:
    """Decode every record exactly once and index the results.

    Malformed records are skipped with a diagnostic; their ids stay unbound so
    references to them surface as UNRESOLVED_REFERENCE later.
    """
    log = diagnostics if diagnostics is not None else DiagnosticLog()
    nodes: dict[int, object] = {}
    order: list[int] = []
    for raw in records:
        order.append(raw.type_id)
        try:
            node = decode_record(raw)
        except MalformedRecord as err:
            log.report(err)
            continue
        nodes[raw.type_id] = node

    complete: dict[tuple[type, str], int] = {}
    for type_id in order:
        node = nodes.get(type_id)
        if isinstance(node, NAMED_NODES) and not node.is_forward_ref:
            for key in (node.unique_name, node.name):
                if key and (key == node.unique_name or not is_unnamed_type(key)):
                    complete.setdefault((_name_space(node), key), type_id)

    forwarders: dict[int, int] = {}
    for type_id in order:
        node = nodes.get(type_id)
        if isinstance(node, NAMED_NODES) and node.is_forward_ref:
            for key in (node.unique_name, node.name):
                target = complete.get((_name_space(node), key)) if key else None
                if target is not None:
                    forwarders[type_id] = target
                    break
    return TypeStore(nodes, order, forwarders)


def _name_space(node: object) -> type:
    return Enum if isinstance(node, Enum) else Aggregate


def load_type_store(
    data: bytes, diagnostics: DiagnosticLog | None = None
) -> TypeStore:
    stream = read_tpi_stream(data)
    return build_type_store(
        iter_raw_records(stream.record_bytes, stream.first_type_id, diagnostics),
        diagnostics,
    )


# ===--- CLI config contracts ---=== #


class BitfieldPolicy(enum.Enum):
    MSVC = "msvc"
    SYSV = "sysv"


@dataclass(frozen=True)
class ReconstructConfig:
    emit_offset_comments: bool = True
    include_static_members: bool = True
    nested_depth_limit: int = 64
    print_access_specifiers: bool = True
    primitive_flavor: PrimitiveFlavor = PrimitiveFlavor.PORTABLE
    bitfield_policy: BitfieldPolicy = BitfieldPolicy.MSVC
    pointer_width: int = 8
    integers_as_hexadecimal: bool = False
    jobs: int = 1
    print_header: bool = False


@dataclass(frozen=True)
class DumpConfig:
    tpi: Path
    type_name: str | None
    with_dependencies: bool
    diff_from: Path | None
    output: Path | None
    recon: ReconstructConfig


@dataclass(frozen=True)
class ListConfig:
    tpi: Path
    filter_text: str
    case_insensitive: bool
    use_regex: bool
    ignore_std: bool
    output: Path | None


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "INVALID_DEPTH_LIMIT",
    "INVALID_JOBS",
    "INVALID_REGEX",
    "CONFLICT_MODES",
    "FILTER_FLAGS_WITHOUT_LIST",
    "DEPS_WITHOUT_TYPE",
    "DIFF_WITHOUT_TYPE",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/stream",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reconstruct C/C++ declarations from a PDB type-record stream"
    )

    parser.add_argument("--tpi", type=Path, default=None)

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--type", dest="type_name", type=str, default=None)
    mode_group.add_argument("--list", dest="list_filter", nargs="?", const="", default=None)

    parser.add_argument("--deps", action="store_true", default=False)
    parser.add_argument("--diff-from", type=Path, default=None)

    parser.add_argument("-i", "--case-insensitive", action="store_true", default=False)
    parser.add_argument("-r", "--regex", action="store_true", default=False)
    parser.add_argument("--ignore-std", action="store_true", default=False)

    parser.add_argument(
        "--flavor",
        choices=[f.value for f in PrimitiveFlavor],
        default=PrimitiveFlavor.PORTABLE.value,
    )
    parser.add_argument(
        "--bitfield-policy",
        choices=[p.value for p in BitfieldPolicy],
        default=BitfieldPolicy.MSVC.value,
    )
    parser.add_argument("--pointer-width", type=int, choices=[4, 8], default=8)
    parser.add_argument("--depth-limit", type=int, default=64)
    parser.add_argument("--no-offsets", action="store_true", default=False)
    parser.add_argument("--no-statics", action="store_true", default=False)
    parser.add_argument("--no-access", action="store_true", default=False)
    parser.add_argument("--hex", action="store_true", default=False)
    parser.add_argument("--jobs", type=int, default=1)
    parser.add_argument("--header", action="store_true", default=False)
    parser.add_argument("--output", type=Path, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> DumpConfig | ListConfig:
    is_list = args.list_filter is not None

    if not is_list and (args.case_insensitive or args.regex or args.ignore_std):
        raise ConfigError(
            "FILTER_FLAGS_WITHOUT_LIST",
            "-i/--case-insensitive, -r/--regex and --ignore-std require --list.",
            "Add --list [FILTER] or remove the filter flags.",
        )

    if is_list and (args.diff_from is not None or args.deps):
        raise ConfigError(
            "CONFLICT_MODES",
            "--list cannot be combined with --diff-from or --deps.",
            "Choose either list mode or dump mode.",
        )

    tpi = validate_path_exists(
        args.tpi,
        "--tpi",
        "Extract the TPI stream (stream 2) of the PDB and pass it: --tpi app.tpi",
    )

    if is_list:
        if args.regex:
            try:
                re.compile(args.list_filter)
            except re.error as err:
                raise ConfigError(
                    "INVALID_REGEX",
                    f"Invalid --list pattern {args.list_filter!r}: {err}",
                    "Escape special characters or drop -r/--regex.",
                ) from err
        return ListConfig(
            tpi=tpi,
            filter_text=args.list_filter,
            case_insensitive=bool(args.case_insensitive),
            use_regex=bool(args.regex),
            ignore_std=bool(args.ignore_std),
            output=args.output,
        )

    if args.deps and args.type_name is None:
        raise ConfigError(
            "DEPS_WITHOUT_TYPE",
            "--deps requires --type.",
            "Pass --type NAME to reconstruct one type with its dependencies.",
        )

    diff_from = None
    if args.diff_from is not None:
        if args.type_name is None:
            raise ConfigError(
                "DIFF_WITHOUT_TYPE",
                "--diff-from requires --type.",
                "Pass --type NAME to choose the type to compare.",
            )
        diff_from = validate_path_exists(args.diff_from, "--diff-from")

    if args.depth_limit < 1:
        raise ConfigError(
            "INVALID_DEPTH_LIMIT",
            f"--depth-limit must be at least 1, got {args.depth_limit}.",
            "Use the default of 64 unless the input is pathological.",
        )

    if args.jobs < 1:
        raise ConfigError(
            "INVALID_JOBS",
            f"--jobs must be at least 1, got {args.jobs}.",
            "Pass --jobs 1 for serial resolution.",
        )

    recon = ReconstructConfig(
        emit_offset_comments=not args.no_offsets,
        include_static_members=not args.no_statics,
        nested_depth_limit=args.depth_limit,
        print_access_specifiers=not args.no_access,
        primitive_flavor=PrimitiveFlavor(args.flavor),
        bitfield_policy=BitfieldPolicy(args.bitfield_policy),
        pointer_width=args.pointer_width,
        integers_as_hexadecimal=bool(args.hex),
        jobs=args.jobs,
        print_header=bool(args.header),
    )
    return DumpConfig(
        tpi=tpi,
        type_name=args.type_name,
        with_dependencies=bool(args.deps),
        diff_from=diff_from,
        output=args.output,
        recon=recon,
    )


def build_config(argv: list[str] | None = None) -> DumpConfig | ListConfig:
    return validate_config(parse_args(argv))


# ===--- Layout resolution ---=== #


def align_up(value: int, alignment: int) -> int:
    if alignment <= 1:
        return value
    return (value + alignment - 1) // alignment * alignment


def natural_alignment(size: int) -> int:
    alignment = 1
    while alignment * 2 <= size and alignment < 16:
        alignment *= 2
    return alignment


@dataclass(frozen=True)
class MemberLayout:
    """Resolved placement of one instance member, offsets absolute to the owner.

    Inline anonymous aggregates carry their own resolved members in
    ``children`` and the aggregate kind in ``aggregate_kind``. Aggregates
    rebuilt from overlapping members of a flattened field list have
    ``type_id`` 0 and cover ``entry_count`` field list members.
    """

    name: str
    type_id: int
    access: Access
    offset: int
    size: int
    bit_offset: int | None = None
    bit_width: int | None = None
    unit_size: int | None = None
    aggregate_kind: AggregateKind | None = None
    children: tuple["MemberLayout", ...] = ()
    truncated: bool = False
    entry_count: int = 1

    @property
    def is_bitfield(self) -> bool:
        return self.bit_width is not None

    @property
    def is_inline_aggregate(self) -> bool:
        return self.aggregate_kind is not None


@dataclass(frozen=True)
class BaseLayout:
    type_id: int
    offset: int
    size: int
    access: Access
    is_virtual: bool = False


@dataclass(frozen=True)
class AggregateLayout:
    type_id: int
    kind: AggregateKind
    size: int
    alignment: int
    bases: tuple[BaseLayout, ...]
    members: tuple[MemberLayout, ...]
    vfptr_offset: int | None = None
    vbptr_offset: int | None = None
    vtable_present: bool = False
    vbptr_present: bool = False


def _shift(member: MemberLayout, delta: int) -> MemberLayout:
    if not delta:
        return member
    return replace(
        member,
        offset=member.offset + delta,
        children=tuple(_shift(child, delta) for child in member.children),
    )


def _bit_span(member: MemberLayout) -> tuple[int, int]:
    if member.is_bitfield:
        start = member.offset * 8 + (member.bit_offset or 0)
        return start, start + member.bit_width
    return member.offset * 8, (member.offset + member.size) * 8


def _split_alternatives(
    members: list[MemberLayout], low: int
) -> list[list[MemberLayout]]:
    """Union alternatives: a new one begins at each member starting at bit ``low``."""
    alternatives: list[list[MemberLayout]] = []
    for member in members:
        if not alternatives or _bit_span(member)[0] == low:
            alternatives.append([member])
        else:
            alternatives[-1].append(member)
    return alternatives


def _synthesized(kind: AggregateKind, children: list[MemberLayout]) -> MemberLayout:
    offset = min(child.offset for child in children)
    end = max(child.offset + child.size for child in children)
    return MemberLayout(
        "", 0, children[0].access, offset, end - offset,
        aggregate_kind=kind,
        children=tuple(children),
        entry_count=sum(child.entry_count for child in children),
    )


class _BitfieldPacker:
    """Storage-unit state for a run of consecutive bitfields."""

    def __init__(self, policy: BitfieldPolicy):
        self.policy = policy
        self.unit_offset: int | None = None
        self.unit_size = 0
        self.next_bit = 0
        self.bit_cursor: int | None = None

    @property
    def is_open(self) -> bool:
        if self.policy is BitfieldPolicy.SYSV:
            return self.bit_cursor is not None
        return self.unit_offset is not None

    def close(self) -> None:
        self.unit_offset = None
        self.unit_size = 0
        self.next_bit = 0
        self.bit_cursor = None

    def zero_width(self, cursor: int, size: int, alignment: int) -> int:
        self.close()
        return align_up(cursor, alignment if size else 1)

    def place(
        self,
        cursor: int,
        size: int,
        alignment: int,
        width: int,
        position: int | None = None,
    ) -> tuple[int, int, int]:
        """Place a bitfield; returns (unit offset, bit offset, new cursor).

        ``position`` is the bit position recorded for the field, already
        checked to fit the unit. It is taken as is, so members of a flattened
        anonymous union may share bits of the open unit.
        """
        if self.policy is BitfieldPolicy.SYSV:
            return self._place_sysv(cursor, size, width)
        fits = self.unit_offset is not None and self.unit_size == size
        if fits and position is None:
            fits = self.next_bit + width <= size * 8
        if not fits:
            self.unit_offset = align_up(cursor, alignment)
            self.unit_size = size
            self.next_bit = 0
        bit_offset = self.next_bit if position is None else position
        self.next_bit = max(self.next_bit, bit_offset + width)
        return self.unit_offset, bit_offset, self.unit_offset + size

    def _place_sysv(self, cursor: int, size: int, width: int) -> tuple[int, int, int]:
        unit_bits = size * 8
        if self.bit_cursor is None:
            self.bit_cursor = cursor * 8
        unit_start = self.bit_cursor // unit_bits * unit_bits
        if self.bit_cursor + width > unit_start + unit_bits:
            unit_start += unit_bits
            self.bit_cursor = unit_start
        bit_offset = self.bit_cursor - unit_start
        self.bit_cursor += width
        return unit_start // 8, bit_offset, (self.bit_cursor + 7) // 8


class LayoutResolver:
    """Computes byte/bit placement of aggregate members.

    Layouts are memoized per TypeId in a compute-once cache: concurrent first
    writers compute identical results and the first stored value wins.
    """

    def __init__(
        self,
        store: TypeStore,
        config: ReconstructConfig | None = None,
        diagnostics: DiagnosticLog | None = None,
    ):
        self._store = store
        self._config = config or ReconstructConfig()
        self._diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self._layouts: dict[int, AggregateLayout] = {}
        self._lock = threading.Lock()
        self._local = threading.local()

    @property
    def store(self) -> TypeStore:
        return self._store

    @property
    def pointer_width(self) -> int:
        return self._config.pointer_width

    def _in_progress(self) -> set[int]:
        in_progress = getattr(self._local, "in_progress", None)
        if in_progress is None:
            in_progress = set()
            self._local.in_progress = in_progress
        return in_progress

    def layout(self, type_id: int) -> AggregateLayout:
        type_id = self._store.complete_index(type_id)
        cached = self._layouts.get(type_id)
        if cached is not None:
            return cached

        node = self._store.get(type_id)
        if not isinstance(node, Aggregate):
            raise MalformedRecord(
                f"type {type_id:#06x} is {type(node).__name__}, not an aggregate", type_id
            )
        in_progress = self._in_progress()
        if type_id in in_progress:
            raise MalformedRecord(
                f"aggregate {display_name(node, type_id)} contains itself by value",
                type_id,
            )
        if len(in_progress) >= self._config.nested_depth_limit:
            raise CyclicDefinitionDepthExceeded(
                f"by-value chain deeper than {self._config.nested_depth_limit} "
                f"at {display_name(node, type_id)}",
                type_id,
            )
        in_progress.add(type_id)
        try:
            computed = self._compute_layout(type_id, node)
        finally:
            in_progress.discard(type_id)

        with self._lock:
            return self._layouts.setdefault(type_id, computed)

    def size_of(self, type_id: int) -> int:
        try:
            return self._size_of(type_id)
        except ReconstructionError as err:
            self._diagnostics.report(err)
            return 0

    def _size_of(self, type_id: int) -> int:
        complete, node = self._store.resolve(type_id)
        if isinstance(node, Primitive):
            return node.size
        if isinstance(node, Pointer):
            return node.width
        if isinstance(node, (Modifier, Bitfield)):
            return self._size_of(node.base)
        if isinstance(node, Enum):
            return self._size_of(node.underlying_type)
        if isinstance(node, Array):
            return node.size
        if isinstance(node, Aggregate):
            if node.is_forward_ref:
                return node.size
            try:
                return self.layout(complete).size
            except CyclicDefinitionDepthExceeded as err:
                self._diagnostics.report(err)
                return node.size
        return 0

    def align_of(self, type_id: int) -> int:
        try:
            return self._align_of(type_id)
        except ReconstructionError as err:
            self._diagnostics.report(err)
            return 1

    def _align_of(self, type_id: int) -> int:
        complete, node = self._store.resolve(type_id)
        if isinstance(node, (Primitive, Pointer)):
            return natural_alignment(node.size if isinstance(node, Primitive) else node.width)
        if isinstance(node, (Modifier, Bitfield)):
            return self._align_of(node.base)
        if isinstance(node, Enum):
            return self._align_of(node.underlying_type)
        if isinstance(node, Array):
            return self._align_of(node.element)
        if isinstance(node, Aggregate):
            if node.is_forward_ref:
                return natural_alignment(node.size)
            try:
                return self.layout(complete).alignment
            except CyclicDefinitionDepthExceeded as err:
                self._diagnostics.report(err)
                return natural_alignment(node.size)
        return 1

    def array_dimensions(self, type_id: int) -> tuple[int, list[int]]:
        """Innermost element type and per-dimension counts, outermost first."""
        dims: list[int] = []
        current = type_id
        seen = set()
        while current not in seen:
            seen.add(current)
            try:
                node = self._store.get(self._store.complete_index(current))
            except UnresolvedReference as err:
                self._diagnostics.report(err)
                break
            if not isinstance(node, Array):
                break
            element_size = self.size_of(node.element)
            if element_size == 0:
                self._diagnostics.report(
                    MalformedRecord(
                        f"array element {node.element:#06x} has size 0, "
                        "dimensions may be incorrect",
                        current,
                    )
                )
                element_size = 1
            dims.append(node.size // element_size)
            current = node.element
        return current, dims

    def has_vtable(self, type_id: int) -> bool:
        try:
            return self.layout(type_id).vtable_present
        except ReconstructionError as err:
            self._diagnostics.report(err)
            return False

    def _entries(self, type_id: int, node: Aggregate) -> tuple[object, ...]:
        try:
            return self._store.field_entries(node.field_list)
        except ReconstructionError as err:
            self._diagnostics.report(
                type(err)(
                    f"field list of {display_name(node, type_id)}: {err.message}",
                    type_id,
                )
            )
            return ()

    def _declares_virtuals(self, entries: tuple[object, ...]) -> bool:
        for entry in entries:
            if isinstance(entry, VFuncTab):
                return True
            if isinstance(entry, OneMethod) and entry.prop.is_virtual:
                return True
            if isinstance(entry, OverloadedMethod):
                try:
                    method_list = self._store.get(entry.method_list)
                except UnresolvedReference as err:
                    self._diagnostics.report(err)
                    continue
                if isinstance(method_list, MethodList) and any(
                    m.prop.is_virtual for m in method_list.entries
                ):
                    return True
        return False

    def _resolved_bases(self, entries, kind) -> list[tuple[object, AggregateLayout]]:
        resolved = []
        for entry in entries:
            if not isinstance(entry, kind):
                continue
            try:
                resolved.append((entry, self.layout(entry.type)))
            except ReconstructionError as err:
                self._diagnostics.report(err)
        return resolved

    def _compute_layout(self, type_id: int, node: Aggregate) -> AggregateLayout:
        entries = self._entries(type_id, node)
        ptr = self._config.pointer_width
        pack = 1 if node.is_packed else None

        bases_in = self._resolved_bases(entries, BaseClass)
        vbases_in = self._resolved_bases(entries, VirtualBaseClass)
        inherited_vtable = any(base.vtable_present for _, base in bases_in)
        inherited_vbptr = any(base.vbptr_present for _, base in bases_in)
        declares_virtuals = self._declares_virtuals(entries)

        cursor = 0
        alignment = 1
        vfptr_offset = None
        if declares_virtuals and not inherited_vtable:
            vfptr_offset = 0
            cursor = ptr
            alignment = natural_alignment(ptr)

        bases: list[BaseLayout] = []
        for entry, base in bases_in:
            empty = self._is_empty(base)
            base_align = 1 if pack else base.alignment
            offset = align_up(cursor, base_align)
            if entry.offset is not None and entry.offset != offset:
                if entry.offset >= cursor or empty:
                    offset = entry.offset
                else:
                    self._report_overlap(
                        type_id, node, f"base {self._name(entry.type)}",
                        entry.offset, cursor,
                    )
            size = 0 if empty else base.size
            bases.append(BaseLayout(entry.type, offset, size, entry.access))
            cursor = max(cursor, offset + size)
            alignment = max(alignment, base_align)

        vbptr_offset = None
        if vbases_in and not inherited_vbptr:
            vbptr_offset = align_up(cursor, natural_alignment(ptr))
            cursor = vbptr_offset + ptr
            alignment = max(alignment, natural_alignment(ptr))

        members, end, member_align = self._place_members(
            type_id, node, entries, cursor, node.is_union, pack, depth=0, base=0
        )
        cursor = max(cursor, end)
        alignment = max(alignment, member_align)

        for entry, base in vbases_in:
            offset = align_up(cursor, base.alignment)
            bases.append(BaseLayout(entry.type, offset, base.size, entry.access, True))
            cursor = offset + base.size
            alignment = max(alignment, base.alignment)

        size = align_up(cursor, alignment) or 1
        if node.size > size:
            size = node.size
        elif node.size and node.size < size:
            self._diagnostics.report(
                SizeMismatch(
                    f"{display_name(node, type_id)} declares size {node.size:#x} "
                    f"but its members need {size:#x}",
                    type_id,
                )
            )

        return AggregateLayout(
            type_id=type_id,
            kind=node.kind,
            size=size,
            alignment=alignment,
            bases=tuple(bases),
            members=tuple(members),
            vfptr_offset=vfptr_offset,
            vbptr_offset=vbptr_offset,
            vtable_present=(
                declares_virtuals
                or inherited_vtable
                or any(base.vtable_present for _, base in vbases_in)
            ),
            vbptr_present=bool(vbases_in) or inherited_vbptr,
        )

    def _is_empty(self, layout: AggregateLayout) -> bool:
        return (
            not layout.members
            and not layout.vtable_present
            and not layout.vbptr_present
            and all(b.size == 0 for b in layout.bases)
        )

    def _name(self, type_id: int) -> str:
        try:
            complete, node = self._store.resolve(type_id)
        except UnresolvedReference:
            return f"_unresolved_{type_id:#06x}"
        return display_name(node, complete)

    def _report_overlap(
        self, type_id: int, node: Aggregate, what: str, declared: int, cursor: int
    ) -> None:
        self._diagnostics.report(
            LayoutOverlap(
                f"{display_name(node, type_id)}: {what} declared at {declared:#x} "
                f"overlaps the preceding member ending at {cursor:#x}",
                type_id,
            )
        )

    def _place_members(
        self,
        owner_id: int,
        owner: Aggregate,
        entries: tuple[object, ...],
        origin: int,
        is_union: bool,
        pack: int | None,
        depth: int,
        base: int | None = None,
    ) -> tuple[list[MemberLayout], int, int]:
        """Lay out instance members starting at ``origin``.

        Recorded member offsets are relative to ``base``, which defaults to
        ``origin``.

        Returns the member layouts, the end offset and the alignment
        requirement of the members placed.
        """
        placed: list[MemberLayout] = []
        cursor = origin
        end = origin
        alignment = 1
        packer = _BitfieldPacker(self._config.bitfield_policy)

        for entry in entries:
            if not isinstance(entry, Member):
                continue
            declared = None if entry.offset is None else (
                (origin if base is None else base) + entry.offset
            )

            try:
                member_id, node = self._store.resolve(entry.type)
            except UnresolvedReference as err:
                self._diagnostics.report(err)
                packer.close()
                offset = origin if is_union else cursor
                placed.append(MemberLayout(entry.name, entry.type, entry.access, offset, 0))
                continue

            if isinstance(node, Bitfield):
                layout, next_cursor = self._place_bitfield(
                    owner_id, owner, entry, node, packer,
                    origin if is_union else cursor, declared, is_union, pack,
                )
                placed.append(layout)
                if not is_union:
                    cursor = max(cursor, next_cursor)
                end = max(end, next_cursor)
                alignment = max(alignment, 1 if pack else self.align_of(node.base))
                continue

            packer.close()

            if isinstance(node, Aggregate) and node.is_anonymous and not node.is_forward_ref:
                layout, member_align = self._place_inline(
                    owner_id, owner, entry, member_id, node,
                    origin if is_union else cursor, declared, is_union, pack, depth,
                )
            else:
                size = self.size_of(entry.type)
                member_align = 1 if pack else self.align_of(entry.type)
                offset = origin if is_union else align_up(cursor, member_align)
                if declared is not None:
                    offset = declared
                layout = MemberLayout(entry.name, entry.type, entry.access, offset, size)

            placed.append(layout)
            alignment = max(alignment, member_align)
            end = max(end, layout.offset + layout.size)
            if not is_union:
                cursor = max(cursor, layout.offset + layout.size)

        if is_union:
            placed = self._union_alternatives(owner_id, owner, placed, origin)
        else:
            placed = self._rebuild_overlaps(owner_id, owner, placed)
        return placed, max(end, cursor), alignment

    # Flattened anonymous aggregates

    def _rebuild_overlaps(
        self, owner_id: int, owner: Aggregate, members: list[MemberLayout]
    ) -> list[MemberLayout]:
        """Fold runs of overlapping struct members back into anonymous unions.

        Field lists store anonymous unions flattened into their parent, so a
        union shows up as members whose recorded offsets overlap. Runs that do
        not start with an alternative at their lowest offset cannot be a union
        and stay flat with a LAYOUT_OVERLAP diagnostic.
        """
        runs: list[list[MemberLayout]] = []
        run_ends: list[int] = []
        for member in members:
            low, high = _bit_span(member)
            run = [member]
            while runs and run_ends[-1] > low:
                run = runs.pop() + run
                high = max(high, run_ends.pop())
            runs.append(run)
            run_ends.append(high)

        rebuilt: list[MemberLayout] = []
        for run in runs:
            if len(run) == 1:
                rebuilt.extend(run)
                continue
            union = self._rebuild_union(owner_id, owner, run)
            if union is None:
                rebuilt.extend(run)
            else:
                rebuilt.append(union)
        return rebuilt

    def _rebuild_union(
        self, owner_id: int, owner: Aggregate, run: list[MemberLayout]
    ) -> MemberLayout | None:
        low = min(_bit_span(m)[0] for m in run)
        alternatives = _split_alternatives(run, low)
        if len(alternatives) < 2 or _bit_span(run[0])[0] != low:
            self._report_flat_overlap(owner_id, owner, run)
            return None
        children = [
            self._alternative(owner_id, owner, alternative) for alternative in alternatives
        ]
        return _synthesized(AggregateKind.UNION, children)

    def _union_alternatives(
        self,
        owner_id: int,
        owner: Aggregate,
        members: list[MemberLayout],
        origin: int,
    ) -> list[MemberLayout]:
        """Fold union members placed past the origin into anonymous structs."""
        return [
            self._alternative(owner_id, owner, alternative)
            for alternative in _split_alternatives(members, origin * 8)
        ]

    def _alternative(
        self, owner_id: int, owner: Aggregate, members: list[MemberLayout]
    ) -> MemberLayout:
        if len(members) == 1:
            return members[0]
        children = self._rebuild_overlaps(owner_id, owner, members)
        return _synthesized(AggregateKind.STRUCT, children)

    def _report_flat_overlap(
        self, owner_id: int, owner: Aggregate, run: list[MemberLayout]
    ) -> None:
        high = _bit_span(run[0])[1]
        for member in run[1:]:
            low, end = _bit_span(member)
            if low < high:
                self._report_overlap(
                    owner_id, owner, f"member '{member.name or '<anonymous>'}'",
                    member.offset, (high + 7) // 8,
                )
                return
            high = max(high, end)

    def _place_inline(
        self,
        owner_id: int,
        owner: Aggregate,
        entry: Member,
        member_id: int,
        node: Aggregate,
        cursor: int,
        declared: int | None,
        is_union: bool,
        pack: int | None,
        depth: int,
    ) -> tuple[MemberLayout, int]:
        if depth + 1 > self._config.nested_depth_limit:
            self._diagnostics.report(
                CyclicDefinitionDepthExceeded(
                    f"anonymous {node.kind.value} nested deeper than "
                    f"{self._config.nested_depth_limit} levels in "
                    f"{display_name(owner, owner_id)}",
                    member_id,
                )
            )
            align = natural_alignment(node.size)
            offset = cursor if is_union else align_up(cursor, align)
            layout = MemberLayout(
                entry.name, member_id, entry.access, offset, node.size,
                aggregate_kind=node.kind, truncated=True,
            )
            return layout, align

        sub_entries = self._entries(member_id, node)
        sub_pack = 1 if (pack or node.is_packed) else None
        children, sub_end, sub_align = self._place_members(
            member_id, node, sub_entries, 0, node.is_union, sub_pack, depth + 1
        )
        size = max(align_up(sub_end, sub_align), node.size)
        start = cursor if is_union else align_up(cursor, sub_align)
        if declared is not None:
            start = declared
        layout = MemberLayout(
            entry.name, member_id, entry.access, start, size,
            aggregate_kind=node.kind,
            children=tuple(_shift(child, start) for child in children),
        )
        return layout, sub_align

    def _place_bitfield(
        self,
        owner_id: int,
        owner: Aggregate,
        entry: Member,
        node: Bitfield,
        packer: _BitfieldPacker,
        cursor: int,
        declared: int | None,
        is_union: bool,
        pack: int | None,
    ) -> tuple[MemberLayout, int]:
        unit_size = self.size_of(node.base)
        unit_align = 1 if pack else self.align_of(node.base)
        width = node.width

        position: int | None = node.position
        if width > unit_size * 8:
            self._diagnostics.report(
                MalformedRecord(
                    f"bitfield '{entry.name}' of width {width} does not fit its "
                    f"{unit_size}-byte storage unit",
                    owner_id,
                )
            )
            width = unit_size * 8
            position = None
        elif position + width > unit_size * 8:
            self._diagnostics.report(
                MalformedRecord(
                    f"bitfield '{entry.name}' recorded at bit {position} with width "
                    f"{width} overruns its {unit_size}-byte storage unit",
                    entry.type,
                )
            )
            position = None

        if is_union:
            offset = cursor if declared is None else max(cursor, declared)
            layout = MemberLayout(
                entry.name, entry.type, entry.access, offset, unit_size,
                bit_offset=position or 0, bit_width=width, unit_size=unit_size,
            )
            return layout, offset + unit_size

        if width == 0:
            next_cursor = packer.zero_width(cursor, unit_size, unit_align)
            layout = MemberLayout(
                entry.name, entry.type, entry.access, next_cursor, 0,
                bit_offset=0, bit_width=0, unit_size=unit_size,
            )
            return layout, next_cursor

        if declared is None:
            position = None
        elif packer.policy is BitfieldPolicy.MSVC:
            # Units start where the record says, even behind the cursor.
            if packer.is_open and declared != packer.unit_offset:
                packer.close()
            if not packer.is_open:
                cursor = declared
        elif not packer.is_open and declared > cursor:
            cursor = declared

        offset, bit_offset, next_cursor = packer.place(
            cursor, unit_size, unit_align, width, position
        )
        layout = MemberLayout(
            entry.name, entry.type, entry.access, offset, unit_size,
            bit_offset=bit_offset, bit_width=width, unit_size=unit_size,
        )
        return layout, next_cursor

    def flatten(self, layout: AggregateLayout) -> Iterator[MemberLayout]:
        """Every instance leaf member, walking inline anonymous aggregates."""
        stack = list(reversed(layout.members))
        while stack:
            member = stack.pop()
            if member.children:
                stack.extend(reversed(member.children))
            else:
                yield member


# ===--- Declaration synthesis ---=== #


class RenderState(enum.Enum):
    UNVISITED = "unvisited"
    IN_PROGRESS = "in_progress"
    RENDERED = "rendered"


BLOCK_KINDS = ("struct", "class", "union", "interface", "enum", "forward")


@dataclass(frozen=True)
class DeclarationBlock:
    kind: str
    type_id: int
    name: str
    text: str

    @property
    def is_forward(self) -> bool:
        return self.kind == "forward"


@dataclass
class _Dependencies:
    """Types a declaration mentions, split by how they are mentioned.

    Dicts keep first-seen order.
    """

    by_value: dict[int, None] = field(default_factory=dict)
    by_reference: dict[int, None] = field(default_factory=dict)
    unresolved: dict[int, None] = field(default_factory=dict)

    def add(self, type_id: int, by_value: bool) -> None:
        if by_value:
            self.by_value[type_id] = None
        else:
            self.by_reference[type_id] = None


def join_declarator(left: str, right: str, name: str) -> str:
    if not name:
        return f"{left}{right}"
    if right.startswith(")"):
        return f"{left}{name}{right}"
    return f"{left} {name}{right}"


class DeclarationSynthesizer:
    """Renders declaration blocks in dependency order.

    Each aggregate moves UNVISITED -> IN_PROGRESS -> RENDERED. Reaching an
    IN_PROGRESS aggregate again emits a forward declaration instead of
    re-entering its body, which bounds recursion on cyclic graphs.
    """

    def __init__(
        self,
        store: TypeStore,
        resolver: LayoutResolver,
        config: ReconstructConfig | None = None,
        diagnostics: DiagnosticLog | None = None,
    ):
        self._store = store
        self._resolver = resolver
        self._config = config or ReconstructConfig()
        self._diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self._state: dict[int, RenderState] = {}
        self._forwarded: set[int] = set()
        self._blocks: list[DeclarationBlock] = []

    @property
    def blocks(self) -> tuple[DeclarationBlock, ...]:
        return tuple(self._blocks)

    def state_of(self, type_id: int) -> RenderState:
        return self._state.get(self._store.complete_index(type_id), RenderState.UNVISITED)

    def type_name(self, type_id: int) -> str:
        left, right = self._spell(type_id, _Dependencies())
        return join_declarator(left, right, "")

    def render_all(
        self, type_ids: Iterable[int], cancel: threading.Event | None = None
    ) -> tuple[DeclarationBlock, ...]:
        for type_id in type_ids:
            if cancel is not None and cancel.is_set():
                raise ReconstructionCancelled(self.blocks)
            self.render_type(type_id)
        return self.blocks

    def render_type(
        self,
        type_id: int,
        with_dependencies: bool = True,
        follow_references: bool = False,
        depth: int = 0,
    ) -> None:
        """Render one named aggregate or enum, and its by-value dependencies first.

        With ``follow_references`` types reached only through pointers,
        references or function signatures get full definitions too (after a
        forward declaration that precedes the referencing block).
        """
        try:
            complete, node = self._store.resolve(type_id)
        except UnresolvedReference as err:
            self._diagnostics.report(err)
            self._forward_unresolved(type_id)
            return
        if not isinstance(node, NAMED_NODES):
            return

        state = self._state.get(complete, RenderState.UNVISITED)
        if state is RenderState.RENDERED:
            return
        if state is RenderState.IN_PROGRESS or node.is_forward_ref:
            self._forward(complete, node)
            return
        enclosing = self._enclosing(complete, node)
        if enclosing is not None and self.state_of(enclosing) is RenderState.UNVISITED:
            # Nested types are defined inside the body of their enclosing type.
            self.render_type(enclosing, with_dependencies, follow_references, depth)
            if complete in self._state:
                return
        if depth > self._config.nested_depth_limit:
            self._diagnostics.report(
                CyclicDefinitionDepthExceeded(
                    f"dependency chain deeper than {self._config.nested_depth_limit} "
                    f"at {display_name(node, complete)}",
                    complete,
                )
            )
            self._forward(complete, node)
            return

        self._state[complete] = RenderState.IN_PROGRESS
        deps = _Dependencies()
        try:
            if isinstance(node, Enum):
                kind, text = "enum", self._render_enum(complete, node, deps)
            else:
                kind, text = node.kind.value, self._render_aggregate(complete, node, deps)
        except ReconstructionError as err:
            self._diagnostics.report(err)
            del self._state[complete]
            self._forward(complete, node)
            return

        if with_dependencies:
            for dep in deps.by_value:
                if dep != complete:
                    self.render_type(dep, True, follow_references, depth + 1)
            for dep in deps.unresolved:
                self._forward_unresolved(dep)
            for dep in deps.by_reference:
                if dep != complete and self.state_of(dep) is not RenderState.RENDERED:
                    self._forward_id(dep)

        self._blocks.append(
            DeclarationBlock(kind, complete, display_name(node, complete), text)
        )
        self._state[complete] = RenderState.RENDERED

        if with_dependencies and follow_references:
            for dep in deps.by_reference:
                self.render_type(dep, True, True, depth + 1)

    # Forward declarations

    def _forward_id(self, type_id: int) -> None:
        try:
            complete, node = self._store.resolve(type_id)
        except UnresolvedReference:
            self._forward_unresolved(type_id)
            return
        if isinstance(node, NAMED_NODES):
            self._forward(complete, node)

    def _forward(self, type_id: int, node: object) -> None:
        if type_id in self._forwarded:
            return
        if self._state.get(type_id) is RenderState.RENDERED:
            return
        self._forwarded.add(type_id)
        name = display_name(node, type_id)
        if isinstance(node, Enum):
            underlying = self.type_name(node.underlying_type)
            text = f"enum {name} : {underlying};"
        else:
            text = f"{node.kind.value} {name};"
        self._blocks.append(DeclarationBlock("forward", type_id, name, text))
        if node.is_forward_ref:
            self._state[type_id] = RenderState.RENDERED

    def _forward_unresolved(self, type_id: int) -> None:
        if type_id in self._forwarded:
            return
        self._forwarded.add(type_id)
        name = f"_unresolved_{type_id:#06x}"
        self._blocks.append(DeclarationBlock("forward", type_id, name, f"struct {name};"))

    # Type spelling

    def _peek(self, type_id: int) -> object | None:
        try:
            return self._store.resolve(type_id)[1]
        except UnresolvedReference:
            return None

    def _spell(
        self, type_id: int, deps: _Dependencies, by_value: bool = True
    ) -> tuple[str, str]:
        """Split spelling of a type: (text before the name, text after it)."""
        try:
            complete, node = self._store.resolve(type_id)
        except UnresolvedReference as err:
            self._diagnostics.report(err)
            deps.unresolved[type_id] = None
            return f"_unresolved_{type_id:#06x}", ""

        if isinstance(node, Primitive):
            return primitive_spelling(node, self._config.primitive_flavor), ""
        if isinstance(node, NAMED_NODES):
            deps.add(complete, by_value)
            return display_name(node, complete), ""
        if isinstance(node, Pointer):
            return self._spell_pointer(node, deps)
        if isinstance(node, Modifier):
            return self._spell_modifier(node, deps, by_value)
        if isinstance(node, Array):
            element, dims = self._resolver.array_dimensions(complete)
            left, right = self._spell(element, deps, by_value)
            return left, "".join(f"[{d}]" for d in dims) + right
        if isinstance(node, Bitfield):
            return self._spell(node.base, deps, by_value)
        if isinstance(node, Procedure):
            return self._spell_function(node.return_type, node.arg_list, "", deps)
        if isinstance(node, MemberFunction):
            scope = self._spell(node.class_type, deps, by_value=False)[0]
            return self._spell_function(node.return_type, node.arg_list, f"{scope}::", deps)

        self._diagnostics.report(
            MalformedRecord(
                f"{type(node).__name__} record {complete:#06x} does not name a type",
                complete,
            )
        )
        deps.unresolved[complete] = None
        return f"_unresolved_{complete:#06x}", ""

    def _spell_pointer(self, node: Pointer, deps: _Dependencies) -> tuple[str, str]:
        left, right = self._spell(node.target, deps, by_value=False)
        if node.mode == PTR_MODE_DATA_MEMBER:
            scope = self._spell(node.containing_class, deps, by_value=False)[0]
            sigil = f" {scope}::*"
        elif node.is_reference:
            sigil = "&"
        elif node.is_rvalue_reference:
            sigil = "&&"
        else:
            sigil = "*"
        if node.is_const:
            sigil += " const"
        if node.is_volatile:
            sigil += " volatile"

        if isinstance(self._peek(node.target), (Procedure, MemberFunction)):
            return f"{left}{sigil}", right
        if right.startswith("["):
            return f"{left} ({sigil.strip()}", f"){right}"
        return f"{left}{sigil}", right

    def _spell_modifier(
        self, node: Modifier, deps: _Dependencies, by_value: bool
    ) -> tuple[str, str]:
        left, right = self._spell(node.base, deps, by_value)
        qualifiers = []
        if node.const:
            qualifiers.append("const")
        if node.volatile:
            qualifiers.append("volatile")
        if node.unaligned:
            qualifiers.append("__unaligned")
        if not qualifiers:
            return left, right
        if isinstance(self._peek(node.base), Pointer):
            return f"{left} {' '.join(qualifiers)}", right
        return f"{' '.join(qualifiers)} {left}", right

    def _spell_function(
        self, return_type: int, arg_list: int, scope: str, deps: _Dependencies
    ) -> tuple[str, str]:
        ret_left, ret_right = self._spell(return_type, deps, by_value=False)
        args = self._spell_args(arg_list, deps)
        return f"{ret_left}{ret_right} ({scope}", f")({args})"

    def _spell_args(self, arg_list: int, deps: _Dependencies) -> str:
        try:
            node = self._store.get(arg_list)
        except UnresolvedReference as err:
            self._diagnostics.report(err)
            return "..."
        if not isinstance(node, ArgList):
            return ""
        return ", ".join(
            join_declarator(*self._spell(arg, deps, by_value=False), "")
            for arg in node.args
        )

    # Definitions

    def _number(self, value: int) -> str:
        if self._config.integers_as_hexadecimal:
            return f"{value:#x}" if value >= 0 else f"-{-value:#x}"
        return str(value)

    def _render_enum(
        self, type_id: int, node: Enum, deps: _Dependencies, name: str | None = None
    ) -> str:
        underlying = join_declarator(*self._spell(node.underlying_type, deps), "")
        lines = [f"enum {name or display_name(node, type_id)} : {underlying} {{"]
        try:
            entries = self._store.field_entries(node.field_list)
        except ReconstructionError as err:
            self._diagnostics.report(err)
            entries = ()
        for entry in entries:
            if isinstance(entry, Enumerator):
                lines.append(f"  {entry.name} = {self._number(entry.value)},")
        lines.append("};")
        return "\n".join(lines)

    def _render_aggregate(
        self,
        type_id: int,
        node: Aggregate,
        deps: _Dependencies,
        name: str | None = None,
    ) -> str:
        layout = self._resolver.layout(type_id)
        try:
            entries = self._store.field_entries(node.field_list)
        except ReconstructionError:
            # Already reported while resolving the layout.
            entries = ()

        lines = [self._render_header(type_id, node, layout, deps, name)]
        offsets = self._config.emit_offset_comments
        if offsets and layout.vfptr_offset is not None:
            lines.append(f"  /* {layout.vfptr_offset:#06x}: vftable */")
        if offsets:
            for base in layout.bases:
                if not base.is_virtual and base.size:
                    name = self.type_name(base.type_id)
                    lines.append(f"  /* {base.offset:#06x}: fields for {name} */")
        if offsets and layout.vbptr_offset is not None:
            lines.append(f"  /* {layout.vbptr_offset:#06x}: vbtable */")

        current = None
        for access, item_lines in self._body_items(entries, layout, deps):
            if (
                self._config.print_access_specifiers
                and access is not Access.NONE
                and access is not current
            ):
                lines.append(f"{access.keyword}:")
                current = access
            lines.extend(item_lines)

        if offsets:
            for base in layout.bases:
                if base.is_virtual:
                    name = self.type_name(base.type_id)
                    lines.append(f"  /* {base.offset:#06x}: fields for virtual {name} */")
        lines.append("};")
        return "\n".join(lines)

    def _render_header(
        self,
        type_id: int,
        node: Aggregate,
        layout: AggregateLayout,
        deps: _Dependencies,
        name: str | None = None,
    ) -> str:
        header = f"{node.kind.value} {name or display_name(node, type_id)}"
        bases = []
        for base in layout.bases:
            parts = []
            if base.is_virtual:
                parts.append("virtual")
            if base.access is not Access.NONE:
                parts.append(base.access.keyword)
            parts.append(self._spell(base.type_id, deps)[0])
            bases.append(" ".join(parts))
        if bases:
            header += " : " + ", ".join(bases)
        header += " {"

        notes = []
        if self._config.emit_offset_comments:
            notes.append(f"Size={layout.size:#x}")
        if layout.vtable_present:
            notes.append("VTable")
        if notes:
            header += f" /* {', '.join(notes)} */"
        return header

    def _body_items(
        self,
        entries: tuple[object, ...],
        layout: AggregateLayout,
        deps: _Dependencies,
    ) -> Iterator[tuple[Access, list[str]]]:
        """Yield (access, lines) per declared item, in field list order.

        A rebuilt anonymous union or struct stands in for the run of field
        list members it covers.
        """
        member_layouts = iter(layout.members)
        covered = 0
        for entry in entries:
            if isinstance(entry, Member):
                if covered:
                    covered -= 1
                    continue
                member = next(member_layouts, None)
                if member is not None:
                    covered = member.entry_count - 1
                    yield entry.access, self._render_member(member, deps, depth=1)
            elif isinstance(entry, NestedType):
                lines = self._nested_declaration(layout.type_id, entry, deps)
                if lines:
                    yield Access.NONE, lines
            elif isinstance(entry, StaticMember):
                if self._config.include_static_members:
                    declarator = join_declarator(
                        *self._spell(entry.type, deps, by_value=False), entry.name
                    )
                    yield entry.access, [f"  static {declarator};"]
            elif isinstance(entry, OneMethod):
                line = self._render_method(
                    entry.name, entry.type, entry.prop, entry.attributes, deps
                )
                if line:
                    yield entry.access, [line]
            elif isinstance(entry, OverloadedMethod):
                yield from self._overloads(entry, deps)

    # Nested types

    def _enclosing(self, type_id: int, node: object) -> int | None:
        """Aggregate whose field list declares ``node`` as a nested type."""
        outer_name, _, short_name = node.name.rpartition("::")
        if not outer_name:
            return None
        outer = self._store.find_by_name(outer_name, Aggregate)
        if outer is None:
            return None
        try:
            entries = self._store.field_entries(self._store.get(outer).field_list)
        except ReconstructionError:
            return None
        for entry in entries:
            if (
                isinstance(entry, NestedType)
                and entry.name == short_name
                and self._store.complete_index(entry.type) == type_id
            ):
                return outer
        return None

    def _nested_declaration(
        self, owner_id: int, entry: NestedType, deps: _Dependencies
    ) -> list[str]:
        try:
            nested_id, node = self._store.resolve(entry.type)
        except UnresolvedReference as err:
            self._diagnostics.report(err)
            return []
        if isinstance(node, NAMED_NODES):
            if node.is_anonymous:
                return []
            if self._enclosing(nested_id, node) == owner_id:
                return self._inline_nested(nested_id, node, entry.name, deps)
        # Member typedefs are recorded as nested types too.
        left, right = self._spell(entry.type, deps, by_value=False)
        return [f"  typedef {join_declarator(left, right, entry.name)};"]

    def _inline_nested(
        self, type_id: int, node: object, name: str, deps: _Dependencies
    ) -> list[str]:
        if isinstance(node, Enum):
            forward = f"enum {name} : {self.type_name(node.underlying_type)};"
        else:
            forward = f"{node.kind.value} {name};"
        if node.is_forward_ref or type_id in self._state:
            return [f"  {forward}"]

        self._state[type_id] = RenderState.IN_PROGRESS
        try:
            if isinstance(node, Enum):
                text = self._render_enum(type_id, node, deps, name)
            else:
                text = self._render_aggregate(type_id, node, deps, name)
        except ReconstructionError as err:
            self._diagnostics.report(err)
            del self._state[type_id]
            return [f"  {forward}"]
        self._state[type_id] = RenderState.RENDERED
        return [f"  {line}" for line in text.splitlines()]

    def _overloads(
        self, entry: OverloadedMethod, deps: _Dependencies
    ) -> Iterator[tuple[Access, list[str]]]:
        try:
            method_list = self._store.get(entry.method_list)
        except UnresolvedReference as err:
            self._diagnostics.report(err)
            return
        if not isinstance(method_list, MethodList):
            self._diagnostics.report(
                MalformedRecord(
                    f"overloads of '{entry.name}' do not point at a method list",
                    entry.method_list,
                )
            )
            return
        for method in method_list.entries:
            line = self._render_method(
                entry.name, method.type, method.prop, method.attributes, deps
            )
            if line:
                yield method.access, [line]

    def _render_member(
        self, member: MemberLayout, deps: _Dependencies, depth: int
    ) -> list[str]:
        indent = "  " * depth
        prefix = f"/* {member.offset:#06x} */ " if self._config.emit_offset_comments else ""

        if member.is_inline_aggregate and not member.truncated:
            lines = [f"{indent}{member.aggregate_kind.value} {{"]
            for child in member.children:
                lines.extend(self._render_member(child, deps, depth + 1))
            closing = f"{indent}}} {member.name};" if member.name else f"{indent}}};"
            lines.append(closing)
            return lines

        if member.truncated:
            left, right = self._spell(member.type_id, deps, by_value=False)
        else:
            left, right = self._spell(member.type_id, deps)

        if member.is_bitfield:
            declarator = f"{join_declarator(left, '', member.name)} : {member.bit_width}"
            suffix = ""
            if self._config.emit_offset_comments:
                suffix = f" /* BitPos={member.bit_offset} */"
            return [f"{indent}{prefix}{declarator};{suffix}"]

        return [f"{indent}{prefix}{join_declarator(left, right, member.name)};"]

    def _render_method(
        self,
        name: str,
        method_type: int,
        prop: MethodProperty,
        attributes: int,
        deps: _Dependencies,
    ) -> str | None:
        if attributes & ATTR_PSEUDO:
            return None
        try:
            node = self._store.get(method_type)
        except UnresolvedReference as err:
            self._diagnostics.report(err)
            return None
        if not isinstance(node, MemberFunction):
            self._diagnostics.report(
                MalformedRecord(f"method '{name}' has a non-method type", method_type)
            )
            return None

        text = "  "
        if prop is MethodProperty.STATIC:
            text += "static "
        if prop.is_virtual:
            text += "virtual "
        if not (node.is_constructor or name.startswith("~")):
            text += join_declarator(
                *self._spell(node.return_type, deps, by_value=False), ""
            ) + " "
        text += f"{name}({self._spell_args(node.arg_list, deps)})"
        text += self._this_qualifiers(node)
        if prop.is_pure:
            text += " = 0"
        return text + ";"

    def _this_qualifiers(self, node: MemberFunction) -> str:
        if not node.this_type:
            return ""
        pointer = self._peek(node.this_type)
        if not isinstance(pointer, Pointer):
            return ""
        target = self._peek(pointer.target)
        if not isinstance(target, Modifier):
            return ""
        qualifiers = ""
        if target.const:
            qualifiers += " const"
        if target.volatile:
            qualifiers += " volatile"
        return qualifiers


# ===--- Reconstruction driver ---=== #


@dataclass(frozen=True)
class Reconstruction:
    blocks: tuple[DeclarationBlock, ...]
    diagnostics: tuple[Diagnostic, ...]
    header: str = ""

    @property
    def text(self) -> str:
        parts: list[str] = []
        if self.header:
            parts.append(self.header)
        previous = None
        for block in self.blocks:
            if parts and not (block.is_forward and previous is not None and previous.is_forward):
                parts.append("")
            parts.append(block.text)
            previous = block
        return "\n".join(parts) + "\n" if parts else ""


@dataclass(frozen=True)
class TypeDiff:
    name: str
    lines: tuple[str, ...]
    diagnostics: tuple[Diagnostic, ...]

    @property
    def changed(self) -> bool:
        return bool(self.lines)

    @property
    def text(self) -> str:
        return "\n".join(self.lines) + "\n" if self.lines else ""


def format_header(config: ReconstructConfig) -> str:
    lines = [
        "//",
        f"// Reconstructed by tpi-recon {__version__}",
        f"// Primitive flavor: {config.primitive_flavor.value}, "
        f"bitfield policy: {config.bitfield_policy.value}, "
        f"pointer width: {config.pointer_width}",
        "//",
    ]
    if config.primitive_flavor is PrimitiveFlavor.PORTABLE:
        lines.append("")
        lines.append("#include <cstdint>")
    return "\n".join(lines)


class ReconstructionSession:
    """One immutable type store plus the layout cache and diagnostics built on it.

    Synthesizers are cheap and hold per-pass render state, so each pass asks
    the session for a fresh one; layouts are shared across passes.
    """

    def __init__(
        self,
        store: TypeStore,
        config: ReconstructConfig | None = None,
        diagnostics: DiagnosticLog | None = None,
    ):
        self.store = store
        self.config = config or ReconstructConfig()
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog()
        self.resolver = LayoutResolver(store, self.config, self.diagnostics)
        self._inline_ids: frozenset[int] | None = None

    def synthesizer(self) -> DeclarationSynthesizer:
        return DeclarationSynthesizer(self.store, self.resolver, self.config, self.diagnostics)

    def inline_anonymous_ids(self) -> frozenset[int]:
        """Anonymous aggregates used directly as a member's type."""
        if self._inline_ids is not None:
            return self._inline_ids
        inline = set()
        for type_id in self.store.all_ids():
            if not self.store.contains(type_id):
                continue
            node = self.store.get(type_id)
            if not isinstance(node, Aggregate) or node.is_forward_ref:
                continue
            try:
                entries = self.store.field_entries(node.field_list)
            except ReconstructionError:
                continue
            for entry in entries:
                if not isinstance(entry, Member):
                    continue
                member = self.store.complete_index(entry.type)
                if not self.store.contains(member):
                    continue
                target = self.store.get(member)
                if isinstance(target, Aggregate) and target.is_anonymous:
                    inline.add(member)
        self._inline_ids = frozenset(inline)
        return self._inline_ids

    def top_level_ids(self) -> list[int]:
        """Named aggregates and enums to render, in stream order."""
        inline = self.inline_anonymous_ids()
        ordered: list[int] = []
        seen_ids: set[int] = set()
        seen_names: set[tuple[type, str]] = set()
        for type_id in self.store.all_ids():
            if not self.store.contains(type_id):
                continue
            node = self.store.get(type_id)
            if not isinstance(node, NAMED_NODES):
                continue
            complete = self.store.complete_index(type_id)
            if complete != type_id or complete in inline or complete in seen_ids:
                continue
            key = (_name_space(node), node.unique_name or display_name(node, complete))
            if key in seen_names:
                continue
            seen_ids.add(complete)
            seen_names.add(key)
            ordered.append(complete)
        return ordered

    def find(self, name: str) -> int:
        type_id = self.store.find_by_name(name)
        if type_id is None:
            raise TypeNotFound(name)
        return type_id

    def prefetch_layouts(self, type_ids: Iterable[int]) -> None:
        targets = [
            type_id for type_id in type_ids
            if isinstance(self.store.get(type_id), Aggregate)
        ]
        with ThreadPoolExecutor(max_workers=self.config.jobs) as pool:
            for _ in pool.map(self._prefetch_one, targets):
                pass

    def _prefetch_one(self, type_id: int) -> None:
        try:
            self.resolver.layout(type_id)
        except ReconstructionError as err:
            self.diagnostics.report(err)

    def result(self, synthesizer: DeclarationSynthesizer) -> Reconstruction:
        header = format_header(self.config) if self.config.print_header else ""
        return Reconstruction(synthesizer.blocks, self.diagnostics.items(), header)


def open_session(data: bytes, config: ReconstructConfig | None = None) -> ReconstructionSession:
    diagnostics = DiagnosticLog()
    store = load_type_store(data, diagnostics)
    return ReconstructionSession(store, config, diagnostics)


def _session(
    source: "bytes | ReconstructionSession", config: ReconstructConfig | None
) -> ReconstructionSession:
    if isinstance(source, ReconstructionSession):
        return source
    return open_session(source, config)


def reconstruct(
    source: "bytes | ReconstructionSession",
    config: ReconstructConfig | None = None,
    cancel: threading.Event | None = None,
) -> Reconstruction:
    """Reconstruct every named aggregate and enum in the stream.

    Blocks are ordered so that every by-value dependency precedes its user
    and every by-reference dependency is at least forward-declared first.

    Args:
        source: Raw TPI stream bytes (with or without header), or an open
            session to reuse its layout cache.
        config: Output and layout options. Ignored when ``source`` is a session.
        cancel: Optional flag checked between top-level types.

    Raises:
        ReconstructionCancelled: When ``cancel`` is set before completion.
    """
    session = _session(source, config)
    type_ids = session.top_level_ids()
    if cancel is not None and cancel.is_set():
        raise ReconstructionCancelled(())
    if session.config.jobs > 1:
        session.prefetch_layouts(type_ids)
    synthesizer = session.synthesizer()
    synthesizer.render_all(type_ids, cancel)
    return session.result(synthesizer)


def reconstruct_type(
    source: "bytes | ReconstructionSession",
    name: str,
    config: ReconstructConfig | None = None,
    with_dependencies: bool = False,
) -> Reconstruction:
    session = _session(source, config)
    type_id = session.find(name)
    synthesizer = session.synthesizer()
    if with_dependencies:
        synthesizer.render_type(type_id, with_dependencies=True, follow_references=True)
    else:
        synthesizer.render_type(type_id, with_dependencies=False)
    return session.result(synthesizer)


def list_types(
    source: "bytes | ReconstructionSession",
    pattern: str = "",
    case_insensitive: bool = False,
    use_regex: bool = False,
    ignore_std: bool = False,
) -> list[tuple[str, int]]:
    """Named complete types matching ``pattern``, sorted by name.

    Raises:
        re.error: When ``use_regex`` is set and ``pattern`` does not compile.
    """
    session = _session(source, None)
    if use_regex:
        regex = re.compile(pattern, re.IGNORECASE if case_insensitive else 0)

        def matches(name: str) -> bool:
            return regex.search(name) is not None

    elif case_insensitive:
        needle = pattern.lower()

        def matches(name: str) -> bool:
            return needle in name.lower()

    else:

        def matches(name: str) -> bool:
            return pattern in name

    found = [
        (name, type_id)
        for name, type_id in session.store.complete_types()
        if matches(name) and not (ignore_std and name.startswith("std::"))
    ]
    return sorted(found)


def diff_type(
    data_from: "bytes | ReconstructionSession",
    data_to: "bytes | ReconstructionSession",
    name: str,
    config: ReconstructConfig | None = None,
) -> TypeDiff:
    """Unified diff of one type's reconstruction between two streams.

    A type missing on one side diffs against empty text.

    Raises:
        TypeNotFound: When neither stream defines ``name``.
    """
    sides = []
    for source in (data_from, data_to):
        try:
            sides.append(reconstruct_type(source, name, config))
        except TypeNotFound:
            sides.append(None)
    if all(side is None for side in sides):
        raise TypeNotFound(name)

    before, after = (side.text if side else "" for side in sides)
    lines = difflib.unified_diff(
        before.splitlines(),
        after.splitlines(),
        fromfile=f"a/{name}",
        tofile=f"b/{name}",
        lineterm="",
    )
    diagnostics = tuple(d for side in sides if side for d in side.diagnostics)
    return TypeDiff(name, tuple(lines), diagnostics)


# ===--- Summary report ---=== #


SUMMARY_DIAGNOSTIC_LIMIT = 10
"""Maximum number of individual diagnostics echoed in the summary."""


@dataclass(frozen=True)
class ReconstructionSummary:
    """Immutable data for the post-reconstruction console report.

    Produced by build_reconstruction_summary. Consumed by
    format_reconstruction_summary and print_reconstruction_summary.

    Attributes:
        source_label: Input stream path as given on the command line.
        output_label: Output path, or "stdout".
        block_counts: (kind, count) per block kind in BLOCK_KINDS order.
        diagnostic_counts: (code, count) sorted by code, non-zero only.
        diagnostics: First SUMMARY_DIAGNOSTIC_LIMIT diagnostics, in report order.
        total_diagnostics: Count of all diagnostics, including those not echoed.
    """

    source_label: str
    output_label: str
    block_counts: tuple[tuple[str, int], ...]
    diagnostic_counts: tuple[tuple[str, int], ...]
    diagnostics: tuple[Diagnostic, ...]
    total_diagnostics: int


def build_reconstruction_summary(
    result: Reconstruction,
    source_label: str,
    output_label: str = "stdout",
    limit: int = SUMMARY_DIAGNOSTIC_LIMIT,
) -> ReconstructionSummary:
    kinds: dict[str, int] = defaultdict(int)
    for block in result.blocks:
        kinds[block.kind] += 1
    codes: dict[str, int] = defaultdict(int)
    for diagnostic in result.diagnostics:
        codes[diagnostic.code] += 1
    return ReconstructionSummary(
        source_label=source_label,
        output_label=output_label,
        block_counts=tuple((kind, kinds.get(kind, 0)) for kind in BLOCK_KINDS),
        diagnostic_counts=tuple(sorted(codes.items())),
        diagnostics=result.diagnostics[:limit],
        total_diagnostics=len(result.diagnostics),
    )


BLOCK_KIND_LABELS = {
    "struct": "Structs:",
    "class": "Classes:",
    "union": "Unions:",
    "interface": "Interfaces:",
    "enum": "Enums:",
    "forward": "Forward:",
}


def format_reconstruction_summary(summary: ReconstructionSummary) -> str:
    """Render a ReconstructionSummary as a multi-section console string.

    The per-diagnostic listing is omitted when there are none, and a
    "... and N more" line follows it when the listing was truncated.
    Returns a string with exactly one trailing newline.
    """
    lines = [f"Reconstructed {summary.source_label}:", ""]
    lines.append(f"  Output:     {summary.output_label}")
    lines.append("")
    lines.append("  Declarations:")
    for kind, count in summary.block_counts:
        lines.append(f"    {BLOCK_KIND_LABELS[kind]:<13}{count:>6}")
    lines.append("")
    lines.append(f"  Diagnostics: {summary.total_diagnostics}")
    for code, count in summary.diagnostic_counts:
        lines.append(f"    {code:<34}{count:>6}")
    if summary.diagnostics:
        lines.append("")
        for diagnostic in summary.diagnostics:
            lines.append(f"    {diagnostic}")
        hidden = summary.total_diagnostics - len(summary.diagnostics)
        if hidden > 0:
            lines.append(f"    ... and {hidden} more")
    lines.append("")
    return "\n".join(lines)


def print_reconstruction_summary(summary: ReconstructionSummary) -> None:
    """Print the summary to stderr so stdout stays pure declarations."""
    print(format_reconstruction_summary(summary), end="", file=sys.stderr)


# ===--- Dispatch ---=== #


def write_output(text: str, output: Path | None) -> None:
    if output is None:
        sys.stdout.write(text)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(text, encoding="utf-8")


def format_type_list(matches: list[tuple[str, int]], filter_text: str) -> str:
    heading = f"{len(matches)} types"
    if filter_text:
        heading += f" matching '{filter_text}'"
    lines = [f"{heading}:", ""]
    for name, type_id in matches:
        lines.append(f"  {type_id:#06x}  {name}")
    lines.append("")
    return "\n".join(lines)


def run_list(config: ListConfig) -> None:
    data = config.tpi.read_bytes()
    matches = list_types(
        data,
        config.filter_text,
        case_insensitive=config.case_insensitive,
        use_regex=config.use_regex,
        ignore_std=config.ignore_std,
    )
    write_output(format_type_list(matches, config.filter_text), config.output)


def run_dump(config: DumpConfig) -> Reconstruction | TypeDiff:
    session = open_session(config.tpi.read_bytes(), config.recon)

    if config.diff_from is not None:
        previous = open_session(config.diff_from.read_bytes(), config.recon)
        diff = diff_type(previous, session, config.type_name, config.recon)
        write_output(diff.text, config.output)
        return diff

    if config.type_name is not None:
        result = reconstruct_type(
            session, config.type_name, with_dependencies=config.with_dependencies
        )
    else:
        result = reconstruct(session)
    write_output(result.text, config.output)

    output_label = str(config.output) if config.output is not None else "stdout"
    print_reconstruction_summary(
        build_reconstruction_summary(result, str(config.tpi), output_label)
    )
    return result


# ===--- Main reconstruction ---=== #


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    if isinstance(config, ListConfig):
        try:
            run_list(config)
        except OSError as err:
            print(f"Error: {err}")
            raise SystemExit(1) from err
        return

    try:
        run_dump(config)
    except TypeNotFound as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except OSError as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
