import argparse
import struct
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

RECON_DIR = Path(__file__).resolve().parent.parent
if str(RECON_DIR) not in sys.path:
    sys.path.insert(0, str(RECON_DIR))

import tpirecon  # noqa: E402

PUBLIC = int(tpirecon.Access.PUBLIC)
PROTECTED = int(tpirecon.Access.PROTECTED)
PRIVATE = int(tpirecon.Access.PRIVATE)


# ===--- Record encoding helpers ---=== #


def numeric(value: int) -> bytes:
    if 0 <= value < tpirecon.LF_NUMERIC:
        return struct.pack("<H", value)
    if -0x80 <= value < 0:
        return struct.pack("<Hb", tpirecon.LF_CHAR, value)
    if -0x8000 <= value < 0:
        return struct.pack("<Hh", tpirecon.LF_SHORT, value)
    if 0 <= value <= 0xFFFF:
        return struct.pack("<HH", tpirecon.LF_USHORT, value)
    if -(2**31) <= value < 0:
        return struct.pack("<Hi", tpirecon.LF_LONG, value)
    if 0 <= value <= 0xFFFFFFFF:
        return struct.pack("<HI", tpirecon.LF_ULONG, value)
    if value < 0:
        return struct.pack("<Hq", tpirecon.LF_QUADWORD, value)
    return struct.pack("<HQ", tpirecon.LF_UQUADWORD, value)


def cstr(text: str) -> bytes:
    return text.encode("utf-8") + b"\x00"


def pad_bytes(length: int) -> bytes:
    count = (-length) % 4
    return bytes(0xF0 | (count - i) for i in range(count))


def member(name: str, type_id: int, offset: int, access: int = PUBLIC) -> bytes:
    return struct.pack("<HHI", tpirecon.LF_MEMBER, access, type_id) + numeric(offset) + cstr(name)


def static_member(name: str, type_id: int, access: int = PUBLIC) -> bytes:
    return struct.pack("<HHI", tpirecon.LF_STMEMBER, access, type_id) + cstr(name)


def base_class(type_id: int, offset: int, access: int = PUBLIC) -> bytes:
    return struct.pack("<HHI", tpirecon.LF_BCLASS, access, type_id) + numeric(offset)


def virtual_base(
    type_id: int,
    vbptr_type: int,
    vbptr_offset: int = 0,
    index: int = 1,
    access: int = PUBLIC,
    indirect: bool = False,
) -> bytes:
    leaf = tpirecon.LF_IVBCLASS if indirect else tpirecon.LF_VBCLASS
    return (
        struct.pack("<HHII", leaf, access, type_id, vbptr_type)
        + numeric(vbptr_offset)
        + numeric(index)
    )


def vfunctab(type_id: int) -> bytes:
    return struct.pack("<HHI", tpirecon.LF_VFUNCTAB, 0, type_id)


def one_method(
    name: str,
    type_id: int,
    access: int = PUBLIC,
    prop: tpirecon.MethodProperty = tpirecon.MethodProperty.VANILLA,
    vtable_offset: int = 0,
    flags: int = 0,
) -> bytes:
    attr = access | (int(prop) << 2) | flags
    body = struct.pack("<HHI", tpirecon.LF_ONEMETHOD, attr, type_id)
    if prop.is_intro:
        body += struct.pack("<I", vtable_offset)
    return body + cstr(name)


def overloaded(name: str, count: int, method_list: int) -> bytes:
    return struct.pack("<HHI", tpirecon.LF_METHOD, count, method_list) + cstr(name)


def method_entry(
    type_id: int,
    access: int = PUBLIC,
    prop: tpirecon.MethodProperty = tpirecon.MethodProperty.VANILLA,
    vtable_offset: int = 0,
) -> bytes:
    body = struct.pack("<HHI", access | (int(prop) << 2), 0, type_id)
    if prop.is_intro:
        body += struct.pack("<I", vtable_offset)
    return body


def nested(name: str, type_id: int) -> bytes:
    return struct.pack("<HHI", tpirecon.LF_NESTTYPE, 0, type_id) + cstr(name)


def enumerator(name: str, value: int, access: int = PUBLIC) -> bytes:
    return struct.pack("<HH", tpirecon.LF_ENUMERATE, access) + numeric(value) + cstr(name)


def continuation(type_id: int) -> bytes:
    return struct.pack("<HHI", tpirecon.LF_INDEX, 0, type_id)


class StreamBuilder:
    """Encodes CodeView type records; every add returns the new TypeId."""

    def __init__(self, first_type_id: int = tpirecon.FIRST_NON_PRIMITIVE):
        self.first_type_id = first_type_id
        self._records: list[bytes] = []

    @property
    def next_id(self) -> int:
        return self.first_type_id + len(self._records)

    def raw(self, kind: int, payload: bytes) -> int:
        body = struct.pack("<H", kind) + payload
        body += pad_bytes(len(body) + 2)
        self._records.append(struct.pack("<H", len(body)) + body)
        return self.next_id - 1

    def pointer(
        self,
        target: int,
        width: int = 8,
        const: bool = False,
        volatile: bool = False,
        mode: int = tpirecon.PTR_MODE_POINTER,
        containing_class: int | None = None,
    ) -> int:
        kind = tpirecon.PTR_KIND_64 if width == 8 else tpirecon.PTR_KIND_NEAR32
        attrs = kind | (mode << 5) | (width << 13)
        if volatile:
            attrs |= 0x200
        if const:
            attrs |= 0x400
        payload = struct.pack("<II", target, attrs)
        if containing_class is not None:
            payload += struct.pack("<IH", containing_class, 0)
        return self.raw(tpirecon.LF_POINTER, payload)

    def modifier(
        self, base: int, const: bool = False, volatile: bool = False, unaligned: bool = False
    ) -> int:
        attrs = (1 if const else 0) | (2 if volatile else 0) | (4 if unaligned else 0)
        return self.raw(tpirecon.LF_MODIFIER, struct.pack("<IH", base, attrs))

    def array(self, element: int, size: int, name: str = "") -> int:
        payload = struct.pack("<II", element, tpirecon.T_UQUAD) + numeric(size) + cstr(name)
        return self.raw(tpirecon.LF_ARRAY, payload)

    def bitfield(self, base: int, width: int, position: int) -> int:
        return self.raw(tpirecon.LF_BITFIELD, struct.pack("<IBB", base, width, position))

    def arglist(self, *args: int) -> int:
        return self.raw(tpirecon.LF_ARGLIST, struct.pack(f"<I{len(args)}I", len(args), *args))

    def procedure(self, return_type: int, args: tuple[int, ...] = ()) -> int:
        arg_list = self.arglist(*args)
        payload = struct.pack("<IBBHI", return_type, 0, 0, len(args), arg_list)
        return self.raw(tpirecon.LF_PROCEDURE, payload)

    def mfunction(
        self,
        return_type: int,
        class_type: int,
        this_type: int = 0,
        args: tuple[int, ...] = (),
        attributes: int = 0,
    ) -> int:
        arg_list = self.arglist(*args)
        payload = struct.pack(
            "<IIIBBHIi", return_type, class_type, this_type, 0, attributes,
            len(args), arg_list, 0,
        )
        return self.raw(tpirecon.LF_MFUNCTION, payload)

    def fieldlist(self, *entries: bytes) -> int:
        payload = b""
        for entry in entries:
            payload += entry + pad_bytes(len(entry))
        return self.raw(tpirecon.LF_FIELDLIST, payload)

    def methodlist(self, *entries: bytes) -> int:
        return self.raw(tpirecon.LF_METHODLIST, b"".join(entries))

    def vtshape(self, count: int) -> int:
        payload = struct.pack("<H", count) + bytes((count + 1) // 2)
        return self.raw(tpirecon.LF_VTSHAPE, payload)

    def structure(
        self,
        name: str,
        fields: int = 0,
        size: int = 0,
        *,
        kind: int = tpirecon.LF_STRUCTURE,
        properties: int = 0,
        count: int = 0,
        derived: int = 0,
        vshape: int = 0,
        unique_name: str | None = None,
    ) -> int:
        if unique_name:
            properties |= tpirecon.PROP_HAS_UNIQUE_NAME
        payload = (
            struct.pack("<HHIII", count, properties, fields, derived, vshape)
            + numeric(size)
            + cstr(name)
        )
        if unique_name:
            payload += cstr(unique_name)
        return self.raw(kind, payload)

    def class_(self, name: str, fields: int = 0, size: int = 0, **kwargs) -> int:
        return self.structure(name, fields, size, kind=tpirecon.LF_CLASS, **kwargs)

    def union(
        self,
        name: str,
        fields: int = 0,
        size: int = 0,
        *,
        properties: int = 0,
        count: int = 0,
    ) -> int:
        payload = struct.pack("<HHI", count, properties, fields) + numeric(size) + cstr(name)
        return self.raw(tpirecon.LF_UNION, payload)

    def enum(
        self, name: str, underlying: int, fields: int = 0, *, properties: int = 0, count: int = 0
    ) -> int:
        payload = struct.pack("<HHII", count, properties, underlying, fields) + cstr(name)
        return self.raw(tpirecon.LF_ENUM, payload)

    def forward(self, name: str, kind: int = tpirecon.LF_STRUCTURE) -> int:
        if kind == tpirecon.LF_UNION:
            return self.union(name, properties=tpirecon.PROP_FWDREF)
        return self.structure(name, kind=kind, properties=tpirecon.PROP_FWDREF)

    def build(self) -> bytes:
        return b"".join(self._records)

    def build_tpi(self) -> bytes:
        records = self.build()
        header = struct.pack(
            "<5I", 20040203, tpirecon.TPI_HEADER_SIZE, self.first_type_id,
            self.next_id, len(records),
        )
        header += bytes(tpirecon.TPI_HEADER_SIZE - len(header))
        return header + records


# ===--- Fixtures ---=== #


@pytest.fixture
def stream() -> StreamBuilder:
    return StreamBuilder()


@pytest.fixture
def make_session() -> Callable[..., tpirecon.ReconstructionSession]:
    def _make_session(
        builder: StreamBuilder, **config: object
    ) -> tpirecon.ReconstructionSession:
        return tpirecon.open_session(builder.build(), tpirecon.ReconstructConfig(**config))

    return _make_session


@pytest.fixture
def render() -> Callable[..., str]:
    def _render(builder: StreamBuilder, name: str, **config: object) -> str:
        result = tpirecon.reconstruct_type(
            builder.build(), name, tpirecon.ReconstructConfig(**config)
        )
        return result.text

    return _render


@pytest.fixture
def tpi_file(tmp_path: Path) -> Callable[[StreamBuilder], Path]:
    def _tpi_file(builder: StreamBuilder, filename: str = "app.tpi") -> Path:
        path = tmp_path / filename
        path.write_bytes(builder.build_tpi())
        return path

    return _tpi_file


@pytest.fixture
def point_stream(stream: StreamBuilder) -> StreamBuilder:
    fields = stream.fieldlist(
        member("x", tpirecon.T_INT4, 0),
        member("y", tpirecon.T_INT4, 4),
    )
    stream.structure("Point", fields, 8, count=2)
    return stream


@pytest.fixture
def make_args(tmp_path: Path) -> Callable[..., argparse.Namespace]:
    tpi = tmp_path / "app.tpi"
    tpi.write_bytes(StreamBuilder().build_tpi())

    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "tpi": tpi,
            "type_name": None,
            "list_filter": None,
            "deps": False,
            "diff_from": None,
            "case_insensitive": False,
            "regex": False,
            "ignore_std": False,
            "flavor": "portable",
            "bitfield_policy": "msvc",
            "pointer_width": 8,
            "depth_limit": 64,
            "no_offsets": False,
            "no_statics": False,
            "no_access": False,
            "hex": False,
            "jobs": 1,
            "header": False,
            "output": None,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args
