"""ARDF Force Map Records

This module decodes the tagged records of an Asylum Research ARDF file.
Every record starts with the same 16 byte header, and the 4 character tag
in that header decides how the body is laid out. Tables of contents embed
further records at a fixed stride, so the result of a decode is a forest.

The decoder copies everything it keeps out of the buffer, so an mmap can be
closed as soon as the decode is done. It never writes, and it never checks
what a field means; several fields are only partially understood and are
kept as opaque values.
"""

# Copyright (C) Richard J. Sheridan
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
import struct
import warnings
import zlib
from collections.abc import Callable, Iterable, Iterator
from typing import TypeAlias, Any

import numpy as np

from attrs import define, frozen, field

HEADER_STRUCT = struct.Struct("<LL4sL")
TOC_STRUCT = struct.Struct("<QLL")
HEADER_SIZE = HEADER_STRUCT.size
TOC_HEADER_SIZE = HEADER_SIZE + TOC_STRUCT.size
POINTER_ENTRY_SIZE = 24
THUMBNAIL_POINTER_SIZE = 72  # pointer form of THMB is followed by a fixed trailer
CONTAINER_TAGS = frozenset({"FTOC", "TTOC", "VOLM", "VTOC", "IBOX"})
MARKER_TAGS = frozenset({"ARDF", "GAMI", "MLOV"})

###############################################
############### Typing stuff ##################
###############################################

Buffer: TypeAlias = Any  # bytes, bytearray, mmap or memoryview


class MalformedRecord(ValueError):
    """The bytes at an offset are not a structurally valid record."""


class UnknownTag(MalformedRecord):
    """The header carries a tag outside the record catalog."""


class ZeroSizeRecord(ValueError):
    """The header declares a size of zero.

    Inside a table of contents this is a padding slot, not corruption."""


###############################################
################## Helpers ####################
###############################################


def decode_cstring(cstring: bytes):
    return cstring.rstrip(b"\0").decode("windows-1252")


def split_fields(text: str, sep: str = ";") -> tuple[str, ...]:
    # trailing separators do not make empty fields
    fields = text.split(sep)
    while fields and not fields[-1]:
        fields.pop()
    return tuple(fields)


def _frozen_floats(data: Buffer, offset: int, count: int) -> np.ndarray:
    arr = np.frombuffer(data, dtype="<f4", count=count, offset=offset).astype("f4")
    arr.setflags(write=False)
    return arr


@define
class Cursor:
    """Bounds-checked reader that walks forward through one record body."""

    data: Buffer = field(repr=False)
    start: int
    offset: int

    @classmethod
    def after_header(cls, data: Buffer, offset: int):
        return cls(data, offset, offset + HEADER_SIZE)

    @property
    def consumed(self):
        return self.offset - self.start

    def _check(self, offset: int, nbytes: int):
        if nbytes < 0 or offset < 0 or offset + nbytes > len(self.data):
            raise MalformedRecord(
                "Read past end of buffer.", self.start, offset, nbytes, len(self.data)
            )

    def _claim(self, nbytes: int):
        self._check(self.offset, nbytes)
        offset = self.offset
        self.offset += nbytes
        return offset

    def unpack(self, s: struct.Struct):
        return s.unpack_from(self.data, self._claim(s.size))

    def read(self, nbytes: int) -> bytes:
        offset = self._claim(nbytes)
        return bytes(self.data[offset : offset + nbytes])

    def floats(self, count: int) -> np.ndarray:
        return _frozen_floats(self.data, self._claim(count * 4), count)

    def floats_at(self, offset: int, count: int) -> np.ndarray:
        """Read floats at an absolute offset without moving the cursor."""
        self._check(offset, count * 4)
        return _frozen_floats(self.data, offset, count)


@frozen
class Header:
    offset: int
    checksum: int = field(repr=hex)
    size: int
    tag: str
    misc: int = field(repr=hex)

    @classmethod
    def unpack(cls, data: Buffer, offset: int):
        if offset < 0 or offset + HEADER_SIZE > len(data):
            raise MalformedRecord("Header past end of buffer.", offset, len(data))
        checksum, size, tag, misc = HEADER_STRUCT.unpack_from(data, offset)
        return cls(offset, checksum, size, tag.decode("latin-1"), misc)


###############################################
################# Payloads ####################
###############################################


@frozen
class Pointer:
    pointer: int
    _struct = struct.Struct("<q")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        return cls(*cursor.unpack(cls._struct))


@frozen
class Text:
    lines: tuple[str, ...]
    _struct = struct.Struct("<LL")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        # a blank u32 sits before the length
        _, nchars = cursor.unpack(cls._struct)
        if header.size < nchars + 24:
            raise MalformedRecord("Text longer than its record.", header, nchars)
        text = cursor.read(nchars).decode("windows-1252")
        return cls(split_fields(text, "\r"))


@frozen
class Thumbnail:
    width: int
    height: int
    bits_per_pixel: int
    _struct = struct.Struct("<LLq")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        return cls(*cursor.unpack(cls._struct))


@frozen
class VolumeDefinition:
    width: int
    height: int
    # 3 doubles followed by 12 int64, appended together. The doubles look like
    # x, y and time steps, and the int64 block looks like three unit strings.
    unknown: tuple
    fields: tuple[str, ...]
    # SUSPECT: older readers took this from a fixed low offset of the buffer,
    # never from this record, and always came up empty. Kept as None.
    channel_count: int | None
    segment_count: int
    _struct = struct.Struct("<LL24xddd12q32sq")
    _units_struct = struct.Struct("<12q")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        if header.size != cls._struct.size + HEADER_SIZE:
            raise MalformedRecord("Malformed volume definition.", header)
        width, height, *unknown, fields, segment_count = cursor.unpack(cls._struct)
        return cls(
            width,
            height,
            tuple(unknown),
            split_fields(decode_cstring(fields)),
            None,
            segment_count,
        )

    @property
    def units(self) -> tuple[str, ...]:
        block = self._units_struct.pack(*self.unknown[3:])
        return tuple(decode_cstring(block[i : i + 32]) for i in range(0, 96, 32))


@frozen
class VolumeChannel:
    title: str
    tail: bytes = field(repr=False)
    _struct = struct.Struct("<32s")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        (title,) = cursor.unpack(cls._struct)
        tail = cursor.read(header.size - cursor.consumed)
        # anything after the first NUL is stale buffer contents
        title = title.split(b"\0", 1)[0]
        return cls(title.decode("windows-1252"), tail)

    @property
    def unit(self):
        return decode_cstring(self.tail[:32])


@frozen
class ExperimentDefinition:
    fields: tuple[str, ...]
    _struct = struct.Struct("<LL")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        _, nchars = cursor.unpack(cls._struct)
        return cls(split_fields(cursor.read(nchars).decode("windows-1252")))


@frozen
class ImageDefinition:
    width: int
    height: int
    title: str
    _struct = struct.Struct("<LL96x32s")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        width, height, title = cursor.unpack(cls._struct)
        return cls(width, height, decode_cstring(title))


@frozen
class ExperimentData:
    pixel_count: int
    row: int
    col: int
    flag_count: int
    x: float
    y: float
    unknown1: float
    unknown2: float
    nan1: float
    nan2: float
    _struct = struct.Struct("<LLLLdddddd")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        if header.size != cls._struct.size + HEADER_SIZE:
            raise MalformedRecord("Experiment data is not 80 bytes.", header)
        return cls(*cursor.unpack(cls._struct))


@frozen
class ImageData:
    values: np.ndarray = field(eq=False, repr=lambda a: f"<{a.size} floats>")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        return cls(cursor.floats((header.size - HEADER_SIZE) // 4))


@frozen
class VolumeOffset:
    leading_point: int
    line: int
    x: int
    vset_pointer: int
    _struct = struct.Struct("<LLqq")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        return cls(*cursor.unpack(cls._struct))


@frozen
class VolumeSet:
    point_count: int
    y: int
    x: int
    # 2 for ext;ret;dwell force maps, other values seen in fast force maps
    unknown: int = field(repr=bin)
    last_pointer: int
    next_pointer: int
    _struct = struct.Struct("<LLLLqq")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        return cls(*cursor.unpack(cls._struct))


@frozen
class VolumeName:
    point_count: int
    y: int
    x: int
    title: str
    _struct = struct.Struct("<LLLL")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        point_count, y, x, nchars = cursor.unpack(cls._struct)
        return cls(point_count, y, x, cursor.read(nchars).decode("windows-1252"))


@frozen
class VolumeData:
    point_count: int
    y: int
    x: int
    data_size: int
    channel: int
    seg_ends: tuple[int, int, int]
    segments: tuple[np.ndarray, ...] = field(eq=False, repr=False)
    _struct = struct.Struct("<LLLLqLLL4x")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        point_count, y, x, data_size, channel, *seg_ends = cursor.unpack(cls._struct)
        if data_size * 4 != header.size - HEADER_SIZE - cls._struct.size:
            raise MalformedRecord("Volume data size mismatch.", header, data_size)
        if max(seg_ends) > data_size:
            raise MalformedRecord("Segments run past the volume data.", header, seg_ends)
        # segment ends are cumulative float counts from the start of the data
        array_offset = cursor.offset
        segments = []
        start = 0
        for stop in seg_ends:
            segments.append(
                cursor.floats_at(array_offset + start * 4, max(stop - start, 0))
            )
            start = stop
        return cls(point_count, y, x, data_size, channel, tuple(seg_ends), tuple(segments))

    @property
    def data(self) -> np.ndarray:
        return np.concatenate(self.segments)


@frozen
class TextOffset:
    index: int
    pointer: int
    _struct = struct.Struct("<qq")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        return cls(*cursor.unpack(cls._struct))


@frozen
class SetCount:
    count: int
    _struct = struct.Struct("<Q")

    @classmethod
    def unpack(cls, header: Header, cursor: Cursor):
        return cls(*cursor.unpack(cls._struct))


Payload: TypeAlias = (
    Pointer
    | Text
    | Thumbnail
    | VolumeDefinition
    | VolumeChannel
    | ExperimentDefinition
    | ImageDefinition
    | ExperimentData
    | ImageData
    | VolumeOffset
    | VolumeSet
    | VolumeName
    | VolumeData
    | TextOffset
    | SetCount
    | None
)

###############################################
################## Records ####################
###############################################


@frozen
class BlankSlot:
    """A zero size entry in a table of contents."""

    offset: int


@frozen
class Record:
    offset: int
    tag: str
    declared_size: int
    misc: int = field(repr=hex)
    payload: Payload = None
    children: tuple["Record | BlankSlot", ...] = field(
        default=(), repr=lambda x: f"<{len(x)} entries>"
    )
    checksum: int = field(default=0, repr=False)
    initial_size: int = field(default=0, repr=False)

    @property
    def end(self):
        return self.offset + self.declared_size

    @property
    def entries(self):
        """Children that are not blank slots."""
        return [child for child in self.children if isinstance(child, Record)]

    def verify_checksum(self, data: Buffer):
        # ImHex poly 0x4c11db7 init 0xffffffff xor out 0xffffffff reflect in and out
        crc = zlib.crc32(memoryview(data)[self.offset + 4 : self.offset + self.initial_size])
        if self.checksum != crc:
            raise MalformedRecord(
                f"Invalid checksum. Expected {self.checksum:X}, got {crc:X}.", self
            )
        return True


Child: TypeAlias = Record | BlankSlot
LeafDecoder: TypeAlias = Callable[[Header, Cursor], tuple[Payload, int]]


def _marker(header: Header, cursor: Cursor):
    return None, header.size


def _keeps_size(unpack) -> LeafDecoder:
    def decoder(header: Header, cursor: Cursor):
        return unpack(header, cursor), header.size

    return decoder


def _decode_thumbnail(header: Header, cursor: Cursor):
    if header.size == POINTER_ENTRY_SIZE:
        return Pointer.unpack(header, cursor), THUMBNAIL_POINTER_SIZE
    thumbnail = Thumbnail.unpack(header, cursor)
    return thumbnail, 32 + thumbnail.width * thumbnail.height


def _decode_imag(header: Header, cursor: Cursor):
    # the 32 byte form is a table of contents and never gets here
    if header.size == POINTER_ENTRY_SIZE:
        return Pointer.unpack(header, cursor), header.size
    warnings.warn(
        f"IMAG at {header.offset} has unexpected size {header.size}, "
        "leaving it undecoded.",
        stacklevel=2,
    )
    return None, header.size


_LEAF_DECODERS: dict[str, LeafDecoder] = {
    **dict.fromkeys(MARKER_TAGS, _marker),
    "TEXT": _keeps_size(Text.unpack),
    "THMB": _decode_thumbnail,
    "IMAG": _decode_imag,
    "VOLM": _keeps_size(Pointer.unpack),  # file table entry pointing at a VOLM
    "VDEF": _keeps_size(VolumeDefinition.unpack),
    "VCHN": _keeps_size(VolumeChannel.unpack),
    "XDEF": _keeps_size(ExperimentDefinition.unpack),
    "NEXT": _keeps_size(Pointer.unpack),
    "IDEF": _keeps_size(ImageDefinition.unpack),
    "XDAT": _keeps_size(ExperimentData.unpack),
    "IDAT": _keeps_size(ImageData.unpack),
    "VOFF": _keeps_size(VolumeOffset.unpack),
    "VSET": _keeps_size(VolumeSet.unpack),
    "VNAM": _keeps_size(VolumeName.unpack),
    "VDAT": _keeps_size(VolumeData.unpack),
    "TOFF": _keeps_size(TextOffset.unpack),
    "NSET": _keeps_size(SetCount.unpack),
}


def is_container(header: Header):
    if header.tag == "IMAG":
        return header.size == TOC_HEADER_SIZE
    if header.tag == "VOLM":
        return header.size != POINTER_ENTRY_SIZE
    return header.tag in CONTAINER_TAGS


@define
class _OpenTable:
    """A table of contents whose entries are still being decoded."""

    header: Header
    size: int
    slots: Iterator[int] = field(repr=False)
    children: list[Child] = field(factory=list, repr=False)

    @classmethod
    def unpack(cls, data: Buffer, header: Header):
        cursor = Cursor.after_header(data, header.offset)
        total_size, nentries, stride = cursor.unpack(TOC_STRUCT)
        if total_size != nentries * stride + TOC_HEADER_SIZE:
            raise MalformedRecord(
                "Table of contents size mismatch.", header, (total_size, nentries, stride)
            )
        if nentries and stride < HEADER_SIZE:
            raise MalformedRecord("Table of contents stride too small.", header, stride)
        if header.offset + total_size > len(data):
            raise MalformedRecord("Table of contents past end of buffer.", header)
        # only the table decides where its entries are, not the entries' own sizes
        start = cursor.offset
        return cls(header, total_size, (start + i * stride for i in range(nentries)))

    def close(self):
        header = self.header
        return Record(
            header.offset,
            header.tag,
            self.size,
            header.misc,
            None,
            tuple(self.children),
            header.checksum,
            header.size,
        )


def _decode_leaf(data: Buffer, header: Header) -> Record:
    try:
        decoder = _LEAF_DECODERS[header.tag]
    except KeyError:
        raise UnknownTag(f"{header.tag!r} unrecognized.", header) from None
    payload, size = decoder(header, Cursor.after_header(data, header.offset))
    if size < HEADER_SIZE:
        raise MalformedRecord("Record smaller than its header.", header, size)
    if header.offset + size > len(data):
        raise MalformedRecord("Record extends past end of buffer.", header, size)
    return Record(
        header.offset,
        header.tag,
        size,
        header.misc,
        payload,
        (),
        header.checksum,
        header.size,
    )


def _decode_header(data: Buffer, header: Header) -> Record:
    if not is_container(header):
        return _decode_leaf(data, header)
    # Tables nest arbitrarily deep and may overlap, so keep our own stack and
    # decode each offset once. Entries always lie past their table's header,
    # so an offset is never reached again while its own table is open.
    decoded: dict[int, Child] = {}
    stack = [_OpenTable.unpack(data, header)]
    while True:
        table = stack[-1]
        offset = next(table.slots, None)
        if offset is None:
            stack.pop()
            record = decoded[table.header.offset] = table.close()
            if not stack:
                return record
            stack[-1].children.append(record)
            continue
        if offset in decoded:
            table.children.append(decoded[offset])
            continue
        entry_header = Header.unpack(data, offset)
        if not entry_header.size:
            table.children.append(BlankSlot(offset))
        elif is_container(entry_header):
            stack.append(_OpenTable.unpack(data, entry_header))
        else:
            record = decoded[offset] = _decode_leaf(data, entry_header)
            table.children.append(record)


###############################################
################## Public #####################
###############################################


def decode(data: Buffer, offset: int = 0) -> Record:
    """Decode the record whose header starts at offset.

    The record spans ``declared_size`` bytes; add that to offset to find the
    next record. Raises ZeroSizeRecord for a padding slot, and
    MalformedRecord (or its subclass UnknownTag) for anything we can't read.
    """
    header = Header.unpack(data, offset)
    if not header.size:
        raise ZeroSizeRecord("Size zero record.", offset)
    return _decode_header(data, header)


def iter_records(data: Buffer) -> Iterator[Record]:
    """Iterate over top-level records in on-disk order."""
    offset = 0
    # the last byte of a file is never the start of a record
    while offset < len(data) - 1:
        record = decode(data, offset)
        yield record
        offset = record.end


def decode_all(data: Buffer) -> list[Record]:
    return list(iter_records(data))


def walk(records: Iterable[Child]) -> Iterator[Record]:
    """Depth-first iteration over a forest, skipping blank slots.

    A record shared by overlapping tables is yielded only the first time."""
    seen = set()
    stack = [iter(records)]
    while stack:
        for record in stack[-1]:
            if isinstance(record, BlankSlot) or id(record) in seen:
                continue
            seen.add(id(record))
            yield record
            stack.append(iter(record.children))
            break
        else:
            stack.pop()
