"""ARDF Force Map

A read-only view over the decoded records of one ARDF buffer: the pixel grid
size, the channel names, and a brute force lookup of the three curve segments
stored for a pixel. Build it with `ForceMap.build` from any buffer; it is your
responsibility to keep an mmap open until `build` returns, but not after,
because the records own copies of everything they decoded.
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
from collections.abc import Iterable, Iterator
from typing import TypeAlias

import numpy as np

from attrs import frozen, field

from .records import Buffer, Record, VolumeDefinition, iter_records, walk

Index: TypeAlias = tuple[int, int]
Segments: TypeAlias = tuple[np.ndarray, np.ndarray, np.ndarray]
SEGMENT_INDICES = range(3)


class MissingRequiredRecord(ValueError):
    """A record the force map cannot do without is absent."""


def parse_ar_note(note: Iterable[str]):
    # The notes have a very regular key-value structure
    # convert to dict for later access
    return dict(
        line.split(":", 1) for line in note if ":" in line and "@Line:" not in line
    )


@frozen
class ForceMap:
    records: tuple[Record, ...] = field(repr=lambda x: f"<{len(x)} records>")
    width: int
    height: int
    channel_names: tuple[str, ...]
    definition: VolumeDefinition = field(repr=False)

    @classmethod
    def build(cls, data: Buffer, pbar=None) -> "ForceMap":
        """Decode all of data and index the result.

        pbar can be anything with a tqdm-like update method and is advanced by
        the byte size of each top-level record."""
        records = []
        for record in iter_records(data):
            records.append(record)
            if pbar is not None:
                pbar.update(record.declared_size)

        definition = None
        channel_names = []
        for record in walk(records):
            if record.tag == "VDEF" and definition is None:
                definition = record.payload
            elif record.tag == "VCHN":
                channel_names.append(record.payload.title)
        if definition is None:
            raise MissingRequiredRecord("No volume definition found.", len(records))

        return cls(
            tuple(records),
            definition.width,
            definition.height,
            tuple(channel_names),
            definition,
        )

    @property
    def shape(self) -> Index:
        return self.height, self.width

    @property
    def segment_names(self) -> tuple[str, ...]:
        return self.definition.fields

    @property
    def notes(self) -> dict[str, str]:
        lines = []
        for record in self.iter_records():
            if record.tag == "TEXT":
                lines.extend(record.payload.lines)
        return parse_ar_note(lines)

    def iter_records(self) -> Iterator[Record]:
        """Iterate over every record, depth first."""
        return walk(self.records)

    def iter_indices(self) -> Iterator[Index]:
        """Iterate over distinct (x, y) pixels with data in on-disk order."""
        seen = set()
        for record in self.iter_records():
            if record.tag != "VDAT":
                continue
            index = record.payload.x, record.payload.y
            if index not in seen:
                seen.add(index)
                yield index

    def at(
        self, x: int, y: int, segment: int | None = None, channel: int | None = None
    ) -> list[Segments] | list[np.ndarray]:
        """Get the curve segments stored for pixel (x, y).

        Every matching VDAT record contributes one entry, so a pixel with
        several channels gives several entries unless channel is given.
        With segment, each entry is that one array, otherwise a tuple of all
        three. This is a linear scan of the whole forest on every call.
        """
        if segment is not None and segment not in SEGMENT_INDICES:
            raise ValueError("Invalid segment:", segment)
        found = []
        for record in self.iter_records():
            if record.tag != "VDAT":
                continue
            vdat = record.payload
            if vdat.x != x or vdat.y != y:
                continue
            if channel is not None and vdat.channel != channel:
                continue
            found.append(vdat.segments if segment is None else vdat.segments[segment])
        return found
