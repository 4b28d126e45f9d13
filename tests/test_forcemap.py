import mmap

import numpy as np
import pytest

from ardf_forcemap.forcemap import ForceMap, MissingRequiredRecord
from ardf_forcemap.records import MalformedRecord, UnknownTag

import ardf_builder as ab


@pytest.fixture
def fmap():
    return ForceMap.build(ab.force_map_file())


def test_dimensions_and_channels(fmap):
    assert (fmap.width, fmap.height) == (2, 1)
    assert fmap.shape == (1, 2)
    assert fmap.channel_names == ("Raw", "Defl")
    assert fmap.segment_names == ("Ext", "Ret", "Away")


def test_notes(fmap):
    notes = fmap.notes
    assert notes["SpringConstant"] == "0.1"
    assert float(notes["InvOLS"]) == 5e-8
    assert "Force map notes" not in notes


def test_iter_indices(fmap):
    assert list(fmap.iter_indices()) == [(0, 0), (1, 0)]


def test_at_returns_every_channel(fmap):
    found = fmap.at(1, 0)
    assert len(found) == 2
    for channel, segments in enumerate(found):
        for segment, expected in zip(segments, ab.curve_segments(1, channel)):
            np.testing.assert_array_equal(segment, expected)


def test_at_with_channel_and_segment(fmap):
    (segments,) = fmap.at(0, 0, channel=1)
    assert len(segments) == 3
    np.testing.assert_array_equal(segments[2], [1.0])

    found = fmap.at(0, 0, segment=1)
    assert len(found) == 2
    for arr in found:
        np.testing.assert_array_equal(arr, [2.0, 3.0, 4.0])

    (arr,) = fmap.at(1, 0, segment=0, channel=0)
    np.testing.assert_array_equal(arr, [1.0, 1.0])


def test_at_channel_zero_is_a_filter(fmap):
    assert len(fmap.at(0, 0, channel=0)) == 1


def test_at_missing_pixel(fmap):
    assert fmap.at(5, 5) == []
    assert fmap.at(0, 0, channel=7) == []


def test_at_invalid_segment(fmap):
    with pytest.raises(ValueError):
        fmap.at(0, 0, segment=3)


def test_single_curve_lookup():
    buf = b"".join(
        [
            ab.record("ARDF"),
            ab.vdef(8, 8),
            ab.vdat(3, 7, 1, ([0.0, 1.0], [2.0, 3.0, 4.0], [5.0])),
        ]
    )
    fmap = ForceMap.build(buf)
    (segments,) = fmap.at(3, 7)
    assert [len(s) for s in segments] == [2, 3, 1]
    assert fmap.at(3, 7, channel=2) == []


def test_duplicate_matches_are_all_returned():
    buf = b"".join(
        [
            ab.vdef(1, 1),
            ab.vdat(0, 0, 0, ([1.0], [], [])),
            ab.vdat(0, 0, 0, ([2.0], [], [])),
        ]
    )
    found = ForceMap.build(buf).at(0, 0, segment=0)
    assert [arr.tolist() for arr in found] == [[1.0], [2.0]]


def test_missing_volume_definition():
    buf = ab.record("ARDF") + ab.vchn("Raw")
    with pytest.raises(MissingRequiredRecord):
        ForceMap.build(buf)


def test_first_volume_definition_wins_and_is_found_in_tables():
    nested = ab.vdef(4, 3)
    buf = ab.table("VOLM", [nested], stride=len(nested)) + ab.vdef(9, 9)
    fmap = ForceMap.build(buf)
    assert (fmap.width, fmap.height) == (4, 3)


def test_duplicate_channel_names_kept_in_order():
    buf = ab.vdef(1, 1) + ab.vchn("Defl") + ab.vchn("Raw") + ab.vchn("Defl")
    assert ForceMap.build(buf).channel_names == ("Defl", "Raw", "Defl")


def test_hard_failure_aborts_build():
    with pytest.raises(UnknownTag):
        ForceMap.build(ab.force_map_file() + ab.record("ZZZZ"))
    with pytest.raises(MalformedRecord):
        ForceMap.build(ab.force_map_file() + ab.vset(0, 0)[:24])


def test_blank_slots_do_not_fail_build():
    buf = ab.table("FTOC", [None, None, None], stride=24) + ab.vdef(2, 2)
    assert ForceMap.build(buf).width == 2


def test_progress_counts_every_byte():
    class Bar:
        n = 0

        def update(self, n):
            self.n += n

    buf = ab.force_map_file()
    bar = Bar()
    ForceMap.build(buf, pbar=bar)
    assert bar.n == len(buf)


def test_build_outlives_mmap(tmp_path):
    path = tmp_path / "map.ardf"
    path.write_bytes(ab.force_map_file())
    with open(path, "rb") as f:
        with mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ) as data:
            fmap = ForceMap.build(data)
    assert fmap.definition.segment_count == 3
    (segments,) = fmap.at(1, 0, channel=1)
    np.testing.assert_array_equal(segments[0], [1.0, 1.0])
