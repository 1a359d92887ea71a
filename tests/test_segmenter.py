from array import array

import pytest

from recorder.segmenter import Segmenter, frames_to_ms, segment, target_frames


class TestTargetFrames:
    def test_two_seconds_at_48k_aligns_exactly(self):
        assert target_frames(48000, 2.0, 960) == 96000

    def test_rounds_to_block_multiple(self):
        assert target_frames(44100, 2.0, 960) == 92 * 960

    def test_minimum_duration_is_quarter_second(self):
        assert target_frames(48000, 0.1, 128) == target_frames(48000, 0.25, 128)
        assert target_frames(48000, 0.1, 128) == 94 * 128

    def test_never_below_one_block(self):
        assert target_frames(8000, 0.25, 4096) == 4096


class TestSegmentFunction:
    def test_does_not_mutate_buffer(self):
        buffer = array("f", [0.1, 0.2])
        segments, remainder = segment(buffer, array("f", [0.3, 0.4, 0.5]), 2)
        assert list(buffer) == pytest.approx([0.1, 0.2])
        assert [len(s) for s in segments] == [2, 2]
        assert list(remainder) == pytest.approx([0.5])

    def test_slices_oldest_first(self):
        segments, remainder = segment(array("f"), array("f", [1, 2, 3, 4, 5, 6, 7]), 3)
        assert [list(s) for s in segments] == [[1, 2, 3], [4, 5, 6]]
        assert list(remainder) == [7]

    def test_short_input_stays_buffered(self):
        segments, remainder = segment(array("f", [1]), array("f", [2]), 3)
        assert segments == []
        assert list(remainder) == [1, 2]


class TestSegmenter:
    def test_irregular_blocks_produce_fixed_chunks(self):
        seg = Segmenter(sample_rate=1000, target=500)
        produced = []
        fed = array("f")
        for size in (130, 700, 1, 399, 270):
            block = array("f", [float(len(fed) + i) for i in range(size)])
            fed.extend(block)
            produced.extend(seg.push(block))

        assert [s.frames for s in produced] == [500, 500, 500]
        assert seg.pending_frames == 0
        joined = array("f")
        for s in produced:
            joined.extend(s.samples)
        assert list(joined) == list(fed[:1500])

    def test_timing_is_contiguous(self):
        seg = Segmenter(sample_rate=48000, target=96000)
        full = seg.push(array("f", bytes(4 * 240000)))
        last = seg.flush()

        assert [(s.start_ms, s.end_ms) for s in full] == [(0.0, 2000.0), (2000.0, 4000.0)]
        assert last.start_ms == 4000.0
        assert last.end_ms == 5000.0
        assert last.frames == 48000

    def test_flush_empty_returns_none(self):
        seg = Segmenter(sample_rate=48000, target=960)
        seg.push(array("f", bytes(4 * 960)))
        assert seg.flush() is None

    def test_target_seconds(self):
        assert Segmenter(48000, 96000).target_seconds == 2.0


def test_frames_to_ms():
    assert frames_to_ms(480, 48000) == 10.0
