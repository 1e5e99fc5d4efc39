import numpy as np
import pytest

from clipgrade.core.frames import frames_from_arrays
from clipgrade.core.grouping import group_frames, group_histograms, spans_to_metadata
from clipgrade.core.histogram import compute_histogram
from clipgrade.core.selector import assign_representatives, select_representative, select_sharpest

from fakes import ramp, solid


def assert_partition(groups, total):
    assert groups[0].start == 0
    assert groups[-1].end == total
    for prev, cur in zip(groups, groups[1:]):
        assert prev.end == cur.start
    assert all(g.size > 0 for g in groups)
    assert [g.index for g in groups] == list(range(len(groups)))


def test_hard_cut_splits_into_two_groups():
    arrays = [solid((20, 40, 200))] * 100 + [solid((200, 180, 10))] * 100
    groups = group_frames(frames_from_arrays(arrays))
    assert [(g.start, g.end) for g in groups] == [(0, 100), (100, 200)]


def test_static_scene_is_one_group():
    groups = group_frames(frames_from_arrays([solid((50, 60, 70))] * 300))
    assert len(groups) == 1
    assert (groups[0].start, groups[0].end) == (0, 300)


@pytest.mark.parametrize("seed", range(5))
def test_random_sequences_are_partitioned(seed):
    rng = np.random.default_rng(seed)
    palette = [solid(tuple(int(c) for c in rng.integers(0, 256, 3))) for _ in range(4)]
    arrays = [palette[int(i)] for i in rng.integers(0, 4, size=40)]
    groups = group_frames(frames_from_arrays(arrays), threshold=0.9)
    assert_partition(groups, len(arrays))


def test_single_frame_is_one_group():
    groups = group_frames(frames_from_arrays([ramp()]))
    assert [(g.start, g.end) for g in groups] == [(0, 1)]


def test_empty_input_raises():
    with pytest.raises(ValueError):
        group_frames([])


def test_out_of_range_threshold_falls_back():
    hists = [compute_histogram(solid(10))] * 3 + [compute_histogram(solid(200))] * 2
    assert len(group_histograms(hists, threshold=1.5)) == 2
    assert len(group_histograms(hists, threshold=0.0)) == 2


def test_midpoint_representative():
    groups = group_frames(frames_from_arrays([solid(1)] * 7 + [solid(200)] * 4))
    assert [select_representative(g) for g in groups] == [3, 9]
    assign_representatives(groups, [])
    meta = spans_to_metadata(groups)
    assert meta[0] == {"group": 0, "start": 0, "end": 7, "length": 7, "representative": 3}


def test_sharpest_prefers_detailed_frame_in_middle_third():
    flat = solid(128, 32, 32)
    detailed = np.zeros((32, 32, 3), dtype=np.uint8)
    detailed[::2, ::2] = 255
    arrays = [flat] * 9
    arrays[5] = detailed
    frames = frames_from_arrays(arrays)
    groups = group_histograms([compute_histogram(flat)] * 9)
    assert select_sharpest(groups[0], frames) == 5


def test_sharpest_keeps_midpoint_on_ties():
    frames = frames_from_arrays([solid(90)] * 9)
    groups = group_histograms([compute_histogram(solid(90))] * 9)
    assign_representatives(groups, frames, "sharpest")
    assert groups[0].representative == 4


def test_frames_and_streamed_histograms_agree():
    arrays = [solid((20, 40, 200))] * 4 + [solid((200, 180, 10))] * 3 + [ramp(16, 16, seed=1)] * 2
    frames = frames_from_arrays(arrays, 10.0)
    streamed = group_histograms(compute_histogram(a) for a in arrays)
    assert [(g.start, g.end) for g in streamed] == [(g.start, g.end) for g in group_frames(frames)]
    assert [(g.start, g.end) for g in streamed] == [(0, 4), (4, 7), (7, 9)]


def test_empty_histogram_stream_raises():
    with pytest.raises(ValueError):
        group_histograms(iter([]))
