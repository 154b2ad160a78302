import numpy as np

from tpximager.imaging.accumulate import SpatialAccumulator, pixel_indices
from tpximager.imaging.binning import TimeBinner
from tpximager.physics.hits import HIT_DTYPE


def _hits(xy):
    arr = np.zeros(len(xy), dtype=HIT_DTYPE)
    arr["x"] = [p[0] for p in xy]
    arr["y"] = [p[1] for p in xy]
    arr["size"] = 1
    return arr


def test_centroids_floor_and_clip_into_grid():
    idx = pixel_indices(_hits([(0.2, 0.7), (3.99, 1.0), (-0.3, 2.5), (7.9, 9.5)]), 8, 8)
    assert idx.tolist() == [0, 1 * 8 + 3, 2 * 8 + 0, 7 * 8 + 7]


def test_sub_threshold_bin_is_dropped_but_counted_in_tic():
    acc = SpatialAccumulator(8, 8)
    hits = _hits([(1, 1)] * 5 + [(2, 2)] * 2)
    bins = np.array([0] * 5 + [1] * 2)
    acc.add(hits, bins)
    images = acc.finalize(min_counts=3, binner=TimeBinner(1000))
    assert [g.bin_index for g in images.grids] == [0]
    assert images.discarded == 1
    assert images.discarded_hits == 2
    assert images.tic.total == 7
    assert images.tic.counts[2, 2] == 2
    assert images.grids[0].counts[1, 1] == 5


def test_bin_grids_are_created_lazily():
    acc = SpatialAccumulator(4, 4)
    acc.add(_hits([(0, 0), (1, 1)]), np.array([5, 9]))
    assert sorted(acc.bins) == [5, 9]


def test_unbinned_hits_only_reach_the_tic():
    acc = SpatialAccumulator(4, 4)
    acc.add(_hits([(0, 0), (1, 1), (2, 2)]), np.array([0, -7, 0]), valid=np.array([True, False, True]))
    assert sorted(acc.bins) == [0]
    assert int(acc.bins[0].sum()) == 2
    assert int(acc.tic.sum()) == 3


def test_retained_grids_carry_labels():
    acc = SpatialAccumulator(4, 4)
    acc.add(_hits([(0, 0)] * 3), np.array([2, 2, 2]))
    g = acc.finalize(0, TimeBinner(1_000_000, label_unit="ns")).grids[0]
    assert g.bin_index == 2
    assert g.label == 2000.0
    assert g.nominal_time_ps == 2_000_000
    assert g.counts.shape == (4, 4)
    assert g.counts.dtype == np.uint32


def test_merge_matches_single_accumulation():
    rng = np.random.default_rng(0)
    hits = _hits(list(zip(rng.uniform(0, 16, 500), rng.uniform(0, 16, 500))))
    bins = rng.integers(0, 6, 500)
    whole = SpatialAccumulator(16, 16)
    whole.add(hits, bins)
    a, b = SpatialAccumulator(16, 16), SpatialAccumulator(16, 16)
    a.add(hits[:123], bins[:123])
    b.add(hits[123:], bins[123:])
    for merged in (a.merge(b), b.merge(a)):
        np.testing.assert_array_equal(merged.tic, whole.tic)
        assert sorted(merged.bins) == sorted(whole.bins)
        for k in whole.bins:
            np.testing.assert_array_equal(merged.bins[k], whole.bins[k])
