import numpy as np
import pytest

from tpximager.filters.dead_pixels import (
    DeadPixelDetector,
    DeadPixelMask,
    DeadPixelPolicy,
    apply_mask,
    count_pixels,
    dead_pixel_list,
    find_dead_pixels,
    merge_counts,
)
from tpximager.physics.events import EVENT_DTYPE, pixel_key

W = H = 16


def _events_from_counts(img: np.ndarray) -> np.ndarray:
    ys, xs = np.nonzero(img)
    rows = []
    t = 0
    for x, y in zip(xs.tolist(), ys.tolist()):
        for _ in range(int(img[y, x])):
            rows.append((x, y, t, 25, -1))
            t += 25_000
    return np.array(rows, dtype=EVENT_DTYPE)


def _exposed(rng, mean=120):
    return rng.poisson(mean, size=(H, W)).astype(np.int64)


def test_silent_pixel_in_bright_region_is_flagged():
    img = _exposed(np.random.default_rng(0))
    img[7, 9] = 0
    mask, diag = find_dead_pixels(img, W, H)
    assert mask.contains(9, 7)
    assert diag.cold_pixels == 1
    assert diag.hot_pixels == 0


def test_pixel_within_twice_the_median_is_kept():
    img = _exposed(np.random.default_rng(1))
    med = float(np.median(img))
    img[3, 3] = int(1.9 * med)
    img[4, 12] = int(0.6 * med)
    mask, diag = find_dead_pixels(img, W, H)
    assert not mask.contains(3, 3)
    assert not mask.contains(12, 4)
    assert diag.excluded == 0


def test_stuck_pixel_is_flagged():
    img = _exposed(np.random.default_rng(2))
    img[0, 0] = 50 * int(np.median(img))
    mask, diag = find_dead_pixels(img, W, H)
    assert mask.contains(0, 0)
    assert diag.hot_pixels == 1
    assert diag.reference_count == pytest.approx(float(np.median(img[img > 0])))


def test_unexposed_area_is_not_dead():
    img = np.zeros((H, W), dtype=np.int64)
    img[:, : W // 2] = 100  # only the left half sees the beam
    mask, diag = find_dead_pixels(img, W, H)
    assert mask.count == 0
    assert diag.active_pixels == H * W // 2


def test_policy_parameters_are_honoured():
    img = _exposed(np.random.default_rng(3))
    img[5, 5] = 4 * int(np.median(img))
    assert not find_dead_pixels(img, W, H)[0].contains(5, 5)
    strict = DeadPixelPolicy(max_count_ceiling_multiplier=3.0)
    assert find_dead_pixels(img, W, H, strict)[0].contains(5, 5)
    assert find_dead_pixels(img, W, H, DeadPixelPolicy(enabled=False))[0].count == 0


def test_count_maps_merge_associatively():
    img = _exposed(np.random.default_rng(4), mean=5)
    ev = _events_from_counts(img)
    whole = count_pixels(ev, W, H)
    parts = [count_pixels(ev[i::3], W, H) for i in range(3)]
    np.testing.assert_array_equal(whole, merge_counts(*parts))
    np.testing.assert_array_equal(whole, merge_counts(*parts[::-1]))
    np.testing.assert_array_equal(whole.reshape(H, W), img)


def test_detector_scans_blocks_and_stops_at_sample():
    img = _exposed(np.random.default_rng(5), mean=3)
    ev = _events_from_counts(img)
    det = DeadPixelDetector(W, H, DeadPixelPolicy(sample_events=100))
    mask, diag = det.scan(np.array_split(ev, 10))
    assert diag.events_scanned == 100
    assert det.counts.sum() == 100
    assert det.saturated


def test_mask_is_read_only_and_filters_events():
    mask = DeadPixelMask.from_keys([pixel_key(1, 1, W), pixel_key(2, 3, W)], W, H)
    with pytest.raises(ValueError):
        mask.flags[0] = True
    ev = np.array([(1, 1, 0, 25, -1), (2, 2, 1, 25, -1), (2, 3, 2, 25, -1)], dtype=EVENT_DTYPE)
    kept = apply_mask(ev, mask)
    assert kept["x"].tolist() == [2] and kept["y"].tolist() == [2]
    assert sorted(dead_pixel_list(mask)) == [(1, 1), (2, 3)]


def test_growing_the_mask_never_adds_events():
    rng = np.random.default_rng(6)
    ev = _events_from_counts(_exposed(rng, mean=4))
    small = DeadPixelMask.from_keys([pixel_key(1, 1, W)], W, H)
    big = small.union(DeadPixelMask.from_keys([pixel_key(8, 8, W), pixel_key(9, 2, W)], W, H))
    assert apply_mask(ev, big).size <= apply_mask(ev, small).size <= ev.size
