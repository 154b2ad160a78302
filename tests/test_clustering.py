import numpy as np
import pytest

from tpximager.imaging.clustering import (
    ClusterConfig,
    ClusterDiagnostics,
    Clusterer,
    cluster_blocks,
    cluster_events,
    cluster_stream,
    last_safe_cut,
    partition_by_gaps,
)
from tpximager.physics.events import EVENT_DTYPE, RawEvent
from tpximager.physics.hits import HIT_DTYPE

TOL = 500_000


def _cluster(events, tol=TOL, weighting="tot"):
    return cluster_stream(events, ClusterConfig(time_tolerance_ps=tol, weighting=weighting))


def test_adjacent_events_within_tolerance_form_one_hit():
    hits = _cluster([RawEvent(5, 5, 1_000_000, 100), RawEvent(5, 6, 1_200_000, 100)])
    assert len(hits) == 1
    h = hits[0]
    assert (h.x, h.y) == (5.0, 5.5)
    assert h.toa == 1_000_000
    assert h.size == 2


def test_adjacent_events_beyond_tolerance_form_two_hits():
    hits = _cluster([RawEvent(5, 5, 1_000_000, 100), RawEvent(5, 6, 1_000_000 + TOL + 200_000, 100)])
    assert len(hits) == 2
    assert sorted((h.x, h.y) for h in hits) == [(5.0, 5.0), (5.0, 6.0)]


def test_exactly_at_tolerance_joins_one_tick_later_splits():
    at = _cluster([RawEvent(10, 10, 0, 25), RawEvent(11, 11, TOL, 25)])
    assert len(at) == 1
    beyond = _cluster([RawEvent(10, 10, 0, 25), RawEvent(11, 11, TOL + 1, 25)])
    assert len(beyond) == 2


def test_tolerance_is_measured_from_most_recent_member():
    events = [RawEvent(0, 0, 0, 25), RawEvent(1, 0, TOL, 25), RawEvent(2, 0, 2 * TOL, 25)]
    hits = _cluster(events)
    assert len(hits) == 1 and hits[0].size == 3


def test_isolated_event_is_emitted_unchanged():
    hits = _cluster([RawEvent(42, 17, 123_000, 250, trigger=100_000)])
    assert len(hits) == 1
    h = hits[0]
    assert (h.x, h.y, h.toa, h.tot, h.size, h.trigger) == (42.0, 17.0, 123_000, 250, 1, 100_000)


def test_non_adjacent_pixels_do_not_join():
    hits = _cluster([RawEvent(5, 5, 0, 25), RawEvent(7, 5, 0, 25), RawEvent(5, 7, 0, 25)])
    assert len(hits) == 3


def test_bridge_event_merges_two_open_clusters():
    hits = _cluster([RawEvent(0, 0, 0, 25), RawEvent(2, 0, 0, 25), RawEvent(1, 0, 25_000, 25)])
    assert len(hits) == 1
    assert hits[0].size == 3
    assert hits[0].x == pytest.approx(1.0)


def test_same_pixel_retrigger_joins():
    hits = _cluster([RawEvent(3, 3, 0, 25), RawEvent(3, 3, 100_000, 25)])
    assert len(hits) == 1 and hits[0].size == 2


def test_centroid_weighting():
    events = [RawEvent(0, 0, 0, 10), RawEvent(1, 0, 0, 30)]
    assert _cluster(events)[0].x == pytest.approx(0.75)
    assert _cluster(events, weighting="none")[0].x == pytest.approx(0.5)
    zero_tot = [RawEvent(0, 0, 0, 0), RawEvent(1, 0, 0, 0)]
    assert _cluster(zero_tot)[0].x == pytest.approx(0.5)


def test_representative_time_and_trigger_come_from_earliest_member():
    events = [RawEvent(0, 0, 1_000, 25, trigger=7), RawEvent(0, 1, 2_000, 25, trigger=9)]
    h = _cluster(events)[0]
    assert h.toa == 1_000
    assert h.trigger == 7
    assert h.tot == 50


def test_closing_is_lazy_and_driven_by_time():
    cl = Clusterer(ClusterConfig(time_tolerance_ps=TOL))
    assert cl.feed(1, 1, 0, 25) == []
    assert cl.feed(100, 100, 10, 25) == []
    assert cl.n_open == 2
    closed = cl.feed(50, 50, TOL + 11, 25)
    assert [(h.x, h.y) for h in closed] == [(1.0, 1.0), (100.0, 100.0)]
    assert cl.n_open == 1
    assert len(cl.flush()) == 1
    assert cl.n_open == 0


def test_out_of_order_feed_is_rejected():
    cl = Clusterer()
    cl.feed(0, 0, 1_000)
    with pytest.raises(ValueError):
        cl.feed(0, 0, 999)


def test_partitions_cut_only_at_wide_gaps():
    toa = np.array([0, 10, 20, 1000, 1010, 3000, 3001, 3002], dtype=np.int64)
    parts = partition_by_gaps(toa, tolerance=100, target_size=1)
    assert parts == [(0, 3), (3, 5), (5, 8)]
    assert partition_by_gaps(toa, tolerance=5000, target_size=1) == [(0, 8)]
    assert partition_by_gaps(toa, tolerance=100, target_size=100) == [(0, 8)]
    assert partition_by_gaps(toa[:0], 100, 10) == []


def _random_events(seed, n=3000):
    rng = np.random.default_rng(seed)
    arr = np.zeros(n, dtype=EVENT_DTYPE)
    arr["x"] = rng.integers(0, 12, n)
    arr["y"] = rng.integers(0, 12, n)
    arr["toa"] = np.cumsum(rng.integers(0, 2 * TOL, n))
    arr["tot"] = rng.integers(0, 40, n) * 25
    arr["trigger"] = -1
    return arr


def _assert_same_hits(a, b):
    assert a.dtype == HIT_DTYPE and b.dtype == HIT_DTYPE
    for name in HIT_DTYPE.names:
        np.testing.assert_array_equal(a[name], b[name])


def test_partitioning_does_not_change_hits():
    ev = _random_events(0)
    cfg = ClusterConfig(time_tolerance_ps=TOL)
    ref = Clusterer(cfg).cluster_array(ev)
    for chunk in (1, 17, 250, 10_000):
        hits, diag = cluster_events(ev, cfg, workers=0, chunk_events=chunk, progress=False)
        _assert_same_hits(ref, hits)
    assert diag.events_in == ev.size


def test_process_pool_matches_single_process():
    ev = _random_events(1)
    cfg = ClusterConfig(time_tolerance_ps=TOL)
    single, _ = cluster_events(ev, cfg, workers=0, progress=False)
    pooled, diag = cluster_events(ev, cfg, workers=2, chunk_events=200, progress=False, min_parallel_events=0)
    assert diag.partitions > 1
    _assert_same_hits(single, pooled)


def test_unsorted_input_is_sorted_stably():
    ev = _random_events(2, n=500)
    shuffled = ev[np.random.default_rng(3).permutation(ev.size)]
    cfg = ClusterConfig(time_tolerance_ps=TOL)
    a, _ = cluster_events(ev, cfg, workers=0, progress=False)
    b, _ = cluster_events(shuffled, cfg, workers=0, progress=False)
    assert a.size == b.size
    np.testing.assert_array_equal(np.sort(a["toa"]), np.sort(b["toa"]))
    assert int(b["size"].sum()) == ev.size


def test_hit_count_accounts_for_every_event():
    ev = _random_events(4)
    hits, diag = cluster_events(ev, ClusterConfig(time_tolerance_ps=TOL), workers=0, progress=False)
    assert int(hits["size"].sum()) == ev.size
    assert diag.hits_out == ev.size - diag.merged_events
    assert diag.largest == int(hits["size"].max())


def test_empty_input():
    hits, diag = cluster_events(np.empty(0, dtype=EVENT_DTYPE), ClusterConfig(), workers=0, progress=False)
    assert hits.size == 0 and hits.dtype == HIT_DTYPE
    assert diag.hits_out == 0


def test_last_safe_cut_respects_reorder_window():
    toa = np.array([0, 10, 20, 1000, 1010, 3000], dtype=np.int64)
    assert last_safe_cut(toa, tolerance=100) == 5
    assert last_safe_cut(toa, tolerance=100, reorder_window=2000) == 3
    assert last_safe_cut(toa, tolerance=100, reorder_window=2500) == 0
    assert last_safe_cut(toa, tolerance=5000) == 0
    assert last_safe_cut(toa[:1], tolerance=100) == 0


def test_streamed_blocks_match_whole_array():
    ev = _random_events(5)
    cfg = ClusterConfig(time_tolerance_ps=TOL, reorder_window_ps=0)
    whole, _ = cluster_events(ev, cfg, workers=0, progress=False)
    for cuts in ([1, 40, 41, 900, 2500], list(range(7, ev.size, 7)), []):
        diag = ClusterDiagnostics()
        batches = list(cluster_blocks(np.split(ev, cuts), cfg, workers=0, progress=False, diag=diag))
        _assert_same_hits(whole, np.concatenate(batches))
        assert diag.events_in == ev.size
        assert diag.hits_out == whole.size
        assert diag.late_events == 0


def _events(rows):
    arr = np.zeros(len(rows), dtype=EVENT_DTYPE)
    for i, (x, toa) in enumerate(rows):
        arr[i] = (x, 0, toa, 25, -1)
    return arr


def test_events_older_than_the_carried_tail_are_counted_late():
    first = _events([(0, 0), (3, 10 * TOL), (6, 20 * TOL)])
    late = _events([(9, 5 * TOL)])
    diag = ClusterDiagnostics()
    cfg = ClusterConfig(time_tolerance_ps=TOL, reorder_window_ps=0)
    hits = np.concatenate(list(cluster_blocks([first, late], cfg, workers=0, progress=False, diag=diag)))
    assert diag.late_events == 1
    assert hits.size == 4

    # a window covering the disorder holds everything back until it is sorted
    diag = ClusterDiagnostics()
    cfg = ClusterConfig(time_tolerance_ps=TOL, reorder_window_ps=20 * TOL)
    hits = np.concatenate(list(cluster_blocks([first, late], cfg, workers=0, progress=False, diag=diag)))
    assert diag.late_events == 0
    whole, _ = cluster_events(np.concatenate((first, late)), cfg, workers=0, progress=False)
    _assert_same_hits(whole, hits)
