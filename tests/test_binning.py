import numpy as np
import pytest

from tpximager.imaging.binning import (
    BinningConfig,
    HistogramBuilder,
    Spectrum,
    TimeBinner,
    binning_time,
    find_peaks,
    resolve_reference,
)
from tpximager.io.tpx3 import HIT_LIMIT
from tpximager.physics.hits import HIT_DTYPE


def _hits(toa, trigger=None):
    toa = np.asarray(toa, dtype=np.int64)
    arr = np.zeros(toa.size, dtype=HIT_DTYPE)
    arr["toa"] = toa
    arr["trigger"] = -1 if trigger is None else np.asarray(trigger, dtype=np.int64)
    arr["size"] = 1
    return arr


def test_bin_index_is_floor_division():
    b = TimeBinner(1000, origin_ps=500)
    assert b.bin_index([500, 1499, 1500, 499, -501]).tolist() == [0, 0, 1, -1, -2]
    assert int(b.nominal_time(3)) == 3500


def test_labels_use_label_unit_with_one_decimal():
    b = TimeBinner(1_000_000, label_unit="ns")
    assert b.label(3) == 3000.0
    assert b.label_str(3) == "3000.0"
    assert TimeBinner(1_500_000, label_unit="us").label_str(1) == "1.5"


def test_zero_bin_width_is_rejected():
    with pytest.raises(ValueError):
        TimeBinner(0)
    with pytest.raises(ValueError):
        BinningConfig(bin_width_ps=0)


def test_absolute_reference_bins_raw_toa():
    t, valid = binning_time(_hits([0, 10, 20]), BinningConfig(), "absolute")
    assert t.tolist() == [0, 10, 20]
    assert valid.all()


def test_trigger_reference_uses_time_of_flight():
    hits = _hits([1_500, 900, 5_000, 7_000], trigger=[1_000, 1_000, -1, 2_000])
    t, valid = binning_time(hits, BinningConfig(), "trigger")
    assert t[[0, 3]].tolist() == [500, 5_000]
    assert valid.tolist() == [True, False, False, True]  # negative, untriggered dropped


def test_time_of_flight_folds_pulse_length_and_clock_periods():
    hits = _hits([2_500 + 1_000, 100], trigger=[1_000, HIT_LIMIT + 50])
    t, valid = binning_time(hits, BinningConfig(tof_pulse_length_ps=1_000), "trigger")
    assert t.tolist() == [500, 50]
    assert valid.all()


def test_auto_reference_depends_on_triggers():
    assert resolve_reference("auto", True) == "trigger"
    assert resolve_reference("auto", False) == "absolute"
    assert resolve_reference("absolute", True) == "absolute"


def test_spectrum_accumulates_at_full_resolution():
    s = Spectrum(10)
    s.add(np.array([0, 5, 12, 41, 49]))
    assert s.times().tolist() == [0, 10, 40]
    assert s.counts().tolist() == [2, 1, 2]
    assert s.total == 5


def test_spectrum_merge_is_order_independent():
    a, b = Spectrum(10), Spectrum(10)
    a.add(np.array([0, 10, 20]))
    b.add(np.array([10, 30]))
    ab, ba = a.merge(b), b.merge(a)
    assert ab.times().tolist() == ba.times().tolist() == [0, 10, 20, 30]
    assert ab.counts().tolist() == ba.counts().tolist() == [1, 2, 1, 1]
    with pytest.raises(ValueError):
        a.merge(Spectrum(5))


def test_zero_padding_brackets_peaks():
    s = Spectrum(10)
    s.add(np.array([0, 10, 10, 40, 40, 40]))
    t, c = s.zero_padded()
    assert t.tolist() == [-10, 0, 10, 20, 30, 40, 50]
    assert c.tolist() == [0, 1, 2, 0, 0, 3, 0]


def test_dense_spectrum_fills_gaps():
    s = Spectrum(10)
    s.add(np.array([20, 50]))
    t, c = s.dense()
    assert t.tolist() == [20, 30, 40, 50]
    assert c.tolist() == [1, 0, 0, 1]
    assert s.dense(max_samples=3) is None


def test_find_peaks_locates_gaussian_peak():
    i = np.arange(400)
    trace = 10_000 * np.exp(-((i - 200) ** 2) / (2 * 10.0 ** 2))
    peaks = find_peaks(trace, window=15, min_intensity=5000)
    assert len(peaks) == 1
    assert abs(peaks[0] - 200) <= 1
    assert find_peaks(trace, window=15, min_intensity=20_000) == []


def test_histogram_builder_counts_drops():
    hits = _hits([1_500_000, 2_500_000, 500, 3_000_000], trigger=[0, 0, 1_000, -1])
    hb = HistogramBuilder(BinningConfig(bin_width_ps=1_000_000), has_triggers=True)
    bins, valid = hb.add(hits)
    assert valid.tolist() == [True, True, False, False]
    assert bins[valid].tolist() == [1, 2]
    assert hb.stats.untriggered == 1
    assert hb.stats.negative == 1
    assert hb.stats.per_bin == {1: 1, 2: 1}
    assert hb.spectrum.total == 2


def test_histogram_builder_is_order_insensitive():
    rng = np.random.default_rng(0)
    hits = _hits(rng.integers(0, 10**9, 1000))
    cfg = BinningConfig(bin_width_ps=10_000_000)
    a = HistogramBuilder(cfg, has_triggers=False)
    b = HistogramBuilder(cfg, has_triggers=False)
    a.add(hits)
    perm = rng.permutation(hits.size)
    b.add(hits[perm[:400]])
    b.add(hits[perm[400:]])
    assert a.stats.per_bin == b.stats.per_bin
    assert a.spectrum.counts().tolist() == b.spectrum.counts().tolist()
