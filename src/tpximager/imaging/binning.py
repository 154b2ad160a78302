from __future__ import annotations
from dataclasses import dataclass, field
from typing import Literal, Optional

import numpy as np

from tpximager.io.tpx3 import HIT_LIMIT
from tpximager.physics.events import NO_TRIGGER

Reference = Literal["auto", "trigger", "absolute"]

_UNIT_PS = {"ps": 1.0, "ns": 1e3, "us": 1e6}


@dataclass
class BinningConfig:
    bin_width_ps: int = 1_000_000
    origin_ps: int = 0
    reference: Reference = "auto"
    tof_pulse_length_ps: Optional[int] = None
    drop_negative: bool = True
    spectrum_resolution_ps: int = 1563
    label_unit: Literal["ps", "ns", "us"] = "ns"

    def __post_init__(self):
        if self.bin_width_ps <= 0:
            raise ValueError("bin_width_ps must be > 0")
        if self.spectrum_resolution_ps <= 0:
            raise ValueError("spectrum_resolution_ps must be > 0")

    @classmethod
    def from_cfg(cls, cfg) -> "BinningConfig":
        return cls(**cfg.model_dump())


def resolve_reference(reference: Reference, has_triggers: bool) -> str:
    if reference == "auto":
        return "trigger" if has_triggers else "absolute"
    return reference


def binning_time(hits: np.ndarray, cfg: BinningConfig, reference: str = "trigger") -> tuple[np.ndarray, np.ndarray]:
    """
    Time used for binning each hit, and a mask of hits that get a bin.

    "absolute": the hit toa.
    "trigger":  toa minus the trigger time (time of flight), folded into the
                pulse length when one is configured. Hits recorded before the
                first trigger have no time of flight and are masked out.
    Negative times are masked out when cfg.drop_negative.
    """
    toa = hits["toa"].astype(np.int64)
    if reference == "absolute":
        t = toa.copy()
        valid = np.ones(t.size, dtype=bool)
    elif reference == "trigger":
        trig = hits["trigger"].astype(np.int64)
        valid = trig != NO_TRIGGER
        # hit and TDC clocks roll over with different periods; fold into the hit period
        half = HIT_LIMIT // 2
        t = (toa - trig + half) % HIT_LIMIT - half
        if cfg.tof_pulse_length_ps:
            t = np.fmod(t, cfg.tof_pulse_length_ps)
    else:
        raise ValueError(f"Unknown binning reference: {reference!r}")
    if cfg.drop_negative:
        valid &= t >= 0
    return t, valid


class TimeBinner:
    """bin = floor((t - origin) / bin_width); total over int64 times."""

    def __init__(self, bin_width_ps: int, origin_ps: int = 0, label_unit: str = "ns"):
        if bin_width_ps <= 0:
            raise ValueError("bin_width_ps must be > 0")
        self.bin_width = int(bin_width_ps)
        self.origin = int(origin_ps)
        self.label_unit = label_unit
        self._scale = _UNIT_PS[label_unit]

    @classmethod
    def from_config(cls, cfg: BinningConfig) -> "TimeBinner":
        return cls(cfg.bin_width_ps, cfg.origin_ps, cfg.label_unit)

    def bin_index(self, t):
        return np.floor_divide(np.asarray(t, dtype=np.int64) - self.origin, self.bin_width)

    def nominal_time(self, b):
        return self.origin + np.asarray(b, dtype=np.int64) * self.bin_width

    def label(self, b: int) -> float:
        return float(self.nominal_time(b)) / self._scale

    def label_str(self, b: int) -> str:
        return f"{self.label(b):.1f}"


class Spectrum:
    """
    Full-resolution time histogram: counts keyed by t // resolution.
    Accumulation is a plain sum, so add/merge order does not matter.
    """

    def __init__(self, resolution_ps: int = 1563):
        if resolution_ps <= 0:
            raise ValueError("resolution_ps must be > 0")
        self.resolution = int(resolution_ps)
        self._counts: dict[int, int] = {}

    def add(self, times: np.ndarray) -> None:
        times = np.asarray(times, dtype=np.int64)
        if times.size == 0:
            return
        keys, n = np.unique(np.floor_divide(times, self.resolution), return_counts=True)
        for k, c in zip(keys.tolist(), n.tolist()):
            self._counts[k] = self._counts.get(k, 0) + c

    def merge(self, other: "Spectrum") -> "Spectrum":
        if other.resolution != self.resolution:
            raise ValueError("Cannot merge spectra of different resolution")
        out = Spectrum(self.resolution)
        out._counts = dict(self._counts)
        for k, c in other._counts.items():
            out._counts[k] = out._counts.get(k, 0) + c
        return out

    def __len__(self) -> int:
        return len(self._counts)

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    def times(self) -> np.ndarray:
        return np.array(sorted(self._counts), dtype=np.int64) * self.resolution

    def counts(self) -> np.ndarray:
        return np.array([self._counts[k] for k in sorted(self._counts)], dtype=np.int64)

    def dense(self, max_samples: int = 5_000_000) -> Optional[tuple[np.ndarray, np.ndarray]]:
        """Evenly spaced (times, counts) from the first to the last populated bin; None if longer than max_samples."""
        if not self._counts:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype=np.int64)
        lo, hi = min(self._counts), max(self._counts)
        n = hi - lo + 1
        if n > max_samples:
            return None
        c = np.zeros(n, dtype=np.int64)
        for k, v in self._counts.items():
            c[k - lo] = v
        return (lo + np.arange(n, dtype=np.int64)) * self.resolution, c

    def zero_padded(self) -> tuple[np.ndarray, np.ndarray]:
        """
        (times, counts) with zero points inserted at the edges of every run of
        adjacent populated bins, so a line plot drops to the baseline between peaks.
        """
        times, counts = self.times(), self.counts()
        if times.size == 0:
            return times, counts
        r = self.resolution
        pt, pc = [int(times[0]) - r], [0]
        prev = int(times[0])
        for t, c in zip(times.tolist(), counts.tolist()):
            if t - prev > r:
                pt += [prev + r, t - r]
                pc += [0, 0]
            pt.append(t)
            pc.append(c)
            prev = t
        pt.append(prev + r)
        pc.append(0)
        return np.array(pt, dtype=np.int64), np.array(pc, dtype=np.int64)


def find_peaks(counts: np.ndarray, window: int = 15, min_intensity: float = 5000.0) -> list[int]:
    """
    Indices of peaks in a dense (evenly spaced) count trace.

    The first difference is smoothed twice with a moving average of `window`
    samples; a peak is a + to - crossing of the smoothed slope whose drop is at
    least 0.7 and whose trace value just past the crossing reaches
    `min_intensity`. The reported index is the trace maximum near the crossing.
    """
    c = np.asarray(counts, dtype=np.float64)
    if window < 1 or c.size < 2 * window + 8:
        return []
    kern = np.ones(window) / window
    s = np.convolve(np.diff(c), kern, mode="valid")
    s = np.convolve(s, kern, mode="valid")
    peaks: list[int] = []
    for i in range(s.size - 1):
        if not (s[i] > 0.0 and s[i + 1] < 0.0 and i > window + 3 and s[i] - s[i + 1] >= 0.7):
            continue
        ahead = i + window + 7
        if ahead < c.size and c[ahead] > min_intensity:
            seg = c[i:i + 2 * window]
            p = i + int(np.flatnonzero(seg == seg.max())[-1])
            if not peaks or peaks[-1] != p:
                peaks.append(p)
    return peaks


@dataclass
class BinStats:
    hits_in: int = 0
    binned: int = 0
    untriggered: int = 0
    negative: int = 0
    reference: str = ""
    per_bin: dict = field(default_factory=dict)  # bin -> count (coarse spectrum)


class HistogramBuilder:
    """
    Maps Hits to TimeBins and accumulates the full-resolution Spectrum and the
    coarse per-bin counts alongside. Hits without a valid binning time are
    flagged False in the mask returned by add(); they stay in the TIC but not
    in any bin or the spectrum.
    """

    def __init__(self, cfg: BinningConfig | None = None, has_triggers: bool = True):
        self.cfg = cfg or BinningConfig()
        self.reference = resolve_reference(self.cfg.reference, has_triggers)
        self.binner = TimeBinner.from_config(self.cfg)
        self.spectrum = Spectrum(self.cfg.spectrum_resolution_ps)
        self.stats = BinStats(reference=self.reference)

    def add(self, hits: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Returns (bins, valid) for the given HIT_DTYPE array."""
        t, valid = binning_time(hits, self.cfg, self.reference)
        st = self.stats
        st.hits_in += int(hits.size)
        if self.reference == "trigger":
            no_trig = hits["trigger"] == NO_TRIGGER
            st.untriggered += int(no_trig.sum())
            st.negative += int(((t < 0) & ~no_trig & ~valid).sum())
        else:
            st.negative += int((~valid).sum())

        bins = np.full(hits.size, -1, dtype=np.int64)
        bins[valid] = self.binner.bin_index(t[valid])
        st.binned += int(valid.sum())
        self.spectrum.add(t[valid])
        if valid.any():
            keys, n = np.unique(bins[valid], return_counts=True)
            for k, c in zip(keys.tolist(), n.tolist()):
                st.per_bin[k] = st.per_bin.get(k, 0) + c
        return bins, valid
