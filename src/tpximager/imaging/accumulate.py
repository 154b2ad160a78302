from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

from tpximager.imaging.binning import TimeBinner


@dataclass
class IntensityGrid:
    """2-D uint32 counts shaped (height, width); bin_index is None for the TIC."""
    counts: np.ndarray
    bin_index: Optional[int] = None
    label: Optional[float] = None
    nominal_time_ps: Optional[int] = None

    @property
    def total(self) -> int:
        return int(self.counts.sum(dtype=np.int64))


@dataclass
class AccumulatedImages:
    tic: IntensityGrid
    grids: List[IntensityGrid] = field(default_factory=list)  # retained bins, sorted by bin
    discarded: int = 0
    discarded_hits: int = 0


def pixel_indices(hits: np.ndarray, width: int, height: int) -> np.ndarray:
    """Flat row-major index of the pixel containing each centroid (clipped into the grid)."""
    ix = np.clip(np.floor(hits["x"]).astype(np.int64), 0, width - 1)
    iy = np.clip(np.floor(hits["y"]).astype(np.int64), 0, height - 1)
    return iy * width + ix


class SpatialAccumulator:
    """
    TIC grid plus one lazily created grid per TimeBin.

    Grids are flat index-addressed arrays filled with np.bincount, so
    accumulation and merge are plain sums and order-independent.
    """

    def __init__(self, width: int = 256, height: int = 256):
        self.width = int(width)
        self.height = int(height)
        self.tic = np.zeros(self.width * self.height, dtype=np.uint32)
        self.bins: Dict[int, np.ndarray] = {}

    def _new_grid(self) -> np.ndarray:
        return np.zeros(self.width * self.height, dtype=np.uint32)

    def add(self, hits: np.ndarray, bins: np.ndarray, valid: Optional[np.ndarray] = None) -> None:
        """
        Count every hit in the TIC; hits with valid[i] also count in grid bins[i].
        valid=None means every hit has a bin.
        """
        if hits.size == 0:
            return
        n = self.width * self.height
        idx = pixel_indices(hits, self.width, self.height)
        self.tic += np.bincount(idx, minlength=n).astype(np.uint32)

        bins = np.asarray(bins, dtype=np.int64)
        if valid is not None:
            idx, bins = idx[valid], bins[valid]
        if bins.size == 0:
            return
        order = np.argsort(bins, kind="stable")
        bins, idx = bins[order], idx[order]
        keys, starts = np.unique(bins, return_index=True)
        ends = np.append(starts[1:], bins.size)
        for b, s, e in zip(keys.tolist(), starts.tolist(), ends.tolist()):
            grid = self.bins.get(b)
            if grid is None:
                grid = self.bins[b] = self._new_grid()
            grid += np.bincount(idx[s:e], minlength=n).astype(np.uint32)

    def merge(self, other: "SpatialAccumulator") -> "SpatialAccumulator":
        if (other.width, other.height) != (self.width, self.height):
            raise ValueError("Cannot merge accumulators of different size")
        out = SpatialAccumulator(self.width, self.height)
        out.tic = self.tic + other.tic
        for src in (self.bins, other.bins):
            for b, g in src.items():
                if b in out.bins:
                    out.bins[b] = out.bins[b] + g
                else:
                    out.bins[b] = g.copy()
        return out

    def finalize(self, min_counts: int, binner: TimeBinner) -> AccumulatedImages:
        """Discard bin grids whose total is below min_counts; the TIC is always kept."""
        shape = (self.height, self.width)
        result = AccumulatedImages(tic=IntensityGrid(self.tic.reshape(shape).copy()))
        for b in sorted(self.bins):
            g = self.bins[b]
            total = int(g.sum(dtype=np.int64))
            if total < min_counts:
                result.discarded += 1
                result.discarded_hits += total
                continue
            result.grids.append(IntensityGrid(
                counts=g.reshape(shape).copy(),
                bin_index=b,
                label=binner.label(b),
                nominal_time_ps=int(binner.nominal_time(b)),
            ))
        return result
