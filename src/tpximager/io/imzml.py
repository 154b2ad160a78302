from __future__ import annotations
from pathlib import Path
from typing import Optional

import numpy as np
from pyimzml.ImzMLWriter import ImzMLWriter

from tpximager.imaging.accumulate import AccumulatedImages


def write_imzml(path: str | Path, images: AccumulatedImages) -> Optional[Path]:
    """
    Export retained bins as an imzML/ibd pair, one spectrum per pixel with any
    counts. The spectral axis holds the bin labels (ascending), intensities the
    per-bin counts. Coordinates are 1-based (x = column, y = row).
    Returns None when there is no retained bin to export.
    """
    if not images.grids:
        return None
    path = Path(path).with_suffix(".imzML")
    mzs = np.array([g.label for g in images.grids], dtype=np.float64)
    cube = np.stack([g.counts for g in images.grids], axis=-1).astype(np.float32)  # (h, w, nbins)
    rows, cols = np.nonzero(cube.sum(axis=-1))
    with ImzMLWriter(str(path)) as w:
        for r, c in zip(rows.tolist(), cols.tolist()):
            w.addSpectrum(mzs, cube[r, c], (c + 1, r + 1))
    return path
