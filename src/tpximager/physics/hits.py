from __future__ import annotations
from dataclasses import dataclass

import numpy as np

from .events import NO_TRIGGER

# One row per centroided cluster
HIT_DTYPE = np.dtype([
    ("x",       np.float64),
    ("y",       np.float64),
    ("toa",     np.int64),
    ("tot",     np.uint64),
    ("size",    np.uint32),
    ("trigger", np.int64),
])


@dataclass(slots=True)
class Hit:
    """
    Centroided detection (one physical ion/photon arrival).

    x, y: centroid in pixel units (ToT-weighted or plain mean of members)
    toa: earliest member arrival time [ps]
    tot: summed ToT of the members [ns]
    size: number of raw events merged into this hit
    trigger: TDC time shared by the earliest member [ps]
    """
    x: float
    y: float
    toa: int
    tot: int = 0
    size: int = 1
    trigger: int = NO_TRIGGER

    def as_row(self) -> tuple:
        return (self.x, self.y, self.toa, self.tot, self.size, self.trigger)


def hits_to_array(hits) -> np.ndarray:
    return np.array([h.as_row() for h in hits], dtype=HIT_DTYPE)
