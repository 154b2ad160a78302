# src/tpximager/physics/events.py
from __future__ import annotations
from dataclasses import dataclass

import numpy as np

# One row per decoded pixel trigger
EVENT_DTYPE = np.dtype([
    ("x",       np.uint16),
    ("y",       np.uint16),
    ("toa",     np.int64),   # ps, rollover-extended
    ("tot",     np.uint32),  # ns
    ("trigger", np.int64),   # ps, most recent TDC time; NO_TRIGGER before the first
])

NO_TRIGGER = -1


@dataclass(frozen=True, slots=True)
class RawEvent:
    """
    A single pixel trigger as decoded from the capture.

    x, y: pixel column / row
    toa: arrival time [ps]
    tot: time over threshold [ns] (pulse width / energy proxy)
    trigger: time of the most recent TDC packet [ps], NO_TRIGGER if none yet
    """
    x: int
    y: int
    toa: int
    tot: int
    trigger: int = NO_TRIGGER


def pixel_key(x, y, width: int = 256):
    """Pack (x, y) into a single integer; also the flat row-major grid index."""
    return y * width + x


def pixel_coords(key, width: int = 256):
    """Inverse of pixel_key."""
    return key % width, key // width
