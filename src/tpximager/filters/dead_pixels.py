# src/tpximager/filters/dead_pixels.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional

import numpy as np

from tpximager.physics.events import pixel_key, pixel_coords

Statistic = Literal["median", "mean"]


@dataclass
class DeadPixelPolicy:
    enabled: bool = True
    min_count_floor: int = 1
    max_count_ceiling_multiplier: float = 10.0
    statistic: Statistic = "median"
    exposure_fraction: float = 0.5
    sample_events: Optional[int] = None  # warm-up prefix; None = full stream

    @classmethod
    def from_cfg(cls, cfg) -> "DeadPixelPolicy":
        return cls(**cfg.model_dump())


@dataclass
class DeadPixelDiagnostics:
    events_scanned: int = 0
    active_pixels: int = 0
    reference_count: float = 0.0
    hot_pixels: int = 0
    cold_pixels: int = 0

    @property
    def excluded(self) -> int:
        return self.hot_pixels + self.cold_pixels


@dataclass
class DeadPixelMask:
    """
    Read-only set of excluded pixels, stored as a flat boolean lookup table
    indexed by pixel key (y * width + x).
    """
    width: int
    height: int
    flags: np.ndarray = field(default=None)  # type: ignore[assignment]

    def __post_init__(self):
        if self.flags is None:
            self.flags = np.zeros(self.width * self.height, dtype=bool)
        self.flags = np.asarray(self.flags, dtype=bool).copy()
        self.flags.setflags(write=False)

    @classmethod
    def from_keys(cls, keys: Iterable[int], width: int = 256, height: int = 256) -> "DeadPixelMask":
        flags = np.zeros(width * height, dtype=bool)
        flags[np.fromiter(keys, dtype=np.int64)] = True
        return cls(width, height, flags)

    @property
    def count(self) -> int:
        return int(self.flags.sum())

    def keys(self) -> np.ndarray:
        return np.flatnonzero(self.flags)

    def contains(self, x: int, y: int) -> bool:
        return bool(self.flags[pixel_key(x, y, self.width)])

    def union(self, other: "DeadPixelMask") -> "DeadPixelMask":
        return DeadPixelMask(self.width, self.height, self.flags | other.flags)

    def as_image(self) -> np.ndarray:
        return self.flags.reshape(self.height, self.width)


# ---------------------------------------------------------------------------
# Counting
# ---------------------------------------------------------------------------

def count_pixels(events: np.ndarray, width: int = 256, height: int = 256) -> np.ndarray:
    """Per-pixel hit counts (flat, indexed by pixel key)."""
    keys = pixel_key(events["x"].astype(np.int64), events["y"].astype(np.int64), width)
    return np.bincount(keys, minlength=width * height).astype(np.int64)


def merge_counts(*counts: np.ndarray) -> np.ndarray:
    """Associative, order-independent reduction of per-block count maps."""
    out = np.zeros_like(counts[0], dtype=np.int64)
    for c in counts:
        out += c
    return out


def _neighbour_mean(img: np.ndarray) -> np.ndarray:
    """Mean of the in-bounds 8-neighbours of every pixel."""
    h, w = img.shape
    padded = np.pad(img.astype(np.float64), 1, mode="constant", constant_values=0.0)
    inside = np.pad(np.ones((h, w)), 1, mode="constant", constant_values=0.0)
    total = np.zeros((h, w))
    n = np.zeros((h, w))
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dx == 0 and dy == 0:
                continue
            total += padded[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
            n += inside[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
    return total / np.maximum(n, 1)


# ---------------------------------------------------------------------------
# Thresholding
# ---------------------------------------------------------------------------

def find_dead_pixels(
    counts: np.ndarray,
    width: int = 256,
    height: int = 256,
    policy: DeadPixelPolicy | None = None,
) -> tuple[DeadPixelMask, DeadPixelDiagnostics]:
    """
    Flag stuck/noisy and non-responsive pixels from accumulated counts.

    - hot:  count > max_count_ceiling_multiplier * reference
    - cold: count < min_count_floor while the 8-neighbour mean is at least
            exposure_fraction * reference
    where reference is the median (or mean) count of active (count > 0) pixels.
    """
    if policy is None:
        policy = DeadPixelPolicy()
    diag = DeadPixelDiagnostics()
    counts = np.asarray(counts, dtype=np.int64).reshape(-1)
    if counts.size != width * height:
        raise ValueError(f"counts has {counts.size} entries, expected {width * height}")

    active = counts[counts > 0]
    diag.active_pixels = int(active.size)
    if not policy.enabled or active.size == 0:
        return DeadPixelMask(width, height), diag

    ref = float(np.median(active)) if policy.statistic == "median" else float(active.mean())
    diag.reference_count = ref

    hot = counts > policy.max_count_ceiling_multiplier * ref
    img = counts.reshape(height, width)
    neigh = _neighbour_mean(img).reshape(-1)
    cold = (counts < policy.min_count_floor) & (neigh >= policy.exposure_fraction * ref)

    diag.hot_pixels = int(hot.sum())
    diag.cold_pixels = int(cold.sum())
    return DeadPixelMask(width, height, hot | cold), diag


class DeadPixelDetector:
    """
    Accumulates per-pixel counts over a stream of EVENT_DTYPE blocks (up to
    policy.sample_events events) and derives the mask.
    """

    def __init__(self, width: int = 256, height: int = 256, policy: DeadPixelPolicy | None = None):
        self.width = width
        self.height = height
        self.policy = policy or DeadPixelPolicy()
        self.counts = np.zeros(width * height, dtype=np.int64)
        self.events_scanned = 0

    @property
    def saturated(self) -> bool:
        limit = self.policy.sample_events
        return limit is not None and self.events_scanned >= limit

    def add(self, events: np.ndarray) -> None:
        if self.saturated:
            return
        limit = self.policy.sample_events
        if limit is not None:
            events = events[: limit - self.events_scanned]
        self.counts = merge_counts(self.counts, count_pixels(events, self.width, self.height))
        self.events_scanned += int(events.size)

    def scan(self, blocks: Iterable[np.ndarray]) -> tuple[DeadPixelMask, DeadPixelDiagnostics]:
        for block in blocks:
            self.add(block)
            if self.saturated:
                break
        return self.result()

    def result(self) -> tuple[DeadPixelMask, DeadPixelDiagnostics]:
        mask, diag = find_dead_pixels(self.counts, self.width, self.height, self.policy)
        diag.events_scanned = self.events_scanned
        return mask, diag


def apply_mask(events: np.ndarray, mask: DeadPixelMask) -> np.ndarray:
    """Drop events that land on excluded pixels (before clustering)."""
    if mask.count == 0:
        return events
    keys = pixel_key(events["x"].astype(np.int64), events["y"].astype(np.int64), mask.width)
    return events[~mask.flags[keys]]


def dead_pixel_list(mask: DeadPixelMask) -> list[tuple[int, int]]:
    return [tuple(int(v) for v in pixel_coords(k, mask.width)) for k in mask.keys()]
