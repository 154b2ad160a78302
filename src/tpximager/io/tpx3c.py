"""
tpximager.io.tpx3c

Writer for centroided captures (``.tpx3c``): one 0xB hit packet per
cluster, followed by a 0xC record when the cluster has more than one member,
with a TDC packet inserted whenever the trigger changes. EventReader reads
these files back as HIT_DTYPE blocks, so re-clustering is skipped.

Precision of the round trip
---------------------------
- x, y: pixel plus a sub-pixel offset in 1/255 steps (rounded down, so the
  pixel a centroid falls in is preserved)
- toa: 1.5625 ns steps; times decoded from a capture survive exactly
- tot: 25 ns steps, up to 2**34 * 25 ns
- size: up to 65535
- trigger: 3.125 ns steps. A hit with no trigger that follows a triggered hit
  inherits that trigger.
"""
from __future__ import annotations
from pathlib import Path

import numpy as np

from tpximager.io.tpx3 import HIT_LIMIT, TDC_LIMIT, TAG_HIT
from tpximager.physics.events import NO_TRIGGER

_U = np.uint64


def encode_hit_words(x, y, toa, tot) -> np.ndarray:
    """0xB packets for integer pixel coordinates, ToA [ps] and ToT [ns]."""
    col = np.asarray(x, dtype=np.uint64)
    row = np.asarray(y, dtype=np.uint64)
    t = np.asarray(toa, dtype=np.int64) % HIT_LIMIT
    spidr, rem = np.divmod(t, 409_600_000)
    # smallest 18-bit step whose floor(k * 1562.5) reaches rem
    k = -((-2 * rem) // 3125)
    spidr = (spidr + (k >> 18)).astype(np.uint64) & _U(0xFFFF)
    k = k.astype(np.uint64) & _U(0x3FFFF)
    tot_raw = np.asarray(tot, dtype=np.uint64) // _U(25)
    pix = ((col % _U(2)) << _U(2)) | (row % _U(4))
    return (
        (_U(TAG_HIT) << _U(60))
        | ((col - col % _U(2)) << _U(52))
        | ((row - row % _U(4)) << _U(45))
        | (pix << _U(44))
        | ((k >> _U(4)) << _U(30))
        | ((tot_raw & _U(0x3FF)) << _U(20))
        | ((~k & _U(0xF)) << _U(16))
        | spidr
    )


def encode_centroid_words(x_offset, y_offset, tot, size) -> np.ndarray:
    """0xC records: offsets in 1/255 pixel, ToT [ns] above the 10-bit hit field, cluster size."""
    tot_high = (np.asarray(tot, dtype=np.uint64) // _U(25)) >> _U(10)
    return (
        (_U(0xCA) << _U(56))
        | (np.asarray(x_offset, dtype=np.uint64) << _U(48))
        | (np.asarray(y_offset, dtype=np.uint64) << _U(40))
        | ((tot_high & _U(0xFF_FFFF)) << _U(16))
        | np.minimum(np.asarray(size, dtype=np.uint64), _U(0xFFFF))
    )


def encode_tdc_words(t_ps, counter) -> np.ndarray:
    """0x6A packets for trigger times [ps]; kept to 3.125 ns (no fine-time bits)."""
    q = (np.asarray(t_ps, dtype=np.int64) % TDC_LIMIT) // 25
    coarse, r = np.divmod(q, 1000)
    upper = ((r * 4096) // 1000) & 0x0E00
    return (
        (_U(0x6A) << _U(56))
        | ((np.asarray(counter, dtype=np.uint64) & _U(0xFFF)) << _U(44))
        | (coarse.astype(np.uint64) << _U(12))
        | upper.astype(np.uint64)
        | _U(1 << 5)
    )


def _effective_triggers(trigger: np.ndarray, current: int) -> np.ndarray:
    """Forward-fill NO_TRIGGER entries with the trigger already in force."""
    pos = np.where(trigger != NO_TRIGGER, np.arange(trigger.size), -1)
    pos = np.maximum.accumulate(pos) if pos.size else pos
    return np.where(pos >= 0, trigger[np.maximum(pos, 0)], current)


def encode_hits(hits: np.ndarray, current_trigger: int = NO_TRIGGER, tdc_count: int = 0) -> tuple[np.ndarray, int, int]:
    """
    Pack a HIT_DTYPE array into .tpx3c records.

    Returns (words, trigger in force after the last hit, TDC packets written
    so far) so a caller can continue the stream.
    """
    n = hits.size
    if n == 0:
        return np.empty(0, dtype=np.uint64), current_trigger, tdc_count

    trig = _effective_triggers(hits["trigger"].astype(np.int64), current_trigger)
    before = np.concatenate(([current_trigger], trig[:-1]))
    new_tdc = (trig != before) & (trig != NO_TRIGGER)
    multi = hits["size"] > 1

    per_hit = 1 + new_tdc.astype(np.int64) + multi.astype(np.int64)
    starts = np.cumsum(per_hit) - per_hit
    hit_at = starts + new_tdc

    col = np.clip(np.floor(hits["x"]), 0, 255)
    row = np.clip(np.floor(hits["y"]), 0, 255)
    words = np.empty(int(per_hit.sum()), dtype=np.uint64)
    words[hit_at] = encode_hit_words(col, row, hits["toa"], hits["tot"])

    n_tdc = int(new_tdc.sum())
    if n_tdc:
        words[starts[new_tdc]] = encode_tdc_words(trig[new_tdc], np.arange(tdc_count, tdc_count + n_tdc))
    if multi.any():
        x_off = np.floor((hits["x"][multi] - col[multi]) * 255).clip(0, 254)
        y_off = np.floor((hits["y"][multi] - row[multi]) * 255).clip(0, 254)
        words[hit_at[multi] + 1] = encode_centroid_words(x_off, y_off, hits["tot"][multi], hits["size"][multi])
    return words, int(trig[-1]), tdc_count + n_tdc


class CentroidWriter:
    """
    Streams HIT_DTYPE batches into a .tpx3c file.

        with CentroidWriter(out / "run.tpx3c") as w:
            for hits in batches:
                w.write(hits)
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.hits_written = 0
        self.records_written = 0
        self._trigger = NO_TRIGGER
        self._tdc_count = 0
        self._f = None

    def __enter__(self) -> "CentroidWriter":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._f = open(self.path, "wb")

    def write(self, hits: np.ndarray) -> None:
        if self._f is None:
            raise ValueError(f"{self.path} is not open for writing")
        words, self._trigger, self._tdc_count = encode_hits(hits, self._trigger, self._tdc_count)
        words.astype("<u8").tofile(self._f)
        self.hits_written += int(hits.size)
        self.records_written += int(words.size)

    def close(self) -> None:
        if self._f is not None:
            self._f.close()
            self._f = None


def write_centroided(path: str | Path, hits: np.ndarray) -> Path:
    """Write one HIT_DTYPE array as a complete .tpx3c file."""
    with CentroidWriter(path) as w:
        w.write(hits)
    return w.path
