"""
tpximager.io.tpx3

Decoder for Timepix3 ``.tpx3`` captures: a flat sequence of 64-bit
little-endian packets, typed by the top nibble.

Packet types
------------
- "TPX3" chunk header (first four bytes are the ASCII magic), skipped. The
  chunk size sits in the top bytes, so headers are matched before the tag.
- 0xB  pixel hit     column, row, ToT and ToA of one pixel trigger
- 0x6  TDC/trigger   timestamp of an external trigger (e.g. extraction pulse)
- 0xC  centroid      sub-pixel offset, cluster size and ToT high bits for the
                     hit packet right before it (centroided ``.tpx3c`` only)
- 0x4  control       non-data marker, skipped
- 0x7  global time   non-data marker, skipped

Design goals
------------
- Stream the file in fixed-size blocks; decode each block with numpy.
- Extend the hit ToA (26.8 s period) and TDC (107 s period) counters across
  rollovers; roll state carries over block boundaries.
- Attach to every hit the time of the most recent TDC packet so downstream
  binning can work in time-of-flight.
- Fail loudly (FormatError with byte offset) on truncated or unknown records.

Entry points
------------
- class EventReader: lazy, restartable-from-start iterator over the capture.
  Raw captures yield EVENT_DTYPE blocks, centroided captures HIT_DTYPE blocks.
- function read_events(path): whole capture as one array.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

from tpximager.errors import FormatError
from tpximager.physics.events import EVENT_DTYPE, NO_TRIGGER, RawEvent
from tpximager.physics.hits import HIT_DTYPE, Hit

RECORD_SIZE = 8

TAG_HIT = 0xB
TAG_TDC = 0x6
TAG_CENTROID = 0xC
MARKER_TAGS = (0x4, 0x7)
HEADER_MAGIC = int.from_bytes(b"TPX3", "little")

CENTROIDED_SUFFIX = ".tpx3c"

HIT_LIMIT = 26_843_545_600_000   # ps, 2**16 * 409.6 us
TDC_LIMIT = 107_374_182_400_000  # ps, 2**32 * 25 ns

_U = np.uint64

# Per-hit extras carried by 0xC records, aligned with the hit packets
CENTROID_DTYPE = np.dtype([
    ("x_offset", np.uint8),   # sub-pixel offset, 1/255 pixel units
    ("y_offset", np.uint8),
    ("size",     np.uint16),
    ("tot",      np.uint64),  # ns, added to the 10-bit ToT of the hit packet
])


# ---------------------------------------------------------------------------
# Packet field extraction
# ---------------------------------------------------------------------------

def decode_hit_words(w: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Extract (x, y, tot_ns, toa_ps) from 0xB pixel packets.

    Double-column/super-pixel addressing is flattened into column/row;
    ToA combines the 16-bit SPIDR time (409.6 us units), the 14-bit coarse
    ToA (25 ns) and the inverted 4-bit fine ToA (1.5625 ns).
    """
    w = np.asarray(w, dtype=np.uint64)
    pix = (w >> _U(44)) & _U(0x7)
    x = ((w >> _U(52)) & _U(0xFE)) + (pix >> _U(2))
    y = ((w >> _U(45)) & _U(0xFC)) + (pix & _U(0x3))
    tot = ((w >> _U(20)) & _U(0x3FF)) * _U(25)
    ftoa = ~(w >> _U(16)) & _U(0xF)
    coarse = (((w >> _U(30)) & _U(0x3FFF)) << _U(4)) | ftoa
    toa = (w & _U(0xFFFF)) * _U(409_600_000) + ((coarse * _U(25_000)) >> _U(4))
    return x.astype(np.uint16), y.astype(np.uint16), tot.astype(np.uint32), toa.astype(np.int64)


def decode_tdc_words(w: np.ndarray) -> np.ndarray:
    """Extract the TDC timestamp [ps] from 0x6 packets (trigger counter is ignored)."""
    w = np.asarray(w, dtype=np.uint64)
    coarse = (w >> _U(12)) & _U(0xFFFF_FFFF)
    # nibble 0 wraps around, as in the firmware
    expansion = (((w >> _U(5)) & _U(0xF)) - _U(1)) << _U(9)
    fine = expansion // _U(12)
    trig = (w & _U(0x0E00)) | (fine & _U(0x01FF))
    exact = ((expansion % _U(12)) == 0) & (expansion < _U(1023))
    add_bit = (~exact).astype(np.uint64)
    tdc = (coarse * _U(1000) + (trig * _U(1000)) // _U(4096)) * _U(25) + add_bit
    return tdc.astype(np.int64)


def decode_centroid_words(w: np.ndarray) -> np.ndarray:
    """Extract offsets, cluster size and ToT high part from 0xC packets."""
    w = np.asarray(w, dtype=np.uint64)
    out = np.empty(w.size, dtype=CENTROID_DTYPE)
    out["x_offset"] = (w >> _U(48)) & _U(0xFF)
    out["y_offset"] = (w >> _U(40)) & _U(0xFF)
    out["tot"] = ((w >> _U(16)) & _U(0xFF_FFFF)) * _U(1024 * 25)
    out["size"] = w & _U(0xFFFF)
    return out


def extend_rollovers(raw: np.ndarray, limit: int, prev: Optional[int], rolls: int) -> tuple[np.ndarray, Optional[int], int]:
    """
    Unwrap a periodic counter.

    A backward jump larger than half the period counts as one rollover.
    Returns (extended values, last raw value, rollover count) so the caller
    can carry the state into the next block.
    """
    if raw.size == 0:
        return raw.astype(np.int64), prev, rolls
    raw = raw.astype(np.int64)
    start = raw[0] if prev is None else prev
    steps = np.diff(np.concatenate(([start], raw)))
    n_rolls = rolls + np.cumsum(steps < -(limit // 2))
    return raw + n_rolls * limit, int(raw[-1]), int(n_rolls[-1])


def centroids_to_hits(events: np.ndarray, extras: Optional[np.ndarray]) -> np.ndarray:
    """Combine decoded hit packets with their 0xC extras into a HIT_DTYPE array."""
    hits = np.empty(events.size, dtype=HIT_DTYPE)
    hits["toa"] = events["toa"]
    hits["trigger"] = events["trigger"]
    if extras is None:
        hits["x"] = events["x"]
        hits["y"] = events["y"]
        hits["tot"] = events["tot"]
        hits["size"] = 1
        return hits
    hits["x"] = events["x"] + extras["x_offset"] / 255.0
    hits["y"] = events["y"] + extras["y_offset"] / 255.0
    hits["tot"] = events["tot"].astype(np.uint64) + extras["tot"]
    hits["size"] = extras["size"]
    return hits


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------

@dataclass
class DecodeStats:
    records_read: int = 0
    hits_read: int = 0
    triggers_read: int = 0
    centroids_read: int = 0
    markers_skipped: int = 0
    headers_read: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class _RollState:
    hit_prev: Optional[int] = None
    hit_rolls: int = 0
    tdc_prev: Optional[int] = None
    tdc_rolls: int = 0
    last_trigger: int = NO_TRIGGER


class EventReader:
    """
    Lazy reader for a .tpx3 capture.

    Parameters
    ----------
    path : str | Path
    block_bytes : int
        Read size per block; must be a multiple of 8.
    width, height : int
        Pixel matrix size; hits outside it are rejected.
    skip_markers : bool
        If True, 0x4/0x7 marker records are counted and skipped; if False they
        raise FormatError.
    centroided : bool | None
        Read 0xC centroid records and yield HIT_DTYPE blocks. None picks it
        from the file suffix (``.tpx3c``). In a raw capture a 0xC record is a
        FormatError.

    Iterating the reader (or calling iter_blocks) always starts from the
    beginning of the file; `stats` describes the most recent pass.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        block_bytes: int = 8_000_000,
        width: int = 256,
        height: int = 256,
        skip_markers: bool = True,
        centroided: Optional[bool] = None,
    ) -> None:
        self.path = Path(path)
        if not self.path.is_file():
            raise FileNotFoundError(f"Capture file not found: {self.path}")
        if block_bytes <= 0 or block_bytes % RECORD_SIZE:
            raise ValueError("block_bytes must be a positive multiple of 8")
        self.block_bytes = int(block_bytes)
        self.width = int(width)
        self.height = int(height)
        self.skip_markers = skip_markers
        if centroided is None:
            centroided = self.path.suffix.lower() == CENTROIDED_SUFFIX
        self.centroided = bool(centroided)
        self.stats = DecodeStats()

    @property
    def dtype(self) -> np.dtype:
        return HIT_DTYPE if self.centroided else EVENT_DTYPE

    def _check_length(self) -> None:
        size = self.path.stat().st_size
        tail = size % RECORD_SIZE
        if tail:
            raise FormatError(
                f"{self.path.name}: length {size} is not a multiple of the {RECORD_SIZE}-byte record size",
                offset=size - tail,
            )

    def _iter_words(self) -> Iterator[tuple[int, np.ndarray]]:
        """(byte offset, words) per block; a 0xC record never starts a block apart from its hit."""
        self._check_length()
        offset = 0
        with open(self.path, "rb") as f:
            while True:
                buf = f.read(self.block_bytes)
                if not buf:
                    break
                if self.centroided and buf[-1] >> 4 == TAG_HIT:
                    nxt = f.read(RECORD_SIZE)
                    if nxt and nxt[-1] >> 4 == TAG_CENTROID:
                        buf += nxt
                    elif nxt:
                        f.seek(-len(nxt), 1)
                yield offset, np.frombuffer(buf, dtype="<u8")
                offset += len(buf)

    def iter_blocks(self) -> Iterator[np.ndarray]:
        """Yield one array per read block, in file order (see `dtype`)."""
        self.stats = DecodeStats()
        state = _RollState()
        for offset, words in self._iter_words():
            events, extras = self._decode_block(words, offset, state)
            if self.centroided:
                events = centroids_to_hits(events, extras)
            if events.size:
                yield events

    def __iter__(self) -> Iterator[RawEvent | Hit]:
        for block in self.iter_blocks():
            if self.centroided:
                for r in block:
                    yield Hit(float(r["x"]), float(r["y"]), int(r["toa"]), int(r["tot"]),
                              int(r["size"]), int(r["trigger"]))
            else:
                for r in block:
                    yield RawEvent(int(r["x"]), int(r["y"]), int(r["toa"]), int(r["tot"]), int(r["trigger"]))

    def contains_triggers(self) -> bool:
        """True if any TDC record exists; stops at the first one."""
        for _, words in self._iter_words():
            is_header = (words & _U(0xFFFF_FFFF)) == _U(HEADER_MAGIC)
            if (~is_header & ((words >> _U(60)) == _U(TAG_TDC))).any():
                return True
        return False

    def _decode_block(self, words: np.ndarray, offset: int, state: _RollState) -> tuple[np.ndarray, Optional[np.ndarray]]:
        tags = words >> _U(60)
        is_header = (words & _U(0xFFFF_FFFF)) == _U(HEADER_MAGIC)
        data = ~is_header
        is_hit = data & (tags == TAG_HIT)
        is_tdc = data & (tags == TAG_TDC)
        is_centroid = data & (tags == TAG_CENTROID)
        is_marker = data & np.isin(tags, MARKER_TAGS)
        bad = ~(is_header | is_hit | is_tdc | is_centroid | is_marker)
        if bad.any():
            i = int(np.flatnonzero(bad)[0])
            raise FormatError(f"Unknown record type 0x{int(tags[i]):X}", offset=offset + i * RECORD_SIZE)
        if is_marker.any() and not self.skip_markers:
            i = int(np.flatnonzero(is_marker)[0])
            raise FormatError(f"Marker record 0x{int(tags[i]):X} not allowed", offset=offset + i * RECORD_SIZE)

        cen_pos = np.flatnonzero(is_centroid)
        if cen_pos.size:
            if not self.centroided:
                i = int(cen_pos[0])
                raise FormatError("Centroid record in a raw capture", offset=offset + i * RECORD_SIZE)
            prev = cen_pos - 1
            orphan = (prev < 0) | ~is_hit[np.maximum(prev, 0)]
            if orphan.any():
                i = int(cen_pos[np.flatnonzero(orphan)[0]])
                raise FormatError("Centroid record does not follow a hit record", offset=offset + i * RECORD_SIZE)

        st = self.stats
        st.records_read += int(words.size)
        st.markers_skipped += int(is_marker.sum())
        st.headers_read += int(is_header.sum())
        st.centroids_read += int(cen_pos.size)

        # Triggers
        tdc_pos = np.flatnonzero(is_tdc)
        tdc_ext, state.tdc_prev, state.tdc_rolls = extend_rollovers(
            decode_tdc_words(words[tdc_pos]), TDC_LIMIT, state.tdc_prev, state.tdc_rolls
        )
        st.triggers_read += int(tdc_pos.size)

        # Hits
        hit_pos = np.flatnonzero(is_hit)
        out = np.empty(hit_pos.size, dtype=EVENT_DTYPE)
        if hit_pos.size:
            x, y, tot, toa = decode_hit_words(words[hit_pos])
            outside = (x >= self.width) | (y >= self.height)
            if outside.any():
                i = int(hit_pos[np.flatnonzero(outside)[0]])
                raise FormatError(
                    f"Pixel outside the {self.width}x{self.height} matrix",
                    offset=offset + i * RECORD_SIZE,
                )
            toa_ext, state.hit_prev, state.hit_rolls = extend_rollovers(
                toa, HIT_LIMIT, state.hit_prev, state.hit_rolls
            )
            # most recent trigger preceding each hit (within this block, else carried)
            j = np.searchsorted(tdc_pos, hit_pos, side="right") - 1
            trigger = np.full(hit_pos.size, state.last_trigger, dtype=np.int64)
            if tdc_ext.size:
                has = j >= 0
                trigger[has] = tdc_ext[j[has]]
            out["x"] = x
            out["y"] = y
            out["toa"] = toa_ext
            out["tot"] = tot
            out["trigger"] = trigger
        st.hits_read += int(hit_pos.size)
        if tdc_ext.size:
            state.last_trigger = int(tdc_ext[-1])

        extras = None
        if cen_pos.size:
            extras = np.zeros(hit_pos.size, dtype=CENTROID_DTYPE)
            extras["size"] = 1
            extras[np.searchsorted(hit_pos, cen_pos - 1)] = decode_centroid_words(words[cen_pos])
        return out, extras


def read_events(path: str | Path, **kwargs) -> tuple[np.ndarray, DecodeStats]:
    """Decode a whole capture into one array (EVENT_DTYPE, or HIT_DTYPE if centroided)."""
    reader = EventReader(path, **kwargs)
    blocks = list(reader.iter_blocks())
    events = np.concatenate(blocks) if blocks else np.empty(0, dtype=reader.dtype)
    return events, reader.stats
