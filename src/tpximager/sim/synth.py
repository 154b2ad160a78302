from __future__ import annotations
import numpy as np
from pathlib import Path
from typing import Iterable, Sequence

from ..io.tpx3 import HIT_LIMIT, TDC_LIMIT, HEADER_MAGIC
from ..physics.events import EVENT_DTYPE, NO_TRIGGER, RawEvent


def quantize_toa(toa_ps: int) -> int:
    """Arrival time as it survives a round trip through a hit packet (1.5625 ns steps)."""
    spidr, rem = divmod(int(toa_ps) % HIT_LIMIT, 409_600_000)
    k = (rem * 16) // 25_000
    return spidr * 409_600_000 + (k * 25_000) // 16


def quantize_tdc(t_ps: int) -> int:
    """Trigger time as it survives a round trip through a TDC packet (25 ns steps)."""
    return (int(t_ps) % TDC_LIMIT) // 25_000 * 25_000


def encode_hit(x: int, y: int, toa_ps: int, tot_ns: int = 25) -> int:
    """Pack one pixel trigger into a 0xB hit packet."""
    spidr, rem = divmod(int(toa_ps) % HIT_LIMIT, 409_600_000)
    k = (rem * 16) // 25_000          # 18-bit coarse+fine ToA
    ftoa, coa = k & 0xF, k >> 4
    pix = ((x % 2) << 2) | (y % 4)
    dcol = x - (x % 2)
    spix = y - (y % 4)
    return (
        (0xB << 60)
        | (dcol << 52)
        | (spix << 45)
        | (pix << 44)
        | (coa << 30)
        | (((int(tot_ns) // 25) & 0x3FF) << 20)
        | ((~ftoa & 0xF) << 16)
        | spidr
    )


def encode_tdc(t_ps: int, counter: int = 0) -> int:
    """Pack a trigger time into a 0x6A (TDC1 rising) packet with an exact fine time."""
    coarse = (int(t_ps) % TDC_LIMIT) // 25_000
    return (0x6A << 56) | ((counter & 0xFFF) << 44) | (coarse << 12) | (1 << 5)


def encode_marker(tag: int = 0x7, payload: int = 0x71B0) -> int:
    return (tag << 60) | payload


def encode_header(chip: int = 0, size_bytes: int = 0) -> int:
    return HEADER_MAGIC | (chip << 32) | ((size_bytes & 0xFFFF) << 48)


def write_packets(path: str | Path, packets: Iterable[int]) -> Path:
    p = Path(path)
    np.asarray(list(packets), dtype="<u8").tofile(p)
    return p


def build_packets(
    events: Sequence[RawEvent] | np.ndarray,
    triggers: Sequence[int] = (),
    *,
    header_every: int = 0,
    marker_every: int = 0,
) -> list[int]:
    """
    Interleave hit and TDC packets in time order.

    header_every / marker_every insert a chunk header / global-time marker
    before every n-th data packet (0 disables).
    """
    if isinstance(events, np.ndarray):
        rows = [(int(r["toa"]), 1, encode_hit(int(r["x"]), int(r["y"]), int(r["toa"]), int(r["tot"]))) for r in events]
    else:
        rows = [(e.toa, 1, encode_hit(e.x, e.y, e.toa, e.tot)) for e in events]
    # triggers sort ahead of hits at the same time
    rows += [(int(t), 0, encode_tdc(t, counter=i)) for i, t in enumerate(triggers)]
    rows.sort(key=lambda r: (r[0], r[1]))

    packets: list[int] = []
    for n, (_, _, packet) in enumerate(rows):
        if header_every and n % header_every == 0:
            packets.append(encode_header(size_bytes=8 * header_every))
        if marker_every and n and n % marker_every == 0:
            packets.append(encode_marker())
        packets.append(packet)
    return packets


def write_capture(
    path: str | Path,
    events: Sequence[RawEvent] | np.ndarray,
    triggers: Sequence[int] = (),
    **kwargs,
) -> Path:
    return write_packets(path, build_packets(events, triggers, **kwargs))


def synth_cluster_events(
    n_clusters: int,
    *,
    width: int = 256,
    height: int = 256,
    t_start_ps: int = 0,
    spacing_ps: int = 2_000_000,
    max_extent: int = 1,
    rng: np.random.Generator | None = None,
) -> np.ndarray:
    """
    Generate well-separated square clusters (side 1..2*max_extent+1 pixels).

    Cluster starts are `spacing_ps` apart and members arrive within one
    fine-ToA step of each other, so each cluster should centroid to one hit.
    Times are multiples of 25 ns, which survive packet encoding exactly.
    """
    rng = rng or np.random.default_rng()
    rows = []
    for i in range(n_clusters):
        r = int(rng.integers(0, max_extent + 1))
        cx = int(rng.integers(r, width - r))
        cy = int(rng.integers(r, height - r))
        t0 = t_start_ps + i * spacing_ps
        t0 -= t0 % 25_000
        for dx in range(-r, r + 1):
            for dy in range(-r, r + 1):
                tot = int(rng.integers(1, 40)) * 25
                rows.append((cx + dx, cy + dy, t0 + 25_000 * int(rng.integers(0, 2)), tot, NO_TRIGGER))
    arr = np.array(rows, dtype=EVENT_DTYPE)
    return arr[np.argsort(arr["toa"], kind="stable")]
