from __future__ import annotations
import os
import heapq
import numpy as np
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Literal, Optional, Tuple
from concurrent.futures import ProcessPoolExecutor, as_completed

from tqdm import tqdm

from ..physics.events import EVENT_DTYPE, RawEvent
from ..physics.hits import HIT_DTYPE, Hit, hits_to_array

Weighting = Literal["tot", "none"]


@dataclass
class ClusterConfig:
    time_tolerance_ps: int = 500_000
    weighting: Weighting = "tot"
    reorder_window_ps: int = 0  # streaming only: how far input may run out of time order

    @classmethod
    def from_cfg(cls, cfg) -> "ClusterConfig":
        return cls(
            time_tolerance_ps=cfg.time_tolerance_ps,
            weighting=cfg.weighting,
            reorder_window_ps=cfg.reorder_window_ps,
        )


@dataclass
class ClusterDiagnostics:
    events_in: int = 0
    hits_out: int = 0
    multi_member: int = 0
    merged_events: int = 0  # sum of (size - 1) over all clusters
    largest: int = 0
    partitions: int = 0
    late_events: int = 0  # streaming: arrived before already-clustered time

    def add_hits(self, hits: np.ndarray) -> None:
        sizes = hits["size"].astype(np.int64)
        self.hits_out += int(hits.size)
        self.multi_member += int((sizes > 1).sum())
        self.merged_events += int((sizes - 1).sum())
        if sizes.size:
            self.largest = max(self.largest, int(sizes.max()))


# ----------------- open-cluster state machine -----------------

OPEN, CLOSED = 0, 1


class _OpenCluster:
    __slots__ = ("cid", "xs", "ys", "toas", "tots", "triggers", "last_toa", "state")

    def __init__(self, cid: int):
        self.cid = cid
        self.xs: List[int] = []
        self.ys: List[int] = []
        self.toas: List[int] = []
        self.tots: List[int] = []
        self.triggers: List[int] = []
        self.last_toa = 0
        self.state = OPEN

    def add(self, x: int, y: int, toa: int, tot: int, trigger: int) -> None:
        self.xs.append(x)
        self.ys.append(y)
        self.toas.append(toa)
        self.tots.append(tot)
        self.triggers.append(trigger)
        if len(self.toas) == 1 or toa > self.last_toa:
            self.last_toa = toa

    def absorb(self, other: "_OpenCluster") -> None:
        self.xs += other.xs
        self.ys += other.ys
        self.toas += other.toas
        self.tots += other.tots
        self.triggers += other.triggers
        self.last_toa = max(self.last_toa, other.last_toa)
        other.state = CLOSED

    def pixels(self):
        return zip(self.xs, self.ys)

    def to_hit(self, weighting: Weighting) -> Hit:
        self.state = CLOSED
        n = len(self.xs)
        first = min(range(n), key=self.toas.__getitem__)
        tot_sum = sum(self.tots)
        if weighting == "tot" and tot_sum > 0:
            x = sum(x * w for x, w in zip(self.xs, self.tots)) / tot_sum
            y = sum(y * w for y, w in zip(self.ys, self.tots)) / tot_sum
        else:
            x = sum(self.xs) / n
            y = sum(self.ys) / n
        return Hit(
            x=float(x),
            y=float(y),
            toa=self.toas[first],
            tot=tot_sum,
            size=n,
            trigger=self.triggers[first],
        )


class Clusterer:
    """
    Streaming 8-connected clustering with lazy, time-driven closing.

    Events must be fed in non-decreasing toa. An event joins every open
    cluster that owns a pixel within one grid step (same pixel included) and
    whose most recent member arrived no more than `time_tolerance_ps` earlier;
    several matches are merged. A cluster closes, emitting its Hit, as soon as
    an event arrives more than the tolerance after its most recent member.
    """

    def __init__(self, cfg: ClusterConfig | None = None):
        self.cfg = cfg or ClusterConfig()
        self.tol = int(self.cfg.time_tolerance_ps)
        self._open: dict[int, _OpenCluster] = {}
        self._owners: dict[Tuple[int, int], set[int]] = {}
        self._heap: list[Tuple[int, int]] = []  # (last_toa, cid), may hold stale entries
        self._next_id = 0
        self._last_t: int | None = None

    @property
    def n_open(self) -> int:
        return len(self._open)

    def _close(self, c: _OpenCluster) -> Hit:
        del self._open[c.cid]
        for px in c.pixels():
            ids = self._owners.get(px)
            if ids is not None:
                ids.discard(c.cid)
                if not ids:
                    del self._owners[px]
        return c.to_hit(self.cfg.weighting)

    def _close_older_than(self, limit) -> List[Hit]:
        out: List[Hit] = []
        while self._heap and self._heap[0][0] < limit:
            last, cid = heapq.heappop(self._heap)
            c = self._open.get(cid)
            if c is None or c.last_toa != last:
                continue  # merged away or superseded by a newer entry
            out.append(self._close(c))
        return out

    def feed(self, x: int, y: int, toa: int, tot: int = 0, trigger: int = -1) -> List[Hit]:
        """Process one event; returns the Hits of clusters closed by its arrival."""
        if self._last_t is not None and toa < self._last_t:
            raise ValueError(f"Events out of time order: {toa} after {self._last_t}")
        self._last_t = toa
        emitted = self._close_older_than(toa - self.tol)

        matches: set[int] = set()
        for dx in (-1, 0, 1):
            for dy in (-1, 0, 1):
                ids = self._owners.get((x + dx, y + dy))
                if ids:
                    matches |= ids

        if not matches:
            target = _OpenCluster(self._next_id)
            self._next_id += 1
            self._open[target.cid] = target
        else:
            ordered = sorted(matches)
            target = self._open[ordered[0]]
            for cid in ordered[1:]:
                other = self._open.pop(cid)
                for px in other.pixels():
                    ids = self._owners[px]
                    ids.discard(cid)
                    ids.add(target.cid)
                target.absorb(other)

        target.add(x, y, toa, tot, trigger)
        self._owners.setdefault((x, y), set()).add(target.cid)
        heapq.heappush(self._heap, (target.last_toa, target.cid))
        return emitted

    def feed_event(self, ev: RawEvent) -> List[Hit]:
        return self.feed(ev.x, ev.y, ev.toa, ev.tot, ev.trigger)

    def flush(self) -> List[Hit]:
        """Close every open cluster (end of stream or partition)."""
        out = self._close_older_than(float("inf"))
        self._last_t = None
        return out

    def cluster_array(self, events: np.ndarray) -> np.ndarray:
        """Cluster a time-sorted EVENT_DTYPE array into a HIT_DTYPE array."""
        hits: List[Hit] = []
        cols = (events["x"].tolist(), events["y"].tolist(), events["toa"].tolist(),
                events["tot"].tolist(), events["trigger"].tolist())
        for x, y, t, tot, trg in zip(*cols):
            hits.extend(self.feed(x, y, t, tot, trg))
        hits.extend(self.flush())
        return hits_to_array(hits)


def cluster_stream(events: Iterable[RawEvent], cfg: ClusterConfig | None = None) -> List[Hit]:
    """Convenience: cluster an iterable of RawEvent already in time order."""
    cl = Clusterer(cfg)
    hits: List[Hit] = []
    for ev in events:
        hits.extend(cl.feed_event(ev))
    hits.extend(cl.flush())
    return hits


# ----------------- partitioning -----------------

def partition_by_gaps(toa_sorted: np.ndarray, tolerance: int, target_size: int) -> List[Tuple[int, int]]:
    """
    Split a sorted time axis into [start, end) ranges of roughly `target_size`
    events, cutting only where consecutive times differ by more than the
    tolerance. No cluster can span such a cut, so partitions cluster
    independently. A region without any such gap stays in one partition.
    """
    n = int(toa_sorted.size)
    if n == 0:
        return []
    gaps = np.flatnonzero(np.diff(toa_sorted) > tolerance) + 1
    bounds = [0]
    while True:
        i = int(np.searchsorted(gaps, bounds[-1] + max(1, target_size), side="left"))
        if i >= gaps.size:
            break
        bounds.append(int(gaps[i]))
    bounds.append(n)
    return list(zip(bounds[:-1], bounds[1:]))


def last_safe_cut(toa_sorted: np.ndarray, tolerance: int, reorder_window: int = 0) -> int:
    """
    Index of the last gap wider than the tolerance that starts no later than
    `reorder_window` before the newest event; 0 if there is none. Events
    before the cut can be clustered now as long as later input is at most
    `reorder_window` older than what has been seen.
    """
    if toa_sorted.size < 2:
        return 0
    gaps = np.flatnonzero(np.diff(toa_sorted) > tolerance) + 1
    if gaps.size == 0:
        return 0
    horizon = toa_sorted[-1] - reorder_window
    i = int(np.searchsorted(toa_sorted[gaps], horizon, side="right")) - 1
    return int(gaps[i]) if i >= 0 else 0


def _auto_chunk_size(n_events: int, workers: int) -> int:
    # heuristic: a few partitions per worker, bounded so per-task pickling stays cheap
    per_worker = n_events // max(1, 4 * workers)
    return max(50_000, min(2_000_000, per_worker))


def _resolve_workers(workers: int | str) -> int:
    if workers == "auto":
        return max(1, os.cpu_count() or 1)
    if isinstance(workers, int):
        return max(0, workers)
    raise ValueError("workers must be int or 'auto'")


def _executor(workers: int):
    return ProcessPoolExecutor(max_workers=workers) if workers > 0 else nullcontext()


# ----------------- worker & driver -----------------

def _cluster_chunk(events: np.ndarray, tol: int, weighting: Weighting) -> np.ndarray:
    """Worker: cluster one partition."""
    return Clusterer(ClusterConfig(time_tolerance_ps=tol, weighting=weighting)).cluster_array(events)


def _cluster_sorted(
    ordered: np.ndarray,
    cfg: ClusterConfig,
    chunk_events: int,
    ex: Optional[ProcessPoolExecutor],
    pbar: Optional[tqdm],
    diag: ClusterDiagnostics,
) -> np.ndarray:
    """Cluster time-sorted events partition by partition, in-process when ex is None."""
    parts = partition_by_gaps(ordered["toa"], cfg.time_tolerance_ps, chunk_events)
    diag.partitions += len(parts)
    results: List[np.ndarray | None] = [None] * len(parts)

    if ex is None or len(parts) < 2:
        for k, (s, e) in enumerate(parts):
            results[k] = _cluster_chunk(ordered[s:e], cfg.time_tolerance_ps, cfg.weighting)
            if pbar:
                pbar.update(e - s)
    else:
        futs = {
            ex.submit(_cluster_chunk, ordered[s:e], cfg.time_tolerance_ps, cfg.weighting): k
            for k, (s, e) in enumerate(parts)
        }
        for fut in as_completed(futs):
            k = futs[fut]
            results[k] = fut.result()
            if pbar:
                pbar.update(parts[k][1] - parts[k][0])

    hits = np.concatenate(results) if results else np.empty(0, dtype=HIT_DTYPE)
    diag.add_hits(hits)
    return hits


def cluster_events(
    events: np.ndarray,
    cfg: ClusterConfig | None = None,
    workers: int | str = "auto",
    chunk_events: int | str = "auto",
    progress: bool = True,
    min_parallel_events: int = 200_000,
) -> Tuple[np.ndarray, ClusterDiagnostics]:
    """
    Cluster an EVENT_DTYPE array (any order) into a HIT_DTYPE array.

    Events are stably sorted by toa and split at time gaps wider than the
    tolerance. If workers==0 (or the input is small) partitions run in this
    process, otherwise in a ProcessPoolExecutor. Results are concatenated in
    partition order, so the output does not depend on workers/chunk_events.
    """
    cfg = cfg or ClusterConfig()
    diag = ClusterDiagnostics(events_in=int(events.size))
    if events.size == 0:
        return np.empty(0, dtype=HIT_DTYPE), diag

    workers = _resolve_workers(workers)
    if workers == 0 or events.size < min_parallel_events:
        workers = 0
    if chunk_events == "auto":
        chunk_events = _auto_chunk_size(events.size, max(1, workers))

    ordered = events[np.argsort(events["toa"], kind="stable")]
    pbar = tqdm(total=int(events.size), desc=f"cluster x{max(1, workers)}", unit="ev") if progress else None
    try:
        with _executor(workers) as ex:
            hits = _cluster_sorted(ordered, cfg, int(chunk_events), ex, pbar, diag)
    finally:
        if pbar:
            pbar.close()
    return hits, diag


def cluster_blocks(
    blocks: Iterable[np.ndarray],
    cfg: ClusterConfig | None = None,
    workers: int | str = "auto",
    chunk_events: int | str = "auto",
    progress: bool = True,
    min_parallel_events: int = 200_000,
    diag: ClusterDiagnostics | None = None,
) -> Iterator[np.ndarray]:
    """
    Streaming form of cluster_events over a sequence of EVENT_DTYPE blocks.

    Each block is merged with the events carried from the previous one and
    sorted; everything before the last safe gap (see last_safe_cut) is
    clustered and yielded as a HIT_DTYPE batch, the rest is carried. Only
    the carried tail and the current block are held in memory. While input
    is never more than cfg.reorder_window_ps out of order, the hits equal
    those of cluster_events on the whole stream; events arriving earlier than
    the carried tail are counted in diag.late_events.

    One process pool serves the whole stream; `diag` is filled in place.
    """
    cfg = cfg or ClusterConfig()
    diag = diag if diag is not None else ClusterDiagnostics()
    workers = _resolve_workers(workers)
    tol = cfg.time_tolerance_ps

    pbar = tqdm(desc=f"cluster x{max(1, workers)}", unit="ev") if progress else None

    def _batch(ordered: np.ndarray, ex) -> np.ndarray:
        chunk = _auto_chunk_size(ordered.size, max(1, workers)) if chunk_events == "auto" else int(chunk_events)
        use = ex if ordered.size >= min_parallel_events else None
        return _cluster_sorted(ordered, cfg, chunk, use, pbar, diag)

    tail = np.empty(0, dtype=EVENT_DTYPE)
    boundary: Optional[int] = None
    try:
        with _executor(workers) as ex:
            for block in blocks:
                diag.events_in += int(block.size)
                if boundary is not None:
                    diag.late_events += int((block["toa"] < boundary).sum())
                buf = np.concatenate((tail, block)) if tail.size else block
                buf = buf[np.argsort(buf["toa"], kind="stable")]
                cut = last_safe_cut(buf["toa"], tol, cfg.reorder_window_ps)
                ready, tail = buf[:cut], buf[cut:]
                if ready.size:
                    boundary = int(tail["toa"][0])
                    hits = _batch(ready, ex)
                    if hits.size:
                        yield hits
            if tail.size:
                hits = _batch(tail, ex)
                if hits.size:
                    yield hits
    finally:
        if pbar:
            pbar.close()
