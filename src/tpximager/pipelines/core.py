from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional
import typer

import numpy as np

from tpximager.config.load import load_config
from tpximager.config.schemas import Config
from tpximager.errors import ConfigError, FormatError
from tpximager.filters.dead_pixels import (
    DeadPixelDetector,
    DeadPixelDiagnostics,
    DeadPixelMask,
    DeadPixelPolicy,
    apply_mask,
    dead_pixel_list,
)
from tpximager.imaging.accumulate import AccumulatedImages, SpatialAccumulator
from tpximager.imaging.binning import BinningConfig, HistogramBuilder, Spectrum, find_peaks
from tpximager.imaging.clustering import ClusterConfig, ClusterDiagnostics, cluster_blocks
from tpximager.io.h5_store import write_init, write_tic, write_bin_images, write_spectrum, write_meta, append_hits
from tpximager.io.imzml import write_imzml
from tpximager.io.tpx3 import EventReader
from tpximager.io.tpx3c import CentroidWriter
from tpximager.vis.png import save_grid_png, write_images
from tpximager.vis.report import write_spectrum_csv, write_spectrum_html


def find_inputs(path: str | Path, extension: str = ".tpx3") -> List[Path]:
    """A capture file, or every file in a directory whose name ends in `extension` (sorted)."""
    p = Path(path)
    if p.is_file():
        return [p]
    if p.is_dir():
        found = sorted(q for q in p.iterdir() if q.is_file() and q.name.endswith(extension))
        if not found:
            raise FileNotFoundError(f"No *{extension} files in {p}")
        return found
    raise FileNotFoundError(f"Input not found: {p}")


@dataclass
class RunResult:
    dataset: str
    out_dir: Path
    counters: Dict[str, int | str]
    images: AccumulatedImages
    spectrum: Spectrum
    mask: DeadPixelMask
    peaks_ps: List[int] = field(default_factory=list)
    outputs: List[Path] = field(default_factory=list)


def _open_reader(path: Path, cfg: Config) -> EventReader:
    dec = cfg.decoder
    return EventReader(
        path,
        block_bytes=dec.block_bytes,
        width=dec.width,
        height=dec.height,
        skip_markers=dec.skip_markers,
    )


def _scan_dead_pixels(reader: EventReader, cfg: Config) -> tuple[DeadPixelMask, DeadPixelDiagnostics]:
    """First pass: per-pixel counts, stopping after [dead_pixels].sample_events."""
    detector = DeadPixelDetector(cfg.decoder.width, cfg.decoder.height, DeadPixelPolicy.from_cfg(cfg.dead_pixels))
    if not cfg.dead_pixels.enabled:
        return detector.result()
    return detector.scan(reader.iter_blocks())


def _hit_batches(reader: EventReader, mask: DeadPixelMask, cfg: Config, cd: ClusterDiagnostics) -> Iterator[np.ndarray]:
    """
    Second pass: masked blocks, clustered as they stream (raw captures) or
    passed through as decoded (centroided captures). Fills `cd`.
    """
    kept = (apply_mask(block, mask) for block in reader.iter_blocks())
    if reader.centroided:
        for hits in kept:
            cd.events_in += int(hits.size)
            cd.add_hits(hits)
            yield hits
        return
    yield from cluster_blocks(
        kept,
        ClusterConfig.from_cfg(cfg.clustering),
        workers=cfg.run.workers,
        chunk_events=cfg.run.chunk_events,
        progress=cfg.run.progress,
        diag=cd,
    )


def process_capture(
    path: str | Path,
    cfg: Config,
    *,
    cfg_path: Optional[str] = None,
    out_dir: Optional[str | Path] = None,
) -> RunResult:
    """
    Decode -> dead-pixel mask -> cluster -> bin -> accumulate -> write outputs
    for one capture file (.tpx3, or centroided .tpx3c which skips clustering).

    The capture is read twice, block by block: once for the dead-pixel counts
    and once for everything else, so memory does not grow with the file.
    """
    path = Path(path)
    dataset = path.stem
    out_dir = Path(out_dir) if out_dir is not None else path.parent
    out_dir.mkdir(parents=True, exist_ok=True)
    diag_level = cfg.run.diagnostics_level
    width, height = cfg.decoder.width, cfg.decoder.height

    if diag_level >= 1:
        print(f"[pipeline] {path} -> {out_dir}")

    # Pass 1: dead pixels
    reader = _open_reader(path, cfg)
    mask, dp = _scan_dead_pixels(reader, cfg)
    if diag_level >= 1:
        print(f"[deadpix] excluded {dp.excluded} pixels (hot={dp.hot_pixels} cold={dp.cold_pixels}, "
              f"reference={dp.reference_count:.1f} over {dp.events_scanned} events)")
        if diag_level >= 2 and dp.excluded:
            print(f"[deadpix] pixels: {dead_pixel_list(mask)[:20]}")

    # Pass 2: cluster, bin and accumulate block by block
    has_triggers = reader.contains_triggers() if cfg.binning.reference == "auto" else True
    builder = HistogramBuilder(BinningConfig.from_cfg(cfg.binning), has_triggers=has_triggers)
    acc = SpatialAccumulator(width, height)
    cd = ClusterDiagnostics()

    h5_path = out_dir / f"{dataset}.h5"
    tpx3c_path = out_dir / f"{dataset}.tpx3c"
    h5 = write_init(str(h5_path), cfg_path, cfg, dataset=dataset) if cfg.output.write_hdf5 else None
    centroids = CentroidWriter(tpx3c_path) if cfg.export.tpx3c and not reader.centroided else None
    try:
        if centroids is not None:
            centroids.open()
        for hits in _hit_batches(reader, mask, cfg, cd):
            bins, valid = builder.add(hits)
            acc.add(hits, bins, valid)
            if centroids is not None:
                centroids.write(hits)
            if h5 is not None and cfg.output.write_hits:
                append_hits(h5, hits, bins, valid)
        if centroids is not None:
            centroids.close()
    except Exception:
        # no half-written archives
        if h5 is not None:
            h5.close()
            h5_path.unlink(missing_ok=True)
        if centroids is not None:
            centroids.close()
            tpx3c_path.unlink(missing_ok=True)
        raise

    stats = reader.stats
    images = acc.finalize(cfg.images.min_counts, builder.binner)
    bs = builder.stats
    if diag_level >= 1:
        print(f"[decode] records={stats.records_read} hits={stats.hits_read} "
              f"triggers={stats.triggers_read} markers={stats.markers_skipped} headers={stats.headers_read}")
        if reader.centroided:
            print(f"[cluster] centroided input: {cd.hits_out} hits, clustering skipped")
        else:
            print(f"[cluster] {cd.events_in} events -> {cd.hits_out} hits "
                  f"({cd.multi_member} multi-member, largest={cd.largest}, partitions={cd.partitions})")
        if cd.late_events:
            print(f"[cluster] WARNING: {cd.late_events} events arrived later than "
                  f"[clustering].reorder_window_ps allows")
        print(f"[bins] reference={bs.reference} binned={bs.binned}/{bs.hits_in} "
              f"(untriggered={bs.untriggered}, negative={bs.negative}); "
              f"retained {len(images.grids)} bins, discarded {images.discarded}")

    spectrum = builder.spectrum
    peaks_ps: List[int] = []
    dense = spectrum.dense()
    if dense is not None and dense[1].size:
        t, c = dense
        peaks_ps = [int(t[i]) for i in find_peaks(c, cfg.output.peak_window, cfg.output.peak_min_intensity)]
    elif dense is None and diag_level >= 2:
        print("[bins] spectrum too wide for peak search, skipped")

    counters: Dict[str, int | str] = {
        **stats.as_dict(),
        "dead_pixels": dp.excluded,
        "events_masked": int(stats.hits_read - cd.events_in),
        "hits": cd.hits_out,
        "multi_member_clusters": cd.multi_member,
        "merged_events": cd.merged_events,
        "largest_cluster": cd.largest,
        "late_events": cd.late_events,
        "binning_reference": bs.reference,
        "binned_hits": bs.binned,
        "untriggered_hits": bs.untriggered,
        "negative_time_hits": bs.negative,
        "bins_retained": len(images.grids),
        "bins_discarded": images.discarded,
    }
    result = RunResult(dataset, out_dir, counters, images, spectrum, mask, peaks_ps)

    # Outputs
    if cfg.images.write_png:
        result.outputs += write_images(images, out_dir, dataset, cmap=cfg.images.cmap)
    if cfg.output.write_csv:
        result.outputs.append(write_spectrum_csv(spectrum, out_dir / f"{dataset}_report_full_spectrum.csv"))
    if cfg.output.write_html:
        result.outputs.append(write_spectrum_html(
            spectrum, images, out_dir / f"{dataset}_report_spectrum.html",
            title=dataset, label_unit=cfg.binning.label_unit, peaks_ps=peaks_ps, counters=counters,
        ))
    if h5 is not None:
        try:
            write_tic(h5, images.tic.counts)
            write_bin_images(h5, images)
            write_spectrum(h5, spectrum)
            write_meta(h5, counters, mask.keys())
        finally:
            h5.close()
        result.outputs.append(h5_path)
    if cfg.export.imzml:
        p = write_imzml(out_dir / f"{dataset}.imzML", images)
        if p is not None:
            result.outputs.append(p)
        elif diag_level >= 1:
            print("[pipeline] imzML export skipped: no retained bins")
    if centroids is not None:
        result.outputs.append(tpx3c_path)

    if diag_level >= 1:
        print(f"[pipeline] wrote {len(result.outputs)} files for {dataset}")
    return result


def _resolve_config(
    cfg_path: Optional[str],
    out: Optional[str],
    workers: Optional[int],
    progress: Optional[bool],
) -> Config:
    cfg = load_config(cfg_path) if cfg_path else Config()
    # ---- apply CLI overrides on top of TOML ----
    if out is not None:
        cfg.io.output_path = out
    if workers is not None:
        if workers < 0:
            raise ConfigError("--workers must be >= 0")
        cfg.run.workers = workers
    if progress is not None:
        cfg.run.progress = progress
    return cfg


def run_pipeline(
    input_path: Optional[str] = None,
    cfg_path: Optional[str] = None,
    *,
    out: Optional[str] = None,
    workers: Optional[int] = None,
    progress: Optional[bool] = None,
    cfg: Optional[Config] = None,
) -> List[RunResult]:
    """
    Run the full pipeline on a capture file or on every capture in a directory.

    The input comes from `input_path`, else [io].input_path; outputs go to
    `out`, else [io].output_path, else next to each input. CLI-style overrides
    (out/workers/progress) apply on top of the TOML values.
    """
    if cfg is None:
        cfg = _resolve_config(cfg_path, out, workers, progress)
    src = input_path or cfg.io.input_path
    if not src:
        raise ConfigError("No input given (argument or [io].input_path)")

    inputs = find_inputs(src, cfg.io.extension)
    if cfg.run.diagnostics_level >= 1:
        print(f"[run] config = {cfg_path}")
        print(f"[run] {len(inputs)} input(s) from {src}")
    return [process_capture(p, cfg, cfg_path=cfg_path, out_dir=cfg.io.output_path) for p in inputs]


def scan_dead_pixels(
    input_path: str,
    cfg: Config,
    out_dir: Optional[str | Path] = None,
) -> tuple[DeadPixelMask, Path]:
    """Dead-pixel pass only; writes <dataset>_dead_pixels.png (excluded pixels white)."""
    path = Path(input_path)
    mask, _ = _scan_dead_pixels(_open_reader(path, cfg), cfg)
    out_dir = Path(out_dir) if out_dir is not None else path.parent
    out_dir.mkdir(parents=True, exist_ok=True)
    png = save_grid_png(mask.as_image().astype(np.uint8), out_dir / f"{path.stem}_dead_pixels.png")
    return mask, png


def compress_capture(
    input_path: str,
    cfg: Config,
    out_dir: Optional[str | Path] = None,
) -> tuple[Path, ClusterDiagnostics]:
    """
    Cluster a raw capture (dead pixels masked) and write the hits as
    <dataset>.tpx3c, without binning or images.
    """
    path = Path(input_path)
    reader = _open_reader(path, cfg)
    if reader.centroided:
        raise ConfigError(f"{path.name} is already centroided")
    mask, _ = _scan_dead_pixels(reader, cfg)
    out_dir = Path(out_dir) if out_dir is not None else path.parent
    cd = ClusterDiagnostics()
    with CentroidWriter(out_dir / f"{path.stem}.tpx3c") as w:
        for hits in _hit_batches(reader, mask, cfg, cd):
            w.write(hits)
    if cfg.run.diagnostics_level >= 1:
        print(f"[compress] {cd.events_in} events -> {w.hits_written} hits, {w.records_written} records")
    return w.path, cd


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

app = typer.Typer(help="Timepix3 capture to images and spectrum (tpximager.pipelines.core)")


@app.command("run")
def main(
    input_path: Optional[str] = typer.Argument(
        None,
        help="Capture file or directory of captures (defaults to [io].input_path)",
    ),
    cfg_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to TOML config file",
    ),
    out: Optional[str] = typer.Option(
        None,
        "--out",
        "-o",
        help="Output directory; overrides [io].output_path",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        "-w",
        help="Clustering worker processes (0 = single process); overrides [run].workers",
    ),
    progress: Optional[bool] = typer.Option(
        None,
        "--progress / --no-progress",
        help="Show progress bars; overrides [run].progress",
    ),
):
    """
    Run the pipeline and print the written files.
    """
    try:
        results = run_pipeline(input_path, cfg_path, out=out, workers=workers, progress=progress)
    except (ConfigError, FormatError, FileNotFoundError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    for r in results:
        for p in r.outputs:
            typer.echo(str(p))


@app.command("dead-pixels")
def dead_pixels(
    input_path: str = typer.Argument(..., help="Capture file"),
    cfg_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to TOML config file"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Output directory"),
):
    """List the pixels the dead-pixel policy excludes and write a mask image."""
    try:
        cfg = _resolve_config(cfg_path, out, None, None)
        mask, png = scan_dead_pixels(input_path, cfg, out_dir=cfg.io.output_path)
    except (ConfigError, FormatError, FileNotFoundError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    for x, y in dead_pixel_list(mask):
        typer.echo(f"{x},{y}")
    typer.echo(f"Wrote {png}")


@app.command("compress")
def compress(
    input_path: str = typer.Argument(..., help="Raw .tpx3 capture"),
    cfg_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to TOML config file"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Output directory"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Clustering worker processes"),
    progress: Optional[bool] = typer.Option(None, "--progress / --no-progress", help="Show progress bars"),
):
    """Cluster a capture and write the centroided hits as <dataset>.tpx3c."""
    try:
        cfg = _resolve_config(cfg_path, out, workers, progress)
        path, _ = compress_capture(input_path, cfg, out_dir=cfg.io.output_path)
    except (ConfigError, FormatError, FileNotFoundError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(str(path))


if __name__ == "__main__":
    app()
