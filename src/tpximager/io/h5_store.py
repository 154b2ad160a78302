from __future__ import annotations
from typing import Dict, Tuple
import h5py
import numpy as np
from datetime import datetime, timezone
from tpximager.config.schemas import Config
from tpximager.config.load import snapshot_config_toml, json_dumps
from tpximager.imaging.accumulate import AccumulatedImages
from tpximager.imaging.binning import Spectrum

FORMAT_VERSION = "1.0"
SOFTWARE = "tpximager 0.1.0"


def write_init(path: str, cfg_path: str | None, cfg: Config, dataset: str = "") -> h5py.File:
    f = h5py.File(path, "w")
    # Root attrs
    f.attrs["format_version"] = FORMAT_VERSION
    f.attrs["created_utc"] = datetime.now(timezone.utc).isoformat()
    f.attrs["software"] = SOFTWARE
    f.attrs["config_text"] = snapshot_config_toml(cfg_path)
    f.attrs["config_json"] = json_dumps(cfg.model_dump())

    # /meta
    meta = f.create_group("meta")
    meta.attrs["dataset"] = dataset
    meta.attrs["detector.width"] = cfg.decoder.width
    meta.attrs["detector.height"] = cfg.decoder.height
    meta.attrs["binning.bin_width_ps"] = cfg.binning.bin_width_ps
    meta.attrs["binning.origin_ps"] = cfg.binning.origin_ps
    return f


def _replace(grp: h5py.Group, name: str, data: np.ndarray) -> h5py.Dataset:
    if name in grp:
        del grp[name]
    return grp.create_dataset(name, data=data, compression="gzip")


def write_tic(f: h5py.File, tic: np.ndarray) -> None:
    _replace(f.require_group("images"), "tic", np.asarray(tic, dtype=np.uint32))


def write_bin_images(f: h5py.File, images: AccumulatedImages) -> None:
    """
    /images/bins/<bin_index> : (height, width) uint32
      attrs: label (float, label unit), nominal_time_ps (int)
    """
    grp = f.require_group("images").require_group("bins")
    for name in list(grp.keys()):
        del grp[name]
    for g in images.grids:
        d = grp.create_dataset(str(g.bin_index), data=g.counts.astype(np.uint32), compression="gzip")
        d.attrs["label"] = g.label
        d.attrs["nominal_time_ps"] = g.nominal_time_ps
    grp.attrs["discarded"] = images.discarded


def write_spectrum(f: h5py.File, spectrum: Spectrum) -> None:
    grp = f.require_group("spectrum")
    grp.attrs["resolution_ps"] = spectrum.resolution
    _replace(grp, "time_ps", spectrum.times())
    _replace(grp, "count", spectrum.counts())


def write_meta(f: h5py.File, counters: Dict[str, int], dead_pixel_keys: np.ndarray) -> None:
    """Run counters as /meta attrs and the excluded pixel keys as /meta/dead_pixel_keys."""
    meta = f.require_group("meta")
    for k, v in counters.items():
        meta.attrs[k] = v
    _replace(meta, "dead_pixel_keys", np.asarray(dead_pixel_keys, dtype=np.int64))


_HIT_COLUMNS = (
    ("x", np.float32),
    ("y", np.float32),
    ("toa_ps", np.int64),
    ("tot_ns", np.uint64),
    ("size", np.uint32),
    ("trigger_ps", np.int64),
    ("bin", np.int64),
)


def append_hits(f: h5py.File, hits: np.ndarray, bins: np.ndarray, valid: np.ndarray) -> None:
    """
    Append a batch to the centroided hit table
    /hits/{x,y,toa_ps,tot_ns,size,trigger_ps,bin} (bin = -1 when unbinned).
    Datasets are created empty and grow along axis 0.
    """
    grp = f.require_group("hits")
    columns = {
        "x": hits["x"],
        "y": hits["y"],
        "toa_ps": hits["toa"],
        "tot_ns": hits["tot"],
        "size": hits["size"],
        "trigger_ps": hits["trigger"],
        "bin": np.where(valid, bins, -1),
    }
    for name, dtype in _HIT_COLUMNS:
        if name not in grp:
            grp.create_dataset(name, shape=(0,), maxshape=(None,), dtype=dtype, chunks=True, compression="gzip")
        d = grp[name]
        n = d.shape[0]
        d.resize((n + hits.size,))
        d[n:] = np.asarray(columns[name], dtype=dtype)


def read_tic(path: str) -> np.ndarray:
    path = str(path)
    with h5py.File(path, "r") as f:
        if "images/tic" not in f:
            raise KeyError(f"/images/tic not found in {path}")
        return np.array(f["images/tic"], dtype=np.uint32)


def read_bin_images(path: str) -> Dict[int, Tuple[float, np.ndarray]]:
    """{bin_index: (label, counts)} for every retained bin."""
    path = str(path)
    out: Dict[int, Tuple[float, np.ndarray]] = {}
    with h5py.File(path, "r") as f:
        grp = f.get("images/bins")
        if grp is None:
            return out
        for name in grp:
            d = grp[name]
            out[int(name)] = (float(d.attrs["label"]), np.array(d, dtype=np.uint32))
    return dict(sorted(out.items()))


def read_spectrum(path: str) -> Tuple[np.ndarray, np.ndarray]:
    with h5py.File(str(path), "r") as f:
        return np.array(f["spectrum/time_ps"]), np.array(f["spectrum/count"])


def read_hits(path: str) -> Dict[str, np.ndarray]:
    """The /hits table as {column: array}; empty if the run did not store hits."""
    with h5py.File(str(path), "r") as f:
        grp = f.get("hits")
        if grp is None:
            return {}
        return {name: np.array(grp[name]) for name, _ in _HIT_COLUMNS}
