import h5py
import numpy as np
import matplotlib.pyplot as plt
from pathlib import Path

from tpximager.imaging.accumulate import AccumulatedImages


def save_grid_png(counts: np.ndarray, out_png: str | Path, cmap: str = "gray") -> Path:
    """Raw raster of a count grid, one image pixel per detector pixel, scaled 0..max."""
    img = np.asarray(counts, dtype=np.float64)
    vmax = float(img.max()) if img.size and img.max() > 0 else 1.0
    plt.imsave(str(out_png), img, cmap=cmap, vmin=0.0, vmax=vmax)
    return Path(out_png)


def image_names(images: AccumulatedImages, dataset: str) -> list[str]:
    """
    File names for the TIC and every retained bin: <dataset>_tic.png and
    <dataset>_<label>.png with one decimal; a repeated label gets _bin<index>.
    """
    names = [f"{dataset}_tic.png"]
    seen: set[str] = set()
    for g in images.grids:
        label = f"{g.label:.1f}"
        names.append(f"{dataset}_{label}_bin{g.bin_index}.png" if label in seen else f"{dataset}_{label}.png")
        seen.add(label)
    return names


def write_images(images: AccumulatedImages, out_dir: str | Path, dataset: str, cmap: str = "gray") -> list[Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    grids = [images.tic] + list(images.grids)
    return [save_grid_png(g.counts, out_dir / name, cmap=cmap) for g, name in zip(grids, image_names(images, dataset))]


def save_h5_png(h5_path: str, out_png: str | None = None, dataset: str = "/images/tic"):
    h5_path = str(h5_path)
    with h5py.File(h5_path, "r") as f:
        if dataset not in f:
            raise KeyError(f"{dataset} not found in {h5_path}")
        img = np.array(f[dataset], dtype=np.float32)
        label = f[dataset].attrs.get("label")

    if out_png is None:
        out_png = str(Path(h5_path).with_suffix(".png"))

    title = Path(h5_path).name + " : " + dataset
    if label is not None:
        title += f" ({float(label):.1f})"
    plt.figure()
    plt.imshow(img, origin="upper", cmap="gray")
    plt.colorbar(label="counts")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=150)
    plt.close()
    return out_png
