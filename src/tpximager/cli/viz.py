from __future__ import annotations

import typer
from pathlib import Path
from typing import Optional

from tpximager.io.h5_store import read_bin_images
from tpximager.vis.png import save_h5_png

app = typer.Typer(help="tpximager visualization tools")


@app.command("h5-to-png")
def h5_to_png(
    h5_path: str = typer.Argument(..., help="Path to an HDF5 archive written by `tpximager run`"),
    dataset: str = typer.Option("/images/tic", "--dataset", "-d", help="Dataset path, e.g. /images/bins/12"),
    out: Optional[str] = typer.Option(None, "--out", "-o", help="Output PNG path (defaults to file.png)"),
):
    """Render a 2D dataset from HDF5 (default /images/tic) to a PNG with a colorbar."""
    out_png = save_h5_png(h5_path, out_png=out, dataset=dataset)
    typer.echo(f"Wrote {out_png}")


@app.command("list-bins")
def list_bins(
    h5_path: str = typer.Argument(..., help="Path to an HDF5 archive written by `tpximager run`"),
):
    """Print the retained bins (index, label, total counts) stored in an archive."""
    bins = read_bin_images(h5_path)
    if not bins:
        typer.echo(f"No bin images in {Path(h5_path).name}")
    for b, (label, counts) in bins.items():
        typer.echo(f"{b}\t{label:.1f}\t{int(counts.sum())}")


if __name__ == "__main__":
    app()
