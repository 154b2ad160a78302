"""
Spectrum reports.

- <dataset>_report_full_spectrum.csv : full-resolution spectrum (time_ps,count)
- <dataset>_report_spectrum.html     : zero-padded spectrum plot (inline SVG),
                                       retained image bins, peaks and run counters
"""
from __future__ import annotations
import io
import html
from pathlib import Path
from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd
import matplotlib
import matplotlib.pyplot as plt

from tpximager.imaging.accumulate import AccumulatedImages
from tpximager.imaging.binning import Spectrum

_UNIT_PS = {"ps": 1.0, "ns": 1e3, "us": 1e6}


def spectrum_frame(spectrum: Spectrum) -> pd.DataFrame:
    return pd.DataFrame({"time_ps": spectrum.times(), "count": spectrum.counts()})


def write_spectrum_csv(spectrum: Spectrum, path: str | Path) -> Path:
    path = Path(path)
    spectrum_frame(spectrum).to_csv(path, index=False)
    return path


def bins_frame(images: AccumulatedImages, label_unit: str = "ns") -> pd.DataFrame:
    rows = [
        {"bin": g.bin_index, f"label_{label_unit}": round(g.label, 1), "nominal_time_ps": g.nominal_time_ps, "counts": g.total}
        for g in images.grids
    ]
    return pd.DataFrame(rows, columns=["bin", f"label_{label_unit}", "nominal_time_ps", "counts"])


def spectrum_svg(spectrum: Spectrum, label_unit: str = "ns", peaks_ps: Sequence[int] = ()) -> str:
    """Line plot of the zero-padded spectrum as an SVG string (no date, fixed ids)."""
    t, c = spectrum.zero_padded()
    scale = _UNIT_PS[label_unit]
    with matplotlib.rc_context({"svg.hashsalt": "tpximager"}):
        fig, ax = plt.subplots(figsize=(10, 4))
        ax.plot(t / scale, c, lw=0.8)
        for p in peaks_ps:
            ax.axvline(p / scale, color="tab:red", lw=0.6, ls="--")
        ax.set_xlabel(f"time [{label_unit}]")
        ax.set_ylabel("counts")
        ax.set_title("Full spectrum")
        fig.tight_layout()
        buf = io.StringIO()
        fig.savefig(buf, format="svg", metadata={"Date": None})
        plt.close(fig)
    return buf.getvalue()


def write_spectrum_html(
    spectrum: Spectrum,
    images: AccumulatedImages,
    path: str | Path,
    *,
    title: str,
    label_unit: str = "ns",
    peaks_ps: Sequence[int] = (),
    counters: Optional[Dict[str, int]] = None,
) -> Path:
    path = Path(path)
    parts = [
        "<!DOCTYPE html>",
        "<html><head><meta charset=\"utf-8\">",
        f"<title>{html.escape(title)}</title></head><body>",
        f"<h1>{html.escape(title)}</h1>",
        spectrum_svg(spectrum, label_unit, peaks_ps),
        "<h2>Image bins</h2>",
        bins_frame(images, label_unit).to_html(index=False),
        f"<p>{images.discarded} bins below the emission threshold were not rendered.</p>",
    ]
    if len(peaks_ps):
        peaks = pd.DataFrame({"time_ps": np.asarray(peaks_ps, dtype=np.int64)})
        peaks[f"time_{label_unit}"] = (peaks["time_ps"] / _UNIT_PS[label_unit]).round(1)
        parts += ["<h2>Peaks</h2>", peaks.to_html(index=False)]
    if counters:
        table = pd.DataFrame({"counter": list(counters), "value": list(counters.values())})
        parts += ["<h2>Run</h2>", table.to_html(index=False)]
    parts.append("</body></html>")
    path.write_text("\n".join(parts), encoding="utf-8")
    return path
