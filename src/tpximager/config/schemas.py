from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Literal, Optional, Union


class _Section(BaseModel):
    # unknown keys in a TOML section are a config error, not silently ignored
    model_config = ConfigDict(extra="forbid")


class RunCfg(_Section):
    """
    Global run controls.

    TOML:

    [run]
    workers = "auto"          # int >= 0, 0 = single process
    chunk_events = "auto"     # target events per clustering partition
    progress = true
    diagnostics_level = 1     # 0=off, 1=minimal, 2=verbose
    """

    # Performance / execution
    workers: Union[int, Literal["auto"]] = "auto"
    chunk_events: Union[int, Literal["auto"]] = "auto"
    progress: bool = True

    # Diagnostics
    diagnostics_level: int = 1  # 0=off, 1=minimal, 2=verbose

    @field_validator("diagnostics_level")
    def _diag_range(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError("diagnostics_level must be 0, 1, or 2")
        return v

    @field_validator("workers")
    def _workers_nonneg(cls, v):
        if isinstance(v, int) and v < 0:
            raise ValueError("workers must be >= 0 or 'auto'")
        return v

    @field_validator("chunk_events")
    def _chunk_positive(cls, v):
        if isinstance(v, int) and v <= 0:
            raise ValueError("chunk_events must be > 0 or 'auto'")
        return v


class IOCfg(_Section):
    """
    Input/output locations.

    TOML:

    [io]
    input_path  = "data/"     # a capture file, or a directory scanned for `extension`
    extension   = ".tpx3"
    output_path = "out/"      # directory; defaults to the input's directory
    """

    input_path: Optional[str] = None
    extension: str = ".tpx3"
    output_path: Optional[str] = None

    @field_validator("extension")
    def _dotted(cls, v: str) -> str:
        if not v:
            raise ValueError("extension must not be empty")
        return v if v.startswith(".") else "." + v


class DecoderCfg(_Section):
    """Event decoder settings (pixel matrix, read block size, marker policy)."""

    width: int = Field(256, gt=0)
    height: int = Field(256, gt=0)
    block_bytes: int = Field(8_000_000, gt=0)
    skip_markers: bool = True

    @field_validator("block_bytes")
    def _whole_records(cls, v: int) -> int:
        if v % 8 != 0:
            raise ValueError("block_bytes must be a multiple of the 8-byte record size")
        return v


class DeadPixelCfg(_Section):
    """
    Dead-pixel thresholding policy.

    A pixel is excluded when its count exceeds
    max_count_ceiling_multiplier * <statistic of active pixel counts>
    (stuck/noisy), or when it is below min_count_floor while its neighbours
    average at least exposure_fraction * <statistic> (non-responsive).
    """

    enabled: bool = True
    min_count_floor: int = Field(1, ge=0)
    max_count_ceiling_multiplier: float = Field(10.0, gt=1.0)
    statistic: Literal["median", "mean"] = "median"
    exposure_fraction: float = Field(0.5, gt=0.0)
    sample_events: Optional[int] = Field(None, gt=0)  # warm-up prefix; None = full stream


class ClusterCfg(_Section):
    """
    Clustering. The capture is clustered as it streams; reorder_window_ps is
    how far (in arrival time) packets may appear out of order in the file.
    Events before the newest time minus this window are clustered and freed.
    """

    time_tolerance_ps: int = Field(500_000, ge=0)
    weighting: Literal["tot", "none"] = "tot"
    reorder_window_ps: int = Field(1_000_000_000, ge=0)


class BinningCfg(_Section):
    """
    Temporal binning.

    reference = "trigger" bins the time since the most recent TDC trigger,
    "absolute" bins the raw arrival time, "auto" picks "trigger" whenever the
    capture contains trigger packets.
    """

    bin_width_ps: int = Field(1_000_000, gt=0)
    origin_ps: int = 0
    reference: Literal["auto", "trigger", "absolute"] = "auto"
    tof_pulse_length_ps: Optional[int] = Field(None, gt=0)
    drop_negative: bool = True
    spectrum_resolution_ps: int = Field(1563, gt=0)
    label_unit: Literal["ps", "ns", "us"] = "ns"


class ImagesCfg(_Section):
    min_counts: int = Field(100, ge=0)  # per-bin emission threshold
    write_png: bool = True
    cmap: str = "gray"


class OutputCfg(_Section):
    """
    Report/archive switches. Peaks are searched in the dense spectrum for the
    HTML report (smoothing window in spectrum samples, minimum peak height).
    """

    write_csv: bool = True
    write_html: bool = True
    write_hdf5: bool = True
    write_hits: bool = False  # per-hit table in the HDF5 archive
    peak_window: int = Field(15, ge=1)
    peak_min_intensity: float = Field(5000.0, ge=0.0)


class ExportCfg(_Section):
    imzml: bool = False
    tpx3c: bool = False  # centroided copy of a raw capture (<dataset>.tpx3c)


class Config(BaseModel):
    """
    Top-level TOML configuration. Every section is optional.
    """

    model_config = ConfigDict(extra="forbid")

    run: RunCfg = Field(default_factory=RunCfg)
    io: IOCfg = Field(default_factory=IOCfg)
    decoder: DecoderCfg = Field(default_factory=DecoderCfg)
    dead_pixels: DeadPixelCfg = Field(default_factory=DeadPixelCfg)
    clustering: ClusterCfg = Field(default_factory=ClusterCfg)
    binning: BinningCfg = Field(default_factory=BinningCfg)
    images: ImagesCfg = Field(default_factory=ImagesCfg)
    output: OutputCfg = Field(default_factory=OutputCfg)
    export: ExportCfg = Field(default_factory=ExportCfg)

    @model_validator(mode="after")
    def _origin_within_pulse(self) -> "Config":
        b = self.binning
        if b.tof_pulse_length_ps is not None and not (0 <= b.origin_ps < b.tof_pulse_length_ps):
            raise ValueError("binning.origin_ps must lie within [0, tof_pulse_length_ps)")
        return self
