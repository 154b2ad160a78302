from __future__ import annotations
from .schemas import Config
from pathlib import Path
from pydantic import ValidationError
import json

from tpximager.errors import ConfigError

try:
    import tomllib  # py311+
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # py<=310


def _validate(data: dict, source: str) -> Config:
    try:
        return Config(**data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {source}:\n{exc}") from exc


def load_config(path: str | Path) -> Config:
    p = Path(path)
    try:
        data = tomllib.loads(p.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse TOML {p}: {exc}") from exc
    return _validate(data, str(p))


def default_config(**sections) -> Config:
    """Build a Config from keyword sections, e.g. default_config(binning={"bin_width_ps": 5000})."""
    return _validate(sections, "<defaults>")


def snapshot_config_toml(path: str | Path | None) -> str:
    """Return the raw TOML text for embedding in HDF5 metadata."""
    if path is None:
        return ""
    return Path(path).read_text()


def json_dumps(obj) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
