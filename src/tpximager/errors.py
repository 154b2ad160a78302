# src/tpximager/errors.py
from __future__ import annotations


class FormatError(ValueError):
    """
    Malformed or truncated capture data.

    offset: absolute byte offset of the offending record in the input file.
    """

    def __init__(self, message: str, offset: int | None = None):
        self.offset = offset
        if offset is not None:
            message = f"{message} (byte offset {offset})"
        super().__init__(message)


class ConfigError(ValueError):
    """Invalid run configuration; raised at startup, never clamped."""
