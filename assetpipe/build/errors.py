"""
Exception types for the asset pipeline.

Transform and cache errors are recovered inside a step; clean and
configuration errors abort startup.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class AssetPipeError(Exception):
    """Base class for all assetpipe errors."""


class ConfigError(AssetPipeError):
    """Invalid path configuration or project config file."""


class OverlappingOutputError(ConfigError):
    """Two steps would write to the same output location."""


class TransformError(AssetPipeError):
    """An external transformation rejected its input.

    Never fatal: the step reports failure and prior output stays in place.
    """

    def __init__(self, message: str, source: Optional[Path] = None):
        super().__init__(message)
        self.source = source

    def __str__(self) -> str:
        message = super().__str__()
        if self.source is not None:
            return f"{self.source}: {message}"
        return message


class CleanError(AssetPipeError):
    """A recursive delete failed. Fatal to startup."""

    def __init__(self, path: Path, cause: OSError, removed: list[str]):
        super().__init__(f"Failed to remove {path}: {cause.strerror or cause}")
        self.path = path
        self.cause = cause
        self.removed = removed


class CacheError(AssetPipeError):
    """The image cache could not be read or written. Downgraded to a warning."""
