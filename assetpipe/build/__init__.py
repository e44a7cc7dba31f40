"""
assetpipe.build - Configuration, steps and plan evaluation.
"""

from assetpipe.build.config import (
    ASSET_CLASSES,
    AssetPaths,
    BuildConfig,
    PathConfig,
    default_path_config,
    load_project_config,
)
from assetpipe.build.errors import (
    AssetPipeError,
    CacheError,
    CleanError,
    ConfigError,
    OverlappingOutputError,
    TransformError,
)

__all__ = [
    # Config
    "ASSET_CLASSES",
    "AssetPaths",
    "BuildConfig",
    "PathConfig",
    "default_path_config",
    "load_project_config",
    # Errors
    "AssetPipeError",
    "CacheError",
    "CleanError",
    "ConfigError",
    "OverlappingOutputError",
    "TransformError",
]
