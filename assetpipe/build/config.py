"""
Build configuration for assetpipe.

Path layout per asset class, run options, and project config loading.
"""

from __future__ import annotations

import json
import posixpath
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from assetpipe.core.utils import CACHE_DIRNAME, CONFIG_FILENAME
from assetpipe.build.errors import ConfigError, OverlappingOutputError

__all__ = [
    "ASSET_CLASSES",
    "AssetPaths",
    "PathConfig",
    "BuildConfig",
    "default_path_config",
    "load_project_config",
]

# Asset classes in PathConfig, in build order
ASSET_CLASSES = (
    "styles",
    "vendor_styles",
    "scripts",
    "vendor_scripts",
    "fonts",
    "images",
    "markup",
)


# =============================================================================
# Data Classes
# =============================================================================


def _frozen_mapping(data: Optional[Mapping[str, str]] = None) -> Mapping[str, str]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class AssetPaths:
    """Source globs and destination for one asset class."""

    sources: tuple[str, ...]
    dest: Optional[str] = None  # None: watched for reload only, never written
    entries: tuple[str, ...] = ()  # bundle entry points, relative to extras["folder"]
    extras: Mapping[str, str] = field(default_factory=_frozen_mapping)


@dataclass(frozen=True)
class PathConfig:
    """Immutable path table shared read-only by every step."""

    styles: AssetPaths
    vendor_styles: AssetPaths
    scripts: AssetPaths
    vendor_scripts: AssetPaths
    fonts: AssetPaths
    images: AssetPaths
    markup: AssetPaths
    dist: str = "dist"
    cache_dir: str = CACHE_DIRNAME
    map_url: str = "./"

    def __post_init__(self) -> None:
        self.validate_destinations()

    def asset_classes(self) -> dict[str, AssetPaths]:
        return {name: getattr(self, name) for name in ASSET_CLASSES}

    def validate_destinations(self) -> None:
        """Reject destinations that clean would miss or that two classes share.

        Every ``dest`` must sit under ``dist``, since clean removes only
        that tree. Nested destinations (dist/css and dist/css/vendor) are
        allowed here; the per-file check in phases.check_disjoint_outputs
        covers them.
        """
        dist = _normalize(self.dist)
        owners: dict[str, str] = {}
        for name, paths in self.asset_classes().items():
            if paths.dest is None:
                continue
            key = _normalize(paths.dest)
            if not _within(key, dist):
                raise ConfigError(
                    f"{name} writes to {paths.dest}, outside dist '{self.dist}'"
                )
            if key in owners:
                raise OverlappingOutputError(
                    f"{owners[key]} and {name} both write to {paths.dest}"
                )
            owners[key] = name


def _normalize(path: str) -> str:
    return posixpath.normpath(Path(path).as_posix())


def _within(path: str, parent: str) -> bool:
    if parent == ".":
        return not posixpath.isabs(path) and path != ".." and not path.startswith("../")
    return path == parent or path.startswith(parent.rstrip("/") + "/")


def _rebase(dest: str, old_dist: str, new_dist: str) -> str:
    """Move ``dest`` from under ``old_dist`` to the same place under ``new_dist``."""
    key, old = _normalize(dest), _normalize(old_dist)
    if key == old:
        return new_dist
    if key.startswith(old + "/"):
        return posixpath.join(Path(new_dist).as_posix(), key[len(old) + 1:])
    return dest


def default_path_config() -> PathConfig:
    """The stock layout: app/ sources, node_modules vendor styles, dist/ output."""
    return PathConfig(
        styles=AssetPaths(
            sources=(
                "node_modules/@fortawesome/fontawesome-free/scss/fontawesome.scss",
                "node_modules/bootstrap/scss/bootstrap.scss",
                "app/scss/**/*.scss",
            ),
            dest="dist/css",
            extras=_frozen_mapping({"folder": "app/css/"}),
        ),
        vendor_styles=AssetPaths(
            sources=("app/css/vendor/**/*.css",),
            dest="dist/css/vendor",
        ),
        scripts=AssetPaths(
            sources=("app/js/**/*.js",),
            dest="dist/js",
            entries=("script.js",),
            extras=_frozen_mapping({"folder": "app/js/"}),
        ),
        vendor_scripts=AssetPaths(
            sources=("app/js/vendor/**/*.js",),
            dest="dist/js/vendor",
        ),
        fonts=AssetPaths(
            sources=("app/fonts/**/*",),
            dest="dist/fonts",
        ),
        images=AssetPaths(
            sources=("app/images/**/*.{png,jpg,jpeg,gif,webp}",),
            dest="dist/images",
        ),
        markup=AssetPaths(
            sources=("*.html", "app/**/*.html"),
        ),
    )


@dataclass
class BuildConfig:
    """Configuration for a pipeline run."""

    project_root: Path
    paths: PathConfig = field(default_factory=default_path_config)
    port: int = 3000
    serve: bool = True
    clean_first: bool = True
    use_polling: bool = True
    poll_interval: float = 1.0
    debounce: float = 0.0  # 0: one run per event
    skip_initial_build: bool = False
    dry_run: bool = False
    verbose: bool = False
    esbuild: str = "esbuild"
    postcss: Optional[list[str]] = None  # e.g. ["npx", "postcss", "--use", "autoprefixer", "cssnano"]
    js_target: str = "es2015"
    image_quality: int = 80

    def resolve(self, relative: str) -> Path:
        """Resolve a configured path against the project root."""
        path = Path(relative)
        return path if path.is_absolute() else self.project_root / path

    @property
    def dist_dir(self) -> Path:
        return self.resolve(self.paths.dist)

    @property
    def cache_path(self) -> Path:
        return self.resolve(self.paths.cache_dir)


# =============================================================================
# Project Config Loading
# =============================================================================

_RUN_OPTIONS = {
    "port": int,
    "poll_interval": float,
    "debounce": float,
    "use_polling": bool,
    "esbuild": str,
    "postcss": list,
    "js_target": str,
    "image_quality": int,
}
_PATH_OPTIONS = {"dist", "cache_dir", "map_url"}


def _parse_asset_paths(name: str, data: Any, base: AssetPaths) -> AssetPaths:
    if not isinstance(data, dict):
        raise ConfigError(f"paths.{name} must be an object")

    unknown = set(data) - {f.name for f in fields(AssetPaths)}
    if unknown:
        raise ConfigError(f"paths.{name}: unknown key(s) {', '.join(sorted(unknown))}")

    updates: dict[str, Any] = {}
    if "sources" in data:
        sources = data["sources"]
        if isinstance(sources, str):
            sources = [sources]
        updates["sources"] = tuple(sources)
    if "dest" in data:
        updates["dest"] = data["dest"]
    if "entries" in data:
        updates["entries"] = tuple(data["entries"])
    if "extras" in data:
        updates["extras"] = _frozen_mapping(data["extras"])
    return replace(base, **updates)


def load_project_config(
    project_root: Path,
    config_file: Optional[Path] = None,
) -> BuildConfig:
    """Build a BuildConfig from defaults plus an optional assetpipe.json.

    An explicitly passed config file must exist; the implicit one is optional.

    Raises:
        ConfigError: On unreadable JSON, unknown keys, overlapping outputs,
            or a destination outside dist.
    """
    config = BuildConfig(project_root=project_root)

    path = config_file if config_file is not None else project_root / CONFIG_FILENAME
    if not path.exists():
        if config_file is not None:
            raise ConfigError(f"Config file not found: {path}")
        return config

    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ConfigError(f"{path.name} is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path.name} must contain a JSON object")

    unknown = set(data) - set(_RUN_OPTIONS) - _PATH_OPTIONS - {"paths"}
    if unknown:
        raise ConfigError(f"{path.name}: unknown key(s) {', '.join(sorted(unknown))}")

    for key in _PATH_OPTIONS:
        if key in data and not isinstance(data[key], str):
            raise ConfigError(f"{path.name}: '{key}' must be str")
    if not isinstance(data.get("paths", {}), dict):
        raise ConfigError(f"{path.name}: 'paths' must be an object")

    path_updates: dict[str, Any] = {k: data[k] for k in _PATH_OPTIONS if k in data}
    explicit_dests: set[str] = set()
    for name, asset_data in data.get("paths", {}).items():
        if name not in ASSET_CLASSES:
            raise ConfigError(f"{path.name}: unknown asset class '{name}'")
        path_updates[name] = _parse_asset_paths(name, asset_data, getattr(config.paths, name))
        if "dest" in asset_data:
            explicit_dests.add(name)

    if "dist" in data:
        # Destinations left at their defaults follow dist to its new place
        for name in ASSET_CLASSES:
            if name in explicit_dests:
                continue
            paths = path_updates.get(name, getattr(config.paths, name))
            if paths.dest is not None:
                path_updates[name] = replace(
                    paths, dest=_rebase(paths.dest, config.paths.dist, data["dist"])
                )

    if path_updates:
        # replace() re-runs __post_init__, so overlaps and stray dests are caught here
        config.paths = replace(config.paths, **path_updates)

    for key, expected in _RUN_OPTIONS.items():
        if key not in data:
            continue
        value = data[key]
        if expected is float and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise ConfigError(f"{path.name}: '{key}' must be {expected.__name__}")
        setattr(config, key, value)

    return config
