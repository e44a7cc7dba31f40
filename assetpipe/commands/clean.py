"""assetpipe clean -- Remove generated output and the image cache."""

from __future__ import annotations

import shutil
from pathlib import Path

from assetpipe.core.utils import log
from assetpipe.build.config import BuildConfig
from assetpipe.build.errors import CleanError


# =============================================================================
# Utilities
# =============================================================================

_UNITS = ("KB", "MB", "GB", "TB")


def _tree_bytes(path: Path) -> int:
    """Bytes held by a file, or by every file below a directory."""
    if path.is_file():
        return path.stat().st_size
    return sum(entry.stat().st_size for entry in path.rglob("*") if entry.is_file())


def _format_size(size: float) -> str:
    if size < 1024:
        return f"{int(size)} B"
    for unit in _UNITS:
        size /= 1024
        if size < 1024 or unit == _UNITS[-1]:
            return f"{size:.1f} {unit}"


def _collect_clean_targets(root: Path) -> list[tuple[Path, int]]:
    """Entries a clean of ``root`` removes, as ``(path, bytes)``.

    Children come first in name order and ``root`` last. A missing root
    yields nothing. Sizes are informational; unreadable entries count as 0.
    """
    if not root.exists():
        return []
    if not root.is_dir():
        return [(root, root.stat().st_size)]

    targets = []
    for child in sorted(root.iterdir()):
        try:
            size = _tree_bytes(child)
        except OSError:
            size = 0
        targets.append((child, size))
    targets.append((root, 0))
    return targets


# =============================================================================
# Core Clean Logic
# =============================================================================


def remove_tree(root: Path, dry_run: bool = False) -> list[str]:
    """Remove ``root`` and everything below it.

    Returns list of removed (or would-remove) paths as strings.

    Raises:
        CleanError: On the first failed delete, carrying the paths that
            were already removed.
    """
    removed: list[str] = []

    for path, size in _collect_clean_targets(root):
        size_str = _format_size(size)
        if dry_run:
            log.info(f"[DRY-RUN] Would remove {path} ({size_str})")
            removed.append(str(path))
            continue

        try:
            if path.is_dir() and not path.is_symlink():
                if path == root:
                    path.rmdir()
                else:
                    shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as e:
            raise CleanError(path, e, removed) from e

        if path != root:
            log.dim(f"Removed {path} ({size_str})")
        removed.append(str(path))

    return removed


def clean_outputs(config: BuildConfig, dry_run: bool = False) -> list[str]:
    """Remove the whole distribution tree."""
    return remove_tree(config.dist_dir, dry_run=dry_run)


def clear_cache(config: BuildConfig, dry_run: bool = False) -> list[str]:
    """Remove the on-disk image cache."""
    return remove_tree(config.cache_path, dry_run=dry_run)
