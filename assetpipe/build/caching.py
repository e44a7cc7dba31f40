"""
On-disk cache for optimized images.

Image optimization is slow and deterministic, so results are stored by a
hash of the source bytes and optimizer settings. The cache is a speedup
only: every failure surfaces as CacheError and callers fall back to
optimizing directly.
"""

from __future__ import annotations

import hashlib
import os
import tempfile
from pathlib import Path
from typing import Optional

from assetpipe.build.errors import CacheError


# =============================================================================
# Cache Key Generation
# =============================================================================


def get_cache_key(data: bytes, settings: str) -> str:
    """Generate a cache key from source content and optimizer settings."""
    hasher = hashlib.sha256()
    hasher.update(settings.encode("utf-8"))
    hasher.update(b"\x00")
    hasher.update(data)
    return hasher.hexdigest()[:32]


# =============================================================================
# Cache Operations
# =============================================================================


class ImageCache:
    """Content-addressed store under ``<cache_dir>/images``."""

    def __init__(self, cache_dir: Path):
        self.cache_dir = cache_dir
        self.root = cache_dir / "images"

    def _entry_path(self, key: str) -> Path:
        return self.root / key[:2] / key

    def get(self, key: str) -> Optional[bytes]:
        """Return cached bytes, or None on a miss."""
        path = self._entry_path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"cannot read cache entry {path}: {e}") from e

    def put(self, key: str, data: bytes) -> None:
        """Store bytes atomically so a crash never leaves a torn entry."""
        path = self._entry_path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp_")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise CacheError(f"cannot write cache entry {path}: {e}") from e

