"""
External transformations wrapped by the build steps.

Every class here delegates the real work to a library or executable:
libsass for SCSS, an optional PostCSS command for autoprefixing, esbuild
for bundling, rjsmin for vendor scripts and Pillow for images. Failures are
raised as TransformError so the calling step can report and move on.
"""

from __future__ import annotations

import asyncio
import io
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

import rjsmin
import sass
from PIL import Image, UnidentifiedImageError

from assetpipe.build.errors import TransformError


# =============================================================================
# Styles
# =============================================================================


class StyleCompiler:
    """Compile one SCSS file to compressed CSS plus an external source map."""

    def __init__(
        self,
        include_paths: list[Path],
        postcss: Optional[list[str]] = None,
    ):
        self.include_paths = include_paths
        self.postcss = postcss

    def compile(self, source: Path, output: Path, map_path: Path) -> tuple[str, str]:
        """Return (css, source_map) for ``source``.

        ``output`` and ``map_path`` are where the caller will write the
        results; libsass uses them to compute relative URLs.
        """
        include_paths = [str(source.parent)] + [str(p) for p in self.include_paths]
        try:
            css, source_map = sass.compile(
                filename=str(source),
                output_style="compressed",
                include_paths=include_paths,
                source_map_filename=str(map_path),
                output_filename_hint=str(output),
                source_map_contents=True,
            )
        except sass.CompileError as e:
            raise TransformError(str(e).strip(), source) from e

        if self.postcss:
            css = self._postprocess(css, source, map_path, output)
        return css, source_map

    def _postprocess(self, css: str, source: Path, map_path: Path, output: Path) -> str:
        """Pipe CSS through the configured PostCSS command (autoprefixer, cssnano)."""
        try:
            result = subprocess.run(
                list(self.postcss or []) + ["--no-map"],
                input=css,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise TransformError(f"PostCSS command not found: {self.postcss[0]}", source) from e

        if result.returncode != 0:
            raise TransformError(f"PostCSS failed: {result.stderr.strip()[:300]}", source)

        processed = result.stdout.rstrip()
        if "sourceMappingURL" not in processed:
            rel = Path(os.path.relpath(map_path, output.parent)).as_posix()
            processed += f"\n/*# sourceMappingURL={rel} */"
        return processed


# =============================================================================
# Scripts
# =============================================================================


class ScriptBundler:
    """Bundle, transpile and minify one entry point with the esbuild executable."""

    def __init__(self, executable: str = "esbuild", target: str = "es2015"):
        self.executable = executable
        self.target = target

    async def bundle(self, entry: Path, output_name: str) -> tuple[bytes, bytes]:
        """Return (javascript, source_map) for ``entry``.

        esbuild writes into a scratch directory so a failed bundle never
        touches the previous output.
        """
        with tempfile.TemporaryDirectory(prefix="assetpipe_") as tmpdir:
            outfile = Path(tmpdir) / output_name
            cmd = [
                self.executable,
                str(entry),
                "--bundle",
                "--minify",
                "--sourcemap",
                f"--target={self.target}",
                f"--outfile={outfile}",
                "--log-level=error",
            ]
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as e:
                raise TransformError(
                    f"{self.executable} not found (install esbuild or set 'esbuild' in the config)",
                    entry,
                ) from e

            _, stderr = await proc.communicate()
            if proc.returncode != 0:
                raise TransformError(stderr.decode("utf-8", errors="replace").strip()[:500], entry)

            map_file = outfile.with_name(outfile.name + ".map")
            return outfile.read_bytes(), map_file.read_bytes() if map_file.exists() else b""


class JsMinifier:
    """Minify prebuilt vendor scripts with rjsmin."""

    def minify(self, source: Path) -> bytes:
        try:
            text = source.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise TransformError(f"not valid UTF-8: {e}", source) from e
        return rjsmin.jsmin(text).encode("utf-8")


# =============================================================================
# Images
# =============================================================================


class ImageOptimizer:
    """Re-encode images with Pillow's optimizing encoders."""

    def __init__(self, quality: int = 80):
        self.quality = quality

    @property
    def settings_key(self) -> str:
        """Part of the cache key: changing settings invalidates cached output."""
        return f"pillow-q{self.quality}"

    def optimize(self, data: bytes, source: Path) -> bytes:
        """Return the smaller of the optimized and input encodings."""
        buffer = io.BytesIO()
        try:
            with Image.open(io.BytesIO(data)) as img:
                fmt = img.format
                if fmt == "JPEG":
                    img.save(buffer, "JPEG", optimize=True, quality=self.quality, progressive=True)
                elif fmt == "PNG":
                    img.save(buffer, "PNG", optimize=True)
                elif fmt == "GIF":
                    img.save(buffer, "GIF", optimize=True, save_all=getattr(img, "is_animated", False))
                elif fmt == "WEBP":
                    img.save(buffer, "WEBP", quality=self.quality, method=6)
                else:
                    return data
        # Pillow reports unusable input through several exception types
        except (UnidentifiedImageError, Image.DecompressionBombError, ValueError, OSError) as e:
            raise TransformError(f"cannot optimize image: {e}", source) from e

        optimized = buffer.getvalue()
        return optimized if len(optimized) < len(data) else data
