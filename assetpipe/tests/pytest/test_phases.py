"""
Tests for the transform steps.

Runs each step against a throwaway project: styles through real libsass,
vendor scripts through rjsmin, images through Pillow and the cache. The
script bundler is the in-process fake from conftest.
"""

from __future__ import annotations

import asyncio
import os
import sys
from dataclasses import replace
from pathlib import Path

import pytest
from PIL import Image

from assetpipe.build.caching import get_cache_key
from assetpipe.build.config import BuildConfig
from assetpipe.build.errors import OverlappingOutputError, TransformError
from assetpipe.build.phases import (
    ASSET_STEPS,
    CopyStep,
    ImagesStep,
    ScriptsStep,
    StepContext,
    StylesStep,
    VendorScriptsStep,
    check_disjoint_outputs,
    create_steps,
    write_if_changed,
)
from assetpipe.build.transforms import ScriptBundler

from .conftest import BROKEN_SCSS, FakeBundler, MAIN_SCSS


def run_step(step, ctx: StepContext):
    return asyncio.run(step.run(ctx))


def snapshot(root: Path) -> dict[str, tuple[bytes, int]]:
    """Bytes and mtime of every file under ``root``."""
    return {
        str(p.relative_to(root)): (p.read_bytes(), p.stat().st_mtime_ns)
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


# =============================================================================
# Styles
# =============================================================================


@pytest.mark.evergreen
class TestStylesStep:
    """SCSS compiles to .min.css with an external map; errors stay local."""

    def test_main_scss_produces_min_css_and_map(self, project: Path, ctx: StepContext) -> None:
        """main.scss compiles to compressed main.min.css plus an external map."""
        result = run_step(StylesStep(), ctx)

        css = project / "dist" / "css" / "main.min.css"
        source_map = project / "dist" / "css" / "main.min.css.map"
        assert result.ok
        assert result.outputs == [css, source_map]
        assert css.exists() and source_map.exists()

        text = css.read_text()
        assert ".box{margin:10px auto}" in text
        assert ".box .inner{padding:10px}" in text
        assert "\n  " not in text
        assert "sourceMappingURL=main.min.css.map" in text

    def test_map_references_source(self, project: Path, ctx: StepContext) -> None:
        """The source map points back at main.scss."""
        run_step(StylesStep(), ctx)
        source_map = (project / "dist" / "css" / "main.min.css.map").read_text()
        assert "main.scss" in source_map

    def test_partials_not_compiled(self, project: Path, ctx: StepContext) -> None:
        """Partials are imported, never compiled on their own."""
        run_step(StylesStep(), ctx)
        assert not (project / "dist" / "css" / "_vars.min.css").exists()
        assert not (project / "dist" / "css" / "vars.min.css").exists()

    def test_nested_source_keeps_relative_path(self, project: Path, ctx: StepContext) -> None:
        """Output keeps the path relative to the glob base."""
        pages = project / "app" / "scss" / "pages"
        pages.mkdir()
        (pages / "home.scss").write_text(".home { color: red; }\n")

        result = run_step(StylesStep(), ctx)

        assert result.ok
        assert (project / "dist" / "css" / "pages" / "home.min.css").exists()
        assert (project / "dist" / "css" / "pages" / "home.min.css.map").exists()

    def test_map_url_subdirectory(self, project: Path, config: BuildConfig) -> None:
        """map_url moves the map and the sourceMappingURL with it."""
        config.paths = replace(config.paths, map_url="maps")
        ctx = StepContext.from_config(config)

        result = run_step(StylesStep(), ctx)

        assert result.ok
        assert (project / "dist" / "css" / "maps" / "main.min.css.map").exists()
        css = (project / "dist" / "css" / "main.min.css").read_text()
        assert "sourceMappingURL=maps/main.min.css.map" in css

    def test_bad_stylesheet_fails_and_keeps_prior_output(self, project: Path, ctx: StepContext) -> None:
        """A compile error fails the step and leaves the last good CSS."""
        assert run_step(StylesStep(), ctx).ok
        css = project / "dist" / "css" / "main.min.css"
        good = css.read_bytes()

        (project / "app" / "scss" / "main.scss").write_text(BROKEN_SCSS)
        result = run_step(StylesStep(), ctx)

        assert not result.ok
        assert "main.scss" in result.error
        assert css.read_bytes() == good

    def test_failure_logged(self, project: Path, ctx: StepContext, capsys) -> None:
        """Failures are reported on stderr."""
        (project / "app" / "scss" / "main.scss").write_text(BROKEN_SCSS)
        run_step(StylesStep(), ctx)
        assert "styles failed:" in capsys.readouterr().err

    def test_recovers_after_fix(self, project: Path, ctx: StepContext) -> None:
        """Fixing the stylesheet makes the next run succeed."""
        main = project / "app" / "scss" / "main.scss"
        main.write_text(BROKEN_SCSS)
        assert not run_step(StylesStep(), ctx).ok

        main.write_text(MAIN_SCSS)
        assert run_step(StylesStep(), ctx).ok

    def test_one_bad_file_does_not_block_others(self, project: Path, ctx: StepContext) -> None:
        """Other stylesheets still compile next to a broken one."""
        (project / "app" / "scss" / "broken.scss").write_text(BROKEN_SCSS)
        result = run_step(StylesStep(), ctx)
        assert not result.ok
        assert (project / "dist" / "css" / "main.min.css").exists()

    def test_new_file_picked_up_on_rerun(self, project: Path, ctx: StepContext) -> None:
        """Sources are resolved on every run, so new files are built."""
        run_step(StylesStep(), ctx)
        (project / "app" / "scss" / "extra.scss").write_text(".extra { top: 0; }\n")

        result = run_step(StylesStep(), ctx)

        assert project / "dist" / "css" / "extra.min.css" in result.outputs

    def test_missing_source_dir_is_empty_success(self, tmp_path: Path, capsys) -> None:
        """No matching sources is a successful, empty run."""
        ctx = StepContext.from_config(BuildConfig(project_root=tmp_path))
        result = run_step(StylesStep(), ctx)
        assert result.ok
        assert result.outputs == []
        assert "no matching sources" in capsys.readouterr().out


# =============================================================================
# Copies
# =============================================================================


@pytest.mark.evergreen
class TestCopySteps:
    def test_vendor_styles_copied(self, project: Path, ctx: StepContext) -> None:
        """Vendor CSS is copied byte for byte."""
        result = run_step(CopyStep("vendor-styles", "vendor_styles"), ctx)
        out = project / "dist" / "css" / "vendor" / "lib.css"
        assert result.outputs == [out]
        assert out.read_bytes() == (project / "app" / "css" / "vendor" / "lib.css").read_bytes()

    def test_fonts_copied(self, project: Path, ctx: StepContext) -> None:
        """Fonts are copied byte for byte."""
        result = run_step(CopyStep("fonts", "fonts"), ctx)
        assert result.ok
        assert (project / "dist" / "fonts" / "icons.woff2").read_bytes() == b"wOF2\x00\x01fake-font"


# =============================================================================
# Scripts
# =============================================================================


@pytest.mark.evergreen
class TestScriptsStep:
    def test_entry_bundled_with_map(self, project: Path, ctx: StepContext) -> None:
        """The entry point is bundled into script.min.js with a map."""
        result = run_step(ScriptsStep(), ctx)

        out = project / "dist" / "js" / "script.min.js"
        assert result.ok
        assert result.outputs == [out, out.with_name("script.min.js.map")]
        assert out.read_bytes().startswith(b"/*bundled*/")
        assert ctx.bundler.calls == [project / "app" / "js" / "script.js"]

    def test_only_entries_bundled(self, project: Path, ctx: StepContext) -> None:
        """Modules that are not entries are not bundled separately."""
        run_step(ScriptsStep(), ctx)
        assert not (project / "dist" / "js" / "util.min.js").exists()

    def test_missing_entry_skipped(self, project: Path, ctx: StepContext) -> None:
        """A missing entry is skipped and the step still succeeds."""
        (project / "app" / "js" / "script.js").unlink()
        result = run_step(ScriptsStep(), ctx)
        assert result.ok
        assert result.outputs == []

    def test_bundler_failure_keeps_prior_output(self, project: Path, ctx: StepContext) -> None:
        """A bundler error fails the step and keeps the last good bundle."""
        run_step(ScriptsStep(), ctx)
        out = project / "dist" / "js" / "script.min.js"
        good = out.read_bytes()

        ctx.bundler = FakeBundler(fail=True)
        result = run_step(ScriptsStep(), ctx)

        assert not result.ok
        assert "Unexpected token" in result.error
        assert out.read_bytes() == good


@pytest.mark.evergreen
class TestVendorScriptsStep:
    def test_minified_with_suffix(self, project: Path, ctx: StepContext) -> None:
        """Vendor scripts are minified into .min.js."""
        result = run_step(VendorScriptsStep(), ctx)

        out = project / "dist" / "js" / "vendor" / "lib.min.js"
        assert result.outputs == [out]
        text = out.read_text()
        assert "function double(x){" in text
        assert "return x*2" in text
        assert "\n    " not in text

    def test_already_minified_name_kept(self, project: Path, ctx: StepContext) -> None:
        """A .min.js file keeps its name."""
        (project / "app" / "js" / "vendor" / "jquery.min.js").write_text("var a=1;")
        run_step(VendorScriptsStep(), ctx)
        vendor = project / "dist" / "js" / "vendor"
        assert (vendor / "jquery.min.js").exists()
        assert not (vendor / "jquery.min.min.js").exists()



FAKE_ESBUILD = """#!{python}
import sys

args = sys.argv[1:]
entry = args[0]
outfile = next(a.split("=", 1)[1] for a in args if a.startswith("--outfile="))
source = open(entry).read()
if "syntax error" in source:
    sys.stderr.write(entry + ": ERROR: Unexpected token\\n")
    sys.exit(1)
with open(outfile, "w") as f:
    f.write("// " + " ".join(args[1:]) + "\\n" + source.strip())
with open(outfile + ".map", "w") as f:
    f.write('{{"version":3}}')
"""


@pytest.fixture
def fake_esbuild(tmp_path: Path) -> str:
    """An executable that answers like esbuild and echoes its arguments."""
    script = tmp_path / "bin" / "esbuild"
    script.parent.mkdir()
    script.write_text(FAKE_ESBUILD.format(python=sys.executable))
    script.chmod(0o755)
    return str(script)


@pytest.mark.evergreen
@pytest.mark.skipif(os.name == "nt", reason="shebang scripts need a POSIX shell")
class TestScriptBundler:
    """ScriptBundler drives the esbuild executable through a scratch directory."""

    def test_command_line_and_outputs(self, project: Path, fake_esbuild: str) -> None:
        """The bundle and its map come back; the scratch directory is gone."""
        bundler = ScriptBundler(executable=fake_esbuild, target="es2017")
        entry = project / "app" / "js" / "script.js"

        js, source_map = asyncio.run(bundler.bundle(entry, "script.min.js"))

        first_line = js.decode().splitlines()[0]
        for flag in ("--bundle", "--minify", "--sourcemap", "--target=es2017", "--log-level=error"):
            assert flag in first_line.split()
        outfile = Path(next(a for a in first_line.split() if a.startswith("--outfile=")).split("=", 1)[1])
        assert outfile.name == "script.min.js"
        assert not outfile.parent.exists()
        assert source_map == b'{"version":3}'

    def test_failure_becomes_transform_error(self, tmp_path: Path, fake_esbuild: str) -> None:
        """A non-zero exit carries esbuild's stderr in the error."""
        entry = tmp_path / "broken.js"
        entry.write_text("syntax error here")
        bundler = ScriptBundler(executable=fake_esbuild)

        with pytest.raises(TransformError, match="Unexpected token"):
            asyncio.run(bundler.bundle(entry, "broken.min.js"))

    def test_missing_executable(self, tmp_path: Path) -> None:
        """An esbuild that is not installed is reported, not raised raw."""
        entry = tmp_path / "a.js"
        entry.write_text("var a = 1;")
        bundler = ScriptBundler(executable=str(tmp_path / "no-such-esbuild"))

        with pytest.raises(TransformError, match="not found"):
            asyncio.run(bundler.bundle(entry, "a.min.js"))


# =============================================================================
# Images
# =============================================================================


@pytest.mark.evergreen
class TestImagesStep:
    def test_optimized_into_dest(self, project: Path, ctx: StepContext) -> None:
        """Images land in dest no larger than their source."""
        source = project / "app" / "images" / "logo.png"
        result = run_step(ImagesStep(), ctx)

        out = project / "dist" / "images" / "logo.png"
        assert result.outputs == [out]
        assert 0 < out.stat().st_size <= source.stat().st_size

    def test_result_cached(self, project: Path, ctx: StepContext) -> None:
        """The optimized bytes are stored under the content key."""
        run_step(ImagesStep(), ctx)
        data = (project / "app" / "images" / "logo.png").read_bytes()
        key = get_cache_key(data, ctx.optimizer.settings_key)
        assert ctx.cache.get(key) == (project / "dist" / "images" / "logo.png").read_bytes()

    def test_cache_hit_used(self, project: Path, ctx: StepContext) -> None:
        """A cached entry is used instead of optimizing again."""
        data = (project / "app" / "images" / "logo.png").read_bytes()
        ctx.cache.put(get_cache_key(data, ctx.optimizer.settings_key), b"cached-bytes")

        run_step(ImagesStep(), ctx)

        assert (project / "dist" / "images" / "logo.png").read_bytes() == b"cached-bytes"

    def test_cache_errors_are_warnings(self, project: Path, ctx: StepContext, capsys) -> None:
        """A broken cache only warns; the image is still written."""
        # A plain file where the cache directory should be
        ctx.config.cache_path.write_text("not a directory")

        result = run_step(ImagesStep(), ctx)

        assert result.ok
        assert (project / "dist" / "images" / "logo.png").exists()
        assert "[WARN]" in capsys.readouterr().out

    def test_corrupt_image_fails(self, project: Path, ctx: StepContext) -> None:
        """An unreadable image fails the step, other images still land."""
        (project / "app" / "images" / "bad.png").write_bytes(b"not an image")
        result = run_step(ImagesStep(), ctx)
        assert not result.ok
        assert "bad.png" in result.error
        assert (project / "dist" / "images" / "logo.png").exists()

    def test_oversized_image_fails_step(
        self, project: Path, ctx: StepContext, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A decompression bomb is a failed step, not an exception out of run()."""
        # 16x16 is more than twice this limit, so Image.open refuses it
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)

        result = run_step(ImagesStep(), ctx)

        assert not result.ok
        assert "logo.png" in result.error
        assert "cannot optimize image" in result.error


# =============================================================================
# Whole-pass Properties
# =============================================================================


async def _run_all(ctx: StepContext) -> list:
    steps = create_steps()
    return [await steps[name].run(ctx) for name in ASSET_STEPS]


@pytest.mark.evergreen
class TestBuildProperties:
    def test_rebuild_is_idempotent(self, project: Path, ctx: StepContext) -> None:
        """A second full pass leaves bytes and mtimes untouched."""
        assert all(r.ok for r in asyncio.run(_run_all(ctx)))
        first = snapshot(project / "dist")

        asyncio.run(_run_all(ctx))

        assert snapshot(project / "dist") == first

    def test_write_if_changed(self, tmp_path: Path) -> None:
        """Identical bytes are not rewritten."""
        target = tmp_path / "a" / "b.txt"
        assert write_if_changed(target, b"x") is True
        assert write_if_changed(target, b"x") is False
        assert write_if_changed(target, b"y") is True
        assert target.read_bytes() == b"y"


@pytest.mark.evergreen
class TestDisjointOutputs:
    """check_disjoint_outputs rejects steps writing into each other's space."""

    def test_stock_layout_passes(self, ctx: StepContext) -> None:
        """The stock layout has disjoint outputs."""
        check_disjoint_outputs(create_steps().values(), ctx)

    def test_styles_into_vendor_dir(self, project: Path, ctx: StepContext) -> None:
        """styles compiling into vendor-styles' directory is an overlap."""
        vendor = project / "app" / "scss" / "vendor"
        vendor.mkdir()
        (vendor / "theme.scss").write_text("a { b: c; }\n")

        with pytest.raises(OverlappingOutputError, match="vendor-styles"):
            check_disjoint_outputs(create_steps().values(), ctx)

    def test_same_output_twice(self, project: Path, config: BuildConfig) -> None:
        """Two sources mapping to one output file are an overlap."""
        other = project / "app" / "other"
        other.mkdir()
        (other / "main.scss").write_text("a { b: c; }\n")
        styles = replace(config.paths.styles, sources=("app/scss/*.scss", "app/other/*.scss"))
        config.paths = replace(config.paths, styles=styles)
        ctx = StepContext.from_config(config)

        with pytest.raises(OverlappingOutputError, match="main.min.css"):
            check_disjoint_outputs(create_steps().values(), ctx)
