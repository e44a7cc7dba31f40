"""
Build phases for assetpipe.

Each step reads the sources matched by its globs at execution time, hands
them to an external transformation, and writes the results under its own
destination directory.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

from assetpipe.core.utils import glob_base, log, resolve_sources
from assetpipe.build.caching import ImageCache, get_cache_key
from assetpipe.build.config import AssetPaths, BuildConfig
from assetpipe.build.errors import CacheError, OverlappingOutputError, TransformError
from assetpipe.build.transforms import ImageOptimizer, JsMinifier, ScriptBundler, StyleCompiler
from assetpipe.commands.clean import clean_outputs, clear_cache

# Steps that produce assets, in default build order
ASSET_STEPS = ("styles", "vendor-styles", "scripts", "vendor-scripts", "fonts", "images")


# =============================================================================
# Results and Context
# =============================================================================


@dataclass
class StepResult:
    """Outcome of one step invocation."""

    name: str
    ok: bool = True
    outputs: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration: float = 0.0

    def fail(self, message: str) -> None:
        self.ok = False
        self.errors.append(message)

    @property
    def error(self) -> Optional[str]:
        return "; ".join(self.errors) or None


@dataclass
class StepContext:
    """The configuration plus the external collaborators every step uses."""

    config: BuildConfig
    compiler: StyleCompiler
    bundler: ScriptBundler
    minifier: JsMinifier
    optimizer: ImageOptimizer
    cache: ImageCache

    @classmethod
    def from_config(cls, config: BuildConfig) -> "StepContext":
        root = config.project_root
        include_paths = [root / "node_modules"]
        for pattern in config.paths.styles.sources:
            base = config.resolve(glob_base(pattern))
            if base not in include_paths:
                include_paths.append(base)

        return cls(
            config=config,
            compiler=StyleCompiler(include_paths, postcss=config.postcss),
            bundler=ScriptBundler(config.esbuild, config.js_target),
            minifier=JsMinifier(),
            optimizer=ImageOptimizer(config.image_quality),
            cache=ImageCache(config.cache_path),
        )


def write_if_changed(path: Path, data: bytes) -> bool:
    """Write ``data`` unless the file already holds exactly these bytes.

    Keeps repeated builds over unchanged sources from touching output.
    """
    if path.exists() and path.read_bytes() == data:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return True


# =============================================================================
# Step Base
# =============================================================================


class TransformStep:
    """A named, stateless unit of work over one asset class."""

    name: str = ""
    asset_class: Optional[str] = None

    def paths(self, ctx: StepContext) -> AssetPaths:
        return getattr(ctx.config.paths, self.asset_class)

    def dest(self, ctx: StepContext) -> Optional[Path]:
        if self.asset_class is None or self.paths(ctx).dest is None:
            return None
        return ctx.config.resolve(self.paths(ctx).dest)

    def sources(self, ctx: StepContext) -> list[tuple[Path, Path]]:
        return resolve_sources(ctx.config.project_root, self.paths(ctx).sources)

    def output_for(self, source: Path, base: Path, ctx: StepContext) -> Path:
        return self.dest(ctx) / source.relative_to(base)

    def plan_outputs(self, ctx: StepContext) -> list[Path]:
        """Every path this step would write given the current sources."""
        return [self.output_for(source, base, ctx) for source, base in self.sources(ctx)]

    async def run(self, ctx: StepContext) -> StepResult:
        """Execute the step, converting transformation errors into a failed result."""
        result = StepResult(self.name)
        start = time.monotonic()
        try:
            await self.execute(ctx, result)
        except (TransformError, OSError) as e:
            result.fail(str(e))
        result.duration = round(time.monotonic() - start, 3)
        self._report(result)
        return result

    async def execute(self, ctx: StepContext, result: StepResult) -> None:
        raise NotImplementedError

    def _report(self, result: StepResult) -> None:
        if result.ok:
            count = len(result.outputs)
            log.success(f"{self.name}: {count} file{'s' if count != 1 else ''} in {result.duration:.1f}s")
        else:
            for error in result.errors:
                log.error(f"{self.name} failed: {error}")


# =============================================================================
# Asset Steps
# =============================================================================


class StylesStep(TransformStep):
    """SCSS -> compressed .min.css with an external source map."""

    name = "styles"
    asset_class = "styles"

    def sources(self, ctx: StepContext) -> list[tuple[Path, Path]]:
        # Partials are only compiled through @import
        return [(f, b) for f, b in super().sources(ctx) if not f.name.startswith("_")]

    def output_for(self, source: Path, base: Path, ctx: StepContext) -> Path:
        rel = source.relative_to(base)
        return self.dest(ctx) / rel.parent / f"{rel.stem}.min.css"

    def map_for(self, output: Path, ctx: StepContext) -> Path:
        return output.parent / ctx.config.paths.map_url / f"{output.name}.map"

    def plan_outputs(self, ctx: StepContext) -> list[Path]:
        outputs = []
        for output in super().plan_outputs(ctx):
            outputs.extend([output, self.map_for(output, ctx)])
        return outputs

    async def execute(self, ctx: StepContext, result: StepResult) -> None:
        sources = self.sources(ctx)
        if not sources:
            log.info(f"{self.name}: no matching sources")

        for source, base in sources:
            output = self.output_for(source, base, ctx)
            map_path = self.map_for(output, ctx)
            try:
                css, source_map = await asyncio.to_thread(
                    ctx.compiler.compile, source, output, map_path
                )
            except TransformError as e:
                result.fail(str(e))
                continue

            for path, text in ((output, css), (map_path, source_map)):
                await asyncio.to_thread(write_if_changed, path, text.encode("utf-8"))
                result.outputs.append(path)


class CopyStep(TransformStep):
    """Plain copy, preserving paths relative to the glob base."""

    def __init__(self, name: str, asset_class: str):
        self.name = name
        self.asset_class = asset_class

    async def execute(self, ctx: StepContext, result: StepResult) -> None:
        for source, base in self.sources(ctx):
            output = self.output_for(source, base, ctx)
            data = await asyncio.to_thread(source.read_bytes)
            await asyncio.to_thread(write_if_changed, output, data)
            result.outputs.append(output)


class ScriptsStep(TransformStep):
    """Bundle each configured entry point into <entry>.min.js plus a map."""

    name = "scripts"
    asset_class = "scripts"

    def entries(self, ctx: StepContext) -> list[tuple[str, Path]]:
        paths = self.paths(ctx)
        folder = ctx.config.resolve(paths.extras.get("folder", "."))
        return [(entry, folder / entry) for entry in paths.entries]

    def output_for_entry(self, entry: str, ctx: StepContext) -> Path:
        return self.dest(ctx) / Path(entry).with_suffix(".min.js")

    def plan_outputs(self, ctx: StepContext) -> list[Path]:
        outputs = []
        for entry, entry_path in self.entries(ctx):
            if entry_path.exists():
                output = self.output_for_entry(entry, ctx)
                outputs.extend([output, output.with_name(output.name + ".map")])
        return outputs

    async def execute(self, ctx: StepContext, result: StepResult) -> None:
        for entry, entry_path in self.entries(ctx):
            if not entry_path.exists():
                log.info(f"{self.name}: entry {entry} not found, skipping")
                continue

            output = self.output_for_entry(entry, ctx)
            try:
                js, source_map = await ctx.bundler.bundle(entry_path, output.name)
            except TransformError as e:
                result.fail(str(e))
                continue

            await asyncio.to_thread(write_if_changed, output, js)
            result.outputs.append(output)
            if source_map:
                map_path = output.with_name(output.name + ".map")
                await asyncio.to_thread(write_if_changed, map_path, source_map)
                result.outputs.append(map_path)


class VendorScriptsStep(TransformStep):
    """Minify prebuilt vendor scripts into <name>.min.js."""

    name = "vendor-scripts"
    asset_class = "vendor_scripts"

    def output_for(self, source: Path, base: Path, ctx: StepContext) -> Path:
        rel = source.relative_to(base)
        if not rel.name.endswith(".min.js"):
            rel = rel.with_suffix(".min.js")
        return self.dest(ctx) / rel

    async def execute(self, ctx: StepContext, result: StepResult) -> None:
        for source, base in self.sources(ctx):
            output = self.output_for(source, base, ctx)
            try:
                data = await asyncio.to_thread(ctx.minifier.minify, source)
            except TransformError as e:
                result.fail(str(e))
                continue
            await asyncio.to_thread(write_if_changed, output, data)
            result.outputs.append(output)


class ImagesStep(TransformStep):
    """Optimize images, reusing cached results keyed by content."""

    name = "images"
    asset_class = "images"

    def _optimize_cached(self, ctx: StepContext, source: Path) -> bytes:
        data = source.read_bytes()
        key = get_cache_key(data, ctx.optimizer.settings_key)

        try:
            cached = ctx.cache.get(key)
        except CacheError as e:
            log.warning(f"{self.name}: {e}")
            cached = None
        if cached is not None:
            return cached

        optimized = ctx.optimizer.optimize(data, source)
        try:
            ctx.cache.put(key, optimized)
        except CacheError as e:
            log.warning(f"{self.name}: {e}")
        return optimized

    async def execute(self, ctx: StepContext, result: StepResult) -> None:
        for source, base in self.sources(ctx):
            output = self.output_for(source, base, ctx)
            try:
                data = await asyncio.to_thread(self._optimize_cached, ctx, source)
            except TransformError as e:
                result.fail(str(e))
                continue
            await asyncio.to_thread(write_if_changed, output, data)
            result.outputs.append(output)


# =============================================================================
# Destructive Steps
# =============================================================================


class CleanStep(TransformStep):
    """Remove the distribution tree. CleanError propagates: it is fatal."""

    name = "clean"

    def plan_outputs(self, ctx: StepContext) -> list[Path]:
        return []

    async def run(self, ctx: StepContext) -> StepResult:
        start = time.monotonic()
        removed = await asyncio.to_thread(clean_outputs, ctx.config, ctx.config.dry_run)
        result = StepResult(self.name, duration=round(time.monotonic() - start, 3))
        if removed:
            log.success(f"{self.name}: removed {ctx.config.paths.dist} ({len(removed) - 1} entries)")
        else:
            log.info(f"{self.name}: {ctx.config.paths.dist} already clean")
        return result


class ClearCacheStep(CleanStep):
    """Remove the image cache."""

    name = "clear-cache"

    async def run(self, ctx: StepContext) -> StepResult:
        start = time.monotonic()
        removed = await asyncio.to_thread(clear_cache, ctx.config, ctx.config.dry_run)
        result = StepResult(self.name, duration=round(time.monotonic() - start, 3))
        if removed:
            log.success(f"{self.name}: removed {ctx.config.paths.cache_dir}")
        else:
            log.info(f"{self.name}: no cache to clear")
        return result


# =============================================================================
# Registry and Output Ownership
# =============================================================================


def create_steps() -> dict[str, TransformStep]:
    """All steps by name."""
    steps: list[TransformStep] = [
        StylesStep(),
        CopyStep("vendor-styles", "vendor_styles"),
        ScriptsStep(),
        VendorScriptsStep(),
        CopyStep("fonts", "fonts"),
        ImagesStep(),
        ClearCacheStep(),
        CleanStep(),
    ]
    return {step.name: step for step in steps}


def check_disjoint_outputs(steps: Iterable[TransformStep], ctx: StepContext) -> None:
    """Fail if two steps would write the same path or into each other's directory.

    Nested destinations are fine as long as the outer step's files never
    land inside the inner step's directory.

    Raises:
        OverlappingOutputError: Naming both steps and the contested path.
    """
    steps = list(steps)
    dests = {step.name: step.dest(ctx) for step in steps if step.dest(ctx) is not None}
    claimed: dict[Path, str] = {}

    for step in steps:
        own = dests.get(step.name)
        if own is None:
            continue
        for output in step.plan_outputs(ctx):
            if output in claimed:
                raise OverlappingOutputError(
                    f"{claimed[output]} and {step.name} both write {output}"
                )
            claimed[output] = step.name

            for other, other_dest in dests.items():
                if other == step.name or other_dest == own:
                    continue
                if other_dest.is_relative_to(own) and output.is_relative_to(other_dest):
                    raise OverlappingOutputError(
                        f"{step.name} would write {output} inside {other}'s directory {other_dest}"
                    )
