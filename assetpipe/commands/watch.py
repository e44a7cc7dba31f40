"""
Watch mode for assetpipe.

Monitors source files and re-runs the steps bound to the changed asset
class, then tells the dev server to reload connected browsers.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver

from assetpipe.core.utils import glob_base, is_hidden, log, path_matches
from assetpipe.build.config import PathConfig
from assetpipe.build.phases import StepContext, TransformStep
from assetpipe.commands.dev import DevServer


# =============================================================================
# Bindings
# =============================================================================


@dataclass(frozen=True)
class WatchBinding:
    """File triggers and the steps to re-run, in order, when one changes.

    An empty ``steps`` tuple only reloads the browser (markup).
    """

    name: str
    triggers: tuple[str, ...]
    steps: tuple[str, ...] = ()


def default_bindings(paths: PathConfig) -> list[WatchBinding]:
    """One binding per asset class, triggered by that class's own sources."""
    return [
        WatchBinding("styles", paths.styles.sources, ("styles",)),
        WatchBinding("vendor-styles", paths.vendor_styles.sources, ("vendor-styles",)),
        WatchBinding("scripts", paths.scripts.sources, ("scripts",)),
        WatchBinding("vendor-scripts", paths.vendor_scripts.sources, ("vendor-scripts",)),
        WatchBinding("fonts", paths.fonts.sources, ("fonts",)),
        WatchBinding("images", paths.images.sources, ("images",)),
        WatchBinding("markup", paths.markup.sources),
    ]


# =============================================================================
# Per-binding Runner
# =============================================================================


class BindingRunner:
    """Debounces triggers for one binding and never overlaps its runs.

    A trigger that arrives while a run is in flight marks a single trailing
    run; any number of such triggers collapse into that one.
    """

    def __init__(
        self,
        binding: WatchBinding,
        callback: Callable[[WatchBinding, list[Path]], Awaitable[None]],
        debounce: float = 0.0,
    ):
        self.binding = binding
        self.callback = callback
        self.debounce = debounce
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task: Optional[asyncio.Task] = None
        self._rerun = False
        self._pending_paths: list[Path] = []
        self._run_count = 0

    @property
    def run_count(self) -> int:
        return self._run_count

    @property
    def busy(self) -> bool:
        return self._timer is not None or (self._task is not None and not self._task.done())

    def trigger(self, path: Path) -> None:
        """Register a change. Must be called on the event loop thread."""
        self._pending_paths.append(path)

        if self.debounce <= 0:
            self._fire()
            return

        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._task is not None and not self._task.done():
            self._rerun = True
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            self._rerun = False
            paths, self._pending_paths = self._pending_paths, []
            self._run_count += 1
            try:
                await self.callback(self.binding, paths)
            except Exception as e:
                log.error(f"[{self._run_count}] {self.binding.name} failed: {e}")
            if not self._rerun:
                break

    async def wait_idle(self) -> None:
        """Wait until no timer is pending and no run is in flight."""
        while self.busy:
            if self._task is not None and not self._task.done():
                await asyncio.shield(self._task)
            else:
                await asyncio.sleep(0.01)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._pending_paths.clear()


# =============================================================================
# File System Event Handler
# =============================================================================


class RouterEventHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread to the event loop."""

    def __init__(self, router: "WatchRouter", loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.router = router
        self.loop = loop

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._forward(event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._forward(event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._forward(event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._forward(event.src_path)
        self._forward(event.dest_path)

    def _forward(self, raw_path) -> None:
        path = Path(os.fsdecode(raw_path))
        self.loop.call_soon_threadsafe(self.router.handle_path, path)


# =============================================================================
# Watch Router
# =============================================================================


class WatchRouter:
    """Maps changed files to bindings and runs their step sequences."""

    def __init__(
        self,
        ctx: StepContext,
        steps: dict[str, TransformStep],
        bindings: list[WatchBinding],
        server: Optional[DevServer] = None,
    ):
        self.ctx = ctx
        self.steps = steps
        self.server = server
        self.root = ctx.config.project_root
        self.runners = [
            BindingRunner(binding, self._run_binding, ctx.config.debounce)
            for binding in bindings
        ]

        for binding in bindings:
            unknown = [name for name in binding.steps if name not in steps]
            if unknown:
                raise ValueError(f"Binding {binding.name} names unknown step(s): {', '.join(unknown)}")

    def handle_path(self, path: Path) -> list[str]:
        """Trigger every binding whose globs match ``path``.

        Returns the names of the triggered bindings.
        """
        if is_hidden(path, self.root):
            return []

        triggered = []
        for runner in self.runners:
            if path_matches(path, self.root, runner.binding.triggers):
                runner.trigger(path)
                triggered.append(runner.binding.name)
        return triggered

    async def _run_binding(self, binding: WatchBinding, paths: list[Path]) -> None:
        names = ", ".join(sorted({p.name for p in paths}))
        log.info(f"Change detected: {names} -> {binding.name}")

        outputs: list[Path] = []
        for step_name in binding.steps:
            result = await self.steps[step_name].run(self.ctx)
            if not result.ok:
                # Leave the last good output in place and skip the reload
                return
            outputs.extend(result.outputs)

        if self.server is not None:
            await self.server.notify(outputs)

    def watch_targets(self) -> list[tuple[Path, bool]]:
        """Directories to observe, with whether each needs recursion.

        A glob base that does not exist yet is replaced by its nearest
        existing ancestor, so directories created later are still seen.
        The climb never ends on the project root or above it: a recursive
        watch there would also scan dist/ and .git/, so such patterns are
        left unwatched until their directory exists.
        """
        wanted: dict[Path, bool] = {}
        for runner in self.runners:
            for pattern in runner.binding.triggers:
                base = self.ctx.config.resolve(glob_base(pattern))
                recursive = "**" in pattern
                climbed = False
                while not base.exists() and base != self.root and base != base.parent:
                    base = base.parent
                    climbed = True
                if climbed and self.root.is_relative_to(base):
                    continue
                if not base.is_dir():
                    continue
                recursive = recursive or climbed
                wanted[base] = wanted.get(base, False) or recursive

        targets: list[tuple[Path, bool]] = []
        for path, recursive in sorted(wanted.items()):
            covered = any(
                other_recursive and other != path and path.is_relative_to(other)
                for other, other_recursive in wanted.items()
            )
            if not covered:
                targets.append((path, recursive))
        return targets

    async def wait_idle(self) -> None:
        for runner in self.runners:
            await runner.wait_idle()

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Observe the filesystem until ``stop`` is set or the task is cancelled."""
        loop = asyncio.get_running_loop()
        config = self.ctx.config

        if config.use_polling:
            observer = PollingObserver(timeout=config.poll_interval)
        else:
            observer = Observer()

        handler = RouterEventHandler(self, loop)
        targets = self.watch_targets()
        for path, recursive in targets:
            observer.schedule(handler, str(path), recursive=recursive)
            log.info(f"Watching: {path}{' (recursive)' if recursive else ''}")

        if not targets:
            log.warning("No existing directories to watch")

        observer.start()
        mode = f"polling every {config.poll_interval}s" if config.use_polling else "native events"
        log.info(f"Watching for changes ({mode})... (Ctrl+C to stop)")

        try:
            await (stop or asyncio.Event()).wait()
        finally:
            for runner in self.runners:
                runner.cancel()
            observer.stop()
            await asyncio.to_thread(observer.join, 5)
            log.info(f"Rebuilds performed: {sum(r.run_count for r in self.runners)}")
