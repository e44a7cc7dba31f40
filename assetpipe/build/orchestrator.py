"""
Pipeline orchestrator for assetpipe.

Declares the startup ordering as a small tree of sequential and parallel
groups, evaluates it on the event loop, and hands over to the watcher.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from assetpipe.core.timing import TimingContext, timing_summary
from assetpipe.core.utils import log
from assetpipe.build.config import BuildConfig
from assetpipe.build.phases import (
    ASSET_STEPS,
    StepContext,
    StepResult,
    TransformStep,
    check_disjoint_outputs,
    create_steps,
)
from assetpipe.commands.dev import DevServer
from assetpipe.commands.watch import WatchRouter, default_bindings

# Tasks besides the individual step names
PLAN_TASKS = ("default", "build", "watch", "serve")


# =============================================================================
# Plan Tree
# =============================================================================


@dataclass(frozen=True)
class Leaf:
    """One step by name, or a named action such as starting the server."""

    name: str
    action: Optional[Callable[[], Awaitable[Any]]] = field(default=None, compare=False)


@dataclass(frozen=True)
class Sequential:
    """Children run left to right, each after the previous one settles."""

    children: tuple["PlanNode", ...]


@dataclass(frozen=True)
class Parallel:
    """Children run concurrently; all settle before the group completes."""

    children: tuple["PlanNode", ...]


PlanNode = Union[Leaf, Sequential, Parallel]


def series(*children: PlanNode) -> Sequential:
    return Sequential(tuple(children))


def parallel(*children: PlanNode) -> Parallel:
    return Parallel(tuple(children))


def steps(*names: str) -> tuple[Leaf, ...]:
    return tuple(Leaf(name) for name in names)


def describe_plan(node: PlanNode) -> str:
    """Render a plan as ``series(parallel(styles, vendor-styles), watch)``."""
    if isinstance(node, Leaf):
        return node.name
    kind = "series" if isinstance(node, Sequential) else "parallel"
    return f"{kind}({', '.join(describe_plan(child) for child in node.children)})"


def leaf_names(node: PlanNode) -> list[str]:
    if isinstance(node, Leaf):
        return [node.name]
    names: list[str] = []
    for child in node.children:
        names.extend(leaf_names(child))
    return names


# =============================================================================
# Results
# =============================================================================


@dataclass
class PipelineResult:
    """Everything a plan evaluation produced."""

    results: list[StepResult] = field(default_factory=list)
    timings: dict[str, float] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def failed(self) -> list[StepResult]:
        return [result for result in self.results if not result.ok]


# =============================================================================
# Pipeline Composer
# =============================================================================


class PipelineComposer:
    """Builds and evaluates the plan for a task.

    Owns the dev server handle and passes it to the watch router; nothing
    else reaches the server.
    """

    def __init__(
        self,
        config: BuildConfig,
        ctx: Optional[StepContext] = None,
        step_registry: Optional[dict[str, TransformStep]] = None,
        server: Optional[DevServer] = None,
    ):
        self.config = config
        self.ctx = ctx or StepContext.from_config(config)
        self.steps = step_registry or create_steps()
        if server is None and config.serve:
            server = DevServer(config.project_root, config.port)
        self.server = server
        self.result = PipelineResult()

    # -------------------------------------------------------------------------
    # Plan construction
    # -------------------------------------------------------------------------

    def build_pass(self) -> Sequential:
        """One full asset generation pass."""
        return series(
            parallel(*steps("styles", "vendor-styles")),
            parallel(*steps("scripts", "vendor-scripts")),
            parallel(*steps("fonts", "images")),
        )

    def build_plan(self, task: str = "default") -> PlanNode:
        """Plan for a task name: ``default``, ``build``, ``watch``, ``serve``, or a step name."""
        if task in self.steps:
            return Leaf(task)
        if task not in PLAN_TASKS:
            raise ValueError(f"Unknown task: {task}")

        if task == "serve":
            if self.server is None:
                raise ValueError("The serve task needs the dev server (drop --no-serve)")
            return series(Leaf("serve", action=self._start_server), Leaf("watch", action=self._watch))

        children: list[PlanNode] = []
        if task in ("default", "build") and self.config.clean_first:
            children.append(parallel(*steps("clear-cache", "clean")))

        if task == "watch" and self.config.skip_initial_build:
            log.warning("Skipping initial build: served output may be stale or missing")
        else:
            children.append(self.build_pass())

        if task == "build":
            return series(*children)

        # The server starts only after the first full pass has written output
        if self.server is not None:
            children.append(Leaf("serve", action=self._start_server))
        children.append(Leaf("watch", action=self._watch))
        return series(*children)

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    async def run_plan(self, node: PlanNode) -> None:
        """Evaluate a plan node.

        Step failures are recorded in ``self.result``; exceptions (clean
        errors) abort the enclosing sequence. A parallel group lets every
        sibling settle before re-raising the first exception.
        """
        if isinstance(node, Leaf):
            if node.action is not None:
                with TimingContext(self.result.timings, node.name):
                    await node.action()
                return
            result = await self.steps[node.name].run(self.ctx)
            self.result.results.append(result)
            self.result.timings[node.name] = result.duration
            return

        if isinstance(node, Sequential):
            for child in node.children:
                await self.run_plan(child)
            return

        outcomes = await asyncio.gather(
            *(self.run_plan(child) for child in node.children),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    async def run(self, task: str = "default") -> PipelineResult:
        """Run a task to completion (forever for tasks ending in watch)."""
        plan = self.build_plan(task)
        log.header(f"assetpipe: {task}")
        if self.config.verbose:
            log.dim(f"Plan: {describe_plan(plan)}")

        if any(name in ASSET_STEPS for name in leaf_names(plan)):
            check_disjoint_outputs((self.steps[name] for name in ASSET_STEPS), self.ctx)

        start = time.time()
        try:
            await self.run_plan(plan)
        finally:
            if self.server is not None and self.server.running:
                await self.server.stop()

        self._summarize(time.time() - start)
        return self.result

    def _summarize(self, total: float) -> None:
        failed = self.result.failed
        if failed:
            log.warning(f"{len(failed)} step(s) failed: {', '.join(r.name for r in failed)}")
        else:
            log.success(f"Done in {total:.1f}s")
        if self.config.verbose:
            log.dim(timing_summary(self.result.timings, wall=total))

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    async def _start_server(self) -> None:
        await self.server.start()

    async def _watch(self) -> None:
        router = WatchRouter(
            self.ctx,
            self.steps,
            default_bindings(self.config.paths),
            self.server,
        )
        await router.run()
