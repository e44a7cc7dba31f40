"""
Main CLI for assetpipe.

Runs a named task (or the default build-serve-watch pipeline) for a project.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from assetpipe.core.utils import log


# =============================================================================
# Version
# =============================================================================

__version__ = "0.1.0"


# =============================================================================
# Argument Parsing
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="assetpipe",
        description="Front-end asset pipeline with dev server and live reload",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Tasks:
  default         Clean, build everything, serve and watch (implicit)
  build           Clean and build everything once, then exit
  watch           Build, serve and watch without cleaning first
  serve           Serve and watch without building
  styles          Compile SCSS to minified CSS with source maps
  vendor-styles   Copy vendor stylesheets
  scripts         Bundle and minify application scripts
  vendor-scripts  Minify vendor scripts
  fonts           Copy fonts
  images          Optimize images through the cache
  clear-cache     Remove the image cache
  clean           Remove the output directory

Examples:
  assetpipe                               # Full pipeline in the current directory
  assetpipe build --project site          # One-shot build of ./site
  assetpipe styles                        # Recompile stylesheets only
  assetpipe clean --dry-run               # Show what clean would remove
  assetpipe watch --debounce 0.2          # Collapse bursts of saves
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )

    parser.add_argument(
        "task",
        nargs="?",
        default="default",
        help="Task or step to run (default: default)",
    )

    parser.add_argument(
        "--project", "-p",
        type=Path,
        default=Path.cwd(),
        help="Project root (default: current directory)",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Project config file (default: assetpipe.json in the project, if present)",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="HTTP server port; live reload uses port+1 (default: 3000)",
    )

    parser.add_argument(
        "--no-serve",
        action="store_true",
        help="Do not start the dev server",
    )

    parser.add_argument(
        "--no-clean",
        action="store_true",
        help="Skip clean and clear-cache before building",
    )

    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between polls of the watched tree (default: 1.0)",
    )

    parser.add_argument(
        "--debounce",
        type=float,
        default=None,
        help="Collapse events within this many seconds into one rebuild (default: 0)",
    )

    parser.add_argument(
        "--native-events",
        action="store_true",
        help="Use native filesystem events instead of polling",
    )

    parser.add_argument(
        "--skip-initial-build",
        action="store_true",
        help="With the watch task, start watching without building first",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Clean steps only list what would be removed",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show the plan and per-step timing",
    )

    return parser


def config_from_args(args: argparse.Namespace):
    """Load the project config and apply command-line overrides."""
    from assetpipe.build.config import load_project_config

    project_root = args.project.resolve()
    config = load_project_config(project_root, args.config)

    if args.port is not None:
        config.port = args.port
    if args.poll_interval is not None:
        config.poll_interval = args.poll_interval
    if args.debounce is not None:
        config.debounce = args.debounce
    if args.native_events:
        config.use_polling = False

    config.serve = not args.no_serve
    config.clean_first = not args.no_clean
    config.skip_initial_build = args.skip_initial_build
    config.dry_run = args.dry_run
    config.verbose = args.verbose
    return config


# =============================================================================
# Main
# =============================================================================


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Handle --no-color
    if args.no_color:
        log.set_color(False)

    from assetpipe.build.errors import CleanError, ConfigError
    from assetpipe.build.orchestrator import PipelineComposer

    try:
        config = config_from_args(args)
        composer = PipelineComposer(config)
        result = asyncio.run(composer.run(args.task))

    except ConfigError as e:
        log.error(f"Configuration error: {e}")
        return 1
    except CleanError as e:
        log.error(str(e))
        if e.removed:
            log.info(f"Removed before the failure ({len(e.removed)}):")
            for path in e.removed:
                log.dim(f"  {path}")
        return 1
    except KeyboardInterrupt:
        log.warning("\nInterrupted")
        return 130
    except Exception as e:
        log.error(str(e))
        return 1

    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
