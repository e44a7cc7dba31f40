"""
assetpipe - Front-end asset pipeline.

Compiles stylesheets, bundles scripts, copies vendor files and fonts,
optimizes images, then serves the project with live reload while watching
sources for changes.

Usage:
    python -m assetpipe [task] [options]

Tasks:
    default      Clean, build everything, serve and watch
    build        Clean and build everything once
    watch        Build, serve and watch (no clean)
    serve        Serve and watch without building
    <step>       Run one step: styles, vendor-styles, scripts,
                 vendor-scripts, fonts, images, clear-cache, clean
"""

from .cli import __version__, main

__all__ = ["__version__", "main"]
