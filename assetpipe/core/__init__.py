"""
assetpipe.core - Foundation layer for the assetpipe CLI.

Exports logging, glob helpers and timing utilities.
"""

# Utils
from assetpipe.core.utils import (
    # Logging
    log,
    Logger,
    # Constants
    CONFIG_FILENAME,
    CACHE_DIRNAME,
    # Glob utilities
    expand_braces,
    glob_base,
    resolve_sources,
    path_matches,
    is_hidden,
)

# Timing
from assetpipe.core.timing import (
    TimingContext,
    format_duration,
    timing_summary,
)

__all__ = [
    # Logging
    "log",
    "Logger",
    # Constants
    "CONFIG_FILENAME",
    "CACHE_DIRNAME",
    # Glob utilities
    "expand_braces",
    "glob_base",
    "resolve_sources",
    "path_matches",
    "is_hidden",
    # Timing
    "TimingContext",
    "format_duration",
    "timing_summary",
]
