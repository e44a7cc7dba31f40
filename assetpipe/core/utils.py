"""
Shared utilities for the assetpipe CLI.
"""

from __future__ import annotations

import glob
import re
import sys
from pathlib import Path
from typing import Iterable, Optional

# =============================================================================
# Constants
# =============================================================================

CONFIG_FILENAME = "assetpipe.json"
CACHE_DIRNAME = ".assetpipe-cache"

_WILDCARD_RE = re.compile(r"[*?\[{]")
_BRACE_RE = re.compile(r"\{([^{}]*)\}")


# =============================================================================
# Logging
# =============================================================================

_ANSI = {
    "reset": "\033[0m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "red": "\033[91m",
    "green": "\033[92m",
    "yellow": "\033[93m",
    "cyan": "\033[96m",
}


class Logger:
    """Prefixed console output. Errors go to stderr, the rest to stdout.

    Color is on when stdout is a terminal unless ``set_color(False)``
    (the ``--no-color`` flag) turns it off.
    """

    def __init__(self, use_color: Optional[bool] = None):
        self._use_color = sys.stdout.isatty() if use_color is None else use_color

    def set_color(self, use_color: bool) -> None:
        self._use_color = use_color

    def _paint(self, text: str, style: str) -> str:
        if self._use_color:
            return f"{_ANSI[style]}{text}{_ANSI['reset']}"
        return text

    def _emit(self, message: str, tag: str = "", style: str = "", stream=None) -> None:
        prefix = f"{self._paint(tag, style)} " if tag else ""
        print(f"  {prefix}{message}", file=stream or sys.stdout)

    def header(self, message: str) -> None:
        bar = self._paint("===", "cyan")
        print(f"\n{bar} {self._paint(message, 'bold')} {bar}")

    def info(self, message: str) -> None:
        self._emit(message)

    def success(self, message: str) -> None:
        self._emit(message, "[OK]", "green")

    def warning(self, message: str) -> None:
        self._emit(message, "[WARN]", "yellow")

    def error(self, message: str) -> None:
        self._emit(message, "[ERROR]", "red", stream=sys.stderr)

    def dim(self, message: str) -> None:
        """Secondary detail such as per-file removals."""
        self._emit(self._paint(message, "dim"))


log = Logger()


# =============================================================================
# Glob Utilities
# =============================================================================


def expand_braces(pattern: str) -> list[str]:
    """Expand ``{a,b}`` groups into separate patterns.

    ``app/images/**/*.{png,jpg}`` -> ``app/images/**/*.png``, ``app/images/**/*.jpg``
    """
    match = _BRACE_RE.search(pattern)
    if match is None:
        return [pattern]

    expanded: list[str] = []
    head, tail = pattern[: match.start()], pattern[match.end():]
    for option in match.group(1).split(","):
        expanded.extend(expand_braces(head + option + tail))
    return expanded


def glob_base(pattern: str) -> str:
    """Return the directory part of a pattern before its first wildcard.

    For a literal file path this is the file's parent directory, so
    ``node_modules/bootstrap/scss/bootstrap.scss`` has base
    ``node_modules/bootstrap/scss``.
    """
    parts = pattern.replace("\\", "/").split("/")
    base: list[str] = []
    for part in parts[:-1]:
        if _WILDCARD_RE.search(part):
            break
        base.append(part)
    return "/".join(base) if base else "."


def resolve_sources(root: Path, patterns: Iterable[str]) -> list[tuple[Path, Path]]:
    """Resolve glob patterns against the filesystem right now.

    Returns ``(file, base)`` pairs in pattern order, sorted within each
    pattern, without duplicates. A pattern whose directory does not exist
    simply contributes nothing.
    """
    seen: set[Path] = set()
    resolved: list[tuple[Path, Path]] = []

    for raw in patterns:
        for pattern in expand_braces(raw):
            anchored = pattern if Path(pattern).is_absolute() else str(root / pattern)
            base = Path(glob_base(anchored))
            for match in sorted(glob.glob(anchored, recursive=True)):
                path = Path(match)
                if not path.is_file() or path in seen:
                    continue
                seen.add(path)
                resolved.append((path, base))

    return resolved


def _pattern_to_regex(pattern: str) -> re.Pattern[str]:
    """Translate a glob with ``**`` semantics into an anchored regex."""
    i, out = 0, []
    while i < len(pattern):
        c = pattern[i]
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
            continue
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        if c == "*":
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append("[" + body + "]")
                i = end
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out) + r"\Z")


def path_matches(path: Path, root: Path, patterns: Iterable[str]) -> bool:
    """Check whether ``path`` matches any of the glob patterns."""
    try:
        rel = path.resolve().relative_to(root.resolve()).as_posix()
    except ValueError:
        rel = None
    absolute = path.resolve().as_posix()

    for raw in patterns:
        for pattern in expand_braces(raw):
            if Path(pattern).is_absolute():
                if _pattern_to_regex(Path(pattern).as_posix()).match(absolute):
                    return True
            elif rel is not None and _pattern_to_regex(pattern).match(rel):
                return True
    return False


def is_hidden(path: Path, root: Path) -> bool:
    """Dotfiles, editor swap files and __pycache__ never trigger rebuilds."""
    try:
        parts = path.resolve().relative_to(root.resolve()).parts
    except ValueError:
        parts = path.parts
    if any(part.startswith(".") or part == "__pycache__" for part in parts):
        return True
    return path.name.endswith("~")
