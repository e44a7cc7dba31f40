"""
Shared pytest fixtures for assetpipe tests.

Builds throwaway project trees in the stock layout and a step context
whose script bundler is replaced by an in-process fake, so no esbuild
executable is needed. libsass, rjsmin and Pillow run for real.

Test Tier Markers:
  @pytest.mark.evergreen - Tests that always run, never skip (production tests)
  @pytest.mark.dev       - Development/WIP tests, toggle-able
  @pytest.mark.temporary - Tests with explicit discard flag
"""

from __future__ import annotations

import io
from pathlib import Path

import pytest
from PIL import Image

from assetpipe.build.config import BuildConfig
from assetpipe.build.errors import TransformError
from assetpipe.build.phases import StepContext


# =============================================================================
# Test Data Constants
# =============================================================================

MAIN_SCSS = """\
@import "vars";

.box {
  margin: $gap auto;

  .inner {
    padding: $gap;
  }
}
"""

VARS_SCSS = "$gap: 10px;\n"

BROKEN_SCSS = ".box {\n  margin: ;\n"

VENDOR_CSS = ".lib { display: block; }\n"

APP_JS = "import { add } from './util.js';\nconsole.log(add(1, 2));\n"

UTIL_JS = "export function add(a, b) {\n  return a + b;\n}\n"

VENDOR_JS = "function  double ( x ) {\n    return x * 2;\n}\n"

INDEX_HTML = "<html><head></head><body><h1>Hi</h1></body></html>\n"


def make_png(size: int = 16) -> bytes:
    """A small PNG with enough redundancy for the optimizer to work on."""
    buffer = io.BytesIO()
    Image.new("RGB", (size, size), (200, 30, 30)).save(buffer, "PNG", compress_level=0)
    return buffer.getvalue()


# =============================================================================
# Fakes
# =============================================================================


class FakeBundler:
    """Stands in for the esbuild-backed ScriptBundler."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[Path] = []

    async def bundle(self, entry: Path, output_name: str) -> tuple[bytes, bytes]:
        self.calls.append(entry)
        if self.fail:
            raise TransformError("Unexpected token", entry)
        body = entry.read_bytes().replace(b"\n", b"")
        return b"/*bundled*/" + body, b'{"version":3,"file":"' + output_name.encode() + b'"}'


class FakeServer:
    """Records reload notifications from the watch router."""

    def __init__(self):
        self.notifications: list[list[Path]] = []

    async def notify(self, outputs=()) -> None:
        self.notifications.append(list(outputs))


# =============================================================================
# Project Fixtures
# =============================================================================


def write_project(root: Path) -> Path:
    """Populate ``root`` with one source of every asset class."""
    files = {
        "app/scss/main.scss": MAIN_SCSS,
        "app/scss/_vars.scss": VARS_SCSS,
        "app/css/vendor/lib.css": VENDOR_CSS,
        "app/js/script.js": APP_JS,
        "app/js/util.js": UTIL_JS,
        "app/js/vendor/lib.js": VENDOR_JS,
        "index.html": INDEX_HTML,
    }
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)

    fonts = root / "app" / "fonts"
    fonts.mkdir(parents=True)
    (fonts / "icons.woff2").write_bytes(b"wOF2\x00\x01fake-font")

    images = root / "app" / "images"
    images.mkdir(parents=True)
    (images / "logo.png").write_bytes(make_png())
    return root


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project tree in the stock app/ layout."""
    return write_project(tmp_path / "site")


@pytest.fixture
def config(project: Path) -> BuildConfig:
    """Run config for the project with the dev server disabled."""
    return BuildConfig(project_root=project, serve=False)


@pytest.fixture
def ctx(config: BuildConfig) -> StepContext:
    """Step context with the fake bundler installed."""
    context = StepContext.from_config(config)
    context.bundler = FakeBundler()
    return context


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test tiers."""
    config.addinivalue_line(
        "markers",
        "evergreen: tests that always run, never skip (production tests)"
    )
    config.addinivalue_line(
        "markers",
        "dev: development/WIP tests, toggle-able for active development"
    )
    config.addinivalue_line(
        "markers",
        "temporary: tests with explicit discard flag"
    )
