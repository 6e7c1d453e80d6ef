"""Pytest configuration and fixtures."""

import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for iis_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from iis_mock import MockIISServer, MockSession  # noqa: E402
from iis_operator.renderer import CommandRenderer  # noqa: E402


@pytest.fixture
def server() -> MockIISServer:
    """Empty mock IIS."""
    return MockIISServer()


@pytest.fixture
def session(server: MockIISServer) -> MockSession:
    """Mock session bound to the server fixture."""
    return MockSession(server)


@pytest.fixture
def renderer() -> CommandRenderer:
    """Renderer over the packaged templates."""
    return CommandRenderer()


@pytest.fixture
def manifest_file(tmp_path: Path) -> Path:
    """An empty manifest file on disk."""
    path = tmp_path / "sites.yaml"
    path.write_text("sites: []\n")
    return path


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Put the root logger back after code that reconfigures it."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
