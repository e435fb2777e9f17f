"""Shared fixtures for the change consumer tests."""

import sys
from pathlib import Path

import pytest

# Add project root and the test helpers to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))


@pytest.fixture
def sqlite_url(tmp_path):
    """File-backed SQLite database shared across threads."""
    return f"sqlite:///{tmp_path / 'watch.db'}"
