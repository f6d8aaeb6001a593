"""
Pytest configuration and fixtures for Convergent tests.
"""

import tempfile
from pathlib import Path

import pytest

from convergent.settings import reload_settings

from .helpers import RecordingTarget


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def target(temp_dir):
    """Recording target rooted in a temporary Ubuntu filesystem."""
    return RecordingTarget(temp_dir / "root", distribution="ubuntu")


@pytest.fixture
def settings_env(monkeypatch):
    """Monkeypatch for CONVERGENT_* variables; global settings are reloaded once it is undone."""
    yield monkeypatch
    monkeypatch.undo()
    reload_settings()
