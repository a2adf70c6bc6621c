"""Pytest configuration: project-root imports and isolated settings."""

import sys
from pathlib import Path

import pytest

# Ensure the project root is in sys.path so tests.probes imports resolve
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from loadstage.config import reset_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """Settings are cached per process; keep LOADSTAGE_* from leaking between tests."""
    for name in (
        "LOADSTAGE_MAX_VUS",
        "LOADSTAGE_TICK_INTERVAL",
        "LOADSTAGE_SEED",
        "LOADSTAGE_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()
