"""
Shared pytest fixtures and configuration for statespine tests.

This module provides:
- A fresh default runtime per test for isolation
- Settings cache cleanup
- A recording watch callback

Usage:
    Fixtures are auto-discovered by pytest. Simply use them as function
    arguments (pytest injects them automatically).

    def test_something(runtime):
        Counter = runtime.provide(CounterModel)
"""

import gc
import sys
from pathlib import Path
from typing import Generator

import pytest

# Ensure statespine package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from statespine.core.runtime import ReactiveRuntime, reset_runtime, set_runtime
from statespine.core.settings import RuntimeSettings, clear_settings_cache
from tests._support.models import Recorder


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Runtime Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def runtime() -> Generator[ReactiveRuntime, None, None]:
    """
    Install a fresh default runtime before each test.

    Module-level ``observe``/``watch``/``provide`` delegate to it, so no test
    can see instances or watchers left behind by another.
    """
    fresh = ReactiveRuntime(RuntimeSettings())
    set_runtime(fresh)
    yield fresh
    fresh.close()
    reset_runtime()
    gc.collect()


@pytest.fixture
def raising_runtime() -> Generator[ReactiveRuntime, None, None]:
    """Runtime that re-raises watcher callback failures. Closed after the test."""
    fresh = ReactiveRuntime(RuntimeSettings(callback_errors="raise"))
    set_runtime(fresh)
    yield fresh
    fresh.close()


@pytest.fixture
def recorder() -> Recorder:
    """Fresh recording watch callback."""
    return Recorder()


@pytest.fixture
def clean_settings_cache() -> Generator[None, None, None]:
    """
    Clear the cached settings before and after the test.

    Not auto-applied because most tests build ``RuntimeSettings`` directly.
    """
    clear_settings_cache()
    yield
    clear_settings_cache()
