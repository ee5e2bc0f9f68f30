"""
Test support utilities for statespine tests.

This module provides helper functions and utilities that don't fit
as pytest fixtures but are useful across multiple test files.
"""

from __future__ import annotations

import gc
from typing import Any


def collect() -> None:
    """Run full garbage collection until nothing more is reclaimed."""
    while gc.collect():
        pass


def assert_calls(recorder: Any, expected: list[tuple[tuple, Any, Any]]) -> None:
    """
    Assert a :class:`~tests._support.models.Recorder` saw exactly ``expected``.

    Args:
        recorder: The recording callback
        expected: ``(path, old, new)`` triples in delivery order
    """
    assert recorder.calls == expected, (
        f"Change events mismatch:\n"
        f"  Expected: {expected}\n"
        f"  Actual:   {recorder.calls}"
    )
