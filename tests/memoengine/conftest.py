"""Pytest fixtures for memoengine tests."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from memoengine.logging import BufferingHandler, LogLevel, configure_logging
from memoengine.testing import ManualClock, RecordingMemoHook


@pytest.fixture
def clock() -> ManualClock:
    """A manual monotonic clock starting at 0.0."""
    return ManualClock()


@pytest.fixture
def recording_hook() -> RecordingMemoHook:
    """A hook that records every memoization event."""
    return RecordingMemoHook()


@pytest.fixture
def log_buffer() -> Iterator[BufferingHandler]:
    """Capture engine logs at DEBUG level for the duration of a test."""
    handler = BufferingHandler()
    configure_logging(level=LogLevel.DEBUG, handlers=[handler])
    yield handler
    configure_logging(level=LogLevel.INFO, handlers=[])
