"""Root test configuration for backgrounder tests."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from backgrounder.core.registry.jobs import JobRegistry
from backgrounder.core.wal.storage import FileStorage


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line('markers', 'unit: Unit tests (no threads, no disk)')
    config.addinivalue_line(
        'markers', 'integration: Integration tests (worker threads + WAL on disk)'
    )
    config.addinivalue_line('markers', 'slow: Long-running tests')


@pytest.fixture
def wal_path(tmp_path: Path) -> Path:
    return tmp_path / 'log' / 'jobs.wal'


@pytest.fixture
def storage(wal_path: Path) -> FileStorage:
    return FileStorage(wal_path)


@pytest.fixture
def registry() -> Iterator[JobRegistry]:
    reg = JobRegistry()
    yield reg
    reg.clear()
