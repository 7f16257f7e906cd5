"""Integration fixtures: a Backgrounder app with its WAL under tmp_path."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from backgrounder.core.app import Backgrounder
from backgrounder.core.models.app import AppConfig
from backgrounder.core.wal.storage import FileStorage
from backgrounder.core.worker.runner import Runner


@pytest.fixture
def make_app(tmp_path: Path) -> Callable[..., Backgrounder]:
    def _make(**overrides: Any) -> Backgrounder:
        settings: dict[str, Any] = {
            'wal_path': str(tmp_path / 'log' / 'jobs.wal'),
            'max_threads': 4,
            'backoff_unit_seconds': 0.01,
        }
        settings.update(overrides)
        return Backgrounder(AppConfig(**settings))

    return _make


@pytest.fixture
def app(make_app: Callable[..., Backgrounder]) -> Backgrounder:
    return make_app()


@pytest.fixture
def runners() -> Iterator[list[Runner]]:
    """Runners registered here are stopped at teardown."""
    started: list[Runner] = []
    yield started
    for runner in started:
        runner.stop()


@pytest.fixture
def start_runner(runners: list[Runner]) -> Callable[[Backgrounder], Runner]:
    def _start(app: Backgrounder, storage: FileStorage | None = None) -> Runner:
        runner = app.create_runner(storage)
        runners.append(runner)
        runner.start()
        return runner

    return _start

