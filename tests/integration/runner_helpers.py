"""Shared helpers for runner integration tests."""

from __future__ import annotations

from backgrounder.core.app import Backgrounder

IDLE_TIMEOUT = 10.0


def wal_events(app: Backgrounder, job_id: str) -> list[str]:
    """Event labels recorded for one job, in WAL order."""
    return [e.event.value for e in app.create_storage().replay() if e.job_id == job_id]
