"""Unit tests for Runner paths that do not need worker threads."""

from __future__ import annotations

import threading
from dataclasses import replace
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from backgrounder.core.errors import (
    ConfigurationError,
    ErrorCode,
    InvalidTransitionError,
)
from backgrounder.core.models.exclusivity import NO_LOCK
from backgrounder.core.models.job import Job
from backgrounder.core.registry.jobs import JobDefinition, JobOptions, JobRegistry
from backgrounder.core.types.status import JobState, WalEvent
from backgrounder.core.wal.entry import Entry
from backgrounder.core.wal.storage import FileStorage
from backgrounder.core.worker.runner import Runner


def _define(registry: JobRegistry, name: str, handler: Any, **options: Any) -> None:
    registry.register(
        JobDefinition(name=name, handler=handler, options=JobOptions(job_name=name, **options))
    )


def _runner(registry: JobRegistry, storage: FileStorage, **kwargs: Any) -> Runner:
    kwargs.setdefault('backoff_unit_seconds', 0)
    return Runner(registry, storage, **kwargs)


def _events(storage: FileStorage, job_id: str) -> list[str]:
    return [e.event.value for e in storage.replay() if e.job_id == job_id]


@pytest.mark.unit
class TestRunnerConstruction:
    def test_rejects_zero_threads(self, registry: JobRegistry, storage: FileStorage) -> None:
        """At least one worker thread is required."""
        with pytest.raises(ConfigurationError) as exc_info:
            Runner(registry, storage, max_threads=0)
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID_RUNNER

    def test_rejects_negative_backoff(self, registry: JobRegistry, storage: FileStorage) -> None:
        """The backoff unit cannot be negative."""
        with pytest.raises(ConfigurationError) as exc_info:
            Runner(registry, storage, backoff_unit_seconds=-1)
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID_BACKOFF

    def test_initial_state(self, registry: JobRegistry, storage: FileStorage) -> None:
        """A new runner is stopped with an empty queue."""
        runner = Runner(registry, storage)
        assert runner.max_threads == 5
        assert runner.running is False
        assert runner.pending_count == 0
        assert runner.threads == []


@pytest.mark.unit
class TestBackoffDelay:
    def test_exponential(self, registry: JobRegistry, storage: FileStorage) -> None:
        """Delay doubles with every retry."""
        runner = Runner(registry, storage, backoff_unit_seconds=1.0)
        assert [runner.backoff_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_unit_scales(self, registry: JobRegistry, storage: FileStorage) -> None:
        """The unit scales the whole curve."""
        runner = Runner(registry, storage, backoff_unit_seconds=0.01)
        assert runner.backoff_delay(2) == pytest.approx(0.04)

    def test_cap(self, registry: JobRegistry, storage: FileStorage) -> None:
        """max_backoff_seconds caps the delay."""
        runner = Runner(registry, storage, backoff_unit_seconds=1.0, max_backoff_seconds=5.0)
        assert runner.backoff_delay(10) == 5.0


@pytest.mark.unit
class TestEnqueue:
    def test_writes_wal_before_queueing(self, registry: JobRegistry, storage: FileStorage) -> None:
        """enqueue logs the job before it becomes pending."""
        runner = _runner(registry, storage)
        job = Job({'job_name': 'echo', 'args': [1]})
        assert runner.enqueue(job) is job
        assert _events(storage, job.id) == ['enqueued']
        assert runner.pending_count == 1

    def test_wal_failure_keeps_job_out_of_queue(
        self, registry: JobRegistry, storage: FileStorage, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """If the append fails the job is not queued."""
        runner = _runner(registry, storage)

        def broken_append(entry: Entry) -> None:
            raise OSError('read-only filesystem')

        monkeypatch.setattr(storage, 'append', broken_append)
        with pytest.raises(OSError):
            runner.enqueue(Job({'job_name': 'echo'}))
        assert runner.pending_count == 0

    @pytest.mark.parametrize('state', ['running', 'complete', 'failed'])
    def test_rejects_non_queued_jobs(
        self, registry: JobRegistry, storage: FileStorage, state: str
    ) -> None:
        """Only queued jobs can be enqueued."""
        runner = _runner(registry, storage)
        with pytest.raises(InvalidTransitionError):
            runner.enqueue(Job({'job_name': 'echo'}, state=state))
        assert list(storage.replay()) == []


@pytest.mark.unit
class TestExecuteJobInner:
    def test_success(self, registry: JobRegistry, storage: FileStorage) -> None:
        """A successful handler completes the job."""
        calls: list[tuple[Any, ...]] = []
        _define(registry, 'echo', lambda *a: calls.append(a))
        runner = _runner(registry, storage)
        job = Job({'job_name': 'echo', 'args': [42, 'x']})

        requeued = runner.execute_job(job)

        assert requeued is False
        assert calls == [(42, 'x')]
        assert job.state is JobState.COMPLETE
        assert _events(storage, job.id) == ['started', 'completed']

    def test_missing_definition_fails_without_retry(
        self, registry: JobRegistry, storage: FileStorage
    ) -> None:
        """An unknown job name fails at once."""
        runner = _runner(registry, storage)
        job = Job({'job_name': 'ghost'}, max_retries=5)

        assert runner.execute_job(job) is False
        assert job.state is JobState.FAILED
        assert job.retries == 0
        assert _events(storage, job.id) == ['started', 'failed']

    def test_failure_with_budget_requeues(
        self, registry: JobRegistry, storage: FileStorage
    ) -> None:
        """A failure with budget left logs a retry and requeues."""
        def boom() -> None:
            raise RuntimeError('boom')

        _define(registry, 'boom', boom)
        runner = _runner(registry, storage)
        job = Job({'job_name': 'boom'}, max_retries=2)

        assert runner.execute_job(job) is True
        assert job.state is JobState.QUEUED
        assert job.retries == 1
        assert runner.pending_count == 1
        retry = [e for e in storage.replay() if e.event is WalEvent.RETRY]
        assert len(retry) == 1
        assert retry[0].data['retries'] == 1
        assert retry[0].state is JobState.QUEUED

    def test_failure_without_budget_fails(
        self, registry: JobRegistry, storage: FileStorage
    ) -> None:
        """A failure with no budget left fails the job."""
        def boom() -> None:
            raise ValueError('bad input')

        _define(registry, 'boom', boom)
        runner = _runner(registry, storage)
        job = Job({'job_name': 'boom'}, max_retries=0)

        assert runner.execute_job(job) is False
        assert job.state is JobState.FAILED
        assert job.retries == 1
        assert _events(storage, job.id) == ['started', 'failed']

    def test_terminal_job_cannot_run(self, registry: JobRegistry, storage: FileStorage) -> None:
        """Running a finished job raises E400."""
        _define(registry, 'echo', lambda: None)
        runner = _runner(registry, storage)
        with pytest.raises(InvalidTransitionError):
            runner.execute_job(Job({'job_name': 'echo'}, state='complete'))


@pytest.mark.unit
class TestResolveLockKey:
    def test_definition_policy(self, registry: JobRegistry, storage: FileStorage) -> None:
        """The definition's policy decides the key."""
        _define(registry, 'email', lambda: None, exclusive='user_id')
        runner = _runner(registry, storage)
        job = Job({'job_name': 'email', 'user_id': 3})
        assert runner.resolve_lock_key(job, registry.lookup('email')) == 3

    def test_whole_job(self, registry: JobRegistry, storage: FileStorage) -> None:
        """A whole-job lock keys on the job name."""
        _define(registry, 'report', lambda: None, exclusive=True)
        runner = _runner(registry, storage)
        job = Job({'job_name': 'report'})
        assert runner.resolve_lock_key(job, registry.lookup('report')) == 'report'

    def test_falls_back_to_job_policy(self, registry: JobRegistry, storage: FileStorage) -> None:
        """The job's own policy applies when the definition has none."""
        _define(registry, 'sync', lambda: None)
        runner = _runner(registry, storage)
        job = Job({'job_name': 'sync', 'account': 'a1'}, exclusive='account')
        assert runner.resolve_lock_key(job, registry.lookup('sync')) == 'a1'

    def test_no_lock(self, registry: JobRegistry, storage: FileStorage) -> None:
        """Without any policy there is no key."""
        _define(registry, 'free', lambda: None)
        runner = _runner(registry, storage)
        job = Job({'job_name': 'free'})
        assert runner.resolve_lock_key(job, registry.lookup('free')) is None

    def test_lock_released_after_execution(
        self, registry: JobRegistry, storage: FileStorage
    ) -> None:
        """The key is held during the handler and released after."""
        seen: list[bool] = []
        _define(registry, 'report', lambda: seen.append('report' in runner.locks), exclusive=True)
        runner = _runner(registry, storage)
        runner.execute_job(Job({'job_name': 'report'}))
        assert seen == [True]
        assert len(runner.locks) == 0


@pytest.mark.unit
class TestRecoverFromWal:
    def test_empty_log(self, registry: JobRegistry, storage: FileStorage) -> None:
        """Nothing to recover from an empty log."""
        assert _runner(registry, storage).recover_from_wal() == []

    def test_requeues_in_flight_jobs(self, registry: JobRegistry, storage: FileStorage) -> None:
        """Queued and running jobs come back queued."""
        queued = Job({'job_name': 'echo', 'args': [1]})
        storage.append(Entry.for_job(queued, WalEvent.ENQUEUED))
        running = Job({'job_name': 'echo', 'args': [2]})
        storage.append(Entry.for_job(running, WalEvent.ENQUEUED))
        running.mark_running()
        storage.append(Entry.for_job(running, WalEvent.STARTED))

        runner = _runner(registry, storage)
        recovered = runner.recover_from_wal()

        assert sorted(j.id for j in recovered) == sorted([queued.id, running.id])
        assert all(j.state is JobState.QUEUED for j in recovered)
        assert runner.pending_count == 2

    def test_skips_terminal_jobs(self, registry: JobRegistry, storage: FileStorage) -> None:
        """Finished jobs are not recovered."""
        job = Job({'job_name': 'echo', 'args': [1]})
        storage.append(Entry.for_job(job, WalEvent.ENQUEUED))
        job.mark_running()
        job.mark_failed()
        storage.append(Entry.for_job(job, WalEvent.FAILED))
        assert _runner(registry, storage).recover_from_wal() == []

    def test_skips_fingerprint_that_already_finished(
        self, registry: JobRegistry, storage: FileStorage
    ) -> None:
        """A copy of a finished job is not recovered."""
        finished = Job({'job_name': 'echo', 'args': [42]})
        finished.mark_running()
        finished.mark_complete()
        storage.append(Entry.for_job(finished, WalEvent.COMPLETED))
        duplicate = Job({'job_name': 'echo', 'args': [42]})
        storage.append(Entry.for_job(duplicate, WalEvent.ENQUEUED))
        different = Job({'job_name': 'echo', 'args': [43]})
        storage.append(Entry.for_job(different, WalEvent.ENQUEUED))

        recovered = _runner(registry, storage).recover_from_wal()

        assert [j.id for j in recovered] == [different.id]

    def test_does_not_duplicate_queued_jobs(
        self, registry: JobRegistry, storage: FileStorage
    ) -> None:
        """Jobs already pending are not queued twice."""
        runner = _runner(registry, storage)
        runner.enqueue(Job({'job_name': 'echo'}))
        assert runner.recover_from_wal() == []
        assert runner.pending_count == 1

    def test_skips_unbuildable_snapshots(
        self, registry: JobRegistry, storage: FileStorage
    ) -> None:
        """Entries whose data cannot rebuild a job are skipped."""
        storage.append(Entry(job_id='broken', event=WalEvent.ENQUEUED, data={'args': {}}))
        assert _runner(registry, storage).recover_from_wal() == []

    def test_restores_retry_counters(self, registry: JobRegistry, storage: FileStorage) -> None:
        """Retry counters come back from the log."""
        job = Job({'job_name': 'echo'}, max_retries=4, retries=2)
        storage.append(Entry.for_job(job, WalEvent.RETRY))
        (recovered,) = _runner(registry, storage).recover_from_wal()
        assert recovered.id == job.id
        assert recovered.retries == 2
        assert recovered.max_retries == 4

    @pytest.mark.parametrize('exclusive', [5, ['user_id'], {'resolver': 'os:sep'}])
    def test_corrupt_exclusive_recovers_without_lock(
        self, registry: JobRegistry, storage: FileStorage, exclusive: Any
    ) -> None:
        """A corrupt exclusive value recovers the job without a lock."""
        job = Job({'job_name': 'echo', 'args': [1]})
        entry = Entry.for_job(job, WalEvent.ENQUEUED)
        storage.append(replace(entry, data={**entry.data, 'exclusive': exclusive}))

        (recovered,) = _runner(registry, storage).recover_from_wal()

        assert recovered.id == job.id
        assert recovered.exclusive is NO_LOCK

    def test_skips_lines_that_are_not_utf8(
        self, registry: JobRegistry, storage: FileStorage, wal_path: Path
    ) -> None:
        """A line with invalid bytes does not stop recovery."""
        first = Job({'job_name': 'echo', 'args': [1]})
        storage.append(Entry.for_job(first, WalEvent.ENQUEUED))
        with open(wal_path, 'ab') as f:
            f.write(b'\x80\x81 torn\n')
        job = Job({'job_name': 'echo', 'args': [2]})
        storage.append(Entry.for_job(job, WalEvent.ENQUEUED))

        recovered = _runner(registry, storage).recover_from_wal()

        assert [j.id for j in recovered] == [first.id, job.id]

    def test_enqueue_waits_for_recovery(
        self, registry: JobRegistry, storage: FileStorage, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """An enqueue racing recovery waits and queues the job once."""
        runner = _runner(registry, storage)
        job = Job({'job_name': 'echo'})
        producer = threading.Thread(target=runner.enqueue, args=(job,))
        blocked: list[bool] = []
        original_replay = storage.replay

        def replay_with_concurrent_enqueue() -> Iterator[Entry]:
            entries = list(original_replay())
            producer.start()
            producer.join(timeout=0.2)
            blocked.append(producer.is_alive())
            return iter(entries)

        monkeypatch.setattr(storage, 'replay', replay_with_concurrent_enqueue)
        assert runner.recover_from_wal() == []
        producer.join()
        monkeypatch.undo()

        assert blocked == [True]
        assert runner.pending_count == 1
        assert _events(storage, job.id) == ['enqueued']


@pytest.mark.unit
class TestCheckpointDelegation:
    def test_checkpoint(self, registry: JobRegistry, storage: FileStorage) -> None:
        """checkpoint compacts the runner's WAL."""
        runner = _runner(registry, storage)
        runner.enqueue(Job({'job_name': 'echo'}))
        assert runner.checkpoint() == 1
