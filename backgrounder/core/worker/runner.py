# backgrounder/core/worker/runner.py
from __future__ import annotations

import threading
import time
from typing import Any, Hashable, Optional, Union

from backgrounder.core.errors import (
    BackgrounderError,
    ConfigurationError,
    ErrorCode,
    InvalidTransitionError,
    RunnerStateError,
)
from backgrounder.core.logging import get_logger
from backgrounder.core.models.exclusivity import NoLock
from backgrounder.core.models.job import Job
from backgrounder.core.registry.jobs import JobDefinition, JobRegistry
from backgrounder.core.types.status import JobState, WalEvent
from backgrounder.core.wal.entry import Entry
from backgrounder.core.wal.storage import FileStorage, fold_latest
from backgrounder.core.worker.locks import KeyedLocks
from backgrounder.core.worker.queue import WorkQueue


class _Shutdown:
    """Sentinel telling one worker to exit."""

    __slots__ = ()

    def __repr__(self) -> str:
        return '<shutdown>'


_SHUTDOWN = _Shutdown()

WorkItem = Union[Job, _Shutdown]


class Runner:
    """
    Thread pool that executes jobs with WAL-backed durability:
      - enqueue() logs 'enqueued' before the job reaches the in-memory queue
      - workers log 'started', then 'completed' / 'retry' / 'failed'
      - start() replays the WAL and re-enqueues in-flight jobs first
      - jobs resolving to the same lock key never overlap
    """

    def __init__(
        self,
        registry: JobRegistry,
        wal: FileStorage,
        *,
        max_threads: int = 5,
        backoff_unit_seconds: float = 1.0,
        max_backoff_seconds: Optional[float] = None,
    ) -> None:
        if max_threads < 1:
            raise ConfigurationError(
                message='max_threads must be at least 1',
                code=ErrorCode.CONFIG_INVALID_RUNNER,
                notes=[f'got max_threads={max_threads}'],
            )
        if backoff_unit_seconds < 0:
            raise ConfigurationError(
                message='backoff_unit_seconds must be non-negative',
                code=ErrorCode.CONFIG_INVALID_BACKOFF,
                notes=[f'got backoff_unit_seconds={backoff_unit_seconds}'],
            )
        self.registry = registry
        self.wal = wal
        self.max_threads = max_threads
        self.backoff_unit_seconds = backoff_unit_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.logger = get_logger('runner')

        self._queue: WorkQueue[WorkItem] = WorkQueue()
        self._locks = KeyedLocks()
        self._threads: list[threading.Thread] = []
        self._state_lock = threading.RLock()
        # Orders WAL append plus queue push against the replay in recovery
        self._enqueue_lock = threading.Lock()
        self._running = False
        # Jobs handed to the runner that have not reached a terminal outcome
        self._outstanding = 0
        self._idle = threading.Condition()

    # ----- introspection -----

    @property
    def running(self) -> bool:
        return self._running

    @property
    def threads(self) -> list[threading.Thread]:
        return list(self._threads)

    @property
    def pending_count(self) -> int:
        """Jobs waiting in the in-memory queue."""
        return sum(1 for item in self._queue.snapshot() if isinstance(item, Job))

    @property
    def locks(self) -> KeyedLocks:
        return self._locks

    def backoff_delay(self, retries: int) -> float:
        delay = self.backoff_unit_seconds * (2**retries)
        if self.max_backoff_seconds is not None:
            delay = min(delay, self.max_backoff_seconds)
        return delay

    # ----- lifecycle -----

    def start(self) -> list[Job]:
        """Recover in-flight jobs from the WAL, then launch the workers.

        Returns the jobs re-enqueued by recovery.
        """
        with self._state_lock:
            if self._running:
                raise RunnerStateError(
                    message='runner is already started',
                    code=ErrorCode.RUNNER_INVALID_STATE,
                    help_text='call stop() before starting the runner again',
                )
            recovered = self.recover_from_wal()
            self._threads = [
                threading.Thread(
                    target=self._worker_loop,
                    name=f'backgrounder-worker-{i + 1}',
                    daemon=True,
                )
                for i in range(self.max_threads)
            ]
            for thread in self._threads:
                thread.start()
            self._running = True
        self.logger.info(
            f'Runner started with {self.max_threads} worker(s), '
            f'{len(recovered)} job(s) recovered from {self.wal.log_path}'
        )
        return recovered

    def stop(self) -> None:
        """Stop every worker and wait for them to exit.

        Handlers already running finish; queued jobs stay queued.
        """
        with self._state_lock:
            if not self._running:
                return
            # Sentinels go to the front so no further queued job starts
            for _ in self._threads:
                self._queue.put_front(_SHUTDOWN)
            for thread in self._threads:
                thread.join()
            self._threads = []
            # A worker killed by a BaseException leaves its sentinel behind
            while self._queue.remove(_SHUTDOWN):
                pass
            self._running = False
        self.logger.info(f'Runner stopped, {self.pending_count} job(s) left queued')

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every job handed to the runner reached a terminal state.

        Returns False if ``timeout`` elapsed first.
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def _track(self) -> None:
        with self._idle:
            self._outstanding += 1

    def _settle(self) -> None:
        with self._idle:
            self._outstanding -= 1
            self._idle.notify_all()

    # ----- producer side -----

    def enqueue(self, job: Job) -> Job:
        """Log the job as enqueued, then hand it to the workers.

        Raises:
            InvalidTransitionError: If the job is not in the queued state
            OSError, SerializationError: If the WAL append fails
        """
        if job.state is not JobState.QUEUED:
            raise InvalidTransitionError(
                message=f"cannot enqueue job {job.id} in state '{job.state.value}'",
                code=ErrorCode.JOB_INVALID_TRANSITION,
                help_text='only queued jobs can be enqueued; build a new Job instead',
            )
        with self._enqueue_lock:
            self.wal.append(Entry.for_job(job, WalEvent.ENQUEUED))
            self._track()
            self._queue.put(job)
        self.logger.debug(f'Enqueued job {job.id} ({job.job_name})')
        return job

    def checkpoint(self) -> int:
        """Compact the WAL; see FileStorage.checkpoint."""
        return self.wal.checkpoint()

    # ----- recovery -----

    def recover_from_wal(self) -> list[Job]:
        """
        Re-enqueue jobs whose latest WAL entry is not terminal.

        Skips jobs whose fingerprint already reached complete/failed under
        another id, and jobs already waiting in the in-memory queue.
        """
        with self._enqueue_lock:
            latest = fold_latest(self.wal.replay())
            terminal_fingerprints = {
                entry.fingerprint
                for entry in latest.values()
                if entry.is_terminal and entry.fingerprint
            }
            queued_ids = {item.id for item in self._queue.snapshot() if isinstance(item, Job)}

            recovered: list[Job] = []
            for entry in latest.values():
                if entry.is_terminal or entry.job_id in queued_ids:
                    continue
                if entry.fingerprint and entry.fingerprint in terminal_fingerprints:
                    self.logger.info(
                        f'Skipping job {entry.job_id}: an identical job already finished'
                    )
                    continue
                try:
                    job = Job.from_record(entry.data)
                except (KeyError, TypeError, ValueError, BackgrounderError) as e:
                    self.logger.warning(f'Cannot rebuild job {entry.job_id} from WAL: {e!r}')
                    continue
                if job.is_terminal:
                    continue
                if job.state is JobState.RUNNING:
                    # Interrupted mid-run by the crash
                    job.mark_queued()
                self._track()
                self._queue.put(job)
                recovered.append(job)
            return recovered

    # ----- worker side -----

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            if isinstance(item, _Shutdown):
                break
            requeued = False
            try:
                requeued = self.execute_job(item)
            except Exception as e:
                self.logger.error(f'Worker error on job {item.id}: {e}', exc_info=True)
            finally:
                if not requeued:
                    self._settle()

    def resolve_lock_key(
        self, job: Job, definition: Optional[JobDefinition]
    ) -> Optional[Hashable]:
        """Lock key for a job: the definition's policy, else the job's own."""
        policy = definition.exclusive if definition is not None else None
        if policy is None or isinstance(policy, NoLock):
            policy = job.exclusive
        key: Any = policy.resolve_key(job.job_name, job.args)
        return key

    def execute_job(self, job: Job) -> bool:
        """Run one job under its lock key, if any. Returns True if requeued for retry."""
        definition = self.registry.lookup(job.job_name)
        lock_key = self.resolve_lock_key(job, definition)
        if lock_key is None:
            return self.execute_job_inner(job, definition)
        with self._locks.hold(lock_key):
            return self.execute_job_inner(job, definition)

    def execute_job_inner(self, job: Job, definition: Optional[JobDefinition]) -> bool:
        job.mark_running()
        self.wal.append(Entry.for_job(job, WalEvent.STARTED))

        if definition is None:
            self.logger.error(f"No job definition for '{job.job_name}' (job {job.id})")
            job.mark_failed()
            self.wal.append(Entry.for_job(job, WalEvent.FAILED))
            return False

        try:
            definition.handler(*job.positional_args)
        except Exception as e:
            return self._handle_failure(job, e)

        job.mark_complete()
        self.wal.append(Entry.for_job(job, WalEvent.COMPLETED))
        self.logger.debug(f'Job {job.id} ({job.job_name}) completed')
        return False

    def _handle_failure(self, job: Job, exc: Exception) -> bool:
        job.retries += 1
        if job.retries > job.max_retries:
            self.logger.error(
                f'Job {job.id} ({job.job_name}) failed after '
                f'{job.retries} attempt(s): {exc!r}'
            )
            job.mark_failed()
            self.wal.append(Entry.for_job(job, WalEvent.FAILED))
            return False

        delay = self.backoff_delay(job.retries)
        self.logger.warning(
            f'Job {job.id} ({job.job_name}) failed: {exc!r}; '
            f'retry {job.retries}/{job.max_retries} in {delay:.2f}s'
        )
        job.mark_queued()
        self.wal.append(Entry.for_job(job, WalEvent.RETRY))
        time.sleep(delay)
        self._queue.put(job)
        return True
