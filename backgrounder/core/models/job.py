# backgrounder/core/models/job.py
from __future__ import annotations

import copy
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from backgrounder.core.errors import invalid_transition_error
from backgrounder.core.logging import get_logger
from backgrounder.core.models.exclusivity import (
    ExclusivePolicy,
    exclusive_policy,
    policy_from_record,
)
from backgrounder.core.types.status import JOB_TRANSITIONS, JobState
from backgrounder.core.utils.fingerprint import job_fingerprint

logger = get_logger('job')

# Reserved keys inside Job.args
JOB_NAME_KEY = 'job_name'
ARGS_KEY = 'args'

DEFAULT_MAX_RETRIES = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    ts = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class Job:
    """
    A unit of work: arguments, retry budget, exclusivity and lifecycle state.

    ``args`` conventionally carries the target job name under ``job_name`` and
    the positional arguments under ``args``; any other keys are metadata
    available to lock resolvers.

    ``state`` only changes through the ``mark_*`` methods, which enforce:
        queued -> running -> complete | failed
        running -> queued  (retry)
    """

    def __init__(
        self,
        args: Optional[Mapping[str, Any]] = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        exclusive: Any = None,
        id: Optional[str] = None,
        state: JobState | str = JobState.QUEUED,
        retries: int = 0,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        fingerprint: Optional[str] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f'max_retries must be >= 0, got {max_retries}')
        if retries < 0:
            raise ValueError(f'retries must be >= 0, got {retries}')

        now = utcnow()
        self._id: str = id or str(uuid.uuid4())
        self.args: dict[str, Any] = dict(args or {})
        self._state: JobState = JobState(state)
        self.retries = retries
        self.max_retries = max_retries
        self.exclusive: ExclusivePolicy = exclusive_policy(exclusive)
        self.created_at: datetime = created_at or now
        self.updated_at: datetime = updated_at or now
        self.fingerprint: str = fingerprint or job_fingerprint(
            self.job_name, self.positional_payload
        )

    @property
    def id(self) -> str:
        return self._id

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    @property
    def job_name(self) -> str:
        return str(self.args.get(JOB_NAME_KEY) or '')

    @property
    def positional_payload(self) -> Any:
        """The ``args`` entry, or the whole mapping when there is none."""
        if ARGS_KEY in self.args:
            return self.args[ARGS_KEY]
        return self.args

    @property
    def positional_args(self) -> list[Any]:
        """Arguments the handler is called with."""
        payload = self.args.get(ARGS_KEY)
        if payload is None:
            return []
        if isinstance(payload, (list, tuple)):
            return list(payload)
        return [payload]

    # ----- state machine -----

    def _transition(self, target: JobState, event: str) -> None:
        if target not in JOB_TRANSITIONS[self._state]:
            raise invalid_transition_error(self._id, self._state.value, target.value)
        self._state = target
        self.updated_at = utcnow()
        self._emit_event(event)

    def mark_running(self) -> None:
        self._transition(JobState.RUNNING, 'started')

    def mark_complete(self) -> None:
        self._transition(JobState.COMPLETE, 'completed')

    def mark_failed(self) -> None:
        self._transition(JobState.FAILED, 'failed')

    def mark_queued(self) -> None:
        """Retry transition: running -> queued."""
        self._transition(JobState.QUEUED, 'retry')

    def _emit_event(self, event: str) -> None:
        """Observability hook for lifecycle transitions."""
        logger.debug(
            f'Job {self._id} ({self.job_name or "?"}) {event} '
            f'[state={self._state.value} retries={self.retries}/{self.max_retries}]'
        )

    # ----- serialization -----

    def to_record(self) -> dict[str, Any]:
        return {
            'id': self._id,
            'args': copy.deepcopy(self.args),
            'state': self._state.value,
            'retries': self.retries,
            'max_retries': self.max_retries,
            'exclusive': self.exclusive.to_record(),
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'fingerprint': self.fingerprint,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Job:
        """
        Rebuild a Job from ``to_record`` output.

        Raises:
            KeyError: If a required field is missing
            ValueError: If state or a timestamp does not parse
        """
        retries = record.get('retries')
        max_retries = record.get('max_retries')
        return cls(
            id=record['id'],
            args=record.get('args') or {},
            state=record['state'],
            retries=0 if retries is None else int(retries),
            max_retries=DEFAULT_MAX_RETRIES if max_retries is None else int(max_retries),
            exclusive=policy_from_record(record.get('exclusive')),
            created_at=parse_timestamp(record['created_at']),
            updated_at=parse_timestamp(record['updated_at']),
            fingerprint=record.get('fingerprint'),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_record(), separators=(',', ':'), default=str)

    @classmethod
    def from_json(cls, text: str) -> Job:
        return cls.from_record(json.loads(text))

    def __repr__(self) -> str:
        return (
            f'Job(id={self._id!r}, job_name={self.job_name!r}, '
            f'state={self._state.value!r}, retries={self.retries}/{self.max_retries})'
        )
