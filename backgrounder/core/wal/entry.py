# backgrounder/core/wal/entry.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping, Optional

from backgrounder.core.models.job import parse_timestamp, utcnow
from backgrounder.core.types.status import JobState, WalEvent

if TYPE_CHECKING:
    from backgrounder.core.models.job import Job


@dataclass(frozen=True)
class Entry:
    """
    One write-ahead log record: a lifecycle event of one job.

    ``data`` is the job snapshot at the time of the event and ``state`` the
    job state label the event left it in.
    """

    job_id: str
    event: WalEvent
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    state: Optional[JobState] = None

    @classmethod
    def for_job(cls, job: Job, event: WalEvent) -> Entry:
        return cls(
            job_id=job.id,
            event=event,
            data=job.to_record(),
            timestamp=utcnow(),
            state=job.state,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state is not None and self.state.is_terminal

    @property
    def fingerprint(self) -> Optional[str]:
        return self.data.get('fingerprint') if isinstance(self.data, dict) else None

    def to_record(self) -> dict[str, Any]:
        return {
            'job_id': self.job_id,
            'event': self.event.value,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'state': self.state.value if self.state is not None else None,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Optional[Entry]:
        """
        Build an Entry from a decoded record.

        Returns None when job_id, event or timestamp is missing, or when
        event, state or timestamp does not parse.
        """
        if not record:
            return None
        job_id = record.get('job_id')
        event = record.get('event')
        timestamp = record.get('timestamp')
        if not job_id or not event or not timestamp:
            return None

        state = record.get('state')
        data = record.get('data')
        try:
            return cls(
                job_id=str(job_id),
                event=WalEvent(event),
                data=dict(data) if isinstance(data, Mapping) else {},
                timestamp=parse_timestamp(timestamp),
                state=JobState(state) if state else None,
            )
        except (ValueError, TypeError):
            return None

    def to_json(self) -> str:
        return json.dumps(self.to_record(), separators=(',', ':'))

    @classmethod
    def from_json(cls, text: str) -> Optional[Entry]:
        return cls.from_record(json.loads(text))
