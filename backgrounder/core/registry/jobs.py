# backgrounder/core/registry/jobs.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, MutableMapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from backgrounder.core.errors import ErrorCode, RegistryError
from backgrounder.core.models.exclusivity import (
    NO_LOCK,
    ExclusivePolicy,
    exclusive_policy,
)


class NotRegistered(RegistryError, KeyError):
    """Raised when a job name is not present in the registry.

    Inherits from KeyError so MutableMapping.__contains__ works correctly
    (it catches KeyError to implement the ``in`` operator).
    """

    def __init__(self, job_name: str) -> None:
        RegistryError.__init__(
            self,
            message=f"job '{job_name}' not registered",
            code=ErrorCode.JOB_NOT_REGISTERED,
            notes=[f"requested job: '{job_name}'"],
            help_text='register the handler with @app.job(...) before enqueueing it',
        )
        self.job_name = job_name


class DuplicateJobNameError(RegistryError):
    """Raised when a job name is registered more than once."""

    def __init__(self, job_name: str, context: str = '') -> None:
        super().__init__(
            message=f"duplicate job name '{job_name}'",
            code=ErrorCode.JOB_DUPLICATE_NAME,
            notes=[context] if context else [],
            help_text='each job name must be unique within a registry',
        )
        self.job_name = job_name


class JobOptions(BaseModel):
    """
    Options of a job definition.

    Fields:
        job_name: name jobs reference in ``args['job_name']``
        max_retries: retry budget for jobs built from this definition
            (None: use the app's retry_limit)
        exclusive: lock policy, coerced from True / field name / callable
    """

    model_config = ConfigDict(extra='forbid', frozen=True, arbitrary_types_allowed=True)

    job_name: str = Field(min_length=1)
    max_retries: Optional[int] = Field(default=None, ge=0, le=100)
    exclusive: Any = NO_LOCK

    @field_validator('exclusive', mode='before')
    @classmethod
    def coerce_exclusive(cls, value: Any) -> ExclusivePolicy:
        return exclusive_policy(value)


@dataclass(frozen=True)
class JobDefinition:
    """A registered handler and its options."""

    name: str
    handler: Callable[..., Any]
    options: JobOptions

    @property
    def exclusive(self) -> ExclusivePolicy:
        return self.options.exclusive


class JobRegistry(MutableMapping[str, JobDefinition]):
    """Registry mapping job name -> JobDefinition.

    Tracks source locations to detect duplicate registrations:
    - Same name + same source: silently skip (re-import scenario)
    - Same name + different source: raise DuplicateJobNameError
    """

    def __init__(self, initial: Dict[str, JobDefinition] | None = None) -> None:
        self._data: Dict[str, JobDefinition] = dict(initial or {})
        self._sources: Dict[str, str] = {}  # job_name -> "file:lineno"

    def __getitem__(self, key: str) -> JobDefinition:
        try:
            return self._data[key]
        except KeyError:
            raise NotRegistered(key)

    def __setitem__(self, key: str, value: JobDefinition) -> None:
        """Direct assignment follows the same uniqueness rule as register()."""
        if key in self._data:
            raise DuplicateJobNameError(key, 'detected via direct assignment')
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._sources.pop(key, None)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    # --- convenience ---
    def register(
        self, definition: JobDefinition, *, source: str | None = None
    ) -> JobDefinition:
        """Insert a definition under its name.

        Args:
            definition: The job definition to register.
            source: Optional source location string (e.g., "jobs.py:42").
                    Used to tell re-imports from true duplicates.

        Returns:
            The registered definition (existing if re-import, new otherwise).

        Raises:
            DuplicateJobNameError: If the name is registered from a different source.
        """
        name = definition.name
        if name in self._data:
            existing_source = self._sources.get(name)
            if existing_source and source and existing_source == source:
                return self._data[name]
            raise DuplicateJobNameError(name, 'job with this name already exists')
        self._data[name] = definition
        if source:
            self._sources[name] = source
        return definition

    def lookup(self, name: str) -> Optional[JobDefinition]:
        """Definition for ``name``, or None."""
        return self._data.get(name)

    def unregister(self, name: str) -> None:
        self._data.pop(name, None)
        self._sources.pop(name, None)

    def clear(self) -> None:
        self._data.clear()
        self._sources.clear()

    def names(self) -> list[str]:
        return list(self._data.keys())
