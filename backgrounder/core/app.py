# backgrounder/core/app.py
from __future__ import annotations

import os
from typing import Any, Callable, Optional, TypeVar, Union, overload

from pydantic import ValidationError

from backgrounder.core.codec.serde import get_serializer
from backgrounder.core.errors import (
    ErrorCode,
    JobDefinitionError,
    SourceLocation,
    job_definition_error,
)
from backgrounder.core.logging import get_logger, setup_logging
from backgrounder.core.models.app import AppConfig
from backgrounder.core.models.job import ARGS_KEY, JOB_NAME_KEY, Job
from backgrounder.core.registry.jobs import JobDefinition, JobOptions, JobRegistry
from backgrounder.core.wal.storage import FileStorage
from backgrounder.core.worker.runner import Runner

_F = TypeVar('_F', bound=Callable[..., Any])


class Backgrounder:
    """
    Job definitions plus the settings used to build storage and runners.

    Example:
        app = Backgrounder(AppConfig(max_threads=2))

        @app.job('send_email', exclusive='user_id')
        def send_email(user_id, subject): ...

        runner = app.create_runner()
        runner.start()
        runner.enqueue(app.new_job('send_email', 7, 'hi', user_id=7))
    """

    def __init__(self, config: Optional[AppConfig] = None) -> None:
        self.config = config or AppConfig()
        setup_logging(self.config.loglevel)
        self.jobs = JobRegistry()
        self.logger = get_logger('app')
        self.logger.debug(
            f'backgrounder initialized (wal={self.config.wal_path}, '
            f'serializer={self.config.serializer}, threads={self.config.max_threads})'
        )

    @overload
    def job(self, job_name: str, func: _F) -> _F: ...

    @overload
    def job(
        self,
        job_name: str,
        *,
        max_retries: Optional[int] = None,
        exclusive: Any = None,
    ) -> Callable[[_F], _F]: ...

    def job(
        self,
        job_name: str,
        func: Optional[_F] = None,
        *,
        max_retries: Optional[int] = None,
        exclusive: Any = None,
    ) -> Union[_F, Callable[[_F], _F]]:
        """
        Register a handler under ``job_name``.

        Usable as ``@app.job('name', ...)`` or ``app.job('name', fn)``.
        The handler is returned unchanged.
        """

        def decorator(fn: _F) -> _F:
            if not callable(fn):
                raise job_definition_error(
                    f"job '{job_name}' has no callable handler",
                    code=ErrorCode.JOB_NO_HANDLER,
                    notes=[f'got {type(fn).__name__}: {fn!r}'],
                    help_text='pass a function, e.g. app.job("name", handler)',
                )
            fn_location = SourceLocation.from_function(fn)

            try:
                options = JobOptions(
                    job_name=job_name, max_retries=max_retries, exclusive=exclusive
                )
            except ValidationError as e:
                raise JobDefinitionError(
                    message='invalid job options',
                    code=ErrorCode.JOB_INVALID_OPTIONS,
                    location=fn_location,
                    notes=[f"job '{job_name}'", str(e)],
                    help_text='check job decorator arguments',
                )

            # realpath so symlinked or relative imports map to one source
            source_str = (
                f'{os.path.realpath(fn_location.file)}:{fn_location.line}'
                if fn_location
                else None
            )
            self.jobs.register(
                JobDefinition(name=job_name, handler=fn, options=options),
                source=source_str,
            )
            self.logger.debug(f"Registered job '{job_name}'")
            return fn

        if func is None:
            return decorator
        return decorator(func)

    define_job = job

    def get_job(self, job_name: str) -> JobDefinition:
        """Raises NotRegistered for unknown names."""
        return self.jobs[job_name]

    def list_jobs(self) -> list[str]:
        return self.jobs.names()

    def new_job(self, job_name: str, *args: Any, **extra: Any) -> Job:
        """
        Build a queued Job targeting ``job_name``.

        Positional arguments become the handler's arguments; keyword
        arguments are stored alongside as metadata for lock resolution.
        """
        definition = self.jobs.lookup(job_name)
        max_retries = self.config.retry_limit
        if definition is not None and definition.options.max_retries is not None:
            max_retries = definition.options.max_retries
        payload: dict[str, Any] = {JOB_NAME_KEY: job_name, ARGS_KEY: list(args), **extra}
        return Job(payload, max_retries=max_retries)

    def create_storage(self) -> FileStorage:
        return FileStorage(
            self.config.wal_path,
            serializer=get_serializer(self.config.serializer),
            fsync=self.config.fsync,
        )

    def create_runner(self, storage: Optional[FileStorage] = None) -> Runner:
        return Runner(
            self.jobs,
            storage or self.create_storage(),
            max_threads=self.config.max_threads,
            backoff_unit_seconds=self.config.backoff_unit_seconds,
            max_backoff_seconds=self.config.max_backoff_seconds,
        )
