# backgrounder/core/models/app.py
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from backgrounder.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)
from backgrounder.core.wal.storage import DEFAULT_LOG_PATH


class AppConfig(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)

    # Worker threads started by Runner.start()
    max_threads: int = Field(default=5, ge=1, le=256)
    # Retry budget for jobs whose definition sets no max_retries
    retry_limit: int = Field(default=3, ge=0, le=100)
    wal_path: str = DEFAULT_LOG_PATH
    serializer: Literal['json', 'yaml'] = 'json'
    # fsync after every append; checkpoints always fsync
    fsync: bool = False
    backoff_unit_seconds: float = Field(default=1.0, gt=0)
    max_backoff_seconds: Optional[float] = None
    loglevel: Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'] = 'INFO'

    @model_validator(mode='after')
    def validate_runner_settings(self):
        """Cross-field checks, collected and raised together."""
        report = ValidationReport('config')

        if not self.wal_path.strip():
            report.add(
                ConfigurationError(
                    message='wal_path must not be empty',
                    code=ErrorCode.CONFIG_INVALID_RUNNER,
                    help_text=f"use a file path such as '{DEFAULT_LOG_PATH}'",
                )
            )

        if self.max_backoff_seconds is not None:
            if self.max_backoff_seconds < self.backoff_unit_seconds:
                report.add(
                    ConfigurationError(
                        message='max_backoff_seconds is smaller than backoff_unit_seconds',
                        code=ErrorCode.CONFIG_INVALID_BACKOFF,
                        notes=[
                            f'max_backoff_seconds={self.max_backoff_seconds}',
                            f'backoff_unit_seconds={self.backoff_unit_seconds}',
                        ],
                        help_text='raise max_backoff_seconds or set it to None for no cap',
                    )
                )

        raise_collected(report)
        return self

