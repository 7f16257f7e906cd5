"""Backgrounder - embedded background jobs with a write-ahead log"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Backgrounder
from .core.models.app import AppConfig
from .core.models.job import Job
from .core.models.exclusivity import (
    NoLock,
    WholeJobLock,
    FieldLock,
    CustomLock,
    ExclusivePolicy,
    exclusive_policy,
)
from .core.types.status import JobState, WalEvent, JOB_TERMINAL_STATES
from .core.registry.jobs import (
    JobDefinition,
    JobOptions,
    JobRegistry,
    NotRegistered,
    DuplicateJobNameError,
)
from .core.wal import Entry, FileStorage, DEFAULT_LOG_PATH
from .core.codec.serde import (
    JsonSerializer,
    YamlSerializer,
    SerializationError,
    get_serializer,
)
from .core.worker import Runner
from .core.errors import (
    BackgrounderError,
    ErrorCode,
    JobDefinitionError,
    ConfigurationError,
    RegistryError,
    InvalidTransitionError,
    RunnerStateError,
    MultipleValidationErrors,
)

__all__ = [
    'Backgrounder',
    'AppConfig',
    'Job',
    'JobState',
    'WalEvent',
    'JOB_TERMINAL_STATES',
    'NoLock',
    'WholeJobLock',
    'FieldLock',
    'CustomLock',
    'ExclusivePolicy',
    'exclusive_policy',
    'JobDefinition',
    'JobOptions',
    'JobRegistry',
    'NotRegistered',
    'DuplicateJobNameError',
    'Entry',
    'FileStorage',
    'DEFAULT_LOG_PATH',
    'JsonSerializer',
    'YamlSerializer',
    'SerializationError',
    'get_serializer',
    'Runner',
    'BackgrounderError',
    'ErrorCode',
    'JobDefinitionError',
    'ConfigurationError',
    'RegistryError',
    'InvalidTransitionError',
    'RunnerStateError',
    'MultipleValidationErrors',
]
