# backgrounder/core/models/exclusivity.py
"""
Exclusivity policies: which lock key, if any, a job runs under.

The DSL accepts four shapes for the ``exclusive`` option; they are coerced
once, at registration time, into one of:

- NoLock: run concurrently with anything
- WholeJobLock: serialize every job with the same job name
- FieldLock(field): serialize jobs whose ``args[field]`` is equal
- CustomLock(resolver): serialize jobs whose ``resolver(args)`` is equal
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Hashable, Mapping, Union

from backgrounder.core.errors import ErrorCode, JobDefinitionError, job_definition_error
from backgrounder.core.logging import get_logger
from backgrounder.core.utils.imports import callable_ref, import_by_ref

logger = get_logger('job')

LockResolver = Callable[[Mapping[str, Any]], Any]


@dataclass(frozen=True)
class NoLock:
    def resolve_key(self, job_name: str, args: Mapping[str, Any]) -> Hashable | None:
        return None

    def to_record(self) -> Any:
        return False


@dataclass(frozen=True)
class WholeJobLock:
    def resolve_key(self, job_name: str, args: Mapping[str, Any]) -> Hashable | None:
        return job_name

    def to_record(self) -> Any:
        return True


@dataclass(frozen=True)
class FieldLock:
    field: str

    def resolve_key(self, job_name: str, args: Mapping[str, Any]) -> Any:
        return args.get(self.field)

    def to_record(self) -> Any:
        return self.field


@dataclass(frozen=True)
class CustomLock:
    resolver: LockResolver

    def resolve_key(self, job_name: str, args: Mapping[str, Any]) -> Any:
        return self.resolver(args)

    def to_record(self) -> Any:
        return {'resolver': callable_ref(self.resolver)}


ExclusivePolicy = Union[NoLock, WholeJobLock, FieldLock, CustomLock]

NO_LOCK = NoLock()


def exclusive_policy(value: Any) -> ExclusivePolicy:
    """Coerce a DSL ``exclusive`` value into a policy.

    None/False -> NoLock, True -> WholeJobLock, str -> FieldLock,
    callable -> CustomLock. Policies pass through unchanged.
    """
    match value:
        case NoLock() | WholeJobLock() | FieldLock() | CustomLock():
            return value
        case None | False:
            return NO_LOCK
        case True:
            return WholeJobLock()
        case str() if value:
            return FieldLock(value)
        case _ if callable(value):
            return CustomLock(value)
        case _:
            raise job_definition_error(
                'invalid exclusive option',
                code=ErrorCode.JOB_INVALID_EXCLUSIVE,
                notes=[f'got {type(value).__name__}: {value!r}'],
                help_text=(
                    'use one of:\n'
                    '  exclusive=True            (one job of this name at a time)\n'
                    "  exclusive='user_id'       (one job per args['user_id'])\n"
                    "  exclusive=lambda a: ...   (one job per resolved key)"
                ),
            )


def policy_from_record(value: Any) -> ExclusivePolicy:
    """Decode what ``to_record`` produced.

    Anything that no longer decodes to a policy (lambda, closure, removed
    or non-callable resolver, unknown value) becomes NoLock with a warning.
    """
    if isinstance(value, Mapping) and 'resolver' in value:
        ref = value.get('resolver')
        if not ref:
            logger.warning('Lock resolver was not importable when recorded')
            return NO_LOCK
        try:
            resolver = import_by_ref(ref)
        except (ValueError, ImportError, AttributeError) as e:
            logger.warning(f'Cannot re-import lock resolver {ref!r}: {e}')
            return NO_LOCK
        if not callable(resolver):
            logger.warning(f'Lock resolver {ref!r} is not callable')
            return NO_LOCK
        return CustomLock(resolver)
    try:
        return exclusive_policy(value)
    except JobDefinitionError:
        logger.warning(f'Unknown recorded exclusive value {value!r}, running without a lock')
        return NO_LOCK
