"""
Import helpers for callables referenced by "module:qualname" strings.

Used to persist custom lock resolvers in job records.
"""

from __future__ import annotations

import importlib
from typing import Any, Callable


def callable_ref(fn: Callable[..., Any]) -> str | None:
    """
    Return "module:qualname" for a module-level callable.

    Returns None for lambdas, closures and other callables that
    cannot be located again by import.
    """
    module = getattr(fn, '__module__', None)
    qualname = getattr(fn, '__qualname__', None)
    if not module or not qualname or '<' in qualname:
        return None
    return f'{module}:{qualname}'


def import_by_ref(ref: str) -> Any:
    """
    Import an attribute given as "module:qualname".

    Raises:
        ValueError: If the reference has no ':' separator
        ModuleNotFoundError: If the module cannot be found
        AttributeError: If the attribute path does not exist
    """
    if ':' not in ref:
        raise ValueError(f"expected 'module:qualname', got {ref!r}")
    module_path, qualname = ref.split(':', 1)
    obj: Any = importlib.import_module(module_path)
    for part in qualname.split('.'):
        obj = getattr(obj, part)
    return obj
