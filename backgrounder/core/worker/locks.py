"""Per-key mutual exclusion with a self-pruning lock table."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Hashable

from backgrounder.core.utils.fingerprint import canonical_json


@dataclass
class _Slot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    refs: int = 0  # holders + waiters


def normalize_key(key: Any) -> Hashable:
    """Hashable form of a resolved lock key; unhashable keys become canonical JSON."""
    try:
        hash(key)
    except TypeError:
        return canonical_json(key)
    return key


class KeyedLocks:
    """
    One mutex per distinct key, created on first use.

    A key's slot is reference counted across holders and waiters and removed
    when the last one leaves, so the table only holds keys in use.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: dict[Hashable, _Slot] = {}

    @contextmanager
    def hold(self, key: Any) -> Iterator[None]:
        key = normalize_key(key)
        with self._guard:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot()
            slot.refs += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._guard:
                slot.refs -= 1
                if slot.refs == 0:
                    del self._slots[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)

    def __contains__(self, key: Any) -> bool:
        with self._guard:
            return normalize_key(key) in self._slots
