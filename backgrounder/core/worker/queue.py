"""Unbounded blocking FIFO shared by the runner's workers."""

from __future__ import annotations

import threading
from collections import deque
from typing import Generic, Iterator, Optional, TypeVar

T = TypeVar('T')


class WorkQueue(Generic[T]):
    """
    Thread-safe FIFO with a front door.

    ``put`` appends at the back; ``put_front`` jumps the line (used for
    shutdown sentinels so queued work is left untouched).
    """

    def __init__(self) -> None:
        self._items: deque[T] = deque()
        self._cond = threading.Condition()

    def put(self, item: T) -> None:
        with self._cond:
            self._items.append(item)
            self._cond.notify()

    def put_front(self, item: T) -> None:
        with self._cond:
            self._items.appendleft(item)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> T:
        """
        Pop the oldest item, blocking while empty.

        Raises:
            TimeoutError: If ``timeout`` elapses with the queue still empty
        """
        with self._cond:
            if not self._cond.wait_for(lambda: len(self._items) > 0, timeout=timeout):
                raise TimeoutError('work queue is empty')
            return self._items.popleft()

    def snapshot(self) -> list[T]:
        with self._cond:
            return list(self._items)

    def remove(self, item: T) -> bool:
        with self._cond:
            try:
                self._items.remove(item)
            except ValueError:
                return False
            return True

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self.snapshot())
