from backgrounder.core.worker.locks import KeyedLocks
from backgrounder.core.worker.queue import WorkQueue
from backgrounder.core.worker.runner import Runner

__all__ = ['KeyedLocks', 'Runner', 'WorkQueue']
