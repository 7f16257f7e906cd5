from backgrounder.core.wal.entry import Entry
from backgrounder.core.wal.storage import DEFAULT_LOG_PATH, FileStorage, fold_latest

__all__ = [
    'Entry',
    'FileStorage',
    'DEFAULT_LOG_PATH',
    'fold_latest',
]
