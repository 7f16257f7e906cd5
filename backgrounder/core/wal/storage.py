# backgrounder/core/wal/storage.py
"""
Append-only file storage for WAL entries.

Layout: one encoded Entry record per line, in append order. ``checkpoint``
rewrites the file with the latest record of each in-flight job and swaps it
in with ``os.replace``.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Iterable, Iterator
from typing import Any, Mapping, Optional

from backgrounder.core.codec.serde import JsonSerializer, SerializationError, Serializer
from backgrounder.core.logging import get_logger
from backgrounder.core.wal.entry import Entry

logger = get_logger('wal')

DEFAULT_LOG_PATH = os.path.join('log', 'jobs.wal')


def fold_latest(entries: Iterable[Entry]) -> dict[str, Entry]:
    """Latest entry per job id; later entries win (file order is chronological)."""
    latest: dict[str, Entry] = {}
    for entry in entries:
        latest[entry.job_id] = entry
    return latest


class FileStorage:
    """
    Durable append-only log of WAL entries.

    Appends from any thread are serialized by an internal lock, and
    ``checkpoint`` holds the same lock for the whole compaction, so no
    append can land in the file being replaced.
    """

    def __init__(
        self,
        log_path: str | os.PathLike[str] = DEFAULT_LOG_PATH,
        *,
        serializer: Optional[Serializer] = None,
        fsync: bool = False,
    ) -> None:
        self.log_path = os.fspath(log_path)
        self.serializer: Serializer = serializer or JsonSerializer()
        self.fsync = fsync
        self._lock = threading.Lock()

    @property
    def tmp_path(self) -> str:
        return self.log_path + '.tmp'

    def _ensure_parent_dir(self) -> None:
        parent = os.path.dirname(self.log_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

    def _encode(self, entry: Entry) -> str:
        return self.serializer.dump(entry.to_record()) + '\n'

    def append(self, entry: Entry) -> None:
        """
        Write one entry as one line.

        Raises:
            SerializationError: If the entry data cannot be encoded
            OSError: If the file cannot be written
        """
        line = self._encode(entry)
        with self._lock:
            self._ensure_parent_dir()
            with open(self.log_path, 'a', encoding='utf-8') as f:
                f.write(line)
                if self.fsync:
                    f.flush()
                    os.fsync(f.fileno())

    def replay(self) -> Iterator[Entry]:
        """
        Yield entries in file order, oldest first.

        Each call reads from the start of the file. Lines that fail to
        decode, decode to nothing, or do not form a valid Entry are skipped.
        """
        if not os.path.exists(self.log_path):
            return
        with open(self.log_path, 'rb') as f:
            for lineno, raw in enumerate(f, start=1):
                entry = self._decode_line(raw, lineno)
                if entry is not None:
                    yield entry

    def _decode_line(self, raw: bytes, lineno: int) -> Optional[Entry]:
        try:
            text = raw.decode('utf-8').strip()
        except UnicodeDecodeError as e:
            logger.warning(f'{self.log_path}:{lineno}: skipping line that is not UTF-8: {e}')
            return None
        if not text:
            return None
        try:
            record: Any = self.serializer.load(text)
        except SerializationError as e:
            logger.warning(f'{self.log_path}:{lineno}: skipping undecodable record: {e}')
            return None
        if not record:
            return None
        if not isinstance(record, Mapping):
            logger.warning(
                f'{self.log_path}:{lineno}: skipping record of type {type(record).__name__}'
            )
            return None
        entry = Entry.from_record(record)
        if entry is None:
            logger.warning(f'{self.log_path}:{lineno}: skipping malformed record')
        return entry

    def checkpoint(self) -> int:
        """
        Compact the log to the latest entry of every in-flight job.

        Jobs whose latest state is complete or failed are dropped. Returns the
        number of entries kept.

        Raises:
            OSError: If the compacted file cannot be written or swapped in
        """
        with self._lock:
            if not os.path.exists(self.log_path):
                return 0
            latest = fold_latest(self.replay())
            survivors = [entry for entry in latest.values() if not entry.is_terminal]
            try:
                with open(self.tmp_path, 'w', encoding='utf-8') as f:
                    for entry in survivors:
                        f.write(self._encode(entry))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(self.tmp_path, self.log_path)
            except BaseException:
                if os.path.exists(self.tmp_path):
                    os.remove(self.tmp_path)
                raise
        logger.info(
            f'Checkpointed {self.log_path}: kept {len(survivors)} of {len(latest)} job(s)'
        )
        return len(survivors)
