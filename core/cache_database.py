import sqlite3
import os
import json
import logging
from contextlib import contextmanager
from threading import Lock
from typing import Any, Callable, Iterator, List, Optional, Tuple

from core.errors import StoreError
from core.models import (
    CacheSnapshot, ChangeRecord, FolderHashRecord, HistoryEntry, HistoryEventType,
)

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "folder_path, current_hash, previous_hash, last_scanned_at, "
    "last_built_at, thumbnail_count, revision"
)

RecordUpdater = Callable[[Optional[FolderHashRecord]], Optional[FolderHashRecord]]
ChangeBuilder = Callable[[Optional[FolderHashRecord], FolderHashRecord], Optional[ChangeRecord]]


def _record_from_row(row) -> FolderHashRecord:
    return FolderHashRecord(
        folder_path=row[0],
        current_hash=row[1],
        previous_hash=row[2],
        last_scanned_at=row[3],
        last_built_at=row[4],
        thumbnail_count=row[5],
        revision=row[6],
    )


def _history_from_row(row) -> HistoryEntry:
    return HistoryEntry(
        id=row[0], folder_path=row[1], timestamp=row[2],
        event_type=HistoryEventType(row[3]), detail=row[4] or "",
    )


def _change_from_row(row) -> ChangeRecord:
    return ChangeRecord(
        id=row[0], folder_path=row[1], timestamp=row[2],
        from_hash=row[3], to_hash=row[4],
    )


class CacheDatabase:
    """
    Sole owner of folder hash records, cache history and change records.

    Every write commits before returning. All statements run under one lock,
    so writes to a folder's record are linearized and ``update_record`` is an
    atomic read-modify-write.
    """

    def __init__(self, db_path: str, max_history_entries: int = 500, max_change_records: int = 1000):
        logger.info(f"Initializing CacheDatabase with path: {db_path}")
        self.db_path = db_path
        self.max_history_entries = max_history_entries
        self.max_change_records = max_change_records
        self._lock = Lock()

        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        try:
            # check_same_thread=False: the scheduler pool and socket threads share this connection
            self.conn = sqlite3.connect(db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open cache database {db_path}: {e}") from e

        self._init_database()

    def _init_database(self):
        with self._transaction("initialize schema") as cursor:
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS folder_hash_records (
                    folder_path TEXT PRIMARY KEY,
                    current_hash TEXT NOT NULL,
                    previous_hash TEXT, -- NULL until the first successful rebuild
                    last_scanned_at REAL NOT NULL,
                    last_built_at REAL,
                    thumbnail_count INTEGER NOT NULL DEFAULT 0,
                    revision INTEGER NOT NULL DEFAULT 0
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS cache_history (
                    id TEXT PRIMARY KEY,
                    folder_path TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    event_type TEXT NOT NULL,
                    detail TEXT
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS change_records (
                    id TEXT PRIMARY KEY,
                    folder_path TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    from_hash TEXT,
                    to_hash TEXT NOT NULL
                )
            ''')
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS cache_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            ''')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_history_timestamp ON cache_history(timestamp)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_changes_timestamp ON change_records(timestamp)')
        logger.info(f"Cache database initialized: {self.db_path}")

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
                self.conn.commit()
            except sqlite3.Error as e:
                self.conn.rollback()
                logger.error(f"CacheDatabase: {operation} failed: {e}")
                raise StoreError(f"{operation} failed: {e}") from e
            except BaseException:
                self.conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Folder hash records
    # ------------------------------------------------------------------

    @staticmethod
    def _select_record(cursor: sqlite3.Cursor, folder_path: str) -> Optional[FolderHashRecord]:
        cursor.execute(
            f'SELECT {_RECORD_COLUMNS} FROM folder_hash_records WHERE folder_path = ?',
            (folder_path,),
        )
        row = cursor.fetchone()
        return _record_from_row(row) if row else None

    @staticmethod
    def _write_record(cursor: sqlite3.Cursor, record: FolderHashRecord, revision: int):
        cursor.execute(f'''
            INSERT OR REPLACE INTO folder_hash_records ({_RECORD_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (record.folder_path, record.current_hash, record.previous_hash,
              record.last_scanned_at, record.last_built_at, record.thumbnail_count, revision))

    def get_record(self, folder_path: str) -> Optional[FolderHashRecord]:
        with self._transaction(f"get_record({folder_path!r})") as cursor:
            return self._select_record(cursor, folder_path)

    def upsert_record(self, record: FolderHashRecord) -> FolderHashRecord:
        """Full replace of the record; last writer wins."""
        with self._transaction(f"upsert_record({record.folder_path!r})") as cursor:
            existing = self._select_record(cursor, record.folder_path)
            revision = (existing.revision if existing else 0) + 1
            self._write_record(cursor, record, revision)
            record.revision = revision
            return record

    def update_record(self, folder_path: str, updater: RecordUpdater,
                      change_for: Optional[ChangeBuilder] = None,
                      ) -> Tuple[Optional[FolderHashRecord], Optional[FolderHashRecord]]:
        """Atomic read-modify-write of one record.

        ``updater`` receives the stored record (or None) and returns the full
        replacement, or None to leave the row untouched. Returns
        ``(before, after)``.

        ``change_for(before, after)`` may return a ChangeRecord; it is
        appended in the same transaction as the record write.
        """
        with self._transaction(f"update_record({folder_path!r})") as cursor:
            existing = self._select_record(cursor, folder_path)
            replacement = updater(existing)
            if replacement is None:
                return existing, existing
            if replacement.folder_path != folder_path:
                raise ValueError(
                    f"updater changed the record key from {folder_path!r} to {replacement.folder_path!r}"
                )
            revision = (existing.revision if existing else 0) + 1
            self._write_record(cursor, replacement, revision)
            replacement.revision = revision
            if change_for is not None:
                change = change_for(existing, replacement)
                if change is not None:
                    self._insert_change(cursor, change)
            return existing, replacement

    def delete_record(self, folder_path: str) -> bool:
        with self._transaction(f"delete_record({folder_path!r})") as cursor:
            cursor.execute('DELETE FROM folder_hash_records WHERE folder_path = ?', (folder_path,))
            return cursor.rowcount > 0

    def get_all_records(self) -> List[FolderHashRecord]:
        with self._transaction("get_all_records") as cursor:
            cursor.execute(f'SELECT {_RECORD_COLUMNS} FROM folder_hash_records ORDER BY folder_path')
            return [_record_from_row(row) for row in cursor.fetchall()]

    def get_all_folder_paths(self) -> List[str]:
        with self._transaction("get_all_folder_paths") as cursor:
            cursor.execute('SELECT folder_path FROM folder_hash_records ORDER BY folder_path')
            return [row[0] for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # History and change records (append-only)
    # ------------------------------------------------------------------

    def append_history(self, entry: HistoryEntry) -> None:
        with self._transaction("append_history") as cursor:
            cursor.execute('''
                INSERT INTO cache_history (id, folder_path, timestamp, event_type, detail)
                VALUES (?, ?, ?, ?, ?)
            ''', (entry.id, entry.folder_path, entry.timestamp, entry.event_type.value, entry.detail))
            self._trim(cursor, "cache_history", self.max_history_entries)

    def append_change(self, change: ChangeRecord) -> None:
        with self._transaction("append_change") as cursor:
            self._insert_change(cursor, change)

    def _insert_change(self, cursor: sqlite3.Cursor, change: ChangeRecord):
        cursor.execute('''
            INSERT INTO change_records (id, folder_path, timestamp, from_hash, to_hash)
            VALUES (?, ?, ?, ?, ?)
        ''', (change.id, change.folder_path, change.timestamp, change.from_hash, change.to_hash))
        self._trim(cursor, "change_records", self.max_change_records)

    @staticmethod
    def _trim(cursor: sqlite3.Cursor, table: str, keep: int):
        # Oldest rows go first; rowid breaks timestamp ties by insertion order.
        cursor.execute(f'''
            DELETE FROM {table} WHERE rowid NOT IN (
                SELECT rowid FROM {table} ORDER BY timestamp DESC, rowid DESC LIMIT ?
            )
        ''', (keep,))
        if cursor.rowcount > 0:
            logger.debug(f"CacheDatabase: trimmed {cursor.rowcount} rows from {table}")

    def get_history(self, limit: Optional[int] = None) -> List[HistoryEntry]:
        """History entries, newest first."""
        with self._transaction("get_history") as cursor:
            return self._select_history(cursor, limit)

    def get_changes(self, limit: Optional[int] = None) -> List[ChangeRecord]:
        """Change records, newest first."""
        with self._transaction("get_changes") as cursor:
            return self._select_changes(cursor, limit)

    @staticmethod
    def _select_history(cursor: sqlite3.Cursor, limit: Optional[int] = None) -> List[HistoryEntry]:
        cursor.execute('''
            SELECT id, folder_path, timestamp, event_type, detail FROM cache_history
            ORDER BY timestamp DESC, rowid DESC LIMIT ?
        ''', (limit if limit is not None else -1,))
        return [_history_from_row(row) for row in cursor.fetchall()]

    @staticmethod
    def _select_changes(cursor: sqlite3.Cursor, limit: Optional[int] = None) -> List[ChangeRecord]:
        cursor.execute('''
            SELECT id, folder_path, timestamp, from_hash, to_hash FROM change_records
            ORDER BY timestamp DESC, rowid DESC LIMIT ?
        ''', (limit if limit is not None else -1,))
        return [_change_from_row(row) for row in cursor.fetchall()]

    def delete_history_older_than(self, cutoff: float) -> int:
        with self._transaction("delete_history_older_than") as cursor:
            cursor.execute('DELETE FROM cache_history WHERE timestamp < ?', (cutoff,))
            return cursor.rowcount

    def delete_changes_older_than(self, cutoff: float) -> int:
        with self._transaction("delete_changes_older_than") as cursor:
            cursor.execute('DELETE FROM change_records WHERE timestamp < ?', (cutoff,))
            return cursor.rowcount

    def clear_history(self) -> None:
        """Empties both history and change records. Folder records are untouched."""
        with self._transaction("clear_history") as cursor:
            cursor.execute('DELETE FROM cache_history')
            cursor.execute('DELETE FROM change_records')

    # ------------------------------------------------------------------
    # Snapshot and scheduler bookkeeping
    # ------------------------------------------------------------------

    def list_all(self) -> CacheSnapshot:
        """Records, history and changes read under a single lock acquisition."""
        with self._transaction("list_all") as cursor:
            cursor.execute(f'SELECT {_RECORD_COLUMNS} FROM folder_hash_records ORDER BY folder_path')
            records = [_record_from_row(row) for row in cursor.fetchall()]
            return CacheSnapshot(
                records=records,
                history=self._select_history(cursor),
                changes=self._select_changes(cursor),
            )

    def get_state(self, key: str, default: Any = None) -> Any:
        with self._transaction(f"get_state({key!r})") as cursor:
            cursor.execute('SELECT value FROM cache_state WHERE key = ?', (key,))
            row = cursor.fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning(f"CacheDatabase: corrupt state value for {key!r}; using default")
            return default

    def set_state(self, key: str, value: Any) -> None:
        with self._transaction(f"set_state({key!r})") as cursor:
            cursor.execute(
                'INSERT OR REPLACE INTO cache_state (key, value) VALUES (?, ?)',
                (key, json.dumps(value)),
            )

    def close(self):
        """Closes the database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.info(f"Cache database connection closed: {self.db_path}")


# Global database instance
_cache_database: Optional[CacheDatabase] = None
_cache_database_lock = Lock()


def get_cache_database(db_path: str, **kwargs) -> CacheDatabase:
    """Gets (or lazily creates) the global cache database instance."""
    global _cache_database
    if _cache_database is None:
        with _cache_database_lock:
            if _cache_database is None:
                _cache_database = CacheDatabase(db_path, **kwargs)
    return _cache_database
