import time
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Union

from core.cache_database import CacheDatabase
from core.directory_scanner import DirectoryScanner, normalize_folder_path
from core.errors import error_payload
from core.folder_hash import compute_folder_hash
from core.models import ChangeRecord, FolderHashRecord, FolderStatus

logger = logging.getLogger(__name__)

MAX_BATCH_FOLDERS = 100

BatchResult = Dict[str, Union[FolderStatus, Dict[str, Any]]]


def compute_record_stats(records: Iterable[FolderHashRecord]) -> Dict[str, int]:
    """``matching``/``changed`` only count built folders; never-built ones are ``new_folders``."""
    total = matching = changed = new_folders = 0
    for record in records:
        total += 1
        if record.previous_hash is None:
            new_folders += 1
        elif record.previous_hash == record.current_hash:
            matching += 1
        else:
            changed += 1
    return {"total": total, "matching": matching, "changed": changed, "new_folders": new_folders}


class CacheStatusService:
    """Answers "is this folder's thumbnail cache current?".

    A status check is not read-only: it recomputes the folder fingerprint and
    writes it to the stored record as ``current_hash``, creating the record
    on first sight and appending a ChangeRecord when the fingerprint moved.
    ``previous_hash`` is never touched here; only a rebuild advances it.
    """

    def __init__(self, cache_db: CacheDatabase, directory_scanner: DirectoryScanner,
                 max_batch_folders: int = MAX_BATCH_FOLDERS, batch_workers: int = 8,
                 clock=time.time):
        self.cache_db = cache_db
        self.directory_scanner = directory_scanner
        self.max_batch_folders = max_batch_folders
        self.batch_workers = batch_workers
        self._clock = clock

    def get_folder_cache_status(self, folder_path: str) -> FolderStatus:
        key = normalize_folder_path(folder_path)
        fresh_hash = compute_folder_hash(key, self.directory_scanner)
        now = self._clock()

        def _apply_scan(existing: Optional[FolderHashRecord]) -> FolderHashRecord:
            if existing is None:
                return FolderHashRecord(folder_path=key, current_hash=fresh_hash, last_scanned_at=now)
            return FolderHashRecord(
                folder_path=key,
                current_hash=fresh_hash,
                previous_hash=existing.previous_hash,
                last_scanned_at=now,
                last_built_at=existing.last_built_at,
                thumbnail_count=existing.thumbnail_count,
            )

        changes: List[ChangeRecord] = []

        def _change(before: Optional[FolderHashRecord], after: FolderHashRecord) -> Optional[ChangeRecord]:
            # a repeated check of a still-stale folder, or a return to the built state, is not a change
            if before is None or before.current_hash == fresh_hash or fresh_hash == before.previous_hash:
                return None
            from_hash = before.previous_hash if before.previous_hash is not None else before.current_hash
            changes.append(ChangeRecord(folder_path=key, from_hash=from_hash, to_hash=fresh_hash, timestamp=now))
            return changes[-1]

        # the change row is written in the same transaction as the record
        before, after = self.cache_db.update_record(key, _apply_scan, change_for=_change)

        if before is None:
            logger.info(f"CacheStatusService: new folder '{key or '/'}' ({fresh_hash[:8]})")
        for change in changes:
            logger.info(f"CacheStatusService: folder '{key or '/'}' changed "
                        f"{change.from_hash[:8]} -> {change.to_hash[:8]}")

        return FolderStatus.from_record(after)

    def _status_or_error(self, folder_path: str) -> Union[FolderStatus, Dict[str, Any]]:
        try:
            return self.get_folder_cache_status(folder_path)
        except Exception as e:  # why: one folder's failure is reported inline and must not abort the batch
            logger.warning(f"CacheStatusService: status check failed for '{folder_path}': {e}")
            return {"folder_path": folder_path, "error": error_payload(e)}

    def get_folder_cache_status_batch(self, folder_paths: List[Any]) -> BatchResult:
        """Independent status checks for at most ``max_batch_folders`` folders.

        Non-string entries are dropped and the list is silently truncated to
        the cap. Each failure is reported inline as ``{"folder_path", "error"}``.
        """
        folders = [f for f in (folder_paths or []) if isinstance(f, str)][:self.max_batch_folders]
        if not folders:
            return {}
        # dict.fromkeys keeps order and collapses duplicates into one check
        unique = list(dict.fromkeys(folders))
        workers = max(1, min(self.batch_workers, len(unique)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="status-batch") as pool:
            results = list(pool.map(self._status_or_error, unique))
        return dict(zip(unique, results))

    def get_all_records(self) -> Dict[str, Any]:
        records = self.cache_db.get_all_records()
        return {"records": records, "stats": compute_record_stats(records)}
