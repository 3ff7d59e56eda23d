import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from core.cache_database import CacheDatabase
from core.cache_status import CacheStatusService
from core.directory_scanner import DirectoryScanner, normalize_folder_path
from core.errors import FolderUnreadableError, error_payload
from core.history_retention import HistoryRetentionManager
from core.models import HistoryEntry, HistoryEventType, ScanResult, SchedulerState
from core.thumbnail_manager import ThumbnailManager

logger = logging.getLogger(__name__)

LAST_SCAN_STATE_KEY = "scheduler_last_run"

# (stale, rebuilt, failed)
FolderOutcome = Tuple[bool, bool, bool]


def _is_within(folder_path: str, parents: List[str]) -> bool:
    for parent in parents:
        if parent == "" or folder_path == parent or folder_path.startswith(parent + "/"):
            return True
    return False


class CacheScheduler:
    """
    Periodically re-checks every gallery folder and rebuilds the stale ones.

    Scans run more often during work hours than outside them, and off-hours
    scanning can be disabled entirely. Out-of-schedule checks of a single
    folder are queued with ``request_folder_check`` (used by the filesystem
    watcher) and drained on the scheduler thread.

    Once started, the scheduler stays RUNNING for the life of the process;
    ``stop()`` is for tests and daemon shutdown.
    """

    def __init__(self, config_manager, cache_db: CacheDatabase, status_service: CacheStatusService,
                 thumbnail_manager: ThumbnailManager, retention_manager: HistoryRetentionManager,
                 directory_scanner: DirectoryScanner, clock=time.time):
        self.config_manager = config_manager
        self.cache_db = cache_db
        self.status_service = status_service
        self.thumbnail_manager = thumbnail_manager
        self.retention_manager = retention_manager
        self.directory_scanner = directory_scanner
        self._clock = clock

        self._state = SchedulerState.STOPPED
        self._state_lock = threading.Lock()
        self._scan_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_run: Optional[float] = None

        # insertion-ordered set of folders awaiting an out-of-schedule check
        self._pending: Dict[str, None] = {}
        self._pending_lock = threading.Lock()

    @property
    def settings(self):
        return self.config_manager.settings.scheduler

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    @property
    def scan_in_progress(self) -> bool:
        return self._scan_lock.locked()

    def start(self) -> bool:
        """Starts the tick thread. Returns False if it was already running."""
        with self._state_lock:
            if self._state == SchedulerState.RUNNING:
                logger.debug("CacheScheduler: start() called while running; ignoring")
                return False
            last = self.cache_db.get_state(LAST_SCAN_STATE_KEY) or {}
            self._last_run = last.get("timestamp")
            self._stop_event.clear()
            self._wake_event.clear()
            self._thread = threading.Thread(target=self._run_loop, name="cache-scheduler", daemon=True)
            self._state = SchedulerState.RUNNING
            self._thread.start()
        logger.info(f"CacheScheduler: started (tick every {self.settings.tick_seconds}s)")
        return True

    def stop(self, timeout: float = 5.0):
        with self._state_lock:
            if self._state == SchedulerState.STOPPED:
                return
            self._state = SchedulerState.STOPPED
            self._stop_event.set()
            self._wake_event.set()
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("CacheScheduler: tick thread did not stop in time")
        logger.info("CacheScheduler: stopped")

    def wake(self):
        """Runs the next tick now, e.g. after the schedule was reconfigured."""
        self._wake_event.set()

    def _run_loop(self):
        while not self._stop_event.is_set():
            self._wake_event.wait(self.settings.tick_seconds)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            self.tick()

    def tick(self):
        """One scheduler iteration. Never raises."""
        try:
            self.process_pending_checks()
            if self.is_due():
                self.run_scan("scheduled")
        except Exception as e:  # why: a failing tick must not kill the scheduler thread
            logger.error(f"CacheScheduler: tick failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    def _in_work_hours(self, hour: int) -> bool:
        work = self.settings.work_hours
        if work.start <= work.end:
            return work.start <= hour < work.end
        return hour >= work.start or hour < work.end

    def current_interval_minutes(self, now: Optional[datetime] = None) -> Optional[int]:
        """Scan interval in effect at ``now``, or None when no scan should run."""
        now = now or datetime.fromtimestamp(self._clock())
        if self._in_work_hours(now.hour):
            return self.settings.work_hours.interval_minutes
        off_hours = self.settings.off_hours
        if off_hours.enabled and off_hours.interval_minutes:
            return off_hours.interval_minutes
        return None

    def is_due(self) -> bool:
        if not self.settings.enabled:
            return False
        now = self._clock()
        interval = self.current_interval_minutes(datetime.fromtimestamp(now))
        if interval is None:
            return False
        if self._last_run is None:
            return True
        return now - self._last_run >= interval * 60

    def next_run(self) -> Optional[float]:
        """Epoch time of the next scheduled scan, or None when none is scheduled."""
        if not self.is_running or not self.settings.enabled:
            return None
        now = self._clock()
        now_dt = datetime.fromtimestamp(now)
        interval = self.current_interval_minutes(now_dt)
        if interval is None:
            start = now_dt.replace(hour=self.settings.work_hours.start, minute=0, second=0, microsecond=0)
            if start <= now_dt:
                start += timedelta(days=1)
            return start.timestamp()
        if self._last_run is None:
            return now
        return max(now, self._last_run + interval * 60)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def force_scan(self) -> ScanResult:
        """Runs a full scan now, regardless of the schedule."""
        return self.run_scan("manual")

    def run_scan(self, trigger: str = "scheduled") -> ScanResult:
        if not self._scan_lock.acquire(blocking=False):
            logger.info(f"CacheScheduler: {trigger} scan skipped, scan already in progress")
            return ScanResult(success=False, error="scan already in progress")

        started_at = self._clock()
        started = time.monotonic()
        try:
            return self._run_scan_locked(trigger, started_at, started)
        except Exception as e:  # why: scan failures are reported in the result and logged, never raised to the tick loop
            logger.error(f"CacheScheduler: {trigger} scan failed: {e}", exc_info=True)
            return ScanResult(success=False, duration=time.monotonic() - started, error=str(e))
        finally:
            self._last_run = started_at
            self._scan_lock.release()

    def _run_scan_locked(self, trigger: str, started_at: float, started: float) -> ScanResult:
        self._history(HistoryEventType.SCAN, "", f"Scan started ({trigger})")

        if not self.directory_scanner.folder_exists(""):
            raise FileNotFoundError(f"Gallery root unavailable: {self.directory_scanner.gallery_root}")

        disk_folders, unreadable = self.directory_scanner.walk_folders()
        on_disk = set(disk_folders)
        orphans = [
            f for f in self.cache_db.get_all_folder_paths()
            if f not in on_disk and not _is_within(f, unreadable) and not self.directory_scanner.folder_exists(f)
        ]
        for folder in unreadable:
            self._record_unreadable(folder)

        outcomes: List[FolderOutcome] = []
        if disk_folders:
            workers = max(1, min(self.settings.scan_workers, len(disk_folders)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cache-scan") as pool:
                outcomes = list(pool.map(self.check_folder, disk_folders))

        pruned = sum(1 for folder in orphans if self._prune_folder(folder))

        result = ScanResult(
            success=True,
            folders_checked=len(disk_folders),
            changes=sum(1 for stale, _, _ in outcomes if stale),
            rebuilt=sum(1 for _, rebuilt, _ in outcomes if rebuilt),
            errors=sum(1 for _, _, failed in outcomes if failed) + len(unreadable),
            pruned=pruned,
            duration=time.monotonic() - started,
        )
        self.cache_db.set_state(LAST_SCAN_STATE_KEY, {
            "timestamp": started_at,
            "trigger": trigger,
            "duration": result.duration,
            "changes": result.changes,
            "rebuilt": result.rebuilt,
            "errors": result.errors,
        })
        self._history(
            HistoryEventType.SCAN, "",
            f"Scan completed: {result.folders_checked} folders, {result.changes} changed, "
            f"{result.rebuilt} rebuilt, {result.errors} errors, {result.pruned} pruned",
        )
        logger.info(
            f"CacheScheduler: {trigger} scan checked {result.folders_checked} folders in "
            f"{result.duration:.2f}s ({result.changes} changed, {result.rebuilt} rebuilt, "
            f"{result.errors} errors, {result.pruned} pruned)"
        )

        if self.config_manager.settings.history.auto_cleanup_enabled:
            self.retention_manager.cleanup_history()
        return result

    def check_folder(self, folder_path: str) -> FolderOutcome:
        """Status check, then rebuild when stale. Failures become ``error`` history."""
        stale = False
        try:
            status = self.status_service.get_folder_cache_status(folder_path)
            stale = not status.is_current
            if not stale:
                return False, False, False
            self.thumbnail_manager.rebuild_folder_thumbnails(folder_path)
            return True, True, False
        except Exception as e:  # why: one folder's failure must not abort the scan
            payload = error_payload(e)
            logger.warning(f"CacheScheduler: folder '{folder_path or '/'}' failed: {payload['message']}")
            try:
                self._history(HistoryEventType.ERROR, folder_path, f"{payload['kind']}: {payload['message']}")
            except Exception as history_error:  # why: the store itself may be what failed
                logger.error(f"CacheScheduler: could not record error for '{folder_path}': {history_error}")
            return stale, False, True

    def _record_unreadable(self, folder_path: str):
        """A folder the walk could not list is unknown state: logged, never pruned."""
        logger.warning(f"CacheScheduler: folder '{folder_path or '/'}' could not be listed; skipped")
        self._history(
            HistoryEventType.ERROR, folder_path,
            f"{FolderUnreadableError.kind}: Cannot list folder '{folder_path or '/'}'; skipped this scan",
        )

    def _prune_folder(self, folder_path: str) -> bool:
        """Drops the record and thumbnails of a folder that no longer exists."""
        if not self.cache_db.delete_record(folder_path):
            return False
        self.thumbnail_manager.remove_folder_thumbnails(folder_path)
        self._history(HistoryEventType.SCAN, folder_path, "Folder no longer exists; record and thumbnails removed")
        logger.info(f"CacheScheduler: pruned deleted folder '{folder_path}'")
        return True

    def _history(self, event_type: HistoryEventType, folder_path: str, detail: str):
        self.cache_db.append_history(HistoryEntry(
            folder_path=folder_path, event_type=event_type, detail=detail, timestamp=self._clock(),
        ))

    # ------------------------------------------------------------------
    # Out-of-schedule checks
    # ------------------------------------------------------------------

    def request_folder_check(self, folder_path: str) -> bool:
        """Queues a check of one folder. Returns False if it is already queued."""
        key = normalize_folder_path(folder_path)
        with self._pending_lock:
            if key in self._pending:
                return False
            self._pending[key] = None
        self._wake_event.set()
        logger.debug(f"CacheScheduler: queued check for '{key or '/'}'")
        return True

    def pending_checks(self) -> List[str]:
        with self._pending_lock:
            return list(self._pending)

    def process_pending_checks(self) -> int:
        """Drains the queue of requested folder checks. Returns how many ran."""
        with self._pending_lock:
            folders = list(self._pending)
            self._pending.clear()
        for folder in folders:
            if self.directory_scanner.folder_exists(folder):
                self.check_folder(folder)
            else:
                self._prune_folder(folder)
        return len(folders)

    def status(self) -> Dict[str, Any]:
        last = self.cache_db.get_state(LAST_SCAN_STATE_KEY)
        return {
            "state": self._state.name,
            "enabled": self.settings.enabled,
            "scan_in_progress": self.scan_in_progress,
            "current_interval_minutes": self.current_interval_minutes(),
            "next_run": self.next_run(),
            "last_run": last,
            "pending_checks": len(self.pending_checks()),
        }
