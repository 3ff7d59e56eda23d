import os
import sys
import logging
import signal
import threading
import fcntl
import errno
from network.socket_server import CacheSocketServer
from core.cache_database import get_cache_database
from core.cache_status import CacheStatusService
from core.directory_scanner import DirectoryScanner
from core.history_retention import HistoryRetentionManager
from core.scheduler import CacheScheduler
from core.thumbnail_manager import ThumbnailManager
from filewatcher.watcher import FolderWatcher
from config.config_manager import ConfigManager


# Holds the exclusive lock fd; must not be GC'd for the process lifetime.
_instance_lock_fd = None


def _acquire_instance_lock(pid_file_path: str):
    parent = os.path.dirname(pid_file_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    fd = open(pid_file_path, "a+")
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN):
            fd.seek(0)
            existing_pid = fd.read().strip()
            pid_info = f" (PID {existing_pid})" if existing_pid else ""
            print(
                f"thumbcache daemon is already running{pid_info}. Exiting.",
                file=sys.stderr,
            )
            fd.close()
            sys.exit(1)
        raise
    fd.seek(0)
    fd.truncate()
    fd.write(str(os.getpid()))
    fd.flush()
    return fd


def setup_logging(log_level, log_dir):
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "daemon.log")
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        handlers=[
            logging.FileHandler(log_path, mode="a"),
            logging.StreamHandler(sys.stderr)
        ]
    )


def init_scheduler(scheduler: CacheScheduler) -> bool:
    """Starts periodic scanning. Safe to call more than once."""
    return scheduler.start()


def main():
    config_manager = ConfigManager()
    logging_level = config_manager.logging_level
    CACHE_DIR = config_manager.cache_dir
    setup_logging(logging_level, CACHE_DIR)
    logging.info(f"Logging level set to: {logging_level.upper()}")

    SOCKET_PATH = os.path.expanduser(config_manager.get("system.socket_path"))
    GALLERY_ROOT = config_manager.gallery_root

    pid_file_path = os.path.join(CACHE_DIR, "daemon.pid")
    global _instance_lock_fd
    _instance_lock_fd = _acquire_instance_lock(pid_file_path)
    logging.info(f"Instance lock acquired: {pid_file_path}")

    if os.path.isdir(GALLERY_ROOT):
        logging.info(f"Gallery root: {GALLERY_ROOT}")
    else:
        logging.warning(f"Gallery root does not exist: {GALLERY_ROOT}")

    # why: crash leaves socket file bound; bind() raises EADDRINUSE without removal
    if os.path.exists(SOCKET_PATH):
        logging.warning(f"Removing existing socket file: {SOCKET_PATH}")
        os.remove(SOCKET_PATH)

    logging.info("Starting thumbcache daemon...")

    settings = config_manager.settings
    cache_db_path = os.path.join(CACHE_DIR, "thumbcache.db")
    logging.debug(f"Initializing CacheDatabase with path: {cache_db_path}")
    cache_db = get_cache_database(
        cache_db_path,
        max_history_entries=settings.history.max_entries,
        max_change_records=settings.history.max_changes,
    )

    directory_scanner = DirectoryScanner(GALLERY_ROOT, ignore_patterns=config_manager.get("ignore_patterns", ["._*"]))
    status_service = CacheStatusService(
        cache_db, directory_scanner,
        max_batch_folders=settings.batch.max_folders,
        batch_workers=settings.batch.workers,
    )
    thumbnail_manager = ThumbnailManager(config_manager, cache_db, directory_scanner)
    retention_manager = HistoryRetentionManager(cache_db, settings.history.retention_hours)
    scheduler = CacheScheduler(
        config_manager, cache_db, status_service, thumbnail_manager, retention_manager, directory_scanner,
    )
    watcher = None
    if config_manager.get("watcher.enabled", True):
        watcher = FolderWatcher(directory_scanner, scheduler, GALLERY_ROOT)

    stopped = threading.Event()
    shutdown_requested = threading.Event()
    server = None

    def shutdown_service(signum=None, frame=None):
        if stopped.is_set():
            return
        stopped.set()
        logging.info("Shutting down thumbcache daemon...")
        # Orderly shutdown: stop accepting new work, then stop background threads.
        if server:
            logging.info("Shutting down socket server...")
            server.shutdown()
        if watcher:
            logging.info("Stopping file watcher...")
            watcher.stop()
        logging.info("Stopping scheduler...")
        scheduler.stop()
        cache_db.close()

        logging.info("Daemon shutdown complete.")
        global _instance_lock_fd
        if _instance_lock_fd is not None:
            try:
                _instance_lock_fd.close()
            except OSError:
                logging.warning("Failed to release instance lock fd on shutdown.")
            _instance_lock_fd = None

    try:
        # 1. Bind the socket first so clients can connect while plugins load.
        server = CacheSocketServer(
            SOCKET_PATH, cache_db, status_service, thumbnail_manager, retention_manager,
            scheduler=scheduler, on_shutdown=shutdown_requested.set, config_manager=config_manager,
        )
        logging.info("Socket bound. Loading plugins...")

        # 2. Load format plugins.
        thumbnail_manager.load_plugins()
        logging.info("Plugins loaded.")

        # 3. Start the accept loop.
        server_thread = threading.Thread(target=server.run_forever, name="socket-server", daemon=True)
        server_thread.start()
        logging.info("Socket server thread started.")

        # 4. Periodic scans and live filesystem events.
        init_scheduler(scheduler)
        if watcher:
            logging.info("Starting file watcher...")
            watcher.start()

        signal.signal(signal.SIGINT, shutdown_service)
        signal.signal(signal.SIGTERM, shutdown_service)

        # Keep the main thread alive until a signal or a shutdown request
        while not shutdown_requested.wait(1.0) and not stopped.is_set():
            pass
        shutdown_service()

    except Exception as e:  # why: startup failure must be logged before process dies; no narrower type covers all init failures
        logging.error(f"Daemon failed to start: {e}", exc_info=True)
        shutdown_service()
        sys.exit(1)


if __name__ == "__main__":
    main()
