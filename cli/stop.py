"""Send a graceful shutdown signal to the thumbcache daemon."""

import errno
import fcntl
import logging
import os
import signal
import time

from config.config_manager import ConfigManager
from network.socket_client import CacheSocketClient


def pid_file_path(config_manager: ConfigManager | None = None) -> str:
    if config_manager is None:
        config_manager = ConfigManager()
    return os.path.join(config_manager.cache_dir, "daemon.pid")


def flock_is_held(pid_path: str) -> bool:
    """True while a live daemon holds the pid-file lock."""
    try:
        with open(pid_path, "r") as fd:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
    except FileNotFoundError:
        return False
    except OSError as e:
        if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN):
            return True
        raise


def signal_pid_file(pid_path: str, sig: int = signal.SIGTERM) -> bool:
    try:
        with open(pid_path) as f:
            pid = int(f.read().strip())
    except (OSError, ValueError):
        return False
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        logging.error("No permission to signal daemon PID %d", pid)
        return False


def wait_for_exit(pid_path: str, timeout: float) -> bool:
    deadline = time.time() + timeout
    while flock_is_held(pid_path):
        if time.time() > deadline:
            return False
        time.sleep(0.2)
    return True


def _remove_stale_socket(socket_path: str):
    if os.path.exists(socket_path):
        try:
            os.remove(socket_path)
        except OSError as e:
            logging.warning(f"Could not remove stale socket file: {e}")


def stop_daemon(timeout: float = 5.0) -> bool:
    """Stop the running daemon: shutdown request, then SIGTERM, then SIGKILL.
    Returns True once no process holds the pid-file lock."""
    config_manager = ConfigManager()
    socket_path = os.path.expanduser(config_manager.get("system.socket_path", ""))
    pid_path = pid_file_path(config_manager)

    if not flock_is_held(pid_path):
        logging.info("Daemon is not running.")
        _remove_stale_socket(socket_path)
        return True

    if socket_path and os.path.exists(socket_path):
        logging.info(f"Sending shutdown request to daemon at {socket_path}...")
        client = CacheSocketClient(socket_path, timeout=2.0)
        try:
            if not client.shutdown_daemon():
                logging.warning("Shutdown request was not acknowledged.")
        finally:
            client.close()
        if wait_for_exit(pid_path, timeout):
            logging.info("Daemon exited cleanly.")
            _remove_stale_socket(socket_path)
            return True

    for sig, grace in ((signal.SIGTERM, 5.0), (signal.SIGKILL, 1.0)):
        logging.warning(f"Daemon still running; sending {signal.Signals(sig).name} via PID file...")
        signal_pid_file(pid_path, sig)
        if wait_for_exit(pid_path, grace):
            logging.info("Daemon stopped.")
            _remove_stale_socket(socket_path)
            return True

    logging.error("Failed to stop daemon even with SIGKILL.")
    return False


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')
    if not stop_daemon():
        raise SystemExit(1)


if __name__ == "__main__":
    main()
