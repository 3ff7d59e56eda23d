import logging
import os
from typing import Optional

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from core.directory_scanner import DirectoryScanner


class FolderWatcher(FileSystemEventHandler):
    """
    Filesystem event handler that asks the scheduler to re-check the folder
    of every supported image that is created, modified, deleted or moved.
    """
    def __init__(self, directory_scanner: DirectoryScanner, scheduler, gallery_root: Optional[str] = None):
        super().__init__()
        self.directory_scanner = directory_scanner
        self.scheduler = scheduler
        self.gallery_root = os.path.abspath(gallery_root or directory_scanner.gallery_root)
        self.observer = Observer()

    def start(self):
        """Schedule the observer on the gallery root."""
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=1.0)
            if self.observer.is_alive():
                logging.warning("Previous Watchdog observer thread did not stop gracefully.")
            self.observer = Observer()

        if not os.path.isdir(self.gallery_root):
            logging.warning(f"Gallery root does not exist, not watching: {self.gallery_root}")
            return False

        self.observer.schedule(self, path=self.gallery_root, recursive=True)
        self.observer.start()
        logging.info(f"Watching {self.gallery_root} for changes...")
        return True

    def stop(self):
        """Shut down the observer thread."""
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=1.0)
            if self.observer.is_alive():
                logging.warning("Watchdog observer thread did not stop gracefully.")
        logging.info("Watchdog observer stopped.")

    def _folder_key_for(self, file_path) -> Optional[str]:
        if isinstance(file_path, bytes):
            file_path = os.fsdecode(file_path)
        if not self.directory_scanner.is_supported_file(os.path.basename(file_path)):
            return None
        folder = os.path.dirname(os.path.abspath(file_path))
        if folder != self.gallery_root and not folder.startswith(self.gallery_root + os.sep):
            return None
        key = self.directory_scanner.relative_key(folder)
        if any(self.directory_scanner.is_ignored(part) for part in key.split("/") if part):
            return None
        return key

    def dispatch(self, event):
        """Route image events to a folder check on the scheduler."""
        if event.is_directory:
            return

        if event.event_type in ('created', 'modified', 'deleted'):
            paths = [event.src_path]
        elif event.event_type == 'moved':
            # both the folder it left and the folder it landed in changed
            paths = [event.src_path, event.dest_path]
        else:
            return

        for path in paths:
            folder_key = self._folder_key_for(path)
            if folder_key is None:
                continue
            logging.debug(f"Watchdog: {event.event_type} {path}, queueing check for '{folder_key or '/'}'")
            try:
                self.scheduler.request_folder_check(folder_key)
            except Exception as e:
                # why: watchdog callbacks run on observer thread; an error must not crash the observer
                logging.error(f"Watchdog: Error queueing check for '{path}': {e}", exc_info=True)
