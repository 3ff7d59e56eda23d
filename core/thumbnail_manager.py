import os
import shutil
import time
import logging
from typing import Any, Dict, Optional

from core.cache_database import CacheDatabase
from core.directory_scanner import DirectoryScanner, normalize_folder_path
from core.errors import FolderUnreadableError, RebuildError, ValidationError
from core.folder_hash import hash_image_entries
from core.models import FolderHashRecord, HistoryEntry, HistoryEventType, RebuildResult
from plugins.base_plugin import PluginRegistry, ThumbnailSize, plugin_registry

logger = logging.getLogger(__name__)

LAST_REBUILT_FOLDER_KEY = "last_rebuilt_folder"


class ThumbnailManager:
    """Regenerates the thumbnails of one folder and marks it current."""

    def __init__(self, config_manager, cache_db: CacheDatabase, directory_scanner: DirectoryScanner,
                 registry: Optional[PluginRegistry] = None, clock=time.time):
        self.config_manager = config_manager
        self.cache_db = cache_db
        self.directory_scanner = directory_scanner
        self.plugin_registry = registry if registry is not None else plugin_registry
        self._clock = clock

        thumbnail_settings = config_manager.settings.thumbnails
        self.output_format = thumbnail_settings.format
        self.sizes = [ThumbnailSize(s.name, s.width, s.height, s.quality) for s in thumbnail_settings.sizes]

        self.cache_dir = os.path.expanduser(config_manager.get("cache_dir"))
        self.thumbnail_cache_dir = os.path.join(self.cache_dir, "thumbnails")
        os.makedirs(self.thumbnail_cache_dir, exist_ok=True)

        self._plugins_dir = os.path.join(os.path.dirname(__file__), '..', 'plugins')

    def load_plugins(self) -> None:
        """Load and register all format plugins. Called after the socket is bound."""
        self.plugin_registry.load_plugins_from_directory(
            self._plugins_dir, self.cache_dir, self.sizes, self.output_format,
        )
        formats = self.plugin_registry.get_supported_formats()
        logger.info(f"ThumbnailManager supports {len(formats)} formats: {sorted(formats)}")

    def folder_thumbnail_dir(self, folder_path: str) -> str:
        parts = [p for p in folder_path.split("/") if p]
        return os.path.join(self.thumbnail_cache_dir, *parts)

    def rebuild_folder_thumbnails(self, folder_path: str) -> RebuildResult:
        """
        Generates every configured size for every image in the folder, then
        advances the record so that previous_hash == current_hash == the
        fingerprint of the listing that was rendered.

        Individual images that fail are recorded as ``error`` history and do
        not abort the rebuild. An unlistable folder raises RebuildError and
        leaves the record untouched.
        """
        key = normalize_folder_path(folder_path)
        started = time.monotonic()
        label = key or '/'
        try:
            images = self.directory_scanner.list_images(key)
        except FolderUnreadableError as e:
            raise RebuildError(f"Cannot list folder '{label}': {e.message}", folder_path=key) from e

        fresh_hash = hash_image_entries(images)
        result = RebuildResult(folder_path=key, files_processed=len(images))
        logger.info(f"ThumbnailManager: rebuilding '{label}' ({len(images)} images)")

        for image in images:
            image_path = os.path.join(self.directory_scanner.resolve(key), image.name)
            error = self._render_image(image_path, key)
            if error is None:
                result.thumbnails_generated += 1
                continue
            result.failed += 1
            logger.warning(f"ThumbnailManager: {image.name} in '{label}' failed: {error}")
            self.cache_db.append_history(HistoryEntry(
                folder_path=key,
                event_type=HistoryEventType.ERROR,
                detail=f"Thumbnail generation failed for {image.name}: {error}",
                timestamp=self._clock(),
            ))

        now = self._clock()

        def _mark_built(existing: Optional[FolderHashRecord]) -> FolderHashRecord:
            return FolderHashRecord(
                folder_path=key,
                current_hash=fresh_hash,
                previous_hash=fresh_hash,
                last_scanned_at=now,
                last_built_at=now,
                thumbnail_count=result.thumbnails_generated,
            )

        self.cache_db.update_record(key, _mark_built)
        result.duration = time.monotonic() - started
        self.cache_db.append_history(HistoryEntry(
            folder_path=key,
            event_type=HistoryEventType.REBUILD,
            detail=(f"Rebuilt {result.thumbnails_generated}/{result.files_processed} images "
                    f"in {result.duration:.2f}s"),
            timestamp=now,
        ))
        self.cache_db.set_state(LAST_REBUILT_FOLDER_KEY, {
            "folder_path": key,
            "timestamp": now,
            "thumbnails_generated": result.thumbnails_generated,
        })
        logger.info(
            f"ThumbnailManager: rebuilt '{label}': {result.thumbnails_generated} generated, "
            f"{result.failed} failed, {result.duration:.2f}s"
        )
        return result

    def _render(self, image_path: str, folder_path: str) -> Dict[str, str]:
        """Writes every configured size of one image. Raises RebuildError if none was written."""
        ext = os.path.splitext(image_path)[1].lower()
        plugin = self.plugin_registry.get_plugin_for_format(ext)
        if plugin is None:
            raise RebuildError(f"no plugin for format {ext}", folder_path=folder_path)
        try:
            written = plugin.process_thumbnails(image_path, folder_path)
        except Exception as e:  # why: Pillow also raises plain Exception subclasses, e.g. DecompressionBombError
            raise RebuildError(f"{type(e).__name__}: {e}", folder_path=folder_path) from e
        if not written:
            raise RebuildError("no thumbnail size could be written", folder_path=folder_path)
        return written

    def _render_image(self, image_path: str, folder_path: str) -> Optional[str]:
        """Returns None when at least one size was written, else a failure reason."""
        try:
            self._render(image_path, folder_path)
        except RebuildError as e:
            return e.message
        return None

    def generate_single_thumbnail(self, image_path: str) -> Dict[str, Any]:
        """Regenerates the thumbnails of one gallery image.

        ``image_path`` is gallery-relative (``folder/name.jpg``). The folder's
        record is left alone; the next status check or scan sees the folder
        as it is on disk.
        """
        key = normalize_folder_path(image_path)
        folder_path, _, image_name = key.rpartition("/")
        if not image_name:
            raise ValidationError("image_path is required")
        if not self.directory_scanner.is_supported_file(image_name):
            raise ValidationError(f"Not an image file: {image_path}", folder_path)
        absolute = os.path.join(self.directory_scanner.resolve(folder_path), image_name)
        if not os.path.isfile(absolute):
            raise FolderUnreadableError(f"Image not found: {key}", folder_path)

        written = self._render(absolute, folder_path)
        logger.info(f"ThumbnailManager: regenerated {len(written)} sizes for '{key}'")
        return {"image_path": key, "folder_path": folder_path, "thumbnails": written}

    def thumbnail_path(self, folder_path: str, image_name: str, size_name: str) -> str:
        stem, _ = os.path.splitext(image_name)
        return os.path.join(self.folder_thumbnail_dir(folder_path), f"{stem}_{size_name}.{self.output_format}")

    def folder_thumbnail_summary(self, folder_path: str) -> Dict[str, Any]:
        """Which images of a folder have a thumbnail of the smallest configured size on disk.

        Reads the cache directory rather than the store, so thumbnails
        deleted behind the daemon's back show up as uncached.
        """
        key = normalize_folder_path(folder_path)
        size_name = self.sizes[0].name if self.sizes else "thumb"
        images = []
        for image in self.directory_scanner.list_images(key):
            path = self.thumbnail_path(key, image.name, size_name)
            cached = os.path.isfile(path)
            images.append({"name": image.name, "cached": cached, "thumbnail_path": path if cached else None})

        total = len(images)
        cached_count = sum(1 for image in images if image["cached"])
        return {
            "folder_path": key,
            "size": size_name,
            "images": images,
            "summary": {
                "total": total,
                "cached": cached_count,
                "uncached": total - cached_count,
                "percentage": int(cached_count * 100 / total + 0.5) if total else 0,
            },
        }

    def apply_settings(self) -> None:
        """Re-reads the thumbnail settings and pushes them to the registered plugins."""
        thumbnail_settings = self.config_manager.settings.thumbnails
        self.output_format = thumbnail_settings.format
        self.sizes = [ThumbnailSize(s.name, s.width, s.height, s.quality) for s in thumbnail_settings.sizes]
        for plugin in self.plugin_registry.plugins.values():
            plugin.sizes = list(self.sizes)
            plugin.output_format = self.output_format
        logger.info(f"ThumbnailManager: now writing {self.output_format} at "
                    f"{', '.join(s.name for s in self.sizes)}")

    def remove_folder_thumbnails(self, folder_path: str) -> bool:
        """Deletes the folder's own thumbnail files. Subfolders keep theirs."""
        target = self.folder_thumbnail_dir(normalize_folder_path(folder_path))
        if not os.path.isdir(target):
            return False
        removed_any = False
        with os.scandir(target) as entries:
            for entry in entries:
                if entry.is_file(follow_symlinks=False):
                    os.remove(entry.path)
                    removed_any = True
        try:
            os.rmdir(target)
        except OSError:
            pass  # still holds subfolder thumbnails
        return removed_any

    def clear_all_thumbnails(self) -> None:
        if os.path.isdir(self.thumbnail_cache_dir):
            shutil.rmtree(self.thumbnail_cache_dir)
        os.makedirs(self.thumbnail_cache_dir, exist_ok=True)

    def thumbnail_stats(self) -> Dict[str, Any]:
        """File count, total bytes and per-size counts of the thumbnail cache."""
        by_size: Dict[str, int] = {size.name: 0 for size in self.sizes}
        total_files = 0
        total_bytes = 0
        suffix = f".{self.output_format}"
        for dirpath, _dirnames, filenames in os.walk(self.thumbnail_cache_dir):
            for filename in filenames:
                if not filename.endswith(suffix):
                    continue
                try:
                    total_bytes += os.path.getsize(os.path.join(dirpath, filename))
                except OSError:
                    continue
                total_files += 1
                stem = filename[:-len(suffix)]
                size_name = stem.rsplit("_", 1)[-1]
                if size_name in by_size:
                    by_size[size_name] += 1
        return {"total_files": total_files, "total_bytes": total_bytes, "by_size": by_size}
