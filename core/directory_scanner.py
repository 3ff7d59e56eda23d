import os
import logging
import fnmatch
from typing import Iterable, List, Optional, Set, Tuple

from core.errors import FolderUnreadableError, ValidationError
from core.models import ImageInfo

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.gif', '.webp'}


def normalize_folder_path(folder_path: str) -> str:
    """Gallery-relative key: POSIX separators, no leading/trailing slash, "" for the root."""
    if folder_path is None:
        raise ValidationError("folder_path is required")
    if not isinstance(folder_path, str):
        raise ValidationError(f"folder_path must be a string, got {type(folder_path).__name__}")
    parts = [p for p in folder_path.replace("\\", "/").split("/") if p and p != "."]
    if ".." in parts:
        raise ValidationError(f"folder_path may not contain '..': {folder_path}", folder_path)
    return "/".join(parts)


class DirectoryScanner:
    """Lists images and folders under the gallery root.

    Folder paths handed in and out are gallery-relative keys (see
    ``normalize_folder_path``); only ``resolve`` deals in absolute paths.
    """

    def __init__(self, gallery_root: str, supported_extensions: Optional[Iterable[str]] = None,
                 ignore_patterns: Optional[List[str]] = None):
        self.gallery_root = os.path.abspath(os.path.expanduser(gallery_root))
        self.ignore_patterns = ignore_patterns if ignore_patterns is not None else ["._*"]
        self._supported_extensions: Set[str] = {
            e.lower() for e in (supported_extensions or DEFAULT_IMAGE_EXTENSIONS)
        }

    @property
    def supported_extensions(self) -> Set[str]:
        return set(self._supported_extensions)

    def resolve(self, folder_path: str) -> str:
        key = normalize_folder_path(folder_path)
        return os.path.join(self.gallery_root, *key.split("/")) if key else self.gallery_root

    def relative_key(self, absolute_path: str) -> str:
        rel = os.path.relpath(absolute_path, self.gallery_root)
        return "" if rel == "." else normalize_folder_path(rel)

    def is_ignored(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.ignore_patterns)

    def is_supported_file(self, file_name: str) -> bool:
        """Check if file is a supported image based on its name and extension."""
        name = os.path.basename(file_name)
        if self.is_ignored(name):
            return False
        _, ext = os.path.splitext(name)
        return ext.lower() in self._supported_extensions

    def folder_exists(self, folder_path: str) -> bool:
        return os.path.isdir(self.resolve(folder_path))

    def list_images(self, folder_path: str) -> List[ImageInfo]:
        """Non-recursive listing of supported images in one folder.

        Raises FolderUnreadableError when the folder is missing or cannot be
        listed; an empty list means the folder exists and holds no images.
        """
        directory = self.resolve(folder_path)
        images: List[ImageInfo] = []
        try:
            with os.scandir(directory) as it:
                for entry in it:
                    if not self.is_supported_file(entry.name):
                        continue
                    try:
                        if not entry.is_file():
                            continue
                        st = entry.stat()
                    except OSError as e:
                        # why: a file vanishing mid-listing is not a folder-level failure
                        logger.debug(f"Skipping unreadable entry {entry.path}: {e}")
                        continue
                    images.append(ImageInfo(name=entry.name, size=st.st_size, last_modified=st.st_mtime_ns))
        except OSError as e:
            raise FolderUnreadableError(
                f"Cannot list folder '{folder_path or '/'}': {e.strerror or e}", folder_path
            ) from e
        images.sort(key=lambda info: info.name)
        return images

    def list_folders(self) -> List[str]:
        """Every readable folder under the gallery root, root included as ``""``."""
        return self.walk_folders()[0]

    def walk_folders(self) -> Tuple[List[str], List[str]]:
        """``(folders, unreadable)`` under the gallery root.

        ``unreadable`` holds the folders that exist but could not be listed.
        Their contents, subfolders included, are unknown and appear in
        neither list.
        """
        if not os.path.isdir(self.gallery_root):
            logger.warning(f"Gallery root does not exist: {self.gallery_root}")
            return [], []

        unreadable: List[str] = []

        def _on_error(err: OSError):
            logger.warning(f"Error walking gallery folder {err.filename}: {err}")
            if err.filename is None:
                return
            try:
                key = self.relative_key(os.fsdecode(err.filename))
            except ValidationError:
                return
            unreadable.append(key)

        folders = []
        for root, dirs, _ in os.walk(self.gallery_root, onerror=_on_error):
            dirs[:] = [d for d in dirs if not self.is_ignored(d)]
            folders.append(self.relative_key(root))
        return sorted(folders), sorted(set(unreadable))
