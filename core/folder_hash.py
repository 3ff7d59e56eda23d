import hashlib
from typing import Iterable

from core.models import ImageInfo


def image_fingerprint(image: ImageInfo) -> str:
    return f"{image.name}:{image.size}:{image.last_modified}"


def hash_image_entries(images: Iterable[ImageInfo]) -> str:
    """Order-independent MD5 over name, size and mtime of every image."""
    fingerprint = "|".join(image_fingerprint(i) for i in sorted(images, key=lambda i: i.name))
    return hashlib.md5(fingerprint.encode('utf-8')).hexdigest()


def compute_folder_hash(folder_path: str, scanner) -> str:
    """Fingerprint of a folder's current image set.

    Propagates FolderUnreadableError from the scanner; an unreadable folder
    is unknown state, not an empty one.
    """
    return hash_image_entries(scanner.list_images(folder_path))
