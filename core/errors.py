"""Error taxonomy shared by the cache engine and the socket boundary."""


class ThumbCacheError(Exception):
    """Base for all cache engine failures. ``kind`` is sent to clients."""
    kind = "internal_error"

    def __init__(self, message: str = "", folder_path: str | None = None):
        super().__init__(message)
        self.message = message
        self.folder_path = folder_path

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class FolderUnreadableError(ThumbCacheError, OSError):
    """The folder could not be listed. Callers treat this as unknown state."""
    kind = "io_error"


class ValidationError(ThumbCacheError, ValueError):
    kind = "validation_error"


class RebuildError(ThumbCacheError):
    """Thumbnail generation failed for a whole folder (not a single image)."""
    kind = "rebuild_error"


class StoreError(ThumbCacheError):
    """The persistence backend failed; never retried internally."""
    kind = "store_error"


def error_payload(exc: BaseException) -> dict:
    """Structured ``{kind, message}`` for any exception."""
    if isinstance(exc, ThumbCacheError):
        return exc.to_dict()
    if isinstance(exc, OSError):
        return {"kind": FolderUnreadableError.kind, "message": str(exc)}
    return {"kind": ThumbCacheError.kind, "message": str(exc)}
