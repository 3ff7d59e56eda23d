import dataclasses
import json
import typing
from typing import Any, List, Dict, Optional

from core.errors import ValidationError


# ==============================================================================
#  Base Message class
# ==============================================================================

@dataclasses.dataclass
class Message:
    """Base for all protocol models. Provides dict/JSON round-trip."""

    @classmethod
    def model_validate(cls, data: dict):
        """Construct from dict, recursively hydrating nested Message fields."""
        if not isinstance(data, dict):
            raise ValidationError(f"{cls.__name__} expects an object, got {type(data).__name__}")
        hints = typing.get_type_hints(cls)
        kwargs = {}
        for f in dataclasses.fields(cls):
            if f.name not in data:
                continue
            val = data[f.name]
            hint = hints.get(f.name)
            origin = getattr(hint, '__origin__', None)
            # Optional[X] -> X
            if origin is typing.Union:
                args = [a for a in hint.__args__ if a is not type(None)]
                if len(args) == 1:
                    hint = args[0]
                    origin = getattr(hint, '__origin__', None)
            # List[MessageSubclass]
            if origin is list and val:
                inner = getattr(hint, '__args__', (None,))[0]
                if inner and isinstance(inner, type) and issubclass(inner, Message):
                    val = [inner.model_validate(v) if isinstance(v, dict) else v for v in val]
            # Bare MessageSubclass field
            elif isinstance(hint, type) and issubclass(hint, Message) and isinstance(val, dict):
                val = hint.model_validate(val)
            kwargs[f.name] = val
        return cls(**kwargs)

    def model_dump(self) -> dict:
        return dataclasses.asdict(self)

    def model_dump_json(self) -> str:
        return json.dumps(self.model_dump())


def _require_folder_path(value) -> None:
    if value is None:
        raise ValidationError("folder_path is required")
    if not isinstance(value, str):
        raise ValidationError(f"folder_path must be a string, got {type(value).__name__}")


# ==============================================================================
#  Base Models & Common Structures
# ==============================================================================

@dataclasses.dataclass
class Request(Message):
    """Base model for all client-to-server requests."""
    command: str = ""

@dataclasses.dataclass
class Response(Message):
    """Base model for all server-to-client responses."""
    status: str = "success"
    message: Optional[str] = None

@dataclasses.dataclass
class ErrorResponse(Response):
    """Standardized error response. ``error_kind`` mirrors ThumbCacheError.kind."""
    status: str = "error"
    error_kind: str = "internal_error"
    message: str = ""

@dataclasses.dataclass
class FolderStatusModel(Message):
    folder_path: str = ""
    is_current: bool = False
    current_hash: str = ""
    previous_hash: Optional[str] = None
    thumbnail_count: int = 0
    last_built_at: Optional[float] = None

# ==============================================================================
#  Request/Response Models
# ==============================================================================

# --- Folder Status ---
@dataclasses.dataclass
class FolderStatusRequest(Request):
    command: str = "folder_status"
    folder_path: Optional[str] = None
    # also report which images have a thumbnail on disk
    include_thumbnails: bool = False

    def __post_init__(self):
        _require_folder_path(self.folder_path)
        if not isinstance(self.include_thumbnails, bool):
            raise ValidationError("include_thumbnails must be a boolean")

@dataclasses.dataclass
class FolderStatusResponse(Response):
    folder: Optional[FolderStatusModel] = None
    # {folder_path, size, images: [{name, cached, thumbnail_path}], summary: {total, cached, uncached, percentage}}
    thumbnails: Optional[Dict[str, Any]] = None

# --- Folder Status (batch) ---
@dataclasses.dataclass
class FolderStatusBatchRequest(Request):
    command: str = "folder_status_batch"
    folder_paths: List[Any] = dataclasses.field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.folder_paths, list):
            raise ValidationError("folder_paths must be a list")

@dataclasses.dataclass
class FolderStatusBatchResponse(Response):
    # folder -> FolderStatusModel dict, or {"folder_path", "error": {kind, message}}
    by_folder: Dict[str, Dict[str, Any]] = dataclasses.field(default_factory=dict)

# --- Folder Hashes ---
@dataclasses.dataclass
class FolderHashesRequest(Request):
    command: str = "folder_hashes"

@dataclasses.dataclass
class FolderHashesResponse(Response):
    records: List[Dict[str, Any]] = dataclasses.field(default_factory=list)
    stats: Dict[str, int] = dataclasses.field(default_factory=dict)

# --- Rebuild Folder ---
@dataclasses.dataclass
class RebuildFolderRequest(Request):
    command: str = "rebuild_folder"
    folder_path: Optional[str] = None

    def __post_init__(self):
        _require_folder_path(self.folder_path)

@dataclasses.dataclass
class RebuildFolderResponse(Response):
    folder_path: str = ""
    thumbnails_generated: int = 0
    files_processed: int = 0
    failed: int = 0
    duration: float = 0.0

# --- Cleanup History ---
CLEANUP_ACTIONS = ("cleanup", "clear")

@dataclasses.dataclass
class CleanupHistoryRequest(Request):
    command: str = "cleanup_history"
    action: str = "cleanup"
    retention_hours: Optional[float] = None

    def __post_init__(self):
        if self.action not in CLEANUP_ACTIONS:
            raise ValidationError(f"action must be one of {', '.join(CLEANUP_ACTIONS)}, got {self.action!r}")
        if self.retention_hours is not None:
            if isinstance(self.retention_hours, bool) or not isinstance(self.retention_hours, (int, float)):
                raise ValidationError("retention_hours must be a number")
            if self.retention_hours <= 0:
                raise ValidationError(f"retention_hours must be positive, got {self.retention_hours}")

@dataclasses.dataclass
class CleanupHistoryResponse(Response):
    history_removed: int = 0
    changes_removed: int = 0
    cleared: bool = False

# --- Cache Status ---
@dataclasses.dataclass
class CacheStatusRequest(Request):
    command: str = "cache_status"

@dataclasses.dataclass
class CacheStatusResponse(Response):
    scheduler: Dict[str, Any] = dataclasses.field(default_factory=dict)
    stats: Dict[str, int] = dataclasses.field(default_factory=dict)
    thumbnails: Dict[str, Any] = dataclasses.field(default_factory=dict)
    last_rebuilt_folder: Optional[Dict[str, Any]] = None

# --- Trigger Scan ---
@dataclasses.dataclass
class TriggerScanRequest(Request):
    command: str = "trigger_scan"

@dataclasses.dataclass
class TriggerScanResponse(Response):
    result: Dict[str, Any] = dataclasses.field(default_factory=dict)

# --- History ---
@dataclasses.dataclass
class HistoryRequest(Request):
    command: str = "history"
    limit: int = 50

    def __post_init__(self):
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit <= 0:
            raise ValidationError(f"limit must be a positive integer, got {self.limit!r}")

@dataclasses.dataclass
class HistoryResponse(Response):
    history: List[Dict[str, Any]] = dataclasses.field(default_factory=list)
    changes: List[Dict[str, Any]] = dataclasses.field(default_factory=list)

# --- Generate Single ---
@dataclasses.dataclass
class GenerateSingleRequest(Request):
    command: str = "generate_single"
    image_path: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.image_path, str) or not self.image_path.strip("/"):
            raise ValidationError("image_path is required")

@dataclasses.dataclass
class GenerateSingleResponse(Response):
    image_path: str = ""
    folder_path: str = ""
    thumbnails: Dict[str, str] = dataclasses.field(default_factory=dict)

# --- Runtime Config ---
@dataclasses.dataclass
class GetConfigRequest(Request):
    command: str = "get_config"

@dataclasses.dataclass
class UpdateConfigRequest(Request):
    command: str = "update_config"
    scheduler: Optional[Dict[str, Any]] = None
    thumbnails: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.scheduler is None and self.thumbnails is None:
            raise ValidationError("update_config needs 'scheduler' and/or 'thumbnails'")
        for name in ("scheduler", "thumbnails"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, dict):
                raise ValidationError(f"{name} must be an object")

    def updates(self) -> Dict[str, Dict[str, Any]]:
        return {name: value for name, value in (("scheduler", self.scheduler), ("thumbnails", self.thumbnails))
                if value is not None}

@dataclasses.dataclass
class ConfigResponse(Response):
    scheduler: Dict[str, Any] = dataclasses.field(default_factory=dict)
    thumbnails: Dict[str, Any] = dataclasses.field(default_factory=dict)
