import copy
import os
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

DEFAULT_CONFIG = {
    "system": {
        "socket_path": f"/tmp/thumbcache_{os.getenv('USER', 'user')}.sock",
    },
    "logging_level": "INFO",
    "gallery_root": os.path.expanduser("~/Pictures"),
    "cache_dir": "~/.thumbcache",
    "thumbnails": {
        "format": "webp",
        "sizes": [
            {"name": "thumb", "width": 300, "height": 300, "quality": 80},
            {"name": "medium", "width": 800, "height": 800, "quality": 85},
            {"name": "large", "width": 1920, "height": 1920, "quality": 90},
        ],
    },
    "scheduler": {
        "enabled": True,
        "tick_seconds": 60,
        "scan_workers": 4,
        "work_hours": {
            "start": 9,
            "end": 17,
            "interval_minutes": 30,
        },
        "off_hours": {
            "enabled": True,
            "interval_minutes": 120,
        },
    },
    "history": {
        "auto_cleanup_enabled": True,
        "retention_hours": 24,
        "max_entries": 500,
        "max_changes": 1000,
    },
    "batch": {
        "max_folders": 100,
        "workers": 8,
    },
    "watcher": {
        "enabled": True,
    },
    "ignore_patterns": ["._*", ".*"]  # glob patterns
}

SUPPORTED_THUMBNAIL_FORMATS = ("webp", "jpeg", "png")


class ThumbnailSizeSettings(BaseModel):
    name: str
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    quality: int = Field(default=85, ge=1, le=100)


class ThumbnailSettings(BaseModel):
    format: str = "webp"
    sizes: List[ThumbnailSizeSettings]

    @field_validator("format")
    @classmethod
    def _known_format(cls, value: str) -> str:
        value = value.lower()
        if value not in SUPPORTED_THUMBNAIL_FORMATS:
            raise ValueError(f"unsupported thumbnail format '{value}'")
        return value


class WorkHoursSettings(BaseModel):
    start: int = Field(ge=0, le=23)
    end: int = Field(ge=1, le=24)
    interval_minutes: float = Field(gt=0)


class OffHoursSettings(BaseModel):
    enabled: bool = False
    interval_minutes: Optional[float] = Field(default=None, gt=0)


class SchedulerSettings(BaseModel):
    enabled: bool = True
    tick_seconds: float = Field(default=60, gt=0)
    scan_workers: int = Field(default=4, gt=0)
    work_hours: WorkHoursSettings
    off_hours: OffHoursSettings


class HistorySettings(BaseModel):
    auto_cleanup_enabled: bool = True
    retention_hours: float = Field(default=24, gt=0)
    max_entries: int = Field(default=500, gt=0)
    max_changes: int = Field(default=1000, gt=0)


class BatchSettings(BaseModel):
    max_folders: int = Field(default=100, gt=0)
    workers: int = Field(default=8, gt=0)


class CacheSettings(BaseModel):
    """Typed view over the cache-engine sections of the YAML config."""
    thumbnails: ThumbnailSettings
    scheduler: SchedulerSettings
    history: HistorySettings
    batch: BatchSettings


def _default_config_path() -> str:
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return os.path.join(xdg_config_home, "thumbcache", "config.yaml")


def _deep_merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# sections clients may read and merge-update while the daemon runs
RUNTIME_SECTIONS = ("scheduler", "thumbnails")


def merge_runtime_updates(config: dict, updates: dict) -> dict:
    """Deep-merges ``{section: {...}}`` updates into a copy of ``config``.

    Only RUNTIME_SECTIONS may be updated. Lists (``thumbnails.sizes``) are
    replaced whole. The result is not validated here.
    """
    if not isinstance(updates, dict) or not updates:
        raise ValueError("No config sections to update")
    unknown = sorted(set(updates) - set(RUNTIME_SECTIONS))
    if unknown:
        raise ValueError(f"Config sections not editable at runtime: {', '.join(unknown)}")
    for section, value in updates.items():
        if not isinstance(value, dict):
            raise ValueError(f"Config section '{section}' must be a mapping")
    return _deep_merge(config, updates)


def validate_settings(config: dict) -> CacheSettings:
    try:
        return CacheSettings.model_validate(config)
    except ValidationError as exc:
        raise ValueError(f"Invalid cache configuration: {exc}") from exc


class ConfigManager:
    def __init__(self, config_path: str | None = None):
        self.config_path = config_path or _default_config_path()
        self.config = self.load_config()
        self.settings = validate_settings(self.config)

    def load_config(self):
        try:
            with open(self.config_path, "r") as f:
                user_config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            self.save_config(DEFAULT_CONFIG)
            return _deep_merge(DEFAULT_CONFIG, {})
        except yaml.YAMLError as exc:
            raise ValueError(f"Malformed config at {self.config_path}") from exc
        return _deep_merge(DEFAULT_CONFIG, user_config)

    def save_config(self, config):
        os.makedirs(os.path.dirname(self.config_path), exist_ok=True)
        with open(self.config_path, "w") as f:
            yaml.dump(config, f, default_flow_style=False)

    def get(self, key, default=None):
        keys = key.split('.')
        value = self.config
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def set(self, key, value):
        keys = key.split('.')
        node = self.config
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        node[keys[-1]] = value
        self.settings = validate_settings(self.config)
        self.save_config(self.config)

    def runtime_config(self) -> dict:
        return {section: copy.deepcopy(self.config.get(section)) for section in RUNTIME_SECTIONS}

    def update_runtime_config(self, updates: dict) -> dict:
        """Merges, validates and saves ``updates``. Nothing changes if validation fails."""
        merged = merge_runtime_updates(self.config, updates)
        self.settings = validate_settings(merged)
        self.config = merged
        self.save_config(self.config)
        return self.runtime_config()

    @property
    def logging_level(self):
        return self.get("logging_level", "INFO")

    @property
    def cache_dir(self) -> str:
        return os.path.expanduser(self.get("cache_dir", "~/.thumbcache"))

    @property
    def gallery_root(self) -> str:
        return os.path.expanduser(self.get("gallery_root", "~/Pictures"))
