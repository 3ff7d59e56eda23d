"""
Shared pytest fixtures for thumbcache tests.
"""
import copy
import errno
import os
import sys

# Ensure project root is on path for all tests
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
from PIL import Image

import core.cache_database as _cdb_module
from config.config_manager import (
    DEFAULT_CONFIG, RUNTIME_SECTIONS, _deep_merge, merge_runtime_updates, validate_settings,
)
from core.cache_database import CacheDatabase
from core.cache_status import CacheStatusService
from core.directory_scanner import DirectoryScanner
from core.history_retention import HistoryRetentionManager
from core.scheduler import CacheScheduler
from core.thumbnail_manager import ThumbnailManager
from plugins.base_plugin import PluginRegistry
from plugins.pil_plugin import PILPlugin


class MockConfigManager:
    """ConfigManager substitute built from DEFAULT_CONFIG plus a plain dict of overrides.

    Never touches the filesystem. ``settings`` is validated the same way the
    real ConfigManager validates the YAML file.
    """

    def __init__(self, overrides: dict | None = None):
        base = copy.deepcopy(DEFAULT_CONFIG)
        base["thumbnails"]["format"] = "jpeg"  # no libwebp dependency in tests
        base["thumbnails"]["sizes"] = [
            {"name": "thumb", "width": 32, "height": 32, "quality": 80},
            {"name": "medium", "width": 64, "height": 64, "quality": 85},
        ]
        self._cfg: dict = _deep_merge(base, overrides or {})
        self.settings = validate_settings(self._cfg)

    def get(self, key: str, default=None):
        keys = key.split(".")
        val = self._cfg
        for k in keys:
            if isinstance(val, dict):
                val = val.get(k)
            else:
                return default
        return val if val is not None else default

    def set(self, key: str, value):
        keys = key.split(".")
        node = self._cfg
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        node[keys[-1]] = value
        self.settings = validate_settings(self._cfg)

    def runtime_config(self) -> dict:
        return {section: copy.deepcopy(self._cfg.get(section)) for section in RUNTIME_SECTIONS}

    def update_runtime_config(self, updates: dict) -> dict:
        merged = merge_runtime_updates(self._cfg, updates)
        self.settings = validate_settings(merged)
        self._cfg = merged
        return self.runtime_config()

    @property
    def cache_dir(self) -> str:
        return self.get("cache_dir")

    @property
    def gallery_root(self) -> str:
        return self.get("gallery_root")


class FakeClock:
    """Injectable epoch clock; starts at a fixed Monday 10:00 local time."""

    def __init__(self, start: float | None = None):
        if start is None:
            import datetime
            start = datetime.datetime(2024, 6, 3, 10, 0, 0).timestamp()
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def deny_listing(monkeypatch, *paths):
    """Makes os.scandir raise PermissionError for the given directories."""
    denied = {os.path.abspath(str(p)) for p in paths}
    real_scandir = os.scandir

    def _scandir(path="."):
        if os.path.abspath(os.fsdecode(path)) in denied:
            raise PermissionError(errno.EACCES, "Permission denied", os.fspath(path))
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", _scandir)


def make_image(path, color=(200, 100, 50), size=(120, 80)):
    """Writes a small JPEG (or PNG, by extension) and returns its path as str."""
    path = str(path)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    fmt = "PNG" if path.lower().endswith(".png") else "JPEG"
    Image.new("RGB", size, color=color).save(path, fmt)
    return path


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def tmp_env(tmp_path, clock):
    """Clean, isolated test environment with a fresh cache database.

    Yields a dict with:
      tmp_path: pathlib.Path temp directory (unique per test)
      gallery: pathlib.Path gallery root (empty)
      cache_dir: pathlib.Path cache directory
      db: CacheDatabase instance
      config: MockConfigManager configured for this environment
      scanner: DirectoryScanner over the gallery
      clock: FakeClock shared by every service built from this env

    The global CacheDatabase singleton is reset before and after each test.
    """
    _cdb_module._cache_database = None

    gallery = tmp_path / "gallery"
    gallery.mkdir()
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()

    db = CacheDatabase(str(tmp_path / "thumbcache.db"))
    config = MockConfigManager({"cache_dir": str(cache_dir), "gallery_root": str(gallery)})
    scanner = DirectoryScanner(str(gallery), ignore_patterns=config.get("ignore_patterns"))

    yield {
        "tmp_path": tmp_path,
        "gallery": gallery,
        "cache_dir": cache_dir,
        "db": db,
        "config": config,
        "scanner": scanner,
        "clock": clock,
    }

    db.close()
    _cdb_module._cache_database = None


@pytest.fixture()
def gallery(tmp_env):
    """A small gallery: one root image, ``landscapes`` (3), ``portraits`` (2), ``empty`` (0)."""
    root = tmp_env["gallery"]
    make_image(root / "cover.jpg", (10, 10, 10))
    for i in range(3):
        make_image(root / "landscapes" / f"land_{i}.jpg", (i * 40, 120, 200))
    for i in range(2):
        make_image(root / "portraits" / f"face_{i}.png", (220, i * 60, 90))
    (root / "empty").mkdir()
    return root


@pytest.fixture()
def registry(tmp_env):
    """Fresh plugin registry with the Pillow plugin registered for the test sizes."""
    config = tmp_env["config"]
    thumbnails = config.settings.thumbnails
    from plugins.base_plugin import ThumbnailSize
    sizes = [ThumbnailSize(s.name, s.width, s.height, s.quality) for s in thumbnails.sizes]
    reg = PluginRegistry()
    reg.register_plugin(PILPlugin(cache_dir=str(tmp_env["cache_dir"]), sizes=sizes,
                                  output_format=thumbnails.format))
    return reg


@pytest.fixture()
def services(tmp_env, registry):
    """Fully wired services over tmp_env, all sharing the FakeClock."""
    db, scanner, config, clock = tmp_env["db"], tmp_env["scanner"], tmp_env["config"], tmp_env["clock"]
    status = CacheStatusService(db, scanner, clock=clock)
    thumbnails = ThumbnailManager(config, db, scanner, registry=registry, clock=clock)
    retention = HistoryRetentionManager(db, config.settings.history.retention_hours, clock=clock)
    scheduler = CacheScheduler(config, db, status, thumbnails, retention, scanner, clock=clock)
    yield {
        "status": status,
        "thumbnails": thumbnails,
        "retention": retention,
        "scheduler": scheduler,
    }
    scheduler.stop()
