"""Tests for core/thumbnail_manager.py and the Pillow thumbnail plugin."""

import os

import pytest
from PIL import Image

from core.errors import FolderUnreadableError, RebuildError, ValidationError
from core.folder_hash import compute_folder_hash
from core.models import HistoryEventType
from core.thumbnail_manager import LAST_REBUILT_FOLDER_KEY
from plugins.base_plugin import PluginRegistry, ThumbnailSize
from plugins.pil_plugin import PILPlugin
from tests.conftest import make_image


class TestRebuild:
    def test_rebuild_marks_folder_current(self, gallery, services, tmp_env):
        result = services["thumbnails"].rebuild_folder_thumbnails("landscapes")
        assert result.folder_path == "landscapes"
        assert result.thumbnails_generated == 3
        assert result.files_processed == 3
        assert result.failed == 0

        record = tmp_env["db"].get_record("landscapes")
        fresh = compute_folder_hash("landscapes", tmp_env["scanner"])
        assert record.previous_hash == record.current_hash == fresh
        assert record.last_built_at == tmp_env["clock"]()
        assert record.thumbnail_count == 3

    def test_rebuild_then_status_is_current(self, gallery, services):
        services["thumbnails"].rebuild_folder_thumbnails("portraits")
        assert services["status"].get_folder_cache_status("portraits").is_current is True

    def test_writes_every_size_at_mirrored_path(self, gallery, services, tmp_env):
        services["thumbnails"].rebuild_folder_thumbnails("landscapes")
        base = tmp_env["cache_dir"] / "thumbnails" / "landscapes"
        for size_name, bound in (("thumb", 32), ("medium", 64)):
            path = base / f"land_0_{size_name}.jpeg"
            assert path.exists()
            with Image.open(path) as img:
                assert max(img.size) <= bound

    def test_thumbnails_never_upscale(self, tmp_env, services):
        make_image(tmp_env["gallery"] / "tiny" / "t.jpg", size=(20, 10))
        services["thumbnails"].rebuild_folder_thumbnails("tiny")
        with Image.open(tmp_env["cache_dir"] / "thumbnails" / "tiny" / "t_medium.jpeg") as img:
            assert img.size == (20, 10)

    def test_root_folder(self, gallery, services, tmp_env):
        result = services["thumbnails"].rebuild_folder_thumbnails("")
        assert result.thumbnails_generated == 1
        assert (tmp_env["cache_dir"] / "thumbnails" / "cover_thumb.jpeg").exists()
        assert tmp_env["db"].get_record("").is_current

    def test_empty_folder(self, gallery, services, tmp_env):
        result = services["thumbnails"].rebuild_folder_thumbnails("empty")
        assert result.thumbnails_generated == 0
        assert tmp_env["db"].get_record("empty").is_current

    def test_history_and_last_rebuilt_state(self, gallery, services, tmp_env):
        services["thumbnails"].rebuild_folder_thumbnails("landscapes")
        history = tmp_env["db"].get_history()
        assert [e.event_type for e in history] == [HistoryEventType.REBUILD]
        assert history[0].folder_path == "landscapes"
        state = tmp_env["db"].get_state(LAST_REBUILT_FOLDER_KEY)
        assert state["folder_path"] == "landscapes"
        assert state["thumbnails_generated"] == 3

    def test_corrupt_image_is_recorded_and_skipped(self, gallery, services, tmp_env):
        (gallery / "landscapes" / "broken.jpg").write_bytes(b"not really a jpeg")
        result = services["thumbnails"].rebuild_folder_thumbnails("landscapes")
        assert result.thumbnails_generated == 3
        assert result.failed == 1
        events = [e.event_type for e in tmp_env["db"].get_history()]
        assert events.count(HistoryEventType.ERROR) == 1
        assert events.count(HistoryEventType.REBUILD) == 1
        record = tmp_env["db"].get_record("landscapes")
        assert record.thumbnail_count == 3
        assert record.is_current

    def test_decompression_bomb_is_recorded_and_skipped(self, gallery, services, tmp_env, monkeypatch):
        make_image(gallery / "landscapes" / "huge.jpg", size=(400, 300))
        # 120x80 gallery images stay under the limit; 400x300 exceeds twice the limit
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 20000)
        result = services["thumbnails"].rebuild_folder_thumbnails("landscapes")
        assert result.files_processed == 4
        assert result.thumbnails_generated == 3
        assert result.failed == 1
        errors = [e for e in tmp_env["db"].get_history() if e.event_type is HistoryEventType.ERROR]
        assert len(errors) == 1
        assert "huge.jpg" in errors[0].detail
        assert "DecompressionBombError" in errors[0].detail
        record = tmp_env["db"].get_record("landscapes")
        assert record.is_current
        assert record.thumbnail_count == 3

    def test_unexpected_plugin_exception_does_not_abort_rebuild(self, gallery, services, tmp_env,
                                                                 registry, monkeypatch):
        plugin = registry.get_plugin_for_format(".jpg")
        original = plugin.generate_thumbnail

        def _explode(image_path, size, output_path):
            if image_path.endswith("land_1.jpg"):
                raise RuntimeError("codec crashed")
            return original(image_path, size, output_path)

        monkeypatch.setattr(plugin, "generate_thumbnail", _explode)
        result = services["thumbnails"].rebuild_folder_thumbnails("landscapes")
        assert result.thumbnails_generated == 2
        assert result.failed == 1
        base = tmp_env["cache_dir"] / "thumbnails" / "landscapes"
        assert (base / "land_2_thumb.jpeg").exists()
        errors = [e for e in tmp_env["db"].get_history() if e.event_type is HistoryEventType.ERROR]
        assert "RuntimeError: codec crashed" in errors[0].detail
        assert tmp_env["db"].get_record("landscapes").thumbnail_count == 2

    def test_missing_folder_raises_rebuild_error(self, services, tmp_env):
        with pytest.raises(RebuildError) as exc_info:
            services["thumbnails"].rebuild_folder_thumbnails("missing")
        assert exc_info.value.kind == "rebuild_error"
        assert tmp_env["db"].get_record("missing") is None
        assert tmp_env["db"].get_history() == []

    def test_none_is_validation_error(self, services):
        with pytest.raises(ValidationError):
            services["thumbnails"].rebuild_folder_thumbnails(None)

    def test_no_plugin_counts_as_failure(self, gallery, tmp_env, services):
        thumbs = services["thumbnails"]
        thumbs.plugin_registry = PluginRegistry()
        result = thumbs.rebuild_folder_thumbnails("landscapes")
        assert result.thumbnails_generated == 0
        assert result.failed == 3


class TestSingleImage:
    def test_generates_every_size(self, gallery, services, tmp_env):
        result = services["thumbnails"].generate_single_thumbnail("landscapes/land_1.jpg")
        assert result["image_path"] == "landscapes/land_1.jpg"
        assert result["folder_path"] == "landscapes"
        assert set(result["thumbnails"]) == {"thumb", "medium"}
        assert os.path.exists(result["thumbnails"]["thumb"])
        # the folder record is only touched by status checks and rebuilds
        assert tmp_env["db"].get_record("landscapes") is None

    def test_root_image(self, gallery, services):
        result = services["thumbnails"].generate_single_thumbnail("/cover.jpg")
        assert result["folder_path"] == ""

    @pytest.mark.parametrize("path", ["landscapes/notes.txt", "", "landscapes/"])
    def test_rejects_non_images(self, gallery, services, path):
        with pytest.raises(ValidationError):
            services["thumbnails"].generate_single_thumbnail(path)

    def test_missing_image_is_io_error(self, gallery, services):
        with pytest.raises(FolderUnreadableError):
            services["thumbnails"].generate_single_thumbnail("landscapes/nope.jpg")

    def test_corrupt_image_is_rebuild_error(self, gallery, services):
        (gallery / "landscapes" / "broken.jpg").write_bytes(b"junk")
        with pytest.raises(RebuildError):
            services["thumbnails"].generate_single_thumbnail("landscapes/broken.jpg")


class TestThumbnailSummary:
    def test_uncached_then_cached(self, gallery, services):
        thumbs = services["thumbnails"]
        summary = thumbs.folder_thumbnail_summary("landscapes")
        assert summary["size"] == "thumb"
        assert summary["summary"] == {"total": 3, "cached": 0, "uncached": 3, "percentage": 0}

        thumbs.rebuild_folder_thumbnails("landscapes")
        summary = thumbs.folder_thumbnail_summary("landscapes")
        assert summary["summary"]["percentage"] == 100
        assert all(image["thumbnail_path"] for image in summary["images"])

    def test_externally_deleted_thumbnail_is_noticed(self, gallery, services, tmp_env):
        thumbs = services["thumbnails"]
        thumbs.rebuild_folder_thumbnails("landscapes")
        os.remove(tmp_env["cache_dir"] / "thumbnails" / "landscapes" / "land_0_thumb.jpeg")
        summary = thumbs.folder_thumbnail_summary("landscapes")
        assert summary["summary"] == {"total": 3, "cached": 2, "uncached": 1, "percentage": 67}
        assert summary["images"][0] == {"name": "land_0.jpg", "cached": False, "thumbnail_path": None}

    def test_empty_folder(self, gallery, services):
        assert services["thumbnails"].folder_thumbnail_summary("empty")["summary"]["percentage"] == 0

    def test_missing_folder_raises(self, services):
        with pytest.raises(FolderUnreadableError):
            services["thumbnails"].folder_thumbnail_summary("missing")


class TestApplySettings:
    def test_new_format_reaches_plugins(self, gallery, services, tmp_env, registry):
        thumbs = services["thumbnails"]
        tmp_env["config"].set("thumbnails.format", "png")
        tmp_env["config"].set("thumbnails.sizes", [{"name": "tiny", "width": 16, "height": 16}])
        thumbs.apply_settings()
        assert registry.get_plugin_for_format(".jpg").output_format == "png"
        thumbs.rebuild_folder_thumbnails("landscapes")
        assert (tmp_env["cache_dir"] / "thumbnails" / "landscapes" / "land_0_tiny.png").exists()
        assert thumbs.thumbnail_stats()["by_size"] == {"tiny": 3}


class TestThumbnailFiles:
    def test_thumbnail_stats(self, gallery, services):
        thumbs = services["thumbnails"]
        thumbs.rebuild_folder_thumbnails("landscapes")
        thumbs.rebuild_folder_thumbnails("portraits")
        stats = thumbs.thumbnail_stats()
        assert stats["total_files"] == 10
        assert stats["by_size"] == {"thumb": 5, "medium": 5}
        assert stats["total_bytes"] > 0

    def test_remove_folder_thumbnails_keeps_subfolders(self, tmp_env, services):
        root = tmp_env["gallery"]
        make_image(root / "trips" / "a.jpg")
        make_image(root / "trips" / "2024" / "b.jpg")
        thumbs = services["thumbnails"]
        thumbs.rebuild_folder_thumbnails("trips")
        thumbs.rebuild_folder_thumbnails("trips/2024")

        assert thumbs.remove_folder_thumbnails("trips") is True
        base = tmp_env["cache_dir"] / "thumbnails" / "trips"
        assert not (base / "a_thumb.jpeg").exists()
        assert (base / "2024" / "b_thumb.jpeg").exists()

    def test_remove_missing_folder_thumbnails(self, services):
        assert services["thumbnails"].remove_folder_thumbnails("never-built") is False


class TestPILPlugin:
    def test_png_output_keeps_alpha(self, tmp_path):
        src = tmp_path / "alpha.png"
        Image.new("RGBA", (100, 50), (255, 0, 0, 128)).save(src)
        plugin = PILPlugin(cache_dir=str(tmp_path / "cache"), sizes=[ThumbnailSize("thumb", 40, 40)],
                           output_format="png")
        written = plugin.process_thumbnails(str(src), "")
        with Image.open(written["thumb"]) as img:
            assert img.mode == "RGBA"
            assert img.size == (40, 20)

    def test_jpeg_output_converts_mode(self, tmp_path):
        src = tmp_path / "alpha.png"
        Image.new("RGBA", (10, 10), (0, 0, 255, 10)).save(src)
        plugin = PILPlugin(cache_dir=str(tmp_path / "cache"), sizes=[ThumbnailSize("thumb", 8, 8)],
                           output_format="jpeg")
        assert plugin.is_available()
        assert "thumb" in plugin.process_thumbnails(str(src), "a/b")
        assert os.path.exists(plugin.get_thumbnail_path("a/b", "alpha.png", "thumb"))

    def test_unreadable_file_returns_empty(self, tmp_path):
        src = tmp_path / "bad.jpg"
        src.write_bytes(b"garbage")
        plugin = PILPlugin(cache_dir=str(tmp_path / "cache"), output_format="jpeg")
        assert plugin.process_thumbnails(str(src), "") == {}

    def test_registry_lookup(self, registry):
        assert registry.get_plugin_for_format("JPG") is not None
        assert registry.get_plugin_for_format(".tiff") is None
        assert ".png" in registry.get_supported_formats()
