"""Tests for FolderWatcher event routing and its observer lifecycle."""

import os
import time
from unittest.mock import MagicMock

import pytest

from filewatcher.watcher import FolderWatcher
from tests.conftest import make_image


def _make_event(event_type: str, src_path: str, dest_path: str = "", is_directory: bool = False):
    """Create a minimal mock filesystem event."""
    ev = MagicMock()
    ev.event_type = event_type
    ev.src_path = src_path
    ev.dest_path = dest_path or src_path
    ev.is_directory = is_directory
    return ev


@pytest.fixture()
def watcher(tmp_env):
    scheduler = MagicMock()
    handler = FolderWatcher(tmp_env["scanner"], scheduler, str(tmp_env["gallery"]))
    yield handler, scheduler
    handler.stop()


class TestDispatch:
    @pytest.mark.parametrize("event_type", ["created", "modified", "deleted"])
    def test_image_event_queues_folder_check(self, tmp_env, watcher, event_type):
        handler, scheduler = watcher
        path = os.path.join(str(tmp_env["gallery"]), "landscapes", "a.jpg")
        handler.dispatch(_make_event(event_type, path))
        scheduler.request_folder_check.assert_called_once_with("landscapes")

    def test_root_image_maps_to_empty_key(self, tmp_env, watcher):
        handler, scheduler = watcher
        handler.dispatch(_make_event("created", os.path.join(str(tmp_env["gallery"]), "cover.png")))
        scheduler.request_folder_check.assert_called_once_with("")

    def test_move_checks_both_folders(self, tmp_env, watcher):
        handler, scheduler = watcher
        root = str(tmp_env["gallery"])
        handler.dispatch(_make_event("moved", os.path.join(root, "a", "x.jpg"), os.path.join(root, "b", "x.jpg")))
        assert [c.args[0] for c in scheduler.request_folder_check.call_args_list] == ["a", "b"]

    @pytest.mark.parametrize("name", ["notes.txt", "._x.jpg", ".hidden.jpg"])
    def test_unsupported_or_ignored_files_are_skipped(self, tmp_env, watcher, name):
        handler, scheduler = watcher
        handler.dispatch(_make_event("created", os.path.join(str(tmp_env["gallery"]), name)))
        scheduler.request_folder_check.assert_not_called()

    def test_hidden_folder_is_skipped(self, tmp_env, watcher):
        handler, scheduler = watcher
        handler.dispatch(_make_event("created", os.path.join(str(tmp_env["gallery"]), ".trash", "x.jpg")))
        scheduler.request_folder_check.assert_not_called()

    def test_directory_events_are_skipped(self, tmp_env, watcher):
        handler, scheduler = watcher
        handler.dispatch(_make_event("created", os.path.join(str(tmp_env["gallery"]), "new"), is_directory=True))
        scheduler.request_folder_check.assert_not_called()

    def test_outside_gallery_is_skipped(self, tmp_path, watcher):
        handler, scheduler = watcher
        handler.dispatch(_make_event("created", str(tmp_path / "elsewhere" / "x.jpg")))
        scheduler.request_folder_check.assert_not_called()

    def test_scheduler_error_does_not_escape(self, tmp_env, watcher):
        handler, scheduler = watcher
        scheduler.request_folder_check.side_effect = RuntimeError("boom")
        handler.dispatch(_make_event("created", os.path.join(str(tmp_env["gallery"]), "x.jpg")))


class TestObserver:
    def test_start_and_stop(self, tmp_env, watcher):
        handler, scheduler = watcher
        assert handler.start() is True
        assert handler.observer.is_alive()
        handler.stop()
        assert not handler.observer.is_alive()

    def test_missing_gallery_root(self, tmp_path, tmp_env):
        handler = FolderWatcher(tmp_env["scanner"], MagicMock(), str(tmp_path / "absent"))
        assert handler.start() is False

    def test_real_file_event_reaches_scheduler(self, tmp_env, watcher):
        handler, scheduler = watcher
        handler.start()
        make_image(tmp_env["gallery"] / "live" / "new.jpg")
        deadline = time.time() + 5
        while time.time() < deadline and not scheduler.request_folder_check.called:
            time.sleep(0.05)
        assert "live" in [c.args[0] for c in scheduler.request_folder_check.call_args_list]
