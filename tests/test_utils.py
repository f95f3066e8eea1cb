import os
import shutil

import pytest


@pytest.fixture(autouse=True)
def clear_utils_cache():
    import streamgrab.utils as utils

    getattr(utils.get_user_cache_root, "cache_clear")()
    getattr(utils.get_user_settings_dir, "cache_clear")()
    yield
    getattr(utils.get_user_cache_root, "cache_clear")()
    getattr(utils.get_user_settings_dir, "cache_clear")()


def test_cache_dir_override_is_used(monkeypatch, tmp_path):
    import streamgrab.utils as utils

    cache_root = tmp_path / "cache-root"
    monkeypatch.setenv("STREAMGRAB_CACHE_DIR", str(cache_root))

    assert utils.get_user_cache_root() == os.path.abspath(str(cache_root))
    scratch = utils.get_user_cache_path("scratch")
    assert scratch == os.path.join(os.path.abspath(str(cache_root)), "scratch")
    assert os.path.isdir(scratch)


def test_settings_dir_from_data_root(monkeypatch, tmp_path):
    import streamgrab.utils as utils

    monkeypatch.delenv("STREAMGRAB_SETTINGS_DIR", raising=False)
    monkeypatch.setenv("STREAMGRAB_DATA", str(tmp_path))

    assert utils.get_user_settings_dir() == os.path.join(str(tmp_path), "settings")
    assert utils.default_cookies_path() == os.path.join(str(tmp_path), "settings", "cookies.txt")


def test_env_helpers(monkeypatch):
    import streamgrab.utils as utils

    monkeypatch.setenv("SG_FLAG", "yes")
    monkeypatch.setenv("SG_NUMBER", "2.5")
    monkeypatch.setenv("SG_BAD", "lots")
    assert utils.env_flag("SG_FLAG", False) is True
    assert utils.env_flag("SG_MISSING", True) is True
    assert utils.env_float("SG_NUMBER", 1.0) == 2.5
    assert utils.env_float("SG_BAD", 7.0) == 7.0
    assert utils.env_int("SG_NUMBER", 0) == 2


def test_locate_ffmpeg_prefers_override_then_path(monkeypatch):
    import streamgrab.utils as utils

    assert utils.locate_ffmpeg("/custom/ffmpeg") == "/custom/ffmpeg"

    monkeypatch.setattr(shutil, "which", lambda name: "/usr/bin/ffmpeg" if name == "ffmpeg" else None)
    assert utils.locate_ffmpeg() == "/usr/bin/ffmpeg"

    monkeypatch.setattr(shutil, "which", lambda name: None)
    assert utils.locate_ffmpeg(use_static=False) is None
