import os

import pytest

from pluma_server.services.maa_file_browser import (
    MaaFileBrowser,
    cleanup_log_files,
    list_debug_screenshots,
    list_log_files,
    read_log_tail,
    resolve_log_file_path,
)


def _write(path, content, mtime):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def log_root(tmp_path):
    root = tmp_path / "log"
    _write(root / "maa.log", "a" * 40, 1_700_000_300)
    _write(root / "2024" / "old.log", "b" * 30, 1_700_000_100)
    _write(root / "core" / "asst.log", "c" * 20, 1_700_000_200)
    _write(root / "notes.txt", "ignored", 1_700_000_400)
    return root


class FakeDirs:
    def __init__(self, log_dir, config_dir="") -> None:
        self._log_dir = str(log_dir)
        self._config_dir = str(config_dir)

    async def log_dir(self):
        return self._log_dir

    async def config_dir(self):
        return self._config_dir


def test_list_log_files_is_recursive_and_newest_first(log_root):
    files = list_log_files(log_root)
    assert [info.name for info in files] == ["maa.log", "core/asst.log", "2024/old.log"]
    assert [info.size for info in files] == [40, 20, 30]


def test_missing_directories_list_nothing(tmp_path):
    assert list_log_files(tmp_path / "missing") == []
    assert list_debug_screenshots(tmp_path / "missing") == []


def test_resolve_log_file_path_rejects_escapes(log_root, tmp_path):
    _write(tmp_path / "secret.log", "x", 1_700_000_000)

    assert resolve_log_file_path(log_root, "core/asst.log") == (log_root / "core" / "asst.log").resolve()
    for bad in ["", "../secret.log", str(tmp_path / "secret.log"), "notes.txt"]:
        with pytest.raises(ValueError):
            resolve_log_file_path(log_root, bad)
    with pytest.raises(FileNotFoundError):
        resolve_log_file_path(log_root, "gone.log")


def test_read_log_tail_returns_last_lines(tmp_path):
    path = _write(tmp_path / "maa.log", "one\ntwo\nthree\nfour", 1_700_000_000)

    content = read_log_tail(path, 2)

    assert content.content == "three\nfour"
    assert content.total_lines == 4
    assert content.returned_lines == 2


def test_cleanup_keeps_newest_files_within_limit(log_root):
    result = cleanup_log_files(log_root, max_bytes=60)

    assert result.deleted_count == 1
    assert result.freed_bytes == 30
    assert not (log_root / "2024" / "old.log").exists()
    assert (log_root / "core" / "asst.log").exists()
    assert (log_root / "notes.txt").exists()


def test_debug_screenshots_lists_images_only(tmp_path):
    debug = tmp_path / "debug"
    _write(debug / "older.png", "png", 1_700_000_000)
    _write(debug / "newer.JPG", "jpg", 1_700_000_500)
    _write(debug / "readme.md", "no", 1_700_000_900)

    assert [info.name for info in list_debug_screenshots(debug)] == ["newer.JPG", "older.png"]


@pytest.mark.asyncio
async def test_browser_uses_maa_directories(log_root, tmp_path, override_config):
    override_config("SYSTEM", MAA_LOG_TAIL_LINES=1, MAA_LOG_MAX_MB=1.0)
    config_dir = tmp_path / "config"
    _write(tmp_path / "debug" / "shot.png", "png", 1_700_000_000)
    browser = MaaFileBrowser(FakeDirs(log_root, config_dir))

    assert len(await browser.list_logs()) == 3
    content = await browser.read_log("core/asst.log")
    assert content.name == "core/asst.log"
    assert content.returned_lines == 1
    assert (await browser.cleanup_logs()).deleted_count == 0
    assert [info.name for info in await browser.debug_screenshots()] == ["shot.png"]
