import sys
import zipfile
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from ib_toolbox.data_download.data_store import LeanDataStore
from ib_toolbox.exceptions import MissingZipEntryError


def test_write_file_creates_single_entry_zip(tmp_path) -> None:
    store = LeanDataStore(tmp_path)
    directory = tmp_path / "equity" / "usa" / "minute" / "aapl"

    relative = store.write_file(directory, "20240115_trade.zip", "row-1\nrow-2")

    assert relative == "equity/usa/minute/aapl/20240115_trade.zip"
    with zipfile.ZipFile(directory / "20240115_trade.zip") as archive:
        assert archive.namelist() == ["20240115_trade.csv"]
        assert archive.read("20240115_trade.csv").decode("utf-8") == "row-1\nrow-2"


def test_write_file_leaves_no_temp_files(tmp_path) -> None:
    store = LeanDataStore(tmp_path)
    store.write_file(tmp_path / "out", "spy.zip", "a")
    store.write_file(tmp_path / "out", "spy.zip", "b")

    assert [path.name for path in (tmp_path / "out").iterdir()] == ["spy.zip"]
    with zipfile.ZipFile(tmp_path / "out" / "spy.zip") as archive:
        assert archive.read("spy.csv") == b"b"


def test_write_file_plain_text(tmp_path) -> None:
    store = LeanDataStore(tmp_path)
    relative = store.write_file(tmp_path / "plain", "20240115_trade.csv", "x,y", as_zip=False)

    assert relative == "plain/20240115_trade.csv"
    assert store.read_text_lines(tmp_path / "plain" / "20240115_trade.csv") == ["x,y"]


def test_failed_write_keeps_existing_file_and_removes_temp(tmp_path, monkeypatch) -> None:
    store = LeanDataStore(tmp_path)
    store.write_file(tmp_path, "spy.zip", "original")

    def failing_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("ib_toolbox.data_download.data_store.os.replace", failing_replace)

    with pytest.raises(OSError):
        store.write_file(tmp_path, "spy.zip", "replacement")

    assert [path.name for path in tmp_path.iterdir()] == ["spy.zip"]
    with zipfile.ZipFile(tmp_path / "spy.zip") as archive:
        assert archive.read("spy.csv") == b"original"


def test_read_archive_lines_falls_back_to_case_insensitive_entry(tmp_path) -> None:
    archive_path = tmp_path / "20240115_trade.zip"
    with zipfile.ZipFile(archive_path, "w") as archive:
        archive.writestr("nested/20240115_TRADE.CSV", "\ufeffline-1\nline-2\n")

    entry, lines = LeanDataStore(tmp_path).read_archive_lines(archive_path, "20240115_trade.csv")

    assert entry == "nested/20240115_TRADE.CSV"
    assert lines == ["line-1", "line-2"]


def test_read_archive_lines_raises_for_missing_entry(tmp_path) -> None:
    archive_path = tmp_path / "spy.zip"
    with zipfile.ZipFile(archive_path, "w") as archive:
        archive.writestr("other.csv", "x")

    with pytest.raises(MissingZipEntryError) as excinfo:
        LeanDataStore(tmp_path).read_archive_lines(archive_path, "spy.csv")

    assert "spy.csv" in str(excinfo.value)
