import os
import stat

import orjson
import pytest

import ha_geo_ip_cache
from conftest import LAST_MODIFIED
from ha_geo_ip_cache import GeoCacheStore, atomic_write


def test_missing_cache(tmp_path):
    store = GeoCacheStore(tmp_path / "geo.txt")
    assert not store.exists()
    assert store.last_modified() is None
    assert store.load() is None


def test_replace_stamps_remote_timestamp(tmp_path):
    store = GeoCacheStore(tmp_path / "geo.txt")
    store.replace(b"1.0.0.0/24 AU\n", LAST_MODIFIED)

    assert store.exists()
    assert store.last_modified() == LAST_MODIFIED
    assert store.load() == (b"1.0.0.0/24 AU\n", LAST_MODIFIED)
    assert list(store.iter_lines()) == ["1.0.0.0/24 AU\n"]


def test_replace_without_timestamp_records_unknown(tmp_path):
    store = GeoCacheStore(tmp_path / "geo.txt")
    store.replace(b"1.0.0.0/24 AU\n", LAST_MODIFIED)
    store.replace(b"x\n")

    assert store.last_modified() is None
    assert orjson.loads((tmp_path / "geo.txt.meta").read_bytes()) == {"last-modified": None}


def test_cache_without_metadata_falls_back_to_mtime(tmp_path):
    path = tmp_path / "geo.txt"
    path.write_bytes(b"x\n")
    ts = LAST_MODIFIED.timestamp()
    os.utime(path, (ts, ts))
    assert GeoCacheStore(path).last_modified() == LAST_MODIFIED


def test_corrupt_metadata_means_unknown(tmp_path):
    store = GeoCacheStore(tmp_path / "geo.txt")
    store.replace(b"x\n", LAST_MODIFIED)
    (tmp_path / "geo.txt.meta").write_bytes(b"{not json")
    assert store.last_modified() is None


def test_failed_replace_keeps_previous_content(tmp_path, monkeypatch):
    path = tmp_path / "geo.txt"
    store = GeoCacheStore(path)
    store.replace(b"old\n", LAST_MODIFIED)

    def boom(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(ha_geo_ip_cache.os, "replace", boom)
    with pytest.raises(OSError):
        store.replace(b"new\n")

    assert path.read_bytes() == b"old\n"
    assert store.last_modified() == LAST_MODIFIED
    assert sorted(os.listdir(tmp_path)) == ["geo.txt", "geo.txt.meta"]


def test_atomic_write_creates_parent(tmp_path):
    target = tmp_path / "sub" / "out.txt"
    atomic_write(target, b"a\n")
    assert target.read_bytes() == b"a\n"


def test_atomic_write_keeps_existing_mode(tmp_path):
    target = tmp_path / "okcidr.txt"
    target.write_bytes(b"old\n")
    os.chmod(target, 0o644)

    atomic_write(target, b"new\n")

    assert target.read_bytes() == b"new\n"
    assert stat.S_IMODE(os.stat(target).st_mode) == 0o644


def test_atomic_write_new_file_follows_umask(tmp_path):
    old_umask = os.umask(0o022)
    try:
        atomic_write(tmp_path / "okcidr.txt", b"a\n")
    finally:
        os.umask(old_umask)
    assert stat.S_IMODE(os.stat(tmp_path / "okcidr.txt").st_mode) == 0o644
