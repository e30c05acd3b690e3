#!/usr/bin/env python3
"""
On-disk snapshot of the geolocation dataset.

The freshness record is a small JSON sidecar (<cache>.meta) holding the server's
Last-Modified header, read back for the next If-Modified-Since. When the server
sent none, the sidecar says so and the next fetch is unconditional. The cache
file's mtime is also stamped with Last-Modified; it is only consulted for caches
that have no sidecar.
"""

import logging
import os
import stat
import tempfile
from datetime import datetime, timezone
from typing import Iterator, Optional, Tuple

import orjson

from ha_geo_ip_http import format_http_date, parse_http_date

log = logging.getLogger(__name__)

META_SUFFIX = ".meta"


def _target_mode(path) -> int:
    """Mode of the file being replaced, or what a plain open() would create."""
    try:
        return stat.S_IMODE(os.stat(path).st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def atomic_write(path, data: bytes, mtime: Optional[datetime] = None):
    """Write data to path via a temp file + os.replace. Prior content survives any failure."""
    path = os.path.abspath(path)
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)

    with tempfile.NamedTemporaryFile("wb", delete=False, dir=directory, prefix=".tmp-") as tmpf:
        tmpname = tmpf.name
    try:
        with open(tmpname, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        # NamedTemporaryFile is 0600; keep the target readable the way it was
        os.chmod(tmpname, _target_mode(path))
        if mtime is not None:
            ts = mtime.timestamp()
            os.utime(tmpname, (ts, ts))
        os.replace(tmpname, path)
    except BaseException:
        if os.path.exists(tmpname):
            os.unlink(tmpname)
        raise


class GeoCacheStore:
    def __init__(self, path):
        self.path = path
        self.meta_path = f"{path}{META_SUFFIX}"

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def last_modified(self) -> Optional[datetime]:
        """Remote Last-Modified of the cached copy, None when unknown or no cache."""
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None

        try:
            with open(self.meta_path, "rb") as f:
                meta = orjson.loads(f.read())
        except FileNotFoundError:
            return datetime.fromtimestamp(int(st.st_mtime), tz=timezone.utc)
        except orjson.JSONDecodeError:
            log.warning(f"Unreadable cache metadata {self.meta_path}; will re-download")
            return None

        if not isinstance(meta, dict):
            return None
        return parse_http_date(meta.get("last-modified"))

    def load(self) -> Optional[Tuple[bytes, Optional[datetime]]]:
        if not self.exists():
            return None
        with open(self.path, "rb") as f:
            data = f.read()
        return data, self.last_modified()

    def iter_lines(self) -> Iterator[str]:
        """Yield the cached dataset line by line."""
        with open(self.path, encoding="utf-8", errors="replace") as f:
            for line in f:
                yield line

    def replace(self, body: bytes, last_modified: Optional[datetime] = None):
        """Atomically swap in a verified body. Raises OSError, leaving the old cache intact."""
        atomic_write(self.path, body, mtime=last_modified)
        log.info(f"Cache updated: {self.path} ({len(body):,} bytes)")

        meta = {"last-modified": format_http_date(last_modified) if last_modified else None}
        try:
            atomic_write(self.meta_path, orjson.dumps(meta))
        except OSError as e:
            # a stale or missing sidecar only costs a re-download on the next run
            log.warning(f"Could not write cache metadata {self.meta_path}: {e}")
