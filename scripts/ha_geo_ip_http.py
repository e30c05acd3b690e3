#!/usr/bin/env python3
"""
HTTP helpers shared by the geolocation and ASN stages.

conditional_get() performs a GET guarded by If-Modified-Since and reports one of
three outcomes (unchanged / updated / failed) instead of raising, so callers can
degrade to their local cache. The freshness timestamp is always passed in and
handed back explicitly.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Optional

import requests

log = logging.getLogger(__name__)

UA = {"User-Agent": "ha-geo-ip/1.0 (+https://wetmore.ca/ip/)"}
REQUEST_TIMEOUT = 30  # seconds, per request

UNCHANGED = "unchanged"
UPDATED = "updated"
FAILED = "failed"


class RemoteStatusError(Exception):
    """Raised (and captured) when a server answers with a non-2xx/non-304 status."""

    def __init__(self, url, status_code):
        super().__init__(f"HTTP {status_code} from {url}")
        self.url = url
        self.status_code = status_code


@dataclass(frozen=True)
class FetchOutcome:
    status: str
    body: Optional[bytes] = None
    last_modified: Optional[datetime] = None
    error: Optional[Exception] = None

    @classmethod
    def unchanged(cls):
        return cls(UNCHANGED)

    @classmethod
    def updated(cls, body, last_modified=None):
        return cls(UPDATED, body=body, last_modified=last_modified)

    @classmethod
    def failed(cls, error):
        return cls(FAILED, error=error)


def format_http_date(dt: datetime) -> str:
    """Render an aware datetime as an IMF-fixdate string (RFC 7231)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return format_datetime(dt.astimezone(timezone.utc), usegmt=True)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an HTTP date header. Returns None when missing or unparseable."""
    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        log.debug(f"Unparseable HTTP date: {value!r}")
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def conditional_get(url, last_modified=None, session=None, timeout=REQUEST_TIMEOUT) -> FetchOutcome:
    """GET url, sending If-Modified-Since when a local timestamp is known."""
    http = session or requests
    headers = dict(UA)
    if last_modified is not None:
        headers["If-Modified-Since"] = format_http_date(last_modified)

    log.debug(f"GET {url} headers={headers!r}")
    try:
        r = http.get(url, headers=headers, timeout=timeout)
    except requests.RequestException as e:
        log.debug(f"{type(e).__name__} fetching {url}: {e}")
        return FetchOutcome.failed(e)

    if r.status_code == requests.codes["not_modified"]:
        return FetchOutcome.unchanged()

    if not 200 <= r.status_code < 300:
        return FetchOutcome.failed(RemoteStatusError(url, r.status_code))

    return FetchOutcome.updated(r.content, parse_http_date(r.headers.get("Last-Modified")))


def fetch_text(url, session=None, timeout=REQUEST_TIMEOUT) -> str:
    """Unconditional GET returning the decoded body. Raises requests.RequestException."""
    http = session or requests
    r = http.get(url, headers=dict(UA), timeout=timeout)
    r.raise_for_status()
    return r.text
