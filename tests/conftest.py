import hashlib
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime

import pytest
import requests
from requests.structures import CaseInsensitiveDict

GEO_URL = "https://geo.example/haproxy_geo_ip.txt"
SHA_URL = "https://geo.example/haproxy_geo_ip.sha256"
ASN_BASE = "https://asn.example/as"

LAST_MODIFIED = datetime(2025, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

SAMPLE_DATASET = (
    b"5.44.64.0/19 DK\n"
    b"5.103.128.0/19 SE\n"
    b"203.0.113.0/24 FR\n"
)


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None):
        self.status_code = status_code
        self.content = content
        self.headers = CaseInsensitiveDict(headers or {})

    @property
    def text(self):
        return self.content.decode("utf-8")

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Stands in for requests / requests.Session: routes map URL -> response, callable or exception."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def get(self, url, headers=None, timeout=None):
        self.calls.append((url, dict(headers or {}), timeout))
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404)
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(url, headers or {})
        return route

    def calls_to(self, url):
        return [c for c in self.calls if c[0] == url]


class FakeGeoServer:
    """Serves a dataset honouring If-Modified-Since, plus its sha256 file."""

    def __init__(self, body=SAMPLE_DATASET, last_modified=LAST_MODIFIED, digest=None):
        self.body = body
        self.last_modified = last_modified
        self.digest = digest

    def dataset(self, url, headers):
        ims = headers.get("If-Modified-Since")
        if ims and self.last_modified is not None:
            if parsedate_to_datetime(ims) >= self.last_modified:
                return FakeResponse(304)
        extra = {}
        if self.last_modified is not None:
            extra["Last-Modified"] = format_datetime(self.last_modified, usegmt=True)
        return FakeResponse(200, self.body, extra)

    def checksum(self, url, headers):
        digest = self.digest or hashlib.sha256(self.body).hexdigest()
        return FakeResponse(200, f"{digest}  haproxy_geo_ip.txt\n".encode())

    def routes(self):
        return {GEO_URL: self.dataset, SHA_URL: self.checksum}


@pytest.fixture
def geo_server():
    return FakeGeoServer()
