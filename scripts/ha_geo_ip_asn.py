#!/usr/bin/env python3
"""
Fetch announced IPv4 blocks per ASN from the ipverse asn-ip listings.

Each ASN is fetched independently; a 404 or network error is recorded on that
ASN's AsnResult and never interrupts the others.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import List, Optional

import requests

from ha_geo_ip_http import REQUEST_TIMEOUT, fetch_text

log = logging.getLogger(__name__)

ASN_BASE_URL = "https://raw.githubusercontent.com/ipverse/asn-ip/master/as"
CONCURRENCY = 8


@dataclass
class AsnResult:
    asn: int
    cidrs: List[str] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def asn_url(asn, base_url=ASN_BASE_URL) -> str:
    return f"{base_url.rstrip('/')}/{asn}/ipv4-aggregated.txt"


def parse_asn_listing(text: str) -> List[str]:
    """One CIDR per line, source order. Blank and '#' lines are dropped."""
    cidrs = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        cidrs.append(line)
    return cidrs


def fetch_asn(asn, base_url=ASN_BASE_URL, session=None, timeout=REQUEST_TIMEOUT) -> AsnResult:
    url = asn_url(asn, base_url)
    log.info(f"Fetching ASN data from: {url}")
    try:
        text = fetch_text(url, session=session, timeout=timeout)
    except requests.RequestException as e:
        log.warning(f"Failed to fetch AS{asn}: {e}")
        return AsnResult(asn, [], e)

    cidrs = parse_asn_listing(text)
    log.info(f"AS{asn} CIDR blocks fetched: {len(cidrs)}")
    return AsnResult(asn, cidrs)


def fetch_asns(asns, base_url=ASN_BASE_URL, session=None, timeout=REQUEST_TIMEOUT,
               concurrency=CONCURRENCY) -> List[AsnResult]:
    """Fetch all ASNs in parallel; results come back in the order requested."""
    asn_list = list(asns)
    if not asn_list:
        return []

    results: List[Optional[AsnResult]] = [None] * len(asn_list)
    start_time = time.time()

    with ThreadPoolExecutor(max_workers=max(1, min(concurrency, len(asn_list)))) as executor:
        futures = {
            executor.submit(fetch_asn, asn, base_url, session, timeout): idx
            for idx, asn in enumerate(asn_list)
        }
        for future in as_completed(futures):
            results[futures[future]] = future.result()

    failed = sum(1 for r in results if not r.ok)
    elapsed = time.time() - start_time
    log.info(f"Fetched {len(asn_list) - failed}/{len(asn_list)} ASNs in {elapsed:.1f}s")
    if failed > 0:
        log.warning(f"{failed} ASN(s) failed to fetch")
    return results
