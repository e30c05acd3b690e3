#!/usr/bin/env python3
"""
Fetch-verify-filter pipeline behind ha_geo_ip.py.

  1. Conditionally refresh the cached geolocation dataset (If-Modified-Since),
     accepting a new body only when its SHA256 matches the published digest.
  2. Stream the cached dataset and keep the blocks of the requested countries.
  3. Fetch the aggregated IPv4 listing of every requested ASN (in parallel,
     failures isolated per ASN).
  4. Write country blocks followed by ASN blocks, one per line, to the ACL file.

Stages 1-2 and stage 3 are independent and run concurrently.
"""

import io
import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import orjson
import requests

from ha_geo_ip_asn import ASN_BASE_URL, CONCURRENCY, AsnResult, fetch_asns
from ha_geo_ip_checksum import digest_matches
from ha_geo_ip_cache import GeoCacheStore, atomic_write
from ha_geo_ip_filter import filter_by_countries, iter_geo_records, normalize_country
from ha_geo_ip_http import FAILED, REQUEST_TIMEOUT, UNCHANGED, conditional_get, fetch_text

log = logging.getLogger(__name__)

GEO_URL = "https://wetmore.ca/ip/haproxy_geo_ip.txt"
SHA256_URL = "https://wetmore.ca/ip/haproxy_geo_ip.sha256"

GEO_UPDATED = "updated"
GEO_UNCHANGED = "unchanged"
GEO_REJECTED = "rejected"  # downloaded but failed verification
GEO_FAILED = "failed"


# ═══════════════════════════════════════════════════════════════════════════
# Data model
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FilterRequest:
    countries: Tuple[str, ...]
    asns: Tuple[int, ...] = ()

    def __post_init__(self):
        # normalized and de-duplicated here (first-seen order), however the request is built
        countries = (self.countries,) if isinstance(self.countries, str) else self.countries
        codes = []
        for cc in countries or ():
            cc = normalize_country(cc)
            if cc and cc not in codes:
                codes.append(cc)
        if not codes:
            raise ValueError("at least one country code is required")

        numbers = []
        for asn in self.asns or ():
            asn = int(asn)
            if asn <= 0:
                raise ValueError(f"invalid ASN: {asn}")
            if asn not in numbers:
                numbers.append(asn)
        object.__setattr__(self, "countries", tuple(codes))
        object.__setattr__(self, "asns", tuple(numbers))

    @classmethod
    def build(cls, countries, asns=()):
        return cls(tuple(countries or ()), tuple(asns or ()))


@dataclass
class GeoRefresh:
    status: str
    cache_updated: bool = False
    body: Optional[bytes] = None  # verified body kept in memory when caching it failed
    warnings: List[str] = field(default_factory=list)


@dataclass
class PipelineReport:
    per_country_counts: Dict[str, int]
    country_total: int
    per_asn_counts: Dict[int, int]
    asn_total: int
    cache_updated: bool
    geo_status: str = GEO_UNCHANGED
    asn_results: List[AsnResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    output_path: Optional[str] = None
    lines_written: int = 0

    @property
    def failed_asns(self) -> List[int]:
        return [r.asn for r in self.asn_results if not r.ok]

    def to_dict(self) -> dict:
        return {
            "per_country_counts": self.per_country_counts,
            "country_total": self.country_total,
            "per_asn_counts": self.per_asn_counts,
            "asn_total": self.asn_total,
            "cache_updated": self.cache_updated,
            "geo_status": self.geo_status,
            "asn_errors": {r.asn: str(r.error) for r in self.asn_results if not r.ok},
            "warnings": self.warnings,
            "output_path": self.output_path,
            "lines_written": self.lines_written,
        }


def dump_report(report: PipelineReport, path):
    with open(path, "wb") as f:
        f.write(orjson.dumps(report.to_dict(), option=orjson.OPT_NON_STR_KEYS | orjson.OPT_INDENT_2))


# ═══════════════════════════════════════════════════════════════════════════
# Step 1: Refresh geolocation cache
# ═══════════════════════════════════════════════════════════════════════════

def refresh_geo_cache(store: GeoCacheStore, geo_url=GEO_URL, checksum_url=SHA256_URL,
                      session=None, timeout=REQUEST_TIMEOUT) -> GeoRefresh:
    """Download a newer dataset if there is one; never raises for remote problems."""
    log.info(f"Fetching IP geolocation data from: {geo_url}")
    outcome = conditional_get(geo_url, store.last_modified(), session=session, timeout=timeout)

    if outcome.status == UNCHANGED:
        log.info("Local file is already up-to-date. Processing local file.")
        return GeoRefresh(GEO_UNCHANGED)

    if outcome.status == FAILED:
        msg = f"Failed to fetch geolocation data: {outcome.error}"
        log.warning(msg)
        return GeoRefresh(GEO_FAILED, warnings=[msg])

    log.info(f"New version of the file found ({len(outcome.body):,} bytes)")
    log.info(f"Verifying integrity with SHA256 from: {checksum_url}")
    try:
        reference = fetch_text(checksum_url, session=session, timeout=timeout)
    except requests.RequestException as e:
        msg = f"Could not fetch checksum, keeping previous cache: {e}"
        log.warning(msg)
        return GeoRefresh(GEO_REJECTED, warnings=[msg])

    if not digest_matches(outcome.body, reference):
        msg = "SHA256 mismatch! Downloaded file is corrupt, keeping previous cache"
        log.warning(msg)
        return GeoRefresh(GEO_REJECTED, warnings=[msg])
    log.info("SHA256 verification successful!")

    try:
        store.replace(outcome.body, outcome.last_modified)
    except OSError as e:
        msg = f"Could not update cache {store.path}: {e}; using download for this run only"
        log.warning(msg)
        return GeoRefresh(GEO_UPDATED, cache_updated=False, body=outcome.body, warnings=[msg])

    return GeoRefresh(GEO_UPDATED, cache_updated=True)


# ═══════════════════════════════════════════════════════════════════════════
# Step 2: Filter by country
# ═══════════════════════════════════════════════════════════════════════════

def _dataset_lines(store: GeoCacheStore, refresh: GeoRefresh):
    if refresh.body is not None:
        return (line.decode("utf-8", errors="replace") for line in io.BytesIO(refresh.body))
    if store.exists():
        return store.iter_lines()
    return None


def filter_countries(lines, countries) -> Tuple[List[str], Dict[str, int]]:
    """Return matching CIDRs (dataset order) and per-country counts (zeros included)."""
    wanted = list(dict.fromkeys(normalize_country(cc) for cc in countries))
    counts = Counter()
    cidrs = []
    for record in filter_by_countries(iter_geo_records(lines), wanted):
        cidrs.append(record.cidr)
        counts[record.country] += 1
    return cidrs, {cc: counts.get(cc, 0) for cc in wanted}


def _geo_stage(request, store, geo_url, checksum_url, session, timeout):
    refresh = refresh_geo_cache(store, geo_url, checksum_url, session=session, timeout=timeout)
    lines = _dataset_lines(store, refresh)
    if lines is None:
        msg = f"No cached geolocation dataset at {store.path}; country filter yields nothing"
        log.warning(msg)
        refresh.warnings.append(msg)
        lines = []

    log.info(f"Processing CIDR blocks for country codes: {list(request.countries)}...")
    try:
        cidrs, counts = filter_countries(lines, request.countries)
    except OSError as e:
        msg = f"Could not read geolocation dataset {store.path}: {e}"
        log.warning(msg)
        refresh.warnings.append(msg)
        cidrs, counts = filter_countries([], request.countries)
    return refresh, cidrs, counts


# ═══════════════════════════════════════════════════════════════════════════
# Step 3: Merge and write
# ═══════════════════════════════════════════════════════════════════════════

def merge_blocks(country_cidrs, asn_results) -> List[str]:
    """Country blocks first, then each ASN's blocks in request order. No dedup."""
    blocks = list(country_cidrs)
    for result in asn_results:
        blocks.extend(result.cidrs)
    return blocks


def write_acl(path, country_cidrs, asn_results) -> int:
    blocks = merge_blocks(country_cidrs, asn_results)
    data = "".join(f"{cidr}\n" for cidr in blocks).encode("utf-8")
    atomic_write(path, data)
    log.info(f"Filtered CIDR blocks written to: {path} ({len(blocks)} lines)")
    return len(blocks)


# ═══════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════════════

def run_pipeline(request: FilterRequest, cache_path, output_path,
                 geo_url=GEO_URL, checksum_url=SHA256_URL, asn_base_url=ASN_BASE_URL,
                 session=None, timeout=REQUEST_TIMEOUT, concurrency=CONCURRENCY) -> PipelineReport:
    """Run one full update. Only an OSError writing output_path is fatal."""
    store = GeoCacheStore(cache_path)

    with ThreadPoolExecutor(max_workers=1) as executor:
        asn_future = None
        if request.asns:
            log.info(f"Processing ASN data for: {list(request.asns)}...")
            asn_future = executor.submit(fetch_asns, request.asns, asn_base_url,
                                         session, timeout, concurrency)

        refresh, country_cidrs, country_counts = _geo_stage(
            request, store, geo_url, checksum_url, session, timeout)
        asn_results = asn_future.result() if asn_future is not None else []

    warnings = list(refresh.warnings)
    for result in asn_results:
        if not result.ok:
            warnings.append(f"AS{result.asn} skipped: {result.error}")

    lines_written = write_acl(output_path, country_cidrs, asn_results)
    if lines_written == 0:
        warnings.append(f"No CIDR blocks matched; {output_path} is empty")

    per_asn_counts = {r.asn: len(r.cidrs) for r in asn_results}
    return PipelineReport(
        per_country_counts=country_counts,
        country_total=sum(country_counts.values()),
        per_asn_counts=per_asn_counts,
        asn_total=sum(per_asn_counts.values()),
        cache_updated=refresh.cache_updated,
        geo_status=refresh.status,
        asn_results=asn_results,
        warnings=warnings,
        output_path=str(output_path),
        lines_written=lines_written,
    )
