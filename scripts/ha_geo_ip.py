#!/usr/bin/env python3
"""
Build an HAProxy source ACL file from country codes and/or ASNs.

Keeps a local copy of the geolocation dataset (re-downloaded only when the server
reports a newer one and its SHA256 checks out), filters it by country, appends the
announced IPv4 blocks of each requested ASN and writes one CIDR per line.

Usage:
    python3 scripts/ha_geo_ip.py -c DK -c SE
    python3 scripts/ha_geo_ip.py -c dk -a 1234 -a AS5678 -o okcidr.txt
    python3 scripts/ha_geo_ip.py -c DK --json-report report.json

The output is meant for an ACL such as:
    acl acl_geo_ok src -f /etc/haproxy/okcidr.txt
"""

import argparse
import logging
import sys

from ha_geo_ip_asn import ASN_BASE_URL, CONCURRENCY
from ha_geo_ip_http import REQUEST_TIMEOUT
from ha_geo_ip_pipeline import (
    GEO_URL, SHA256_URL, FilterRequest, PipelineReport, dump_report, run_pipeline,
)

DEFAULT_CACHE_FILE = "haproxy_geo_ip.txt"
DEFAULT_OUTPUT_FILE = "okcidr.txt"

log = logging.getLogger("ha_geo_ip")


def parse_asn(value):
    """argparse type: accepts '1234' or 'AS1234'."""
    text = value.strip()
    if text[:2].upper() == "AS":
        text = text[2:]
    if not (text.isascii() and text.isdigit()) or int(text) <= 0:
        raise argparse.ArgumentTypeError(f"invalid ASN: {value!r}")
    return int(text)


def build_parser():
    parser = argparse.ArgumentParser(description="Filter IP geolocation data by country codes and ASNs")
    parser.add_argument("-c", "--country", dest="countries", action="append", required=True,
                        help="Country code to include (repeatable, case-insensitive)")
    parser.add_argument("-a", "--asn", dest="asns", action="append", type=parse_asn, default=[],
                        help="ASN to include, e.g. 1234 or AS1234 (repeatable)")
    parser.add_argument("--cache", default=DEFAULT_CACHE_FILE,
                        help=f"Local copy of the geolocation dataset (default: {DEFAULT_CACHE_FILE})")
    parser.add_argument("-o", "--output", default=DEFAULT_OUTPUT_FILE,
                        help=f"ACL file to write (default: {DEFAULT_OUTPUT_FILE})")
    parser.add_argument("--geo-url", default=GEO_URL, help="Geolocation dataset URL")
    parser.add_argument("--sha256-url", default=SHA256_URL, help="SHA256 reference URL for the dataset")
    parser.add_argument("--asn-base-url", default=ASN_BASE_URL, help="Base URL of per-ASN listings")
    parser.add_argument("--timeout", type=float, default=REQUEST_TIMEOUT,
                        help=f"Per-request timeout in seconds (default: {REQUEST_TIMEOUT})")
    parser.add_argument("--concurrency", type=int, default=CONCURRENCY,
                        help=f"Parallel ASN fetches (default: {CONCURRENCY})")
    parser.add_argument("--json-report", help="Also write the run summary as JSON to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def print_summary(report: PipelineReport):
    print("\n" + "═" * 60)
    print("SUMMARY")
    print("═" * 60)
    for code, count in report.per_country_counts.items():
        print(f"{code} CIDR blocks: {count}")
    print(f"Total matching blocks: {report.country_total}")

    if report.asn_results:
        print("\nASN Summary:")
        for result in report.asn_results:
            if result.ok:
                print(f"AS{result.asn} CIDR blocks: {len(result.cidrs)}")
            else:
                print(f"AS{result.asn} CIDR blocks: 0 (FAILED: {result.error})")
        print(f"Total ASN blocks: {report.asn_total}")

    print(f"\nGeolocation dataset: {report.geo_status}"
          f" (cache {'updated' if report.cache_updated else 'not updated'})")
    print(f"Wrote {report.lines_written} lines to: {report.output_path}")

    if report.warnings:
        print("\nWarnings:")
        for msg in report.warnings:
            print(f"  WARNING: {msg}")
    print("═" * 60)


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("urllib3").setLevel(logging.INFO)

    try:
        request = FilterRequest.build(args.countries, args.asns)
    except ValueError as e:
        log.error(str(e))
        return 2

    report = run_pipeline(
        request,
        cache_path=args.cache,
        output_path=args.output,
        geo_url=args.geo_url,
        checksum_url=args.sha256_url,
        asn_base_url=args.asn_base_url,
        timeout=args.timeout,
        concurrency=args.concurrency,
    )
    print_summary(report)

    if args.json_report:
        dump_report(report, args.json_report)
        log.info(f"Report written to: {args.json_report}")
    return 0


def cli():
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n\nAborted by user.")
        sys.exit(1)
    except Exception as e:
        log.error(f"An error occurred: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
