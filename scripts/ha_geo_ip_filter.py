#!/usr/bin/env python3
"""
Streaming parser for the "<CIDR> <CC>" geolocation dataset.

Lines that do not split into exactly two fields are skipped. Everything here is a
generator so arbitrarily large datasets are processed in one forward pass.
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional


@dataclass(frozen=True)
class GeoRecord:
    cidr: str
    country: str


def normalize_country(code: str) -> str:
    return code.strip().upper()


def parse_geo_line(line: str) -> Optional[GeoRecord]:
    columns = line.split()
    if len(columns) != 2:
        return None
    return GeoRecord(cidr=columns[0], country=normalize_country(columns[1]))


def iter_geo_records(lines: Iterable[str]) -> Iterator[GeoRecord]:
    for line in lines:
        record = parse_geo_line(line)
        if record is not None:
            yield record


def filter_by_countries(records: Iterable[GeoRecord], countries) -> Iterator[GeoRecord]:
    wanted = {normalize_country(cc) for cc in countries}
    for record in records:
        if record.country in wanted:
            yield record
