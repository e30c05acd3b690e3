#!/usr/bin/env python3
"""Digest helpers used to gate geolocation dataset updates."""

import hashlib
import hmac

DIGEST_ALGORITHM = "sha256"


def compute_digest(data: bytes, algorithm=DIGEST_ALGORITHM) -> str:
    h = hashlib.new(algorithm)
    h.update(data)
    return h.hexdigest()


def parse_reference_digest(text: str) -> str:
    """First token of a checksum file ("<hex>  <filename>"), lowercased."""
    parts = (text or "").split()
    return parts[0].lower() if parts else ""


def digest_matches(body: bytes, reference_text: str, algorithm=DIGEST_ALGORITHM) -> bool:
    """True if body hashes to the digest published in reference_text."""
    expected = parse_reference_digest(reference_text)
    if not expected:
        return False
    return hmac.compare_digest(compute_digest(body, algorithm).encode(), expected.encode("utf-8"))
