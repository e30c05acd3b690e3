import hashlib

from ha_geo_ip_checksum import compute_digest, digest_matches, parse_reference_digest

BODY = b"5.44.64.0/19 DK\n"
DIGEST = hashlib.sha256(BODY).hexdigest()


def test_compute_digest():
    assert compute_digest(BODY) == DIGEST
    assert compute_digest(BODY, "md5") == hashlib.md5(BODY).hexdigest()


def test_parse_reference_with_filename():
    assert parse_reference_digest(f"  {DIGEST.upper()}  haproxy_geo_ip.txt\n") == DIGEST
    assert parse_reference_digest("") == ""
    assert parse_reference_digest("   \n") == ""


def test_matches_case_insensitive():
    assert digest_matches(BODY, DIGEST.upper() + "\n")


def test_mismatch():
    assert not digest_matches(BODY + b"tampered", DIGEST)
    assert not digest_matches(BODY, "")
    assert not digest_matches(BODY, "zzzz")
    assert not digest_matches(BODY, "ünïcode")
