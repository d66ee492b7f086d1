from __future__ import annotations

import base64
import hashlib
import hmac
import json

from ingest_api.core.signatures import (
    extract_signature,
    sign_body,
    signature_matches,
    verify_webhook_signature,
)

SECRET = "shared-secret"
BODY = json.dumps(
    {"type": "crawl.completed", "metadata": {"jobId": "job-1"}, "data": [{"markdown": "Cessna 172"}]},
    separators=(",", ":"),
).encode("utf-8")


def test_hex_signature_with_and_without_prefix_verifies() -> None:
    signature = sign_body(BODY, SECRET)

    assert signature_matches(BODY, signature, SECRET)
    assert signature_matches(BODY, f"sha256={signature}", SECRET)
    assert signature_matches(BODY, f"SHA256={signature.upper()}", SECRET)


def test_base64_signature_verifies() -> None:
    digest = hmac.new(SECRET.encode("utf-8"), BODY, hashlib.sha256).digest()

    assert signature_matches(BODY, base64.b64encode(digest).decode("ascii"), SECRET)


def test_any_single_byte_mutation_invalidates_signature() -> None:
    signature = sign_body(BODY, SECRET)

    assert verify_webhook_signature(BODY, signature, SECRET).valid
    for index in range(len(BODY)):
        mutated = bytearray(BODY)
        mutated[index] ^= 0x01
        assert not verify_webhook_signature(bytes(mutated), signature, SECRET).valid, index


def test_wrong_secret_and_garbage_signatures_are_rejected() -> None:
    assert not signature_matches(BODY, sign_body(BODY, "other-secret"), SECRET)
    assert not signature_matches(BODY, "not-a-digest", SECRET)
    assert not signature_matches(BODY, "sha256=", SECRET)
    assert not signature_matches(BODY, None, SECRET)


def test_reserialized_body_is_only_tried_when_allowed() -> None:
    parsed = {"type": "crawl.page", "metadata": {"jobId": "job-1"}, "data": [{"markdown": "Schüler"}]}
    received = json.dumps(parsed, indent=2).encode("utf-8")
    compact = json.dumps(parsed, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    signature = sign_body(compact, SECRET)

    strict = verify_webhook_signature(received, signature, SECRET, parsed_body=parsed)
    relaxed = verify_webhook_signature(received, signature, SECRET, parsed_body=parsed, allow_reserialized=True)

    assert not strict.valid
    assert relaxed.valid
    assert relaxed.method == "reserialized"


def test_raw_match_wins_over_reserialized() -> None:
    parsed = json.loads(BODY)
    check = verify_webhook_signature(
        BODY,
        sign_body(BODY, SECRET),
        SECRET,
        parsed_body=parsed,
        allow_reserialized=True,
    )

    assert check.valid
    assert check.method == "raw"


def test_extract_signature_accepts_known_header_names_case_insensitively() -> None:
    assert extract_signature({"X-Firecrawl-Signature": "abc"}) == "abc"
    assert extract_signature({"firecrawl-signature": " def "}) == "def"
    assert extract_signature({"X-SIGNATURE": "ghi"}) == "ghi"
    assert extract_signature({"X-Other": "nope"}) is None
