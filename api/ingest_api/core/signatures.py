"""HMAC verification for inbound crawl-provider webhooks.

The provider signs the raw request body with HMAC-SHA256 under a shared
secret and sends the digest as hex or base64, sometimes prefixed with
``sha256=``. Header naming is not consistent across provider versions, so a
small set of names is accepted.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

SIGNATURE_HEADERS = ("x-firecrawl-signature", "firecrawl-signature", "x-signature")
SIGNATURE_PREFIX = "sha256="

VerificationMethod = Literal["raw", "reserialized"]


@dataclass(slots=True)
class SignatureCheck:
    valid: bool
    method: VerificationMethod | None = None


def extract_signature(headers: Mapping[str, str]) -> str | None:
    lowered = {key.lower(): value for key, value in headers.items()}
    for name in SIGNATURE_HEADERS:
        value = lowered.get(name)
        if value and value.strip():
            return value.strip()
    return None


def sign_body(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signature_matches(body: bytes, signature: str | None, secret: str) -> bool:
    if not signature:
        return False

    cleaned = signature.strip()
    if cleaned[: len(SIGNATURE_PREFIX)].lower() == SIGNATURE_PREFIX:
        cleaned = cleaned[len(SIGNATURE_PREFIX) :]
    if not cleaned:
        return False

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    for candidate in _decode_candidates(cleaned):
        if len(candidate) == len(expected) and hmac.compare_digest(candidate, expected):
            return True
    return False


def reserialize_body(parsed: Any) -> bytes:
    return json.dumps(parsed, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def verify_webhook_signature(
    raw_body: bytes,
    signature: str | None,
    secret: str,
    *,
    parsed_body: Any = None,
    allow_reserialized: bool = False,
) -> SignatureCheck:
    """Check ``signature`` against the exact received bytes first.

    Only when that fails, and only if ``allow_reserialized`` is set, the parsed
    body is serialized again in compact form and checked. This tolerates an
    intermediary that re-encoded the JSON but never relaxes the primary check.
    """
    if signature_matches(raw_body, signature, secret):
        return SignatureCheck(valid=True, method="raw")

    if allow_reserialized and parsed_body is not None:
        reserialized = reserialize_body(parsed_body)
        if reserialized != raw_body and signature_matches(reserialized, signature, secret):
            return SignatureCheck(valid=True, method="reserialized")

    return SignatureCheck(valid=False)


def _decode_candidates(cleaned: str) -> list[bytes]:
    candidates: list[bytes] = []
    try:
        candidates.append(bytes.fromhex(cleaned))
    except ValueError:
        pass
    try:
        candidates.append(base64.b64decode(cleaned, validate=True))
    except (binascii.Error, ValueError):
        pass
    return candidates
