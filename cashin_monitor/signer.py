from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class SignedEnvelope:
    raw_body: str
    timestamp: str
    signature: str


def serialize_body(payload: Any) -> str:
    """Compact JSON with insertion key order, the exact text that gets signed and sent."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def sign(secret: str, raw_body: str, timestamp: str) -> str:
    """
    HMAC-SHA256 over `raw_body + timestamp`, hex encoded.

    The HMAC key is the base64 text of the UTF-8 secret, not the secret itself.
    """
    key = base64.b64encode((secret or "").encode("utf-8"))
    message = f"{raw_body}{timestamp}".encode("utf-8")
    return hmac.new(key, message, hashlib.sha256).hexdigest()


def build_signed_envelope(secret: str, payload: Any, timestamp: str) -> SignedEnvelope:
    raw_body = serialize_body(payload)
    return SignedEnvelope(raw_body=raw_body, timestamp=timestamp, signature=sign(secret, raw_body, timestamp))
