from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from starlette.datastructures import Headers


class SignatureVerificationError(Exception):
    pass


def _header_value(headers: Headers, candidates: list[str]) -> Optional[str]:
    for key in candidates:
        value = headers.get(key)
        if value:
            return value.strip()
    return None


def _verify_hmac_sha256(raw_body: bytes, secret: str, incoming_signature: str) -> bool:
    provided = incoming_signature.strip()
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided)


def sign_payload(raw_body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_whatsapp_signature(headers: Headers, raw_body: bytes, secret: str) -> None:
    if not secret:
        return
    signature = _header_value(
        headers,
        ["x-hub-signature-256", "x-wuzapi-signature", "x-webhook-signature"],
    )
    if not signature:
        raise SignatureVerificationError("missing whatsapp signature header")
    if not _verify_hmac_sha256(raw_body, secret, signature):
        raise SignatureVerificationError("invalid whatsapp signature")


def verify_webhook_secret(provided: Optional[str], expected: str) -> bool:
    """Subscription handshake check; an unset secret never verifies."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
