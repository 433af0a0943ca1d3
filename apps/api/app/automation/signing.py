from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def _as_bytes(value: bytes | str) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def compute_digest(body: bytes | str, secret: str) -> str:
    return hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()


def sign_payload(body: bytes | str, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}{compute_digest(body, secret)}"


def verify_signature(body: bytes | str, signature: str | None, secret: str) -> bool:
    if not signature or not secret:
        return False
    provided = signature.strip()
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    return hmac.compare_digest(provided.lower(), compute_digest(body, secret))
