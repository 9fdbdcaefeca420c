from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Mapping


def generate_credential(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(32)}"


def hash_credential(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def verify_credential(raw: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_credential(raw), stored_hash)


def display_prefix(raw: str) -> str:
    return raw[:12]


def extract_credential(headers: Mapping[str, str]) -> str | None:
    """Pull an API key from ``Authorization: Bearer|ApiKey`` or ``X-API-Key``."""
    authorization = (headers.get("authorization") or "").strip()
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() in {"bearer", "apikey"} and value.strip():
        return value.strip()
    api_key = (headers.get("x-api-key") or "").strip()
    return api_key or None
