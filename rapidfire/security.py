"""Утилиты безопасности: подписанные токены доступа, хэширование паролей."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any

from rapidfire.config import get_settings
from rapidfire.errors import Unauthenticated

PBKDF2_ITERATIONS = 210_000


def _secret_key() -> bytes:
    return get_settings().secret_key.encode("utf-8")


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64d(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _secure_compare(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _jwt_sign(unsigned_token: str) -> str:
    sig = hmac.new(_secret_key(), unsigned_token.encode("utf-8"), hashlib.sha256).digest()
    return _b64e(sig)


def _jwt_encode(claims: dict[str, Any]) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64e(json.dumps(header, separators=(",", ":")).encode("utf-8"))
    payload_b64 = _b64e(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
    unsigned = f"{header_b64}.{payload_b64}"
    return f"{unsigned}.{_jwt_sign(unsigned)}"


def _jwt_decode(token: str | None) -> dict[str, Any]:
    if not token:
        raise Unauthenticated()

    try:
        header_b64, payload_b64, signature = token.split(".", 2)
        unsigned = f"{header_b64}.{payload_b64}"
        expected_sig = _jwt_sign(unsigned)
    except ValueError as exc:
        raise Unauthenticated("Invalid token") from exc

    if not _secure_compare(expected_sig, signature):
        raise Unauthenticated("Invalid token")

    try:
        header = json.loads(_b64d(header_b64).decode("utf-8"))
        payload = json.loads(_b64d(payload_b64).decode("utf-8"))
    except (ValueError, json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise Unauthenticated("Invalid token") from exc

    if header.get("alg") != "HS256" or header.get("typ") != "JWT":
        raise Unauthenticated("Invalid token")

    exp = payload.get("exp")
    if not isinstance(exp, int) or exp < int(time.time()):
        raise Unauthenticated("Token expired")

    return payload


def hash_password(password: str) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${_b64e(salt)}${_b64e(digest)}"


def verify_password(password: str, password_hash: str) -> tuple[bool, bool]:
    """Вернет (is_valid, needs_rehash)."""
    if not password_hash.startswith("pbkdf2_sha256$"):
        return False, False
    try:
        _, iters_raw, salt_raw, digest_raw = password_hash.split("$", 3)
        iterations = int(iters_raw)
        salt = _b64d(salt_raw)
        expected = _b64d(digest_raw)
    except (ValueError, TypeError):
        return False, False
    actual = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    valid = hmac.compare_digest(actual, expected)
    return valid, valid and iterations < PBKDF2_ITERATIONS


def create_access_token(user_id: int, ttl_seconds: int | None = None) -> str:
    now = int(time.time())
    claims = {
        "typ": "access",
        "sub": str(user_id),
        "iat": now,
        "exp": now + (ttl_seconds if ttl_seconds is not None else get_settings().token_ttl_seconds),
    }
    return _jwt_encode(claims)


def verify_access_token(token: str | None) -> int:
    payload = _jwt_decode(token)
    if payload.get("typ") != "access":
        raise Unauthenticated("Invalid session")

    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub.isdigit():
        raise Unauthenticated("Invalid session")

    return int(sub)


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()
