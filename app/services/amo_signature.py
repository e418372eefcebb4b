"""Подписи запросов amojo (API чатов amoCRM)."""

import hashlib
import hmac
from email.utils import formatdate
from typing import Optional

CONTENT_TYPE = "application/json"


def content_md5(body: bytes) -> str:
    return hashlib.md5(body).hexdigest()


def sign_request_headers(
    method: str,
    path: str,
    body: bytes,
    secret: str,
    date: Optional[str] = None,
) -> dict:
    """Headers for an amojo request. `body` must be the exact bytes sent."""
    date = date or formatdate(usegmt=True)
    checksum = content_md5(body)
    sign_string = "\n".join([method.upper(), checksum, CONTENT_TYPE, date, path])
    signature = hmac.new(secret.encode("utf-8"), sign_string.encode("utf-8"), hashlib.sha1).hexdigest()
    return {
        "Date": date,
        "Content-Type": CONTENT_TYPE,
        "Content-MD5": checksum,
        "X-Signature": signature,
    }


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha1).hexdigest()
    return hmac.compare_digest(signature.strip().lower().encode("utf-8"), expected.encode("utf-8"))
