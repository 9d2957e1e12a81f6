from __future__ import annotations

import base64
import hashlib
import hmac
import re
import time
from collections.abc import Sequence

_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")


class InvalidShopError(ValueError):
    def __init__(self, shop: str | None) -> None:
        super().__init__("shop must be a valid *.myshopify.com domain")
        self.shop = shop


def normalize_shop_domain(shop: str | None) -> str:
    normalized = (shop or "").strip().lower()
    if not _SHOP_DOMAIN_RE.fullmatch(normalized):
        raise InvalidShopError(shop)
    return normalized


def sanitize_shop_domain(shop: str | None) -> str | None:
    try:
        return normalize_shop_domain(shop)
    except InvalidShopError:
        return None


def _hmac_hexdigest(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _safe_compare(expected: str, supplied: str) -> bool:
    try:
        return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))
    except UnicodeEncodeError:
        return False


def verify_oauth_hmac(secret: str, query_items: Sequence[tuple[str, str]]) -> bool:
    supplied_hmac = None
    filtered: list[tuple[str, str]] = []
    for key, value in query_items:
        if key == "hmac":
            supplied_hmac = value
            continue
        if key == "signature":
            continue
        filtered.append((key, value))

    if not supplied_hmac:
        return False

    filtered.sort(key=lambda item: item[0])
    message = "&".join(f"{key}={value}" for key, value in filtered)
    return _safe_compare(_hmac_hexdigest(secret, message), supplied_hmac)


class WebhookSignatureVerifier:
    """Checks the base64 HMAC-SHA256 the platform attaches to webhook bodies.

    The digest must be computed over the raw request bytes, before any JSON
    parsing touches them.
    """

    def __init__(self, secret: str) -> None:
        self._key = secret.encode("utf-8")

    def sign(self, body: bytes) -> str:
        digest = hmac.new(self._key, body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("utf-8")

    def verify(self, body: bytes, supplied_hmac: str | None) -> bool:
        if not supplied_hmac or not isinstance(body, (bytes, bytearray)):
            return False
        return _safe_compare(self.sign(bytes(body)), supplied_hmac.strip())


def sign_value(secret: str, value: str, *, issued_at: int | None = None) -> str:
    timestamp = int(time.time()) if issued_at is None else issued_at
    payload = f"{value}.{timestamp}"
    return f"{payload}.{_hmac_hexdigest(secret, payload)}"


def unsign_value(secret: str, signed: str | None, *, max_age_seconds: int) -> str | None:
    """Return the original value of a `sign_value` token, or None if tampered or stale."""
    if not signed:
        return None
    parts = signed.rsplit(".", 2)
    if len(parts) != 3:
        return None
    value, timestamp_raw, supplied = parts
    if not _safe_compare(_hmac_hexdigest(secret, f"{value}.{timestamp_raw}"), supplied):
        return None
    try:
        issued_at = int(timestamp_raw)
    except ValueError:
        return None
    age = int(time.time()) - issued_at
    if age < 0 or age > max_age_seconds:
        return None
    return value
