import base64, hashlib, hmac
from typing import Optional

from ..config import Settings


def compute_webhook_hmac(raw: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode(), raw, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_hmac(raw: Optional[bytes], their_hmac: Optional[str], secret: Optional[str]) -> bool:
    """
    Check the X-Shopify-Hmac-Sha256 header against the exact request bytes.
    Anything other than raw bytes fails closed: a parsed payload re-encoded
    to JSON is not guaranteed to match what Shopify signed.
    """
    if not isinstance(raw, (bytes, bytearray)):
        return False
    if not their_hmac or not secret:
        return False
    expected = compute_webhook_hmac(bytes(raw), secret).encode()
    supplied = their_hmac.encode("utf-8", errors="replace")
    if len(expected) != len(supplied):
        return False
    return hmac.compare_digest(expected, supplied)


def resolve_webhook_secret(tenant, settings: Settings) -> Optional[str]:
    return tenant.webhook_secret or settings.default_webhook_secret
