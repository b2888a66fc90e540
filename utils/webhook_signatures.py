"""Webhook signature verification for the external payment processor"""

import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def cryptobot_signature(api_token: str, body: bytes) -> str:
    """HMAC-SHA256 over the raw body, keyed by SHA256(api_token), hex encoded"""
    secret = hashlib.sha256(api_token.encode("utf-8")).digest()
    return hmac.new(secret, body, hashlib.sha256).hexdigest()


def verify_cryptobot_signature(api_token: Optional[str], body: bytes, signature: Optional[str]) -> bool:
    """Constant-time comparison of the crypto-pay-api-signature header"""
    if not api_token:
        logger.error("🔒 WEBHOOK_SIGNATURE: CRYPTOBOT_API_TOKEN not configured")
        return False
    if not signature:
        logger.warning("🔒 WEBHOOK_SIGNATURE: missing signature header")
        return False

    expected = cryptobot_signature(api_token, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        logger.warning("🔒 WEBHOOK_SIGNATURE: signature mismatch")
        return False
    return True
