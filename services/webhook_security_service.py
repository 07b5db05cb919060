"""
Webhook Security Service - signature validation for deposit notifications
Implements the timestamped Hook0-style HMAC scheme used by CDP webhooks
"""

import logging
import hmac
import hashlib
import time
from typing import Dict, Any, Mapping, Optional, Tuple
from fastapi import Request

from config import Config

logger = logging.getLogger(__name__)


def _parse_signature_header(signature_header: str) -> Optional[Tuple[str, str, str]]:
    """Split 't=<ts>,h=<names>,v1=<hex>' into its parts"""
    parts = {}
    for element in signature_header.split(","):
        key, sep, value = element.strip().partition("=")
        if sep:
            parts[key] = value
    if not all(k in parts for k in ("t", "h", "v1")):
        return None
    return parts["t"], parts["h"], parts["v1"]


def _signed_payload(timestamp: str, header_names: str, headers: Mapping[str, str], raw_body: bytes) -> bytes:
    lowered = {k.lower(): v for k, v in headers.items()}
    values = ".".join(lowered.get(name.lower(), "") for name in header_names.split(" ") if name)
    return f"{timestamp}.{header_names}.{values}.".encode("utf-8") + raw_body


def compute_hook0_signature(
    secret: str, timestamp: str, header_names: str, headers: Mapping[str, str], raw_body: bytes
) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        _signed_payload(timestamp, header_names, headers, raw_body),
        hashlib.sha256,
    ).hexdigest()


def build_hook0_signature_header(
    secret: str, raw_body: bytes, headers: Mapping[str, str], header_names: str = "", timestamp: int = None
) -> str:
    """Signature header as a sender would produce it"""
    ts = str(int(timestamp if timestamp is not None else time.time()))
    signature = compute_hook0_signature(secret, ts, header_names, headers, raw_body)
    return f"t={ts},h={header_names},v1={signature}"


def verify_hook0_signature(
    signature_header: Optional[str],
    headers: Mapping[str, str],
    raw_body: bytes,
    secret: str,
    now: float = None,
    tolerance_seconds: int = 300,
) -> bool:
    """
    Verify 't=<ts>,h=<space separated header names>,v1=<hex>'.

    HMAC-SHA256 over "{t}.{h}.{header values joined by '.'}.{raw body}",
    compared as decoded bytes in constant time. Signing times in the future or older than
    the tolerance are rejected.
    """
    if not signature_header or not secret:
        return False

    parsed = _parse_signature_header(signature_header)
    if parsed is None:
        logger.warning("Webhook signature header malformed")
        return False
    timestamp, header_names, provided = parsed

    expected = compute_hook0_signature(secret, timestamp, header_names, headers, raw_body)
    try:
        matches = hmac.compare_digest(bytes.fromhex(expected), bytes.fromhex(provided))
    except ValueError:
        logger.warning("Webhook signature is not hex")
        return False
    if not matches:
        logger.warning("Webhook signature mismatch")
        return False

    try:
        signed_at = int(timestamp)
    except ValueError:
        return False
    age = (now if now is not None else time.time()) - signed_at
    if age < 0 or age > tolerance_seconds:
        logger.warning(f"Webhook timestamp out of window: {age / 60:.1f} min")
        return False
    return True


class WebhookSecurityService:
    """Centralized webhook security validation service"""

    MAX_PAYLOAD_BYTES = 1024 * 1024

    @classmethod
    def validate_deposit_webhook(
        cls,
        headers: Mapping[str, str],
        body: bytes,
        secret: str,
        signature_header_name: str = "X-Hook0-Signature",
        now: float = None,
        tolerance_seconds: int = None,
    ) -> Dict[str, Any]:
        """
        Validate a deposit notification
        Returns: {'valid': bool, 'error': str}
        """
        if not secret:
            logger.error("Deposit webhook secret not configured")
            return {"valid": False, "error": "Webhook not configured"}

        if len(body) > cls.MAX_PAYLOAD_BYTES:
            logger.error(f"Webhook payload too large: {len(body)} bytes")
            return {"valid": False, "error": "Payload too large"}

        lowered = {k.lower(): v for k, v in headers.items()}
        signature_header = lowered.get(signature_header_name.lower())
        if not signature_header:
            return {"valid": False, "error": "Missing signature header"}

        if tolerance_seconds is None:
            tolerance_seconds = Config.WEBHOOK_TOLERANCE_SECONDS
        if not verify_hook0_signature(
            signature_header, headers, body, secret, now=now, tolerance_seconds=tolerance_seconds
        ):
            return {"valid": False, "error": "Invalid signature"}

        return {"valid": True}

    @classmethod
    def log_webhook_security_event(
        cls,
        provider: str,
        event_type: str,
        success: bool,
        details: Dict[str, Any],
        request_ip: str = None,
    ) -> None:
        """Log webhook security events for audit trail"""
        if success:
            logger.info(f"Webhook security: {provider} {event_type} - SUCCESS ({request_ip})")
        else:
            logger.warning(
                f"Webhook security: {provider} {event_type} - FAILED from {request_ip}: {details}"
            )

    @classmethod
    def get_client_ip(cls, request: Request) -> str:
        """Extract client IP address with proxy support"""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # Get first IP in case of multiple proxies
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        return request.client.host if request.client else "unknown"
