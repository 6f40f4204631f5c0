"""
Twilio webhook authentication.

Twilio signs every webhook with HMAC-SHA1 over the full URL it requested
plus the sorted POST parameters, keyed by the account auth token. Behind a
proxy the URL the app sees differs from the one Twilio signed, so the
canonical URL is rebuilt from ``telephony.public_base_url`` when it is set.
"""
from __future__ import annotations

from typing import Mapping
from urllib.parse import urlsplit

import structlog
from twilio.request_validator import RequestValidator

from config.settings import Settings

logger = structlog.get_logger()


def canonical_url(request_url: str, public_base_url: str = "") -> str:
    """The URL Twilio signed: public base + path + query, or the request URL as-is."""
    if not public_base_url:
        return request_url
    parts = urlsplit(request_url)
    url = public_base_url.rstrip("/") + parts.path
    if parts.query:
        url += "?" + parts.query
    return url


def verify_twilio_signature(
    request_url: str, params: Mapping[str, str], signature: str, settings: Settings,
) -> bool:
    """
    True when the request may proceed. Unsigned or mis-signed requests are
    accepted only when ``allow_unsigned`` is set outside production.
    """
    tel = settings.telephony
    bypass = tel.allow_unsigned and not settings.is_production

    if not tel.auth_token:
        if bypass:
            return True
        logger.error("twilio_auth_token_missing")
        return False

    url = canonical_url(request_url, tel.public_base_url)
    valid = bool(signature) and RequestValidator(tel.auth_token).validate(url, dict(params), signature)
    if valid:
        return True
    if bypass:
        logger.warning("twilio_signature_bypassed", url=url)
        return True
    logger.warning("twilio_signature_invalid", url=url, signed=bool(signature))
    return False
