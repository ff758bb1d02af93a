# backend/carshare/utils/url_validation.py
"""
Redirect URL validation for Stripe Checkout success/cancel URLs.

Stripe sends the renter back to whatever URL we hand it, so only absolute
http(s) URLs are accepted, and only on configured hosts when a list is set.
"""

from typing import Iterable, Optional
from urllib.parse import urlparse

from ..core.config import settings
from ..core.exceptions import ValidationException


def assert_allowed_redirect_url(
    raw_url: Optional[str],
    field_name: str,
    *,
    allowed_hosts: Optional[Iterable[str]] = None,
) -> str:
    """
    Return the trimmed URL or raise ``ValidationException``.

    Args:
        raw_url: URL supplied by the client
        field_name: Request field, used in the error message
        allowed_hosts: Override for ``settings.redirect_hosts``
    """
    candidate = (raw_url or "").strip()
    if not candidate:
        raise ValidationException(f"INVALID_INPUT: {field_name} is required.")

    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in {"http", "https"}:
        raise ValidationException(f"INVALID_INPUT: {field_name} protocol is not allowed.")
    host = (parsed.hostname or "").lower()
    if not host:
        raise ValidationException(f"INVALID_INPUT: {field_name} must be a valid absolute URL.")

    hosts = [h.lower() for h in (allowed_hosts if allowed_hosts is not None else settings.redirect_hosts)]
    if hosts and host not in hosts:
        raise ValidationException(f"INVALID_INPUT: {field_name} origin is not allowed.")
    return candidate
