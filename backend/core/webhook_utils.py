"""
RSL Platform — Webhook URL validation helper.

Validates subscription target URLs before they are stored. Only absolute
http:// and https:// URLs are accepted. Unless explicitly allowed, URLs that
target loopback, link-local or RFC-1918 addresses are rejected as well
(SSRF prevention).
"""

import ipaddress
import urllib.parse
from typing import Optional

_BLOCKED_PREFIXES = ("localhost", "127.", "169.254.", "0.", "::1")


def validate_webhook_url(url: str, allow_private: bool = False) -> Optional[str]:
    """Return an error message for an unacceptable URL, or None if it is fine."""
    if not url or not isinstance(url, str):
        return "Webhook URL is required"

    try:
        parsed = urllib.parse.urlparse(url.strip())
        host = parsed.hostname or ""
        # .port raises ValueError for a non-numeric or out-of-range port
        parsed.port
    except ValueError:
        return "Invalid webhook URL"

    if parsed.scheme not in ("http", "https"):
        return "Webhook URL must use http:// or https:// scheme"
    if not host:
        return "Webhook URL must include a host"

    if allow_private:
        return None

    if any(host.startswith(p) for p in _BLOCKED_PREFIXES):
        return "Webhook URL targets a blocked host"
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return None  # hostname; DNS resolution happens at dispatch time
    if addr.is_loopback or addr.is_link_local or addr.is_private:
        return "Webhook URL targets a blocked host"
    return None
