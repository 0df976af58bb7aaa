"""SSRF guard for URLs handed to the crawl service.

Checks the hostname literally; DNS rebinding is the crawl service's concern since it
performs the actual fetch.
"""

from __future__ import annotations

import ipaddress
from urllib.parse import urlsplit


def is_private_host(hostname: str) -> bool:
    host = hostname.strip().strip("[]").lower().rstrip(".")
    if not host:
        return True
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_unspecified
        or address.is_multicast
    )


def is_safe_url(url: str, *, require_https: bool = True) -> bool:
    try:
        parts = urlsplit(url.strip())
        hostname = parts.hostname
    except (ValueError, AttributeError):
        return False
    allowed_schemes = {"https"} if require_https else {"http", "https"}
    if parts.scheme.lower() not in allowed_schemes:
        return False
    if not hostname:
        return False
    return not is_private_host(hostname)
