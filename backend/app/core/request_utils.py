"""Request utility functions: client IP resolution and credential header access."""

import ipaddress
import logging

from fastapi import Request

logger = logging.getLogger(__name__)


def _is_valid_ip(ip_str: str) -> bool:
    """Check if a string is a valid IP address."""
    try:
        ipaddress.ip_address(ip_str)
        return True
    except ValueError:
        return False


def get_client_ip(request: Request, trusted_proxies: set[str] | None = None) -> str:
    """Get the caller IP used as the rate-limit key.

    Forwarding headers (CF-Connecting-IP, X-Forwarded-For, X-Real-IP) are
    honored only when the direct peer is one of ``trusted_proxies``; from any
    other peer they are spoofable and ignored.

    Returns "unknown" when the transport exposes no peer address.
    """
    direct_ip = request.client.host if request.client else None

    if trusted_proxies and direct_ip in trusted_proxies:
        cf_ip = request.headers.get("CF-Connecting-IP")
        if cf_ip:
            ip = cf_ip.strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid CF-Connecting-IP: {cf_ip}")

        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # Left-most entry is the original client
            ip = forwarded.split(",")[0].strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid IP in X-Forwarded-For header: {ip}")

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            ip = real_ip.strip()
            if _is_valid_ip(ip):
                return ip
            logger.warning(f"Invalid X-Real-IP: {real_ip}")
    elif request.headers.get("X-Forwarded-For"):
        logger.debug(f"Ignoring X-Forwarded-For from untrusted source: {direct_ip}")

    if direct_ip:
        return direct_ip

    return "unknown"


def get_authorization_header(request: Request) -> str | None:
    """Return the first Authorization header, ignoring any repeats.

    A request carrying several Authorization headers is resolved
    deterministically to the first occurrence.
    """
    values = request.headers.getlist("Authorization")
    if not values:
        return None
    if len(values) > 1:
        logger.debug(f"Request carried {len(values)} Authorization headers; using the first")
    return values[0]
