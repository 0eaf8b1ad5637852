"""Checks applied to webhook target URLs before they are stored or fetched.

Deliveries are sent server-side to caller-supplied URLs, so unless
``FORMHOOK_ALLOW_PRIVATE_URLS`` is set a target may not point at loopback,
private, link-local or otherwise non-routable addresses, either literally or
through DNS.
"""

import ipaddress
import os
import socket
from typing import Optional
from urllib.parse import ParseResult, urlparse

from formhook.exceptions import SSRFProtectionError

BLOCKED_HOSTNAMES = frozenset(
    {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}
)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def private_urls_allowed() -> bool:
    """True when receivers on the local network are permitted."""
    return _env_flag("FORMHOOK_ALLOW_PRIVATE_URLS", "false")


def dns_resolution_enabled() -> bool:
    return _env_flag("FORMHOOK_RESOLVE_WEBHOOK_DNS", "true")


def is_private_ip(ip_address: str) -> bool:
    """Whether an address is outside the public internet.

    Covers RFC 1918, loopback, link-local (cloud metadata), carrier-grade NAT,
    reserved and multicast ranges, and IPv4 addresses wrapped in IPv6.

    Raises:
        ValueError: If ip_address is not a valid IP address
    """
    try:
        ip = ipaddress.ip_address(ip_address)
    except ValueError:
        raise ValueError(f"Invalid IP address: {ip_address}")

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped:
        ip = ip.ipv4_mapped
    return not ip.is_global or ip.is_multicast


def resolve_hostname(hostname: str) -> Optional[str]:
    """First address the hostname resolves to, or None if lookup fails."""
    try:
        infos = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except (socket.gaierror, socket.herror, OSError):
        return None
    return str(infos[0][4][0]) if infos else None


def parse_webhook_url(url: str) -> ParseResult:
    """Check that a URL is a well-formed absolute http(s) URL.

    Raises:
        ValueError: With a user-facing reason if the URL is malformed
    """
    if not url or not url.strip():
        raise ValueError("URL is required")

    try:
        parsed = urlparse(url.strip())
    except ValueError as e:
        raise ValueError(f"Invalid URL format: {e}")

    if parsed.scheme not in ("http", "https"):
        raise ValueError("URL must be an absolute http or https URL")

    try:
        hostname = parsed.hostname
        # Accessing .port validates the port component
        parsed.port
    except ValueError as e:
        raise ValueError(f"Invalid URL format: {e}")

    if not hostname:
        raise ValueError("URL must include a hostname")

    if any(c.isspace() for c in url.strip()):
        raise ValueError("URL must not contain whitespace")

    return parsed


def _literal_ip(hostname: str):
    try:
        return ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return None


def validate_url_for_ssrf(
    url: str,
    block_private_ips: bool = True,
    resolve_dns: bool = True,
) -> ParseResult:
    """Parse a webhook URL and reject targets inside the private network.

    Args:
        url: Candidate webhook URL
        block_private_ips: Reject loopback/private/link-local targets
        resolve_dns: Also reject hostnames whose DNS record points inward

    Raises:
        ValueError: The URL is malformed
        SSRFProtectionError: The URL targets a blocked address
    """
    parsed = parse_webhook_url(url)

    try:
        host = parsed.hostname.encode("idna").decode("ascii").lower()
    except UnicodeError:
        raise ValueError(f"Invalid hostname: {parsed.hostname}")

    if not block_private_ips:
        return parsed

    if host in BLOCKED_HOSTNAMES:
        raise SSRFProtectionError(f"Blocked private/internal hostname: {host}")

    literal = _literal_ip(host)
    if literal is not None:
        if is_private_ip(str(literal)):
            raise SSRFProtectionError(f"Blocked private IP address: {literal}")
        return parsed

    if resolve_dns:
        resolved = resolve_hostname(host)
        if resolved and _literal_ip(resolved) is not None and is_private_ip(resolved):
            raise SSRFProtectionError(f"Hostname '{host}' resolves to private IP: {resolved}")

    return parsed


def validate_webhook_url(url: str) -> ParseResult:
    """Validate a webhook target using the process-wide SSRF policy."""
    return validate_url_for_ssrf(
        url,
        block_private_ips=not private_urls_allowed(),
        resolve_dns=dns_resolution_enabled(),
    )
