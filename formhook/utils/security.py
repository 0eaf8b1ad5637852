"""Helpers for keeping secrets and control characters out of logs and headers.

Webhook URLs, header values and error strings all originate from callers, so
anything interpolated into a log line goes through ``sanitize_log_message``,
and anything persisted in a delivery attempt goes through ``mask_headers``.
"""

import re
from typing import Dict, Union

SENSITIVE_HEADERS = {
    "authorization",
    "proxy-authorization",
    "x-api-key",
    "cookie",
}

# RFC 7230 token characters for header field names
_HEADER_NAME_RE = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_LOG_UNSAFE_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_HEADER_VALUE_UNSAFE_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")

MASK = "***"


def sanitize_log_message(msg: Union[str, bytes, int, float, None]) -> str:
    """Strip CR, LF, tabs and other control characters so a value cannot forge log lines.

    >>> sanitize_log_message("https://hooks.example.com\\nfake entry")
    'https://hooks.example.comfake entry'
    """
    if msg is None:
        return ""
    return _LOG_UNSAFE_RE.sub("", str(msg))


def mask_sensitive(value: Union[str, None], visible_chars: int = 4) -> str:
    """Hide a credential, keeping only its last ``visible_chars`` characters.

    Values no longer than ``visible_chars`` are hidden entirely.

    >>> mask_sensitive("whsec_1234567890abcdef")
    '***cdef'
    >>> mask_sensitive("abc")
    '***'
    """
    if not value or len(value) <= visible_chars:
        return MASK
    return MASK + value[-visible_chars:]


def is_valid_header_name(name: str) -> bool:
    """Check that a custom header name is a valid HTTP token."""
    return bool(name) and bool(_HEADER_NAME_RE.match(name))


def is_valid_header_value(value: str) -> bool:
    """Header values may not contain CR, LF or other control characters."""
    return _HEADER_VALUE_UNSAFE_RE.search(value) is None


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers safe to persist in audit logs.

    Auth-bearing headers keep their scheme prefix (``Bearer``/``Basic``) so the
    audit trail still shows which scheme was used.
    """
    masked: Dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in SENSITIVE_HEADERS:
            masked[name] = value
            continue
        scheme, sep, secret = value.partition(" ")
        if sep and scheme in ("Bearer", "Basic"):
            masked[name] = f"{scheme} {mask_sensitive(secret)}"
        else:
            masked[name] = mask_sensitive(value)
    return masked
