"""Utility functions"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

from .errors import InvalidAddress

DURATION_UNITS = "smhdw"  # seconds, minutes, hours, days, weeks

DEFAULT_PORTS = {
    "ws": 80,
    "wss": 443,
}

_DURATION_RE = re.compile(rf"^(\d+)([{DURATION_UNITS}])$")
_RELATIVE_RE = re.compile(rf"^-(\d+)([{DURATION_UNITS}])$")

NOW = "now"


def is_duration(value: object) -> bool:
    """True if value is a duration string such as "15s"."""
    return isinstance(value, str) and _DURATION_RE.match(value) is not None


def is_relative_offset(value: object) -> bool:
    """True if value is a relative offset string such as "-5m"."""
    return isinstance(value, str) and _RELATIVE_RE.match(value) is not None


def is_absolute_time(value: object) -> bool:
    """True for int/float timestamps. bool is rejected even though it is an int."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_url(url: str) -> tuple[str, str, int, str]:
    """Parse a connection URL into (scheme, host, port, path)."""
    if not isinstance(url, str) or "://" not in url:
        raise InvalidAddress(f"Invalid connection address {url!r}")
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in DEFAULT_PORTS:
        raise InvalidAddress(f"Invalid scheme '{scheme}' in {url!r} (expected ws or wss)")
    if not parts.hostname:
        raise InvalidAddress(f"Missing host in {url!r}")
    try:
        port = parts.port or DEFAULT_PORTS[scheme]
    except ValueError as e:
        raise InvalidAddress(f"Invalid port in {url!r}", cause=e) from e
    return (scheme, parts.hostname, port, parts.path or "/")
