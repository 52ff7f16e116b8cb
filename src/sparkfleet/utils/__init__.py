"""Small helpers shared across sparkfleet."""

from __future__ import annotations

import ipaddress
import logging


def suppress_noisy_loggers():
    """Quiet HTTP client loggers pulled in by huggingface_hub."""
    for name in ("httpx", "httpcore.http11", "httpcore.connection",
                 "urllib3.connectionpool", "huggingface_hub.file_download",
                 "filelock"):
        logging.getLogger(name).setLevel(logging.WARNING)


def is_valid_ip(value: str) -> bool:
    """Return True if *value* is a literal IPv4 or IPv6 address."""
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def coerce_value(value: str):
    """Coerce a CLI string to int, float, or bool where it looks like one."""
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


def split_hosts(value: str | None) -> list[str]:
    """Split a comma-separated host list, dropping blanks."""
    if not value:
        return []
    return [h.strip() for h in value.split(",") if h.strip()]
