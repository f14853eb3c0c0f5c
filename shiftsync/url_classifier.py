from __future__ import annotations

import ipaddress
import logging
import re
import socket
from urllib.parse import urlsplit

from shiftsync.models import SecurityConfig

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https", "webcal"}
PRIVATE_NAME_SUFFIXES = (".local", ".internal", ".localhost", ".lan", ".home.arpa")
WEBCAL_PATTERN = re.compile(r"^webcal://", re.IGNORECASE)

MALFORMED_URL = "malformed_url"
SCHEME_NOT_ALLOWED = "scheme_not_allowed"
DOMAIN_MISMATCH = "domain_mismatch"
PRIVATE_HOST = "private_host"


def _hostname(url: str) -> str:
    try:
        return (urlsplit(str(url or "").strip()).hostname or "").lower()
    except ValueError:
        return ""


def detect_sync_type(url: str) -> str:
    host = _hostname(url)
    if "google.com" in host:
        return "google"
    if "icloud.com" in host:
        return "icloud"
    if WEBCAL_PATTERN.match(str(url or "").strip()):
        return "generic-webcal"
    return "custom"


def normalize_fetch_url(url: str) -> str:
    return WEBCAL_PATTERN.sub("https://", str(url or "").strip())


def _matches_suffix(host: str, suffixes: list[str]) -> bool:
    for suffix in suffixes:
        suffix = suffix.lstrip(".")
        if host == suffix or host.endswith("." + suffix):
            return True
    return False


def _is_internal_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    mapped = getattr(address, "ipv4_mapped", None)
    if mapped is not None:
        address = mapped
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def _literal_address(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        pass
    # inet_aton accepts the short and octal forms (127.1, 0177.0.0.1) that resolvers honour
    try:
        return ipaddress.IPv4Address(socket.inet_aton(host))
    except (OSError, ValueError):
        return None


def resolve_host(host: str) -> list[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    try:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError):
        return []
    addresses = []
    for info in infos:
        try:
            addresses.append(ipaddress.ip_address(str(info[4][0]).split("%", 1)[0]))
        except ValueError:
            continue
    return addresses


def _is_private_host(host: str) -> bool:
    literal = _literal_address(host)
    if literal is not None:
        return _is_internal_address(literal)
    if host == "localhost" or "." not in host or host.endswith(PRIVATE_NAME_SUFFIXES):
        return True
    return any(_is_internal_address(address) for address in resolve_host(host))


def validate_calendar_url(
    url: str,
    sync_type: str | None = None,
    security: SecurityConfig | None = None,
) -> str | None:
    security = security or SecurityConfig()
    text = str(url or "").strip()
    if not text or any(ch.isspace() for ch in text):
        return MALFORMED_URL
    try:
        parts = urlsplit(text)
        host = (parts.hostname or "").lower()
    except ValueError:
        return MALFORMED_URL
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        return SCHEME_NOT_ALLOWED
    if not host:
        return MALFORMED_URL
    if parts.username or parts.password:
        return MALFORMED_URL

    sync_type = sync_type or detect_sync_type(text)
    if sync_type == "google":
        return None if _matches_suffix(host, security.google_domains) else DOMAIN_MISMATCH
    if sync_type == "icloud":
        return None if _matches_suffix(host, security.icloud_domains) else DOMAIN_MISMATCH

    if not security.allow_private_hosts and _is_private_host(host):
        return PRIVATE_HOST
    if security.custom_allowed_domains and not _matches_suffix(host, security.custom_allowed_domains):
        return DOMAIN_MISMATCH
    return None


def rejection_message(reason: str, sync_type: str) -> str:
    if reason == SCHEME_NOT_ALLOWED:
        return (
            f"Invalid {sync_type} calendar URL. URL must use webcal://, https:// or http:// protocol"
        )
    if reason == DOMAIN_MISMATCH:
        if sync_type == "google":
            domain = "google.com domain"
        elif sync_type == "icloud":
            domain = "icloud.com domain"
        else:
            domain = "an allowed domain"
        return f"Invalid {sync_type} calendar URL. URL must be from {domain}"
    if reason == PRIVATE_HOST:
        return f"Invalid {sync_type} calendar URL. Private or internal hosts are not allowed"
    return f"Invalid {sync_type} calendar URL. URL is malformed"


def log_rejection(url: str, reason: str, sync_type: str) -> None:
    if reason in {DOMAIN_MISMATCH, PRIVATE_HOST}:
        logger.warning(
            "Rejected %s calendar URL for host %r (%s); possible request forgery",
            sync_type,
            _hostname(url),
            reason,
        )
    else:
        logger.info("Rejected %s calendar URL (%s)", sync_type, reason)
