"""
Origin domain matching for merchant whitelists.

Whitelist entries are either exact hostnames (``shop.example.com``) or
wildcards (``*.example.com``). A wildcard admits the base domain itself and
every subdomain of it.
"""
import ipaddress
import re
from typing import Iterable, Optional
from urllib.parse import urlsplit

_LABEL = r"(?!-)[a-z0-9-]{1,63}(?<!-)"
_HOSTNAME_RE = re.compile(rf"^{_LABEL}(\.{_LABEL})*$")


def normalize_host(host: str) -> str:
    """Lowercase a hostname and drop any trailing dot"""
    return host.strip().lower().rstrip(".")


def extract_domain(origin: Optional[str]) -> Optional[str]:
    """
    Extract the hostname from an Origin or Referer header value.

    Returns None when the value cannot be parsed into a hostname.
    """
    if not origin:
        return None
    value = origin.strip()
    if "://" not in value:
        value = f"//{value}"
    try:
        hostname = urlsplit(value).hostname
    except ValueError:
        return None
    if not hostname:
        return None
    return normalize_host(hostname)


def is_domain_allowed(host: str, allowed_domains: Iterable[str]) -> bool:
    """
    Decide whether ``host`` is admitted by a merchant's whitelist.

    Args:
        host: Origin hostname (no scheme or port)
        allowed_domains: Exact hostnames and ``*.base`` wildcards

    Returns:
        True if any entry admits the host
    """
    candidate = normalize_host(host)
    if not candidate:
        return False

    for entry in allowed_domains:
        allowed = normalize_host(entry)
        if allowed.startswith("*."):
            base = allowed[2:]
            if base and (candidate == base or candidate.endswith(f".{base}")):
                return True
        elif candidate == allowed:
            return True
    return False


def is_valid_domain_pattern(entry: str) -> bool:
    """Validate a whitelist entry: hostname, IP address, or ``*.hostname``"""
    value = normalize_host(entry)
    if not value:
        return False
    if value.startswith("*."):
        base = value[2:]
        return "." in base and bool(_HOSTNAME_RE.match(base))
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        pass
    return bool(_HOSTNAME_RE.match(value))
