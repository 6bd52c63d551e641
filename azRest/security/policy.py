"""
Guards for requests triggered through the tool API.

Blocks cloud metadata endpoints, loopback/link-local/private addresses and
security-sensitive header overrides, and rate limits tool invocations.
"""

# Standard library imports
import ipaddress
import socket
import threading
import time
from typing import Callable, Dict, List
from urllib.parse import urlsplit


class BlockedRequestError(Exception):
    """The request targets an address the tool API must never contact"""


class RateLimitExceededError(Exception):
    """Too many tool invocations in a short period"""


BLOCKED_HEADERS = {'authorization', 'host', 'cookie', 'proxy-authorization'}

BLOCKED_HOSTS = {
    '169.254.169.254',
    'fd00:ec2::254',
    'metadata.google.internal',
    '100.100.100.200',
}

BLOCKED_NETWORKS = [
    ipaddress.ip_network(cidr) for cidr in (
        '0.0.0.0/8',        # "this" network, reaches loopback on Linux/macOS
        '127.0.0.0/8',      # IPv4 loopback
        '::/128',           # IPv6 unspecified
        '::1/128',          # IPv6 loopback
        '169.254.0.0/16',   # IPv4 link-local (cloud metadata)
        'fe80::/10',        # IPv6 link-local
        '10.0.0.0/8',       # RFC 1918
        '172.16.0.0/12',    # RFC 1918
        '192.168.0.0/16',   # RFC 1918
    )
]


def _resolve(host: str) -> List[str]:
    return [info[4][0] for info in socket.getaddrinfo(host, None)]


def is_blocked_ip(address: str) -> bool:
    """Check whether an IP address falls in a blocked network"""
    ip = ipaddress.ip_address(address.split('%', 1)[0])
    # IPv4-mapped IPv6 (::ffff:127.0.0.1) is checked as IPv4
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return any(ip in network for network in BLOCKED_NETWORKS if ip.version == network.version)


def is_blocked_url(url: str, resolver: Callable[[str], List[str]] = _resolve) -> bool:
    """Check whether a URL targets a metadata endpoint, loopback or private network.

    Hostnames are resolved and every returned address is checked, which also
    catches alternate IP spellings. A URL that cannot be parsed or resolved is
    blocked.

    The check happens before the request is sent and the HTTP transport
    resolves the host again when connecting, so DNS rebinding between the two
    lookups is not prevented.
    """
    try:
        host = (urlsplit(url).hostname or '').lower()
    except ValueError:
        return True

    if not host:
        return True

    if host in BLOCKED_HOSTS:
        return True

    try:
        return is_blocked_ip(host)
    except ValueError:
        pass  # Not an IP literal, resolve it

    try:
        addresses = resolver(host)
    except (OSError, UnicodeError):
        return True

    for address in addresses:
        try:
            if is_blocked_ip(address):
                return True
        except ValueError:
            continue
    return False


def validate_scope_url_match(scope: str, url: str) -> None:
    """Ensure an explicit scope override belongs to the request's host.

    The request host must equal the scope host or be one of its subdomains.
    Single-label scope hosts (bare TLDs) are rejected.

    Raises:
        ValueError: If the scope does not match the URL
    """
    try:
        scope_host = (urlsplit(scope).hostname or '').lower()
        request_host = (urlsplit(url).hostname or '').lower()
    except ValueError as e:
        raise ValueError(f"invalid scope or request URL: {e}") from e

    if not scope_host or not request_host:
        raise ValueError("scope and URL must have valid hosts")

    if '.' not in scope_host and ':' not in scope_host:
        raise ValueError(f"scope host {scope_host!r} must have at least two labels (e.g., example.com)")

    if request_host != scope_host and not request_host.endswith('.' + scope_host):
        raise ValueError(f"scope host {scope_host!r} does not match request URL host {request_host!r}")


def validate_tool_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Reject headers that would override auth, routing or session state.

    Returns:
        Dict[str, str]: The headers with non-string values dropped

    Raises:
        ValueError: If a blocked header is present
    """
    clean = {}
    for key, value in (headers or {}).items():
        if key.lower() in BLOCKED_HEADERS:
            raise ValueError(f"header {key!r} is not allowed")
        if isinstance(value, str):
            clean[key] = value
    return clean


class RateLimiter:
    """Token bucket that rejects calls over the limit instead of queuing them"""

    def __init__(self, burst: int, rate: float, clock: Callable[[], float] = time.monotonic):
        """
        Parameters:
            burst (int): Bucket capacity
            rate (float): Tokens added per second
            clock (Callable): Monotonic time source
        """
        self.burst = burst
        self.rate = rate
        self.clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        with self._lock:
            now = self.clock()
            self._tokens = min(self.burst, self._tokens + (now - self._last) * self.rate)
            self._last = now
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False
