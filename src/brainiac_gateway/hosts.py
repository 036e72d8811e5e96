from __future__ import annotations

import ipaddress
import re
import socket
import urllib.parse


DOTTED_QUAD_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")
PRIVATE_172_RE = re.compile(r"^172\.(\d+)\.\d+\.\d+$")
NUMERIC_HOST_RE = re.compile(r"^(?:0x[0-9a-f]*|\d+)(?:\.(?:0x[0-9a-f]*|\d+)){0,3}$")
LOOPBACK_HOSTS = {"127.0.0.1", "::1"}
PRIVATE_PREFIXES = ("10.", "192.168.", "169.254.")
IPV6_PRIVATE_PREFIXES = ("fc", "fd", "fe80")


def is_private_host(hostname: str) -> bool:
    """Return True when the hostname names a private, loopback or link-local network.

    Pattern based only: the name is never resolved, so a public name that is
    later repointed at a private address is not caught here.
    """
    host = str(hostname or "").lower()
    if host == "localhost" or host.endswith(".local"):
        return True
    if host in LOOPBACK_HOSTS:
        return True
    if DOTTED_QUAD_RE.match(host) and host.startswith(PRIVATE_PREFIXES):
        return True
    match_172 = PRIVATE_172_RE.match(host)
    if match_172 and 16 <= int(match_172.group(1)) <= 31:
        return True
    if host.startswith(IPV6_PRIVATE_PREFIXES):
        return True
    return False


def canonical_hostname(hostname: str) -> str:
    """Collapse alternate spellings of a host into the form the classifier expects."""
    # Percent-escapes are decoded once, as the connecting client decodes them.
    host = urllib.parse.unquote(str(hostname or "")).strip().lower()
    if host.endswith(".") and not host.endswith(".."):
        host = host[:-1]
    if not host:
        return ""
    if ":" in host:
        try:
            return ipaddress.IPv6Address(host.split("%", 1)[0]).compressed
        except ValueError:
            return host
    if NUMERIC_HOST_RE.match(host):
        # e.g. 2130706433 -> 127.0.0.1
        try:
            return socket.inet_ntoa(socket.inet_aton(host))
        except OSError:
            return host
    return host
