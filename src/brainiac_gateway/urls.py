from __future__ import annotations

import ipaddress
import re
import urllib.parse
from typing import Any

from brainiac_gateway.hosts import canonical_hostname


SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*$")
HIERARCHICAL_SCHEMES = {"http", "https", "ws", "wss", "ftp", "file"}
DEFAULT_PORTS = {"http": 80, "https": 443, "ws": 80, "wss": 443, "ftp": 21}
SEARCH_SUFFIX_RE = re.compile(r"/search/?$")
SEARCH_PATH = "/search"
ENDPOINT_SAFE_CHARS = "/%:@!$&'()*+,;=-._~"


def parse_url(value: Any) -> urllib.parse.SplitResult:
    """Strictly parse an absolute URL, canonicalizing its scheme and host.

    Raises ValueError for anything a browser URL parser would refuse: a missing
    scheme, a hierarchical scheme without a host, or a malformed port.
    """
    text = str(value or "").strip()
    if not text:
        raise ValueError("URL is empty.")
    parsed = urllib.parse.urlsplit(text)
    scheme = parsed.scheme.lower()
    if not scheme or not SCHEME_RE.match(scheme):
        raise ValueError(f"URL has no valid scheme: {text}")
    try:
        port = parsed.port
    except ValueError as exc:
        raise ValueError(f"URL has an invalid port: {text}") from exc
    if scheme not in HIERARCHICAL_SCHEMES or scheme == "file":
        return parsed._replace(scheme=scheme)

    if "\\" in parsed.netloc:
        raise ValueError(f"URL authority is invalid: {text}")
    host = canonical_hostname(parsed.hostname or "")
    if not host:
        raise ValueError(f"URL has no host: {text}")
    if any(ch in host for ch in " \t\r\n/\\?#@%"):
        raise ValueError(f"URL host is invalid: {text}")
    if ":" in host:
        try:
            ipaddress.IPv6Address(host)
        except ValueError as exc:
            raise ValueError(f"URL host is invalid: {text}") from exc
    else:
        try:
            host.encode("idna")
        except UnicodeError as exc:
            raise ValueError(f"URL host is not a valid domain name: {text}") from exc
    netloc = f"[{host}]" if ":" in host else host
    if port is not None and port != DEFAULT_PORTS.get(scheme):
        netloc = f"{netloc}:{port}"
    userinfo = parsed.netloc.rpartition("@")[0] if "@" in parsed.netloc else ""
    if userinfo:
        netloc = f"{userinfo}@{netloc}"
    return parsed._replace(scheme=scheme, netloc=netloc)


def _strip_volatile(parsed: urllib.parse.SplitResult, *, strip_search: bool) -> str:
    path = parsed.path
    if strip_search:
        path = SEARCH_SUFFIX_RE.sub("", path)
    return urllib.parse.urlunsplit((parsed.scheme, parsed.netloc, path.rstrip("/"), "", ""))


def _normalize(raw: Any, *, strip_search: bool) -> str:
    value = str(raw or "").strip()
    if not value:
        return ""
    try:
        parsed = parse_url(value)
    except ValueError:
        if strip_search:
            value = SEARCH_SUFFIX_RE.sub("", value)
        return value.rstrip("/")
    return _strip_volatile(parsed, strip_search=strip_search)


def normalize_base_url(raw: Any) -> str:
    """Drop query and fragment from a caller-supplied base URL and trim trailing slashes."""
    return _normalize(raw, strip_search=False)


def normalize_search_base_url(raw: Any) -> str:
    """Like normalize_base_url, but also drops a trailing /search path segment."""
    return _normalize(raw, strip_search=True)


def join_endpoint(base: str, endpoint: str) -> str:
    parsed = parse_url(base)
    suffix = urllib.parse.quote(str(endpoint or "").strip().lstrip("/"), safe=ENDPOINT_SAFE_CHARS)
    path = f"{parsed.path.rstrip('/')}/{suffix}"
    return urllib.parse.urlunsplit((parsed.scheme, parsed.netloc, path, "", ""))


def build_search_url(base: str, query: str, result_format: str) -> str:
    parsed = parse_url(base)
    path = f"{parsed.path.rstrip('/')}{SEARCH_PATH}"
    params = urllib.parse.urlencode({"q": query, "format": result_format})
    return urllib.parse.urlunsplit((parsed.scheme, parsed.netloc, path, params, ""))
