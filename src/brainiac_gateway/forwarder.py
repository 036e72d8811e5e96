from __future__ import annotations

import hashlib
import http.client
import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from brainiac_gateway.cache import TTLCache
from brainiac_gateway.hosts import is_private_host
from brainiac_gateway.urls import (
    build_search_url,
    join_endpoint,
    normalize_base_url,
    normalize_search_base_url,
    parse_url,
)


ALLOWED_SCHEMES = ("http", "https")
CREDENTIAL_HEADER = "x-brainiac-key"
DEFAULT_RESPONSES_ENDPOINT = "/responses"
DEFAULT_SEARCH_BASE = "https://search.brainstormnodes.org"
DEFAULT_SEARCH_FORMAT = "json"
DEFAULT_MODELS_BASE = "https://openrouter.ai/api/v1"
DEFAULT_MODELS_ENDPOINT = "/models"
DEFAULT_TIMEOUT_SECONDS = 20.0
JSON_CONTENT_TYPE = "application/json"
BODYLESS_METHODS = {"GET", "HEAD"}

LOGGER = logging.getLogger("brainiac_gateway.forwarder")


class GatewayError(Exception):
    status_code = 400
    default_message = "Gateway request failed"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class MissingTarget(GatewayError):
    default_message = "Missing base parameter"


class MissingQuery(GatewayError):
    default_message = "Missing q parameter"


class InvalidTarget(GatewayError):
    default_message = "Invalid base URL"


class DisallowedScheme(GatewayError):
    default_message = "Invalid base URL protocol"


class BlockedHost(GatewayError):
    default_message = "Blocked base URL host"


class InvalidBody(GatewayError):
    default_message = "Invalid JSON body"


class UpstreamUnreachable(GatewayError):
    status_code = 500
    default_message = "Brainiac proxy failed"


@dataclass(frozen=True)
class InboundRequest:
    method: str
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)
    body: bytes | None = None

    @classmethod
    def build(
        cls,
        method: str,
        headers: Mapping[str, str] | None = None,
        query: Mapping[str, str] | None = None,
        body: bytes | None = None,
    ) -> "InboundRequest":
        return cls(
            method=str(method or "GET").upper(),
            headers={str(key).lower(): str(value) for key, value in (headers or {}).items()},
            query={str(key): str(value) for key, value in (query or {}).items()},
            body=body,
        )

    def header(self, name: str) -> str:
        return str(self.headers.get(name.lower(), "") or "").strip()

    def param(self, name: str) -> str:
        return str(self.query.get(name, "") or "").strip()


@dataclass(frozen=True)
class TargetSpec:
    raw_base: str
    endpoint_suffix: str


@dataclass(frozen=True)
class UpstreamRequest:
    url: str
    method: str
    headers: dict[str, str]
    body: bytes | None = None


@dataclass(frozen=True)
class UpstreamResponse:
    status: int
    content_type: str
    body: bytes


@dataclass(frozen=True)
class GatewayFlavor:
    """How one public gateway endpoint turns an inbound call into a target.

    Every flavor shares the same URL parsing and private-host veto; they differ
    only in defaults, path handling, body and credential policy.
    """

    name: str
    default_base: str = ""
    default_endpoint: str = ""
    search: bool = False
    forward_body: bool = False
    send_content_type: bool = False
    forward_credentials: bool = False
    cacheable: bool = False
    failure_message: str = UpstreamUnreachable.default_message

    def normalize(self, raw: str) -> str:
        if self.search:
            return normalize_search_base_url(raw)
        return normalize_base_url(raw)


RESPONSES_FLAVOR = GatewayFlavor(
    name="responses",
    default_endpoint=DEFAULT_RESPONSES_ENDPOINT,
    forward_body=True,
    send_content_type=True,
    forward_credentials=True,
    failure_message="Brainiac proxy failed",
)
SEARCH_FLAVOR = GatewayFlavor(
    name="search",
    default_base=DEFAULT_SEARCH_BASE,
    search=True,
    failure_message="Search proxy failed",
)
MODELS_FLAVOR = GatewayFlavor(
    name="models",
    default_base=DEFAULT_MODELS_BASE,
    default_endpoint=DEFAULT_MODELS_ENDPOINT,
    forward_credentials=True,
    cacheable=True,
    failure_message="Models proxy failed",
)

Transport = Callable[[UpstreamRequest], UpstreamResponse]


def resolve_authorization(inbound: InboundRequest, credential_header: str = CREDENTIAL_HEADER) -> str:
    # The custom header takes precedence over Authorization.
    custom_key = inbound.header(credential_header)
    if custom_key:
        return f"Bearer {custom_key}"
    return inbound.header("authorization")


def target_spec(flavor: GatewayFlavor, inbound: InboundRequest) -> TargetSpec:
    return TargetSpec(
        raw_base=inbound.param("base") or flavor.default_base,
        endpoint_suffix=inbound.param("endpoint") or flavor.default_endpoint,
    )


def _forward_body(flavor: GatewayFlavor, inbound: InboundRequest, method: str) -> bytes | None:
    if not flavor.forward_body or method in BODYLESS_METHODS:
        return None
    raw = inbound.body or b""
    if not raw.strip():
        return b"{}"
    try:
        json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise InvalidBody() from exc
    return raw


def build_upstream_request(
    flavor: GatewayFlavor,
    inbound: InboundRequest,
    *,
    credential_header: str = CREDENTIAL_HEADER,
) -> UpstreamRequest:
    """Validate the caller's target and build the outgoing request.

    All classified errors are raised here, before any network I/O happens.
    """
    query = ""
    if flavor.search:
        query = inbound.param("q")
        if not query:
            raise MissingQuery()

    requested = target_spec(flavor, inbound)
    base = flavor.normalize(requested.raw_base)
    if not base:
        raise MissingTarget()

    try:
        parsed_base = parse_url(base)
    except ValueError as exc:
        raise InvalidTarget() from exc
    if parsed_base.scheme not in ALLOWED_SCHEMES:
        raise DisallowedScheme()

    try:
        if flavor.search:
            target_url = build_search_url(base, query, inbound.param("format") or DEFAULT_SEARCH_FORMAT)
        else:
            target_url = join_endpoint(base, requested.endpoint_suffix)
        target = parse_url(target_url)
    except ValueError as exc:
        raise InvalidTarget() from exc
    if target.scheme not in ALLOWED_SCHEMES:
        raise DisallowedScheme()
    host = target.hostname or ""
    if is_private_host(host):
        LOGGER.warning("Blocked %s gateway target host=%s", flavor.name, host)
        raise BlockedHost()

    method = "GET" if not flavor.forward_body else inbound.method
    headers = {"Accept": JSON_CONTENT_TYPE}
    if flavor.send_content_type:
        headers["Content-Type"] = JSON_CONTENT_TYPE
    if flavor.forward_credentials:
        authorization = resolve_authorization(inbound, credential_header)
        if authorization:
            headers["Authorization"] = authorization
    return UpstreamRequest(
        url=target_url,
        method=method,
        headers=headers,
        body=_forward_body(flavor, inbound, method),
    )


class _RefuseRedirects(urllib.request.HTTPRedirectHandler):
    # Redirects are relayed to the caller, never followed.
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


class UrllibTransport:
    """Issues one upstream call; no retries and no redirects are followed."""

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = float(timeout_seconds)
        self._opener = urllib.request.build_opener(_RefuseRedirects)

    def __call__(self, upstream: UpstreamRequest) -> UpstreamResponse:
        request = urllib.request.Request(
            upstream.url,
            data=upstream.body,
            headers=dict(upstream.headers),
            method=upstream.method,
        )
        try:
            with self._opener.open(request, timeout=self.timeout_seconds) as response:
                status = int(response.getcode() or 0)
                content_type = response.headers.get("Content-Type", "")
                body = response.read()
        except urllib.error.HTTPError as exc:
            status = int(exc.code or 0)
            content_type = exc.headers.get("Content-Type", "") if exc.headers is not None else ""
            body = exc.read()
        return UpstreamResponse(status=status, content_type=content_type or "", body=body or b"")


def _failure_reason(exc: BaseException) -> str:
    reason: Any = exc.reason if isinstance(exc, urllib.error.URLError) else exc
    if isinstance(reason, socket.timeout):
        return "Upstream request timed out"
    return str(reason or "").strip()


def _cache_key(upstream: UpstreamRequest) -> str:
    credential_digest = hashlib.sha256(upstream.headers.get("Authorization", "").encode("utf-8")).hexdigest()
    return f"{upstream.method} {upstream.url} {credential_digest}"


def forward(
    flavor: GatewayFlavor,
    inbound: InboundRequest,
    transport: Transport,
    *,
    credential_header: str = CREDENTIAL_HEADER,
    cache: TTLCache | None = None,
) -> UpstreamResponse:
    upstream = build_upstream_request(flavor, inbound, credential_header=credential_header)
    cache_key = _cache_key(upstream) if flavor.cacheable and cache is not None else ""
    if cache_key:
        cached = cache.get(cache_key)
        if cached is not None:
            LOGGER.debug("Serving %s gateway response from cache url=%s", flavor.name, upstream.url)
            return cached

    LOGGER.debug("Forwarding %s gateway request method=%s url=%s", flavor.name, upstream.method, upstream.url)
    try:
        response = transport(upstream)
    except (urllib.error.URLError, OSError, http.client.HTTPException, UnicodeError) as exc:
        LOGGER.warning("Upstream unreachable for %s gateway url=%s: %s", flavor.name, upstream.url, exc)
        raise UpstreamUnreachable(_failure_reason(exc) or flavor.failure_message) from exc

    if cache_key and response.status == 200:
        cache.set(cache_key, response)
    return response
