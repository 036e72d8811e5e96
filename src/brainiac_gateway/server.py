from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import sys
from dataclasses import dataclass
from typing import Any

import click
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from brainiac_gateway.cache import DEFAULT_TTL_SECONDS, TTLCache
from brainiac_gateway.forwarder import (
    CREDENTIAL_HEADER,
    DEFAULT_MODELS_BASE,
    DEFAULT_RESPONSES_ENDPOINT,
    DEFAULT_SEARCH_BASE,
    DEFAULT_TIMEOUT_SECONDS,
    JSON_CONTENT_TYPE,
    MODELS_FLAVOR,
    RESPONSES_FLAVOR,
    SEARCH_FLAVOR,
    GatewayError,
    GatewayFlavor,
    InboundRequest,
    Transport,
    UpstreamResponse,
    UrllibTransport,
    forward,
)


DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8787
DEFAULT_PREFLIGHT_MAX_AGE = 86400
MIN_TIMEOUT_SECONDS = 1.0
MAX_TIMEOUT_SECONDS = 120.0
GATEWAY_LOG_LEVEL_CHOICES = ("critical", "error", "warning", "info", "debug")
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
PREFLIGHT_ALLOWED_METHODS = "POST, OPTIONS"
SEARCH_PREFLIGHT_ALLOWED_METHODS = "GET, POST, OPTIONS"
MODELS_PREFLIGHT_ALLOWED_METHODS = "GET, OPTIONS"
CACHE_PREFLIGHT_ALLOWED_METHODS = "DELETE, OPTIONS"
ALLOW_ORIGIN_HEADERS = {"Access-Control-Allow-Origin": "*"}

LOGGER = logging.getLogger("brainiac_gateway")
LOGGER.addHandler(logging.NullHandler())


@dataclass(frozen=True)
class GatewaySettings:
    default_endpoint: str = DEFAULT_RESPONSES_ENDPOINT
    default_search_base: str = DEFAULT_SEARCH_BASE
    default_models_base: str = DEFAULT_MODELS_BASE
    credential_header: str = CREDENTIAL_HEADER
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    preflight_max_age: int = DEFAULT_PREFLIGHT_MAX_AGE
    models_cache_ttl_seconds: float = DEFAULT_TTL_SECONDS

    def __post_init__(self) -> None:
        timeout = min(MAX_TIMEOUT_SECONDS, max(MIN_TIMEOUT_SECONDS, float(self.timeout_seconds)))
        object.__setattr__(self, "timeout_seconds", timeout)
        object.__setattr__(self, "credential_header", str(self.credential_header or CREDENTIAL_HEADER).strip().lower())
        object.__setattr__(self, "preflight_max_age", max(0, int(self.preflight_max_age)))

    def responses_flavor(self) -> GatewayFlavor:
        return dataclasses.replace(RESPONSES_FLAVOR, default_endpoint=self.default_endpoint or DEFAULT_RESPONSES_ENDPOINT)

    def search_flavor(self) -> GatewayFlavor:
        return dataclasses.replace(SEARCH_FLAVOR, default_base=self.default_search_base or DEFAULT_SEARCH_BASE)

    def models_flavor(self) -> GatewayFlavor:
        return dataclasses.replace(MODELS_FLAVOR, default_base=self.default_models_base or DEFAULT_MODELS_BASE)


def _normalize_log_level(value: Any) -> str:
    normalized = str(value or "").strip().lower()
    if normalized in GATEWAY_LOG_LEVEL_CHOICES:
        return normalized
    return "info"


def _configure_gateway_logging(level: str) -> None:
    normalized = _normalize_log_level(level)
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, normalized.upper(), logging.INFO))
    LOGGER.propagate = False


def _uvicorn_log_level(gateway_level: str) -> str:
    normalized = _normalize_log_level(gateway_level)
    if normalized == "debug":
        return "info"
    return normalized


def _float_env(name: str, default: float) -> float:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=dict(ALLOW_ORIGIN_HEADERS))


def _preflight_response(credential_header: str, max_age: int, allowed_methods: str = PREFLIGHT_ALLOWED_METHODS) -> Response:
    return Response(
        status_code=204,
        headers={
            **ALLOW_ORIGIN_HEADERS,
            "Access-Control-Allow-Methods": allowed_methods,
            "Access-Control-Allow-Headers": f"Content-Type, Authorization, {credential_header}",
            "Access-Control-Max-Age": str(max_age),
        },
    )


def _relay_response(upstream: UpstreamResponse) -> Response:
    return Response(
        content=upstream.body,
        status_code=upstream.status,
        headers={
            **ALLOW_ORIGIN_HEADERS,
            "Content-Type": upstream.content_type or JSON_CONTENT_TYPE,
        },
    )


def build_app(
    settings: GatewaySettings | None = None,
    *,
    transport: Transport | None = None,
    models_cache: TTLCache | None = None,
) -> FastAPI:
    settings = settings or GatewaySettings()
    transport = transport or UrllibTransport(timeout_seconds=settings.timeout_seconds)
    if models_cache is None:
        models_cache = TTLCache(ttl_seconds=settings.models_cache_ttl_seconds)
    responses_flavor = settings.responses_flavor()
    search_flavor = settings.search_flavor()
    models_flavor = settings.models_flavor()

    app = FastAPI()
    app.state.settings = settings
    app.state.models_cache = models_cache

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(_request: Request, exc: GatewayError) -> JSONResponse:
        return _error_response(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error_response(exc.status_code, str(exc.detail or "Request failed"))

    async def proxy(
        flavor: GatewayFlavor,
        request: Request,
        *,
        allowed_methods: str = PREFLIGHT_ALLOWED_METHODS,
        cache: TTLCache | None = None,
    ) -> Response:
        if request.method == "OPTIONS":
            return _preflight_response(settings.credential_header, settings.preflight_max_age, allowed_methods)
        inbound = InboundRequest.build(
            request.method,
            headers=request.headers,
            query=request.query_params,
            body=await request.body(),
        )
        upstream = await asyncio.to_thread(
            forward,
            flavor,
            inbound,
            transport,
            credential_header=settings.credential_header,
            cache=cache,
        )
        return _relay_response(upstream)

    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return {"status": "ok"}

    @app.api_route("/gateway", methods=PROXY_METHODS)
    async def gateway(request: Request) -> Response:
        return await proxy(responses_flavor, request)

    @app.api_route("/gateway/search", methods=["GET", "POST", "OPTIONS"])
    async def gateway_search(request: Request) -> Response:
        return await proxy(search_flavor, request, allowed_methods=SEARCH_PREFLIGHT_ALLOWED_METHODS)

    @app.api_route("/gateway/models", methods=["GET", "OPTIONS"])
    async def gateway_models(request: Request) -> Response:
        return await proxy(models_flavor, request, allowed_methods=MODELS_PREFLIGHT_ALLOWED_METHODS, cache=models_cache)

    @app.api_route("/gateway/models/cache", methods=["DELETE", "OPTIONS"])
    def gateway_models_cache(request: Request) -> Response:
        if request.method == "OPTIONS":
            return _preflight_response(
                settings.credential_header,
                settings.preflight_max_age,
                allowed_methods=CACHE_PREFLIGHT_ALLOWED_METHODS,
            )
        cleared = models_cache.clear()
        LOGGER.info("Cleared models cache entries=%d", cleared)
        return JSONResponse({"cleared": cleared}, headers=dict(ALLOW_ORIGIN_HEADERS))

    return app


@click.command(help="Run the Brainiac outbound API gateway.")
@click.option("--host", default=DEFAULT_HOST, show_default=True)
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=int)
@click.option(
    "--default-endpoint",
    default=os.environ.get("BRAINIAC_GATEWAY_DEFAULT_ENDPOINT", DEFAULT_RESPONSES_ENDPOINT),
    show_default=True,
    help="Endpoint appended to the base URL when the caller omits one.",
)
@click.option(
    "--search-base",
    default=os.environ.get("BRAINIAC_GATEWAY_SEARCH_BASE", DEFAULT_SEARCH_BASE),
    show_default=True,
    help="Search origin used when the caller omits base.",
)
@click.option(
    "--models-base",
    default=os.environ.get("BRAINIAC_GATEWAY_MODELS_BASE", DEFAULT_MODELS_BASE),
    show_default=True,
    help="Model list API used when the caller omits base.",
)
@click.option(
    "--credential-header",
    default=os.environ.get("BRAINIAC_GATEWAY_CREDENTIAL_HEADER", CREDENTIAL_HEADER),
    show_default=True,
    help="Request header whose value is sent upstream as a bearer token.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    default=_float_env("BRAINIAC_GATEWAY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
    show_default=True,
    type=float,
    help="Upstream request timeout in seconds.",
)
@click.option(
    "--preflight-max-age",
    default=int(_float_env("BRAINIAC_GATEWAY_PREFLIGHT_MAX_AGE", DEFAULT_PREFLIGHT_MAX_AGE)),
    show_default=True,
    type=int,
    help="Access-Control-Max-Age sent with preflight responses.",
)
@click.option(
    "--models-cache-ttl",
    default=_float_env("BRAINIAC_GATEWAY_MODELS_CACHE_TTL_SECONDS", DEFAULT_TTL_SECONDS),
    show_default=True,
    type=float,
    help="Seconds a model list response stays cached.",
)
@click.option(
    "--log-level",
    default=os.environ.get("BRAINIAC_GATEWAY_LOG_LEVEL", "info"),
    show_default=True,
    type=click.Choice(GATEWAY_LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Gateway logging verbosity (applies to gateway logs and Uvicorn).",
)
def main(
    host: str,
    port: int,
    default_endpoint: str,
    search_base: str,
    models_base: str,
    credential_header: str,
    timeout_seconds: float,
    preflight_max_age: int,
    models_cache_ttl: float,
    log_level: str,
) -> None:
    normalized_log_level = _normalize_log_level(log_level)
    _configure_gateway_logging(normalized_log_level)
    settings = GatewaySettings(
        default_endpoint=default_endpoint,
        default_search_base=search_base,
        default_models_base=models_base,
        credential_header=credential_header,
        timeout_seconds=timeout_seconds,
        preflight_max_age=preflight_max_age,
        models_cache_ttl_seconds=models_cache_ttl,
    )
    LOGGER.info(
        "Starting Brainiac gateway host=%s port=%s log_level=%s timeout=%.1fs",
        host,
        port,
        normalized_log_level,
        settings.timeout_seconds,
    )
    app = build_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=_uvicorn_log_level(normalized_log_level))


if __name__ == "__main__":
    main()
