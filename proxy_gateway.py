"""
proxy_gateway.py
----------------
MamaCare - Maternal Health Dashboard - OpenMRS Proxy Gateway
------------------------------------------------------------
Stateless single-attempt forwarder shared by both deployment modes:

  - main.py        long-running FastAPI server (local development)
  - serverless.py  one-shot function invocation (production)

For each inbound request the gateway:
  1. Answers OPTIONS preflight immediately with CORS headers (no upstream call).
  2. Rejects every method except GET with 405.
  3. Resolves the relative API path from the ``path`` query parameter or the
     wildcard route segment; neither present -> 400.
  4. Forwards ``GET {base}/openmrs/{path}?{query}`` with Basic-Auth and
     ``Content-Type: application/json``.
  5. Relays the upstream body: JSON re-emitted, non-JSON passed through as
     text, non-2xx wrapped in an ``OpenMRS API error`` envelope with the
     upstream status preserved. Transport failures become 500.

Every response, including errors, carries the CORS headers so the browser
never blocks it. Nothing is retried.

Configuration (environment, see load_proxy_target):
    OPENMRS_BASE_URL                   upstream host (default below)
    OPENMRS_USERNAME / OPENMRS_PASSWORD  required
    OPENMRS_ALLOW_DEFAULT_CREDENTIALS  "true" enables the legacy demo login
    OPENMRS_PROXY_TIMEOUT              seconds; unset means no timeout

Project: MamaCare - Maternal Health Dashboard
"""

from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_OPENMRS_BASE_URL = "https://openmrs6.arogya.cloud"
PROXY_PATH = "/api/openmrs"

ALLOWED_METHODS = "GET, OPTIONS"
ALLOWED_HEADERS = "Content-Type, Authorization, X-Requested-With"

# Demo credentials of the public OpenMRS reference server. Only used when
# OPENMRS_ALLOW_DEFAULT_CREDENTIALS is explicitly enabled.
_LEGACY_USERNAME = "admin"
_LEGACY_PASSWORD = "Admin123"

NO_PATH_MESSAGE = (
    "No API path provided. Use /api/openmrs?path=ws/rest/v1/session "
    "or /api/openmrs/ws/rest/v1/session"
)

QueryItems = List[Tuple[str, str]]


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class GatewayError(Exception):
    """Base class for every failure the gateway reports to its caller."""

    status_code: int = 500
    error: str = "Proxy error"

    def body(self) -> Dict[str, Any]:
        return {"error": self.error, "message": str(self)}


class ProxyConfigError(GatewayError):
    """Raised when the upstream target cannot be built from configuration."""

    error = "Proxy configuration error"


class InvalidRequestError(GatewayError):
    """No API path was supplied."""

    status_code = 400
    error = "Invalid request"

    def __init__(self, message: str = NO_PATH_MESSAGE, url: str = "") -> None:
        super().__init__(message)
        self.url = url

    def body(self) -> Dict[str, Any]:
        return {"error": self.error, "message": str(self), "url": self.url}


class MethodNotAllowedError(GatewayError):
    """Only GET is forwarded."""

    status_code = 405
    error = "Method not allowed"

    def __init__(self, method: str) -> None:
        super().__init__(f"Method {method} is not allowed; only GET is proxied")
        self.method = method

    def body(self) -> Dict[str, Any]:
        return {"error": self.error}


class UpstreamError(GatewayError):
    """OpenMRS was reached but answered with a non-2xx status."""

    error = "OpenMRS API error"

    def __init__(self, status_code: int, status_text: str, text: str, url: str) -> None:
        super().__init__(f"OpenMRS returned {status_code} {status_text}")
        self.status_code = status_code
        self.status_text = status_text
        self.text = text
        self.url = url

    def body(self) -> Dict[str, Any]:
        try:
            details = json.loads(self.text)
        except ValueError:
            details = {"error": self.text}
        return {
            "error": self.error,
            "status": self.status_code,
            "statusText": self.status_text,
            "details": details,
            "requestedUrl": self.url,
        }


class TransportError(GatewayError):
    """OpenMRS could not be reached (DNS, TLS, connection, timeout)."""

    def __init__(self, message: str, url: str, path: str) -> None:
        super().__init__(message)
        self.url = url
        self.path = path

    def body(self) -> Dict[str, Any]:
        return {"error": self.error, "message": str(self), "url": self.url, "path": self.path}


# ---------------------------------------------------------------------------
# Target configuration
# ---------------------------------------------------------------------------

class ProxyTarget(BaseModel):
    """Immutable upstream host plus the credentials injected into every request."""

    model_config = ConfigDict(frozen=True)

    base_url: str
    username: str
    password: str = Field(repr=False)

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("base_url must not be empty")
        return v

    def auth_header(self) -> str:
        credentials = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
        return f"Basic {credentials}"

    def upstream_url(self, api_path: str, query: str = "") -> str:
        """``{base}/openmrs/{path}`` plus ``?{query}`` when a query is present."""
        url = f"{self.base_url}/openmrs/{api_path.lstrip('/')}"
        return f"{url}?{query}" if query else url


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


def load_proxy_target(env: Optional[Mapping[str, str]] = None) -> ProxyTarget:
    """
    Build the ProxyTarget from environment variables.

    Credentials must be configured explicitly. The legacy ``admin`` /
    ``Admin123`` demo login is used only when
    ``OPENMRS_ALLOW_DEFAULT_CREDENTIALS`` is truthy.

    Raises:
        ProxyConfigError: if credentials are missing and the opt-in is off.
    """
    env = os.environ if env is None else env
    base_url = env.get("OPENMRS_BASE_URL") or DEFAULT_OPENMRS_BASE_URL
    username = env.get("OPENMRS_USERNAME")
    password = env.get("OPENMRS_PASSWORD")

    if not username or not password:
        if not _env_flag(env.get("OPENMRS_ALLOW_DEFAULT_CREDENTIALS")):
            raise ProxyConfigError(
                "OPENMRS_USERNAME and OPENMRS_PASSWORD must be set "
                "(or set OPENMRS_ALLOW_DEFAULT_CREDENTIALS=true for the demo server)"
            )
        logger.warning("ProxyGateway: OpenMRS credentials not configured, using demo defaults")
        username = username or _LEGACY_USERNAME
        password = password or _LEGACY_PASSWORD

    return ProxyTarget(base_url=base_url, username=username, password=password)


def load_timeout(env: Optional[Mapping[str, str]] = None) -> Optional[float]:
    """Upstream timeout in seconds from OPENMRS_PROXY_TIMEOUT; None disables it."""
    env = os.environ if env is None else env
    raw = (env.get("OPENMRS_PROXY_TIMEOUT") or "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("ProxyGateway: ignoring invalid OPENMRS_PROXY_TIMEOUT=%r", raw)
        return None


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

def cors_headers(allow_origin: str = "*") -> Dict[str, str]:
    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": ALLOWED_HEADERS,
    }
    if allow_origin != "*":
        headers["Access-Control-Allow-Credentials"] = "true"
    return headers


def resolve_api_path(route_path: Optional[str], query_items: Sequence[Tuple[str, str]]) -> Tuple[str, QueryItems]:
    """
    Work out the relative OpenMRS path and the query to forward.

    The ``path`` query parameter wins (repeated values are joined with "/")
    and is removed from the forwarded query. Otherwise the wildcard route
    segment is used and the query is forwarded untouched.

    Returns:
        (api_path, remaining_query_items). api_path is "" when neither source
        supplies one.
    """
    items = list(query_items)
    path_values = [v.strip("/") for k, v in items if k == "path" and v and v.strip("/")]
    if path_values:
        return "/".join(path_values), [(k, v) for k, v in items if k != "path"]
    return (route_path or "").strip("/"), items


# ---------------------------------------------------------------------------
# Response container
# ---------------------------------------------------------------------------

@dataclass
class ProxyResponse:
    """Transport-neutral response rendered by each deployment adapter."""

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    kind: str = "json"  # "json" | "text" | "empty"

    @property
    def media_type(self) -> Optional[str]:
        if self.kind == "json":
            return "application/json"
        if self.kind == "text":
            return "text/plain; charset=utf-8"
        return None

    def content(self) -> bytes:
        if self.kind == "json":
            return json.dumps(self.body, ensure_ascii=False).encode("utf-8")
        if self.kind == "text":
            return (self.body or "").encode("utf-8")
        return b""


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

class ProxyGateway:
    """
    Configurable forwarder parameterised by allowed origin and upstream target.

    Args:
        target:       Upstream target. If None it is loaded lazily from the
                      environment on first forward, so a missing credential
                      surfaces as a 500 response instead of a crash.
        allow_origin: Value of Access-Control-Allow-Origin.
        timeout:      Upstream timeout in seconds; None means wait forever.
        transport:    Optional httpx transport (tests use httpx.MockTransport).
        target_loader: Callable returning a ProxyTarget (default: environment).
    """

    def __init__(
        self,
        target: Optional[ProxyTarget] = None,
        allow_origin: str = "*",
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        target_loader: Callable[[], ProxyTarget] = load_proxy_target,
    ) -> None:
        self._target = target
        self.allow_origin = allow_origin
        self.timeout = timeout
        self._transport = transport
        self._target_loader = target_loader

    @classmethod
    def from_env(cls, allow_origin: str = "*", env: Optional[Mapping[str, str]] = None) -> "ProxyGateway":
        """Gateway whose target and timeout come from the environment."""
        return cls(
            allow_origin=allow_origin,
            timeout=load_timeout(env),
            target_loader=lambda: load_proxy_target(env),
        )

    @property
    def target(self) -> ProxyTarget:
        if self._target is None:
            self._target = self._target_loader()
        return self._target

    # ── Responses ────────────────────────────────────────────────────────────

    def cors_headers(self) -> Dict[str, str]:
        return cors_headers(self.allow_origin)

    def preflight(self) -> ProxyResponse:
        return ProxyResponse(status_code=200, headers=self.cors_headers(), kind="empty")

    def _error_response(self, exc: GatewayError) -> ProxyResponse:
        headers = self.cors_headers()
        if isinstance(exc, MethodNotAllowedError):
            headers["Allow"] = ALLOWED_METHODS
        return ProxyResponse(status_code=exc.status_code, headers=headers, body=exc.body())

    # ── Entry points ─────────────────────────────────────────────────────────

    async def handle(
        self,
        method: str,
        route_path: Optional[str],
        query_items: Sequence[Tuple[str, str]],
        inbound_url: str = "",
    ) -> ProxyResponse:
        """
        Full inbound dispatch used by both adapters.

        Order: preflight, method check, path resolution, forward. A rejected
        method never reaches path resolution or the upstream.
        """
        method = method.upper()
        if method == "OPTIONS":
            return self.preflight()
        if method != "GET":
            logger.info("[Proxy] %s %s rejected (method not allowed)", method, inbound_url or route_path or "")
            return self._error_response(MethodNotAllowedError(method))

        api_path, remaining = resolve_api_path(route_path, query_items)
        if not api_path:
            return self._error_response(InvalidRequestError(url=inbound_url))
        return await self.forward(method, api_path, remaining, inbound_url=inbound_url)

    async def forward(
        self,
        method: str,
        api_path: str,
        query_items: Sequence[Tuple[str, str]] = (),
        inbound_url: str = "",
    ) -> ProxyResponse:
        """Forward one request upstream. Never raises; failures become responses."""
        try:
            return await self._forward(method, api_path, list(query_items), inbound_url)
        except GatewayError as exc:
            if isinstance(exc, (TransportError, ProxyConfigError)):
                logger.error("[Proxy Error] %s", exc)
            return self._error_response(exc)

    async def _forward(self, method: str, api_path: str, query_items: QueryItems, inbound_url: str) -> ProxyResponse:
        target = self.target
        url = target.upstream_url(api_path, urlencode(query_items))
        headers = {
            "Authorization": target.auth_header(),
            "Content-Type": "application/json",
        }
        logger.info("[Proxy] %s %s -> %s", method, inbound_url or api_path, url)

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                resp = await client.request(method, url, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or type(exc).__name__, url=url, path=api_path) from exc

        text = resp.text
        logger.info("[Proxy] Response: %d %s for %s %s", resp.status_code, resp.reason_phrase, method, api_path)

        if not resp.is_success:
            raise UpstreamError(resp.status_code, resp.reason_phrase, text, url)

        try:
            data = json.loads(text)
        except ValueError:
            return ProxyResponse(status_code=resp.status_code, headers=self.cors_headers(), body=text, kind="text")
        return ProxyResponse(status_code=resp.status_code, headers=self.cors_headers(), body=data)
