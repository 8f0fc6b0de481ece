"""
openmrs_client.py
-----------------
MamaCare - Maternal Health Dashboard - OpenMRS REST / FHIR client
-----------------------------------------------------------------
Async client for the OpenMRS endpoints the dashboard reads. Every request
is registered with the shared RequestTracker, so the loading flag and the
error banner reflect all outstanding EMR calls regardless of which
dashboard section issued them.

Routing:
  - Proxy mode (default): requests go to ``OPENMRS_PROXY_URL``
    (``http://localhost:3001/api/openmrs``); the proxy injects credentials.
  - Direct mode (``OPENMRS_USE_PROXY=false``): requests go to
    ``{OPENMRS_BASE_URL}/openmrs`` with a Basic-Auth header built from the
    proxy target configuration.

Usage (async context manager - preferred):
    async with OpenMRSClient(tracker=tracker) as client:
        session = await client.get_session()
        visits  = await client.get_visits(patient_uuid)

Project: MamaCare - Maternal Health Dashboard
"""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping, Optional

import httpx

from proxy_gateway import DEFAULT_OPENMRS_BASE_URL, ProxyTarget, load_proxy_target
from request_tracker import RequestTracker

logger = logging.getLogger(__name__)

DEFAULT_PROXY_URL = "http://localhost:3001/api/openmrs"

# Order types on the reference server.
DRUG_ORDER_TYPE_UUID = "131168f4-15f5-102d-96e4-000c29c2a5d7"
TEST_ORDER_TYPE_UUID = "52a447d3-a64a-11e3-9aeb-50e549534c5e"

REST_V1 = "ws/rest/v1"
FHIR_R4 = "ws/fhir2/R4"


class OpenMRSAPIError(Exception):
    """Raised when an OpenMRS call fails; status_code is 0 for transport failures."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def _env_flag(value: Optional[str], default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in {"0", "false", "no"}


class OpenMRSClient:
    """
    Async OpenMRS client that reports every call to a RequestTracker.

    Args:
        tracker:   Shared coordinator; a private one is created if omitted.
        use_proxy: Route through the credential-injecting proxy. Defaults to
                   ``OPENMRS_USE_PROXY`` (true unless set to false).
        proxy_url: Proxy base URL (``OPENMRS_PROXY_URL``).
        target:    Upstream target for direct mode; loaded from the
                   environment when needed.
        timeout:   HTTP timeout in seconds; None waits indefinitely.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        tracker: Optional[RequestTracker] = None,
        use_proxy: Optional[bool] = None,
        proxy_url: Optional[str] = None,
        target: Optional[ProxyTarget] = None,
        timeout: Optional[float] = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.tracker = tracker or RequestTracker()
        self.use_proxy = _env_flag(os.getenv("OPENMRS_USE_PROXY"), True) if use_proxy is None else use_proxy
        self.proxy_url = (proxy_url or os.getenv("OPENMRS_PROXY_URL", DEFAULT_PROXY_URL)).rstrip("/")
        self._target = target
        self.timeout = timeout
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            logger.debug("OpenMRSClient: HTTP transport initialised (proxy=%s).", self.use_proxy)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("OpenMRSClient: HTTP transport closed.")

    async def __aenter__(self) -> "OpenMRSClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    # ── URL helpers ──────────────────────────────────────────────────────────

    @property
    def target(self) -> ProxyTarget:
        if self._target is None:
            self._target = load_proxy_target()
        return self._target

    @property
    def base_url(self) -> str:
        """Proxy base in proxy mode, ``{upstream}/openmrs`` in direct mode."""
        if self.use_proxy:
            return self.proxy_url
        base = self._target.base_url if self._target else os.getenv("OPENMRS_BASE_URL", DEFAULT_OPENMRS_BASE_URL)
        return f"{base.rstrip('/')}/openmrs"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        # In proxy mode the proxy injects credentials.
        if not self.use_proxy:
            headers["Authorization"] = self.target.auth_header()
        return headers

    # ── Internal request helper ──────────────────────────────────────────────

    async def _request(self, path: str, params: Optional[Mapping[str, str]] = None) -> Any:
        """
        GET ``{base_url}/{path}`` and return the parsed JSON body.

        The call is tracked for its whole duration; failures are reported to
        the tracker's error observers before OpenMRSAPIError propagates.

        Raises:
            RuntimeError:    if ``connect()`` / ``__aenter__`` was not called.
            OpenMRSAPIError: on transport failure, non-2xx status or non-JSON body.
        """
        if self._http is None:
            raise RuntimeError(
                "OpenMRSClient is not connected. "
                "Use 'async with OpenMRSClient() as client:' or call connect() first."
            )

        url = f"{self.base_url}/{path.lstrip('/')}"
        async with self.tracker.track(path):
            try:
                resp = await self._http.get(url, headers=self._headers(), params=params)
            except httpx.HTTPError as exc:
                raise OpenMRSAPIError(0, str(exc) or "Failed to fetch data from OpenMRS") from exc

            if not resp.is_success:
                raise OpenMRSAPIError(
                    resp.status_code,
                    f"Failed to fetch data from OpenMRS: {resp.status_code} {resp.reason_phrase}",
                )

            try:
                return resp.json()
            except ValueError as exc:
                raise OpenMRSAPIError(resp.status_code, f"Invalid JSON from OpenMRS for {path}") from exc

    # ── REST v1 ──────────────────────────────────────────────────────────────

    async def get_session(self) -> dict[str, Any]:
        """``GET ws/rest/v1/session`` - verifies the credentials / establishes a session."""
        return await self._request(f"{REST_V1}/session")

    async def search_patients(self, query: str, limit: int = 1, view: str = "default") -> dict[str, Any]:
        """``GET ws/rest/v1/patient?q=...`` - free-text search (name, identifier, e-mail)."""
        return await self._request(
            f"{REST_V1}/patient",
            params={"q": query, "limit": str(limit), "v": view},
        )

    async def get_patient(self, patient_uuid: str, view: str = "full") -> dict[str, Any]:
        return await self._request(f"{REST_V1}/patient/{patient_uuid}", params={"v": view})

    async def get_visits(self, patient_uuid: str) -> dict[str, Any]:
        return await self._request(f"{REST_V1}/visit", params={"patient": patient_uuid})

    async def get_orders(self, patient_uuid: str, order_type: str = DRUG_ORDER_TYPE_UUID) -> dict[str, Any]:
        return await self._request(
            f"{REST_V1}/order",
            params={"patient": patient_uuid, "orderType": order_type, "v": "full"},
        )

    async def get_observations(self, patient_uuid: str, order_type: Optional[str] = None) -> dict[str, Any]:
        params = {"patient": patient_uuid, "v": "full"}
        if order_type:
            params["orderType"] = order_type
        return await self._request(f"{REST_V1}/obs", params=params)

    # ── FHIR R4 ──────────────────────────────────────────────────────────────

    async def get_conditions(self, patient_uuid: str) -> dict[str, Any]:
        """``GET ws/fhir2/R4/Condition?patient=...`` - returns a FHIR Bundle."""
        return await self._request(f"{FHIR_R4}/Condition", params={"patient": patient_uuid})
