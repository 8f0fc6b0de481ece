"""
main.py
-------
MamaCare - Maternal Health Dashboard - FastAPI server
-----------------------------------------------------
Long-running deployment of the OpenMRS proxy (local development) plus the
dashboard API that reads patient data through it.

Endpoints:
    GET      /health                   Service health check
    GET      /api/openmrs?path=<p>     Proxy to {OPENMRS_BASE_URL}/openmrs/<p>
    GET      /api/openmrs/<p>          Same, path taken from the URL
    OPTIONS  /api/openmrs[/<p>]        CORS preflight, never reaches OpenMRS
    *        /api/openmrs[/<p>]        Any other method -> 405
    GET      /dashboard?email=<e>      Assembled patient dashboard
    GET      /dashboard/status         Global loading flag and latest error
    DELETE   /dashboard/error          Dismiss the error banner

Run:
    uvicorn main:app --port 3001
    python main.py

Project: MamaCare - Maternal Health Dashboard
"""

import logging
import os
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Optional

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from dashboard import Dashboard, PatientLookupError, build_dashboard
from openmrs_client import OpenMRSClient
from proxy_gateway import DEFAULT_OPENMRS_BASE_URL, PROXY_PATH, ProxyGateway, ProxyResponse
from request_tracker import LoadingStatus, RequestTracker

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "MamaCare Maternal Health Dashboard"

ALLOWED_ORIGIN = os.getenv("PROXY_ALLOWED_ORIGIN", "http://localhost:3000")

# All methods reach the gateway, which answers 405 for anything but GET/OPTIONS.
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

ClientFactory = Callable[[RequestTracker], OpenMRSClient]

router = APIRouter()


# ── Dependencies ───────────────────────────────────────────────────────────────

def get_gateway(request: Request) -> ProxyGateway:
    return request.app.state.gateway


def get_tracker(request: Request) -> RequestTracker:
    return request.app.state.tracker


def get_loading_status(request: Request) -> LoadingStatus:
    return request.app.state.loading_status


async def get_openmrs_client(request: Request) -> AsyncIterator[OpenMRSClient]:
    """One connected client per request, reporting to the app's tracker."""
    client = request.app.state.client_factory(request.app.state.tracker)
    async with client:
        yield client


# ── Helpers ────────────────────────────────────────────────────────────────────

def _to_response(resp: ProxyResponse) -> Response:
    return Response(
        content=resp.content(),
        status_code=resp.status_code,
        headers=resp.headers,
        media_type=resp.media_type,
    )


def _inbound_url(request: Request) -> str:
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


async def _proxy(request: Request, api_path: Optional[str], gateway: ProxyGateway) -> Response:
    resp = await gateway.handle(
        request.method,
        api_path,
        request.query_params.multi_items(),
        inbound_url=_inbound_url(request),
    )
    return _to_response(resp)


# ── Endpoints ──────────────────────────────────────────────────────────────────

@router.get("/health")
def health_check() -> dict:
    """
    Return service health status.

    Returns:
        dict: status, service, version, openmrs_url, proxy_path, timestamp.
    """
    return {
        "status": "ok",
        "message": "Proxy server is running",
        "service": SERVICE_NAME,
        "version": VERSION,
        "openmrs_url": os.getenv("OPENMRS_BASE_URL", DEFAULT_OPENMRS_BASE_URL),
        "proxy_path": PROXY_PATH,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.api_route(PROXY_PATH, methods=PROXY_METHODS)
async def openmrs_proxy_query(request: Request, gateway: ProxyGateway = Depends(get_gateway)) -> Response:
    """Proxy with the OpenMRS path supplied as ``?path=``."""
    return await _proxy(request, None, gateway)


@router.api_route(PROXY_PATH + "/{api_path:path}", methods=PROXY_METHODS)
async def openmrs_proxy_path(
    request: Request,
    api_path: str,
    gateway: ProxyGateway = Depends(get_gateway),
) -> Response:
    """Proxy with the OpenMRS path taken from the URL after /api/openmrs/."""
    return await _proxy(request, api_path, gateway)


@router.get("/dashboard", response_model=Dashboard)
async def get_dashboard(
    email: str = Query(..., min_length=1, description="E-mail registered on the patient record"),
    client: OpenMRSClient = Depends(get_openmrs_client),
) -> Dashboard:
    """
    Look the patient up by e-mail and return every dashboard section.

    Raises:
        HTTPException 404: no patient is registered with the e-mail.
        HTTPException 502: the patient lookup itself failed.
    """
    try:
        return await build_dashboard(client, email)
    except PatientLookupError as exc:
        status = 404 if exc.not_registered else 502
        raise HTTPException(status_code=status, detail=exc.message) from exc


@router.get("/dashboard/status")
def dashboard_status(status: LoadingStatus = Depends(get_loading_status)) -> dict:
    """Global loading overlay and error banner state."""
    return status.as_dict()


@router.delete("/dashboard/error")
def clear_dashboard_error(
    tracker: RequestTracker = Depends(get_tracker),
    status: LoadingStatus = Depends(get_loading_status),
) -> dict:
    """Dismiss the error banner."""
    tracker.clear_error()
    return status.as_dict()


# ── App factory ────────────────────────────────────────────────────────────────

class DashboardCORSMiddleware(CORSMiddleware):
    """
    CORSMiddleware for the dashboard routes only.

    Requests under the proxy prefix pass straight through: the gateway answers
    their preflight itself and adds its own CORS headers to every response.
    """

    async def __call__(self, scope, receive, send) -> None:
        path = scope.get("path", "")
        if scope["type"] == "http" and (path == PROXY_PATH or path.startswith(PROXY_PATH + "/")):
            await self.app(scope, receive, send)
            return
        await super().__call__(scope, receive, send)


def create_app(
    gateway: Optional[ProxyGateway] = None,
    client_factory: Optional[ClientFactory] = None,
    allowed_origin: str = ALLOWED_ORIGIN,
) -> FastAPI:
    """
    Build the application with its own tracker, loading status and gateway.

    Args:
        gateway:        Proxy gateway; defaults to one configured from the
                        environment with ``allowed_origin``.
        client_factory: Builds the OpenMRSClient used by dashboard routes.
        allowed_origin: Browser origin allowed to call this server.
    """
    app = FastAPI(
        title=SERVICE_NAME,
        version=VERSION,
        description="OpenMRS credential-injecting proxy and maternal health dashboard API.",
    )

    app.add_middleware(
        DashboardCORSMiddleware,
        allow_origins=[allowed_origin],
        allow_credentials=True,
        allow_methods=["GET", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    )

    tracker = RequestTracker()
    app.state.tracker = tracker
    app.state.loading_status = LoadingStatus(tracker)
    app.state.gateway = gateway or ProxyGateway.from_env(allow_origin=allowed_origin)
    app.state.client_factory = client_factory or (lambda t: OpenMRSClient(tracker=t))

    app.include_router(router)
    logger.info("Proxying OpenMRS requests under %s", PROXY_PATH)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "3001")))
