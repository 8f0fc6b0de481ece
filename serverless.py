"""
serverless.py
-------------
MamaCare - Maternal Health Dashboard - Single-invocation proxy adapter
----------------------------------------------------------------------
Production deployment of the OpenMRS proxy as a one-shot function. The
hosting platform rewrites ``/api/openmrs/<path>`` to
``/api/openmrs?path=<path>``; when the rewrite did not happen the path is
recovered from the raw URL instead.

Configuration is read from the environment on every invocation, so a
missing credential yields a 500 JSON response (with CORS headers) rather
than a cold-start crash. Responses always allow any origin.

Usage:
    response = await handler(InvocationRequest(method="GET", url=..., query=...))
    response = handle(InvocationRequest(...))     # sync entry point

Project: MamaCare - Maternal Health Dashboard
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl

from proxy_gateway import ProxyGateway, ProxyResponse

logger = logging.getLogger(__name__)

_PROXY_PREFIX_RE = re.compile(r"^/api/openmrs/?")

QueryValue = Union[str, List[str]]


@dataclass
class InvocationRequest:
    """Inbound request as handed over by the function runtime."""

    method: str
    url: str = ""
    query: Dict[str, QueryValue] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class InvocationResponse:
    status_code: int
    headers: Dict[str, str]
    body: bytes = b""


def _flatten_query(query: Mapping[str, QueryValue]) -> List[Tuple[str, str]]:
    """Expand list-valued parameters into repeated (key, value) pairs."""
    items: List[Tuple[str, str]] = []
    for key, value in query.items():
        if isinstance(value, (list, tuple)):
            items.extend((key, str(v)) for v in value)
        elif value is not None:
            items.append((key, str(value)))
    return items


def split_invocation(request: InvocationRequest) -> Tuple[Optional[str], List[Tuple[str, str]]]:
    """
    Return (route_path, query_items) for the gateway.

    When the runtime already parsed a ``path`` parameter, the parsed query is
    used as-is. Otherwise the path and query are taken from the raw URL.
    """
    if request.query.get("path"):
        return None, _flatten_query(request.query)

    if request.url:
        raw_path, _, raw_query = request.url.partition("?")
        route_path = _PROXY_PREFIX_RE.sub("", raw_path)
        return route_path, parse_qsl(raw_query, keep_blank_values=True)

    return None, _flatten_query(request.query)


def _to_invocation_response(resp: ProxyResponse) -> InvocationResponse:
    headers = dict(resp.headers)
    if resp.media_type:
        headers["Content-Type"] = resp.media_type
    return InvocationResponse(status_code=resp.status_code, headers=headers, body=resp.content())


async def handler(request: InvocationRequest, gateway: Optional[ProxyGateway] = None) -> InvocationResponse:
    """
    Serve one invocation.

    Args:
        request: The inbound request.
        gateway: Injected gateway (tests); defaults to one built from the
                 environment with ``Access-Control-Allow-Origin: *``.
    """
    gateway = gateway or ProxyGateway.from_env(allow_origin="*")
    route_path, query_items = split_invocation(request)
    logger.debug("serverless: %s %s (route_path=%r)", request.method, request.url, route_path)
    resp = await gateway.handle(request.method, route_path, query_items, inbound_url=request.url)
    return _to_invocation_response(resp)


def handle(request: InvocationRequest, gateway: Optional[ProxyGateway] = None) -> InvocationResponse:
    """Synchronous entry point for runtimes that do not drive an event loop."""
    return asyncio.run(handler(request, gateway))
