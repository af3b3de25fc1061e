"""
Proxy Routes - Upstream Request Forwarding
==========================================

This module implements the transparent proxy endpoints that forward client
requests to the fixed upstream API host.

Forwarding Model:
-----------------
1. Target URL = upstream base + inbound path, raw query string reattached
2. Request headers pass through the request blocklist
3. Authorization is injected when absent (or replaced in overwrite mode)
4. Request bodies stream upstream chunk by chunk (never for GET/HEAD)
5. Response headers pass through the response blocklist
6. Response bodies stream back to the client as raw bytes

Endpoints:
----------
Registered per deployment profile by build_proxy_router(), e.g.
- ALL /compatible-mode/v1/{path}
- POST /chat/completions
"""

import logging
from typing import AsyncIterator, Iterable, Optional, Tuple

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from ..models import ForwardingPolicy
from .headers import (
    CONTENT_LENGTH,
    apply_credential,
    filter_request_headers,
    filter_response_headers,
    without_header,
)

logger = logging.getLogger(__name__)

# Methods whose body is never forwarded, even when the client sent one
BODYLESS_METHODS = frozenset({"GET", "HEAD"})


# ============================================================================
# Dependencies
# ============================================================================

def get_http_client(request: Request) -> httpx.AsyncClient:
    """
    Dependency to get the shared upstream HTTP client from app state.

    Raises:
        HTTPException: If the client has not been created (lifespan not run)
    """
    app_state = getattr(request.app.state, "app_state", None)
    client = getattr(app_state, "http_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Upstream client not available"
        )
    return client


def get_forwarding_policy(request: Request) -> ForwardingPolicy:
    """Dependency returning the read-only forwarding policy built at startup."""
    app_state = getattr(request.app.state, "app_state", None)
    policy = getattr(app_state, "policy", None)
    if policy is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Forwarding policy not configured"
        )
    return policy


# ============================================================================
# Request Preparation
# ============================================================================

def build_target_url(base_url: str, request: Request) -> str:
    """
    Rewrite the inbound URL onto the upstream host.

    The path is taken from the raw request target when the server provides
    it, and the query string is reattached verbatim, so parameter order,
    duplicate keys and percent-encoding reach the upstream unchanged.

    Args:
        base_url: Upstream scheme+host without trailing slash
        request: Inbound request

    Returns:
        Absolute upstream URL
    """
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path

    target_url = f"{base_url}{path}"

    query = request.scope.get("query_string", b"").decode("latin-1")
    if query:
        target_url += f"?{query}"

    return target_url


def request_has_body(request: Request) -> bool:
    """
    Decide whether the inbound request carries a body worth forwarding.

    GET and HEAD never forward a body. Otherwise a body is present when the
    client framed one with Transfer-Encoding or a non-zero Content-Length.
    """
    if request.method in BODYLESS_METHODS:
        return False

    if "transfer-encoding" in request.headers:
        return True

    content_length = request.headers.get("content-length")
    if content_length is None:
        return False

    try:
        return int(content_length) > 0
    except ValueError:
        return False


def build_upstream_headers(
    raw_headers: Iterable[Tuple[bytes, bytes]],
    policy: ForwardingPolicy,
    has_body: bool,
):
    headers = filter_request_headers(raw_headers)
    headers = apply_credential(
        headers,
        policy.authorization,
        overwrite=policy.overwrite_authorization,
    )

    # The body is dropped, so its declared length must go too
    if not has_body:
        headers = without_header(headers, CONTENT_LENGTH)

    return headers


# ============================================================================
# Response Relay
# ============================================================================

async def relay_upstream_body(upstream_response: httpx.Response) -> AsyncIterator[bytes]:
    """
    Stream the upstream body to the client as raw (still-encoded) bytes.

    Each chunk is yielded as soon as it arrives; the next upstream read only
    happens once the server has accepted the previous chunk. If the client
    goes away the generator is closed and the upstream connection with it.
    """
    try:
        async for chunk in upstream_response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        logger.warning(
            f"Upstream stream interrupted: {e}",
            extra={
                "url": str(upstream_response.request.url),
                "status_code": upstream_response.status_code,
            }
        )
        raise
    finally:
        await upstream_response.aclose()


# ============================================================================
# Proxy Endpoint
# ============================================================================

async def proxy_request(
    request: Request,
    http_client: httpx.AsyncClient = Depends(get_http_client),
    policy: ForwardingPolicy = Depends(get_forwarding_policy),
):
    """
    Forward one inbound request upstream and stream the answer back.

    Upstream non-2xx answers are passed through unchanged. Only failures to
    obtain a response at all are turned into gateway errors.

    Raises:
        HTTPException: 504 on upstream timeout, 502 on any other transport error
    """
    target_url = build_target_url(policy.upstream_base_url, request)
    has_body = request_has_body(request)
    headers = build_upstream_headers(request.headers.raw, policy, has_body)

    content: Optional[AsyncIterator[bytes]] = request.stream() if has_body else None

    upstream_request = http_client.build_request(
        method=request.method,
        url=target_url,
        headers=headers,
        content=content,
    )

    logger.info(
        "Proxying request to upstream",
        extra={
            "method": request.method,
            "path": request.url.path,
            "streaming_body": has_body,
        }
    )

    try:
        upstream_response = await http_client.send(upstream_request, stream=True)

    except httpx.TimeoutException:
        logger.error(
            "Upstream request timeout",
            extra={"method": request.method, "path": request.url.path}
        )
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail="Upstream service timeout"
        )

    except httpx.RequestError as e:
        logger.error(
            f"Upstream request failed: {e}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "exception_type": type(e).__name__,
            }
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Cannot reach upstream service"
        )

    logger.info(
        "Upstream responded",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": upstream_response.status_code,
        }
    )

    response = StreamingResponse(
        relay_upstream_body(upstream_response),
        status_code=upstream_response.status_code,
        background=BackgroundTask(upstream_response.aclose),
    )
    # Raw pairs keep repeated headers (e.g. Set-Cookie) intact
    response.raw_headers = filter_response_headers(upstream_response.headers.raw)

    return response


def build_proxy_router(routes: Iterable[Tuple[str, Tuple[str, ...]]]) -> APIRouter:
    """
    Create a router serving proxy_request on each (path, methods) route.

    Args:
        routes: Path templates and their allowed methods, e.g.
            ``[("/compatible-mode/v1/{path:path}", ("GET", "POST"))]``

    Returns:
        APIRouter ready to be included in the application
    """
    router = APIRouter()

    for path, methods in routes:
        router.add_api_route(
            path,
            proxy_request,
            methods=list(methods),
            include_in_schema=False,
        )

    return router
