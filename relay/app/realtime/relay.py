"""
WebSocket relay plumbing shared by the realtime endpoints.

Each relay accepts the client socket, opens one upstream connection with the
server-side credential, optionally sends a session greeting, then runs two
pumps (client -> upstream, upstream -> client) concurrently. Whichever pump
finishes first ends the relay and the other is cancelled.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import WebSocketException

from ..config import Settings

logger = logging.getLogger(__name__)

Pump = Callable[..., Awaitable[None]]

# Close codes that may not be sent in a close frame
_NO_STATUS_RECEIVED = 1005
_ABNORMAL_CLOSURE = 1006
_INTERNAL_ERROR = 1011


def get_realtime_settings(websocket: WebSocket) -> Settings:
    return websocket.app.state.app_state.settings


def upstream_headers(settings: Settings, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    headers = {"Authorization": f"Bearer {settings.UPSTREAM_API_KEY}"}
    if extra:
        headers.update(extra)
    return headers


def client_close_code(code: Optional[int]) -> int:
    """Map an upstream close code onto one that can be sent to the client."""
    if code is None or code == _NO_STATUS_RECEIVED:
        return 1000
    if code == _ABNORMAL_CLOSURE:
        return _INTERNAL_ERROR
    return code


async def close_client(websocket: WebSocket, code: int = 1000, reason: str = "") -> None:
    """Close the client socket unless either side already closed it."""
    if (
        websocket.application_state != WebSocketState.CONNECTED
        or websocket.client_state != WebSocketState.CONNECTED
    ):
        return

    try:
        await websocket.close(code=code, reason=reason)
    except (RuntimeError, OSError) as e:
        logger.debug(f"Client socket already gone while closing: {e}")


async def forward_upstream_close(upstream: ClientConnection, websocket: WebSocket) -> None:
    """Relay the upstream close frame (code and reason) to the client."""
    await close_client(
        websocket,
        code=client_close_code(upstream.close_code),
        reason=upstream.close_reason or "",
    )


async def run_pumps(*pumps: Awaitable[None]) -> None:
    """
    Run relay directions concurrently until the first one finishes.

    Remaining pumps are cancelled. Errors raised by a pump are logged and do
    not propagate; the relay simply ends.
    """
    tasks = [asyncio.ensure_future(pump) for pump in pumps]

    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)

    for result in results:
        if isinstance(result, Exception):
            logger.error(
                f"Realtime relay direction failed: {result}",
                exc_info=result,
                extra={"exception_type": type(result).__name__}
            )


async def serve_relay(
    websocket: WebSocket,
    url: str,
    headers: Dict[str, str],
    client_pump: Pump,
    upstream_pump: Pump,
    greeting: Optional[str] = None,
    settle_seconds: float = 0.0,
) -> None:
    """
    Accept the client, connect upstream and relay until either side ends.

    Args:
        websocket: Client socket (not yet accepted)
        url: Upstream WebSocket URL
        headers: Handshake headers for the upstream (credential included)
        client_pump: Coroutine function relaying client -> upstream
        upstream_pump: Coroutine function relaying upstream -> client
        greeting: Optional first text message to send upstream
        settle_seconds: Pause after the greeting before relaying
    """
    await websocket.accept()

    try:
        async with connect(url, additional_headers=headers) as upstream:
            logger.info("Connected to upstream realtime API", extra={"path": websocket.url.path})

            if greeting is not None:
                await upstream.send(greeting)
                logger.debug("Sent session greeting upstream")

            if settle_seconds:
                await asyncio.sleep(settle_seconds)

            await run_pumps(
                client_pump(websocket, upstream),
                upstream_pump(upstream, websocket),
            )

    except (OSError, WebSocketException) as e:
        logger.error(
            f"Upstream realtime connection failed: {e}",
            extra={"path": websocket.url.path, "exception_type": type(e).__name__}
        )
        await close_client(websocket, code=_INTERNAL_ERROR, reason="Upstream connection failed")
        return

    await close_client(websocket)
    logger.info("Realtime relay finished", extra={"path": websocket.url.path})

