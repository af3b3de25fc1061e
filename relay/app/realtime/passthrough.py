"""
Realtime API passthrough: relays frames to ``{REALTIME_WS_BASE_URL}/{path}``
unchanged in both directions, adding only the server-side credential.
"""

import logging

from fastapi import APIRouter, WebSocket
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from .relay import close_client, forward_upstream_close, get_realtime_settings, serve_relay, upstream_headers

logger = logging.getLogger(__name__)

passthrough_router = APIRouter()


async def client_to_upstream(websocket: WebSocket, upstream: ClientConnection) -> None:
    while True:
        message = await websocket.receive()

        if message["type"] == "websocket.disconnect":
            await upstream.close()
            return

        data = message.get("text")
        if data is None:
            data = message.get("bytes")
        if data is None:
            continue

        try:
            await upstream.send(data)
        except ConnectionClosed as e:
            logger.error(f"Failed to send message upstream: {e}")
            return


async def upstream_to_client(upstream: ClientConnection, websocket: WebSocket) -> None:
    try:
        async for message in upstream:
            if isinstance(message, str):
                await websocket.send_text(message)
            else:
                await websocket.send_bytes(message)
    except ConnectionClosed as e:
        logger.error(f"Upstream connection lost: {e}")
        await close_client(websocket, code=1011, reason="Upstream connection lost")
        return

    await forward_upstream_close(upstream, websocket)


@passthrough_router.websocket("/api-ws/v1/{path:path}")
async def websocket_api(websocket: WebSocket, path: str):
    settings = get_realtime_settings(websocket)

    url = f"{settings.realtime_ws_base_url_str}/{path}"
    query = websocket.scope.get("query_string", b"").decode("latin-1")
    if query:
        url += f"?{query}"

    await serve_relay(
        websocket,
        url,
        upstream_headers(settings),
        client_pump=client_to_upstream,
        upstream_pump=upstream_to_client,
    )
