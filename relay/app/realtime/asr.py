"""
ASR Realtime Relay
==================

WebSocket endpoint for streamed speech recognition.

Client -> relay:  binary frames of raw PCM audio (16 kHz)
Relay -> client:  text frames with transcription text

Server-side voice activity detection decides turn boundaries, so the client
only streams audio. Transcription failures and upstream errors are logged,
not forwarded.
"""

import base64
import json
import logging
from urllib.parse import urlencode

from fastapi import APIRouter, WebSocket
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from ..config import Settings
from ..models import AsrSession, InputAudioAppend, SessionUpdate, UpstreamEvent
from .relay import close_client, forward_upstream_close, get_realtime_settings, serve_relay, upstream_headers

logger = logging.getLogger(__name__)

asr_router = APIRouter()

TRANSCRIPTION_TEXT = "conversation.item.input_audio_transcription.text"
TRANSCRIPTION_FAILED = "conversation.item.input_audio_transcription.failed"
ERROR = "error"


def build_asr_url(settings: Settings) -> str:
    query = urlencode({"model": settings.ASR_MODEL})
    return f"{settings.realtime_ws_base_url_str}/realtime?{query}"


async def client_to_upstream(websocket: WebSocket, upstream: ClientConnection) -> None:
    while True:
        message = await websocket.receive()

        if message["type"] == "websocket.disconnect":
            await upstream.close()
            return

        audio = message.get("bytes")
        if audio is None:
            continue

        event = InputAudioAppend(audio=base64.b64encode(audio).decode("ascii"))
        try:
            await upstream.send(event.to_wire())
        except ConnectionClosed as e:
            logger.error(f"Failed to send audio upstream: {e}")
            return

        logger.debug("Sent audio data upstream", extra={"audio_bytes": len(audio)})


async def upstream_to_client(upstream: ClientConnection, websocket: WebSocket) -> None:
    try:
        async for raw in upstream:
            if isinstance(raw, bytes):
                continue

            try:
                event = UpstreamEvent.model_validate(json.loads(raw))
            except (ValueError, ValidationError) as e:
                logger.warning(f"Could not parse upstream message: {e}, raw message: {raw}")
                continue

            if event.type == TRANSCRIPTION_TEXT:
                if event.text is None:
                    continue
                await websocket.send_text(event.text)
                logger.debug(f"Transcription text: {event.text}")

            elif event.type == TRANSCRIPTION_FAILED:
                logger.error(f"Audio transcription failed: {raw}")

            elif event.type == ERROR:
                logger.error(f"Upstream error: {raw}")

            else:
                logger.debug(f"Ignoring upstream event: {raw}")

    except ConnectionClosed as e:
        logger.error(f"Upstream ASR connection lost: {e}")
        await close_client(websocket, code=1011, reason="Upstream connection lost")
        return

    await forward_upstream_close(upstream, websocket)


@asr_router.websocket("/asr-realtime")
async def asr_realtime(websocket: WebSocket):
    """Relay a speech recognition session to the upstream realtime API."""
    settings = get_realtime_settings(websocket)

    greeting = SessionUpdate(session=AsrSession().model_dump()).to_wire()

    await serve_relay(
        websocket,
        build_asr_url(settings),
        upstream_headers(settings, {"OpenAI-Beta": "realtime=v1"}),
        client_pump=client_to_upstream,
        upstream_pump=upstream_to_client,
        greeting=greeting,
        settle_seconds=settings.REALTIME_SESSION_SETTLE_SECONDS,
    )
