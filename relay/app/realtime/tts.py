"""
TTS Realtime Relay
==================

WebSocket endpoint turning chat text into streamed speech.

Client -> relay:  text frames (Markdown allowed)
Relay -> client:  binary frames of raw PCM audio (24 kHz)

Each text frame is stripped of Markdown, cut into short chunks and sent to
the upstream as ``input_text_buffer.append`` events followed by one
``input_text_buffer.commit``. Upstream ``response.audio.delta`` events are
base64-decoded and forwarded as binary frames; other events are only logged.
"""

import asyncio
import base64
import binascii
import json
import logging
from functools import partial
from urllib.parse import urlencode

from fastapi import APIRouter, Query, WebSocket
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from ..config import Settings
from ..models import InputTextAppend, InputTextCommit, SessionUpdate, TtsSession, UpstreamEvent
from .relay import close_client, forward_upstream_close, get_realtime_settings, serve_relay, upstream_headers
from .text import chunk_text, markdown_to_plain_text

logger = logging.getLogger(__name__)

tts_router = APIRouter()

AUDIO_DELTA = "response.audio.delta"


def build_tts_url(settings: Settings, voice: str) -> str:
    query = urlencode({"model": settings.TTS_MODEL, "voice": voice})
    return f"{settings.realtime_ws_base_url_str}/realtime?{query}"


async def send_text_for_synthesis(upstream: ClientConnection, text: str, settings: Settings) -> None:
    """
    Send one client message upstream as appended chunks plus a commit.

    Empty text (e.g. a message that was only markup) sends nothing.
    """
    plain_text = markdown_to_plain_text(text)
    logger.debug(f"Text after Markdown conversion: {plain_text}")

    chunks = chunk_text(plain_text, settings.TTS_CHUNK_LIMIT)
    if not chunks:
        return

    for index, chunk in enumerate(chunks):
        if index and settings.TTS_CHUNK_INTERVAL_SECONDS:
            await asyncio.sleep(settings.TTS_CHUNK_INTERVAL_SECONDS)
        await upstream.send(InputTextAppend(text=chunk).to_wire())
        logger.debug(f"Sent text chunk upstream: {chunk}")

    await upstream.send(InputTextCommit().to_wire())


async def client_to_upstream(websocket: WebSocket, upstream: ClientConnection, settings: Settings) -> None:
    while True:
        message = await websocket.receive()

        if message["type"] == "websocket.disconnect":
            await upstream.close()
            return

        text = message.get("text")
        if text is None:
            # Binary frames carry nothing to synthesize
            continue

        try:
            await send_text_for_synthesis(upstream, text, settings)
        except ConnectionClosed as e:
            logger.error(f"Failed to send text upstream: {e}")
            return


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

            if event.type != AUDIO_DELTA:
                logger.debug(f"Ignoring upstream event: {raw}")
                continue

            if not event.delta:
                logger.warning("response.audio.delta event without delta field")
                continue

            try:
                audio = base64.b64decode(event.delta, validate=True)
            except binascii.Error as e:
                logger.error(f"Base64 decoding of audio delta failed: {e}")
                continue

            await websocket.send_bytes(audio)

    except ConnectionClosed as e:
        logger.error(f"Upstream TTS connection lost: {e}")
        await close_client(websocket, code=1011, reason="Upstream connection lost")
        return

    await forward_upstream_close(upstream, websocket)


@tts_router.websocket("/tts-realtime")
async def tts_realtime(websocket: WebSocket, voice: str = Query(..., min_length=1)):
    """
    Relay a text-to-speech session to the upstream realtime API.

    Query Parameters:
        voice: Synthesis voice name, forwarded upstream unchanged
    """
    settings = get_realtime_settings(websocket)

    greeting = SessionUpdate(session=TtsSession(voice=voice).model_dump()).to_wire()

    await serve_relay(
        websocket,
        build_tts_url(settings, voice),
        upstream_headers(settings),
        client_pump=partial(client_to_upstream, settings=settings),
        upstream_pump=upstream_to_client,
        greeting=greeting,
        settle_seconds=settings.REALTIME_SESSION_SETTLE_SECONDS,
    )
