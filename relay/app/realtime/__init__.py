"""
Realtime Package

This package contains the WebSocket relays between clients and the upstream
realtime speech API.

Modules:
- relay: shared connect / pump / close plumbing
- text: Markdown to plain text and synthesis chunking
- tts: text in, PCM audio out
- asr: PCM audio in, transcription text out
- passthrough: frames relayed unchanged to any upstream realtime path
"""

from fastapi import APIRouter

from .asr import asr_router
from .passthrough import passthrough_router
from .tts import tts_router

realtime_router = APIRouter(tags=["Realtime"])
realtime_router.include_router(tts_router)
realtime_router.include_router(asr_router)
realtime_router.include_router(passthrough_router)

__all__ = [
    "realtime_router",
]
