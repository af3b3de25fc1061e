"""
Data Models Module

This module defines the immutable forwarding policy handed to the proxy
handler and the Pydantic models for events sent to the upstream realtime
WebSocket API.

Models are organized by functional area:
- Forwarding models (upstream target, credential policy)
- Realtime event models (session setup, text and audio buffers)
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .config import Settings


# ============================================================================
# Forwarding Models
# ============================================================================

@dataclass(frozen=True)
class ForwardingPolicy:
    """
    Read-only per-process forwarding configuration.

    Built once at application construction and shared by every request.

    Attributes:
        upstream_base_url: Upstream scheme+host without trailing slash
        authorization: Full header value, e.g. "Bearer sk-..."
        overwrite_authorization: Replace an inbound Authorization header
    """

    upstream_base_url: str
    authorization: str
    overwrite_authorization: bool = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "ForwardingPolicy":
        return cls(
            upstream_base_url=settings.upstream_base_url_str,
            authorization=f"Bearer {settings.UPSTREAM_API_KEY}",
            overwrite_authorization=settings.AUTHORIZATION_MODE == "overwrite",
        )

    def __repr__(self) -> str:
        return (
            f"ForwardingPolicy(upstream_base_url={self.upstream_base_url!r}, "
            f"authorization='Bearer ***', "
            f"overwrite_authorization={self.overwrite_authorization!r})"
        )


# ============================================================================
# Realtime Event Models
# ============================================================================

def new_event_id() -> str:
    return f"event_{uuid.uuid4().hex}"


class RealtimeEvent(BaseModel):
    """Base for client events sent to the upstream realtime API."""
    event_id: str = Field(default_factory=new_event_id, description="Unique per event")
    type: str

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)


class TtsSession(BaseModel):
    voice: str
    response_format: str = "pcm"
    sample_rate: int = 24000


class TurnDetection(BaseModel):
    type: str = "server_vad"


class AsrSession(BaseModel):
    modalities: List[str] = Field(default_factory=lambda: ["text"])
    input_audio_format: str = "pcm"
    sample_rate: int = 16000
    turn_detection: TurnDetection = Field(default_factory=TurnDetection)


class SessionUpdate(RealtimeEvent):
    type: Literal["session.update"] = "session.update"
    session: Dict[str, Any]


class InputTextAppend(RealtimeEvent):
    type: Literal["input_text_buffer.append"] = "input_text_buffer.append"
    text: str


class InputTextCommit(RealtimeEvent):
    type: Literal["input_text_buffer.commit"] = "input_text_buffer.commit"


class InputAudioAppend(RealtimeEvent):
    type: Literal["input_audio_buffer.append"] = "input_audio_buffer.append"
    audio: str = Field(..., description="Base64-encoded PCM audio")


class UpstreamEvent(BaseModel):
    """Server event received from the upstream realtime API (only fields we read)."""
    type: str = ""
    delta: Optional[str] = None
    text: Optional[str] = None

    model_config = {"extra": "allow"}
