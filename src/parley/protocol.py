"""
Wire codec for the remote turn-processing endpoint.

Outbound messages are plain dicts built here; inbound JSON is parsed into
ServerEvent values. Anything that does not parse raises MalformedServerMessage.
"""
from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from .encoder import AudioChunk
from .error_handler import MalformedServerMessage


class EventType(Enum):
    SESSION_READY = "session_ready"
    SPEECH_STARTED = "speech_started"
    SPEECH_STOPPED = "speech_stopped"
    TRANSCRIPT = "transcript"
    TRANSCRIPT_DELTA = "transcript_delta"
    RESPONSE_AUDIO = "audio"
    RESPONSE_DONE = "response_done"
    ERROR = "error"


ROLES = ("user", "assistant")


@dataclass(frozen=True)
class ServerEvent:
    type: EventType
    session_id: Optional[str] = None
    role: Optional[str] = None
    text: Optional[str] = None
    audio: Optional[bytes] = None
    reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def session_start(session_id: str, sample_rate: int, channels: int, encoding: str) -> Dict[str, Any]:
    return {
        "type": "session_start",
        "session_id": session_id,
        "sample_rate": sample_rate,
        "channels": channels,
        "encoding": encoding,
    }


def audio_chunk(chunk: AudioChunk) -> Dict[str, Any]:
    return {
        "type": "audio",
        "seq": chunk.seq,
        "data": chunk.b64(),
        "timestamp": chunk.timestamp,
        "duration_ms": chunk.duration_ms,
    }


def turn_commit() -> Dict[str, Any]:
    return {"type": "turn_commit"}


def session_stop() -> Dict[str, Any]:
    return {"type": "session_stop"}


def encode(message: Dict[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise MalformedServerMessage(f"'{data.get('type')}' message needs string field '{key}'",
                                     component="protocol", operation="parse")
    return value


def _decode_b64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedServerMessage(f"audio payload is not valid base64: {e}",
                                     component="protocol", operation="parse") from e


def parse_server_message(raw: Union[str, bytes, Dict[str, Any]]) -> Optional[ServerEvent]:
    """Parse one inbound message.

    Returns None for well-formed messages of a type the engine does not use.
    """
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise MalformedServerMessage(f"invalid JSON: {e}", component="protocol", operation="parse") from e

    if not isinstance(data, dict):
        raise MalformedServerMessage("message is not a JSON object", component="protocol", operation="parse")

    mtype = data.get("type")
    if not isinstance(mtype, str) or not mtype:
        raise MalformedServerMessage("message has no type", component="protocol", operation="parse")

    try:
        event_type = EventType(mtype)
    except ValueError:
        return None

    session_id = data.get("sessionId") or data.get("session_id")

    if event_type in (EventType.TRANSCRIPT, EventType.TRANSCRIPT_DELTA):
        role = _require_str(data, "role")
        if role not in ROLES:
            raise MalformedServerMessage(f"unknown transcript role: {role}", component="protocol", operation="parse")
        text = _require_str(data, "text" if event_type == EventType.TRANSCRIPT else "delta")
        return ServerEvent(event_type, session_id=session_id, role=role, text=text, raw=data)

    if event_type == EventType.RESPONSE_AUDIO:
        payload = data.get("delta", data.get("data"))
        if not isinstance(payload, str):
            raise MalformedServerMessage("audio message needs a base64 'delta'", component="protocol", operation="parse")
        return ServerEvent(event_type, session_id=session_id, audio=_decode_b64(payload), raw=data)

    if event_type == EventType.ERROR:
        reason = data.get("error") or data.get("message") or "unknown error"
        if isinstance(reason, dict):
            reason = reason.get("message") or json.dumps(reason)
        return ServerEvent(event_type, session_id=session_id, reason=str(reason), raw=data)

    return ServerEvent(event_type, session_id=session_id, raw=data)


__all__ = [
    "EventType",
    "ServerEvent",
    "ROLES",
    "session_start",
    "audio_chunk",
    "turn_commit",
    "session_stop",
    "encode",
    "parse_server_message",
]
