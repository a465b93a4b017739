"""
Twilio Media Streams wire format.

Inbound frames (JSON text, one event per message):
    connected, start, media, mark, dtmf, stop

Outbound frames used by a telephony call:
    media  base64 mu-law 8kHz audio for the caller
    clear  drop whatever Twilio still has queued (barge-in)

Inbound `connected` and `stop` carry nothing a call needs beyond the event
name, so they are handed back as plain dicts.
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)


class TwilioEventType(str, Enum):
    """Inbound event names."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


class OutboundMedia(msgspec.Struct):
    payload: str


class MediaMessage(msgspec.Struct, rename="camel"):
    stream_sid: str
    media: OutboundMedia
    event: str = "media"


class ClearMessage(msgspec.Struct, rename="camel"):
    stream_sid: str
    event: str = "clear"


_decoder = msgspec.json.Decoder()
_encoder = msgspec.json.Encoder()


def _section(message: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = message.get(key)
    return value if isinstance(value, dict) else {}


def _stream_sid(message: Dict[str, Any]) -> str:
    return message.get("streamSid") or ""


@dataclass
class TwilioStartEvent:
    """Stream metadata sent once, before any media."""
    stream_sid: str
    call_sid: str
    account_sid: str
    tracks: List[str]
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        start = _section(message, "start")
        return cls(
            stream_sid=_stream_sid(message) or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=list(start.get("tracks", [])),
            custom_parameters=dict(start.get("customParameters", {})),
        )


@dataclass
class TwilioMediaEvent:
    """One inbound 20ms chunk; `payload` holds the decoded mu-law bytes."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        media = _section(message, "media")
        encoded = media.get("payload", "")
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Undecodable media payload", chars=len(encoded))
            payload = b""

        return cls(
            stream_sid=_stream_sid(message),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0)),
            timestamp=media.get("timestamp", ""),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        return cls(
            stream_sid=_stream_sid(message),
            name=_section(message, "mark").get("name", ""),
        )


@dataclass
class TwilioDTMFEvent:
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        return cls(
            stream_sid=_stream_sid(message),
            digit=_section(message, "dtmf").get("digit", ""),
        )


_EVENT_BUILDERS: Dict[TwilioEventType, Callable[[Dict[str, Any]], Any]] = {
    TwilioEventType.START: TwilioStartEvent.from_message,
    TwilioEventType.MEDIA: TwilioMediaEvent.from_message,
    TwilioEventType.MARK: TwilioMarkEvent.from_message,
    TwilioEventType.DTMF: TwilioDTMFEvent.from_message,
}


def parse_twilio_message(raw_message: str | bytes) -> tuple[TwilioEventType, Any]:
    """
    Decode one inbound frame into `(event_type, event)`.

    Raises:
        ValueError: Malformed JSON, a non-object payload or an unknown event
    """
    data = raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message
    try:
        message = _decoder.decode(data)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise ValueError("Twilio message is not a JSON object")

    name = message.get("event", "")
    try:
        event_type = TwilioEventType(name)
    except ValueError:
        raise ValueError(f"Unknown event type: {name}") from None

    build = _EVENT_BUILDERS.get(event_type)
    return event_type, build(message) if build is not None else message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """Outbound media frame carrying raw mu-law bytes."""
    message = MediaMessage(
        stream_sid=stream_sid,
        media=OutboundMedia(payload=base64.b64encode(audio_payload).decode("ascii")),
    )
    return _encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    return _encoder.encode(ClearMessage(stream_sid=stream_sid)).decode("utf-8")


@dataclass
class TwilioStream:
    """
    The media stream a telephony call is bound to.

    Outbound builders return None until `start` has bound a stream SID, since
    Twilio rejects frames without one.
    """
    stream_sid: str = ""
    call_sid: str = ""
    account_sid: str = ""
    is_active: bool = False
    marks_received: int = 0

    def bind(self, event: TwilioStartEvent) -> None:
        self.stream_sid = event.stream_sid
        self.call_sid = event.call_sid
        self.account_sid = event.account_sid
        self.is_active = True

    def media(self, audio_payload: bytes) -> Optional[str]:
        if not self.stream_sid:
            return None
        return create_media_message(self.stream_sid, audio_payload)

    def clear(self) -> Optional[str]:
        if not self.stream_sid:
            return None
        return create_clear_message(self.stream_sid)
