"""
protocol.py — Streaming transcription wire protocol
===================================================
Inbound JSON messages are keyed either by ``type`` or by the presence of a
``transcript`` field.  parse_message() turns each one into typed events;
describe_close() maps socket close codes onto user-facing errors.

Precedence (first match wins, mirroring the service's own overlap):
  1. type == "Begin"
  2. type == "sentiment"
  3. type == "speaker_labels"   or a "speaker_labels" key
  4. type == "content_safety"   or a "content_safety" key
  5. a "transcript" key          → partial / final transcript
  6. type == "Termination"
  7. type == "Error"             or an "error" key
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Optional, Union
from urllib.parse import urlencode

from voice_engine.config import TARGET_SAMPLE_RATE, StreamingConfig

NORMAL_CLOSE_CODES = frozenset({1000, 1001})

CLOSE_MESSAGES: dict[int, str] = {
    4001: "Invalid AssemblyAI API key. Please check your configuration.",
    4002: "AssemblyAI quota exceeded. Please check your account.",
    3005: "Invalid audio data sent to AssemblyAI. Microphone may have issues.",
    4008: "AssemblyAI session timeout. Please try again.",
}
UNEXPECTED_DISCONNECT = "Speech recognition service disconnected unexpectedly."

DEFAULT_CONFIDENCE = 0.5
HIGH_RISK_CONFIDENCE = 0.7

SAFETY_CATEGORIES: tuple[str, ...] = (
    "violence",
    "hate_speech",
    "profanity",
    "harassment",
    "self_harm",
    "sexual_content",
)


class MalformedMessage(ValueError):
    """Inbound payload that cannot be decoded; logged and skipped."""


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TranscriptEvent:
    text: str
    is_final: bool
    confidence: float
    speaker_id: Optional[str] = None
    timestamp_ms: int = 0


@dataclass(frozen=True)
class Begin:
    session_id: Optional[str] = None
    expires_at: Optional[int] = None


@dataclass(frozen=True)
class Transcript:
    event: TranscriptEvent


@dataclass(frozen=True)
class Sentiment:
    sentiment: str
    confidence: float
    timestamp_ms: int


@dataclass(frozen=True)
class SpeakerLabel:
    speaker: str
    start: float
    end: float
    confidence: float
    text: str


@dataclass(frozen=True)
class SpeakerLabels:
    labels: tuple[SpeakerLabel, ...]


@dataclass(frozen=True)
class SafetyCategory:
    detected: bool = False
    confidence: float = 0.0


@dataclass(frozen=True)
class ContentSafety:
    categories: dict[str, SafetyCategory] = field(default_factory=dict)
    risk_level: str = "low"
    flagged_categories: tuple[str, ...] = ()
    timestamp_ms: int = 0


@dataclass(frozen=True)
class Termination:
    audio_duration_seconds: Optional[float] = None


@dataclass(frozen=True)
class ProtocolErrorEvent:
    message: str


@dataclass(frozen=True)
class Closed:
    code: int
    reason: str = ""

    @property
    def is_normal(self) -> bool:
        return self.code in NORMAL_CLOSE_CODES


LinkEvent = Union[Begin, Transcript, Sentiment, SpeakerLabels, ContentSafety, Termination, ProtocolErrorEvent, Closed]


# ---------------------------------------------------------------------------
# URL template
# ---------------------------------------------------------------------------

def build_streaming_url(config: StreamingConfig, token: str) -> str:
    params = {
        "sample_rate": TARGET_SAMPLE_RATE,
        "encoding": config.encoding,
        "sentiment_analysis": "true" if config.sentiment_analysis else "false",
        "speaker_labels": "true" if config.speaker_labels else "false",
    }
    if config.content_safety:
        params["content_safety_detection"] = "true"
    params["token"] = token
    sep = "&" if "?" in config.url else "?"
    return f"{config.url}{sep}{urlencode(params)}"


# ---------------------------------------------------------------------------
# Close codes
# ---------------------------------------------------------------------------

def describe_close(code: int, reason: str = "") -> str | None:
    """Return the user-facing error for a close code, None for a normal close."""
    if code in NORMAL_CLOSE_CODES:
        return None
    if code in CLOSE_MESSAGES:
        return CLOSE_MESSAGES[code]
    if code >= 4000:
        return f"AssemblyAI error ({code}): {reason or 'Unknown error'}"
    return UNEXPECTED_DISCONNECT


# ---------------------------------------------------------------------------
# Inbound parsing
# ---------------------------------------------------------------------------

def _as_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_speaker_labels(data: dict) -> SpeakerLabels:
    raw = data.get("speaker_labels") or data.get("labels") or []
    if not isinstance(raw, list):
        raise MalformedMessage("speaker_labels is not a list")
    labels = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        labels.append(SpeakerLabel(
            speaker=str(item.get("speaker") or "Unknown"),
            start=_as_float(item.get("start")),
            end=_as_float(item.get("end")),
            confidence=_as_float(item.get("confidence")),
            text=str(item.get("text") or ""),
        ))
    return SpeakerLabels(labels=tuple(labels))


def _parse_content_safety(data: dict, now_ms: int) -> ContentSafety:
    payload = data.get("content_safety") or data
    if not isinstance(payload, dict):
        raise MalformedMessage("content_safety is not an object")

    categories: dict[str, SafetyCategory] = {}
    for name in SAFETY_CATEGORIES:
        entry = payload.get(name) or {}
        if not isinstance(entry, dict):
            entry = {}
        categories[name] = SafetyCategory(
            detected=bool(entry.get("detected", False)),
            confidence=_as_float(entry.get("confidence")),
        )

    flagged = tuple(n for n, c in categories.items() if c.detected)
    high = [n for n, c in categories.items() if c.detected and c.confidence > HIGH_RISK_CONFIDENCE]
    if high:
        risk = "high"
    elif len(flagged) > 1:
        risk = "medium"
    else:
        risk = "low"
    return ContentSafety(categories=categories, risk_level=risk, flagged_categories=flagged, timestamp_ms=now_ms)


def _parse_transcript(data: dict, now_ms: int) -> Transcript:
    text = data.get("transcript") or ""
    if not isinstance(text, str):
        raise MalformedMessage("transcript is not a string")
    confidence = _as_float(data.get("confidence")) or DEFAULT_CONFIDENCE
    speaker = data.get("speaker")
    return Transcript(TranscriptEvent(
        text=text,
        is_final=data.get("end_of_turn") is True,
        confidence=min(max(confidence, 0.0), 1.0),
        speaker_id=str(speaker) if speaker else None,
        timestamp_ms=now_ms,
    ))


def parse_message(raw: str | bytes, now_ms: int = 0) -> list[LinkEvent]:
    """Decode one inbound message.  Unknown but well-formed messages yield []."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedMessage(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedMessage("message is not a JSON object")

    msg_type = data.get("type")

    if msg_type == "Begin":
        expires = data.get("expires_at")
        return [Begin(session_id=data.get("id"), expires_at=int(expires) if isinstance(expires, (int, float)) else None)]

    if msg_type == "sentiment":
        return [Sentiment(
            sentiment=str(data.get("sentiment") or "NEUTRAL"),
            confidence=_as_float(data.get("confidence")),
            timestamp_ms=now_ms,
        )]

    if msg_type == "speaker_labels" or "speaker_labels" in data:
        return [_parse_speaker_labels(data)]

    if msg_type == "content_safety" or "content_safety" in data:
        return [_parse_content_safety(data, now_ms)]

    if "transcript" in data:
        return [_parse_transcript(data, now_ms)]

    if msg_type == "Termination":
        duration = data.get("audio_duration_seconds")
        return [Termination(audio_duration_seconds=_as_float(duration) if duration is not None else None)]

    if msg_type == "Error" or data.get("error"):
        detail = data.get("error") or "Unknown error"
        return [ProtocolErrorEvent(message=f"Speech recognition error: {detail}")]

    return []
