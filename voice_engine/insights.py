"""Side-channel analysis delivered over the transcription socket.

Sentiment, speaker diarization, content-safety flags and per-transcript
quality are informational only: nothing here feeds the turn decision,
except ``current_speaker`` which labels final fragments.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Optional

from voice_engine.protocol import ContentSafety, Sentiment, SpeakerLabel, SpeakerLabels
from voice_engine.quality import QualitySample, make_sample

log = logging.getLogger("voice_engine.insights")

SENTIMENT_HISTORY = 10
SPEAKER_LABEL_HISTORY = 50
PER_SPEAKER_HISTORY = 10
SAFETY_WARNING_HISTORY = 5


class SessionInsights:
    def __init__(self, content_safety_enabled: bool = False):
        self.content_safety_enabled = content_safety_enabled
        self.sentiment: Optional[Sentiment] = None
        self.sentiment_history: deque[Sentiment] = deque(maxlen=SENTIMENT_HISTORY)
        self.current_speaker: Optional[str] = None
        self.speaker_labels: deque[SpeakerLabel] = deque(maxlen=SPEAKER_LABEL_HISTORY)
        self.speaker_history: dict[str, list[str]] = {}
        self.content_safety: Optional[ContentSafety] = None
        self.safety_warnings: deque[ContentSafety] = deque(maxlen=SAFETY_WARNING_HISTORY)
        self.transcription_quality: Optional[QualitySample] = None

    def on_sentiment(self, event: Sentiment) -> None:
        self.sentiment = event
        self.sentiment_history.append(event)
        log.debug("event=sentiment value=%s confidence=%.2f", event.sentiment, event.confidence)

    def on_speaker_labels(self, event: SpeakerLabels) -> None:
        for label in event.labels:
            self.speaker_labels.append(label)
            self.current_speaker = label.speaker
            texts = self.speaker_history.get(label.speaker, [])[-(PER_SPEAKER_HISTORY - 1):]
            texts.append(label.text)
            self.speaker_history[label.speaker] = [t for t in texts if t.strip()]
        log.debug("event=speaker_labels count=%d current=%s", len(event.labels), self.current_speaker)

    def on_content_safety(self, event: ContentSafety) -> None:
        if not self.content_safety_enabled:
            return
        self.content_safety = event
        if event.flagged_categories:
            self.safety_warnings.append(event)
            log.warning("event=content_flagged risk=%s categories=%s",
                        event.risk_level, ",".join(event.flagged_categories))

    def on_transcript_quality(self, confidence: float, timestamp_ms: int) -> QualitySample:
        self.transcription_quality = make_sample(confidence, timestamp_ms)
        return self.transcription_quality

    def clear_current(self) -> None:
        """Drop the latest readings but keep the histories."""
        self.sentiment = None
        self.current_speaker = None
        self.content_safety = None
        self.transcription_quality = None

    def reset(self) -> None:
        self.sentiment = None
        self.sentiment_history.clear()
        self.current_speaker = None
        self.speaker_labels.clear()
        self.speaker_history.clear()
        self.content_safety = None
        self.safety_warnings.clear()
        self.transcription_quality = None
