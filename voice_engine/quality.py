"""Rolling transcription-quality metrics.

Only final transcripts enter the window; partial transcripts are
classified for display (see insights.py) but never recorded.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from voice_engine.config import QualityConfig

log = logging.getLogger("voice_engine.quality")

HIGH_CONFIDENCE = 0.8
LOW_CONFIDENCE = 0.6
TREND_SPAN = 10
TREND_DELTA = 0.05

REC_CLOSER = "Try speaking closer to the microphone"
REC_NOISE = "Reduce background noise if possible"
REC_CLEARER = "Speak more clearly and slowly"
REC_POSITIONING = "Check microphone positioning"


class AudioQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class NoiseLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Trend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QualitySample(_CamelModel):
    confidence: float
    audio_quality: AudioQuality
    noise_level: NoiseLevel
    speech_clarity_score: float
    timestamp_ms: int


class QualityMetrics(_CamelModel):
    average_confidence: float = 0.0
    total_samples: int = 0
    high_confidence_count: int = 0
    low_confidence_count: int = 0
    trend: Trend = Trend.STABLE
    session_duration_ms: int = 0
    recommendations: list[str] = Field(default_factory=list)


def classify_noise(confidence: float) -> NoiseLevel:
    if confidence > HIGH_CONFIDENCE:
        return NoiseLevel.LOW
    if confidence > LOW_CONFIDENCE:
        return NoiseLevel.MEDIUM
    return NoiseLevel.HIGH


def classify_quality(confidence: float, noise: NoiseLevel) -> AudioQuality:
    if confidence > 0.9 and noise is NoiseLevel.LOW:
        return AudioQuality.EXCELLENT
    if confidence > HIGH_CONFIDENCE and noise is not NoiseLevel.HIGH:
        return AudioQuality.GOOD
    if confidence > LOW_CONFIDENCE:
        return AudioQuality.FAIR
    return AudioQuality.POOR


def make_sample(confidence: float, timestamp_ms: int) -> QualitySample:
    noise = classify_noise(confidence)
    return QualitySample(
        confidence=confidence,
        audio_quality=classify_quality(confidence, noise),
        noise_level=noise,
        speech_clarity_score=confidence * 100,
        timestamp_ms=timestamp_ms,
    )


def _mean(values) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


def compute_trend(confidences: list[float]) -> Trend:
    """Last 10 samples against the 10 before them."""
    recent = confidences[-TREND_SPAN:]
    older = confidences[-2 * TREND_SPAN:-TREND_SPAN]
    if not recent or not older:
        return Trend.STABLE
    recent_avg, older_avg = _mean(recent), _mean(older)
    if recent_avg > older_avg + TREND_DELTA:
        return Trend.IMPROVING
    if recent_avg < older_avg - TREND_DELTA:
        return Trend.DECLINING
    return Trend.STABLE


class QualityTracker:
    def __init__(self, config: QualityConfig | None = None, clock: Callable[[], float] = time.time):
        self.config = config or QualityConfig()
        self._clock = clock
        self._samples: deque[QualitySample] = deque(maxlen=self.config.window_size)
        self._started = clock()
        self._metrics = QualityMetrics()

    @property
    def samples(self) -> list[QualitySample]:
        return list(self._samples)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def record(self, confidence: float) -> QualitySample:
        """Add one final-transcript confidence and recompute the aggregate."""
        sample = make_sample(min(max(confidence, 0.0), 1.0), self._now_ms())
        self._samples.append(sample)
        self._metrics = self._compute()
        if self._metrics.trend is Trend.DECLINING:
            log.info("event=quality_declining avg=%.3f samples=%d",
                     self._metrics.average_confidence, self._metrics.total_samples)
        return sample

    def metrics(self) -> QualityMetrics:
        if self._samples:
            return self._metrics.model_copy(update={"session_duration_ms": self._now_ms() - int(self._started * 1000)})
        return QualityMetrics()

    def reset(self) -> None:
        self._samples.clear()
        self._started = self._clock()
        self._metrics = QualityMetrics()

    def _compute(self) -> QualityMetrics:
        confidences = [s.confidence for s in self._samples]
        total = len(confidences)
        avg = _mean(confidences)
        high = sum(1 for c in confidences if c > HIGH_CONFIDENCE)
        low = sum(1 for c in confidences if c < LOW_CONFIDENCE)
        trend = compute_trend(confidences)

        recommendations: list[str] = []
        if avg < 0.7:
            recommendations += [REC_CLOSER, REC_NOISE]
        if low / total > 0.3:
            recommendations.append(REC_CLEARER)
        if trend is Trend.DECLINING:
            recommendations.append(REC_POSITIONING)

        return QualityMetrics(
            average_confidence=avg,
            total_samples=total,
            high_confidence_count=high,
            low_confidence_count=low,
            trend=trend,
            session_duration_ms=self._now_ms() - int(self._started * 1000),
            recommendations=recommendations,
        )
