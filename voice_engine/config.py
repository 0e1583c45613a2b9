"""
config.py — Voice Engine · Runtime Configuration
================================================
Pydantic models for every tunable parameter of the turn-taking engine.
Serialises to / deserialises from JSON.  Used by:
  • server.py      — GET/PUT /config endpoints
  • cli.py         — loads the config file passed with --config
  • controller.py  — hands each section to the component that owns it
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger("voice_engine.config")

# The transcription service only accepts 16 kHz mono PCM16; not tunable.
TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class AudioConfig(BaseModel):
    """Microphone capture parameters (passed to AudioSource)."""
    frame_samples: int = Field(default=4096, ge=160, le=16000, description="Samples per emitted PCM frame")
    device: Optional[Union[int, str]] = Field(default=None, description="Input device index or name (None = system default)")
    native_sample_rate: Optional[int] = Field(default=None, ge=8000, le=192000, description="Force this capture rate (None = 16 kHz when the device accepts it, else its default)")


class StreamingConfig(BaseModel):
    """Streaming transcription socket parameters (passed to TranscriptionLink)."""
    url: str = Field(default="wss://streaming.assemblyai.com/v3/ws", description="Streaming endpoint")
    encoding: str = Field(default="pcm_s16le", description="Audio encoding announced to the service")
    sentiment_analysis: bool = Field(default=True, description="Request sentiment messages")
    speaker_labels: bool = Field(default=True, description="Request speaker diarization")
    content_safety: bool = Field(default=False, description="Request content-safety flags")
    content_safety_mode: Literal["standard", "strict"] = Field(default="standard", description="Reported safety mode")
    open_timeout_sec: float = Field(default=10.0, gt=0.0, le=60.0, description="Socket handshake timeout (seconds)")


class TurnTakingConfig(BaseModel):
    """TurnTakingEngine tuning parameters."""
    silence_threshold_sec: float = Field(default=2.0, ge=0.5, le=30.0, description="Base silence threshold / countdown (seconds)")
    max_accumulation_sec: float = Field(default=15.0, ge=1.0, le=300.0, description="Forced send after this long (seconds)")
    min_words: int = Field(default=8, ge=1, le=100, description="Minimum words before any automatic send")
    end_of_turn_threshold: float = Field(default=60.0, ge=0.0, le=100.0, description="Score at which a turn counts as finished")
    label_speakers: bool = Field(default=True, description="Prefix fragments with [speaker] when labels arrive")


class QualityConfig(BaseModel):
    """QualityTracker parameters."""
    window_size: int = Field(default=30, ge=20, le=1000, description="Rolling window of final-transcript samples")


class TokenConfig(BaseModel):
    """Speech-token endpoint used once per session start."""
    endpoint: str = Field(default="http://localhost:8000/speech-token", description="POST endpoint returning {apiKey}")
    timeout_sec: float = Field(default=10.0, gt=0.0, le=60.0, description="Request timeout (seconds)")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class VoiceEngineConfig(BaseModel):
    """Complete runtime configuration for the voice engine."""
    audio: AudioConfig = Field(default_factory=AudioConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    turn_taking: TurnTakingConfig = Field(default_factory=TurnTakingConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    token: TokenConfig = Field(default_factory=TokenConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "VoiceEngineConfig":
        """Read the JSON config file at ``path``.

        A missing or unparseable file yields defaults.  A file that parses
        but fails validation keeps every section that validates and resets
        only the offending sections.
        """
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("event=config_load_error path=%s error=%s using_defaults=True", p, exc)
            return cls()
        if not isinstance(data, dict):
            log.warning("event=config_load_error path=%s error=not_an_object using_defaults=True", p)
            return cls()

        try:
            config = cls.model_validate(data)
        except ValidationError as exc:
            return cls._from_valid_sections(p, data, exc)
        log.info("event=config_loaded path=%s", p)
        return config

    @classmethod
    def _from_valid_sections(cls, path: Path, data: dict, exc: ValidationError) -> "VoiceEngineConfig":
        bad = {str(err["loc"][0]) for err in exc.errors() if err["loc"]}
        if not bad:
            log.warning("event=config_load_error path=%s error=%s using_defaults=True", path, exc)
            return cls()
        log.warning(
            "event=config_sections_reset path=%s sections=%s errors=%d",
            path, ",".join(sorted(bad)), exc.error_count(),
        )
        return cls.model_validate({key: value for key, value in data.items() if key not in bad})

    def save(self, path: str | Path) -> None:
        """Write the config as indented JSON, leaving unset optionals out."""
        p = Path(path)
        p.write_text(self.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "VoiceEngineConfig":
        """Overlay a partial nested update and re-validate the result.

        ``{"turn_taking": {"silence_threshold_sec": 3.0}}`` changes that one
        field and nothing else; ``self`` is left untouched.  Raises
        ValidationError when the merged config is out of range.
        """
        return VoiceEngineConfig.model_validate(_overlay(self.model_dump(), patch))


def _overlay(current: dict, patch: dict) -> dict:
    merged = dict(current)
    for key, value in patch.items():
        existing = merged.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged[key] = _overlay(existing, value)
        else:
            merged[key] = value
    return merged
