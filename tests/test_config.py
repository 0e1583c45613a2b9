import json

import pytest
from pydantic import ValidationError

from voice_engine.config import VoiceEngineConfig


def test_load_missing_file_returns_defaults(tmp_path):
    config = VoiceEngineConfig.load(tmp_path / "missing.json")
    assert config.turn_taking.silence_threshold_sec == 2.0
    assert config.turn_taking.max_accumulation_sec == 15.0
    assert config.audio.frame_samples == 4096
    assert config.quality.window_size == 30


def test_load_invalid_file_returns_defaults(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text("{ nope", encoding="utf-8")
    assert VoiceEngineConfig.load(path) == VoiceEngineConfig()


def test_save_then_load(tmp_path):
    path = tmp_path / "config.json"
    config = VoiceEngineConfig().merge_patch({"streaming": {"content_safety": True}})
    config.save(path)
    assert json.loads(path.read_text(encoding="utf-8"))["streaming"]["content_safety"] is True
    assert VoiceEngineConfig.load(path) == config


def test_merge_patch_is_nested():
    base = VoiceEngineConfig()
    patched = base.merge_patch({"turn_taking": {"silence_threshold_sec": 3.0}})
    assert patched.turn_taking.silence_threshold_sec == 3.0
    assert patched.turn_taking.min_words == base.turn_taking.min_words
    assert base.turn_taking.silence_threshold_sec == 2.0


def test_merge_patch_validates():
    with pytest.raises(ValidationError):
        VoiceEngineConfig().merge_patch({"turn_taking": {"silence_threshold_sec": -1}})


def test_load_resets_only_invalid_sections(tmp_path):
    path = tmp_path / "partial.json"
    path.write_text(json.dumps({
        "streaming": {"url": "ws://localhost:9000", "content_safety": True},
        "turn_taking": {"silence_threshold_sec": -5, "min_words": 3},
        "quality": {"window_size": 40},
    }), encoding="utf-8")

    config = VoiceEngineConfig.load(path)

    assert config.streaming.url == "ws://localhost:9000"
    assert config.streaming.content_safety is True
    assert config.quality.window_size == 40
    assert config.turn_taking == VoiceEngineConfig().turn_taking


def test_load_non_object_returns_defaults(tmp_path):
    path = tmp_path / "list.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")
    assert VoiceEngineConfig.load(path) == VoiceEngineConfig()


def test_merge_patch_leaves_original_untouched():
    base = VoiceEngineConfig()
    patched = base.merge_patch({"streaming": {"speaker_labels": False}, "audio": {"frame_samples": 1600}})
    assert patched.streaming.speaker_labels is False
    assert patched.audio.frame_samples == 1600
    assert base.streaming.speaker_labels is True
    assert base.audio.frame_samples == 4096
