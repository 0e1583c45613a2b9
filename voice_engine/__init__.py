"""Real-time voice turn-taking engine.

Captures microphone audio, streams it to a transcription service and
decides, without a press of "send", when the speaker has finished a turn.
"""

from voice_engine.config import VoiceEngineConfig
from voice_engine.controller import ControllerState, ConversationController, ConversationSnapshot
from voice_engine.errors import (
    ConnectError,
    DeviceError,
    NetworkError,
    ProtocolError,
    TokenError,
    VoiceEngineError,
)

__version__ = "1.0.0"

__all__ = [
    "ConnectError",
    "ControllerState",
    "ConversationController",
    "ConversationSnapshot",
    "DeviceError",
    "NetworkError",
    "ProtocolError",
    "TokenError",
    "VoiceEngineConfig",
    "VoiceEngineError",
]
