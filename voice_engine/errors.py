"""Error taxonomy for a voice session.

Every error here is terminal for the session that raised it.  Nothing in
the engine retries; the controller reports the error upward and stops.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

MSG_PERMISSION_DENIED = "Microphone access denied. Please allow microphone permissions."
MSG_DEVICE_NOT_FOUND = "No microphone found. Please connect a microphone."
MSG_START_FAILED = "Failed to start speech recognition."
MSG_CONNECTION_ERROR = "Speech recognition connection error. Please try again."


class VoiceEngineError(Exception):
    """Base class; `kind` is the category reported through on_error."""

    kind = "engine"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class DeviceErrorReason(Enum):
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    OTHER = "other"


_DEVICE_MESSAGES = {
    DeviceErrorReason.PERMISSION_DENIED: MSG_PERMISSION_DENIED,
    DeviceErrorReason.NOT_FOUND: MSG_DEVICE_NOT_FOUND,
    DeviceErrorReason.OTHER: MSG_START_FAILED,
}


class DeviceError(VoiceEngineError):
    kind = "device"

    def __init__(self, reason: DeviceErrorReason, detail: str = ""):
        super().__init__(_DEVICE_MESSAGES[reason])
        self.reason = reason
        self.detail = detail


_PERMISSION_HINTS = ("permission", "not permitted", "access denied", "not allowed")
_NOT_FOUND_HINTS = (
    "no input device", "no default", "invalid device", "device unavailable",
    "not found", "no such device", "no device",
)


def classify_device_error(exc: BaseException) -> DeviceErrorReason:
    """Map a PortAudio / OS failure onto the three device error reasons."""
    if isinstance(exc, PermissionError):
        return DeviceErrorReason.PERMISSION_DENIED
    text = str(exc).lower()
    if any(hint in text for hint in _PERMISSION_HINTS):
        return DeviceErrorReason.PERMISSION_DENIED
    if isinstance(exc, FileNotFoundError) or any(hint in text for hint in _NOT_FOUND_HINTS):
        return DeviceErrorReason.NOT_FOUND
    return DeviceErrorReason.OTHER


class TokenError(VoiceEngineError):
    kind = "token"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(VoiceEngineError):
    """Service-reported failure: a coded socket close or an inbound Error message."""

    kind = "protocol"

    def __init__(self, message: str, code: Optional[int] = None, reason: str = ""):
        super().__init__(message)
        self.code = code
        self.reason = reason


class NetworkError(VoiceEngineError):
    kind = "network"


class ConnectError(NetworkError):
    """The socket could not be opened at all."""
