import pytest

from voice_engine.errors import (
    MSG_DEVICE_NOT_FOUND,
    MSG_PERMISSION_DENIED,
    MSG_START_FAILED,
    DeviceError,
    DeviceErrorReason,
    classify_device_error,
)


@pytest.mark.parametrize("exc,reason", [
    (PermissionError("denied"), DeviceErrorReason.PERMISSION_DENIED),
    (RuntimeError("Error opening InputStream: Access denied"), DeviceErrorReason.PERMISSION_DENIED),
    (ValueError("No input device matching 'usb'"), DeviceErrorReason.NOT_FOUND),
    (RuntimeError("Error querying device -1"), DeviceErrorReason.OTHER),
])
def test_classify_device_error(exc, reason):
    assert classify_device_error(exc) is reason


@pytest.mark.parametrize("reason,message", [
    (DeviceErrorReason.PERMISSION_DENIED, MSG_PERMISSION_DENIED),
    (DeviceErrorReason.NOT_FOUND, MSG_DEVICE_NOT_FOUND),
    (DeviceErrorReason.OTHER, MSG_START_FAILED),
])
def test_device_messages(reason, message):
    error = DeviceError(reason, "detail")
    assert error.message == message
    assert error.kind == "device"
