"""Transport clients for the device update API."""

from .base import BaseDeviceClient, DeviceResponse, UploadProgress
from .http import HttpDeviceClient
from .mock import MockDevice, MockDeviceClient

__all__ = [
    "BaseDeviceClient",
    "DeviceResponse",
    "UploadProgress",
    "HttpDeviceClient",
    "MockDevice",
    "MockDeviceClient",
]
