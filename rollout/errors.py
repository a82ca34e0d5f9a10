"""Error taxonomy for firmware rollouts.

Device errors are local to one device: they end up in the device's
``message`` and ``error`` fields and never stop a batch. ``BatchError``
is the only exception the orchestrator lets reach its caller, and only
for misuse (no artifact, nothing eligible, batch already running...).
"""

import asyncio
from enum import Enum
from typing import Optional, Tuple

import aiohttp


class ErrorKind(str, Enum):
    """Why a device ended up unreachable or failed."""
    INVALID_ADDRESS = "invalid_address"
    CONNECTION_TIMEOUT = "connection_timeout"
    NETWORK_ERROR = "network_error"
    DEVICE_REJECTED = "device_rejected"
    INSTALL_REPORTED_ERROR = "install_reported_error"
    CANCELLED = "cancelled"


class RolloutError(Exception):
    """Base class for all rollout errors."""


class BatchError(RolloutError):
    """Orchestrator misuse, reported synchronously to the caller."""


class InvalidTransition(RolloutError):
    """A device was asked to move to a state its current state forbids."""

    def __init__(self, device_id: str, current: str, target: str):
        super().__init__(f"Device {device_id}: illegal transition {current} -> {target}")
        self.device_id = device_id
        self.current = current
        self.target = target


class DeviceError(RolloutError):
    """A failure local to a single device."""

    kind: ErrorKind = ErrorKind.NETWORK_ERROR

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def reason(self) -> str:
        return str(self)


class InvalidAddress(DeviceError):
    kind = ErrorKind.INVALID_ADDRESS


class ConnectionTimeout(DeviceError):
    kind = ErrorKind.CONNECTION_TIMEOUT


class NetworkError(DeviceError):
    kind = ErrorKind.NETWORK_ERROR


class DeviceRejected(DeviceError):
    """Non-2xx response from one of the device endpoints."""

    kind = ErrorKind.DEVICE_REJECTED

    def __init__(self, http_status: int, body: str = "", step: str = "request"):
        detail = f": {body[:200]}" if body else ""
        super().__init__(f"{step} rejected (HTTP {http_status}){detail}")
        self.http_status = http_status
        self.body = body
        self.step = step


class InstallReportedError(DeviceError):
    """The device's own status report says the install failed."""

    kind = ErrorKind.INSTALL_REPORTED_ERROR


class Cancelled(DeviceError):
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)


def classify_exception(exc: BaseException) -> Tuple[ErrorKind, str]:
    """Map a transport or device exception to (kind, reason).

    The reason names the error class so operators can tell a refused
    connection from a DNS failure without reading logs.
    """
    if isinstance(exc, DeviceError):
        return exc.kind, exc.reason
    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return ErrorKind.CONNECTION_TIMEOUT, "ConnectionTimeout"
    if isinstance(exc, (aiohttp.ClientError, OSError)):
        detail = str(exc)
        name = type(exc).__name__
        return ErrorKind.NETWORK_ERROR, f"{name}: {detail}" if detail else name
    return ErrorKind.NETWORK_ERROR, f"{type(exc).__name__}: {exc}"
