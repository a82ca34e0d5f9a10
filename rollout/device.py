"""Per-device lifecycle: states, transitions and the records the orchestrator owns."""

import hashlib
import ipaddress
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Optional

from .errors import ErrorKind, InvalidTransition

logger = logging.getLogger(__name__)


class DeviceStatus(str, Enum):
    """Lifecycle state of one device within a rollout."""
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    UNREACHABLE = "unreachable"
    UPLOADING = "uploading"
    INSTALLING = "installing"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class BatchPhase(str, Enum):
    """Overall phase of a batch session."""
    CONFIGURING = "configuring"
    PROBING = "probing"
    READY = "ready"
    RUNNING = "running"
    COMPLETE = "complete"


S = DeviceStatus

TRANSITIONS: Dict[DeviceStatus, FrozenSet[DeviceStatus]] = {
    S.IDLE: frozenset({S.CONNECTING, S.UNREACHABLE, S.SKIPPED}),
    S.CONNECTING: frozenset({S.CONNECTED, S.UNREACHABLE, S.FAILED}),
    S.CONNECTED: frozenset({S.CONNECTING, S.UPLOADING, S.FAILED, S.SKIPPED, S.IDLE}),
    S.UNREACHABLE: frozenset({S.CONNECTING, S.SKIPPED, S.IDLE}),
    S.UPLOADING: frozenset({S.INSTALLING, S.FAILED}),
    S.INSTALLING: frozenset({S.POLLING, S.FAILED}),
    S.POLLING: frozenset({S.SUCCEEDED, S.FAILED}),
    S.SUCCEEDED: frozenset({S.IDLE, S.CONNECTING, S.SKIPPED}),
    S.FAILED: frozenset({S.IDLE, S.CONNECTING, S.SKIPPED}),
    S.SKIPPED: frozenset({S.IDLE, S.CONNECTING}),
}

# States with a request or timer outstanding against the device
IN_FLIGHT = frozenset({S.CONNECTING, S.UPLOADING, S.INSTALLING, S.POLLING})

# States that end a run for a device
TERMINAL = frozenset({S.SUCCEEDED, S.FAILED, S.UNREACHABLE, S.SKIPPED})

# Each of these starts a new progress sub-phase (progress goes back to 0)
PROGRESS_RESET = frozenset({S.UPLOADING, S.INSTALLING})

# States in which progress is meaningful
PROGRESS_STATES = frozenset({S.UPLOADING, S.INSTALLING, S.POLLING})


def can_transition(current: DeviceStatus, target: DeviceStatus) -> bool:
    """Check whether ``current -> target`` is a legal transition."""
    return target in TRANSITIONS.get(current, frozenset())


def is_valid_ipv4(address: str) -> bool:
    """Strict dotted-quad IPv4 check.

    No surrounding whitespace, no port, no leading zeros, every octet
    0-255.
    """
    if not isinstance(address, str) or address != address.strip():
        return False
    parts = address.split(".")
    if len(parts) != 4 or not all(p.isdigit() and p.isascii() for p in parts):
        return False
    if any(len(p) > 1 and p.startswith("0") for p in parts):
        return False
    try:
        ipaddress.IPv4Address(address)
    except ValueError:
        return False
    return True


@dataclass
class DeviceEntry:
    """One target device and its rollout state."""
    id: str
    address: str = ""
    status: DeviceStatus = DeviceStatus.IDLE
    progress: int = 0
    message: str = ""
    error: Optional[ErrorKind] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def in_flight(self) -> bool:
        return self.status in IN_FLIGHT

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    @property
    def has_valid_address(self) -> bool:
        return is_valid_ipv4(self.address)

    def copy(self) -> "DeviceEntry":
        """Detached copy for readers; the orchestrator keeps the original."""
        return replace(self)

    def reset(self) -> None:
        """Forget everything learned about the device (status back to idle)."""
        self.status = DeviceStatus.IDLE
        self.progress = 0
        self.message = ""
        self.error = None
        self.started_at = None
        self.completed_at = None

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "address": self.address,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "error": self.error.value if self.error else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class FirmwareArtifact:
    """Firmware image shared read-only by every update in a run."""
    filename: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    @classmethod
    def from_path(cls, path) -> "FirmwareArtifact":
        """Load a firmware image from disk."""
        firmware_file = Path(path)
        if not firmware_file.is_file():
            raise FileNotFoundError(f"Firmware file not found: {path}")
        data = firmware_file.read_bytes()
        logger.info(f"Loaded firmware {firmware_file.name} ({len(data)} bytes)")
        return cls(filename=firmware_file.name, data=data)
