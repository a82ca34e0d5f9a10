"""Abstract transport client for the device update API."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..device import FirmwareArtifact

# (bytes_sent, total_bytes)
UploadProgress = Callable[[int, int], None]


@dataclass
class DeviceResponse:
    """HTTP response from a device endpoint."""
    status: int
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Dict[str, Any]:
        """Parse the body as a JSON object.

        Returns an empty dict if the body is empty, not JSON, or not an
        object; poll responses from some devices are plain text.
        """
        if not self.body:
            return {}
        try:
            data = json.loads(self.body)
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}


class BaseDeviceClient(ABC):
    """Abstract base class for device clients.

    Implementations return a ``DeviceResponse`` for every HTTP exchange,
    whatever the status code, and raise only on transport failure
    (timeouts, refused connections, aborted streams).
    """

    @abstractmethod
    async def get_status(self, address: str) -> DeviceResponse:
        """GET the status endpoint (used for both probing and polling)."""
        pass

    @abstractmethod
    async def upload_firmware(
        self,
        address: str,
        artifact: FirmwareArtifact,
        on_progress: Optional[UploadProgress] = None,
    ) -> DeviceResponse:
        """Stream the firmware to the upload endpoint.

        Args:
            address: Device address.
            artifact: Firmware to send.
            on_progress: Called with (bytes_sent, total) as chunks go out.
        """
        pass

    @abstractmethod
    async def start_install(self, address: str, filename: str) -> DeviceResponse:
        """POST the install trigger naming the uploaded file."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None

    async def __aenter__(self) -> "BaseDeviceClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
