"""Mock device client for running rollouts without real hardware."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from ..device import FirmwareArtifact
from .base import BaseDeviceClient, DeviceResponse, UploadProgress

logger = logging.getLogger(__name__)

# Poll replies a healthy device walks through after an install trigger
DEFAULT_POLL_SCRIPT = [
    (200, {"status": "started", "progress": 0}),
    (200, {"status": "in_progress", "progress": 50, "message": "Writing flash"}),
    (200, {"status": "finished", "progress": 100, "message": "Update complete"}),
]


@dataclass
class MockDevice:
    """Scripted behavior of one simulated device.

    ``poll_script`` is consumed one entry per status poll after the
    install trigger; the last entry repeats once the script runs out.
    An entry whose status is ``None`` raises a connection error instead
    of answering.
    """
    online: bool = True
    hang: bool = False  # Accept the connection but never answer
    probe_status: int = 200
    upload_status: int = 200
    upload_body: str = '{"result": "ok"}'
    upload_chunks: int = 4
    install_status: int = 200
    install_body: str = '{"result": "started"}'
    poll_script: List[Tuple[Optional[int], Dict[str, Any]]] = field(
        default_factory=lambda: list(DEFAULT_POLL_SCRIPT)
    )
    delay: float = 0.0
    installing: bool = False
    uploaded: Optional[str] = None
    _poll_index: int = 0


class MockDeviceClient(BaseDeviceClient):
    """Simulated fleet keyed by address.

    Unknown addresses behave like a healthy device. Every call is
    recorded in ``calls`` as ``(operation, address)``.

    Usage:
        client = MockDeviceClient({
            "10.0.0.1": MockDevice(),
            "10.0.0.2": MockDevice(upload_status=500),
        })
    """

    def __init__(self, devices: Optional[Dict[str, MockDevice]] = None, delay: float = 0.0):
        self.devices: Dict[str, MockDevice] = dict(devices or {})
        self.delay = delay
        self.calls: List[Tuple[str, str]] = []

    def device(self, address: str) -> MockDevice:
        if address not in self.devices:
            self.devices[address] = MockDevice(delay=self.delay)
        return self.devices[address]

    def calls_for(self, address: str, operation: Optional[str] = None) -> List[str]:
        """Operations recorded against one address, optionally filtered."""
        return [
            op for op, addr in self.calls
            if addr == address and (operation is None or op == operation)
        ]

    def set_online(self, address: str, online: bool) -> None:
        self.device(address).online = online

    async def _simulate(self, address: str, operation: str) -> MockDevice:
        """Record the call and apply connection-level behavior."""
        self.calls.append((operation, address))
        device = self.device(address)
        if device.hang:
            logger.debug(f"[MOCK] {address} hanging on {operation}")
            await asyncio.Event().wait()
        if device.delay:
            await asyncio.sleep(device.delay)
        if not device.online:
            raise aiohttp.ClientConnectionError(f"Cannot connect to host {address}")
        return device

    async def get_status(self, address: str) -> DeviceResponse:
        device = await self._simulate(address, "status")
        if not device.installing:
            if device.probe_status == 404:
                return DeviceResponse(status=404, body="Not Found")
            return DeviceResponse(status=device.probe_status, body=json.dumps({"status": "idle"}))

        index = min(device._poll_index, len(device.poll_script) - 1)
        device._poll_index += 1
        http_status, body = device.poll_script[index]
        if http_status is None:
            raise aiohttp.ClientConnectionError(f"Connection reset by {address}")
        logger.debug(f"[MOCK] {address} poll #{index}: {http_status} {body}")
        return DeviceResponse(status=http_status, body=json.dumps(body))

    async def upload_firmware(
        self,
        address: str,
        artifact: FirmwareArtifact,
        on_progress: Optional[UploadProgress] = None,
    ) -> DeviceResponse:
        device = await self._simulate(address, "upload")
        total = artifact.size
        steps = max(device.upload_chunks, 1)
        for i in range(1, steps + 1):
            if device.delay:
                await asyncio.sleep(device.delay / steps)
            if on_progress:
                on_progress(total * i // steps, total)
        if 200 <= device.upload_status < 300:
            device.uploaded = artifact.filename
            logger.info(f"[MOCK] {address} received {artifact.filename} ({total} bytes)")
        return DeviceResponse(status=device.upload_status, body=device.upload_body)

    async def start_install(self, address: str, filename: str) -> DeviceResponse:
        device = await self._simulate(address, "install")
        if 200 <= device.install_status < 300:
            device.installing = True
            device._poll_index = 0
            logger.info(f"[MOCK] {address} installing {filename}")
        return DeviceResponse(status=device.install_status, body=device.install_body)
