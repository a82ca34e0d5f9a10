"""aiohttp client for the device update API.

Endpoints:
- GET  /update/status - Reachability probe and install progress
                        {"status": "in_progress", "progress": 40, "message": "..."}
- POST /update        - Upload firmware (multipart form-data: file=binary)
- POST /update/start  - Trigger install (JSON: {"filename": "fw.bin"})
"""

import logging
from typing import AsyncIterator, Optional

import aiohttp

from ..config import DeviceApiConfig, UpdateConfig
from ..device import FirmwareArtifact
from .base import BaseDeviceClient, DeviceResponse, UploadProgress

logger = logging.getLogger(__name__)


class HttpDeviceClient(BaseDeviceClient):
    """Talks to devices over HTTP with one shared aiohttp session.

    The session is created lazily on first use so the client can be built
    outside a running event loop.
    """

    def __init__(
        self,
        api: Optional[DeviceApiConfig] = None,
        update: Optional[UpdateConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api = api or DeviceApiConfig()
        self.update = update or UpdateConfig()
        self._session = session
        self._owns_session = session is None

    def _origin(self, address: str) -> str:
        return f"{self.api.scheme}://{address}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=False)
            self._session = aiohttp.ClientSession(connector=connector)
            self._owns_session = True
        return self._session

    async def get_status(self, address: str) -> DeviceResponse:
        url = f"{self._origin(address)}{self.api.status_path}"
        timeout = aiohttp.ClientTimeout(total=self.update.request_timeout)
        async with self._get_session().get(url, timeout=timeout) as response:
            text = await response.text()
            logger.debug(f"GET {url} -> {response.status}")
            return DeviceResponse(status=response.status, body=text)

    async def _stream(
        self,
        artifact: FirmwareArtifact,
        on_progress: Optional[UploadProgress],
    ) -> AsyncIterator[bytes]:
        """Yield the firmware in chunks, reporting bytes handed to the transport."""
        total = artifact.size
        chunk_size = self.update.chunk_size
        view = memoryview(artifact.data)
        sent = 0
        while sent < total:
            chunk = bytes(view[sent:sent + chunk_size])
            yield chunk
            sent += len(chunk)
            if on_progress:
                on_progress(sent, total)

    async def upload_firmware(
        self,
        address: str,
        artifact: FirmwareArtifact,
        on_progress: Optional[UploadProgress] = None,
    ) -> DeviceResponse:
        url = f"{self._origin(address)}{self.api.upload_path}"
        form_data = aiohttp.FormData()
        form_data.add_field(
            self.api.upload_field,
            self._stream(artifact, on_progress),
            filename=artifact.filename,
            content_type="application/octet-stream",
        )

        logger.info(f"Uploading firmware {artifact.filename} ({artifact.size} bytes) to {address}")
        timeout = aiohttp.ClientTimeout(total=self.update.upload_timeout)
        async with self._get_session().post(url, data=form_data, timeout=timeout) as response:
            text = await response.text()
            if response.status >= 300:
                logger.error(f"Firmware upload to {address} failed ({response.status}): {text[:200]}")
            else:
                logger.info(f"Firmware uploaded to {address}")
            return DeviceResponse(status=response.status, body=text)

    async def start_install(self, address: str, filename: str) -> DeviceResponse:
        url = f"{self._origin(address)}{self.api.start_path}"
        timeout = aiohttp.ClientTimeout(total=self.update.request_timeout)
        logger.info(f"Triggering install of {filename} on {address}")
        async with self._get_session().post(
            url,
            json={"filename": filename},
            timeout=timeout,
        ) as response:
            text = await response.text()
            return DeviceResponse(status=response.status, body=text)

    async def close(self) -> None:
        """Close the shared HTTP session."""
        if self._session and not self._session.closed and self._owns_session:
            await self._session.close()
        self._session = None
