"""Drives one device through re-verify, upload, install and poll.

The driver never mutates a ``DeviceEntry``. It reports intents
(``DeviceUpdate``) through a callback and the owner of the record, the
orchestrator, applies them. Polling re-reads the live record through a
lookup callback every tick instead of trusting a captured copy.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from .clients.base import BaseDeviceClient
from .device import DeviceEntry, DeviceStatus, FirmwareArtifact
from .errors import (
    Cancelled,
    DeviceError,
    DeviceRejected,
    ErrorKind,
    InstallReportedError,
    classify_exception,
)
from .prober import ConnectivityProber

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0

# Device-reported install states
SUCCESS_STATES = {"finished": "Update finished", "reboot_required": "Update finished, reboot required"}
ERROR_STATE = "error"


@dataclass
class DeviceUpdate:
    """A change the driver wants applied to its device record.

    ``None`` fields are left unchanged.
    """
    status: Optional[DeviceStatus] = None
    progress: Optional[int] = None
    message: Optional[str] = None
    error: Optional[ErrorKind] = None


Reporter = Callable[[DeviceUpdate], None]
RecordLookup = Callable[[], Optional[DeviceEntry]]


class CancellationToken:
    """Cooperative cancellation flag shared between orchestrator and driver."""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds or until cancelled.

        Returns:
            True if the token was cancelled while sleeping.
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class UpdateResult:
    """Terminal outcome of one device update."""
    device_id: str
    status: DeviceStatus
    message: str = ""
    error: Optional[ErrorKind] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    polls: int = 0

    @property
    def success(self) -> bool:
        return self.status == DeviceStatus.SUCCEEDED


def coerce_progress(value: Any) -> Optional[int]:
    """Clamp a device-reported progress value to 0-100, ignoring junk."""
    if isinstance(value, bool):
        return None
    try:
        percent = int(float(value))
    except (TypeError, ValueError):
        return None
    return max(0, min(100, percent))


class UpdateDriver:
    """Executes the update sequence for a single device.

    Every step is sequential: upload finishes before the install trigger,
    the trigger finishes before polling. Any failure ends the device in a
    terminal state and is returned, never raised.
    """

    def __init__(
        self,
        client: BaseDeviceClient,
        prober: Optional[ConnectivityProber] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        request_timeout: Optional[float] = None,
        upload_timeout: Optional[float] = None,
    ):
        if poll_interval <= 0:
            raise ValueError("Poll interval must be positive")
        self.client = client
        self.prober = prober or ConnectivityProber(client)
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.upload_timeout = upload_timeout

    async def run(
        self,
        entry: DeviceEntry,
        artifact: FirmwareArtifact,
        report: Optional[Reporter] = None,
        token: Optional[CancellationToken] = None,
        current: Optional[RecordLookup] = None,
    ) -> UpdateResult:
        """Update one device.

        Args:
            entry: Device to update (read for its id and address only).
            artifact: Firmware shared across the batch.
            report: Receives a ``DeviceUpdate`` after every state or progress change.
            token: Cancellation token checked before each network call and poll tick.
            current: Returns the live record; polling stops once it leaves ``polling``.

        Returns:
            UpdateResult with the terminal status.
        """
        run = _DriverRun(self, entry, artifact, report, token or CancellationToken(), current)
        return await run.execute()


class _DriverRun:
    """State for one ``UpdateDriver.run`` invocation."""

    def __init__(
        self,
        driver: UpdateDriver,
        entry: DeviceEntry,
        artifact: FirmwareArtifact,
        report: Optional[Reporter],
        token: CancellationToken,
        current: Optional[RecordLookup],
    ):
        self.driver = driver
        self.client = driver.client
        self.device_id = entry.id
        self.address = entry.address
        self.artifact = artifact
        self._report = report
        self.token = token
        self.current = current
        self.status = entry.status
        self.progress = 0
        self.result = UpdateResult(device_id=entry.id, status=entry.status, started_at=datetime.now())

    def notify(
        self,
        status: Optional[DeviceStatus] = None,
        progress: Optional[int] = None,
        message: Optional[str] = None,
        error: Optional[ErrorKind] = None,
    ) -> None:
        """Send an intent to the record owner."""
        if status is not None:
            self.status = status
            if status in (DeviceStatus.UPLOADING, DeviceStatus.INSTALLING):
                self.progress = 0
        if progress is not None:
            if progress <= self.progress and status is None and message is None:
                return
            self.progress = max(self.progress, progress)
        if message is not None:
            self.result.message = message
        if self._report:
            try:
                self._report(DeviceUpdate(status=status, progress=progress, message=message, error=error))
            except Exception:
                logger.exception(f"Progress callback failed for device {self.device_id}")

    async def _call(self, coro, timeout: Optional[float]):
        """Await a client call, then drop its result (or error) if cancelled meanwhile."""
        try:
            if timeout:
                response = await asyncio.wait_for(coro, timeout=timeout)
            else:
                response = await coro
        except Exception as e:
            if self.token.cancelled:
                raise Cancelled() from e
            raise
        self.token.raise_if_cancelled()
        return response

    def _finish(self, status: DeviceStatus, message: str, error: Optional[ErrorKind] = None) -> UpdateResult:
        progress = 100 if status == DeviceStatus.SUCCEEDED else None
        self.notify(status=status, progress=progress, message=message, error=error)
        self.result.status = status
        self.result.message = message
        self.result.error = error
        self.result.completed_at = datetime.now()
        return self.result

    async def execute(self) -> UpdateResult:
        logger.info(f"[UPDATE] {self.address}: starting update with {self.artifact.filename}")
        try:
            self.notify(status=DeviceStatus.CONNECTING, message="Re-checking connectivity")
            self.token.raise_if_cancelled()
            verdict = await self.driver.prober.probe(self.address)
            self.token.raise_if_cancelled()
            if not verdict.connected:
                logger.error(f"[UPDATE] {self.address}: offline before update ({verdict.reason})")
                return self._finish(
                    DeviceStatus.FAILED,
                    f"offline before update: {verdict.reason}",
                    verdict.error,
                )
            self.notify(status=DeviceStatus.CONNECTED, message="Connected")

            await self._upload()
            await self._trigger_install()
            return await self._poll()

        except Cancelled:
            logger.warning(f"[UPDATE] {self.address}: cancelled while {self.status.value}")
            return self._finish(DeviceStatus.FAILED, "cancelled", ErrorKind.CANCELLED)
        except asyncio.CancelledError:
            raise
        except DeviceError as e:
            logger.error(f"[UPDATE] {self.address}: {e}")
            return self._finish(DeviceStatus.FAILED, str(e), e.kind)
        except Exception as e:
            kind, reason = classify_exception(e)
            logger.error(f"[UPDATE] {self.address}: {self.status.value} failed: {reason}")
            return self._finish(DeviceStatus.FAILED, f"{self.status.value} failed: {reason}", kind)

    async def _upload(self) -> None:
        artifact = self.artifact
        self.token.raise_if_cancelled()
        self.notify(status=DeviceStatus.UPLOADING, progress=0, message=f"Uploading {artifact.filename}")

        def on_bytes(sent: int, total: int) -> None:
            percent = 100 if total <= 0 else min(100, sent * 100 // total)
            self.notify(progress=percent)

        response = await self._call(
            self.client.upload_firmware(self.address, artifact, on_bytes),
            self.driver.upload_timeout,
        )
        if not response.ok:
            raise DeviceRejected(response.status, response.body, step="upload")
        self.notify(progress=100, message=f"Uploaded {artifact.filename}")

    async def _trigger_install(self) -> None:
        self.token.raise_if_cancelled()
        self.notify(status=DeviceStatus.INSTALLING, progress=0, message="Triggering install")
        response = await self._call(
            self.client.start_install(self.address, self.artifact.filename),
            self.driver.request_timeout,
        )
        if not response.ok:
            raise DeviceRejected(response.status, response.body, step="install trigger")
        self.notify(status=DeviceStatus.POLLING, message="Installing")

    def _still_polling(self) -> bool:
        if self.current is None:
            return True
        record = self.current()
        if record is None:
            logger.warning(f"[UPDATE] {self.address}: device record removed, stopping poll")
            return False
        if record.status != DeviceStatus.POLLING:
            logger.warning(f"[UPDATE] {self.address}: record is {record.status.value}, stopping poll")
            self.status = record.status
            return False
        return True

    async def _poll(self) -> UpdateResult:
        while True:
            if not self._still_polling():
                self.result.status = self.status
                self.result.completed_at = datetime.now()
                return self.result
            self.token.raise_if_cancelled()

            self.result.polls += 1
            try:
                response = await self._call(
                    self.client.get_status(self.address),
                    self.driver.request_timeout,
                )
            except (Cancelled, asyncio.CancelledError):
                raise
            except Exception as e:
                _, reason = classify_exception(e)
                logger.warning(f"[UPDATE] {self.address}: poll #{self.result.polls} failed ({reason}), retrying")
            else:
                outcome = self._handle_poll(response)
                if outcome is not None:
                    return outcome

            if await self.token.sleep(self.driver.poll_interval):
                raise Cancelled()

    def _handle_poll(self, response) -> Optional[UpdateResult]:
        if not response.ok:
            logger.warning(f"[UPDATE] {self.address}: poll returned HTTP {response.status}, retrying")
            return None

        data = response.json()
        state = str(data.get("status", "")).lower()
        message = data.get("message")
        message = str(message) if message else None
        logger.debug(f"[UPDATE] {self.address}: poll #{self.result.polls} -> {data}")

        if state in SUCCESS_STATES:
            logger.info(f"[UPDATE] {self.address}: {state}")
            return self._finish(DeviceStatus.SUCCEEDED, message or SUCCESS_STATES[state])
        if state == ERROR_STATE:
            raise InstallReportedError(message or "Device reported an install error")

        progress = coerce_progress(data.get("progress"))
        if progress is not None or message:
            self.notify(progress=progress, message=message)
        return None
