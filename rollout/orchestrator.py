"""Batch orchestration of firmware rollouts.

The orchestrator owns every ``DeviceEntry`` and is the only code that
writes to them (``_apply``). Probing fans out concurrently; updating runs
one device at a time in insertion order so at most one upload is on the
operator's link at any moment.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Callable, Dict, List, Optional, Set

from .clients.base import BaseDeviceClient
from .config import Config
from .device import (
    BatchPhase,
    DeviceEntry,
    DeviceStatus,
    FirmwareArtifact,
    IN_FLIGHT,
    PROGRESS_RESET,
    TERMINAL,
    can_transition,
)
from .driver import CancellationToken, DeviceUpdate, UpdateDriver, UpdateResult
from .errors import BatchError, ErrorKind, InvalidTransition
from .prober import ConnectivityProber, ProbeOutcome, ProbeVerdict

logger = logging.getLogger(__name__)

# Statuses that may take part in the next batch (idle also needs a valid address)
ELIGIBLE = frozenset({
    DeviceStatus.IDLE,
    DeviceStatus.CONNECTED,
    DeviceStatus.FAILED,
    DeviceStatus.SUCCEEDED,
})


@dataclass
class BatchSnapshot:
    """Point-in-time read model of a batch session."""
    phase: BatchPhase
    devices: Dict[str, DeviceEntry] = field(default_factory=dict)
    artifact: Optional[str] = None
    current_device: Optional[str] = None
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return self.phase == BatchPhase.COMPLETE

    def summary(self) -> Dict[str, int]:
        """Count devices per status."""
        counts: Dict[str, int] = {}
        for entry in self.devices.values():
            counts[entry.status.value] = counts.get(entry.status.value, 0) + 1
        return counts

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "phase": self.phase.value,
            "artifact": self.artifact,
            "current_device": self.current_device,
            "cancelled": self.cancelled,
            "devices": {device_id: entry.to_dict() for device_id, entry in self.devices.items()},
            "summary": self.summary(),
        }


class SnapshotStream:
    """Async iterator of snapshots, ending when the running batch completes.

    Usage:
        async for snapshot in orchestrator.start_batch(artifact):
            render(snapshot)
    """

    def __init__(self, orchestrator: "BatchOrchestrator"):
        self._orchestrator = orchestrator
        self._queue: "asyncio.Queue[Optional[BatchSnapshot]]" = asyncio.Queue()
        self._closed = False

    def _push(self, snapshot: Optional[BatchSnapshot]) -> None:
        if not self._closed:
            self._queue.put_nowait(snapshot)

    def close(self) -> None:
        """Stop receiving snapshots; pending ones are still delivered."""
        if not self._closed:
            self._queue.put_nowait(None)
            self._closed = True
            self._orchestrator._streams.discard(self)

    def __aiter__(self) -> "SnapshotStream":
        return self

    async def __anext__(self) -> BatchSnapshot:
        snapshot = await self._queue.get()
        if snapshot is None:
            raise StopAsyncIteration
        return snapshot


class BatchOrchestrator:
    """Owns a batch session: its devices, artifact, phase and cancellation."""

    def __init__(
        self,
        client: BaseDeviceClient,
        prober: Optional[ConnectivityProber] = None,
        driver: Optional[UpdateDriver] = None,
        probe_timeout: float = 5.0,
        poll_interval: float = 3.0,
    ):
        """Initialize the orchestrator.

        Args:
            client: Transport used for every device call.
            prober: Connectivity prober (built from ``client`` if omitted).
            driver: Update driver (built from ``client`` if omitted).
            probe_timeout: Per-device probe timeout in seconds.
            poll_interval: Seconds between install status polls.
        """
        self.client = client
        self.prober = prober or ConnectivityProber(client, timeout=probe_timeout)
        self.driver = driver or UpdateDriver(client, prober=self.prober, poll_interval=poll_interval)

        self._entries: Dict[str, DeviceEntry] = {}  # insertion ordered
        self._artifact: Optional[FirmwareArtifact] = None
        self._phase = BatchPhase.CONFIGURING
        self._tokens: Dict[str, CancellationToken] = {}  # in-flight devices only
        self._cancel_requested = False
        self._current: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._results: Dict[str, UpdateResult] = {}

        self._streams: Set[SnapshotStream] = set()
        self._listeners: List[Callable[[BatchSnapshot], None]] = []

    @classmethod
    def from_config(cls, config: Config, client: BaseDeviceClient) -> "BatchOrchestrator":
        """Build an orchestrator using probe and update settings from config."""
        prober = ConnectivityProber(client, timeout=config.probe.timeout)
        driver = UpdateDriver(
            client,
            prober=prober,
            poll_interval=config.update.poll_interval,
            request_timeout=config.update.request_timeout,
            upload_timeout=config.update.upload_timeout,
        )
        return cls(client, prober=prober, driver=driver)

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def phase(self) -> BatchPhase:
        return self._phase

    @property
    def artifact(self) -> Optional[FirmwareArtifact]:
        return self._artifact

    @property
    def results(self) -> Dict[str, UpdateResult]:
        """Driver results from the last batch, keyed by device id."""
        return dict(self._results)

    @property
    def devices(self) -> List[DeviceEntry]:
        return [entry.copy() for entry in self._entries.values()]

    def get(self, device_id: str) -> Optional[DeviceEntry]:
        entry = self._entries.get(device_id)
        return entry.copy() if entry else None

    def snapshot(self) -> BatchSnapshot:
        return BatchSnapshot(
            phase=self._phase,
            devices={device_id: entry.copy() for device_id, entry in self._entries.items()},
            artifact=self._artifact.filename if self._artifact else None,
            current_device=self._current,
            cancelled=self._cancel_requested,
        )

    def subscribe(self) -> SnapshotStream:
        """Stream every snapshot from now until the running (or next) batch completes."""
        stream = SnapshotStream(self)
        self._streams.add(stream)
        return stream

    def add_listener(self, callback: Callable[[BatchSnapshot], None]) -> None:
        """Register a callback invoked with a snapshot after every change."""
        self._listeners.append(callback)

    def _publish(self) -> None:
        snapshot = self.snapshot()
        for stream in list(self._streams):
            stream._push(snapshot)
        for callback in self._listeners:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed")

    # ------------------------------------------------------------------
    # Single writer
    # ------------------------------------------------------------------

    def _apply(self, device_id: str, update: DeviceUpdate, force: bool = False) -> None:
        """Apply a change to a device record and publish the new state.

        Raises:
            InvalidTransition: The requested status is not reachable from
                the current one (unless ``force``).
        """
        entry = self._entries.get(device_id)
        if entry is None:
            logger.debug(f"Ignoring update for removed device {device_id}")
            return

        status = update.status
        if status is not None and status != entry.status:
            if not force and not can_transition(entry.status, status):
                raise InvalidTransition(device_id, entry.status.value, status.value)
            logger.debug(f"Device {device_id} ({entry.address}): {entry.status.value} -> {status.value}")
            entry.status = status
            if status in PROGRESS_RESET or status in (DeviceStatus.CONNECTING, DeviceStatus.IDLE):
                entry.progress = 0
            if status == DeviceStatus.CONNECTING:
                entry.error = None
                if self._phase == BatchPhase.RUNNING:
                    entry.started_at = datetime.now()
                    entry.completed_at = None
            elif status in TERMINAL and self._phase == BatchPhase.RUNNING:
                entry.completed_at = datetime.now()

        if update.progress is not None:
            entry.progress = max(entry.progress, max(0, min(100, update.progress)))
        if update.message is not None:
            entry.message = update.message
        if update.error is not None:
            entry.error = update.error

        self._publish()

    def _reset_entry(self, entry: DeviceEntry, message: str = "") -> None:
        entry.reset()
        entry.message = message

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _require_idle_session(self, action: str) -> None:
        if self._phase == BatchPhase.RUNNING:
            raise BatchError(f"Cannot {action} while a batch is running")
        if self._phase == BatchPhase.PROBING:
            raise BatchError(f"Cannot {action} while probing")

    def _require_entry(self, device_id: str) -> DeviceEntry:
        entry = self._entries.get(device_id)
        if entry is None:
            raise BatchError(f"Unknown device: {device_id}")
        return entry

    def add_device(self, address: str = "") -> DeviceEntry:
        """Add a device; it joins the next batch, never a running one."""
        entry = DeviceEntry(id=uuid.uuid4().hex[:12], address=address.strip())
        self._entries[entry.id] = entry
        if self._phase in (BatchPhase.READY, BatchPhase.COMPLETE):
            self._phase = BatchPhase.CONFIGURING
        logger.info(f"Added device {entry.id} ({entry.address or 'no address'})")
        self._publish()
        return entry.copy()

    def remove_device(self, device_id: str) -> None:
        self._require_entry(device_id)
        if self._phase == BatchPhase.RUNNING:
            raise BatchError("Cannot remove devices while a batch is running")
        entry = self._entries.pop(device_id)
        logger.info(f"Removed device {device_id} ({entry.address})")
        self._publish()

    def edit_address(self, device_id: str, address: str) -> DeviceEntry:
        """Change a device's address.

        Any earlier probe result is meaningless for the new address, so the
        device always goes back to ``idle``.
        """
        entry = self._require_entry(device_id)
        if self._phase == BatchPhase.RUNNING:
            raise BatchError("Addresses are immutable while a batch is running")

        address = address.strip()
        old = entry.address
        entry.address = address
        self._reset_entry(entry)
        if self._phase in (BatchPhase.READY, BatchPhase.COMPLETE):
            self._phase = BatchPhase.CONFIGURING
        logger.info(f"Device {device_id} address {old or '-'} -> {address or '-'}, reset to idle")
        self._publish()
        return entry.copy()

    def set_artifact(self, artifact: FirmwareArtifact) -> None:
        if self._phase == BatchPhase.RUNNING:
            raise BatchError("Cannot replace firmware while a batch is running")
        self._artifact = artifact
        logger.info(f"Firmware selected: {artifact.filename} ({artifact.size} bytes, sha256 {artifact.sha256[:12]})")
        self._publish()

    def reset(self) -> None:
        """Return every device to ``idle`` for a fresh rollout attempt."""
        self._require_idle_session("reset")
        for entry in self._entries.values():
            self._reset_entry(entry)
        self._phase = BatchPhase.CONFIGURING
        self._cancel_requested = False
        self._results = {}
        logger.info("Batch session reset")
        self._publish()

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def probe_all(self, timeout: Optional[float] = None) -> Dict[str, ProbeVerdict]:
        """Probe every device concurrently.

        Returns:
            Verdicts keyed by device id.
        """
        self._require_idle_session("probe")
        self._phase = BatchPhase.PROBING
        targets: Dict[str, str] = {}

        try:
            for device_id, entry in self._entries.items():
                targets[device_id] = entry.address
                if entry.has_valid_address:
                    self._apply(device_id, DeviceUpdate(status=DeviceStatus.CONNECTING, message="Probing"))
                else:
                    self._reset_entry(entry)
            verdicts = await self.prober.probe_many(targets, timeout=timeout)
        except BaseException:
            for entry in self._entries.values():
                if entry.status == DeviceStatus.CONNECTING:
                    self._reset_entry(entry)
            self._phase = BatchPhase.CONFIGURING
            self._publish()
            raise

        for device_id, verdict in verdicts.items():
            entry = self._entries.get(device_id)
            if entry is None or entry.address != verdict.address:
                # Removed or re-addressed while the probe was out
                continue
            if verdict.outcome == ProbeOutcome.CONNECTED:
                update = DeviceUpdate(status=DeviceStatus.CONNECTED, message=verdict.describe())
            else:
                update = DeviceUpdate(
                    status=DeviceStatus.UNREACHABLE,
                    message=verdict.describe(),
                    error=verdict.error,
                )
            if entry.status in (DeviceStatus.CONNECTING, DeviceStatus.IDLE):
                self._apply(device_id, update)

        if self._phase == BatchPhase.PROBING:
            self._phase = BatchPhase.READY
        connected = sum(1 for v in verdicts.values() if v.connected)
        logger.info(f"Probe complete: {connected}/{len(verdicts)} device(s) connected")
        self._publish()
        return verdicts

    # ------------------------------------------------------------------
    # Updating
    # ------------------------------------------------------------------

    def is_eligible(self, entry: DeviceEntry) -> bool:
        return entry.status in ELIGIBLE and entry.has_valid_address

    def _skip_reason(self, entry: DeviceEntry) -> str:
        if not entry.has_valid_address:
            return f"Skipped: invalid address {entry.address!r}"
        if entry.status == DeviceStatus.UNREACHABLE:
            return f"Skipped: unreachable at last probe ({entry.message})"
        return f"Skipped: device was {entry.status.value}"

    def start_batch(self, artifact: Optional[FirmwareArtifact] = None) -> SnapshotStream:
        """Start updating eligible devices in the background.

        Must be called from a running event loop.

        Args:
            artifact: Firmware to install; defaults to the one set with
                ``set_artifact``.

        Returns:
            Stream of snapshots ending when the batch completes.

        Raises:
            BatchError: Batch already running, probing, no firmware, or no
                eligible devices.
        """
        self._require_idle_session("start a batch")
        artifact = artifact or self._artifact
        if artifact is None:
            raise BatchError("No firmware artifact selected")

        eligible = [device_id for device_id, entry in self._entries.items() if self.is_eligible(entry)]
        if not eligible:
            raise BatchError("No eligible devices to update")

        self._artifact = artifact
        for device_id, entry in self._entries.items():
            if device_id in eligible or entry.status in IN_FLIGHT:
                continue
            reason = self._skip_reason(entry)
            if entry.status == DeviceStatus.SKIPPED:
                entry.message = reason
            else:
                self._apply(device_id, DeviceUpdate(status=DeviceStatus.SKIPPED, message=reason))

        self._phase = BatchPhase.RUNNING
        self._cancel_requested = False
        self._results = {}
        stream = self.subscribe()
        logger.info(
            f"Starting batch: {artifact.filename} to {len(eligible)} device(s), "
            f"{len(self._entries) - len(eligible)} skipped"
        )
        self._publish()
        self._task = asyncio.create_task(self._run(eligible, artifact))
        return stream

    async def run_batch(self, artifact: Optional[FirmwareArtifact] = None) -> BatchSnapshot:
        """Start a batch and wait for it to complete."""
        stream = self.start_batch(artifact)
        try:
            return await self.wait()
        finally:
            stream.close()

    async def wait(self) -> BatchSnapshot:
        """Wait for the running batch (if any) and return the final snapshot."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.snapshot()

    def cancel_batch(self) -> bool:
        """Ask the running batch to stop.

        The in-flight device finishes ``failed`` ("cancelled") at its next
        poll tick or network call; devices not yet started are untouched.

        Returns:
            True if a running batch was signalled.
        """
        if self._phase != BatchPhase.RUNNING:
            return False
        self._cancel_requested = True
        for device_id, token in self._tokens.items():
            logger.info(f"Cancelling in-flight device {device_id}")
            token.cancel()
        self._publish()
        return True

    async def _run(self, device_ids: List[str], artifact: FirmwareArtifact) -> None:
        try:
            for index, device_id in enumerate(device_ids):
                if self._cancel_requested:
                    self._skip_not_started(device_ids[index:])
                    break
                entry = self._entries.get(device_id)
                if entry is None:
                    continue
                self._results[device_id] = await self._update_one(entry, artifact)
        finally:
            for device_id, entry in self._entries.items():
                if entry.status in IN_FLIGHT:
                    self._apply(
                        device_id,
                        DeviceUpdate(status=DeviceStatus.FAILED, message="cancelled", error=ErrorKind.CANCELLED),
                        force=True,
                    )
            self._current = None
            self._phase = BatchPhase.COMPLETE
            summary = self.snapshot().summary()
            logger.info(f"Batch complete: {summary}")
            self._publish()
            for stream in list(self._streams):
                stream.close()

    def _skip_not_started(self, device_ids: List[str]) -> None:
        """Mark devices the cancelled batch never reached, so no earlier result reads as this run's."""
        logger.info(f"Batch cancelled, {len(device_ids)} device(s) not started")
        for device_id in device_ids:
            entry = self._entries.get(device_id)
            if entry is None or entry.status in IN_FLIGHT:
                continue
            self._apply(device_id, DeviceUpdate(status=DeviceStatus.SKIPPED, message="Not started: batch cancelled"))

    async def _update_one(self, entry: DeviceEntry, artifact: FirmwareArtifact) -> UpdateResult:
        device_id = entry.id
        token = CancellationToken()
        self._tokens[device_id] = token
        self._current = device_id
        try:
            return await self.driver.run(
                entry.copy(),
                artifact,
                report=partial(self._apply, device_id),
                token=token,
                current=partial(self.get, device_id),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The driver reports failures itself; this keeps one device's bug local
            logger.exception(f"Unexpected error updating {entry.address}")
            live = self._entries.get(device_id)
            if live is not None and not live.is_terminal:
                self._apply(
                    device_id,
                    DeviceUpdate(status=DeviceStatus.FAILED, message=f"internal error: {e}"),
                    force=True,
                )
            return UpdateResult(device_id=device_id, status=DeviceStatus.FAILED, message=str(e))
        finally:
            self._tokens.pop(device_id, None)
            self._current = None
