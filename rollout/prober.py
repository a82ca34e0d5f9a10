"""Concurrent, time-bounded reachability checks."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional

from .clients.base import BaseDeviceClient
from .device import is_valid_ipv4
from .errors import ErrorKind, classify_exception

logger = logging.getLogger(__name__)

DEFAULT_PROBE_TIMEOUT = 5.0


class ProbeOutcome(str, Enum):
    CONNECTED = "connected"
    UNREACHABLE = "unreachable"
    INVALID_ADDRESS = "invalid_address"


@dataclass
class ProbeVerdict:
    """Result of probing one address."""
    address: str
    outcome: ProbeOutcome
    reason: Optional[str] = None  # HTTP status or error class when not connected
    http_status: Optional[int] = None
    error: Optional[ErrorKind] = None
    elapsed: float = 0.0

    @property
    def connected(self) -> bool:
        return self.outcome == ProbeOutcome.CONNECTED

    def describe(self) -> str:
        """One-line human summary."""
        if self.outcome == ProbeOutcome.CONNECTED:
            return "Connected" if self.http_status != 404 else "Connected (status endpoint not found)"
        if self.outcome == ProbeOutcome.INVALID_ADDRESS:
            return f"Invalid IPv4 address: {self.address!r}"
        return f"Unreachable: {self.reason}"


class ConnectivityProber:
    """Checks device reachability against the status endpoint.

    Every probe is bounded by its own timeout and all probes in a batch
    run concurrently, so one unresponsive device delays only the joined
    result, never another device's verdict.
    """

    def __init__(self, client: BaseDeviceClient, timeout: float = DEFAULT_PROBE_TIMEOUT):
        if timeout <= 0:
            raise ValueError("Probe timeout must be positive")
        self.client = client
        self.timeout = timeout

    async def probe(self, address: str, timeout: Optional[float] = None) -> ProbeVerdict:
        """Probe a single address.

        Never raises for device-side problems; everything is folded into
        the verdict.
        """
        if not is_valid_ipv4(address):
            logger.debug(f"Rejecting invalid address {address!r} without probing")
            return ProbeVerdict(
                address=address,
                outcome=ProbeOutcome.INVALID_ADDRESS,
                reason="invalid IPv4 address",
                error=ErrorKind.INVALID_ADDRESS,
            )

        timeout = self.timeout if timeout is None else timeout
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(self.client.get_status(address), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            kind, reason = classify_exception(e)
            elapsed = time.monotonic() - started
            logger.info(f"Probe {address}: unreachable ({reason}) after {elapsed:.1f}s")
            return ProbeVerdict(
                address=address,
                outcome=ProbeOutcome.UNREACHABLE,
                reason=reason,
                error=kind,
                elapsed=elapsed,
            )

        elapsed = time.monotonic() - started
        # A missing status endpoint still proves the device answered
        if response.ok or response.status == 404:
            logger.info(f"Probe {address}: connected (HTTP {response.status})")
            return ProbeVerdict(
                address=address,
                outcome=ProbeOutcome.CONNECTED,
                http_status=response.status,
                elapsed=elapsed,
            )

        logger.info(f"Probe {address}: unreachable (HTTP {response.status})")
        return ProbeVerdict(
            address=address,
            outcome=ProbeOutcome.UNREACHABLE,
            reason=f"HTTP {response.status}",
            http_status=response.status,
            error=ErrorKind.DEVICE_REJECTED,
            elapsed=elapsed,
        )

    async def probe_many(
        self,
        targets: Mapping[str, str],
        timeout: Optional[float] = None,
    ) -> Dict[str, ProbeVerdict]:
        """Probe every ``{key: address}`` concurrently.

        Returns:
            Verdicts keyed like ``targets``.
        """
        if not targets:
            return {}

        keys = list(targets.keys())
        logger.info(f"Probing {len(keys)} device(s) (timeout {timeout or self.timeout:.1f}s)")
        results = await asyncio.gather(
            *(self.probe(targets[key], timeout=timeout) for key in keys)
        )
        return dict(zip(keys, results))
