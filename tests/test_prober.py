"""Tests for concurrent connectivity probing."""

import asyncio
import time

import aiohttp
import pytest
from unittest.mock import AsyncMock

from rollout.clients import DeviceResponse, MockDevice, MockDeviceClient
from rollout.errors import ErrorKind
from rollout.prober import ConnectivityProber, ProbeOutcome


class TestAddressValidation:
    """Malformed addresses are rejected before any network call."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address", ["", "10.0.0", "300.1.1.1", "10.0.0.1:80", "host.local", " 10.0.0.1"])
    async def test_invalid_address_never_probed(self, address):
        client = MockDeviceClient()
        client.get_status = AsyncMock()
        prober = ConnectivityProber(client, timeout=1.0)

        verdict = await prober.probe(address)

        assert verdict.outcome == ProbeOutcome.INVALID_ADDRESS
        assert verdict.error == ErrorKind.INVALID_ADDRESS
        client.get_status.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("address", ["10.0.0.1", "192.168.1.20", "255.255.255.255"])
    async def test_valid_address_is_probed(self, address):
        client = MockDeviceClient()
        prober = ConnectivityProber(client, timeout=1.0)

        verdict = await prober.probe(address)

        assert verdict.outcome == ProbeOutcome.CONNECTED
        assert client.calls == [("status", address)]

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            ConnectivityProber(MockDeviceClient(), timeout=0)


class TestStatusInterpretation:
    """HTTP status handling for the status endpoint."""

    @pytest.mark.asyncio
    async def test_2xx_is_connected(self):
        client = MockDeviceClient({"10.0.0.1": MockDevice(probe_status=204)})
        verdict = await ConnectivityProber(client).probe("10.0.0.1")
        assert verdict.connected
        assert verdict.http_status == 204

    @pytest.mark.asyncio
    async def test_404_is_connected(self):
        """A device without the status endpoint is still a device."""
        client = MockDeviceClient({"10.0.0.1": MockDevice(probe_status=404)})
        verdict = await ConnectivityProber(client).probe("10.0.0.1")
        assert verdict.outcome == ProbeOutcome.CONNECTED
        assert verdict.http_status == 404
        assert "not found" in verdict.describe()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("http_status", [301, 401, 403, 500, 503])
    async def test_other_status_is_unreachable(self, http_status):
        client = MockDeviceClient({"10.0.0.1": MockDevice(probe_status=http_status)})
        verdict = await ConnectivityProber(client).probe("10.0.0.1")
        assert verdict.outcome == ProbeOutcome.UNREACHABLE
        assert verdict.reason == f"HTTP {http_status}"
        assert verdict.http_status == http_status

    @pytest.mark.asyncio
    async def test_network_error_records_error_class(self):
        client = MockDeviceClient({"10.0.0.1": MockDevice(online=False)})
        verdict = await ConnectivityProber(client).probe("10.0.0.1")
        assert verdict.outcome == ProbeOutcome.UNREACHABLE
        assert verdict.error == ErrorKind.NETWORK_ERROR
        assert verdict.reason.startswith("ClientConnectionError")

    @pytest.mark.asyncio
    async def test_refused_connection(self):
        client = MockDeviceClient()
        client.get_status = AsyncMock(side_effect=ConnectionRefusedError(111, "Connection refused"))
        verdict = await ConnectivityProber(client).probe("10.0.0.1")
        assert verdict.outcome == ProbeOutcome.UNREACHABLE
        assert verdict.error == ErrorKind.NETWORK_ERROR
        assert "ConnectionRefusedError" in verdict.reason

    @pytest.mark.asyncio
    async def test_hung_device_times_out(self):
        client = MockDeviceClient({"10.0.0.1": MockDevice(hang=True)})
        verdict = await ConnectivityProber(client, timeout=0.1).probe("10.0.0.1")
        assert verdict.outcome == ProbeOutcome.UNREACHABLE
        assert verdict.error == ErrorKind.CONNECTION_TIMEOUT
        assert verdict.reason == "ConnectionTimeout"

    @pytest.mark.asyncio
    async def test_client_timeout_error(self):
        client = MockDeviceClient()
        client.get_status = AsyncMock(side_effect=aiohttp.ServerTimeoutError("read timeout"))
        verdict = await ConnectivityProber(client).probe("10.0.0.1")
        assert verdict.error == ErrorKind.CONNECTION_TIMEOUT


class TestConcurrentProbing:
    """All probes in a batch run at the same time."""

    @pytest.mark.asyncio
    async def test_one_hung_device_costs_one_timeout(self):
        client = MockDeviceClient({
            "10.0.0.1": MockDevice(),
            "10.0.0.2": MockDevice(hang=True),
            "10.0.0.3": MockDevice(),
        })
        prober = ConnectivityProber(client, timeout=0.5)

        started = time.monotonic()
        verdicts = await prober.probe_many({"a": "10.0.0.1", "b": "10.0.0.2", "c": "10.0.0.3"})
        elapsed = time.monotonic() - started

        assert elapsed < 1.0  # three sequential timeouts would be 1.5s
        assert verdicts["a"].connected
        assert verdicts["b"].error == ErrorKind.CONNECTION_TIMEOUT
        assert verdicts["c"].connected

    @pytest.mark.asyncio
    async def test_slow_devices_probe_in_parallel(self):
        client = MockDeviceClient({
            f"10.0.0.{i}": MockDevice(delay=0.2) for i in range(1, 6)
        })
        prober = ConnectivityProber(client, timeout=2.0)

        started = time.monotonic()
        verdicts = await prober.probe_many({str(i): f"10.0.0.{i}" for i in range(1, 6)})
        elapsed = time.monotonic() - started

        assert all(v.connected for v in verdicts.values())
        assert elapsed < 0.6

    @pytest.mark.asyncio
    async def test_mixed_batch_keyed_by_caller_keys(self):
        client = MockDeviceClient({"10.0.0.2": MockDevice(probe_status=500)})
        prober = ConnectivityProber(client, timeout=1.0)

        verdicts = await prober.probe_many({"x": "10.0.0.1", "y": "10.0.0.2", "z": "bogus"})

        assert verdicts["x"].outcome == ProbeOutcome.CONNECTED
        assert verdicts["y"].outcome == ProbeOutcome.UNREACHABLE
        assert verdicts["z"].outcome == ProbeOutcome.INVALID_ADDRESS
        assert ("status", "bogus") not in client.calls

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        prober = ConnectivityProber(MockDeviceClient())
        assert await prober.probe_many({}) == {}

    @pytest.mark.asyncio
    async def test_per_call_timeout_override(self):
        client = MockDeviceClient({"10.0.0.1": MockDevice(delay=0.3)})
        prober = ConnectivityProber(client, timeout=5.0)

        verdicts = await prober.probe_many({"a": "10.0.0.1"}, timeout=0.05)

        assert verdicts["a"].error == ErrorKind.CONNECTION_TIMEOUT


@pytest.mark.asyncio
async def test_verdict_never_raises_for_unexpected_errors():
    client = MockDeviceClient()
    client.get_status = AsyncMock(side_effect=RuntimeError("boom"))
    verdict = await ConnectivityProber(client).probe("10.0.0.1")
    assert verdict.outcome == ProbeOutcome.UNREACHABLE
    assert "RuntimeError" in verdict.reason


@pytest.mark.asyncio
async def test_mock_response_passthrough():
    client = MockDeviceClient()
    client.get_status = AsyncMock(return_value=DeviceResponse(status=200, body="{}"))
    verdict = await ConnectivityProber(client).probe("10.0.0.9")
    assert verdict.connected
    client.get_status.assert_awaited_once_with("10.0.0.9")
