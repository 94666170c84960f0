"""Tests for the connectivity controller.

Covers:
- start preconditions
- connect retry policy (continuable and fatal failures)
- full sessions over the loopback transport
- preemption by call_starts while connecting and while testing
- public summary reduction
"""

import asyncio

import pytest

from conftest import SERVERS, FailingTransport, HangingTransport, SilentTransport, settle
from precall.config import Settings
from precall.errors import PreconditionError, TransportError
from precall.services.controller import (
    ConnectivityController,
    ControllerState,
    PublicResult,
    build_public_result,
)
from precall.services.diagnostics import PathDiagnostics
from precall.services.measurements import RttResult, ThroughputResult
from precall.services.results import SessionResults
from precall.services.transport.datagram import DatagramTransport
from precall.services.transport.loopback import LoopbackTransport


class BrokenSetupTransport(FailingTransport):
    """Setup raises something other than a TransportError."""

    name = "broken-setup"

    async def _open(self, servers):
        self.connect_calls += 1
        raise RuntimeError("relay lookup crashed")


class CrashingConnectTransport(FailingTransport):
    """connect() itself raises instead of reporting a TransportError."""

    name = "crashing-connect"

    async def connect(self, servers):
        self.connect_calls += 1
        raise RuntimeError("connect crashed")


class BrokenSendTransport(LoopbackTransport):
    """Opens normally but every send fails."""

    name = "broken-send"

    def _write(self, payload: str):
        raise OSError("boom")


async def wait_for_state(controller, state, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while controller.state != state:
        if loop.time() > deadline:
            raise AssertionError(f"controller stuck in {controller.state}")
        await asyncio.sleep(0.005)


class TestPreconditions:
    """start() refuses to run without touching state."""

    @pytest.mark.asyncio
    async def test_disabled_platform(self):
        controller = ConnectivityController(LoopbackTransport(), Settings(platform_disabled=True))

        with pytest.raises(PreconditionError, match="^Not started: disabled platform$"):
            await controller.start(SERVERS)

        assert controller.state == ControllerState.IDLE
        assert controller.last_report is None

    @pytest.mark.asyncio
    async def test_call_in_progress(self, default_settings):
        controller = ConnectivityController(LoopbackTransport(), default_settings)
        controller.call_starts()

        with pytest.raises(PreconditionError, match="^Not started: call in progress$"):
            await controller.start(SERVERS)

        assert controller.state == ControllerState.IDLE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("servers", [[], None])
    async def test_no_servers(self, default_settings, servers):
        controller = ConnectivityController(LoopbackTransport(), default_settings)

        with pytest.raises(PreconditionError, match="^Not started: no servers given$"):
            await controller.start(servers)

        assert controller.state == ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_already_in_progress(self, default_settings):
        transport = HangingTransport()
        controller = ConnectivityController(transport, default_settings)
        session = asyncio.ensure_future(controller.start(SERVERS))
        await settle()

        with pytest.raises(PreconditionError, match="^Not started: already in progress$"):
            await controller.start(SERVERS)

        assert controller.state == ControllerState.CONNECTING
        controller.call_starts()
        await session

    @pytest.mark.asyncio
    async def test_disabled_platform_checked_first(self):
        controller = ConnectivityController(LoopbackTransport(), Settings(platform_disabled=True))
        controller.call_starts()

        with pytest.raises(PreconditionError, match="disabled platform"):
            await controller.start([])


class TestConnectRetry:
    """Tests for the connect retry policy."""

    @pytest.mark.asyncio
    async def test_gives_up_after_ten_continuable_failures(self, default_settings):
        transport = FailingTransport("Connection timeout", continuable=True)
        controller = ConnectivityController(transport, default_settings)

        with pytest.raises(TransportError, match="Connection timeout"):
            await controller.start(SERVERS)

        report = controller.last_report
        assert transport.connect_calls == 10
        assert len(report.failures) == 10
        assert all(failure.reason == "Connection timeout" for failure in report.failures)
        assert report.status == "failed"
        assert "ice" not in report.tests
        assert controller.state == ControllerState.DONE
        assert not controller.is_active

    @pytest.mark.asyncio
    async def test_configured_failure_limit(self):
        transport = FailingTransport(continuable=True)
        controller = ConnectivityController(transport, Settings(max_connection_failures=3))

        with pytest.raises(TransportError):
            await controller.start(SERVERS)

        assert transport.connect_calls == 3

    @pytest.mark.asyncio
    async def test_fatal_failure_aborts_at_once(self, default_settings):
        transport = FailingTransport("Error starting connection: bad", continuable=False)
        controller = ConnectivityController(transport, default_settings)

        with pytest.raises(TransportError) as exc_info:
            await controller.start(SERVERS)

        assert exc_info.value.continuable is False
        assert transport.connect_calls == 1
        assert len(controller.last_report.failures) == 1
        assert controller.last_report.status == "failed"

    @pytest.mark.asyncio
    async def test_setup_exception_is_recorded_as_fatal(self, default_settings):
        transport = BrokenSetupTransport()
        controller = ConnectivityController(transport, default_settings)

        with pytest.raises(TransportError) as exc_info:
            await controller.start(SERVERS)

        report = controller.last_report
        assert exc_info.value.continuable is False
        assert transport.connect_calls == 1
        assert [failure.reason for failure in report.failures] == [
            "Error starting connection: relay lookup crashed",
        ]
        assert report.status == "failed"
        assert controller.state == ControllerState.DONE

    @pytest.mark.asyncio
    async def test_unexpected_connect_error_is_recorded(self, default_settings):
        transport = CrashingConnectTransport()
        controller = ConnectivityController(transport, default_settings)

        with pytest.raises(RuntimeError, match="connect crashed"):
            await controller.start(SERVERS)

        report = controller.last_report
        assert transport.connect_calls == 1
        assert [failure.reason for failure in report.failures] == ["connect crashed"]
        assert report.status == "failed"
        assert controller.state == ControllerState.DONE
        assert not controller.is_active

    @pytest.mark.asyncio
    async def test_string_server_entries_fail_cleanly(self, default_settings):
        controller = ConnectivityController(DatagramTransport(), default_settings)

        with pytest.raises(TransportError) as exc_info:
            await controller.start(["turn:relay.example.com:3478"])

        report = controller.last_report
        assert exc_info.value.continuable is False
        assert exc_info.value.message.startswith("Error starting connection: ")
        assert len(report.failures) == 1
        assert report.status == "failed"

    @pytest.mark.asyncio
    async def test_controller_reusable_after_failure(self, default_settings, fast_probes):
        transport = FailingTransport(continuable=False)
        controller = ConnectivityController(transport, default_settings)
        with pytest.raises(TransportError):
            await controller.start(SERVERS)

        controller.transport = LoopbackTransport()
        result = await controller.start(SERVERS)

        assert result.media_connectivity is True


class TestSession:
    """Full sessions over the loopback transport."""

    @pytest.mark.asyncio
    async def test_loopback_session(self, default_settings, fast_probes):
        controller = ConnectivityController(LoopbackTransport(), default_settings)

        result = await controller.start(SERVERS)

        report = controller.last_report
        assert set(report.tests) == {"rtt", "loss", "throughput", "ice"}
        assert report.status == "success"
        assert report.failures == ()
        assert controller.state == ControllerState.DONE

        assert result.media_connectivity is True
        assert result.rtt == report.tests["rtt"].median
        assert result.jitter == report.tests["rtt"].variance
        assert result.throughput == report.tests["throughput"].average
        assert result.fractional_loss == 0
        assert result.start_timestamp == report.start_timestamp
        assert result.end_timestamp == report.end_timestamp

        # the throughput window follows the measured RTT within the clamp
        assert 100 <= report.tests["throughput"].max_duration <= 200
        assert report.tests["throughput"].fraction_lost_bytes == report.tests["loss"].fraction_lost_bytes

    @pytest.mark.asyncio
    async def test_test_failures_are_recorded_and_sequence_continues(self, default_settings, fast_probes):
        controller = ConnectivityController(BrokenSendTransport(), default_settings)

        result = await controller.start(SERVERS)

        report = controller.last_report
        reasons = [failure.reason for failure in report.failures]
        assert reasons == [
            "rtt: Send failed: boom",
            "loss: Send failed: boom",
            "throughput: Send failed: boom",
        ]
        assert {"rtt", "loss", "throughput", "ice"} <= set(report.tests)
        assert report.status == "success"
        # a failed loss test leaves the default for the throughput test
        assert report.tests["throughput"].fraction_lost_bytes == -1
        assert result.fractional_loss == 0
        assert result.media_connectivity is True


class TestPreemption:
    """call_starts() preempts a running session."""

    @pytest.mark.asyncio
    async def test_preempt_while_testing(self, default_settings):
        controller = ConnectivityController(SilentTransport(), default_settings)
        session = asyncio.ensure_future(controller.start(SERVERS))
        await wait_for_state(controller, ControllerState.TESTING)

        controller.call_starts()
        assert controller.state == ControllerState.FINALIZING
        result = await session

        report = controller.last_report
        assert report.status == "stopped"
        assert report.tests["rtt"].force_stopped is True
        assert "loss" not in report.tests
        assert "throughput" not in report.tests
        assert "ice" in report.tests
        assert result.media_connectivity is True
        assert controller.state == ControllerState.DONE

    @pytest.mark.asyncio
    async def test_preempt_while_connecting(self, default_settings):
        transport = HangingTransport()
        controller = ConnectivityController(transport, default_settings)
        session = asyncio.ensure_future(controller.start(SERVERS))
        await settle()
        assert controller.state == ControllerState.CONNECTING

        controller.call_starts()
        result = await session

        report = controller.last_report
        assert transport.connect_calls == 1
        assert report.status == "stopped"
        assert set(report.tests) == {"ice"}
        assert result.media_connectivity is False
        assert not transport.channel_open

    @pytest.mark.asyncio
    async def test_call_counter(self, default_settings):
        controller = ConnectivityController(LoopbackTransport(), default_settings)

        controller.call_starts()
        controller.call_starts()
        controller.call_finished()
        controller.call_finished()
        controller.call_finished()

        assert controller.calls_in_progress == 0
        assert controller.state == ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_call_finished_does_not_restart(self, default_settings):
        controller = ConnectivityController(SilentTransport(), default_settings)
        session = asyncio.ensure_future(controller.start(SERVERS))
        await wait_for_state(controller, ControllerState.TESTING)
        controller.call_starts()
        await session

        controller.call_finished()
        await settle()

        assert controller.state == ControllerState.DONE
        assert not controller.is_active


class TestPublicResult:
    """Tests for build_public_result."""

    def _snapshot(self, tests):
        return SessionResults(
            id="1-x", version="1.0.0", status="success",
            start_timestamp=10.0, end_timestamp=20.0, tests=tests,
        )

    def test_defaults_without_session(self):
        result = build_public_result(None)

        assert result == PublicResult(timestamp=result.timestamp)
        assert result.media_connectivity is False
        assert result.rtt is None

    def test_relay_success_alone_means_connectivity(self):
        result = build_public_result(self._snapshot({"ice": PathDiagnostics(relay_tcp_success=True)}))

        assert result.media_connectivity is True
        assert result.throughput is None

    def test_no_results_no_connectivity(self):
        result = build_public_result(self._snapshot({"ice": PathDiagnostics()}))

        assert result.media_connectivity is False
        assert result.start_timestamp == 10.0
        assert result.end_timestamp == 20.0

    def test_negative_loss_clamped(self):
        tests = {
            "rtt": RttResult(median=42, variance=3),
            "throughput": ThroughputResult(average=976.5625, fraction_lost_bytes=-1),
        }

        result = build_public_result(self._snapshot(tests))

        assert result.rtt == 42
        assert result.jitter == 3
        assert result.throughput == 976.5625
        assert result.fractional_loss == 0
