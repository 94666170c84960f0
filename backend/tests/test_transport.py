"""Tests for the transport base: watchdogs, consumers, diagnostics."""

import pytest

from conftest import SERVERS, HangingTransport, settle
from precall.errors import ChannelBusyError, TransportError
from precall.services.transport import LoopbackTransport, create_transport
from precall.services.transport.base import NEGOTIATION_CHECKING, NEGOTIATION_CONNECTED, NEGOTIATION_FAILED


class NegotiatingTransport(HangingTransport):
    """Reports the given negotiation states while opening, then stalls."""

    name = "negotiating"

    def __init__(self, states, **kwargs):
        super().__init__(**kwargs)
        self.states = states

    async def _open(self, servers):
        await super()._open(servers)
        for state in self.states:
            self._set_negotiation_state(state)


class BrokenSetupTransport(HangingTransport):
    name = "broken"

    async def _open(self, servers):
        raise ValueError("bad server list")


class CrashingSetupTransport(HangingTransport):
    name = "crashing"

    async def _open(self, servers):
        raise RuntimeError("resolver crashed")


class TestWatchdogs:
    """Tests for the connection and negotiation watchdogs."""

    @pytest.mark.asyncio
    async def test_connection_timeout(self):
        transport = HangingTransport(connection_timeout=0.05)

        with pytest.raises(TransportError) as exc_info:
            await transport.connect(SERVERS)

        assert exc_info.value.message == "Connection timeout"
        assert exc_info.value.continuable is True
        assert not transport.channel_open

    @pytest.mark.asyncio
    async def test_negotiation_timeout(self):
        transport = NegotiatingTransport([NEGOTIATION_CHECKING], connection_timeout=5, negotiation_timeout=0.05)

        with pytest.raises(TransportError) as exc_info:
            await transport.connect(SERVERS)

        assert exc_info.value.message == "Negotiation timeout"
        assert exc_info.value.continuable is True

    @pytest.mark.asyncio
    async def test_confirmed_negotiation_cancels_timer(self):
        transport = NegotiatingTransport(
            [NEGOTIATION_CHECKING, NEGOTIATION_CONNECTED],
            connection_timeout=0.15,
            negotiation_timeout=0.05,
        )

        with pytest.raises(TransportError) as exc_info:
            await transport.connect(SERVERS)

        # only the overall watchdog is left to fire
        assert exc_info.value.message == "Connection timeout"

    @pytest.mark.asyncio
    async def test_negotiation_failure(self):
        transport = NegotiatingTransport([NEGOTIATION_CHECKING, NEGOTIATION_FAILED])

        with pytest.raises(TransportError) as exc_info:
            await transport.connect(SERVERS)

        assert exc_info.value.message == "Negotiation failure"
        assert exc_info.value.continuable is True

    @pytest.mark.asyncio
    async def test_setup_error_is_fatal(self):
        transport = BrokenSetupTransport()

        with pytest.raises(TransportError) as exc_info:
            await transport.connect(SERVERS)

        assert "bad server list" in exc_info.value.message
        assert exc_info.value.continuable is False

    @pytest.mark.asyncio
    async def test_any_setup_exception_is_fatal(self):
        transport = CrashingSetupTransport()

        with pytest.raises(TransportError) as exc_info:
            await transport.connect(SERVERS)

        assert exc_info.value.message == "Error starting connection: resolver crashed"
        assert exc_info.value.continuable is False
        assert transport._connection_timer is None

    @pytest.mark.asyncio
    async def test_watchdogs_cancelled_once_open(self):
        transport = LoopbackTransport(connection_timeout=0.05, negotiation_timeout=0.05)

        await transport.connect(SERVERS)

        assert transport.channel_open
        assert transport._connection_timer is None
        assert transport._negotiation_timer is None
        transport.disconnect()


class TestConsumers:
    """Tests for single-consumer registration."""

    def test_second_registration_rejected(self):
        transport = LoopbackTransport()
        transport.register_consumer(print, print)

        with pytest.raises(ChannelBusyError):
            transport.register_consumer(print, print)

    def test_stale_revoke_is_noop(self):
        transport = LoopbackTransport()
        first = transport.register_consumer(print, print)
        transport.revoke_consumer(first)
        second = transport.register_consumer(print, print)

        transport.revoke_consumer(first)

        assert transport._consumer is second

    @pytest.mark.asyncio
    async def test_messages_reach_installed_consumer_only(self):
        transport = LoopbackTransport()
        await transport.connect(SERVERS)
        received = []
        registration = transport.register_consumer(received.append, print)

        transport.send("hello")
        await settle()
        transport.revoke_consumer(registration)
        transport.send("dropped")
        await settle()
        transport.disconnect()

        assert received == ["hello"]

    @pytest.mark.asyncio
    async def test_send_without_channel_reports_later(self):
        transport = LoopbackTransport()
        errors = []
        transport.register_consumer(print, errors.append)

        transport.send("x")
        assert errors == []
        await settle()

        assert len(errors) == 1
        assert errors[0].message == "No send channel"


class TestLifecycle:
    """Tests for connect/disconnect and diagnostics."""

    def test_disconnect_before_connect(self):
        transport = LoopbackTransport()

        transport.disconnect()
        transport.disconnect()

        assert not transport.channel_open

    @pytest.mark.asyncio
    async def test_loopback_diagnostics(self):
        transport = LoopbackTransport()
        await transport.connect(SERVERS)

        diagnostics = await transport.get_path_diagnostics()
        transport.disconnect()

        assert diagnostics.turn_ip_address == "127.0.0.1"
        assert diagnostics.ipv4_supported
        assert diagnostics.local_ip_address_info[0].ip == "127.0.0.1"
        assert diagnostics.local_ip_address_info[0].network_type == "loopback"
        assert all("credential" not in server for server in diagnostics.ice_servers)

    @pytest.mark.asyncio
    async def test_diagnostics_unavailable_after_disconnect(self):
        transport = LoopbackTransport()
        await transport.connect(SERVERS)
        transport.disconnect()

        with pytest.raises(TransportError, match="Channel not available for stats"):
            await transport.get_path_diagnostics()

    def test_create_transport(self):
        assert isinstance(create_transport("loopback"), LoopbackTransport)
        with pytest.raises(ValueError):
            create_transport("carrier-pigeon")
