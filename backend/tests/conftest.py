"""
Shared pytest fixtures for precall tests.

Provides stub transports for driving the controller and the measurement
tests without a network, and a fixture that shortens the probe timings so
full sessions finish in well under a second.
"""

import asyncio
from typing import Any, Dict, List

import pytest

from precall.config import Settings
from precall.errors import TransportError
from precall.services.transport.base import Transport
from precall.services.transport.loopback import LoopbackTransport


SERVERS = [{"urls": "turn:relay.example.com:3478?transport=udp", "username": "u", "credential": "secret"}]


# =============================================================================
# STUB TRANSPORTS
# =============================================================================


class FailingTransport(Transport):
    """Transport whose handshake always fails with the given error."""

    name = "failing"

    def __init__(self, message: str = "Connection timeout", continuable: bool = True):
        super().__init__(connection_timeout=5, negotiation_timeout=5)
        self.message = message
        self.continuable = continuable
        self.connect_calls = 0
        self.close_calls = 0

    async def _open(self, servers: List[Dict[str, Any]]) -> None:
        self.connect_calls += 1
        raise TransportError(self.message, continuable=self.continuable)

    def _close(self):
        self.close_calls += 1

    def _write(self, payload: str):
        pass

    async def _collect_raw_stats(self) -> Any:
        return []


class HangingTransport(Transport):
    """Transport whose handshake never completes."""

    name = "hanging"

    def __init__(self, **kwargs):
        kwargs.setdefault("connection_timeout", 30)
        kwargs.setdefault("negotiation_timeout", 10)
        super().__init__(**kwargs)
        self.connect_calls = 0

    async def _open(self, servers: List[Dict[str, Any]]) -> None:
        self.connect_calls += 1

    def _close(self):
        pass

    def _write(self, payload: str):
        pass

    async def _collect_raw_stats(self) -> Any:
        return []


class SilentTransport(LoopbackTransport):
    """Opens like the loopback transport but never echoes anything."""

    name = "silent"

    def _write(self, payload: str):
        pass


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def servers() -> List[Dict[str, Any]]:
    return [dict(server) for server in SERVERS]


@pytest.fixture
def default_settings() -> Settings:
    """Settings with defaults, independent of the environment."""
    return Settings(
        platform_disabled=False,
        connection_timeout_seconds=30,
        negotiation_timeout_seconds=10,
        max_connection_failures=10,
    )


@pytest.fixture
def fast_probes(monkeypatch):
    """Shorten probe timings so a loopback session takes a fraction of a second."""
    from precall.services.measurements import loss, rtt, throughput

    monkeypatch.setattr(rtt, "PING_TIMEOUT_MS", 20)
    monkeypatch.setattr(rtt, "LAST_PING_TIMEOUT_MS", 50)
    monkeypatch.setattr(loss, "TEST_DURATION_MS", 150)
    monkeypatch.setattr(loss, "BURST_DELAY_MS", 5)
    monkeypatch.setattr(loss, "CHUNK_INTERVAL_MS", 1)
    monkeypatch.setattr(throughput, "DEFAULT_DURATION_MS", 150)
    monkeypatch.setattr(throughput, "MIN_DURATION_MS", 100)
    monkeypatch.setattr(throughput, "MAX_DURATION_MS", 200)
    monkeypatch.setattr(throughput, "MAX_QUEUED_BYTES", 50000)


async def settle(turns: int = 3):
    """Let pending call_soon callbacks run."""
    for _ in range(turns):
        await asyncio.sleep(0)
