"""UDP transport to an echoing relay.

The channel opens with a small handshake: the client repeats a hello
datagram until the relay answers with the address it saw the hello come
from. That answer yields the server-reflexive candidate; the relay address
itself is reported as a UDP relay candidate. Every other datagram is a test
payload that the relay echoes back unchanged.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from ...utils.candidate import (
    CANDIDATE_HOST,
    CANDIDATE_RELAY,
    CANDIDATE_SRFLX,
    candidate_priority,
    format_candidate,
)
from .base import NEGOTIATION_CHECKING, NEGOTIATION_COMPLETED, Transport

logger = logging.getLogger(__name__)

HELLO = b"precall-hello"
HELLO_INTERVAL_MS = 250
DEFAULT_RELAY_PORT = 3478

# Type preferences; the top priority byte of a relay candidate tells how the
# relay was reached (2 = UDP)
HOST_PREFERENCE = 126
SRFLX_PREFERENCE = 100
RELAY_UDP_PREFERENCE = 2

_RELAY_SCHEMES = ("turn", "stun")


def parse_hello_reply(data: bytes) -> Optional[Tuple[str, int]]:
    """Observed (ip, port) from a relay's hello answer, or None."""
    fields = data.decode("ascii", errors="replace").split(" ")
    if len(fields) != 3 or fields[0].encode() != HELLO:
        return None
    try:
        return fields[1], int(fields[2])
    except ValueError:
        return None


def relay_address(servers: List[Dict[str, Any]]) -> Tuple[str, int]:
    """Host and port of the first turn: or stun: URL in the server list."""
    for server in servers:
        urls = server.get("urls") or server.get("url") or []
        if isinstance(urls, str):
            urls = [urls]
        for url in urls:
            scheme, _, rest = url.partition(":")
            if scheme not in _RELAY_SCHEMES or not rest:
                continue
            # urlsplit needs a netloc marker to separate host and port
            location = urlsplit(f"//{rest.split('?', 1)[0]}")
            if not location.hostname:
                continue
            return location.hostname, location.port or DEFAULT_RELAY_PORT
    raise ValueError("No turn: or stun: URL in server list")


class _RelayProtocol(asyncio.DatagramProtocol):
    def __init__(self, owner: "DatagramTransport"):
        self.owner = owner
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.owner._datagram_received(data)

    def error_received(self, exc):
        self.owner._error_received(exc)

    def pause_writing(self):
        logger.debug("Relay socket buffer full")

    def resume_writing(self):
        self.owner._notify_low_buffer()


class DatagramTransport(Transport):
    """Message channel over UDP through an echoing relay."""
    name = "datagram"
    supports_low_buffer_notification = True

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._udp: Optional[asyncio.DatagramTransport] = None
        self._hello_timer: Optional[asyncio.TimerHandle] = None
        self._hellos_sent = 0
        self._relay: Optional[Tuple[str, int]] = None
        self._local: Optional[Tuple[str, int]] = None
        self._observed: Optional[Tuple[str, int]] = None
        self.datagrams_sent = 0
        self.datagrams_received = 0
        self.bytes_sent = 0
        self.bytes_received = 0

    async def _open(self, servers: List[Dict[str, Any]]) -> None:
        host, port = relay_address(servers)
        loop = asyncio.get_running_loop()

        self._observed = None
        self._hellos_sent = 0
        self.datagrams_sent = self.datagrams_received = 0
        self.bytes_sent = self.bytes_received = 0

        self._udp, _ = await loop.create_datagram_endpoint(
            lambda: _RelayProtocol(self),
            remote_addr=(host, port),
        )
        if not self._handles_open:
            # connect was abandoned while the socket was being created
            self._udp.close()
            self._udp = None
            return

        peer = self._udp.get_extra_info("peername")
        sock = self._udp.get_extra_info("sockname")
        self._relay = (peer[0], peer[1])
        self._local = (sock[0], sock[1])
        logger.info(f"Relay {host}:{port} resolved to {self._relay[0]}:{self._relay[1]}")

        self._on_candidate(format_candidate(
            "1", 1, "udp", candidate_priority(HOST_PREFERENCE),
            self._local[0], self._local[1], CANDIDATE_HOST,
        ))
        self._set_negotiation_state(NEGOTIATION_CHECKING)
        self._send_hello()

    def _send_hello(self):
        self._hello_timer = None
        if self._udp is None or self.channel_open:
            return
        self._hellos_sent += 1
        self._udp.sendto(HELLO)
        loop = asyncio.get_running_loop()
        self._hello_timer = loop.call_later(HELLO_INTERVAL_MS / 1000.0, self._send_hello)

    def _on_hello_reply(self, data: bytes):
        observed = parse_hello_reply(data)
        if observed is None:
            logger.debug(f"Malformed hello reply: {data[:64]!r}")
            return
        if self.channel_open:
            return
        if self._hello_timer is not None:
            self._hello_timer.cancel()
            self._hello_timer = None

        self._observed = observed
        logger.debug(f"Relay sees us as {observed[0]}:{observed[1]} after {self._hellos_sent} hello(s)")
        self._on_candidate(format_candidate(
            "2", 1, "udp", candidate_priority(SRFLX_PREFERENCE),
            observed[0], observed[1], CANDIDATE_SRFLX,
            related_address=self._local[0], related_port=self._local[1],
        ))
        self._on_candidate(format_candidate(
            "3", 1, "udp", candidate_priority(RELAY_UDP_PREFERENCE),
            self._relay[0], self._relay[1], CANDIDATE_RELAY,
            related_address=observed[0], related_port=observed[1],
        ))
        self._set_negotiation_state(NEGOTIATION_COMPLETED)
        self._channel_opened()

    def _datagram_received(self, data: bytes):
        if data.startswith(HELLO):
            self._on_hello_reply(data)
            return
        if not self.channel_open:
            return
        self.datagrams_received += 1
        self.bytes_received += len(data)
        self._deliver_message(data.decode("utf-8", errors="replace"))

    def _error_received(self, exc: Exception):
        if self.channel_open:
            self._channel_error(exc)
        else:
            # the relay may not be listening yet; hellos keep going until a watchdog fires
            logger.debug(f"Socket error during handshake: {exc}")

    def _close(self):
        if self._hello_timer is not None:
            self._hello_timer.cancel()
            self._hello_timer = None
        if self._udp is not None:
            self._udp.close()
            self._udp = None

    def _write(self, payload: str):
        data = payload.encode("utf-8")
        self._udp.sendto(data)
        self.datagrams_sent += 1
        self.bytes_sent += len(data)

    @property
    def buffered_amount(self) -> int:
        if self._udp is None:
            return 0
        return self._udp.get_write_buffer_size()

    def set_low_buffer_threshold(self, threshold: float):
        super().set_low_buffer_threshold(threshold)
        if self._udp is not None:
            low = self._low_buffer_threshold
            self._udp.set_write_buffer_limits(high=max(low * 10, 1), low=low)

    async def _collect_raw_stats(self) -> Any:
        records: List[Dict[str, Any]] = []
        if self._local is not None:
            records.append({
                "id": "L-host",
                "type": "local-candidate",
                "candidateType": CANDIDATE_HOST,
                "address": self._local[0],
                "port": self._local[1],
                "protocol": "udp",
                "priority": candidate_priority(HOST_PREFERENCE),
            })
        if self._observed is not None:
            records.append({
                "id": "L-srflx",
                "type": "local-candidate",
                "candidateType": CANDIDATE_SRFLX,
                "address": self._observed[0],
                "port": self._observed[1],
                "protocol": "udp",
                "priority": candidate_priority(SRFLX_PREFERENCE),
            })
            records.append({
                "id": "L-relay",
                "type": "local-candidate",
                "candidateType": CANDIDATE_RELAY,
                "address": self._relay[0],
                "port": self._relay[1],
                "protocol": "udp",
                "priority": candidate_priority(RELAY_UDP_PREFERENCE),
            })
        if self._relay is not None:
            records.append({
                "id": "R-relay",
                "type": "remote-candidate",
                "candidateType": CANDIDATE_RELAY,
                "address": self._relay[0],
                "port": self._relay[1],
                "protocol": "udp",
            })
        if self._observed is not None:
            records.append({
                "id": "CP-relay",
                "type": "candidate-pair",
                "localCandidateId": "L-relay",
                "remoteCandidateId": "R-relay",
                "state": "succeeded",
                "nominated": True,
                "packetsSent": self.datagrams_sent,
                "packetsReceived": self.datagrams_received,
                "bytesSent": self.bytes_sent,
                "bytesReceived": self.bytes_received,
            })
            # the hello exchange itself proves the reflexive address works
            records.append({
                "id": "CP-srflx",
                "type": "candidate-pair",
                "localCandidateId": "L-srflx",
                "remoteCandidateId": "R-relay",
                "state": "succeeded",
                "nominated": False,
            })
            records.append({"id": "T-relay", "type": "transport", "selectedCandidatePairId": "CP-relay"})
        return records
