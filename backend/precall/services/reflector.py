"""UDP echo relay - the far end of the datagram transport."""
import asyncio
import logging
from typing import Optional, Tuple

from ..config import settings
from .transport.datagram import HELLO

logger = logging.getLogger(__name__)


class _EchoProtocol(asyncio.DatagramProtocol):
    def __init__(self, reflector: "UdpReflector"):
        self.reflector = reflector
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.reflector.datagrams += 1
        if data == HELLO:
            # answer with the source address as seen from here
            reply = HELLO + f" {addr[0]} {addr[1]}".encode("ascii")
            logger.debug(f"Hello from {addr[0]}:{addr[1]}")
            self.transport.sendto(reply, addr)
            return
        self.transport.sendto(data, addr)

    def error_received(self, exc):
        logger.debug(f"Reflector socket error: {exc}")


class UdpReflector:
    """Echoes every datagram back to its sender."""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None):
        self.host = host if host is not None else settings.reflector_host
        self.port = port if port is not None else settings.reflector_port
        self.datagrams = 0
        self._transport: Optional[asyncio.DatagramTransport] = None

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), available once started."""
        if self._transport is None:
            return None
        sockname = self._transport.get_extra_info("sockname")
        return sockname[0], sockname[1]

    async def start(self):
        if self._transport is not None:
            return
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _EchoProtocol(self),
            local_addr=(self.host, self.port),
        )
        host, port = self.address
        logger.info(f"UDP reflector listening on {host}:{port}")

    def stop(self):
        if self._transport is not None:
            self._transport.close()
            self._transport = None
            logger.info(f"UDP reflector stopped after {self.datagrams} datagram(s)")


# Global instance
udp_reflector = UdpReflector()
