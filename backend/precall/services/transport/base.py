"""Message channel shared by the measurement tests.

The base class owns everything that does not depend on how bytes move: the
connection watchdogs, the single-consumer registration, asynchronous send
errors, candidate bookkeeping and path diagnostics assembly. Subclasses
implement the handshake and the I/O through ``_open``, ``_close``, ``_write``
and ``_collect_raw_stats``.
"""
import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ...config import settings
from ...errors import ChannelBusyError, TransportError
from ..diagnostics import GatheredCandidates, PathDiagnostics, build_path_diagnostics

logger = logging.getLogger(__name__)

NEGOTIATION_CHECKING = "checking"
NEGOTIATION_CONNECTED = "connected"
NEGOTIATION_COMPLETED = "completed"
NEGOTIATION_FAILED = "failed"


@dataclass(eq=False)
class ChannelConsumer:
    """Registration handle returned by ``register_consumer``."""
    on_message: Callable[[str], Any]
    on_error: Callable[[Exception], Any]


class Transport(ABC):
    """Abstract bidirectional message channel to a relay."""
    name = "transport"
    supports_low_buffer_notification = False

    def __init__(
        self,
        connection_timeout: Optional[float] = None,
        negotiation_timeout: Optional[float] = None,
    ):
        self.connection_timeout = (
            connection_timeout if connection_timeout is not None else settings.connection_timeout_seconds
        )
        self.negotiation_timeout = (
            negotiation_timeout if negotiation_timeout is not None else settings.negotiation_timeout_seconds
        )
        self.servers: List[Dict[str, Any]] = []
        self.channel_open = False
        self.gathered = GatheredCandidates()

        self._consumer: Optional[ChannelConsumer] = None
        self._handles_open = False
        self._open_future: Optional[asyncio.Future] = None
        self._connection_timer: Optional[asyncio.TimerHandle] = None
        self._negotiation_timer: Optional[asyncio.TimerHandle] = None
        self._low_buffer_threshold = 0
        self._low_buffer_callback: Optional[Callable[[], Any]] = None

    # Subclass hooks

    @abstractmethod
    async def _open(self, servers: List[Dict[str, Any]]) -> None:
        """Start the handshake. Call ``_channel_opened`` once the channel works."""

    @abstractmethod
    def _close(self) -> None:
        """Release sockets and other handles."""

    @abstractmethod
    def _write(self, payload: str) -> None:
        """Queue ``payload`` on the open channel."""

    @abstractmethod
    async def _collect_raw_stats(self) -> Any:
        """Return a raw statistics report in any supported shape."""

    # Connection

    async def connect(self, servers: List[Dict[str, Any]]) -> None:
        """Open the channel; raises TransportError when it cannot be opened."""
        self.disconnect()
        loop = asyncio.get_running_loop()

        self.servers = copy.deepcopy(list(servers))
        self.gathered = GatheredCandidates()
        self._handles_open = True
        self._open_future = loop.create_future()
        opened = self._open_future
        self._connection_timer = loop.call_later(
            self.connection_timeout,
            self._fail_connect,
            TransportError("Connection timeout", continuable=True),
        )

        logger.info(f"{self.name}: connecting ({len(self.servers)} server(s))")
        try:
            await self._open(self.servers)
        except TransportError as e:
            self._fail_connect(e)
        except Exception as e:
            logger.error(f"{self.name}: error starting connection: {e}")
            self._fail_connect(TransportError(f"Error starting connection: {e}"))

        await opened
        logger.info(f"{self.name}: channel open")

    def disconnect(self):
        """Close the channel and release handles. Safe to call at any time."""
        self._cancel_watchdogs()
        self.channel_open = False
        self._low_buffer_callback = None
        if self._handles_open:
            self._handles_open = False
            logger.debug(f"{self.name}: disconnecting")
            self._close()

    def _cancel_watchdogs(self):
        if self._connection_timer is not None:
            self._connection_timer.cancel()
            self._connection_timer = None
        if self._negotiation_timer is not None:
            self._negotiation_timer.cancel()
            self._negotiation_timer = None

    def _channel_opened(self):
        self._cancel_watchdogs()
        self.channel_open = True
        opened = self._open_future
        if opened is not None and not opened.done():
            opened.set_result(None)

    def _fail_connect(self, error: TransportError):
        """Tear the channel down and reject a pending connect with ``error``."""
        logger.warning(f"{self.name}: {error.message} (continuable={error.continuable})")
        self.disconnect()
        opened = self._open_future
        if opened is not None and not opened.done():
            opened.set_exception(error)

    def _set_negotiation_state(self, state: str):
        logger.debug(f"{self.name}: negotiation state {state}")
        if state == NEGOTIATION_FAILED:
            self._fail_connect(TransportError("Negotiation failure", continuable=True))
        elif state == NEGOTIATION_CHECKING:
            if self._negotiation_timer is None and not self.channel_open:
                loop = asyncio.get_running_loop()
                self._negotiation_timer = loop.call_later(
                    self.negotiation_timeout,
                    self._fail_connect,
                    TransportError("Negotiation timeout", continuable=True),
                )
        elif state in (NEGOTIATION_CONNECTED, NEGOTIATION_COMPLETED):
            if self._negotiation_timer is not None:
                self._negotiation_timer.cancel()
                self._negotiation_timer = None

    def _channel_error(self, error: Exception):
        """The channel broke after opening."""
        self._deliver_error(error)
        self._fail_connect(TransportError(str(error), continuable=True))

    def _on_candidate(self, descriptor: str):
        parsed = self.gathered.add(descriptor)
        logger.debug(f"{self.name}: gathered {parsed.candidate_type} candidate {parsed.ip_address}:{parsed.port}")

    # Consumers

    def register_consumer(
        self,
        on_message: Callable[[str], Any],
        on_error: Callable[[Exception], Any],
    ) -> ChannelConsumer:
        if self._consumer is not None:
            raise ChannelBusyError("Channel already has a consumer")
        self._consumer = ChannelConsumer(on_message=on_message, on_error=on_error)
        return self._consumer

    def revoke_consumer(self, registration: Optional[ChannelConsumer]):
        if registration is not None and self._consumer is registration:
            self._consumer = None

    def _deliver_message(self, message: str):
        if self._consumer is not None:
            self._consumer.on_message(message)

    def _deliver_error(self, error: Exception):
        if self._consumer is not None:
            self._consumer.on_error(error)

    # Sending

    def send(self, payload: str):
        """Send ``payload``; failures reach the consumer's error handler later."""
        if not self.channel_open:
            self._raise_send_error(TransportError("No send channel"))
            return
        try:
            self._write(payload)
        except OSError as e:
            self._raise_send_error(TransportError(f"Send failed: {e}"))

    def _raise_send_error(self, error: TransportError):
        asyncio.get_running_loop().call_soon(self._deliver_error, error)

    # Flow control

    @property
    def buffered_amount(self) -> int:
        return 0

    def set_low_buffer_threshold(self, threshold: float):
        self._low_buffer_threshold = int(threshold)

    def on_low_buffer(self, callback: Optional[Callable[[], Any]]):
        """Call ``callback`` once when the buffer drains; None clears it."""
        self._low_buffer_callback = callback

    def _notify_low_buffer(self):
        callback = self._low_buffer_callback
        self._low_buffer_callback = None
        if callback is not None:
            callback()

    # Diagnostics

    async def get_path_diagnostics(self) -> PathDiagnostics:
        if not self._handles_open:
            raise TransportError("Channel not available for stats")
        raw_stats = await self._collect_raw_stats()
        return build_path_diagnostics(self.servers, self.gathered, raw_stats)
