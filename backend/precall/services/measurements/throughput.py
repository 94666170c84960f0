"""Throughput probe.

Keeps the channel's outbound buffer filled and measures the rate at which
data comes back. The test window starts with the first arriving message; its
length depends on the RTT measured earlier, so that enough round trips fit in
it for a stable reading while keeping the total test time bounded.
A channel that opens but never echoes ends the test after
FIRST_REPLY_TIMEOUT_MS with a zero average.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ...utils.payload import PayloadGenerator, parse_payload
from ...utils.timestamps import now_ms
from .base import MeasurementResult, MeasurementTest, Probe

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1200

DEFAULT_DURATION_MS = 5000
MIN_DURATION_MS = 1000
MAX_DURATION_MS = 10000
RTTS_PER_TEST = 50

# Stop queuing new data after this many bytes
MAX_QUEUED_BYTES = 1000000

# Polling interval when the transport has no low-buffer notification
POLL_INTERVAL_MS = 250

INTERVAL_LENGTH_MS = 100

# Give up when nothing has come back this long after the start
FIRST_REPLY_TIMEOUT_MS = 10000


@dataclass
class ThroughputInterval:
    """Throughput and RTT observed during one interval bucket."""
    start_timestamp: float
    end_timestamp: float
    bytes_received: int
    average: float
    rtt: Optional[float] = None


@dataclass
class ThroughputResult(MeasurementResult):
    bytes_prepared: int = 0
    bytes_received: int = 0
    buffer_empty: int = 1
    intervals: List[ThroughputInterval] = field(default_factory=list)
    average: float = 0.0
    fraction_lost_bytes: Optional[float] = None


def average_throughput(byte_count: float, milliseconds: float) -> float:
    """Average throughput in kbps."""
    if milliseconds == 0:
        return 0
    seconds = milliseconds / 1000.0
    return ((byte_count / seconds) * 8.0) / 1024.0


def window_duration(rtt: Optional[float]) -> float:
    """Test window in ms: 50 RTTs, bounded to [MIN, MAX]; the default without RTT."""
    if rtt is None:
        return DEFAULT_DURATION_MS
    return max(min(RTTS_PER_TEST * rtt, MAX_DURATION_MS), MIN_DURATION_MS)


class ThroughputProbe(Probe):
    """Measures achievable throughput over the channel."""
    name = "throughput"

    def __init__(self, rtt: Optional[float] = None, loss: Optional[float] = None):
        self.result = ThroughputResult()
        self.chunk_size = CHUNK_SIZE
        self.duration = window_duration(rtt)
        self.loss = loss
        self.payloads = PayloadGenerator(self.chunk_size)
        self.buffer_full_threshold = 1000 * self.chunk_size

        self.sent_bytes = 0
        self.received_bytes = 0
        self.second_half_bytes = 0
        self.second_half_start: Optional[float] = None
        self.buffer_empty = 1
        self.use_polling = True

        self.intervals: List[ThroughputInterval] = []
        self.interval_start = 0.0
        self.interval_bytes = 0
        self.last_message: Optional[str] = None
        self.last_received_timestamp: Optional[float] = None

        self._test: Optional[MeasurementTest] = None
        self._stop_timer = None

    def on_start(self, test: MeasurementTest):
        self._test = test
        transport = test.transport

        self.use_polling = not transport.supports_low_buffer_notification
        if not self.use_polling:
            transport.set_low_buffer_threshold(self.buffer_full_threshold / 10)
        logger.debug(
            f"Throughput test: duration={self.duration}ms, "
            f"flow control={'polling' if self.use_polling else 'low-buffer notification'}"
        )
        test.call_later(0, self._fill_buffer)
        test.call_later(FIRST_REPLY_TIMEOUT_MS, self._check_first_reply)

    def on_message(self, message: str):
        self.last_message = message
        self.received_bytes += len(message)

        now = now_ms()
        self.last_received_timestamp = now
        if self._stop_timer is None:
            self.result.start_timestamp = now
            self._stop_timer = self._test.call_later(self.duration, self._test.finish)

        if self.interval_start == 0:
            self.interval_start = now
        self.interval_bytes += len(message)
        if now - self.interval_start >= INTERVAL_LENGTH_MS:
            self._close_interval(now)

        # bytes arriving after the midpoint of the test window
        if now - self.result.start_timestamp > self.duration / 2:
            if self.second_half_start is None:
                self.second_half_start = now
            self.second_half_bytes += len(message)

    def on_error(self, error: Exception):
        self._test.fail(error)

    def _check_first_reply(self):
        if self._stop_timer is None:
            logger.warning(f"Throughput test: no reply within {FIRST_REPLY_TIMEOUT_MS}ms")
            self._test.finish()

    def _close_interval(self, now: float):
        duration = now - self.interval_start
        payload = parse_payload(self.last_message)
        rtt = None
        if payload and isinstance(payload.get("timestamp"), (int, float)):
            rtt = now - payload["timestamp"]

        self.intervals.append(ThroughputInterval(
            start_timestamp=self.interval_start,
            end_timestamp=now,
            bytes_received=self.interval_bytes,
            average=average_throughput(self.interval_bytes, duration),
            rtt=rtt,
        ))
        self.interval_start = now
        self.interval_bytes = 0

    def _on_low_buffer(self):
        if self._test is not None and self._test.is_active:
            self._fill_buffer()

    def _fill_buffer(self):
        transport = self._test.transport
        # the buffer may already be drained when a notification is handled late
        if transport.buffered_amount == 0:
            self.buffer_empty += 1

        while self._test.is_active:
            if self.sent_bytes > MAX_QUEUED_BYTES:
                break
            if transport.buffered_amount > self.buffer_full_threshold:
                if self.use_polling:
                    self._test.call_later(POLL_INTERVAL_MS, self._fill_buffer)
                else:
                    transport.on_low_buffer(self._on_low_buffer)
                return
            message = self.payloads.make(self.sent_bytes)
            self.sent_bytes += len(message)
            self._test.send(message)

    def fill_results(self):
        result = self.result
        if not self.use_polling:
            self._test.transport.on_low_buffer(None)

        result.end_timestamp = self.last_received_timestamp or now_ms()
        result.max_duration = self.duration
        result.buffer_empty = self.buffer_empty
        result.intervals = list(self.intervals)
        result.bytes_prepared = self.sent_bytes
        result.bytes_received = self.received_bytes

        if result.start_timestamp is None:
            result.start_timestamp = result.end_timestamp

        average = 0.0
        if self.second_half_start is not None:
            average = average_throughput(self.second_half_bytes, result.end_timestamp - self.second_half_start)
        # whole window as fallback when the second half saw little or no data
        whole_window = average_throughput(self.received_bytes, result.end_timestamp - result.start_timestamp)
        result.average = max(average, whole_window)
        result.fraction_lost_bytes = self.loss
