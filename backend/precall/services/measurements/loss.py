"""Packet loss probe.

Sends paced fixed-size chunks in a limited number of bursts. Every chunk
embeds the sender's running byte count, so the last chunk that arrives tells
how many bytes the sender claims to have sent up to that point.
When nothing at all comes back the test ends after FIRST_REPLY_TIMEOUT_MS
with the byte counts left unknown.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from ...utils.payload import PayloadGenerator, parse_payload
from ...utils.timestamps import now_ms
from .base import MeasurementResult, MeasurementTest, Probe

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024

# Stop this long after the first reply arrived
TEST_DURATION_MS = 3000

# Pause before each burst and spacing between chunks (8 ms per KiB ~ 1 Mbps)
BURST_DELAY_MS = 250
CHUNK_INTERVAL_MS = 8

MAX_BUFFER_FILLS = 2

# Give up when nothing has come back this long after the start
FIRST_REPLY_TIMEOUT_MS = 10000

# Sentinel for values that could not be determined
UNKNOWN = -1


@dataclass
class LossResult(MeasurementResult):
    sent_bytes: int = 0
    bytes_received: int = 0
    bytes_sent: int = UNKNOWN
    fraction_lost_bytes: float = UNKNOWN


def fraction_lost(received_bytes: int, claimed_bytes: int) -> float:
    """Share of the claimed bytes that never arrived."""
    if claimed_bytes <= 0:
        return UNKNOWN
    return (claimed_bytes - received_bytes) / claimed_bytes


class LossProbe(Probe):
    """Measures the fraction of bytes lost on the channel."""
    name = "loss"

    def __init__(self):
        self.result = LossResult()
        self.chunk_size = CHUNK_SIZE
        self.duration = TEST_DURATION_MS
        self.payloads = PayloadGenerator(self.chunk_size)
        # bytes queued per burst, 1 Mbps worth of chunks
        self.burst_threshold = (1000 * self.chunk_size) / 8

        self.sent_bytes = 0
        self.received_bytes = 0
        self.buffer_fills = 0
        self.last_message: Optional[str] = None
        self._test: Optional[MeasurementTest] = None
        self._stop_timer = None
        self._burst_bytes = 0

    def on_start(self, test: MeasurementTest):
        self._test = test
        self.result.start_timestamp = now_ms()
        self._schedule_burst()
        test.call_later(FIRST_REPLY_TIMEOUT_MS, self._check_first_reply)

    def on_message(self, message: str):
        self.last_message = message
        self.received_bytes += len(message)

        if self._stop_timer is None:
            self._stop_timer = self._test.call_later(self.duration, self._test.finish)

    def on_error(self, error: Exception):
        self._test.fail(error)

    def _check_first_reply(self):
        if self._stop_timer is None:
            logger.warning(f"Loss test: no reply within {FIRST_REPLY_TIMEOUT_MS}ms")
            self._test.finish()

    def _schedule_burst(self):
        self._burst_bytes = 0
        self._test.call_later(BURST_DELAY_MS, self._send_chunk)

    def _send_chunk(self):
        if self._burst_bytes > self.burst_threshold:
            self.buffer_fills += 1
            if self.buffer_fills < MAX_BUFFER_FILLS:
                self._schedule_burst()
            return

        message = self.payloads.make(self.sent_bytes)
        self.sent_bytes += len(message)
        self._burst_bytes += len(message)
        self._test.send(message)
        self._test.call_later(CHUNK_INTERVAL_MS, self._send_chunk)

    def fill_results(self):
        result = self.result
        result.end_timestamp = now_ms()
        result.max_duration = self.duration
        result.sent_bytes = self.sent_bytes
        result.bytes_received = self.received_bytes

        payload = parse_payload(self.last_message) if self.last_message is not None else None
        embedded = payload.get("sentBytes") if payload else None
        if not isinstance(embedded, (int, float)):
            result.bytes_sent = UNKNOWN
            result.fraction_lost_bytes = UNKNOWN
            return

        claimed = int(embedded) + len(self.last_message)
        result.bytes_sent = claimed
        result.fraction_lost_bytes = fraction_lost(self.received_bytes, claimed)
