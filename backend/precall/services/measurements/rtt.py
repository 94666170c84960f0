"""Round-trip time probe.

Sends one timestamped ping at a time and waits for its echo before sending
the next one, for a fixed number of samples.
"""
import logging
import math
from dataclasses import dataclass
from typing import List, Optional

from ...utils.timestamps import now_ms
from .base import MeasurementResult, MeasurementTest, Probe

logger = logging.getLogger(__name__)

# Number of pings per test
RTT_SAMPLES = 10

# Wait for a reply before sending the next ping anyway
PING_TIMEOUT_MS = 100

# Wait for the reply to the last ping; also the pessimistic value without samples
LAST_PING_TIMEOUT_MS = 500


@dataclass
class RttResult(MeasurementResult):
    """RTT test result; ``variance`` holds the standard deviation."""
    sent_messages: int = 0
    un_acked_messages: int = 0
    max_messages: int = RTT_SAMPLES
    median: Optional[float] = None
    average: Optional[float] = None
    variance: Optional[float] = None


def median(samples: List[float]) -> float:
    """Sorted sample at index n // 2 (upper middle for even counts)."""
    if not samples:
        return LAST_PING_TIMEOUT_MS
    ordered = sorted(samples)
    return ordered[len(ordered) // 2]


def average(samples: List[float]) -> float:
    if not samples:
        return LAST_PING_TIMEOUT_MS
    return sum(samples) / len(samples)


def variance(samples: List[float]) -> float:
    """Population variance."""
    if not samples:
        return LAST_PING_TIMEOUT_MS
    mean = average(samples)
    return sum((sample - mean) ** 2 for sample in samples) / len(samples)


def standard_deviation(samples: List[float]) -> float:
    value = variance(samples)
    if value <= 0:
        return 0
    return math.sqrt(value)


class RttProbe(Probe):
    """Measures RTT with sequential pings."""
    name = "rtt"

    def __init__(self):
        self.result = RttResult()
        self.rtts: List[float] = []
        self.count_sent = 0
        self._test: Optional[MeasurementTest] = None
        self._send_timer = None

    def on_start(self, test: MeasurementTest):
        self._test = test
        self.result.start_timestamp = now_ms()
        self._send_ping()

    def on_message(self, message: str):
        try:
            sent_ts = float(message)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring unparsable ping reply: {message[:32]!r}")
            return

        self.rtts.append(now_ms() - sent_ts)
        if self.count_sent < RTT_SAMPLES:
            self._send_ping()
            return

        # enough samples arrived
        self._test.finish()

    def on_error(self, error: Exception):
        self._test.fail(error)

    def _send_ping(self):
        test = self._test
        test.send(repr(now_ms()))
        self.count_sent += 1

        test.cancel_timer(self._send_timer)
        if self.count_sent < RTT_SAMPLES:
            self._send_timer = test.call_later(PING_TIMEOUT_MS, self._send_ping)
        else:
            self._send_timer = test.call_later(LAST_PING_TIMEOUT_MS, test.finish)

    def fill_results(self):
        result = self.result
        result.sent_messages = self.count_sent
        result.un_acked_messages = self.count_sent - len(self.rtts)
        result.max_messages = RTT_SAMPLES
        result.max_duration = RTT_SAMPLES * PING_TIMEOUT_MS + LAST_PING_TIMEOUT_MS
        result.median = median(self.rtts)
        result.average = average(self.rtts)
        result.variance = standard_deviation(self.rtts)
        result.end_timestamp = now_ms()
