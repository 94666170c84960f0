"""Payload generator for fixed-size test messages.

Each message is a JSON object carrying the send timestamp and the sender's
running byte counter, padded with random visible ASCII so that compression
on the path cannot skew the measurements. Because the timestamp is rendered
as a float, the size can drift by a few bytes from the requested size.
"""
import json
import random

from .timestamps import now_ms

# Visible ASCII characters used for padding and session ids
_PADDING_FIRST_CHAR = 35
_PADDING_LAST_CHAR = 93


def random_ascii_string(length: int) -> str:
    """Return a random string of visible ASCII characters."""
    return "".join(
        chr(random.randint(_PADDING_FIRST_CHAR, _PADDING_LAST_CHAR - 1))
        for _ in range(max(length, 0))
    )


class PayloadGenerator:
    """Produces test messages of roughly ``size`` bytes."""
    
    def __init__(self, size: int = 1200):
        self.size = size
        self._message = {"timestamp": "", "sentBytes": 10000, "padding": ""}
        
        timestamp_bytes = len(str(now_ms()))
        message_bytes = len(json.dumps(self._message, separators=(",", ":")))
        self._message["padding"] = random_ascii_string(size - timestamp_bytes - message_bytes)
    
    def make(self, sent_bytes: int) -> str:
        """Build a message stamped with the current time and ``sent_bytes``."""
        self._message["timestamp"] = now_ms()
        self._message["sentBytes"] = sent_bytes
        return json.dumps(self._message, separators=(",", ":"))


def parse_payload(message: str) -> dict | None:
    """Decode a test message, returning None if it is not a payload."""
    try:
        decoded = json.loads(message)
    except (TypeError, ValueError):
        return None
    if not isinstance(decoded, dict):
        return None
    return decoded
