"""Wall-clock timestamps with millisecond resolution."""
import time


def now_ms() -> float:
    """Current wall-clock time in milliseconds (fractional)."""
    return time.time() * 1000.0
