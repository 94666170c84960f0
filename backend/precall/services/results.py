"""Session results aggregation.

Collects per-test results and failures for one diagnostic session and
tracks its overall status. Status only moves up the precedence
failed > stopped > success.
"""
import copy
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .. import __version__
from ..utils.payload import random_ascii_string
from ..utils.timestamps import now_ms

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_STOPPED = "stopped"
STATUS_FAILED = "failed"

SESSION_ID_SUFFIX_LENGTH = 20


@dataclass(frozen=True)
class Failure:
    timestamp: float
    reason: str


@dataclass(frozen=True)
class SessionResults:
    """Immutable snapshot of a session."""
    id: str
    version: str
    status: str
    start_timestamp: float
    end_timestamp: float
    failures: Tuple[Failure, ...] = ()
    tests: Mapping[str, Any] = field(default_factory=dict)


def _is_force_stopped(result: Any) -> bool:
    if isinstance(result, Mapping):
        return result.get("force_stopped") is True or result.get("forceStopped") is True
    return getattr(result, "force_stopped", False) is True


class ResultsAggregator:
    """Accumulates the results of one diagnostic session."""

    def __init__(self, start_timestamp: Optional[float] = None):
        self.start_timestamp = start_timestamp if start_timestamp is not None else now_ms()
        self.id = f"{int(self.start_timestamp)}-{random_ascii_string(SESSION_ID_SUFFIX_LENGTH)}"
        self.version = __version__
        self.status: str = STATUS_SUCCESS
        self.failures: List[Failure] = []
        self.tests: Dict[str, Any] = {}

    def set_status_success(self):
        if self.status in (STATUS_STOPPED, STATUS_FAILED):
            return
        self.status = STATUS_SUCCESS

    def set_status_stopped(self):
        if self.status == STATUS_FAILED:
            return
        self.status = STATUS_STOPPED

    def set_status_failed(self):
        self.status = STATUS_FAILED

    def add(self, name: str, result: Any):
        """Store ``result`` under ``name``; a force-stopped result stops the session."""
        self.tests[name] = result
        if _is_force_stopped(result):
            self.set_status_stopped()

    def failure(self, reason: Any):
        text = str(reason)
        logger.debug(f"Session {self.id} failure: {text}")
        self.failures.append(Failure(timestamp=now_ms(), reason=text))

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def get_results(self) -> SessionResults:
        return SessionResults(
            id=self.id,
            version=self.version,
            status=self.status,
            start_timestamp=self.start_timestamp,
            end_timestamp=now_ms(),
            failures=tuple(self.failures),
            tests=MappingProxyType(copy.copy(self.tests)),
        )
