"""In-process transport that echoes every payload back."""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from ...utils.candidate import CANDIDATE_HOST, candidate_priority, format_candidate
from .base import NEGOTIATION_CHECKING, NEGOTIATION_CONNECTED, Transport

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESS = "127.0.0.1"


class LoopbackTransport(Transport):
    """Opens on the next loop turn and echoes payloads after ``latency_ms``."""
    name = "loopback"

    def __init__(self, latency_ms: float = 0, **kwargs):
        super().__init__(**kwargs)
        self.latency_ms = latency_ms
        self._pending: Set[asyncio.Handle] = set()
        self._open_handle: Optional[asyncio.Handle] = None

    async def _open(self, servers: List[Dict[str, Any]]) -> None:
        loop = asyncio.get_running_loop()
        self._set_negotiation_state(NEGOTIATION_CHECKING)
        self._on_candidate(format_candidate(
            "1", 1, "udp", candidate_priority(126), LOOPBACK_ADDRESS, 9, CANDIDATE_HOST,
        ))
        self._open_handle = loop.call_soon(self._opened)

    def _opened(self):
        self._open_handle = None
        self._set_negotiation_state(NEGOTIATION_CONNECTED)
        self._channel_opened()

    def _close(self):
        if self._open_handle is not None:
            self._open_handle.cancel()
            self._open_handle = None
        for handle in list(self._pending):
            handle.cancel()
        self._pending.clear()

    def _write(self, payload: str):
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.Handle] = None

        def echo():
            self._pending.discard(handle)
            self._deliver_message(payload)

        if self.latency_ms > 0:
            handle = loop.call_later(self.latency_ms / 1000.0, echo)
        else:
            handle = loop.call_soon(echo)
        self._pending.add(handle)

    async def _collect_raw_stats(self) -> Any:
        return [
            {
                "id": "L1",
                "type": "local-candidate",
                "candidateType": CANDIDATE_HOST,
                "address": LOOPBACK_ADDRESS,
                "port": 9,
                "protocol": "udp",
                "priority": candidate_priority(126),
                "networkType": "loopback",
            },
            {
                "id": "R1",
                "type": "remote-candidate",
                "candidateType": CANDIDATE_HOST,
                "address": LOOPBACK_ADDRESS,
                "port": 9,
                "protocol": "udp",
            },
            {
                "id": "CP1",
                "type": "candidate-pair",
                "localCandidateId": "L1",
                "remoteCandidateId": "R1",
                "state": "succeeded",
                "nominated": True,
            },
            {"id": "T1", "type": "transport", "selectedCandidatePairId": "CP1"},
        ]
