"""Connectivity controller - runs one diagnostic session at a time.

A session connects the transport (retrying timeout-class failures), runs the
RTT, loss and throughput tests one after another over the shared channel,
collects the path diagnostics and reduces everything to a PublicResult.

States:

    IDLE -> CONNECTING -> TESTING -> FINALIZING -> DONE

A call starting on this host preempts the session: the active test is
force-stopped (or the pending connect attempt cancelled) and the session
moves straight to FINALIZING.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..config import Settings, settings
from ..errors import PreconditionError, TransportError
from ..utils.timestamps import now_ms
from .measurements import LossProbe, MeasurementTest, Probe, RttProbe, ThroughputProbe
from .measurements.loss import UNKNOWN
from .results import ResultsAggregator, SessionResults
from .transport import Transport, create_transport

logger = logging.getLogger(__name__)


class ControllerState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    TESTING = "testing"
    FINALIZING = "finalizing"
    DONE = "done"


_BUSY_STATES = (ControllerState.CONNECTING, ControllerState.TESTING, ControllerState.FINALIZING)


@dataclass
class PublicResult:
    """Summary handed to callers once a session ends."""
    media_connectivity: bool = False
    throughput: Optional[float] = None
    fractional_loss: Optional[float] = None
    rtt: Optional[float] = None
    jitter: Optional[float] = None
    timestamp: float = field(default_factory=now_ms)
    start_timestamp: Optional[float] = None
    end_timestamp: Optional[float] = None


def build_public_result(snapshot: Optional[SessionResults]) -> PublicResult:
    """Reduce a session snapshot to the public summary (defaults without one)."""
    result = PublicResult()
    if snapshot is None:
        return result

    rtt = snapshot.tests.get("rtt")
    throughput = snapshot.tests.get("throughput")
    ice = snapshot.tests.get("ice")

    relay_success = ice is not None and (
        ice.relay_tcp_success or ice.relay_tls_success or ice.relay_udp_success
    )
    result.media_connectivity = bool(rtt is not None or throughput is not None or relay_success)

    if rtt is not None:
        result.rtt = rtt.median
        result.jitter = rtt.variance
    if throughput is not None:
        result.throughput = throughput.average
        if throughput.fraction_lost_bytes is not None:
            result.fractional_loss = max(throughput.fraction_lost_bytes, 0)

    result.start_timestamp = snapshot.start_timestamp
    result.end_timestamp = snapshot.end_timestamp
    return result


class ConnectivityController:
    """Orchestrates the pre-call diagnostic session."""

    def __init__(self, transport: Transport, config: Settings = settings):
        self.transport = transport
        self.settings = config
        self.state = ControllerState.IDLE
        self.calls_in_progress = 0
        self.last_report: Optional[SessionResults] = None

        self._active = False
        self._session: Optional[ResultsAggregator] = None
        self._active_test: Optional[MeasurementTest] = None
        self._connect_task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self._active

    def _check_preconditions(self, servers: Optional[List[Dict[str, Any]]]):
        if self.settings.platform_disabled:
            raise PreconditionError("Not started: disabled platform")
        if self._active or self.state in _BUSY_STATES:
            raise PreconditionError("Not started: already in progress")
        if self.calls_in_progress > 0:
            raise PreconditionError("Not started: call in progress")
        if not servers:
            raise PreconditionError("Not started: no servers given")

    async def start(self, servers: List[Dict[str, Any]]) -> PublicResult:
        """Run a full diagnostic session against ``servers``.

        Raises PreconditionError when a session cannot be started and
        TransportError when the channel could not be opened.
        """
        self._check_preconditions(servers)

        self._session = ResultsAggregator()
        self._active = True
        self.state = ControllerState.CONNECTING
        logger.info(f"Diagnostic session {self._session.id} started")

        try:
            if await self._connect(servers):
                await self._run_tests()
            return await self._finalize()
        finally:
            if self.state in _BUSY_STATES:
                # cancelled from outside
                self.transport.disconnect()
                self.state = ControllerState.DONE
            self._active = False
            self._active_test = None
            self._connect_task = None

    async def _connect(self, servers: List[Dict[str, Any]]) -> bool:
        """Open the channel. Returns False when a call preempted the attempt."""
        session = self._session

        while True:
            if not self._active:
                return False

            attempt = session.failure_count + 1
            logger.info(f"Connecting via {self.transport.name} (attempt {attempt})")
            task = asyncio.ensure_future(self.transport.connect(servers))
            self._connect_task = task
            try:
                await asyncio.wait({task})
            except asyncio.CancelledError:
                task.cancel()
                raise
            finally:
                self._connect_task = None

            if task.cancelled():
                logger.info("Connect attempt cancelled")
                return False
            error = task.exception()
            if error is None:
                return True
            if not isinstance(error, TransportError):
                logger.error(f"Connection setup raised: {error!r}")
                session.failure(error)
                session.set_status_failed()
                self._abort()
                raise error

            session.failure(error)
            session.set_status_failed()
            if not error.continuable:
                logger.error(f"Connection failed: {error.message}")
                self._abort()
                raise error
            if session.failure_count >= self.settings.max_connection_failures:
                logger.error(f"Giving up after {session.failure_count} connection failures: {error.message}")
                self._abort()
                raise error
            if not self._active:
                return False

            logger.warning(f"Connection attempt {attempt} failed: {error.message}; retrying")
            self.transport.disconnect()
            await asyncio.sleep(0)

    def _abort(self):
        self.transport.disconnect()
        self.last_report = self._session.get_results()
        self.state = ControllerState.DONE

    async def _run_tests(self):
        self.state = ControllerState.TESTING
        self._session.set_status_success()

        rtt_estimate = None
        loss = UNKNOWN

        rtt_probe = RttProbe()
        if await self._run_test(rtt_probe):
            rtt_estimate = rtt_probe.result.median

        loss_probe = LossProbe()
        if await self._run_test(loss_probe):
            loss = loss_probe.result.fraction_lost_bytes

        await self._run_test(ThroughputProbe(rtt=rtt_estimate, loss=loss))

    async def _run_test(self, probe: Probe) -> bool:
        """Run one probe to completion; a failure is recorded, never raised."""
        if not self._active:
            return False

        test = MeasurementTest(probe, self.transport)
        self._active_test = test
        succeeded = False
        try:
            await test.start()
            succeeded = True
            logger.info(f"{test.name} test finished")
        except asyncio.CancelledError:
            test.force_stop()
            raise
        except Exception as e:
            logger.warning(f"{test.name} test failed: {e}")
            self._session.failure(f"{test.name}: {e}")
        finally:
            test.release()
            self._active_test = None

        self._session.add(test.name, test.result)
        return succeeded

    async def _finalize(self) -> PublicResult:
        self.state = ControllerState.FINALIZING
        session = self._session

        try:
            diagnostics = await self.transport.get_path_diagnostics()
        except TransportError as e:
            logger.warning(f"Path diagnostics unavailable: {e}")
            session.failure(e)
        else:
            session.add("ice", diagnostics)

        self.transport.disconnect()
        snapshot = session.get_results()
        self.last_report = snapshot
        self.state = ControllerState.DONE
        logger.info(
            f"Diagnostic session {snapshot.id} ended with status {snapshot.status} "
            f"({len(snapshot.failures)} failure(s))"
        )
        return build_public_result(snapshot)

    def call_starts(self):
        """A call started on this host; preempt any running session."""
        self.calls_in_progress += 1
        if not self._active:
            return

        logger.info("Call started, stopping the diagnostic session")
        self._session.set_status_stopped()
        self._active = False
        self.state = ControllerState.FINALIZING

        if self._active_test is not None:
            self._active_test.force_stop()
        elif self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()

    def call_finished(self):
        """A call ended. Never restarts a session."""
        if self.calls_in_progress > 0:
            self.calls_in_progress -= 1


# Global instance
connectivity_controller = ConnectivityController(create_transport(settings.transport))
