"""Measurement test state machine.

A MeasurementTest owns the lifecycle of one probe run over the shared
channel: it registers itself as the channel's only consumer, schedules the
probe's timers, and settles exactly once. The probe variants (RTT, loss,
throughput) only implement the measurement itself.

States and transitions:

    IDLE -> ACTIVE -> STOPPED -> FINISHED | FAILED

finish() and fail() on an ACTIVE test stop it first.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from ...errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class MeasurementState(str, Enum):
    """Lifecycle states of a measurement test."""
    IDLE = "idle"
    ACTIVE = "active"
    STOPPED = "stopped"
    FINISHED = "finished"
    FAILED = "failed"


_TRANSITIONS: Dict[MeasurementState, Set[MeasurementState]] = {
    MeasurementState.IDLE: {MeasurementState.ACTIVE},
    MeasurementState.ACTIVE: {MeasurementState.STOPPED},
    MeasurementState.STOPPED: {MeasurementState.FINISHED, MeasurementState.FAILED},
    MeasurementState.FINISHED: set(),
    MeasurementState.FAILED: set(),
}


@dataclass
class MeasurementResult:
    """Fields common to every measurement result."""
    start_timestamp: Optional[float] = None
    end_timestamp: Optional[float] = None
    max_duration: Optional[float] = None
    force_stopped: bool = False


class Probe:
    """Interface implemented by the measurement variants.

    ``on_start`` receives the owning test, which gives access to ``send``,
    ``call_later``, ``finish`` and ``fail``. ``fill_results`` is called once
    when the test stops and must leave ``result`` complete.
    """
    name = "probe"
    result: MeasurementResult

    def on_start(self, test: "MeasurementTest") -> None:
        raise NotImplementedError

    def on_message(self, message: str) -> None:
        raise NotImplementedError

    def on_error(self, error: Exception) -> None:
        raise NotImplementedError

    def fill_results(self) -> None:
        raise NotImplementedError


class MeasurementTest:
    """Runs one probe over the transport and settles exactly once."""

    def __init__(
        self,
        probe: Probe,
        transport,
        on_complete: Optional[Callable[["MeasurementTest"], Any]] = None,
    ):
        self.probe = probe
        self.transport = transport
        self.state = MeasurementState.IDLE
        self.forced = False
        self.error: Optional[Exception] = None
        self._on_complete = on_complete
        self._completion: Optional[asyncio.Future] = None
        self._registration = None
        self._timers: Set[asyncio.TimerHandle] = set()

    @property
    def name(self) -> str:
        return self.probe.name

    @property
    def is_active(self) -> bool:
        return self.state == MeasurementState.ACTIVE

    @property
    def result(self) -> MeasurementResult:
        return self.probe.result

    def _transition(self, new_state: MeasurementState):
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, new_state)
        logger.debug(f"{self.name} test: {self.state.value} -> {new_state.value}")
        self.state = new_state

    # Public lifecycle

    def start(self) -> asyncio.Future:
        """Take ownership of the channel and start the probe.

        Returns a future that resolves when the test finishes and raises the
        probe's error when it fails.
        """
        loop = asyncio.get_running_loop()
        self._transition(MeasurementState.ACTIVE)
        self._completion = loop.create_future()
        completion = self._completion
        self._registration = self.transport.register_consumer(self._handle_message, self._handle_error)

        try:
            self.probe.on_start(self)
        except Exception as e:
            logger.error(f"{self.name} test failed to start: {e}")
            self.fail(e)
        return completion

    def stop(self):
        """Stop measuring and finalize the probe's metrics."""
        if not self.is_active:
            return
        self._transition(MeasurementState.STOPPED)
        self._cancel_timers()
        self.probe.result.force_stopped = self.forced
        self.probe.fill_results()

    def finish(self):
        """Complete the test successfully. Only the first call has an effect."""
        if self.state in (MeasurementState.IDLE, MeasurementState.FINISHED, MeasurementState.FAILED):
            return
        self.stop()
        self._transition(MeasurementState.FINISHED)
        self._settle()

    def fail(self, error: Exception):
        """Complete the test with ``error``. Only the first call has an effect."""
        if self.state in (MeasurementState.IDLE, MeasurementState.FINISHED, MeasurementState.FAILED):
            return
        self.stop()
        self._transition(MeasurementState.FAILED)
        self.error = error
        self._settle(error)

    def force_stop(self):
        """Stop an active test from outside, keeping its partial counters."""
        if not self.is_active:
            return
        logger.info(f"{self.name} test force-stopped")
        self.forced = True
        self.stop()
        self.finish()

    def release(self):
        """Give the channel back so the next test can register."""
        if self._registration is not None:
            self.transport.revoke_consumer(self._registration)
            self._registration = None

    # Helpers for probes

    def send(self, payload: str):
        self.transport.send(payload)

    def call_later(self, delay_ms: float, callback: Callable, *args) -> asyncio.TimerHandle:
        """Schedule ``callback`` after ``delay_ms``; it only runs while active."""
        loop = asyncio.get_running_loop()
        handle: Optional[asyncio.TimerHandle] = None

        def fire():
            self._timers.discard(handle)
            if self.is_active:
                callback(*args)

        handle = loop.call_later(max(delay_ms, 0) / 1000.0, fire)
        self._timers.add(handle)
        return handle

    def cancel_timer(self, handle: Optional[asyncio.TimerHandle]):
        if handle is not None:
            handle.cancel()
            self._timers.discard(handle)

    # Internals

    def _cancel_timers(self):
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()

    def _settle(self, error: Optional[Exception] = None):
        completion = self._completion
        if completion is None:
            return
        self._completion = None

        if not completion.done():
            if error is None:
                completion.set_result(self.probe.result)
            else:
                completion.set_exception(error)
        if self._on_complete is not None:
            self._on_complete(self)

    def _handle_message(self, message: str):
        if not self.is_active:
            return
        try:
            self.probe.on_message(message)
        except Exception as e:
            logger.error(f"{self.name} test message handling failed: {e}")
            self.fail(e)

    def _handle_error(self, error: Exception):
        if not self.is_active:
            return
        logger.warning(f"{self.name} test channel error: {error}")
        self.probe.on_error(error)
