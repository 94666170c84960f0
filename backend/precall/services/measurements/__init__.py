"""Measurement tests run over the relay channel."""
from .base import MeasurementResult, MeasurementState, MeasurementTest, Probe
from .loss import LossProbe, LossResult
from .rtt import RttProbe, RttResult
from .throughput import ThroughputInterval, ThroughputProbe, ThroughputResult

__all__ = [
    "MeasurementResult",
    "MeasurementState",
    "MeasurementTest",
    "Probe",
    "LossProbe",
    "LossResult",
    "RttProbe",
    "RttResult",
    "ThroughputInterval",
    "ThroughputProbe",
    "ThroughputResult",
]
