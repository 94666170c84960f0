"""Services for connecting, measuring, and reporting."""
from .controller import ConnectivityController, ControllerState, PublicResult
from .reflector import UdpReflector
from .results import ResultsAggregator, SessionResults

__all__ = [
    "ConnectivityController",
    "ControllerState",
    "PublicResult",
    "ResultsAggregator",
    "SessionResults",
    "UdpReflector",
]
