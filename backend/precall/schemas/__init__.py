"""Pydantic schemas for API request/response models."""
from .diagnostics import (
    CallsResponse,
    ControllerStateResponse,
    IceServer,
    PublicResultResponse,
    RunRequest,
)

__all__ = [
    "CallsResponse",
    "ControllerStateResponse",
    "IceServer",
    "PublicResultResponse",
    "RunRequest",
]
