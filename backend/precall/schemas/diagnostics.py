"""Diagnostic run schemas for API."""
from typing import List, Optional, Union

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class IceServer(BaseModel):
    """Relay server entry as handed to the transport."""
    urls: Union[str, List[str]]
    username: Optional[str] = None
    credential: Optional[str] = None


class RunRequest(BaseModel):
    """Schema for starting a diagnostic run."""
    ice_servers: List[IceServer] = Field(default_factory=list)

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class PublicResultResponse(BaseModel):
    """Summary of a finished diagnostic run."""
    media_connectivity: bool
    throughput: Optional[float] = None
    fractional_loss: Optional[float] = None
    rtt: Optional[float] = None
    jitter: Optional[float] = None
    timestamp: float
    start_timestamp: Optional[float] = None
    end_timestamp: Optional[float] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class CallsResponse(BaseModel):
    calls_in_progress: int

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ControllerStateResponse(BaseModel):
    """Current controller state."""
    state: str  # idle, connecting, testing, finalizing, done
    calls_in_progress: int
    last_status: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
