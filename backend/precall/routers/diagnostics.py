"""Diagnostics API - run sessions and report call lifecycle."""
import logging

from fastapi import APIRouter, Depends, HTTPException

from ..errors import PreconditionError, TransportError
from ..schemas.diagnostics import (
    CallsResponse,
    ControllerStateResponse,
    PublicResultResponse,
    RunRequest,
)
from ..services.controller import ConnectivityController, connectivity_controller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/diagnostics", tags=["diagnostics"])


def get_controller() -> ConnectivityController:
    """Controller used by the endpoints; overridden in tests."""
    return connectivity_controller


@router.post("/run", response_model=PublicResultResponse)
async def run_diagnostics(
    request: RunRequest,
    controller: ConnectivityController = Depends(get_controller),
):
    """Run a full diagnostic session and return its summary."""
    servers = [server.model_dump(exclude_none=True) for server in request.ice_servers]
    try:
        result = await controller.start(servers)
    except PreconditionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransportError as e:
        logger.error(f"Diagnostic run failed: {e.message}")
        raise HTTPException(status_code=502, detail=e.message)
    return PublicResultResponse.model_validate(result)


@router.post("/calls/start", response_model=CallsResponse)
async def call_started(controller: ConnectivityController = Depends(get_controller)):
    """A call started; preempts a running session."""
    controller.call_starts()
    return CallsResponse(calls_in_progress=controller.calls_in_progress)


@router.post("/calls/finish", response_model=CallsResponse)
async def call_finished(controller: ConnectivityController = Depends(get_controller)):
    controller.call_finished()
    return CallsResponse(calls_in_progress=controller.calls_in_progress)


@router.get("/state", response_model=ControllerStateResponse)
async def get_state(controller: ConnectivityController = Depends(get_controller)):
    """Current controller state and the status of the last session."""
    last = controller.last_report
    return ControllerStateResponse(
        state=controller.state.value,
        calls_in_progress=controller.calls_in_progress,
        last_status=last.status if last else None,
    )
