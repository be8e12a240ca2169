"""
Implementations Router
FastAPI routes for implementation runs and event streaming
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from implementation.errors import ImplementationError
from schemas.implementation import (
    ImplementationStartRequest,
    RefineRequest,
    CancelRequest,
    ImplementationResponse,
    ImplementationEventListResponse,
)
from services.event_service import subscribe, get_events_since
from services.implementation_service import (
    ImplementationService,
    ImplementationNotFoundError,
    ImplementationConflictError,
    get_implementation_service,
)

router = APIRouter(prefix="/api/implementations", tags=["implementations"])


def _http_error(error: Exception) -> HTTPException:
    """Map service errors to HTTP errors"""
    if isinstance(error, ImplementationNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ImplementationConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, ImplementationError):
        code = status.HTTP_409_CONFLICT if error.code == "INVALID_STATE" else status.HTTP_400_BAD_REQUEST
        return HTTPException(status_code=code, detail={"message": str(error), "code": error.code})
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


# ============================================================================
# Implementation Operations
# ============================================================================

@router.post("", response_model=ImplementationResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_implementation(
    request: ImplementationStartRequest,
    service: ImplementationService = Depends(get_implementation_service),
):
    """
    Start implementing a task

    Planning runs in the background. Without auto_approve the run pauses
    in 'reviewing' until the plan is approved.
    """
    try:
        progress = service.start(request.context, request.options)
    except (ValueError, ImplementationConflictError) as e:
        raise _http_error(e)

    return ImplementationResponse(task_id=request.context.task_id, progress=progress)


@router.get("/{task_id}", response_model=ImplementationResponse)
async def get_implementation(
    task_id: str,
    service: ImplementationService = Depends(get_implementation_service),
):
    """Get the current progress of an implementation"""
    try:
        progress = service.get_progress(task_id)
    except ImplementationNotFoundError as e:
        raise _http_error(e)

    return ImplementationResponse(task_id=task_id, progress=progress)


@router.post("/{task_id}/approve", response_model=ImplementationResponse, status_code=status.HTTP_202_ACCEPTED)
async def approve_implementation(
    task_id: str,
    service: ImplementationService = Depends(get_implementation_service),
):
    """
    Approve the plan under review

    Only works for implementations in 'reviewing' status.
    Execution continues in the background.
    """
    try:
        progress = service.approve(task_id)
    except (ImplementationNotFoundError, ImplementationConflictError) as e:
        raise _http_error(e)

    return ImplementationResponse(task_id=task_id, progress=progress)


@router.post("/{task_id}/refine", response_model=ImplementationResponse)
async def refine_implementation(
    task_id: str,
    request: RefineRequest,
    service: ImplementationService = Depends(get_implementation_service),
):
    """
    Refine the plan under review with free-text feedback

    An unusable refinement keeps the current plan.
    """
    try:
        progress = await service.refine(task_id, request.feedback)
    except (ImplementationNotFoundError, ImplementationConflictError, ImplementationError) as e:
        raise _http_error(e)

    return ImplementationResponse(task_id=task_id, progress=progress)


@router.post("/{task_id}/cancel", response_model=ImplementationResponse)
async def cancel_implementation(
    task_id: str,
    request: Optional[CancelRequest] = None,
    service: ImplementationService = Depends(get_implementation_service),
):
    """
    Cancel an implementation

    A running step loop stops before its next step and rolls back.
    """
    try:
        progress = service.cancel(task_id, request.reason if request else None)
    except ImplementationNotFoundError as e:
        raise _http_error(e)

    return ImplementationResponse(task_id=task_id, progress=progress)


@router.post("/{task_id}/rollback", response_model=ImplementationResponse)
async def rollback_implementation(
    task_id: str,
    service: ImplementationService = Depends(get_implementation_service),
):
    """Roll back the changes of a finished implementation"""
    try:
        progress = await service.rollback(task_id)
    except (ImplementationNotFoundError, ImplementationConflictError, ImplementationError) as e:
        raise _http_error(e)

    return ImplementationResponse(task_id=task_id, progress=progress)


# ============================================================================
# Events
# ============================================================================

@router.get("/{task_id}/events")
async def stream_events(
    task_id: str,
    since_id: Optional[int] = None,
    service: ImplementationService = Depends(get_implementation_service),
):
    """
    SSE stream of progress snapshots and events

    Replays recorded events, then follows the run until it settles.
    """
    try:
        service.get_engine(task_id)
    except ImplementationNotFoundError as e:
        raise _http_error(e)

    return StreamingResponse(
        subscribe(task_id, since_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{task_id}/events/history", response_model=ImplementationEventListResponse)
async def list_events(
    task_id: str,
    since_id: Optional[int] = None,
    limit: int = 100,
    service: ImplementationService = Depends(get_implementation_service),
):
    """Recorded events after since_id, for catching up after a reconnect"""
    try:
        service.get_engine(task_id)
    except ImplementationNotFoundError as e:
        raise _http_error(e)

    events = get_events_since(task_id, since_id, limit)
    return ImplementationEventListResponse(task_id=task_id, events=events, total=len(events))
