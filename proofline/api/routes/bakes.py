"""
Bake timeline API routes.
"""
import logging
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from typing import List, Optional

from proofline.errors import ErrorCode, ErrorResponse, ProoflineError
from proofline.features import Feature
from proofline.features.service import require_feature
from proofline.models.schemas import (
    ActivateNextCommand, Alarm, BakeAnalytics, BakeCommand, CommandResult,
    ConfirmReadyCommand, MarkDoneCommand, OverlapConflict, PauseBakeCommand,
    RecalibrateCommand, RecalibrationPreview, RecalibrationRequest,
    ResumeBakeCommand, SkipStepCommand, StartBakeRequest, TimelineView,
)
from proofline.services.bake_service import BakeService, get_bake_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bakes", tags=["bakes"])

# HTTP status for each error code of a failed command result
_STATUS_BY_ERROR_CODE = {
    ErrorCode.STEP_INVALID_TRANSITION.value: status.HTTP_409_CONFLICT,
    ErrorCode.BAKE_INVALID_STATE.value: status.HTTP_409_CONFLICT,
    ErrorCode.RECALIBRATION_INVALID.value: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.STEP_NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
    ErrorCode.TIMELINE_NOT_FOUND.value: status.HTTP_404_NOT_FOUND,
}


# Request/Response schemas
class SkipStepRequest(BaseModel):
    """Request to skip a step."""
    pull_forward: bool = Field(
        default=False,
        description="Move later pending steps earlier by the skipped step's unused minutes",
    )


class ActivityResponse(BaseModel):
    """Recorded user interaction."""
    bake_id: str
    last_activity: datetime


def _raise_for_error(error: ErrorResponse) -> None:
    raise HTTPException(
        status_code=_STATUS_BY_ERROR_CODE.get(
            error.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR
        ),
        detail=error.model_dump(),
    )


def _run(service: BakeService, bake_id: str, command: BakeCommand) -> CommandResult:
    """Dispatch a command and turn a failed result into an HTTP error."""
    result = service.dispatch(bake_id, command)
    if not result.ok:
        _raise_for_error(result.error)
    return result


def _raise_http(e: ProoflineError) -> None:
    raise HTTPException(status_code=e.status_code, detail=e.to_response().model_dump())


@router.post("", response_model=CommandResult, status_code=status.HTTP_201_CREATED)
async def start_bake(
    request: StartBakeRequest,
    service: BakeService = Depends(get_bake_service),
):
    """
    Start a new bake.

    Steps are laid out back to back from `start_time` (default now) and the
    first step is activated when the bake starts now.
    """
    result = service.start_bake(request)
    if not result.ok:
        _raise_for_error(result.error)
    return result


@router.get("/{bake_id}", response_model=TimelineView)
async def get_timeline(
    bake_id: str,
    service: BakeService = Depends(get_bake_service),
):
    """Get the current timeline with its drift flag and overlap conflicts."""
    try:
        return service.get_timeline_view(bake_id)
    except ProoflineError as e:
        _raise_http(e)


@router.post("/{bake_id}/steps/{step_id}/done", response_model=CommandResult)
async def mark_step_done(
    bake_id: str,
    step_id: str,
    service: BakeService = Depends(get_bake_service),
):
    """Complete an active step and activate the next one."""
    return _run(service, bake_id, MarkDoneCommand(step_id=step_id))


@router.post("/{bake_id}/steps/{step_id}/skip", response_model=CommandResult)
async def skip_step(
    bake_id: str,
    step_id: str,
    request: Optional[SkipStepRequest] = None,
    service: BakeService = Depends(get_bake_service),
):
    """Skip a pending or active step."""
    pull_forward = request.pull_forward if request else False
    return _run(service, bake_id, SkipStepCommand(step_id=step_id, pull_forward=pull_forward))


@router.post("/{bake_id}/steps/{step_id}/confirm-ready", response_model=CommandResult)
async def confirm_step_ready(
    bake_id: str,
    step_id: str,
    service: BakeService = Depends(get_bake_service),
):
    """Confirm an adaptive step is ready; its readiness checks are cleared."""
    return _run(service, bake_id, ConfirmReadyCommand(step_id=step_id))


@router.post("/{bake_id}/activate-next", response_model=CommandResult)
async def activate_next_step(
    bake_id: str,
    service: BakeService = Depends(get_bake_service),
):
    """Activate the first pending step if no step is active."""
    return _run(service, bake_id, ActivateNextCommand())


@router.post("/{bake_id}/recalibrate", response_model=CommandResult)
async def recalibrate(
    bake_id: str,
    request: RecalibrationRequest,
    service: BakeService = Depends(get_bake_service),
):
    """
    Recompute the remaining schedule.

    Modes:
    - `shift_all`: move every pending and active step by `delta_minutes`
    - `compress_to_finish`: pull pending steps earlier, spread over the pending run
    - `edit_single`: change the duration of `target_step_id` only
    """
    return _run(service, bake_id, RecalibrateCommand(request=request))


@router.post("/{bake_id}/recalibrate/preview", response_model=RecalibrationPreview)
async def preview_recalibration(
    bake_id: str,
    request: RecalibrationRequest,
    service: BakeService = Depends(get_bake_service),
    _: None = Depends(require_feature(Feature.RECALIBRATION_PREVIEW)),
):
    """
    Dry-run a recalibration and return the before and after timelines.

    **Feature flag**: Requires `recalibration_preview` feature to be enabled.
    """
    try:
        return service.preview_recalibration(bake_id, request)
    except ProoflineError as e:
        _raise_http(e)


@router.post("/{bake_id}/pause", response_model=CommandResult)
async def pause_bake(
    bake_id: str,
    service: BakeService = Depends(get_bake_service),
):
    """Pause the bake and cancel all of its alarms."""
    return _run(service, bake_id, PauseBakeCommand())


@router.post("/{bake_id}/resume", response_model=CommandResult)
async def resume_bake(
    bake_id: str,
    service: BakeService = Depends(get_bake_service),
):
    """Resume a paused bake and re-derive its alarms."""
    return _run(service, bake_id, ResumeBakeCommand())


@router.get("/{bake_id}/alarms", response_model=List[Alarm])
async def list_alarms(
    bake_id: str,
    service: BakeService = Depends(get_bake_service),
):
    """List the alarms currently scheduled for the bake."""
    try:
        return service.get_alarms(bake_id)
    except ProoflineError as e:
        _raise_http(e)


@router.post("/{bake_id}/activity", response_model=ActivityResponse)
async def record_activity(
    bake_id: str,
    service: BakeService = Depends(get_bake_service),
):
    """Record a user interaction, resetting the missed-alarm heuristic."""
    try:
        last_activity = service.record_activity(bake_id)
    except ProoflineError as e:
        _raise_http(e)
    return ActivityResponse(bake_id=bake_id, last_activity=last_activity)


@router.get("/{bake_id}/analytics", response_model=BakeAnalytics)
async def get_bake_analytics(
    bake_id: str,
    service: BakeService = Depends(get_bake_service),
    _: None = Depends(require_feature(Feature.BAKE_ANALYTICS)),
):
    """
    Summarize the bake's recorded events.

    **Feature flag**: Requires `bake_analytics` feature to be enabled.
    """
    try:
        return service.get_analytics(bake_id)
    except ProoflineError as e:
        _raise_http(e)


@router.get("/{bake_id}/conflicts", response_model=List[OverlapConflict])
async def list_conflicts(
    bake_id: str,
    service: BakeService = Depends(get_bake_service),
):
    """Report open steps of an overlap group scheduled at the same time."""
    try:
        return service.get_conflicts(bake_id)
    except ProoflineError as e:
        _raise_http(e)


@router.delete("/{bake_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_bake(
    bake_id: str,
    service: BakeService = Depends(get_bake_service),
):
    """Delete a bake and cancel all of its alarms."""
    try:
        deleted = service.delete_bake(bake_id)
    except ProoflineError as e:
        logger.exception(f"Failed to delete bake {bake_id}")
        raise HTTPException(status_code=e.status_code, detail=e.to_response().model_dump())

    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error_code": ErrorCode.TIMELINE_NOT_FOUND.value,
                "message": f"Timeline for bake '{bake_id}' not found",
                "details": {"bake_id": bake_id},
            },
        )
