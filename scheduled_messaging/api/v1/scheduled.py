"""
API endpoints for scheduled message operations.
"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request
from typing import Optional
from uuid import UUID

from scheduled_messaging.api.v1.models import (
    ScheduleMessageRequest, ScheduledMessageResponse, ScheduledMessageListResponse,
    MessageUpdatesRequest, MessageUpdate, MessageUpdatesResponse, CostEstimateRequest,
    CostEstimateResponse, DeliveryStatusResponse, ProcessingSummaryResponse,
    DiagnosticsResponse
)
from scheduled_messaging.core.exceptions import (
    SchedulingError, ValidationError, NotFoundError, InvalidStateError, PersistenceError
)
from scheduled_messaging.core.observability import get_logger
from scheduled_messaging.models.database import MessageKind
from scheduled_messaging.services.scheduling_service import SchedulingService


logger = get_logger(__name__)
router = APIRouter()


def get_scheduling_service(request: Request) -> SchedulingService:
    """Scheduling service wired up during application startup."""
    service = getattr(request.app.state, "scheduling_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Scheduling service not initialized")
    return service


def _http_error(exc: SchedulingError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail={"message": str(exc), "errors": exc.errors})
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidStateError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=503, detail="Store temporarily unavailable")
    logger.error(f"Unmapped scheduling error: {exc}")
    return HTTPException(status_code=500, detail="Scheduling operation failed")


@router.post("", response_model=ScheduledMessageResponse, status_code=201)
async def schedule_message(
    request: ScheduleMessageRequest,
    service: SchedulingService = Depends(get_scheduling_service)
):
    """
    Schedule a message for delivery.

    The cost is estimated from the content encoding and recipient destinations.
    Messages whose time has already come are processed on the next wake-up.
    """
    try:
        message = await service.schedule(
            owner_ref=request.owner_ref,
            kind=request.kind,
            content=request.content,
            sender_id=request.sender_id,
            recipients=request.recipients,
            scheduled_at=request.scheduled_at,
            max_retries=request.max_retries,
        )
        return ScheduledMessageResponse.model_validate(message)
    except SchedulingError as e:
        raise _http_error(e)


@router.get("", response_model=ScheduledMessageListResponse)
async def list_scheduled_messages(
    owner_ref: str = Query(..., min_length=1, description="Account whose messages to list"),
    kind: Optional[MessageKind] = Query(None, description="Only this message kind"),
    search: Optional[str] = Query(None, description="Match content, sender or recipient"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: SchedulingService = Depends(get_scheduling_service)
):
    """List an account's scheduled messages, latest due time first."""
    try:
        result = await service.list_messages(owner_ref, kind=kind, search=search, page=page, limit=limit)
        return ScheduledMessageListResponse(
            items=[ScheduledMessageResponse.model_validate(m) for m in result["items"]],
            total=result["total"],
            page=result["page"],
            limit=result["limit"],
            pages=result["pages"],
        )
    except SchedulingError as e:
        raise _http_error(e)


@router.post("/updates", response_model=MessageUpdatesResponse)
async def get_message_updates(
    request: MessageUpdatesRequest,
    service: SchedulingService = Depends(get_scheduling_service)
):
    """Current state of several messages in one call."""
    try:
        messages = await service.get_updates(request.ids, owner_ref=request.owner_ref)
    except SchedulingError as e:
        raise _http_error(e)

    found = {str(m.id) for m in messages}
    return MessageUpdatesResponse(
        updates=[MessageUpdate.model_validate(m) for m in messages],
        missing=[str(i) for i in request.ids if str(i) not in found],
    )


@router.post("/estimate", response_model=CostEstimateResponse)
async def estimate_cost(
    request: CostEstimateRequest,
    service: SchedulingService = Depends(get_scheduling_service)
):
    """Estimate cost without scheduling anything."""
    try:
        estimate = service.estimate_cost(request.kind, request.content, request.recipients)
        return CostEstimateResponse(**estimate.to_dict())
    except SchedulingError as e:
        raise _http_error(e)


@router.post("/process", response_model=ProcessingSummaryResponse)
async def force_process(service: SchedulingService = Depends(get_scheduling_service)):
    """Run one processing pass now, for operational use."""
    try:
        return ProcessingSummaryResponse(**await service.force_process_now())
    except SchedulingError as e:
        raise _http_error(e)
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/diagnostics", response_model=DiagnosticsResponse)
async def diagnostics(service: SchedulingService = Depends(get_scheduling_service)):
    """Worker and queue counters."""
    try:
        return DiagnosticsResponse(**await service.health())
    except SchedulingError as e:
        raise _http_error(e)


@router.get("/{message_id}", response_model=ScheduledMessageResponse)
async def get_scheduled_message(
    message_id: UUID = Path(..., description="Scheduled message ID"),
    service: SchedulingService = Depends(get_scheduling_service)
):
    try:
        message = await service.get_status(message_id)
        return ScheduledMessageResponse.model_validate(message)
    except SchedulingError as e:
        raise _http_error(e)


@router.post("/{message_id}/cancel", response_model=ScheduledMessageResponse)
async def cancel_scheduled_message(
    message_id: UUID = Path(..., description="Scheduled message ID"),
    owner_ref: Optional[str] = Query(None, description="Only cancel if owned by this account"),
    service: SchedulingService = Depends(get_scheduling_service)
):
    """Cancel a message that has not been picked up yet."""
    try:
        message = await service.cancel(message_id, owner_ref=owner_ref)
        return ScheduledMessageResponse.model_validate(message)
    except SchedulingError as e:
        raise _http_error(e)


@router.get("/{message_id}/delivery", response_model=DeliveryStatusResponse)
async def get_delivery_status(
    message_id: UUID = Path(..., description="Scheduled message ID"),
    service: SchedulingService = Depends(get_scheduling_service)
):
    """Delivery status as reported by the provider that accepted the message."""
    try:
        status = await service.get_delivery_status(message_id)
        return DeliveryStatusResponse(**status.to_dict())
    except SchedulingError as e:
        raise _http_error(e)
