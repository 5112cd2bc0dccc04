"""API routes for summary notifications and the listener."""

from uuid import UUID

from fastapi import APIRouter, Query

from ..core.dependencies import OptionalUserIdDep, PipelineDep
from ..models import DeliveryStatus, ItemKind
from ..schemas import (
    DeliveryAttemptResponse,
    ListenerStatusResponse,
    NotificationResponse,
    ParkedMessageResponse,
)
from ..services.notifications import NotificationResult

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("/{kind}/{item_id}/send", response_model=NotificationResponse)
async def send_summary(
    kind: ItemKind,
    item_id: UUID,
    pipeline: PipelineDep,
    user_id: OptionalUserIdDep,
    force: bool = Query(False, description="Send even if a summary was sent recently"),
):
    """
    Send the voting summary for a concluded item.

    Without ``force`` a summary already sent within the dedup window is not
    sent again and the response status is ``duplicate_suppressed``.
    """
    result = await pipeline.notifications.force_send(item_id, kind, force=force, user_id=user_id)
    return _notification_response(result)


@router.post("/{kind}/{item_id}/retry-failed", response_model=NotificationResponse)
async def retry_failed_deliveries(
    kind: ItemKind,
    item_id: UUID,
    pipeline: PipelineDep,
    user_id: OptionalUserIdDep,
    trigger_id: UUID | None = Query(
        None, description="Dispatch to retry; defaults to the latest one with failures"
    ),
):
    """Re-send the summary to recipients whose delivery failed."""
    result = await pipeline.notifications.retry_failed(
        item_id, kind, trigger_id=trigger_id, user_id=user_id
    )
    return _notification_response(result)


@router.get("/{kind}/{item_id}/deliveries", response_model=list[DeliveryAttemptResponse])
async def list_deliveries(
    kind: ItemKind,
    item_id: UUID,
    pipeline: PipelineDep,
    trigger_id: UUID | None = Query(None),
    status: DeliveryStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    """Per-recipient delivery history for an item, newest first."""
    rows = await pipeline.notifications.delivery_history(
        item_id, kind, trigger_id=trigger_id, status=status, limit=limit
    )
    return [DeliveryAttemptResponse.model_validate(row) for row in rows]


def _notification_response(result: NotificationResult) -> NotificationResponse:
    dispatch = result.dispatch
    return NotificationResponse(
        item_id=result.item_id,
        kind=result.kind,
        status=result.status.value,
        trigger_id=result.trigger_id,
        attempted=dispatch.attempted if dispatch else 0,
        succeeded=dispatch.succeeded if dispatch else 0,
        failed=dispatch.failed if dispatch else 0,
        skipped=dispatch.skipped if dispatch else 0,
        error=result.error,
    )


@router.get("/listener", response_model=ListenerStatusResponse)
async def get_listener_status(pipeline: PipelineDep):
    """Connection state, counters and parked messages of the listener."""
    listener_status = pipeline.listener.status()
    return ListenerStatusResponse(
        state=listener_status.state.value,
        topic=listener_status.topic,
        reconnect_attempts=listener_status.reconnect_attempts,
        max_reconnect_attempts=listener_status.max_reconnect_attempts,
        reconnect_delays=listener_status.reconnect_delays,
        processed=listener_status.processed,
        sent=listener_status.sent,
        suppressed=listener_status.suppressed,
        failed=listener_status.failed,
        malformed=listener_status.malformed,
        last_error=listener_status.last_error,
        connected_at=listener_status.connected_at,
        parked=[ParkedMessageResponse.model_validate(p) for p in listener_status.parked],
    )
