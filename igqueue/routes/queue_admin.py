from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..errors import StoreUnavailable
from ..logging_setup import log_event
from ..schemas import QueuedActionOut, RetryIn
from ..security import require_api_key
from ..services.queue_store import ActionQueueStore

router = APIRouter(prefix="/post-queue", tags=["post-queue"], dependencies=[Depends(require_api_key)])

def get_queue_store(request: Request) -> ActionQueueStore:
    return request.app.state.queue_store

def _utcnow():
    return datetime.now(timezone.utc)

@router.get("/status")
def queue_status(store: ActionQueueStore = Depends(get_queue_store)):
    """Counts grouped by action_type::status, for dashboards and health checks."""
    try:
        summary = store.status_summary()
    except StoreUnavailable as e:
        log_event("queue_status_failed", level="error", error=str(e))
        raise HTTPException(status_code=503, detail="Database unavailable")
    return {
        "success": True,
        "summary": summary,
        "total": sum(summary.values()),
        "timestamp": _utcnow().isoformat(),
    }

@router.get("/dlq")
def queue_dlq(
    limit: int = Query(50, ge=1),
    store: ActionQueueStore = Depends(get_queue_store),
):
    """Dead-lettered rows with full context for manual triage."""
    limit = min(limit, 200)
    try:
        rows = store.list_dlq(limit=limit)
    except StoreUnavailable as e:
        log_event("queue_dlq_failed", level="error", error=str(e))
        raise HTTPException(status_code=503, detail="Database unavailable")
    items = [QueuedActionOut.model_validate(r).model_dump(mode="json") for r in rows]
    return {
        "success": True,
        "dlq": items,
        "count": len(items),
        "timestamp": _utcnow().isoformat(),
    }

@router.post("/retry")
def queue_retry(body: RetryIn, store: ActionQueueStore = Depends(get_queue_store)):
    """Give a failed or dead-lettered row a fresh retry budget; the next sweep picks it up."""
    try:
        row = store.requeue(body.queue_id)
    except StoreUnavailable as e:
        log_event("queue_retry_failed", level="error", queue_id=body.queue_id, error=str(e))
        raise HTTPException(status_code=503, detail="Database unavailable")
    if row is None:
        raise HTTPException(
            status_code=404,
            detail="Queue row not found or not in a retryable state (must be dlq or failed)",
        )
    return {
        "success": True,
        "queue_id": row.id,
        "action_type": row.action_type,
        "status": row.status,
        "message": "Row requeued; it will be picked up on the next sweep",
    }
