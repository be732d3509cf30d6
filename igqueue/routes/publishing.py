from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from ..errors import AccountNotFound, CredentialError, InvalidPayload, StoreUnavailable
from ..logging_setup import log_event
from ..models import STATUS_PENDING, STATUS_SENT, STATUS_FAILED
from ..schemas import ActionIn, PublishPostIn
from ..security import require_api_key
from ..services.action_queue import ActionOutcome, ActionQueue
from ..services.idempotency import publish_seed

router = APIRouter(tags=["publishing"], dependencies=[Depends(require_api_key)])

def get_action_queue(request: Request) -> ActionQueue:
    return request.app.state.action_queue

def _status_code_for(outcome: ActionOutcome) -> int:
    if outcome.status == STATUS_SENT:
        return 200
    if outcome.status in (STATUS_FAILED, STATUS_PENDING):
        return 202  # recorded, will be retried in the background
    return 502

def _enqueue(queue: ActionQueue, action_type: str, business_account_id: str, payload: dict, seed: str) -> ActionOutcome:
    try:
        return queue.enqueue_and_attempt(action_type, business_account_id, payload, seed)
    except AccountNotFound as e:
        raise HTTPException(status_code=404, detail={"error": e.message, "error_category": "auth_failure"})
    except CredentialError as e:
        raise HTTPException(status_code=401, detail={"error": e.message, "error_category": "auth_failure"})
    except InvalidPayload as e:
        raise HTTPException(status_code=400, detail={"error": str(e), "error_category": "validation"})
    except StoreUnavailable as e:
        log_event("enqueue_store_unavailable", level="error", action_type=action_type, business_account_id=business_account_id, error=str(e))
        raise HTTPException(status_code=503, detail={"error": "Database unavailable"})

@router.post("/publish-post")
def publish_post(body: PublishPostIn, queue: ActionQueue = Depends(get_action_queue)):
    """Two-step Instagram publish (create container, publish it) through the durable queue."""
    media_type = (body.media_type or "IMAGE").upper()
    payload = {
        "image_url": body.image_url,
        "caption": body.caption,
        "media_type": media_type,
        "scheduled_post_id": body.scheduled_post_id,
    }
    outcome = _enqueue(
        queue,
        "publish_post",
        body.business_account_id,
        payload,
        publish_seed(body.scheduled_post_id, body.image_url),
    )

    if outcome.status == STATUS_SENT:
        return {"id": outcome.result_id, "job_id": outcome.id, "status": outcome.status}
    return JSONResponse(status_code=_status_code_for(outcome), content={**outcome.as_dict(), "job_id": outcome.id})

@router.post("/actions")
def enqueue_action(body: ActionIn, queue: ActionQueue = Depends(get_action_queue)):
    outcome = _enqueue(queue, body.action_type, body.business_account_id, body.payload, body.idempotency_seed)
    return JSONResponse(status_code=_status_code_for(outcome), content=outcome.as_dict())
