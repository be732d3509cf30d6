from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Literal

ActionType = Literal["publish_post", "repost_ugc", "reply_comment", "reply_dm", "send_dm"]

class PublishPostIn(BaseModel):
    business_account_id: str
    image_url: str
    caption: str
    media_type: str = "IMAGE"
    scheduled_post_id: str | None = None

class ActionIn(BaseModel):
    action_type: ActionType
    business_account_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_seed: str

class QueuedActionOut(BaseModel):
    id: str
    business_account_id: str
    action_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: str
    retry_count: int
    error: str | None = None
    error_category: str | None = None
    next_retry_at: datetime | None = None
    result_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True

class RetryIn(BaseModel):
    queue_id: str
