from typing import Callable

from sqlalchemy.orm import Session

from ..errors import InvalidPayload, UnknownActionType
from ..logging_setup import log_event
from ..models import QueuedAction, UgcDiscovered, UgcPermission
from .credentials import Credentials
from .graph_client import GraphClient
from .queue_store import ActionQueueStore

class ActionExecutor:
    """Runs the remote call sequence for one action_type and returns the remote result id."""
    action_type: str = ""

    def __init__(self, graph: GraphClient, store: ActionQueueStore):
        self.graph = graph
        self.store = store

    def execute(self, action: QueuedAction, creds: Credentials) -> str:
        raise NotImplementedError

    def _require(self, action: QueuedAction, *keys: str) -> list:
        payload = action.payload or {}
        missing = [k for k in keys if not payload.get(k)]
        if missing:
            raise InvalidPayload(f"{action.action_type} payload missing {', '.join(missing)}")
        return [payload[k] for k in keys]

class TwoStepPublishExecutor(ActionExecutor):
    """
    Create a media container, then publish it.

    The Graph API has no idempotency keys, so re-running step 1 would leave a second
    container behind. creation_id is written to the queue row before step 2 is tried,
    and an attempt that finds it already there goes straight to step 2.
    """

    def container_params(self, action: QueuedAction) -> dict:
        raise NotImplementedError

    def execute(self, action, creds):
        payload = action.payload or {}
        ig_user_id = creds.external_user_id
        creation_id = payload.get("creation_id")

        if creation_id:
            log_event("ig_media_create_skipped", queue_id=action.id, ig_user_id=ig_user_id, creation_id=creation_id)
        else:
            params = self.container_params(action)
            log_event("ig_media_create_start", queue_id=action.id, ig_user_id=ig_user_id)
            creation_id = self.graph.create_media_container(ig_user_id, creds.access_token, **params)
            log_event("ig_media_create_success", queue_id=action.id, ig_user_id=ig_user_id, creation_id=creation_id)

            # Must be durable before step 2; a StoreUnavailable here aborts the attempt.
            action.payload = self.store.merge_payload(
                action.id, {"creation_id": creation_id, "published_caption": params.get("caption")},
            )

        log_event("ig_media_publish_start", queue_id=action.id, ig_user_id=ig_user_id, creation_id=creation_id)
        media_id = self.graph.publish_media_container(ig_user_id, creds.access_token, creation_id=creation_id)
        log_event("ig_media_publish_success", queue_id=action.id, ig_user_id=ig_user_id, creation_id=creation_id, remote_id=media_id)
        return media_id

class PublishPostExecutor(TwoStepPublishExecutor):
    action_type = "publish_post"

    def container_params(self, action):
        (image_url,) = self._require(action, "image_url")
        payload = action.payload
        return {
            "media_url": image_url,
            "caption": payload.get("caption"),
            "media_type": (payload.get("media_type") or "IMAGE").upper(),
        }

class RepostUgcExecutor(TwoStepPublishExecutor):
    """Repost a visitor's post we hold a permission for; media is looked up fresh each attempt."""
    action_type = "repost_ugc"

    def __init__(self, graph, store, db_factory: Callable[[], Session]):
        super().__init__(graph, store)
        self.db_factory = db_factory

    def container_params(self, action):
        (permission_id,) = self._require(action, "permission_id")
        db = self.db_factory()
        try:
            perm = db.get(UgcPermission, permission_id)
            if not perm:
                raise InvalidPayload("Permission record not found for repost_ugc")
            ugc = db.get(UgcDiscovered, perm.ugc_discovered_id)
            if not ugc or not ugc.media_url:
                raise InvalidPayload("UGC media not found for repost_ugc")
            media_url, username, original_caption = ugc.media_url, ugc.username, ugc.caption
        finally:
            db.close()

        if original_caption:
            caption = f"📸 @{username}: {original_caption}\n\n#repost"
        else:
            caption = f"📸 @{username}\n\n#repost"
        return {"media_url": media_url, "caption": caption, "media_type": "IMAGE"}

class ReplyCommentExecutor(ActionExecutor):
    action_type = "reply_comment"

    def execute(self, action, creds):
        comment_id, reply_text = self._require(action, "comment_id", "reply_text")
        return self.graph.reply_to_comment(comment_id, creds.access_token, message=reply_text.strip())

class ReplyDmExecutor(ActionExecutor):
    action_type = "reply_dm"

    def execute(self, action, creds):
        conversation_id, message_text = self._require(action, "conversation_id", "message_text")
        return self.graph.reply_to_conversation(conversation_id, creds.access_token, message=message_text.strip())

class SendDmExecutor(ActionExecutor):
    action_type = "send_dm"

    def execute(self, action, creds):
        recipient_id, message_text = self._require(action, "recipient_id", "message_text")
        return self.graph.send_direct_message(
            creds.external_user_id,
            creds.access_token,
            recipient_id=recipient_id,
            message=message_text.strip(),
        )

def build_executors(graph: GraphClient, store: ActionQueueStore, db_factory: Callable[[], Session]) -> dict[str, ActionExecutor]:
    executors = [
        PublishPostExecutor(graph, store),
        RepostUgcExecutor(graph, store, db_factory),
        ReplyCommentExecutor(graph, store),
        ReplyDmExecutor(graph, store),
        SendDmExecutor(graph, store),
    ]
    return {e.action_type: e for e in executors}

def executor_for(executors: dict[str, ActionExecutor], action_type: str) -> ActionExecutor:
    try:
        return executors[action_type]
    except KeyError:
        raise UnknownActionType(action_type) from None
