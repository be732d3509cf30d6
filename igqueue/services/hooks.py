"""
Post-commit hooks: local side writes that run after an action is stored as sent.

The remote write already happened and cannot be undone, so a hook failure is
logged and ignored. It never reverts the sent status.
"""
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..logging_setup import log_event
from ..models import InstagramMedia, QueuedAction, ScheduledPost, UgcPermission

class PostCommitHook:
    name = "hook"
    action_types: tuple[str, ...] = ()

    def __init__(self, db_factory: Callable[[], Session]):
        self.db_factory = db_factory

    def applies_to(self, action: QueuedAction) -> bool:
        return action.action_type in self.action_types

    def __call__(self, action: QueuedAction, result_id: str) -> None:
        raise NotImplementedError

class ScheduledPostSync(PostCommitHook):
    """Keep scheduled_posts in step with what was actually published."""
    name = "scheduled_post_sync"
    action_types = ("publish_post",)

    def __call__(self, action, result_id):
        scheduled_post_id = (action.payload or {}).get("scheduled_post_id")
        if not scheduled_post_id:
            return
        db = self.db_factory()
        try:
            db.execute(
                update(ScheduledPost)
                .where(ScheduledPost.id == scheduled_post_id)
                .values(status="published", instagram_media_id=result_id, published_at=datetime.now(timezone.utc))
            )
            db.commit()
        finally:
            db.close()

class MediaReadModelUpsert(PostCommitHook):
    """Stub instagram_media row so readers see the post before the next insights sync."""
    name = "instagram_media_upsert"
    action_types = ("publish_post", "repost_ugc")

    def __call__(self, action, result_id):
        payload = action.payload or {}
        db = self.db_factory()
        try:
            media = db.execute(
                select(InstagramMedia).where(InstagramMedia.instagram_media_id == result_id)
            ).scalar_one_or_none()
            if media is None:
                media = InstagramMedia(instagram_media_id=result_id, business_account_id=action.business_account_id)
                db.add(media)
            media.business_account_id = action.business_account_id
            media.media_type = (payload.get("media_type") or "IMAGE").upper()
            media.caption = payload.get("published_caption", payload.get("caption"))
            media.published_at = datetime.now(timezone.utc)
            db.commit()
        finally:
            db.close()

class UgcPermissionReposted(PostCommitHook):
    name = "ugc_permission_reposted"
    action_types = ("repost_ugc",)

    def __call__(self, action, result_id):
        permission_id = (action.payload or {}).get("permission_id")
        if not permission_id:
            return
        db = self.db_factory()
        try:
            db.execute(
                update(UgcPermission)
                .where(UgcPermission.id == permission_id)
                .values(status="reposted", instagram_media_id=result_id, reposted_at=datetime.now(timezone.utc))
            )
            db.commit()
        finally:
            db.close()

def default_hooks(db_factory: Callable[[], Session]) -> list[PostCommitHook]:
    return [ScheduledPostSync(db_factory), MediaReadModelUpsert(db_factory), UgcPermissionReposted(db_factory)]

def run_post_commit_hooks(hooks: list, action: QueuedAction, result_id: str) -> int:
    """Run every applicable hook, isolating failures. Returns how many failed."""
    failures = 0
    for hook in hooks:
        if not hook.applies_to(action):
            continue
        try:
            hook(action, result_id)
        except Exception as e:
            failures += 1
            log_event(
                "post_commit_hook_failed",
                level="warning",
                hook=getattr(hook, "name", type(hook).__name__),
                queue_id=action.id,
                result_id=result_id,
                error=str(e),
            )
    return failures
