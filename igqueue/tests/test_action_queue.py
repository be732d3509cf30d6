from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, update

from igqueue.errors import AccountNotFound, CredentialExpired, StoreUnavailable, UnknownActionType
from igqueue.models import AuditLog, InstagramCredential, InstagramMedia, QueuedAction, ScheduledPost, UgcDiscovered, UgcPermission
from igqueue.tests.helpers import ACCOUNT_ID, IG_USER_ID, PAGE_TOKEN, as_utc, graph_error

IMAGE_URL = "https://cdn.example.com/p/1.jpg"

def _publish(queue, seed="publish_post:sp-1", **payload):
    payload = {"image_url": IMAGE_URL, "caption": "Hello", **payload}
    return queue.enqueue_and_attempt("publish_post", ACCOUNT_ID, payload, seed)

def _rows(session_factory):
    db = session_factory()
    try:
        return list(db.execute(select(QueuedAction)).scalars().all())
    finally:
        db.close()

def _retry(queue, store, action_id):
    assert store.claim(action_id) is True
    return queue.attempt(store.get(action_id))

def test_publish_happy_path(queue, store, graph, account):
    outcome = _publish(queue)

    assert outcome.status == "sent"
    assert outcome.result_id == "M"
    graph.create_media_container.assert_called_once_with(
        IG_USER_ID, PAGE_TOKEN, media_url=IMAGE_URL, caption="Hello", media_type="IMAGE",
    )
    graph.publish_media_container.assert_called_once_with(IG_USER_ID, PAGE_TOKEN, creation_id="X")

    row = store.get(outcome.id)
    assert row.status == "sent"
    assert row.result_id == "M"
    assert row.retry_count == 0
    assert row.payload["creation_id"] == "X"

def test_step_two_transient_failure_reuses_container(queue, store, graph, clock, account):
    graph.publish_media_container.side_effect = [graph_error(code=2, http_status=500), "M"]

    first = _publish(queue)
    assert first.status == "failed"
    assert first.retryable is True
    assert first.category == "transient"
    assert first.retry_count == 1
    assert first.next_retry_at == clock() + timedelta(seconds=120)

    row = store.get(first.id)
    assert row.status == "failed"
    assert row.payload["creation_id"] == "X"
    assert as_utc(row.next_retry_at) == clock() + timedelta(seconds=120)

    clock.advance(121)
    second = _retry(queue, store, first.id)

    assert second.status == "sent"
    assert second.result_id == "M"
    assert graph.create_media_container.call_count == 1
    assert graph.publish_media_container.call_args.kwargs == {"creation_id": "X"}

def test_step_two_permanent_failure_goes_to_dlq(queue, store, graph, session_factory, account):
    graph.publish_media_container.side_effect = graph_error(code=100, message="Invalid parameter")

    outcome = _publish(queue)

    assert outcome.status == "dlq"
    assert outcome.retryable is False
    assert outcome.category == "validation"
    row = store.get(outcome.id)
    assert row.status == "dlq"
    assert row.retry_count == 5
    assert row.next_retry_at is None
    assert row.error == "Invalid parameter"
    assert row.payload["creation_id"] == "X"

    db = session_factory()
    audit = db.execute(select(AuditLog)).scalars().all()
    db.close()
    assert [(a.event_type, a.resource_id, a.success) for a in audit] == [("post_failed_permanent", outcome.id, False)]

def test_transient_failures_exhaust_budget(queue, store, graph, clock, account):
    graph.publish_media_container.side_effect = graph_error(code=2, http_status=500)

    outcome = _publish(queue)
    for expected in (2, 3, 4):
        clock.advance(3600)
        outcome = _retry(queue, store, outcome.id)
        assert outcome.status == "failed"
        assert outcome.retry_count == expected

    clock.advance(3600)
    outcome = _retry(queue, store, outcome.id)

    assert outcome.status == "dlq"
    row = store.get(outcome.id)
    assert row.status == "dlq"
    assert row.retry_count == 5
    assert row.next_retry_at is None
    assert row.error_category == "transient"
    assert graph.create_media_container.call_count == 1

def test_rate_limit_hint_drives_next_retry_and_cools_account(queue, store, graph, clock, rate_limits, account):
    graph.publish_media_container.side_effect = graph_error(code=4, headers={"Retry-After": "90"})

    outcome = _publish(queue)

    assert outcome.status == "failed"
    assert outcome.category == "rate_limit"
    assert outcome.retry_after_seconds == 90
    assert as_utc(store.get(outcome.id).next_retry_at) == clock() + timedelta(seconds=90)
    assert rate_limits.is_limited(ACCOUNT_ID) is True

def test_expired_token_fails_before_anything_is_written(queue, graph, session_factory, clock, account):
    db = session_factory()
    db.execute(update(InstagramCredential).values(expires_at=clock() - timedelta(days=1)))
    db.commit()
    db.close()

    with pytest.raises(CredentialExpired):
        _publish(queue)

    assert _rows(session_factory) == []
    graph.create_media_container.assert_not_called()

def test_unknown_account_fails_before_anything_is_written(queue, session_factory):
    with pytest.raises(AccountNotFound):
        _publish(queue)
    assert _rows(session_factory) == []

def test_unknown_action_type_is_rejected(queue, session_factory, account):
    with pytest.raises(UnknownActionType):
        queue.enqueue_and_attempt("boost_post", ACCOUNT_ID, {}, "boost_post:1")
    assert _rows(session_factory) == []

def test_repeated_seed_after_success_makes_no_remote_calls(queue, graph, session_factory, account):
    first = _publish(queue)
    second = _publish(queue)

    assert second.id == first.id
    assert second.status == "sent"
    assert second.result_id == "M"
    assert graph.create_media_container.call_count == 1
    assert graph.publish_media_container.call_count == 1
    assert len(_rows(session_factory)) == 1

def test_missing_image_url_is_dead_lettered_without_remote_calls(queue, graph, account):
    outcome = queue.enqueue_and_attempt("publish_post", ACCOUNT_ID, {"caption": "no image"}, "publish_post:sp-9")

    assert outcome.status == "dlq"
    assert outcome.category == "validation"
    graph.create_media_container.assert_not_called()

def test_creation_id_not_persisted_aborts_before_publish(queue, store, graph, clock, monkeypatch, account):
    monkeypatch.setattr(store, "merge_payload", MagicMock(side_effect=StoreUnavailable("db down")))

    with pytest.raises(StoreUnavailable):
        _publish(queue)

    graph.publish_media_container.assert_not_called()
    (row,) = store.find_stalled_pending(clock() + timedelta(seconds=1))
    assert row.status == "pending"

def test_hook_failure_does_not_revert_sent(queue, store, account):
    broken = MagicMock(side_effect=RuntimeError("read model down"))
    broken.name = "broken"
    broken.applies_to.return_value = True
    queue.hooks = [broken]

    outcome = _publish(queue)

    assert outcome.status == "sent"
    assert store.get(outcome.id).status == "sent"
    broken.assert_called_once()

def test_scheduled_post_and_media_read_model_updated(queue, session_factory, account):
    db = session_factory()
    db.add(ScheduledPost(id="sp-1", business_account_id=ACCOUNT_ID))
    db.commit()
    db.close()

    _publish(queue, scheduled_post_id="sp-1")

    db = session_factory()
    post = db.get(ScheduledPost, "sp-1")
    media = db.execute(select(InstagramMedia)).scalar_one()
    db.close()
    assert post.status == "published"
    assert post.instagram_media_id == "M"
    assert post.published_at is not None
    assert media.instagram_media_id == "M"
    assert media.caption == "Hello"
    assert media.media_type == "IMAGE"

def test_repost_ugc_builds_credit_caption_and_marks_permission(queue, graph, session_factory, account):
    db = session_factory()
    db.add(UgcDiscovered(id="ugc-1", business_account_id=ACCOUNT_ID, media_url="https://cdn.example.com/u.jpg", caption="sunset", username="visitor"))
    db.add(UgcPermission(id="perm-1", ugc_discovered_id="ugc-1"))
    db.commit()
    db.close()

    outcome = queue.enqueue_and_attempt("repost_ugc", ACCOUNT_ID, {"permission_id": "perm-1"}, "repost_ugc:perm-1")

    assert outcome.status == "sent"
    graph.create_media_container.assert_called_once_with(
        IG_USER_ID, PAGE_TOKEN,
        media_url="https://cdn.example.com/u.jpg",
        caption="📸 @visitor: sunset\n\n#repost",
        media_type="IMAGE",
    )
    db = session_factory()
    perm = db.get(UgcPermission, "perm-1")
    media = db.execute(select(InstagramMedia)).scalar_one()
    db.close()
    assert perm.status == "reposted"
    assert perm.instagram_media_id == "M"
    assert media.caption == "📸 @visitor: sunset\n\n#repost"

def test_single_step_actions(queue, graph, account):
    graph.reply_to_comment.return_value = "reply-1"
    graph.send_direct_message.return_value = "mid-1"

    reply = queue.enqueue_and_attempt(
        "reply_comment", ACCOUNT_ID, {"comment_id": "c-1", "reply_text": " thanks! "}, "reply_comment:c-1",
    )
    dm = queue.enqueue_and_attempt(
        "send_dm", ACCOUNT_ID, {"recipient_id": "igsid-7", "message_text": "hi"}, "send_dm:igsid-7:1",
    )

    assert (reply.status, reply.result_id) == ("sent", "reply-1")
    assert (dm.status, dm.result_id) == ("sent", "mid-1")
    graph.reply_to_comment.assert_called_once_with("c-1", PAGE_TOKEN, message="thanks!")
    graph.send_direct_message.assert_called_once_with(IG_USER_ID, PAGE_TOKEN, recipient_id="igsid-7", message="hi")

def test_token_rejected_by_graph_is_dead_lettered(queue, store, graph, account):
    graph.reply_to_comment.side_effect = graph_error(code=190, http_status=401, message="Error validating access token")

    outcome = queue.enqueue_and_attempt(
        "reply_comment", ACCOUNT_ID, {"comment_id": "c-2", "reply_text": "hey"}, "reply_comment:c-2",
    )

    assert outcome.status == "dlq"
    assert outcome.category == "auth_failure"
    assert store.get(outcome.id).retry_count == 5

def test_outcome_serializes_next_retry_at(queue, graph, account):
    graph.publish_media_container.side_effect = graph_error(code=2, http_status=500)
    data = _publish(queue).as_dict()
    assert data["status"] == "failed"
    assert isinstance(data["next_retry_at"], str)

def test_reenqueue_cannot_clear_stored_container(queue, store, graph, clock, account):
    graph.publish_media_container.side_effect = [graph_error(code=2, http_status=500), "M"]
    first = _publish(queue)

    again = _publish(queue, creation_id=None)
    assert again.id == first.id
    assert store.get(first.id).payload["creation_id"] == "X"

    clock.advance(121)
    second = _retry(queue, store, first.id)

    assert second.status == "sent"
    assert graph.create_media_container.call_count == 1
    assert graph.publish_media_container.call_args.kwargs == {"creation_id": "X"}

def test_caller_supplied_creation_id_is_ignored(queue, store, graph, account):
    outcome = _publish(queue, creation_id="FOREIGN")

    assert outcome.status == "sent"
    graph.create_media_container.assert_called_once()
    graph.publish_media_container.assert_called_once_with(IG_USER_ID, PAGE_TOKEN, creation_id="X")
    assert store.get(outcome.id).payload["creation_id"] == "X"
