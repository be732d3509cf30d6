from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from igqueue.errors import StoreUnavailable
from igqueue.models import QueuedAction
from igqueue.services.idempotency import build_key
from igqueue.services.queue_store import ActionQueueStore
from igqueue.tests.helpers import as_utc

def _count_rows(session_factory):
    db = session_factory()
    try:
        return db.execute(select(func.count(QueuedAction.id))).scalar()
    finally:
        db.close()

def test_insert_same_key_twice_keeps_one_row(store, session_factory):
    key = build_key("publish_post:sp-1")
    first = store.insert("publish_post", "acct-1", {"image_url": "https://a/1.jpg", "caption": "hi"}, key)
    second = store.insert("publish_post", "acct-1", {"image_url": "https://a/1.jpg", "caption": "hi"}, key)

    assert first == second
    assert _count_rows(session_factory) == 1

def test_upsert_reports_who_created_the_row(store):
    key = build_key("reply_comment:c-1")
    _, created = store.upsert("reply_comment", "acct-1", {"comment_id": "c-1"}, key)
    _, created_again = store.upsert("reply_comment", "acct-1", {"comment_id": "c-1"}, key)
    assert created is True
    assert created_again is False

def test_conflicting_insert_merges_payload_and_leaves_progress_alone(store):
    key = build_key("publish_post:sp-2")
    action_id = store.insert("publish_post", "acct-1", {"image_url": "https://a/2.jpg", "caption": "old"}, key)
    store.merge_payload(action_id, {"creation_id": "X"})
    store.update(action_id, {"status": "failed", "retry_count": 2, "error": "boom"})

    store.insert("publish_post", "acct-1", {"image_url": "https://a/2.jpg", "caption": "new"}, key)

    row = store.get(action_id)
    assert row.payload == {"image_url": "https://a/2.jpg", "caption": "new", "creation_id": "X"}
    assert row.status == "failed"
    assert row.retry_count == 2

def test_update_touches_only_given_fields(store):
    action_id = store.insert("publish_post", "acct-1", {"image_url": "u"}, build_key("s3"))
    assert store.update(action_id, {"status": "sent", "result_id": "M"}) is True

    row = store.get(action_id)
    assert row.status == "sent"
    assert row.result_id == "M"
    assert row.payload == {"image_url": "u"}
    assert row.retry_count == 0

def test_update_rejects_immutable_fields(store):
    action_id = store.insert("publish_post", "acct-1", {}, build_key("s4"))
    with pytest.raises(ValueError):
        store.update(action_id, {"idempotency_key": "other"})

def test_update_missing_row_returns_false(store):
    assert store.update("does-not-exist", {"status": "sent"}) is False

def test_find_due_for_retry_orders_oldest_due_first(store, clock):
    now = clock()
    late = store.insert("publish_post", "acct-1", {}, build_key("late"))
    early = store.insert("publish_post", "acct-1", {}, build_key("early"))
    future = store.insert("publish_post", "acct-1", {}, build_key("future"))
    sent = store.insert("publish_post", "acct-1", {}, build_key("sent"))

    store.update(late, {"status": "failed", "next_retry_at": now - timedelta(seconds=10)})
    store.update(early, {"status": "failed", "next_retry_at": now - timedelta(seconds=300)})
    store.update(future, {"status": "failed", "next_retry_at": now + timedelta(seconds=300)})
    store.update(sent, {"status": "sent", "result_id": "M", "next_retry_at": now - timedelta(seconds=900)})

    due = store.find_due_for_retry(now)
    assert [r.id for r in due] == [early, late]

def test_claim_is_won_once(store, clock):
    action_id = store.insert("publish_post", "acct-1", {}, build_key("claim"))
    store.update(action_id, {"status": "failed", "next_retry_at": clock()})

    assert store.claim(action_id) is True
    assert store.claim(action_id) is False
    assert store.get(action_id).status == "pending"

def test_stalled_pending_rows_are_found_and_claimed_once(store, clock):
    action_id = store.insert("publish_post", "acct-1", {}, build_key("stalled"))
    cutoff = clock() - timedelta(seconds=600)
    assert store.find_stalled_pending(cutoff) == []

    clock.advance(601)
    cutoff = clock() - timedelta(seconds=600)
    assert [r.id for r in store.find_stalled_pending(cutoff)] == [action_id]
    assert store.claim(action_id, stale_before=cutoff) is True
    assert store.claim(action_id, stale_before=cutoff) is False

def test_requeue_resets_budget(store, clock):
    action_id = store.insert("publish_post", "acct-1", {"image_url": "u"}, build_key("requeue"))
    store.merge_payload(action_id, {"creation_id": "X"})
    store.update(action_id, {"status": "dlq", "retry_count": 5, "error": "gone", "error_category": "validation"})

    row = store.requeue(action_id)
    assert row.status == "failed"
    assert row.retry_count == 0
    assert row.error is None
    assert as_utc(row.next_retry_at) == clock()
    assert store.get(action_id).payload == {"image_url": "u", "creation_id": "X"}

def test_requeue_refuses_pending_and_sent(store):
    action_id = store.insert("publish_post", "acct-1", {}, build_key("busy"))
    assert store.requeue(action_id) is None
    store.update(action_id, {"status": "sent", "result_id": "M"})
    assert store.requeue(action_id) is None

def test_status_summary_and_dlq_listing(store):
    a = store.insert("publish_post", "acct-1", {}, build_key("a"))
    b = store.insert("publish_post", "acct-1", {}, build_key("b"))
    store.insert("reply_comment", "acct-1", {}, build_key("c"))
    store.update(a, {"status": "sent", "result_id": "M"})
    store.update(b, {"status": "dlq", "retry_count": 5, "error": "nope"})

    assert store.status_summary() == {
        "publish_post::sent": 1,
        "publish_post::dlq": 1,
        "reply_comment::pending": 1,
    }
    assert [r.id for r in store.list_dlq()] == [b]

def test_database_errors_surface_as_store_unavailable():
    db = MagicMock()
    db.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))
    store = ActionQueueStore(lambda: db)

    with pytest.raises(StoreUnavailable):
        store.find_due_for_retry()
    db.rollback.assert_called_once()
    db.close.assert_called_once()

def test_caller_payload_cannot_touch_executor_keys(store):
    key = build_key("publish_post:sp-5")
    action_id = store.insert("publish_post", "acct-1", {"image_url": "u", "creation_id": "FOREIGN"}, key)
    assert store.get(action_id).payload == {"image_url": "u"}

    store.merge_payload(action_id, {"creation_id": "X", "published_caption": "hi"})
    store.insert("publish_post", "acct-1", {"image_url": "u", "creation_id": None, "published_caption": None}, key)

    assert store.get(action_id).payload == {"image_url": "u", "creation_id": "X", "published_caption": "hi"}
