from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import StoreUnavailable
from ..logging_setup import log_event
from ..models import (
    AuditLog, QueuedAction, _new_id,
    STATUS_PENDING, STATUS_FAILED, STATUS_DLQ,
)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}

# Columns a caller may touch through update(); id and idempotency_key are immutable.
UPDATABLE_FIELDS = {
    "status", "payload", "retry_count", "error", "error_category",
    "next_retry_at", "result_id",
}

# Payload keys only executors write (through merge_payload); callers cannot set or clear them.
EXECUTOR_OWNED_KEYS = frozenset({"creation_id", "published_caption"})

class ActionQueueStore:
    """
    System of record for queued actions (the post_queue table).

    Each method runs in its own short transaction. Any database failure surfaces
    as StoreUnavailable; whether to swallow it is the caller's decision.
    """

    def __init__(self, db_factory: Callable[[], Session], now: Callable[[], datetime] | None = None):
        self.db_factory = db_factory
        self.now = now or (lambda: datetime.now(timezone.utc))

    @contextmanager
    def _session(self):
        db = self.db_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreUnavailable(f"post_queue operation failed: {e}") from e
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def insert(self, action_type: str, business_account_id: str, payload: dict, idempotency_key: str) -> str:
        action_id, _ = self.upsert(action_type, business_account_id, payload, idempotency_key)
        return action_id

    def upsert(self, action_type: str, business_account_id: str, payload: dict, idempotency_key: str) -> tuple[str, bool]:
        """
        Upsert by idempotency_key and return (row id, whether this call created it).

        A conflicting insert does not create a second row: the provided payload keys
        overwrite the stored ones, keys it does not mention survive, and
        status/retry_count are left for the executor to advance. Executor-owned keys
        (creation_id) are dropped from the caller payload on both paths.
        """
        payload = {k: v for k, v in (payload or {}).items() if k not in EXECUTOR_OWNED_KEYS}
        now = self.now()
        with self._session() as db:
            dialect = db.get_bind().dialect.name
            insert_fn = _UPSERT_INSERTS.get(dialect)
            if insert_fn is None:
                raise StoreUnavailable(f"upsert not supported on dialect {dialect!r}")

            stmt = (
                insert_fn(QueuedAction)
                .values(
                    id=_new_id(),
                    business_account_id=business_account_id,
                    action_type=action_type,
                    payload=payload,
                    idempotency_key=idempotency_key,
                    status=STATUS_PENDING,
                    retry_count=0,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["idempotency_key"])
                .returning(QueuedAction.id)
            )
            new_id = db.execute(stmt).scalar()
            if new_id:
                log_event("queue_insert", queue_id=new_id, action_type=action_type, business_account_id=business_account_id)
                return new_id, True

            existing = db.execute(
                select(QueuedAction)
                .where(QueuedAction.idempotency_key == idempotency_key)
                .with_for_update()
            ).scalar_one()
            existing.payload = {**(existing.payload or {}), **payload}
            existing.updated_at = now
            log_event(
                "queue_insert_duplicate",
                queue_id=existing.id,
                action_type=action_type,
                status=existing.status,
                business_account_id=business_account_id,
            )
            return existing.id, False

    def get(self, action_id: str) -> QueuedAction | None:
        with self._session() as db:
            return db.get(QueuedAction, action_id)

    def update(self, action_id: str, fields: dict) -> bool:
        """Merge only the given columns into the row. Returns False if the row is gone."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update post_queue fields: {sorted(unknown)}")
        if not fields:
            return True
        with self._session() as db:
            result = db.execute(
                update(QueuedAction)
                .where(QueuedAction.id == action_id)
                .values(**fields, updated_at=self.now())
            )
            return result.rowcount > 0

    def merge_payload(self, action_id: str, patch: dict) -> dict:
        """Set selected payload keys without rewriting the rest of the document."""
        with self._session() as db:
            row = db.execute(
                select(QueuedAction).where(QueuedAction.id == action_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise StoreUnavailable(f"post_queue row {action_id} disappeared")
            merged = {**(row.payload or {}), **patch}
            row.payload = merged
            row.updated_at = self.now()
            return merged

    def find_due_for_retry(self, now: datetime | None = None, limit: int | None = None) -> list[QueuedAction]:
        now = now or self.now()
        stmt = (
            select(QueuedAction)
            .where(QueuedAction.status == STATUS_FAILED)
            .where(QueuedAction.next_retry_at.is_not(None))
            .where(QueuedAction.next_retry_at <= now)
            .order_by(QueuedAction.next_retry_at.asc(), QueuedAction.created_at.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        with self._session() as db:
            return list(db.execute(stmt).scalars().all())

    def find_stalled_pending(self, cutoff: datetime, limit: int | None = None) -> list[QueuedAction]:
        """Pending rows nobody has touched since cutoff: an attempt died mid-flight."""
        stmt = (
            select(QueuedAction)
            .where(QueuedAction.status == STATUS_PENDING)
            .where(QueuedAction.updated_at < cutoff)
            .order_by(QueuedAction.created_at.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        with self._session() as db:
            return list(db.execute(stmt).scalars().all())

    def claim(self, action_id: str, stale_before: datetime | None = None) -> bool:
        """
        Atomically take a row for one attempt.

        A failed row is claimed by flipping it to pending only if it is still failed.
        A stalled pending row (stale_before given) is claimed by bumping updated_at
        only if nobody else did since. Exactly one concurrent caller gets True.
        """
        stmt = update(QueuedAction).where(QueuedAction.id == action_id)
        if stale_before is None:
            stmt = stmt.where(QueuedAction.status == STATUS_FAILED)
        else:
            stmt = stmt.where(QueuedAction.status == STATUS_PENDING).where(QueuedAction.updated_at < stale_before)
        stmt = stmt.values(status=STATUS_PENDING, updated_at=self.now())
        with self._session() as db:
            return db.execute(stmt).rowcount == 1

    def requeue(self, action_id: str) -> QueuedAction | None:
        """Operator reset of a failed/dlq row: fresh retry budget, due immediately."""
        with self._session() as db:
            row = db.execute(
                select(QueuedAction)
                .where(QueuedAction.id == action_id)
                .where(QueuedAction.status.in_([STATUS_FAILED, STATUS_DLQ]))
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                return None
            previous_retry_count = row.retry_count
            row.status = STATUS_FAILED
            row.retry_count = 0
            row.error = None
            row.error_category = None
            row.next_retry_at = self.now()
            row.updated_at = self.now()
            log_event("queue_requeued", queue_id=row.id, action_type=row.action_type, previous_retry_count=previous_retry_count)
            return row

    def status_summary(self) -> dict[str, int]:
        stmt = (
            select(QueuedAction.action_type, QueuedAction.status, func.count(QueuedAction.id))
            .group_by(QueuedAction.action_type, QueuedAction.status)
        )
        with self._session() as db:
            return {f"{action_type}::{status}": count for action_type, status, count in db.execute(stmt).all()}

    def list_dlq(self, limit: int = 50) -> list[QueuedAction]:
        stmt = (
            select(QueuedAction)
            .where(QueuedAction.status == STATUS_DLQ)
            .order_by(QueuedAction.updated_at.desc())
            .limit(limit)
        )
        with self._session() as db:
            return list(db.execute(stmt).scalars().all())

    def audit(self, *, event_type: str, action: str, resource_id: str, details: dict, success: bool) -> None:
        with self._session() as db:
            db.add(AuditLog(
                event_type=event_type,
                action=action,
                resource_type="post_queue",
                resource_id=resource_id,
                details=details,
                success=success,
            ))
