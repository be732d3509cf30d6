"""
Caller-facing entry point of the outbound action queue.

enqueue_and_attempt() writes the pending row before the first remote call, so the
worst a crash can leave behind is an orphaned pending row, never a remote write
with no local record.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Callable

from ..errors import CredentialError, StoreUnavailable
from ..logging_setup import log_event, queue_context
from ..models import QueuedAction, STATUS_SENT, STATUS_FAILED, STATUS_DLQ
from .classifier import RATE_LIMIT, Classification, RetryPolicy, classify
from .credentials import CredentialResolver, Credentials
from .executors import ActionExecutor, executor_for
from .hooks import run_post_commit_hooks
from .idempotency import build_key
from .queue_store import ActionQueueStore
from .rate_limits import RateLimitGate

@dataclass
class ActionOutcome:
    id: str | None
    status: str
    result_id: str | None = None
    error: str | None = None
    retryable: bool | None = None
    category: str | None = None
    retry_after_seconds: int | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = None

    @classmethod
    def from_row(cls, row: QueuedAction) -> "ActionOutcome":
        return cls(
            id=row.id,
            status=row.status,
            result_id=row.result_id,
            error=row.error,
            retryable=(row.status == STATUS_FAILED) if row.error else None,
            category=row.error_category,
            retry_count=row.retry_count or 0,
            next_retry_at=row.next_retry_at,
        )

    def as_dict(self) -> dict:
        data = asdict(self)
        if self.next_retry_at is not None:
            data["next_retry_at"] = self.next_retry_at.isoformat()
        return data

class ActionQueue:
    def __init__(
        self,
        store: ActionQueueStore,
        executors: dict[str, ActionExecutor],
        resolver_factory: Callable[[], CredentialResolver],
        policy: RetryPolicy | None = None,
        rate_limits: RateLimitGate | None = None,
        hooks: list | None = None,
        now: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.executors = executors
        self.resolver_factory = resolver_factory
        self.policy = policy or RetryPolicy()
        self.rate_limits = rate_limits
        self.hooks = hooks or []
        self.now = now or (lambda: datetime.now(timezone.utc))

    def enqueue_and_attempt(
        self,
        action_type: str,
        business_account_id: str,
        payload: dict,
        idempotency_seed: str,
        resolver: CredentialResolver | None = None,
    ) -> ActionOutcome:
        """
        Record the action durably, then make the first attempt inline.

        Raises CredentialError (account unknown, disconnected or token expired) and
        UnknownActionType before anything is written. A repeated seed returns the
        existing row's state; only the caller that created the row attempts it.
        """
        executor_for(self.executors, action_type)
        resolver = resolver or self.resolver_factory()
        creds = resolver.resolve(business_account_id)

        key = build_key(idempotency_seed)
        action_id, created = self.store.upsert(action_type, business_account_id, payload, key)
        row = self.store.get(action_id)
        if row is None:
            raise StoreUnavailable(f"post_queue row {action_id} vanished after insert")

        if not created:
            log_event("queue_enqueue_existing", queue_id=row.id, action_type=action_type, status=row.status)
            return ActionOutcome.from_row(row)

        return self.attempt(row, resolver=resolver, creds=creds)

    def attempt(
        self,
        action: QueuedAction,
        resolver: CredentialResolver | None = None,
        creds: Credentials | None = None,
    ) -> ActionOutcome:
        """
        One attempt at a pending row. Credentials are re-resolved unless the caller
        just did so, since tokens can expire between retries.

        StoreUnavailable is not handled here: if the row cannot be advanced the attempt
        is abandoned and the row stays pending until the stalled-row sweep finds it.
        """
        resolver = resolver or self.resolver_factory()
        try:
            executor = executor_for(self.executors, action.action_type)
            if creds is None:
                creds = resolver.resolve(action.business_account_id)
            with queue_context(queue_id=action.id, action_type=action.action_type):
                result_id = executor.execute(action, creds)
        except StoreUnavailable:
            log_event("queue_attempt_store_unavailable", level="error", queue_id=action.id, action_type=action.action_type)
            raise
        except Exception as e:
            if isinstance(e, CredentialError):
                resolver.forget(action.business_account_id)
            return self._record_failure(action, e)

        return self._record_success(action, result_id)

    def _record_success(self, action: QueuedAction, result_id: str) -> ActionOutcome:
        fields = {
            "status": STATUS_SENT,
            "result_id": result_id,
            "error": None,
            "error_category": None,
            "next_retry_at": None,
        }
        try:
            self.store.update(action.id, fields)
        except StoreUnavailable as e:
            # The remote write happened; the row stays pending and the caller still learns the result.
            log_event("queue_sent_record_failed", level="error", queue_id=action.id, result_id=result_id, error=str(e))
        for k, v in fields.items():
            setattr(action, k, v)

        log_event("queue_sent", queue_id=action.id, action_type=action.action_type, result_id=result_id, attempts=(action.retry_count or 0) + 1)
        run_post_commit_hooks(self.hooks, action, result_id)
        return ActionOutcome(id=action.id, status=STATUS_SENT, result_id=result_id, retry_count=action.retry_count or 0)

    def _record_failure(self, action: QueuedAction, error: Exception) -> ActionOutcome:
        verdict = classify(error)
        message = getattr(error, "message", None) or str(error)
        retry_count = (action.retry_count or 0) + 1

        if verdict.category == RATE_LIMIT and self.rate_limits is not None:
            self.rate_limits.mark(action.business_account_id, verdict.retry_after_seconds)

        if not verdict.retryable or self.policy.exhausted(retry_count):
            return self.dead_letter(action, message, verdict, retry_count)

        delay = self.policy.delay(retry_count, verdict.retry_after_seconds)
        next_retry_at = self.now() + timedelta(seconds=delay)
        fields = {
            "status": STATUS_FAILED,
            "retry_count": retry_count,
            "error": message,
            "error_category": verdict.category,
            "next_retry_at": next_retry_at,
        }
        self.store.update(action.id, fields)
        for k, v in fields.items():
            setattr(action, k, v)

        log_event(
            "queue_retry_scheduled",
            level="warning",
            queue_id=action.id,
            action_type=action.action_type,
            retry_count=retry_count,
            max_attempts=self.policy.max_attempts,
            error_category=verdict.category,
            next_retry_at=next_retry_at.isoformat(),
            error=message,
        )
        return ActionOutcome(
            id=action.id,
            status=STATUS_FAILED,
            error=message,
            retryable=True,
            category=verdict.category,
            retry_after_seconds=verdict.retry_after_seconds,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
        )

    def dead_letter(
        self,
        action: QueuedAction,
        message: str,
        verdict: Classification,
        retry_count: int | None = None,
    ) -> ActionOutcome:
        """
        Move a row to dlq. A permanent failure spends the whole retry budget at once,
        so retry_count always reads as exhausted on a dead row.
        """
        retry_count = max(retry_count if retry_count is not None else (action.retry_count or 0), self.policy.max_attempts)
        fields = {
            "status": STATUS_DLQ,
            "retry_count": retry_count,
            "error": message,
            "error_category": verdict.category,
            "next_retry_at": None,
        }
        self.store.update(action.id, fields)
        for k, v in fields.items():
            setattr(action, k, v)

        log_event(
            "queue_dlq",
            level="error",
            queue_id=action.id,
            action_type=action.action_type,
            business_account_id=action.business_account_id,
            retry_count=retry_count,
            error_category=verdict.category,
            error=message,
        )
        try:
            self.store.audit(
                event_type="post_failed_permanent",
                action="post_queue_dlq",
                resource_id=action.id,
                details={
                    "action_type": action.action_type,
                    "error": message,
                    "error_category": verdict.category,
                    "retry_count": retry_count,
                    "business_account_id": action.business_account_id,
                },
                success=False,
            )
        except StoreUnavailable as e:
            log_event("audit_write_failed", level="warning", queue_id=action.id, error=str(e))

        return ActionOutcome(
            id=action.id,
            status=STATUS_DLQ,
            error=message,
            retryable=False,
            category=verdict.category,
            retry_after_seconds=verdict.retry_after_seconds,
            retry_count=retry_count,
        )
