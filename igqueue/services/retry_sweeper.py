from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Callable

from ..errors import StoreUnavailable
from ..logging_setup import log_event
from ..models import STATUS_PENDING, STATUS_SENT, STATUS_FAILED, STATUS_DLQ
from .action_queue import ActionQueue
from .classifier import UNKNOWN, Classification
from .queue_store import ActionQueueStore
from .rate_limits import RateLimitGate

@dataclass
class SweepResult:
    scanned: int = 0
    attempted: int = 0
    sent: int = 0
    failed: int = 0
    dead_lettered: int = 0
    skipped: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)

class RetrySweeper:
    """
    Re-attempts failed rows whose next_retry_at has passed, plus pending rows
    orphaned by an attempt that never finished. Every row is claimed atomically
    first, so overlapping sweepers never run the same retry twice.
    """

    def __init__(
        self,
        queue: ActionQueue,
        store: ActionQueueStore,
        rate_limits: RateLimitGate | None = None,
        batch_size: int = 20,
        pending_grace_seconds: int = 600,
        now: Callable[[], datetime] | None = None,
    ):
        self.queue = queue
        self.store = store
        self.rate_limits = rate_limits
        self.batch_size = batch_size
        self.pending_grace_seconds = pending_grace_seconds
        self.now = now or (lambda: datetime.now(timezone.utc))

    def run_once(self, now: datetime | None = None) -> SweepResult:
        now = now or self.now()
        stale_cutoff = now - timedelta(seconds=self.pending_grace_seconds)
        result = SweepResult()

        rows = self.store.find_due_for_retry(now, limit=self.batch_size)
        rows += self.store.find_stalled_pending(stale_cutoff, limit=self.batch_size)
        if not rows:
            return result

        result.scanned = len(rows)
        log_event("queue_sweep_start", rows=len(rows))
        resolver = self.queue.resolver_factory()

        for row in rows:
            if self.rate_limits is not None and self.rate_limits.is_limited(row.business_account_id):
                log_event("queue_sweep_rate_limited_skip", queue_id=row.id, business_account_id=row.business_account_id)
                result.skipped += 1
                continue

            stale_before = stale_cutoff if row.status == STATUS_PENDING else None
            try:
                won = self.store.claim(row.id, stale_before=stale_before)
            except StoreUnavailable as e:
                log_event("queue_claim_failed", level="error", queue_id=row.id, error=str(e))
                result.errors += 1
                continue
            if not won:
                result.skipped += 1
                continue

            # the snapshot may predate an operator requeue; work from the claimed row
            try:
                row = self.store.get(row.id)
            except StoreUnavailable as e:
                log_event("queue_claim_reload_failed", level="error", queue_id=row.id, error=str(e))
                result.errors += 1
                continue
            if row is None:
                result.skipped += 1
                continue

            try:
                if self.queue.policy.exhausted(row.retry_count or 0):
                    verdict = Classification(False, row.error_category or UNKNOWN)
                    self.queue.dead_letter(row, row.error or "retry budget exhausted", verdict)
                    result.dead_lettered += 1
                    continue

                result.attempted += 1
                outcome = self.queue.attempt(row, resolver=resolver)
            except StoreUnavailable as e:
                log_event("queue_sweep_row_failed", level="error", queue_id=row.id, error=str(e))
                result.errors += 1
                continue

            if outcome.status == STATUS_SENT:
                result.sent += 1
            elif outcome.status == STATUS_FAILED:
                result.failed += 1
            elif outcome.status == STATUS_DLQ:
                result.dead_lettered += 1

        log_event("queue_sweep_done", **result.as_dict())
        return result
