import threading
import time
from typing import Callable

from ..logging_setup import log_event

class RateLimitGate:
    """
    Per-account cooldown fed by rate_limit verdicts.
    The sweeper consults it so one throttled account does not burn its retry budget.
    """

    def __init__(self, default_cooldown_seconds: int = 3600, clock: Callable[[], float] = time.monotonic):
        self.default_cooldown_seconds = default_cooldown_seconds
        self.clock = clock
        self._blocked_until: dict[str, float] = {}
        self._lock = threading.Lock()

    def is_limited(self, business_account_id: str) -> bool:
        with self._lock:
            unblocked = self._blocked_until.get(business_account_id)
            if unblocked is None:
                return False
            if self.clock() >= unblocked:
                del self._blocked_until[business_account_id]
                return False
            return True

    def mark(self, business_account_id: str, retry_after_seconds: int | None = None) -> None:
        # Retry-After: 0 is a real hint, not a missing one
        cooldown = self.default_cooldown_seconds if retry_after_seconds is None else retry_after_seconds
        with self._lock:
            self._blocked_until[business_account_id] = self.clock() + cooldown
        log_event("account_rate_limited", level="warning", business_account_id=business_account_id, cooldown_seconds=cooldown)
