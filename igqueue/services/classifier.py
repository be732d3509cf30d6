import json
from dataclasses import dataclass, asdict

from ..errors import CredentialError, GraphAPIError, InvalidPayload

# Normalized categories
RATE_LIMIT = "rate_limit"
TRANSIENT = "transient"
NETWORK = "network"
VALIDATION = "validation"
PERMISSION = "permission"
AUTH_FAILURE = "auth_failure"
UNKNOWN = "unknown"

RETRYABLE_CATEGORIES = {RATE_LIMIT, TRANSIENT, NETWORK}

# Graph API error codes, see Meta "Handling Errors" reference
RATE_LIMIT_CODES = {4, 17, 32, 613} | set(range(80001, 80010))
RATE_LIMIT_SUBCODES = {2207042}  # content publishing limit reached
TRANSIENT_CODES = {1, 2, -1}
TRANSIENT_SUBCODES = {2207027}  # container not ready yet (code 9007)
AUTH_CODES = {102, 190, 463, 467}
PERMISSION_CODES = {3, 10} | set(range(200, 300))

@dataclass(frozen=True)
class Classification:
    retryable: bool
    category: str
    retry_after_seconds: int | None = None

    def as_dict(self) -> dict:
        return asdict(self)

def classify(error: BaseException) -> Classification:
    """Decide whether a failed attempt may be retried, and when."""
    if isinstance(error, CredentialError):
        return Classification(False, AUTH_FAILURE)
    if isinstance(error, InvalidPayload):
        return Classification(False, VALIDATION)
    if not isinstance(error, GraphAPIError):
        return Classification(False, UNKNOWN)

    category = _category_for(error)
    retry_after = retry_hint_seconds(error.headers) if category in RETRYABLE_CATEGORIES else None
    return Classification(category in RETRYABLE_CATEGORIES, category, retry_after)

def _category_for(error: GraphAPIError) -> str:
    if error.http_status is None:
        return NETWORK

    code, subcode = error.code, error.subcode
    if code in RATE_LIMIT_CODES or subcode in RATE_LIMIT_SUBCODES or error.http_status == 429:
        return RATE_LIMIT
    if code in AUTH_CODES:
        return AUTH_FAILURE
    if code in PERMISSION_CODES:
        return PERMISSION
    if error.is_transient or code in TRANSIENT_CODES or subcode in TRANSIENT_SUBCODES:
        return TRANSIENT
    if error.http_status >= 500:
        return TRANSIENT
    if error.http_status >= 400 or code is not None:
        return VALIDATION
    return UNKNOWN

def retry_hint_seconds(headers: dict | None) -> int | None:
    """
    Explicit retry hint from the response headers.
    Retry-After is in seconds; X-Business-Use-Case-Usage reports
    estimated_time_to_regain_access in minutes per business id.
    """
    if not headers:
        return None
    lowered = {str(k).lower(): v for k, v in headers.items()}

    retry_after = lowered.get("retry-after")
    if retry_after is not None:
        try:
            return max(int(float(retry_after)), 0)
        except (TypeError, ValueError):
            pass

    usage = lowered.get("x-business-use-case-usage")
    if usage:
        try:
            parsed = json.loads(usage) if isinstance(usage, str) else usage
        except ValueError:
            return None
        minutes = 0
        for entries in (parsed or {}).values():
            for entry in entries or []:
                try:
                    minutes = max(minutes, int(entry.get("estimated_time_to_regain_access") or 0))
                except (AttributeError, TypeError, ValueError):
                    continue
        if minutes > 0:
            return minutes * 60
    return None

def backoff_delay(retry_count: int, base: int = 60, cap: int = 3600) -> int:
    """
    Seconds to wait before the next attempt: min(base * 2^retry_count, cap).
    retry_count is the value after counting the failed attempt, so the first retry waits 2 * base.
    """
    if retry_count < 0:
        retry_count = 0
    # avoid computing huge powers once the cap is certainly reached
    if retry_count >= 32:
        return cap
    return min(base * (2 ** retry_count), cap)

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_seconds: int = 60
    cap_seconds: int = 3600

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_seconds=settings.backoff_base_seconds,
            cap_seconds=settings.backoff_cap_seconds,
        )

    def delay(self, retry_count: int, retry_after_seconds: int | None = None) -> int:
        # an explicit hint from the API wins over our own schedule
        if retry_after_seconds is not None:
            return retry_after_seconds
        return backoff_delay(retry_count, self.base_seconds, self.cap_seconds)

    def exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_attempts
