class QueueError(Exception):
    """Base class for everything the action queue raises on purpose."""

class CredentialError(QueueError):
    """The account cannot act right now. Never retried; a human must re-link it."""

    def __init__(self, business_account_id: str, message: str):
        super().__init__(message)
        self.business_account_id = business_account_id
        self.message = message

class AccountNotFound(CredentialError):
    pass

class CredentialExpired(CredentialError):
    pass

class StoreUnavailable(QueueError):
    """The durable record could not be read or written."""

class InvalidPayload(QueueError):
    """The queued payload cannot be executed as stored; retrying will not help."""

class UnknownActionType(InvalidPayload):
    def __init__(self, action_type: str):
        super().__init__(f"Unknown action_type: {action_type}")
        self.action_type = action_type

class GraphAPIError(QueueError):
    """
    A failed Graph API call.

    Carries the structured `error` object Meta returns alongside the HTTP status
    and response headers, so the classifier can read codes and retry hints.
    `http_status` is None when the request never got a response (timeout, DNS, reset).
    """

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        code: int | None = None,
        subcode: int | None = None,
        error_type: str | None = None,
        is_transient: bool = False,
        fbtrace_id: str | None = None,
        headers: dict | None = None,
        step: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.code = code
        self.subcode = subcode
        self.error_type = error_type
        self.is_transient = is_transient
        self.fbtrace_id = fbtrace_id
        self.headers = headers or {}
        self.step = step

    @classmethod
    def from_response(cls, http_status: int, body: dict, headers: dict | None = None, step: str | None = None):
        error_obj = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error_obj, dict):
            error_obj = {}
        return cls(
            error_obj.get("message") or f"Graph API request failed with HTTP {http_status}",
            http_status=http_status,
            code=error_obj.get("code"),
            subcode=error_obj.get("error_subcode"),
            error_type=error_obj.get("type"),
            is_transient=bool(error_obj.get("is_transient")),
            fbtrace_id=error_obj.get("fbtrace_id"),
            headers=headers,
            step=step,
        )

    def __repr__(self):
        return f"GraphAPIError(step={self.step!r}, http_status={self.http_status}, code={self.code}, subcode={self.subcode}, message={self.message!r})"
