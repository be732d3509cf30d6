from datetime import datetime, timedelta, timezone

from igqueue.errors import GraphAPIError

ACCOUNT_ID = "acct-1"
IG_USER_ID = "17841400000000001"
PAGE_TOKEN = "page-token-abc"

class FakeClock:
    def __init__(self):
        self.current = datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)

def as_utc(dt):
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt

def graph_error(code=None, http_status=400, subcode=None, headers=None, step="media_publish", is_transient=False, message="boom"):
    return GraphAPIError(
        message,
        http_status=http_status,
        code=code,
        subcode=subcode,
        is_transient=is_transient,
        headers=headers,
        step=step,
    )
