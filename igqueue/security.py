import hmac

from fastapi import Header, HTTPException, Request, status

from .logging_setup import log_event

def require_api_key(request: Request, x_api_key: str | None = Header(default=None, alias="X-API-Key")):
    """Guard for agent-facing endpoints. No configured key means the guard is off (local dev)."""
    expected = request.app.state.settings.agent_api_key
    if not expected:
        return
    if not x_api_key:
        log_event("api_key_missing", level="warning", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-API-Key header is required")
    if not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        log_event("api_key_invalid", level="warning", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
