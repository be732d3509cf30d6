import logging
import re
import sys
import contextvars
from contextlib import contextmanager
from datetime import datetime, timezone
from pythonjsonlogger import jsonlogger

request_id_var = contextvars.ContextVar("request_id", default=None)
# queue_id/action_type of the attempt in progress, so Graph client logs can be joined to a row
queue_context_var = contextvars.ContextVar("queue_context", default=None)

SECRETS = ["token", "secret", "password", "key", "authorization", "cookie"]
SAFE_FIELDS = {"idempotency_key"}
REDACTED = "***REDACTED***"

# requests puts the full URL, query string included, into its exception text
_TOKEN_IN_TEXT = re.compile(r"(access_token=)[^&\s'\"]+")

def scrub(value: str) -> str:
    return _TOKEN_IN_TEXT.sub(r"\1" + REDACTED, value)

@contextmanager
def queue_context(**fields):
    token = queue_context_var.set({k: v for k, v in fields.items() if v is not None})
    try:
        yield
    finally:
        queue_context_var.reset(token)

class RedactingJsonFormatter(jsonlogger.JsonFormatter):
    def __init__(self, *args, environment: str = "local", service_name: str = "igqueue", **kwargs):
        super().__init__(*args, **kwargs)
        self.environment = environment
        self.service_name = service_name

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        if not log_record.get("timestamp"):
            log_record["timestamp"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        log_record["level"] = (log_record.get("level") or record.levelname).upper()

        req_id = request_id_var.get()
        if req_id:
            log_record["request_id"] = req_id
        for key, value in (queue_context_var.get() or {}).items():
            log_record.setdefault(key, value)

        log_record["environment"] = self.environment
        log_record["service_name"] = self.service_name

        for key, value in list(log_record.items()):
            if not isinstance(value, str):
                continue
            if key not in SAFE_FIELDS and any(s in key.lower() for s in SECRETS):
                log_record[key] = REDACTED
            elif "access_token=" in value:
                log_record[key] = scrub(value)

def setup_logging(level: str = "INFO", environment: str = "local"):
    logger = logging.getLogger()
    logger.setLevel(level.upper())

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(RedactingJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        environment=environment,
    ))
    logger.addHandler(handler)

    # Tone down noisy access and scheduler logs
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}

def log_event(event: str, level: str = "info", **fields):
    """Log one structured queue event; None-valued fields are dropped."""
    extra = {k: v for k, v in fields.items() if v is not None}
    extra["event"] = event
    logging.getLogger("igqueue").log(_LEVELS.get(level.lower(), logging.INFO), event, extra=extra)
