import uuid
import datetime
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .config import Settings, get_settings
from .db import make_engine, make_session_factory
from .logging_setup import log_event, request_id_var, setup_logging
from .models import Base
from .routes import publishing, queue_admin
from .services.action_queue import ActionQueue
from .services.classifier import RetryPolicy
from .services.credentials import CredentialResolver
from .services.executors import build_executors
from .services.graph_client import GraphClient
from .services.hooks import default_hooks
from .services.queue_store import ActionQueueStore
from .services.rate_limits import RateLimitGate
from .services.retry_sweeper import RetrySweeper
from .services.scheduler import start_scheduler

def build_action_queue(settings: Settings, session_factory, graph: GraphClient | None = None) -> tuple[ActionQueue, RetrySweeper]:
    """Wire the queue from explicit parts; nothing here is a process-wide singleton."""
    graph = graph or GraphClient(
        settings.graph_api_base,
        timeout=settings.graph_timeout_seconds,
        reply_timeout=settings.graph_reply_timeout_seconds,
    )
    store = ActionQueueStore(session_factory)
    gate = RateLimitGate(default_cooldown_seconds=settings.rate_limit_default_cooldown_seconds)
    queue = ActionQueue(
        store=store,
        executors=build_executors(graph, store, session_factory),
        resolver_factory=lambda: CredentialResolver(session_factory),
        policy=RetryPolicy.from_settings(settings),
        rate_limits=gate,
        hooks=default_hooks(session_factory),
    )
    sweeper = RetrySweeper(
        queue,
        store,
        rate_limits=gate,
        batch_size=settings.sweep_batch_size,
        pending_grace_seconds=settings.pending_grace_seconds,
    )
    return queue, sweeper

def create_app(settings: Settings | None = None, graph: GraphClient | None = None, engine=None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.environment)

    engine = engine or make_engine(
        settings.database_url,
        connect_timeout=settings.db_connect_timeout_seconds,
        statement_timeout_ms=settings.db_statement_timeout_ms,
        pool_timeout=settings.db_pool_timeout_seconds,
    )
    session_factory = make_session_factory(engine)
    queue, sweeper = build_action_queue(settings, session_factory, graph)

    app = FastAPI(title="igqueue - Instagram outbound action queue")
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.action_queue = queue
    app.state.queue_store = queue.store
    app.state.sweeper = sweeper
    app.state.scheduler = None

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        req_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
        token = request_id_var.set(req_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-Id"] = req_id
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        log_event("unhandled_exception", level="error", path=request.url.path, error=repr(exc), error_type=type(exc).__name__)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error", "type": type(exc).__name__},
        )

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "scheduler": "running" if app.state.scheduler else "disabled",
            "now": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

    @app.get("/ready")
    def readiness_check():
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1 FROM post_queue LIMIT 1"))
            return {"status": "ready"}
        except Exception:
            return JSONResponse(status_code=503, content={"status": "not_ready", "detail": "Database migrations pending or DB unreachable."})

    app.include_router(publishing.router)
    app.include_router(queue_admin.router)

    @app.on_event("startup")
    def on_startup():
        Base.metadata.create_all(bind=engine)
        log_event("startup_tables_ready")

        if not settings.post_fallback_enabled:
            log_event("queue_sweep_disabled", reason="POST_FALLBACK_ENABLED is not true")
            return
        try:
            app.state.scheduler = start_scheduler(sweeper, settings.sweep_interval_minutes)
        except Exception as e:
            log_event("scheduler_start_failed", level="error", error=repr(e))
            app.state.scheduler = None

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.scheduler:
            app.state.scheduler.shutdown(wait=False)
            log_event("queue_sweep_stopped")

    return app
