import time
import logging
from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

def normalize_database_url(db_url: str) -> str:
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)
    if db_url.startswith("postgresql://") and "+psycopg" not in db_url:
        db_url = db_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return db_url

def make_engine(
    db_url: str,
    retries: int = 3,
    backoff: float = 2.0,
    connect_timeout: int = 10,
    statement_timeout_ms: int = 30000,
    pool_timeout: int = 30,
):
    """
    Build an engine and verify it with a SELECT 1, retrying with exponential backoff.

    Store calls are bounded like Graph calls: on Postgres, connect_timeout caps the
    connect, statement_timeout caps every statement server-side, and pool_timeout
    caps the wait for a pooled connection. SQLite only gets a busy timeout.
    In-memory SQLite gets a StaticPool so every session shares one connection.
    """
    db_url = normalize_database_url(db_url)

    kwargs = {"pool_pre_ping": True}
    if db_url.startswith("postgresql"):
        kwargs["connect_args"] = {
            "connect_timeout": connect_timeout,
            "options": f"-c statement_timeout={statement_timeout_ms}",
        }
        kwargs["pool_timeout"] = pool_timeout
    elif db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": connect_timeout}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    engine = create_engine(db_url, **kwargs)

    # WAL mode prevents "database is locked" errors when the sweeper and requests overlap
    if db_url.startswith("sqlite") and "poolclass" not in kwargs:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    for attempt in range(retries):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return engine
        except Exception as e:
            if attempt < retries - 1:
                logger.warning(f"Database connection failed. Retrying in {backoff}s... ({e})")
                time.sleep(backoff)
                backoff *= 2
            else:
                logger.error(f"Failed all DB connection attempts for {engine.url!r}.")
                raise

def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
