"""Run a single retry sweep against the configured database and print the tally."""
import os
import json
from dotenv import load_dotenv

from igqueue.config import get_settings
from igqueue.db import make_engine, make_session_factory
from igqueue.logging_setup import setup_logging
from igqueue.main import build_action_queue
from igqueue.models import Base

def main():
    base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    load_dotenv(os.path.join(base_dir, '.env'))

    settings = get_settings()
    setup_logging(settings.log_level, settings.environment)

    engine = make_engine(
        settings.database_url,
        connect_timeout=settings.db_connect_timeout_seconds,
        statement_timeout_ms=settings.db_statement_timeout_ms,
        pool_timeout=settings.db_pool_timeout_seconds,
    )
    Base.metadata.create_all(bind=engine)
    _, sweeper = build_action_queue(settings, make_session_factory(engine))

    result = sweeper.run_once()
    print(json.dumps(result.as_dict(), indent=2))

if __name__ == "__main__":
    main()
