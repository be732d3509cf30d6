from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from igqueue.db import make_session_factory
from igqueue.models import Base, BusinessAccount, InstagramCredential
from igqueue.services.action_queue import ActionQueue
from igqueue.services.classifier import RetryPolicy
from igqueue.services.credentials import CredentialResolver
from igqueue.services.executors import build_executors
from igqueue.services.graph_client import GraphClient
from igqueue.services.hooks import default_hooks
from igqueue.services.queue_store import ActionQueueStore
from igqueue.services.rate_limits import RateLimitGate
from igqueue.tests.helpers import ACCOUNT_ID, IG_USER_ID, PAGE_TOKEN, FakeClock

@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()

@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def account(session_factory, clock):
    db = session_factory()
    db.add(BusinessAccount(id=ACCOUNT_ID, instagram_business_id=IG_USER_ID, user_id="user-1"))
    db.add(InstagramCredential(
        user_id="user-1",
        business_account_id=ACCOUNT_ID,
        token_type="page",
        access_token=PAGE_TOKEN,
        expires_at=clock() + timedelta(days=30),
    ))
    db.commit()
    db.close()
    return ACCOUNT_ID

@pytest.fixture
def graph():
    g = MagicMock(spec=GraphClient)
    g.create_media_container.return_value = "X"
    g.publish_media_container.return_value = "M"
    return g

@pytest.fixture
def store(session_factory, clock):
    return ActionQueueStore(session_factory, now=clock)

@pytest.fixture
def rate_limits():
    return RateLimitGate(default_cooldown_seconds=3600)

@pytest.fixture
def queue(store, graph, session_factory, clock, rate_limits):
    return ActionQueue(
        store=store,
        executors=build_executors(graph, store, session_factory),
        resolver_factory=lambda: CredentialResolver(session_factory, now=clock),
        policy=RetryPolicy(max_attempts=5, base_seconds=60, cap_seconds=3600),
        rate_limits=rate_limits,
        hooks=default_hooks(session_factory),
        now=clock,
    )
