"""Pytest fixtures: sqlite DB, API client, fake upstream fetch client."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("API_KEY", "")

import threading

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mailsync.database import enable_sqlite_savepoints, get_sync_db
from mailsync.fetch_client import FetchClient
from mailsync.main import app
from mailsync.models import Account, Base
from mailsync.rate_limiter import TokenBucket, reset_rate_limiters


class FakeFetchClient(FetchClient):
    """
    Routes upstream URLs to canned responses by the longest matching URL
    fragment. A route holds a queue: each call pops the next entry and the last
    one repeats. Entries may be dicts, exceptions (raised) or callables.
    """

    def __init__(self):
        self.routes: dict[str, list] = {}
        self.calls: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def add(self, fragment: str, *responses):
        self.routes.setdefault(fragment, []).extend(responses)
        return self

    def calls_to(self, fragment: str) -> list[tuple[str, dict]]:
        return [(url, opts) for url, opts in self.calls if url.endswith(fragment)]

    def request(self, account_id, external_user_id, target_url, options=None):
        options = options or {}
        with self._lock:
            self.calls.append((target_url, options))
            matches = [f for f in self.routes if f in target_url]
            if not matches:
                raise AssertionError(f"Unexpected upstream call: {target_url}")
            queue = self.routes[max(matches, key=len)]
            response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            return response(target_url, options)
        return response


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fetch_client():
    return FakeFetchClient()


@pytest.fixture
def limiter():
    """Bucket large enough that tests never wait."""
    return TokenBucket(10_000, 10_000.0)


@pytest.fixture(autouse=True)
def _fresh_rate_limiters():
    reset_rate_limiters()
    yield
    reset_rate_limiters()


@pytest.fixture
def make_account(db_session):
    def _make(provider="gmail", *, user_id="user-1", email="me@example.com", sync_state=None, external_id=None):
        account = Account(
            user_id=user_id,
            external_account_id=external_id or f"apn_{provider}_{user_id}",
            email=email,
            provider=provider,
            is_active=True,
            sync_state=sync_state or {},
        )
        db_session.add(account)
        db_session.commit()
        return account

    return _make


@pytest.fixture
def gmail_account(make_account):
    return make_account("gmail")


@pytest.fixture
def calendar_account(make_account):
    return make_account("google_calendar")


@pytest.fixture
def contacts_account(make_account):
    return make_account("google_contacts")


@pytest.fixture
def client(db_session):
    """
    API client sharing the test session, so rows seeded by a test are visible
    to handlers and rows written by handlers are visible to assertions.
    """

    def override_get_sync_db():
        yield db_session

    app.dependency_overrides[get_sync_db] = override_get_sync_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
