"""Pytest configuration for adpulse service and HTTP tests

WHAT: Provides shared fixtures for service-level and endpoint tests
WHY: Ensures consistent test setup, database isolation, and fake platform clients
REFERENCES:
    - adpulse/main.py: create_app
    - adpulse/database.py: engine / session factories
    - adpulse/deps.py: Settings and dependency providers
"""

from datetime import datetime, timedelta
from typing import Generator

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from adpulse.database import build_engine, build_session_factory, init_db
from adpulse.deps import load_settings
from adpulse.models import Base, Connection, ConnectionStatus, ProviderEnum, Workspace
from adpulse.security import TokenCipher
from adpulse.services.cache import InMemoryTTLCache
from adpulse.services.meta_ads_client import LongLivedToken, TokenDebugInfo
from adpulse.services.token_service import store_connection_token


# ============================================================================
# Settings & Database Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Explicit settings; nothing is read from the environment."""
    return load_settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        TOKEN_ENCRYPTION_KEY=Fernet.generate_key().decode(),
        META_APP_ID="test-app",
        META_APP_SECRET="test-secret",
        GOOGLE_DEVELOPER_TOKEN="dev-token",
        GOOGLE_CLIENT_ID="client-id",
        GOOGLE_CLIENT_SECRET="client-secret",
        REDIS_URL=None,
        SENTRY_DSN=None,
    )


@pytest.fixture
def test_db_engine(settings):
    """In-memory SQLite engine shared by every session of one test."""
    engine = build_engine(settings.DATABASE_URL)
    init_db(engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return build_session_factory(test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def cipher(settings) -> TokenCipher:
    return TokenCipher(settings.TOKEN_ENCRYPTION_KEY)


@pytest.fixture
def cache() -> InMemoryTTLCache:
    return InMemoryTTLCache(default_ttl_seconds=300)


# ============================================================================
# Fake Platform Clients
# ============================================================================

class FakeMetaClient:
    """Stands in for MetaAdsClient; rows are keyed by level."""

    def __init__(self, rows_by_level=None, error=None, scopes=None, names_by_level=None, ad_accounts=None):
        self.rows_by_level = rows_by_level or {}
        self.error = error
        self.scopes = ["ads_read", "ads_management"] if scopes is None else scopes
        self.names_by_level = names_by_level or {}
        self.names_error = None
        self.ad_accounts = ad_accounts or []
        self.calls = []
        self.name_lookups = []
        self.exchanged = []

    def get_account_insights(self, ad_account_id, level, start_date, end_date):
        self.calls.append((ad_account_id, level, start_date, end_date))
        if self.error is not None:
            raise self.error
        return list(self.rows_by_level.get(level, []))

    def get_entity_names(self, account_id, level):
        self.name_lookups.append((account_id, level))
        if self.names_error is not None:
            raise self.names_error
        return dict(self.names_by_level.get(level, {}))

    def get_ad_accounts(self):
        if self.error is not None:
            raise self.error
        return list(self.ad_accounts)

    def exchange_long_lived_token(self, short_lived_token=None):
        self.exchanged.append(short_lived_token)
        return LongLivedToken(
            access_token="refreshed-token",
            token_type="bearer",
            expires_in=5183944,
            expires_at=datetime.utcnow() + timedelta(days=60),
        )

    def debug_token(self, input_token=None):
        return TokenDebugInfo(is_valid=True, scopes=list(self.scopes))


class FakeGoogleClient:
    """Stands in for GAdsClient; rows are keyed by GAQL level."""

    def __init__(self, rows_by_level=None, metadata=None, error=None):
        self.rows_by_level = rows_by_level or {}
        self.metadata = metadata or {"time_zone": "Europe/Amsterdam", "currency_code": "EUR"}
        self.error = error
        self.calls = []

    def get_customer_metadata(self, customer_id):
        return self.metadata

    def fetch_daily_metrics(self, customer_id, start, end, level="campaign"):
        self.calls.append((customer_id, start, end, level))
        if self.error is not None:
            raise self.error
        return list(self.rows_by_level.get(level, []))


@pytest.fixture
def fake_meta_client() -> FakeMetaClient:
    return FakeMetaClient()


@pytest.fixture
def fake_google_client() -> FakeGoogleClient:
    return FakeGoogleClient()


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_workspace(test_db_session):
    workspace = Workspace(name="Test Workspace", created_at=datetime.utcnow())
    test_db_session.add(workspace)
    test_db_session.commit()
    test_db_session.refresh(workspace)
    return workspace


@pytest.fixture
def meta_connection(test_db_session, test_workspace, cipher):
    """Meta connection with an encrypted long-lived token valid for 30 days."""
    connection = Connection(
        provider=ProviderEnum.meta,
        external_account_id="act_123",
        name="Meta Account",
        status=ConnectionStatus.active,
        timezone="UTC",
        currency_code="USD",
        workspace_id=test_workspace.id,
    )
    test_db_session.add(connection)
    test_db_session.flush()
    store_connection_token(
        test_db_session,
        connection,
        cipher,
        access_token="meta-access-token",
        expires_at=datetime.utcnow() + timedelta(days=30),
        scope="ads_read,ads_management",
    )
    test_db_session.commit()
    test_db_session.refresh(connection)
    return connection


@pytest.fixture
def google_connection(test_db_session, test_workspace, cipher):
    """Google connection with an encrypted refresh token and no timezone yet."""
    connection = Connection(
        provider=ProviderEnum.google,
        external_account_id="123-456-7890",
        name="Google Account",
        status=ConnectionStatus.active,
        workspace_id=test_workspace.id,
    )
    test_db_session.add(connection)
    test_db_session.flush()
    store_connection_token(
        test_db_session,
        connection,
        cipher,
        refresh_token="google-refresh-token",
    )
    test_db_session.commit()
    test_db_session.refresh(connection)
    return connection


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(settings, test_db_engine, session_factory, cipher, cache, fake_meta_client, fake_google_client):
    """FastAPI app sharing the test database and fake platform clients."""
    from adpulse.main import create_app

    test_app = create_app(settings)

    # Point every request at the per-test engine and collaborators
    test_app.state.engine = test_db_engine
    test_app.state.session_factory = session_factory
    test_app.state.cipher = cipher
    test_app.state.cache = cache
    test_app.state.meta_client_factory = lambda access_token: fake_meta_client
    test_app.state.google_client_factory = lambda connection, refresh_token: fake_google_client

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)
