"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api
sys.path.insert(0, str(Path(__file__).resolve().parent))  # => .../apps/api/tests (fakes)

# Keep pytest's log capture handlers on the root logger
os.environ.setdefault("MPW_JSON_LOGS", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fakes import build_fake_dependencies
from mpw_api.container import Dependencies
from mpw_api.db.models import Base
from mpw_api.main import app

_ENV_VARS = (
    "MERCADOPAGO_WEBHOOK_SECRET",
    "MERCADOPAGO_WEBHOOK_STRICT_SIGNATURE",
    "MERCADOPAGO_NOTIFICATION_URL",
    "MERCADOPAGO_ACCESS_TOKEN",
    "INTERNAL_API_TOKEN",
    "MPW_ENV",
    "APP_ENV",
    "RETRY_TTLS_MS",
    "MAX_ATTEMPTS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Tests start from defaults; each test sets what it needs."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(scope="function")
def session_factory() -> sessionmaker[Session]:
    """Sessionmaker over a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

    try:
        yield factory
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def deps() -> Dependencies:
    """Dependency graph wired with in-memory fakes."""
    return build_fake_dependencies()


@pytest.fixture
def client(deps: Dependencies) -> TestClient:
    """Test client for the FastAPI app with fake dependencies attached."""
    app.state.deps = deps
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.state.deps = None
