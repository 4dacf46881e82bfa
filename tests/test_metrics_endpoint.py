from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from growthengine.core.config import get_settings
from growthengine.core.database import Base, get_db
from growthengine.crm.api import get_current_user
from growthengine.crm.service import ActorUser
from growthengine.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def acting_as() -> dict[str, str]:
    return {"role": "admin"}


@pytest.fixture()
def client(db_session: Session, acting_as: dict[str, str]) -> Generator[TestClient, None, None]:
    user_id = uuid.uuid4()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id=user_id, email="ops@example.com", role=acting_as["role"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_sweep_metrics(client: TestClient) -> None:
    assert client.get("/health").status_code == 200
    deal = client.post("/api/deals", json={"name": "Metrics lead"})
    assert deal.status_code == 201

    metrics = client.get("/metrics")

    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")
    body = metrics.text
    assert "http_requests_total" in body
    assert 'path="/api/deals"' in body
    assert "http_request_duration_seconds" in body
    assert "growth_sweep_runs_total" in body
    assert "growth_lead_score" in body


def test_metrics_endpoint_is_admin_only(client: TestClient, acting_as: dict[str, str]) -> None:
    acting_as["role"] = "rep"

    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
