from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from growthengine.automation.scheduler import ASSIGN_LEADS, build_scheduler
from growthengine.core.config import get_settings
from growthengine.core.database import Base, get_db
from growthengine.crm.api import get_current_user
from growthengine.crm.models import CRMDeal, CRMUser
from growthengine.crm.service import ActorUser
from growthengine.logging import CorrelationIdFilter, JsonLogFormatter
from growthengine.main import app


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id=uuid.uuid4(), email="rep@example.com", role="rep")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_log_carries_correlation_id_and_route_label(
    client: TestClient, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/deals/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers["x-correlation-id"] == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"

    records = [
        record
        for record in caplog.records
        if record.name == "growthengine.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/deals/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_correlation_id_is_generated_when_missing(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    generated = response.headers["x-correlation-id"]
    assert uuid.UUID(generated)


def test_sweep_logs_carry_sweep_name_and_run_correlation_id(
    session_factory: sessionmaker[Session],
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    rep = CRMUser(email="rep@example.com", role="rep")
    db_session.add(rep)
    db_session.add(CRMDeal(name="Inbound lead", stage="Lead"))
    db_session.commit()

    caplog.set_level(logging.INFO)
    caplog.handler.addFilter(CorrelationIdFilter())
    scheduler = build_scheduler(session_factory=session_factory)

    run = scheduler.run_now(ASSIGN_LEADS)

    assert run.status == "succeeded"
    assert run.summary == {"assigned": 1, "skipped": 0}
    assigned = [record for record in caplog.records if record.getMessage() == "assignment.assigned"]
    assert assigned
    assert getattr(assigned[0], "sweep", None) == ASSIGN_LEADS
    assert getattr(assigned[0], "correlation_id", None) == run.correlation_id
    assert run.correlation_id is not None
    assert run.correlation_id.startswith(f"sweep-{ASSIGN_LEADS}-")
    assert any(record.getMessage() == "sweep.finished" for record in caplog.records)


def test_json_formatter_keeps_known_fields_and_truncates_errors() -> None:
    record = logging.LogRecord(
        name="growthengine.automation.escalation",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg="escalation.deal_failed",
        args=(),
        exc_info=None,
    )
    record.correlation_id = "sweep-check_stale_deals-1"
    record.tier = "B"
    record.deal_id = "5b0f7d2e-0000-4000-8000-000000000001"
    record.error = "x" * 900
    record.secret_token = "do-not-log"
    record.request_state = {"correlation_id": "dropped"}

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["level"] == "WARNING"
    assert payload["msg"] == "escalation.deal_failed"
    assert payload["correlation_id"] == "sweep-check_stale_deals-1"
    assert payload["fields"]["tier"] == "B"
    assert len(payload["fields"]["error"]) == 500
    assert set(payload["fields"]) == {"tier", "deal_id", "error"}
