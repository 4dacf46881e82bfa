from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from growthengine.automation.notify import create_notification
from growthengine.core.config import get_settings
from growthengine.core.database import Base, get_db
from growthengine.crm.api import get_current_user
from growthengine.crm.models import CRMNotification, CRMUser
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def users(db_session: Session) -> dict[str, CRMUser]:
    team = {
        "rep": CRMUser(email="rep@example.com", role="rep"),
        "other": CRMUser(email="other@example.com", role="rep"),
    }
    db_session.add_all(team.values())
    db_session.commit()
    return team


@pytest.fixture()
def client(db_session: Session, users: dict[str, CRMUser]) -> Generator[TestClient, None, None]:
    rep_id = users["rep"].id

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id=rep_id, email="rep@example.com", role="rep")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _notify(session: Session, user: CRMUser, title: str) -> CRMNotification:
    notification = create_notification(session, user_id=user.id, type="WORKFLOW", title=title)
    session.commit()
    assert notification is not None
    return notification


def test_inbox_lists_only_own_notifications(client: TestClient, db_session: Session, users: dict[str, CRMUser]) -> None:
    _notify(db_session, users["rep"], "Mine")
    _notify(db_session, users["other"], "Theirs")

    response = client.get("/api/notifications")

    assert response.status_code == 200
    assert [item["title"] for item in response.json()] == ["Mine"]


def test_mark_read_and_read_all(client: TestClient, db_session: Session, users: dict[str, CRMUser]) -> None:
    first = _notify(db_session, users["rep"], "First")
    _notify(db_session, users["rep"], "Second")
    _notify(db_session, users["rep"], "Third")

    marked = client.patch(f"/api/notifications/{first.id}/read")
    assert marked.status_code == 200
    assert marked.json()["is_read"] is True

    unread = client.get("/api/notifications", params={"unread_only": "true"}).json()
    assert sorted(item["title"] for item in unread) == ["Second", "Third"]

    all_read = client.patch("/api/notifications/read-all")
    assert all_read.json() == {"updated": 2}
    assert client.get("/api/notifications", params={"unread_only": "true"}).json() == []


def test_cannot_mark_someone_elses_notification(client: TestClient, db_session: Session, users: dict[str, CRMUser]) -> None:
    theirs = _notify(db_session, users["other"], "Theirs")

    response = client.patch(f"/api/notifications/{theirs.id}/read")
    assert response.status_code == 404
    assert client.patch(f"/api/notifications/{uuid.uuid4()}/read").status_code == 404
