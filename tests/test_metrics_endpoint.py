from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mobilecrm import audit, events
from mobilecrm.core.auth import create_access_token, hash_password
from mobilecrm.core.config import get_settings
from mobilecrm.core.database import Base, get_db
from mobilecrm.identity.models import User
from mobilecrm.main import app


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
    monkeypatch.setenv("BCRYPT_ROUNDS", "4")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _make_user(db_session: Session, name: str, role: str = "user") -> User:
    user = User(name=name, email=f"{name.lower()}@example.com", password_hash=hash_password("secret123"), role=role)
    db_session.add(user)
    db_session.commit()
    return user


def _auth(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


def test_metrics_endpoint_exposes_http_and_transition_metrics(client: TestClient, db_session: Session) -> None:
    admin = _make_user(db_session, "Admin", role="admin")

    health = client.get("/api/health")
    assert health.status_code == 200
    assert client.get("/api/customers").status_code == 401

    pipeline = client.post(
        "/api/pipeline",
        json={"name": "Metrics", "stages": [{"name": "Open", "probability": 30}, {"name": "Won", "probability": 100}]},
        headers=_auth(admin),
    ).json()["data"]["pipeline"]
    customer = client.post(
        "/api/customers",
        json={"name": "Metrics Co", "email": "metrics@co.com", "phone": "555-0100"},
        headers=_auth(admin),
    ).json()["data"]["customer"]
    opportunity = client.post(
        "/api/opportunities",
        json={
            "title": "Metrics deal",
            "value": 100,
            "stage": "Open",
            "pipeline_id": pipeline["id"],
            "customer_id": customer["id"],
            "salesperson_id": str(admin.id),
        },
        headers=_auth(admin),
    ).json()["data"]["opportunity"]
    moved = client.put(
        f"/api/opportunities/{opportunity['id']}",
        json={"stage": "Won", "status": "won"},
        headers=_auth(admin),
    )
    assert moved.status_code == 200

    metrics = client.get("/metrics", headers=_auth(admin))
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_opportunity_transitions_total" in body
    assert "auth_failures_total" in body

    assert 'path="/api/health"' in body
    assert 'path="/api/opportunities/{id}"' in body
    assert 'transition="created"' in body
    assert 'transition="stage_changed"' in body
    assert 'transition="closed_won"' in body
    assert 'reason="missing_token"' in body


def test_metrics_require_admin_role(client: TestClient, db_session: Session) -> None:
    manager = _make_user(db_session, "Manager", role="manager")

    response = client.get("/metrics", headers=_auth(manager))

    assert response.status_code == 403


def test_metrics_disabled_returns_not_found(
    client: TestClient,
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    admin = _make_user(db_session, "Admin", role="admin")
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics", headers=_auth(admin))

    assert response.status_code == 404
