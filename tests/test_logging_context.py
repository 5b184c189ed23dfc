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

from mobilecrm import audit, events
from mobilecrm.core.auth import create_access_token, hash_password
from mobilecrm.core.config import get_settings
from mobilecrm.core.database import Base, get_db
from mobilecrm.identity.models import User
from mobilecrm.logging import JsonLogFormatter
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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
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


@pytest.fixture()
def user(db_session: Session) -> User:
    record = User(name="Logger", email="logger@example.com", password_hash=hash_password("secret123"))
    db_session.add(record)
    db_session.commit()
    return record


def _auth(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


def test_logs_include_correlation_id_for_http(
    client: TestClient,
    user: User,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/customers/{uuid.uuid4()}"
    response = client.get(path, headers={**_auth(user), "X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "mobilecrm.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/customers/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "user_id", None) == str(user.id)
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_rejected_auth_is_logged_with_reason(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/customers", headers={"X-Correlation-Id": "auth-corr-1"})
    assert response.status_code == 401

    records = [record for record in caplog.records if record.name == "mobilecrm.auth"]
    assert any(
        record.getMessage() == "auth.rejected"
        and getattr(record, "reason", None) == "missing_token"
        and getattr(record, "correlation_id", None) == "auth-corr-1"
        for record in records
    )


def test_domain_transition_is_logged(
    client: TestClient,
    db_session: Session,
    user: User,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    admin = User(name="Admin", email="admin@example.com", password_hash=hash_password("secret123"), role="admin")
    db_session.add(admin)
    db_session.commit()

    pipeline = client.post(
        "/api/pipeline",
        json={"name": "Log", "stages": [{"name": "Open", "probability": 20}, {"name": "Won", "probability": 100}]},
        headers=_auth(admin),
    ).json()["data"]["pipeline"]
    customer = client.post(
        "/api/customers",
        json={"name": "Log Co", "email": "log@co.com", "phone": "555-0100"},
        headers=_auth(user),
    ).json()["data"]["customer"]
    opportunity = client.post(
        "/api/opportunities",
        json={
            "title": "Log deal",
            "value": 10,
            "stage": "Open",
            "pipeline_id": pipeline["id"],
            "customer_id": customer["id"],
            "salesperson_id": str(user.id),
        },
        headers=_auth(user),
    ).json()["data"]["opportunity"]

    client.put(
        f"/api/opportunities/{opportunity['id']}",
        json={"status": "won"},
        headers={**_auth(user), "X-Correlation-Id": "won-corr-1"},
    )

    lifecycle = [record for record in caplog.records if record.name == "mobilecrm.lifecycle"]
    assert any(
        record.getMessage() == "domain_event"
        and getattr(record, "event_name", None) == "crm.opportunity.closed_won"
        and getattr(record, "entity_id", None) == opportunity["id"]
        and getattr(record, "correlation_id", None) == "won-corr-1"
        for record in lifecycle
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "mobilecrm.request",
            "levelname": "INFO",
            "msg": "http.request",
            "method": "GET",
            "path": "/api/health",
            "secret": "do-not-log",
            "correlation_id": "fmt-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "http.request"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"method": "GET", "path": "/api/health"}


def test_request_log_carries_client_platform(client: TestClient, user: User, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    client.get("/api/settings", headers={**_auth(user), "X-Client-Platform": "Android"})
    client.get("/api/settings", headers={**_auth(user), "X-Client-Platform": "blackberry"})

    platforms = [
        getattr(record, "client_platform", None)
        for record in caplog.records
        if record.name == "mobilecrm.request" and getattr(record, "path", None) == "/api/settings"
    ]
    assert platforms == ["android", "unknown"]
