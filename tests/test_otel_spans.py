from __future__ import annotations

import os
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from mobilecrm.core.auth import create_access_token, hash_password
from mobilecrm.core.config import get_settings
from mobilecrm.core.database import Base, get_db
from mobilecrm.identity.models import User
from mobilecrm.main import app
from mobilecrm.otel import setup_inmemory_otel


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
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("mobilecrm-api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def owner(db_session: Session) -> User:
    user = User(name="Tracer", email="tracer@example.com", password_hash=hash_password("secret123"), role="manager")
    db_session.add(user)
    db_session.commit()
    return user


def _auth(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


def test_request_span_contains_correlation_id(client: TestClient, owner: User, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/leads",
        json={"first_name": "Span", "last_name": "Lead", "email": "span@lead.com"},
        headers={**_auth(owner), "X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_opportunity_spans_wrap_lifecycle(client: TestClient, owner: User, span_exporter: InMemorySpanExporter) -> None:
    pipeline = client.post(
        "/api/pipeline",
        json={"name": "Traced", "stages": [{"name": "Open", "probability": 40}, {"name": "Commit", "probability": 80}]},
        headers=_auth(owner),
    ).json()["data"]["pipeline"]
    customer = client.post(
        "/api/customers",
        json={"name": "Traced Co", "email": "traced@co.com", "phone": "555-0100"},
        headers=_auth(owner),
    ).json()["data"]["customer"]
    opportunity = client.post(
        "/api/opportunities",
        json={
            "title": "Traced deal",
            "value": 50,
            "stage": "Open",
            "pipeline_id": pipeline["id"],
            "customer_id": customer["id"],
            "salesperson_id": str(owner.id),
        },
        headers=_auth(owner),
    ).json()["data"]["opportunity"]
    client.put(
        f"/api/opportunities/{opportunity['id']}",
        json={"stage": "Commit"},
        headers=_auth(owner),
    )

    names = [span.name for span in span_exporter.get_finished_spans()]
    assert "crm.opportunity.create" in names
    update_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.opportunity.update"]
    assert update_spans
    assert update_spans[-1].attributes.get("crm.opportunity_id") == opportunity["id"]
