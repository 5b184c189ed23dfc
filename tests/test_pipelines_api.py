from __future__ import annotations

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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
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


STAGES = [
    {"name": "Prospecting", "probability": 10, "color": "#9E9E9E"},
    {"name": "Proposal", "probability": 50},
    {"name": "Closing", "probability": 90},
]


def _create_pipeline(client: TestClient, user: User, name: str = "Enterprise", is_default: bool = False) -> dict:
    response = client.post(
        "/api/pipeline",
        json={"name": name, "stages": STAGES, "is_default": is_default},
        headers=_auth(user),
    )
    assert response.status_code == 201, response.json()
    return response.json()["data"]["pipeline"]


def _create_opportunity(client: TestClient, user: User, pipeline_id: str, stage: str, value: float) -> dict:
    customer = client.post(
        "/api/customers",
        json={"name": "Globex", "email": f"{uuid.uuid4().hex[:8]}@globex.com", "phone": "555-0101"},
        headers=_auth(user),
    )
    assert customer.status_code == 201
    response = client.post(
        "/api/opportunities",
        json={
            "title": f"{stage} deal",
            "value": value,
            "stage": stage,
            "pipeline_id": pipeline_id,
            "customer_id": customer.json()["data"]["customer"]["id"],
            "salesperson_id": str(user.id),
        },
        headers=_auth(user),
    )
    assert response.status_code == 201
    return response.json()["data"]["opportunity"]


def test_create_pipeline_assigns_stage_order_and_requires_role(client: TestClient, db_session: Session) -> None:
    manager = _make_user(db_session, "Manager", role="manager")
    rep = _make_user(db_session, "Rep")

    pipeline = _create_pipeline(client, manager)
    assert [stage["order"] for stage in pipeline["stages"]] == [1, 2, 3]
    assert pipeline["stages"][0]["color"] == "#9E9E9E"
    assert pipeline["stages"][1]["color"] == "#2196F3"
    assert any(item["event_type"] == "crm.pipeline.created" for item in events.published_events)

    forbidden = client.post("/api/pipeline", json={"name": "Mine", "stages": STAGES}, headers=_auth(rep))
    assert forbidden.status_code == 403
    assert forbidden.json() == {"status": "error", "message": "Access denied. Insufficient permissions."}


def test_pipeline_requires_unique_stage_names(client: TestClient, db_session: Session) -> None:
    admin = _make_user(db_session, "Admin", role="admin")

    response = client.post(
        "/api/pipeline",
        json={"name": "Dup", "stages": [{"name": "A", "probability": 1}, {"name": "A", "probability": 2}]},
        headers=_auth(admin),
    )

    assert response.status_code == 400
    assert response.json()["message"] == "Validation failed"


def test_stage_names_are_compared_after_trimming(client: TestClient, db_session: Session) -> None:
    admin = _make_user(db_session, "Admin", role="admin")

    response = client.post(
        "/api/pipeline",
        json={"name": "Padded", "stages": [{"name": "Won", "probability": 100}, {"name": "Won ", "probability": 90}]},
        headers=_auth(admin),
    )

    assert response.status_code == 400
    assert response.json()["message"] == "Validation failed"


def test_only_one_default_pipeline(client: TestClient, db_session: Session) -> None:
    admin = _make_user(db_session, "Admin", role="admin")
    first = _create_pipeline(client, admin, name="First", is_default=True)
    second = _create_pipeline(client, admin, name="Second", is_default=True)

    response = client.get("/api/pipeline", headers=_auth(admin))

    assert response.status_code == 200
    pipelines = {item["id"]: item for item in response.json()["data"]["pipelines"]}
    assert pipelines[second["id"]]["is_default"] is True
    assert pipelines[first["id"]]["is_default"] is False


def test_detail_groups_open_opportunities_by_stage(client: TestClient, db_session: Session) -> None:
    admin = _make_user(db_session, "Admin", role="admin")
    rep = _make_user(db_session, "Rep")
    pipeline = _create_pipeline(client, admin)
    _create_opportunity(client, rep, pipeline["id"], "Proposal", 1000)
    _create_opportunity(client, rep, pipeline["id"], "Proposal", 500)
    _create_opportunity(client, rep, pipeline["id"], "Closing", 200)

    response = client.get(f"/api/pipeline/{pipeline['id']}", headers=_auth(rep))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_opportunities"] == 3
    buckets = {bucket["stage"]: bucket for bucket in data["stage_data"]}
    assert [bucket["stage"] for bucket in data["stage_data"]] == ["Prospecting", "Proposal", "Closing"]
    assert buckets["Proposal"]["count"] == 2
    assert buckets["Proposal"]["total_value"] == 1500
    assert buckets["Closing"]["probability"] == 90
    assert buckets["Prospecting"]["opportunities"] == []


def test_replacing_stages_keeps_existing_opportunity_probability(client: TestClient, db_session: Session) -> None:
    admin = _make_user(db_session, "Admin", role="admin")
    rep = _make_user(db_session, "Rep")
    pipeline = _create_pipeline(client, admin)
    opportunity = _create_opportunity(client, rep, pipeline["id"], "Proposal", 1000)

    updated = client.put(
        f"/api/pipeline/{pipeline['id']}",
        json={"stages": [{"name": "Proposal", "probability": 60}, {"name": "Closing", "probability": 95}]},
        headers=_auth(admin),
    )
    assert updated.status_code == 200
    assert [stage["probability"] for stage in updated.json()["data"]["pipeline"]["stages"]] == [60, 95]

    unchanged = client.get(f"/api/opportunities/{opportunity['id']}", headers=_auth(rep))
    assert unchanged.json()["data"]["opportunity"]["probability"] == 50

    moved = client.put(
        f"/api/opportunities/{opportunity['id']}",
        json={"stage": "Closing"},
        headers=_auth(rep),
    )
    assert moved.json()["data"]["opportunity"]["probability"] == 95


def test_delete_is_blocked_while_opportunities_reference_pipeline(client: TestClient, db_session: Session) -> None:
    admin = _make_user(db_session, "Admin", role="admin")
    pipeline = _create_pipeline(client, admin)
    empty = _create_pipeline(client, admin, name="Empty")
    opportunity = _create_opportunity(client, admin, pipeline["id"], "Proposal", 100)

    blocked = client.delete(f"/api/pipeline/{pipeline['id']}", headers=_auth(admin))
    assert blocked.status_code == 400
    assert blocked.json()["message"] == "Cannot delete pipeline with existing opportunities"

    client.delete(f"/api/opportunities/{opportunity['id']}", headers=_auth(admin))
    allowed = client.delete(f"/api/pipeline/{pipeline['id']}", headers=_auth(admin))
    assert allowed.status_code == 200
    assert client.get(f"/api/pipeline/{pipeline['id']}", headers=_auth(admin)).status_code == 404

    assert client.delete(f"/api/pipeline/{empty['id']}", headers=_auth(admin)).status_code == 200


def test_pipeline_opportunities_filter_by_stage(client: TestClient, db_session: Session) -> None:
    admin = _make_user(db_session, "Admin", role="admin")
    pipeline = _create_pipeline(client, admin)
    _create_opportunity(client, admin, pipeline["id"], "Proposal", 100)
    _create_opportunity(client, admin, pipeline["id"], "Closing", 300)

    response = client.get(
        f"/api/pipeline/{pipeline['id']}/opportunities",
        params={"stage": "Closing"},
        headers=_auth(admin),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert [item["title"] for item in data["opportunities"]] == ["Closing deal"]
    assert data["pagination"]["total"] == 1


def test_stats_overview_is_not_shadowed_by_detail_route(client: TestClient, db_session: Session) -> None:
    admin = _make_user(db_session, "Admin", role="admin")
    pipeline = _create_pipeline(client, admin)
    _create_opportunity(client, admin, pipeline["id"], "Proposal", 100.4)
    _create_opportunity(client, admin, pipeline["id"], "Proposal", 100.2)
    _create_opportunity(client, admin, pipeline["id"], "Closing", 300)

    response = client.get("/api/pipeline/stats/overview", headers=_auth(admin))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["total_opportunities"] == 3
    assert data["total_value"] == 501
    assert data["stage_stats"][0] == {"stage": "Proposal", "count": 2, "total_value": 201, "weighted_value": 100}
