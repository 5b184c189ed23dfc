from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

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


SALES_TEAM_ID = uuid.UUID("11111111-2222-3333-4444-555555555555")


def _make_user(db_session: Session, name: str, role: str = "user", team_id: uuid.UUID | None = None) -> User:
    user = User(
        name=name,
        email=f"{name.lower()}@example.com",
        password_hash=hash_password("secret123"),
        role=role,
        team_id=team_id,
    )
    db_session.add(user)
    db_session.commit()
    return user


def _auth(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


def _create_pipeline(client: TestClient, admin: User) -> str:
    response = client.post(
        "/api/pipeline",
        json={
            "name": "Sales",
            "stages": [
                {"name": "Lead", "probability": 10},
                {"name": "Qualified", "probability": 25},
                {"name": "Negotiation", "probability": 75},
            ],
        },
        headers=_auth(admin),
    )
    return response.json()["data"]["pipeline"]["id"]


def _create_customer(client: TestClient, user: User) -> str:
    response = client.post(
        "/api/customers",
        json={"name": f"{user.name} Account", "email": f"buyer-{user.name.lower()}@example.com", "phone": "555-0100"},
        headers=_auth(user),
    )
    return response.json()["data"]["customer"]["id"]


def _create_opportunity(
    client: TestClient,
    user: User,
    pipeline_id: str,
    customer_id: str,
    title: str,
    stage: str,
    value: float,
    closes_in_days: int | None,
) -> dict:
    payload: dict[str, object] = {
        "title": title,
        "value": value,
        "stage": stage,
        "pipeline_id": pipeline_id,
        "customer_id": customer_id,
        "salesperson_id": str(user.id),
    }
    if closes_in_days is not None:
        close_date = datetime.now(timezone.utc) + timedelta(days=closes_in_days)
        payload["expected_close_date"] = close_date.isoformat()
    response = client.post("/api/opportunities", json=payload, headers=_auth(user))
    assert response.status_code == 201, response.json()
    return response.json()["data"]["opportunity"]


@pytest.fixture()
def book(client: TestClient, db_session: Session) -> dict[str, User]:
    admin = _make_user(db_session, "Admin", role="admin")
    manager = _make_user(db_session, "Manager", role="manager")
    alice = _make_user(db_session, "Alice", team_id=SALES_TEAM_ID)
    bob = _make_user(db_session, "Bob")
    pipeline_id = _create_pipeline(client, admin)

    alice_customer = _create_customer(client, alice)
    _create_opportunity(client, alice, pipeline_id, alice_customer, "Soon", "Qualified", 1000.50, 10)
    _create_opportunity(client, alice, pipeline_id, alice_customer, "Later", "Negotiation", 2000, 45)
    _create_opportunity(client, alice, pipeline_id, alice_customer, "Far", "Qualified", 500, 90)
    _create_opportunity(client, alice, pipeline_id, alice_customer, "Undated", "Lead", 99.5, None)
    won = _create_opportunity(client, alice, pipeline_id, alice_customer, "Closed", "Negotiation", 700, 5)
    client.put(f"/api/opportunities/{won['id']}", json={"status": "won"}, headers=_auth(alice))

    bob_customer = _create_customer(client, bob)
    _create_opportunity(client, bob, pipeline_id, bob_customer, "Bob deal", "Negotiation", 5000, 3)

    return {"admin": admin, "manager": manager, "alice": alice, "bob": bob}


def test_dashboard_stats_cover_callers_open_opportunities(client: TestClient, book: dict[str, User]) -> None:
    alice = book["alice"]
    for index, status_value in enumerate(["pending", "in_progress", "completed"]):
        client.post(
            "/api/activities",
            json={"type": "task", "subject": f"Task {index}", "assigned_to_id": str(alice.id), "status": status_value},
            headers=_auth(alice),
        )

    response = client.get("/api/dashboard/stats", headers=_auth(alice))

    assert response.status_code == 200
    stats = response.json()["data"]
    assert stats["total_opportunities"] == 4
    assert stats["total_value"] == 3600
    # 250.125 + 1500 + 125 + 9.95
    assert stats["weighted_value"] == 1885
    assert stats["upcoming_closing"] == 1
    assert stats["expected_closing"] == 2
    assert stats["upcoming_closing"] <= stats["expected_closing"]
    assert stats["pending_activities"] == 2
    assert len(stats["recent_activities"]) == 3
    assert stats["pipeline_breakdown"] == [
        {"stage": "Qualified", "count": 2, "total_value": 1501, "weighted_value": 375},
        {"stage": "Lead", "count": 1, "total_value": 100, "weighted_value": 10},
        {"stage": "Negotiation", "count": 1, "total_value": 2000, "weighted_value": 1500},
    ]


def test_dashboard_is_owner_scoped_even_for_admins(client: TestClient, book: dict[str, User]) -> None:
    response = client.get("/api/dashboard/stats", headers=_auth(book["admin"]))

    stats = response.json()["data"]
    assert stats["total_opportunities"] == 0
    assert stats["total_value"] == 0
    assert stats["pipeline_breakdown"] == []


def test_recent_activities_newest_first_with_limit(client: TestClient, book: dict[str, User]) -> None:
    bob = book["bob"]
    for subject in ["One", "Two", "Three"]:
        client.post(
            "/api/activities",
            json={"type": "note", "subject": subject, "assigned_to_id": str(bob.id)},
            headers=_auth(bob),
        )

    response = client.get("/api/dashboard/recent-activities", params={"limit": 2}, headers=_auth(bob))

    assert response.status_code == 200
    assert [item["subject"] for item in response.json()["data"]["activities"]] == ["Three", "Two"]
    assert client.get("/api/dashboard/recent-activities", params={"limit": 0}, headers=_auth(bob)).status_code == 400


def test_forecast_windows_for_user_role(client: TestClient, book: dict[str, User]) -> None:
    response = client.get("/api/forecast", headers=_auth(book["alice"]))

    assert response.status_code == 200
    forecast = response.json()["data"]
    assert [item["title"] for item in forecast["upcoming_closing"]] == ["Soon"]
    assert [item["title"] for item in forecast["expected_closing"]] == ["Soon", "Later"]
    assert forecast["total_value"] == 3600
    assert forecast["weighted_value"] == 1885


def test_forecast_narrowing_for_managers(client: TestClient, book: dict[str, User]) -> None:
    headers = _auth(book["manager"])

    everything = client.get("/api/forecast", headers=headers).json()["data"]
    assert [item["title"] for item in everything["upcoming_closing"]] == ["Bob deal", "Soon"]
    assert everything["total_value"] == 8600

    by_team = client.get("/api/forecast", params={"teamId": str(SALES_TEAM_ID)}, headers=headers).json()["data"]
    assert by_team["total_value"] == 3600

    by_user = client.get("/api/forecast", params={"userId": str(book["bob"].id)}, headers=headers).json()["data"]
    assert [item["title"] for item in by_user["expected_closing"]] == ["Bob deal"]
    assert by_user["weighted_value"] == 3750


def test_user_role_cannot_widen_forecast_with_user_filter(client: TestClient, book: dict[str, User]) -> None:
    response = client.get("/api/forecast", params={"userId": str(book["bob"].id)}, headers=_auth(book["alice"]))

    forecast = response.json()["data"]
    assert forecast["upcoming_closing"] == []
    assert forecast["total_value"] == 0


def test_opportunity_overview_groups_by_status(client: TestClient, book: dict[str, User]) -> None:
    response = client.get("/api/opportunities/stats/overview", headers=_auth(book["alice"]))

    assert response.status_code == 200
    overview = response.json()["data"]
    assert overview["total_opportunities"] == 5
    assert overview["status_stats"] == [
        {"status": "open", "count": 4, "total_value": 3600, "weighted_value": 1885},
        {"status": "won", "count": 1, "total_value": 700, "weighted_value": 525},
    ]


def test_opportunity_overview_is_owner_scoped_for_every_role(client: TestClient, book: dict[str, User]) -> None:
    for role_user in (book["admin"], book["manager"]):
        response = client.get("/api/opportunities/stats/overview", headers=_auth(role_user))

        assert response.status_code == 200
        assert response.json()["data"]["total_opportunities"] == 0
        assert response.json()["data"]["status_stats"] == []

    bob_view = client.get("/api/opportunities/stats/overview", headers=_auth(book["bob"])).json()["data"]
    assert bob_view["total_opportunities"] == 1
    assert bob_view["status_stats"] == [{"status": "open", "count": 1, "total_value": 5000, "weighted_value": 3750}]
