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
from mobilecrm.crm.models import CRMCustomer
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


def _create_customer(client: TestClient, user: User, name: str, email: str, company: str | None = None) -> dict:
    payload = {"name": name, "email": email, "phone": "555-0100"}
    if company is not None:
        payload["company"] = company
    response = client.post("/api/customers", json=payload, headers=_auth(user))
    assert response.status_code == 201, response.json()
    return response.json()["data"]["customer"]


def test_create_customer_defaults_salesperson_to_caller(client: TestClient, db_session: Session) -> None:
    rep = _make_user(db_session, "Rep")

    response = client.post(
        "/api/customers",
        json={
            "name": "  Initech  ",
            "email": "Billing@Initech.COM",
            "phone": "555-0199",
            "address": {"city": "Austin", "country": "US"},
        },
        headers=_auth(rep),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Customer created successfully"
    customer = body["data"]["customer"]
    assert customer["name"] == "Initech"
    assert customer["email"] == "billing@initech.com"
    assert customer["status"] == "lead"
    assert customer["address"]["city"] == "Austin"
    assert customer["salesperson"]["id"] == str(rep.id)
    assert audit.audit_entries[-1]["action"] == "create"
    assert events.published_events[-1]["event_type"] == "crm.customer.created"


def test_create_customer_validates_email_and_phone(client: TestClient, db_session: Session) -> None:
    rep = _make_user(db_session, "Rep")

    response = client.post("/api/customers", json={"name": "NoPhone", "email": "not-an-email"}, headers=_auth(rep))

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "error"
    assert {item["field"] for item in body["errors"]} == {"email", "phone"}


def test_search_matches_name_email_and_company_case_insensitively(client: TestClient, db_session: Session) -> None:
    rep = _make_user(db_session, "Rep")
    _create_customer(client, rep, "Acme Rockets", "sales@rockets.com")
    _create_customer(client, rep, "Wile Coyote", "wile@ACME.com")
    _create_customer(client, rep, "Road Runner", "beep@desert.com", company="ACME Holdings")
    _create_customer(client, rep, "Globex", "info@globex.com")

    response = client.get("/api/customers", params={"search": "acme"}, headers=_auth(rep))

    assert response.status_code == 200
    data = response.json()["data"]
    assert {item["name"] for item in data["customers"]} == {"Acme Rockets", "Wile Coyote", "Road Runner"}
    assert data["pagination"] == {"current": 1, "pages": 1, "total": 3}


def test_user_role_only_sees_own_customers(client: TestClient, db_session: Session) -> None:
    alice = _make_user(db_session, "Alice")
    bob = _make_user(db_session, "Bob")
    manager = _make_user(db_session, "Manager", role="manager")
    mine = _create_customer(client, alice, "Alice Co", "a@alice.com")
    _create_customer(client, bob, "Bob Co", "b@bob.com")

    listed = client.get("/api/customers", headers=_auth(alice))
    assert [item["name"] for item in listed.json()["data"]["customers"]] == ["Alice Co"]

    hidden = client.get(f"/api/customers/{mine['id']}", headers=_auth(bob))
    assert hidden.status_code == 404
    assert hidden.json() == {"status": "error", "message": "Customer not found"}

    everything = client.get("/api/customers", headers=_auth(manager))
    assert everything.json()["data"]["pagination"]["total"] == 2


def test_pagination_and_sorting(client: TestClient, db_session: Session) -> None:
    rep = _make_user(db_session, "Rep")
    for name in ["Charlie", "Alpha", "Bravo"]:
        _create_customer(client, rep, name, f"{name.lower()}@example.com")

    first_page = client.get(
        "/api/customers",
        params={"sortBy": "name", "sortOrder": "asc", "limit": 2},
        headers=_auth(rep),
    )
    second_page = client.get(
        "/api/customers",
        params={"sortBy": "name", "sortOrder": "asc", "limit": 2, "page": 2},
        headers=_auth(rep),
    )

    assert [item["name"] for item in first_page.json()["data"]["customers"]] == ["Alpha", "Bravo"]
    assert first_page.json()["data"]["pagination"] == {"current": 1, "pages": 2, "total": 3}
    assert [item["name"] for item in second_page.json()["data"]["customers"]] == ["Charlie"]


def test_invalid_sort_field_is_rejected(client: TestClient, db_session: Session) -> None:
    rep = _make_user(db_session, "Rep")

    response = client.get("/api/customers", params={"sortBy": "password"}, headers=_auth(rep))

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid sort field: password"


def test_update_ignores_nulls_and_records_audit(client: TestClient, db_session: Session) -> None:
    rep = _make_user(db_session, "Rep")
    customer = _create_customer(client, rep, "Umbrella", "info@umbrella.com")

    response = client.put(
        f"/api/customers/{customer['id']}",
        json={"name": None, "status": "active", "tags": ["vip"]},
        headers=_auth(rep),
    )

    assert response.status_code == 200
    updated = response.json()["data"]["customer"]
    assert updated["name"] == "Umbrella"
    assert updated["status"] == "active"
    assert updated["tags"] == ["vip"]
    entry = audit.audit_entries[-1]
    assert entry["action"] == "update"
    assert entry["before"]["status"] == "lead"
    assert entry["after"]["status"] == "active"
    assert {"status", "tags"} <= set(entry["changes"])
    assert "name" not in entry["changes"]


def test_soft_delete_hides_customer(client: TestClient, db_session: Session) -> None:
    rep = _make_user(db_session, "Rep")
    customer = _create_customer(client, rep, "Soylent", "info@soylent.com")

    deleted = client.delete(f"/api/customers/{customer['id']}", headers=_auth(rep))

    assert deleted.status_code == 200
    assert deleted.json() == {"status": "success", "message": "Customer deleted successfully"}
    assert client.get(f"/api/customers/{customer['id']}", headers=_auth(rep)).status_code == 404
    assert client.get("/api/customers", headers=_auth(rep)).json()["data"]["customers"] == []
    stored = db_session.get(CRMCustomer, uuid.UUID(customer["id"]))
    assert stored is not None
    assert stored.is_active is False
