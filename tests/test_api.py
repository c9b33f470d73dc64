import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_user(user_id: int) -> dict:
    return {"X-User-Id": str(user_id)}


def make_subcategory(client, user_id=1, **params):
    category = client.post(
        "/api/categories", json={"name": "Food"}, headers=as_user(user_id), params=params
    )
    assert category.status_code == 201
    sub = client.post(
        "/api/subcategories",
        json={"category_id": category.json()["id"], "name": "Groceries"},
        headers=as_user(user_id),
    )
    assert sub.status_code == 201
    return sub.json()


def test_requests_without_identity_are_rejected(client) -> None:
    assert client.get("/api/categories").status_code == 401
    assert client.get("/api/categories", headers={"X-User-Id": "abc"}).status_code == 401


def test_unknown_rows_are_404(client) -> None:
    response = client.get("/api/transactions/42", headers=as_user(1))
    assert response.status_code == 404
    assert response.json() == {"detail": "Transaction not found"}


def test_foreign_group_is_403(client) -> None:
    group = client.post("/api/groups", json={"name": "Home"}, headers=as_user(1)).json()
    response = client.post(
        "/api/categories",
        json={"name": "Food", "group_id": group["id"]},
        headers=as_user(2),
    )
    assert response.status_code == 403


def test_invalid_bodies_are_422(client) -> None:
    response = client.post(
        "/api/transactions",
        json={"title": "x", "amount": "-5", "date": "2025-01-01"},
        headers=as_user(1),
    )
    assert response.status_code == 422
    response = client.post(
        "/api/transactions",
        json={"title": "x", "amount": "1.234", "date": "2025-01-01"},
        headers=as_user(1),
    )
    assert response.status_code == 422


def test_transfer_rule_violation_is_400(client) -> None:
    account = client.post(
        "/api/accounts", json={"name": "Cash", "type": "CASH"}, headers=as_user(1)
    ).json()
    response = client.post(
        "/api/transactions",
        json={
            "title": "Loop",
            "amount": "10.00",
            "date": "2025-01-01",
            "type": "TRANSFER",
            "account_id": account["id"],
            "to_account_id": account["id"],
        },
        headers=as_user(1),
    )
    assert response.status_code == 400


def test_budget_flow_and_conflict(client) -> None:
    sub = make_subcategory(client)
    headers = as_user(1)
    annual = client.post(
        "/api/budgets",
        json={"subcategory_id": sub["id"], "year": 2025, "amount": "0"},
        headers=headers,
    )
    assert annual.status_code == 201
    for month, amount in ((1, "500"), (2, "600")):
        created = client.post(
            "/api/budgets",
            json={"subcategory_id": sub["id"], "year": 2025, "month": month, "amount": amount},
            headers=headers,
        )
        assert created.status_code == 201

    refreshed = client.get(f"/api/budgets/{annual.json()['id']}", headers=headers).json()
    assert refreshed["amount"] == "1100.00"
    assert refreshed["annual"] is True

    duplicate = client.post(
        "/api/budgets",
        json={"subcategory_id": sub["id"], "year": 2025, "month": 1, "amount": "1"},
        headers=headers,
    )
    assert duplicate.status_code == 409

    synced = client.post(
        "/api/budgets/sync", params={"year": 2025, "subcategory_id": sub["id"]}, headers=headers
    )
    assert synced.json() == {"adjusted": None}


def test_balance_and_feed_endpoints(client) -> None:
    headers = as_user(1)
    account = client.post(
        "/api/accounts",
        json={"name": "Checking", "type": "CASH", "initial_balance": "100.00"},
        headers=headers,
    ).json()
    client.post(
        "/api/transactions",
        json={
            "title": "Coffee",
            "amount": "2.50",
            "date": "2999-01-01",
            "account_id": account["id"],
        },
        headers=headers,
    )

    balance = client.get(f"/api/accounts/{account['id']}/balance", headers=headers).json()
    assert balance["balance"] == "97.50"

    feed = client.get("/api/transactions", headers=headers).json()
    assert [entry["kind"] for entry in feed] == ["transaction", "balance_update"]

    history = client.get(
        f"/api/accounts/{account['id']}/balance/history", headers=headers
    ).json()
    assert [h["amount"] for h in history] == ["100.00"]


def test_category_delete_with_dependents_is_409(client) -> None:
    headers = as_user(1)
    sub = make_subcategory(client)
    client.post(
        "/api/transactions",
        json={"title": "Shop", "amount": "4", "date": "2025-01-01", "subcategory_id": sub["id"]},
        headers=headers,
    )
    response = client.delete(f"/api/categories/{sub['category_id']}", headers=headers)
    assert response.status_code == 409

    dependents = client.get(
        f"/api/categories/{sub['category_id']}/dependents", headers=headers
    ).json()
    assert dependents["transactions"] == 1

    response = client.delete(
        f"/api/categories/{sub['category_id']}",
        params={"delete_transactions": "true"},
        headers=headers,
    )
    assert response.status_code == 204


def test_aggregated_endpoint(client) -> None:
    headers = as_user(1)
    sub = make_subcategory(client)
    client.post(
        "/api/transactions",
        json={"title": "Shop", "amount": "4.10", "date": "2025-02-03", "subcategory_id": sub["id"]},
        headers=headers,
    )
    rows = client.get("/api/transactions/aggregated", params={"year": 2025}, headers=headers).json()
    assert rows == [
        {
            "subcategory_id": sub["id"],
            "month": 2,
            "year": 2025,
            "type": "EXPENSE",
            "total": "4.10",
            "count": 1,
        }
    ]

    bad_range = client.get(
        "/api/transactions/aggregated-spending",
        params={"start": "2025-03-01", "end": "2025-02-01"},
        headers=headers,
    )
    assert bad_range.status_code == 400


def test_out_of_range_years_and_months_are_422(client) -> None:
    headers = as_user(1)
    for year in (0, 10000):
        response = client.get(
            "/api/transactions/aggregated", params={"year": year}, headers=headers
        )
        assert response.status_code == 422
    assert (
        client.get("/api/budgets/comparison", params={"year": 10000}, headers=headers).status_code
        == 422
    )
    assert (
        client.get(
            "/api/budgets/comparison", params={"year": 2025, "month": 13}, headers=headers
        ).status_code
        == 422
    )
    assert (
        client.post(
            "/api/budgets/sync", params={"year": 10000, "subcategory_id": 1}, headers=headers
        ).status_code
        == 422
    )


def test_last_calendar_day_leaves_the_range_open(client) -> None:
    headers = as_user(1)
    sub = make_subcategory(client)
    client.post(
        "/api/transactions",
        json={"title": "Shop", "amount": "4.10", "date": "2025-02-03", "subcategory_id": sub["id"]},
        headers=headers,
    )

    feed = client.get(
        "/api/transactions", params={"start": "2025-01-01", "end": "9999-12-31"}, headers=headers
    )
    assert feed.status_code == 200
    assert [entry["title"] for entry in feed.json()] == ["Shop"]

    spending = client.get(
        "/api/transactions/aggregated-spending",
        params={"start": "0001-01-01", "end": "9999-12-31"},
        headers=headers,
    )
    assert spending.status_code == 200
    assert spending.json() == [{"subcategory_id": sub["id"], "total": "4.10"}]
