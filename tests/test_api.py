from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from jobs import NotificationJobs
from main import app, get_db, get_notification_jobs
from notifications import EmailRenderer, LogMailer


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    mailer = LogMailer()
    jobs = NotificationJobs(
        session_factory=factory,
        mailer=mailer,
        renderer=EmailRenderer(frontend_url="http://localhost:3000"),
        workers=1,
        send_interval_secs=0,
    )

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_jobs] = lambda: jobs
    test_client = TestClient(app)
    test_client.mailer = mailer
    yield test_client
    app.dependency_overrides.clear()


def _register(client: TestClient, email: str = "ana@example.com") -> dict[str, str]:
    response = client.post(
        "/auth/register",
        json={"name": "Ana", "email": email, "password": "secret123"},
    )
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['token']}"}


def _category_id(client: TestClient, headers: dict[str, str], name: str) -> int:
    categories = client.get("/categories", headers=headers).json()
    return next(c["id"] for c in categories if c["name"] == name)


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": "0.1.0"}


def test_register_login_and_me(client: TestClient) -> None:
    _register(client)
    assert [m.subject for m in client.mailer.outbox] == ["Welcome to MonetaSis!"]

    bad = client.post(
        "/auth/login", json={"email": "ana@example.com", "password": "wrong"}
    )
    assert bad.status_code == 401

    login = client.post(
        "/auth/login", json={"email": "ana@example.com", "password": "secret123"}
    )
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['token']}"}

    me = client.get("/auth/me", headers=headers)
    assert me.status_code == 200
    assert me.json()["email"] == "ana@example.com"


def test_requests_without_token_are_rejected(client: TestClient) -> None:
    assert client.get("/transactions/summary").status_code == 401
    assert (
        client.get(
            "/transactions/summary", headers={"Authorization": "Bearer nope"}
        ).status_code
        == 401
    )


def test_duplicate_registration_is_bad_request(client: TestClient) -> None:
    _register(client)
    response = client.post(
        "/auth/register",
        json={"name": "Ana", "email": "ana@example.com", "password": "secret123"},
    )

    assert response.status_code == 400


def test_summary_contract(client: TestClient) -> None:
    headers = _register(client)
    assert client.post("/categories/default", headers=headers).status_code == 201
    salary = _category_id(client, headers, "Salary")
    food = _category_id(client, headers, "Food")

    for payload in (
        {"type": "income", "amount_cents": 100_000, "category_id": salary},
        {"type": "expense", "amount_cents": 25_050, "category_id": food, "cashback_cents": 150},
    ):
        response = client.post(
            "/transactions",
            headers=headers,
            json={"date": date.today().isoformat(), "description": "Entry", **payload},
        )
        assert response.status_code == 201

    summary = client.get("/transactions/summary", headers=headers).json()

    assert summary == {
        "income": 1000.0,
        "expenses": 250.5,
        "balance": 749.5,
        "totalCashback": 1.5,
        "transactionCount": 2,
    }


def test_invalid_amount_is_unprocessable(client: TestClient) -> None:
    headers = _register(client)
    client.post("/categories/default", headers=headers)
    food = _category_id(client, headers, "Food")

    response = client.post(
        "/transactions",
        headers=headers,
        json={
            "date": "2026-10-01",
            "type": "expense",
            "amount_cents": 0,
            "category_id": food,
            "description": "Free lunch",
        },
    )

    assert response.status_code == 422


def test_category_in_use_cannot_be_deleted(client: TestClient) -> None:
    headers = _register(client)
    created = client.post(
        "/categories",
        headers=headers,
        json={"name": "Pets", "type": "expense", "color": "#A855F7", "tag": "pets"},
    )
    assert created.status_code == 201
    category_id = created.json()["id"]
    txn = client.post(
        "/transactions",
        headers=headers,
        json={
            "date": "2026-10-01",
            "type": "expense",
            "amount_cents": 4_000,
            "category_id": category_id,
            "description": "Vet",
        },
    ).json()

    blocked = client.delete(f"/categories/{category_id}", headers=headers)
    assert blocked.status_code == 400

    assert client.delete(f"/transactions/{txn['id']}", headers=headers).status_code == 204
    assert client.delete(f"/categories/{category_id}", headers=headers).status_code == 204
    assert client.get(f"/categories/{category_id}", headers=headers).status_code == 404


def test_transactions_are_private_to_their_owner(client: TestClient) -> None:
    owner = _register(client)
    client.post("/categories/default", headers=owner)
    food = _category_id(client, owner, "Food")
    txn = client.post(
        "/transactions",
        headers=owner,
        json={
            "date": "2026-10-01",
            "type": "expense",
            "amount_cents": 1_000,
            "category_id": food,
            "description": "Snack",
        },
    ).json()

    stranger = _register(client, email="bia@example.com")

    assert client.get(f"/transactions/{txn['id']}", headers=stranger).status_code == 404
    listing = client.get("/transactions", headers=stranger).json()
    assert listing["total"] == 0


def test_insights_contract_for_new_user(client: TestClient) -> None:
    headers = _register(client)

    body = client.get("/ai/insights", headers=headers).json()

    assert set(body) == {"insights", "generatedAt", "totalInsights"}
    assert body["totalInsights"] == 1
    assert body["insights"][0]["kind"] == "welcome"


def test_ai_and_analytics_endpoints_respond(client: TestClient) -> None:
    headers = _register(client)

    for path in (
        "/ai/trends",
        "/ai/recommendations",
        "/ai/predictions",
        "/analytics/trends",
        "/analytics/dashboard?period=week",
        "/analytics/dashboard?period=year",
        "/analytics/cash-flow?group_by=month",
        "/users/dashboard-summary",
        "/transactions/summary/monthly?year=2026",
        "/transactions/summary/category",
    ):
        assert client.get(path, headers=headers).status_code == 200, path

    answer = client.post("/ai/ask", headers=headers, json={"question": "How do I budget?"})
    assert answer.status_code == 200
    assert "50/30/20" in answer.json()["answer"]


def test_analytics_validation_errors(client: TestClient) -> None:
    headers = _register(client)

    assert (
        client.get("/analytics/dashboard?period=decade", headers=headers).status_code
        == 422
    )
    assert (
        client.get(
            "/analytics/cash-flow?start=2026-10-10&end=2026-10-01", headers=headers
        ).status_code
        == 400
    )


def test_export_csv(client: TestClient) -> None:
    headers = _register(client)
    client.post("/categories/default", headers=headers)
    food = _category_id(client, headers, "Food")
    client.post(
        "/transactions",
        headers=headers,
        json={
            "date": "2026-10-01",
            "type": "expense",
            "amount_cents": 1_234,
            "category_id": food,
            "description": "=SUM(A1)",
        },
    )

    response = client.get("/users/export?format=csv", headers=headers)

    assert response.status_code == 200
    lines = response.text.splitlines()
    assert lines[0] == "Date,Description,Type,Amount,Cashback,Category,Notes"
    assert lines[1].startswith("2026-10-01,\t=SUM(A1),expense,12.34,0.00,Food")


def test_delete_account(client: TestClient) -> None:
    headers = _register(client)

    assert client.delete("/users/account", headers=headers).status_code == 204
    assert client.get("/auth/me", headers=headers).status_code == 401


def test_refresh_issues_a_working_token(client: TestClient) -> None:
    headers = _register(client)

    response = client.post("/auth/refresh", headers=headers)

    assert response.status_code == 200
    refreshed = {"Authorization": f"Bearer {response.json()['token']}"}
    assert client.get("/auth/me", headers=refreshed).json()["email"] == "ana@example.com"
    assert client.post("/auth/refresh").status_code == 401


def test_logout_is_acknowledged(client: TestClient) -> None:
    headers = _register(client)

    assert client.post("/auth/logout", headers=headers).status_code == 204
    assert client.post("/auth/logout").status_code == 401


def test_category_summary_covers_both_types_by_default(client: TestClient) -> None:
    headers = _register(client)
    client.post("/categories/default", headers=headers)
    day = "2026-10-05"
    for name, type, amount in (("Salary", "income", 300_000), ("Food", "expense", 4_500)):
        client.post(
            "/transactions",
            headers=headers,
            json={
                "date": day,
                "type": type,
                "amount_cents": amount,
                "category_id": _category_id(client, headers, name),
                "description": name,
            },
        )

    window = "start=2026-10-01&end=2026-10-31"
    both = client.get(f"/transactions/summary/category?{window}", headers=headers).json()
    expenses = client.get(
        f"/transactions/summary/category?{window}&type=expense", headers=headers
    ).json()

    assert both["type"] == "all"
    assert [(c["type"], c["name"]) for c in both["categories"]] == [
        ("expense", "Food"),
        ("income", "Salary"),
    ]
    assert [c["name"] for c in expenses["categories"]] == ["Food"]
