from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db
from services import seed_system_categories


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with TestingSession() as session:
        seed_system_categories(session)
        session.commit()

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def open_balance(client: TestClient, cents: int, headers=None) -> int:
    account = client.post("/api/accounts", json={"name": "Checking"}, headers=headers)
    assert account.status_code == 201
    balance = client.post(
        f"/api/accounts/{account.json()['id']}/balances",
        json={"currency_code": "USD", "initial_balance_cents": cents},
        headers=headers,
    )
    assert balance.status_code == 201
    return balance.json()["id"]


def test_expense_round_trip(client: TestClient) -> None:
    balance_id = open_balance(client, 100_000)

    created = client.post(
        "/api/transactions",
        json={
            "balance_id": balance_id,
            "type": "expense",
            "amount_cents": 20_000,
            "cashback_cents": 1_000,
            "date": "2026-03-01",
        },
    )
    assert created.status_code == 201
    account = client.get("/api/accounts").json()[0]
    assert account["balances"][0]["balance_cents"] == 81_000

    deleted = client.delete(f"/api/transactions/{created.json()['id']}")
    assert deleted.status_code == 204
    verify = client.get(f"/api/balances/{balance_id}/verify").json()
    assert verify["stored_cents"] == 100_000
    assert verify["consistent"] is True


def test_errors_map_to_status_codes(client: TestClient) -> None:
    balance_id = open_balance(client, 1_000)

    short = client.post(
        "/api/transactions",
        json={
            "balance_id": balance_id,
            "type": "expense",
            "amount_cents": 5_000,
            "date": "2026-03-01",
        },
    )
    assert short.status_code == 400
    assert short.json()["detail"].startswith("Insufficient funds.")

    assert client.get("/api/transactions/999").status_code == 404

    forbidden = client.post(
        "/api/transactions",
        json={
            "balance_id": balance_id,
            "type": "income",
            "amount_cents": 5_000,
            "date": "2026-03-01",
        },
        headers={"X-Workspace": "test"},
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"] == (
        "Cannot use a production account while in test mode."
    )

    unknown = client.get("/api/accounts", headers={"X-Workspace": "staging"})
    assert unknown.status_code == 400


def test_workspaces_are_isolated(client: TestClient) -> None:
    open_balance(client, 10_000)
    open_balance(client, 7_000, headers={"X-Workspace": "test"})

    assert client.get("/api/totals").json() == {"USD": 10_000}
    assert client.get("/api/totals", headers={"X-Workspace": "test"}).json() == {
        "USD": 7_000
    }


def test_debt_lifecycle_over_http(client: TestClient) -> None:
    balance_id = open_balance(client, 100_000)

    debt = client.post(
        "/api/debts",
        json={
            "person_name": "Alice",
            "amount_cents": 50_000,
            "direction": "they_owe",
            "balance_id": balance_id,
        },
    )
    assert debt.status_code == 201
    debt_id = debt.json()["id"]

    payment = client.post(
        f"/api/debts/{debt_id}/payments",
        json={
            "amount_cents": 50_000,
            "distributions": [{"balance_id": balance_id, "amount_cents": 50_000}],
        },
    )
    assert payment.status_code == 201
    assert client.get(f"/api/debts/{debt_id}").json()["status"] == "paid"

    soft = client.post(f"/api/debts/{debt_id}/soft-delete")
    assert soft.json()["lifecycle_status"] == "deleting"
    assert client.get("/api/debts").json() == []
    client.post(f"/api/debts/{debt_id}/undo-delete")
    assert [item["id"] for item in client.get("/api/debts").json()] == [debt_id]

    overpay = client.post(
        f"/api/debts/{debt_id}/payments",
        json={
            "amount_cents": 100,
            "distributions": [{"balance_id": balance_id, "amount_cents": 100}],
        },
    )
    assert overpay.status_code == 400


def test_invest_flow_over_http(client: TestClient) -> None:
    security = client.post(
        "/api/invest/securities",
        json={"ticker": "ACME", "name": "Acme", "currency_code": "USD"},
    )
    assert security.status_code == 201
    security_id = security.json()["id"]
    client.post(
        "/api/invest/cash/deposit", json={"currency_code": "USD", "amount": "5000"}
    )

    for quantity, price, day in (("10", "100", "01"), ("10", "120", "02")):
        bought = client.post(
            "/api/invest/buy",
            json={
                "security_id": security_id,
                "quantity": quantity,
                "price": price,
                "currency_code": "USD",
                "date": f"2026-02-{day}",
            },
        )
        assert bought.status_code == 201

    sold = client.post(
        "/api/invest/sell",
        json={
            "security_id": security_id,
            "quantity": "5",
            "price": "150",
            "currency_code": "USD",
            "date": "2026-02-03",
        },
    )
    assert sold.status_code == 201
    assert Decimal(sold.json()["realized_pl"]) == Decimal("200")

    (holding,) = client.get("/api/invest/holdings").json()
    assert Decimal(holding["quantity"]) == Decimal("15")
    assert Decimal(holding["average_cost_basis"]) == Decimal("110")

    missing = client.post(
        "/api/invest/sell",
        json={
            "security_id": 999,
            "quantity": "1",
            "price": "1",
            "currency_code": "USD",
        },
    )
    assert missing.status_code == 404
