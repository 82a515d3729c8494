"""
Tests for the HTTP API.
"""
import sqlite3
from datetime import timedelta

import pytest

from homeledger import database
from homeledger.backend.api.auth import create_access_token

from conftest import HOUSEHOLD, OTHER_HOUSEHOLD


def create_account(client, headers, name, opening_balance="0"):
    response = client.post("/api/accounts/", json={"name": name, "opening_balance": opening_balance}, headers=headers)
    assert response.status_code == 200
    return response.json()["account_id"]


def test_health(test_client):
    assert test_client.get("/health").json()["status"] == "healthy"


def test_requires_token(test_client):
    assert test_client.get("/api/accounts/").status_code == 401


def test_rejects_expired_token(test_client):
    token = create_access_token({"sub": "alice", "household_id": HOUSEHOLD}, timedelta(minutes=-1))
    response = test_client.get("/api/accounts/", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_rejects_token_without_household(test_client):
    token = create_access_token({"sub": "alice"})
    response = test_client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_me(test_client, auth_headers):
    assert test_client.get("/api/auth/me", headers=auth_headers).json() == {
        "user_id": "alice", "household_id": HOUSEHOLD,
    }


def test_account_lifecycle(test_client, auth_headers):
    account_id = create_account(test_client, auth_headers, "Checking", "150.25")

    account = test_client.get(f"/api/accounts/{account_id}", headers=auth_headers).json()
    assert account["balance_cents"] == 15025

    response = test_client.put(f"/api/accounts/{account_id}", json={"name": "Main"}, headers=auth_headers)
    assert response.status_code == 200
    assert test_client.get("/api/accounts/", headers=auth_headers).json()["accounts"][0]["name"] == "Main"

    assert test_client.delete(f"/api/accounts/{account_id}", headers=auth_headers).status_code == 200
    assert test_client.get("/api/accounts/", headers=auth_headers).json()["count"] == 0


def test_invalid_amount_is_400(test_client, auth_headers):
    account_id = create_account(test_client, auth_headers, "Checking")
    response = test_client.post("/api/transactions/", json={
        "account_id": account_id,
        "transaction_date": "2024-01-01",
        "transaction_type": "expense",
        "amount": "1.005",
    }, headers=auth_headers)
    assert response.status_code == 400
    assert "decimal places" in response.json()["detail"]


def test_other_household_is_404(test_client, auth_headers, db):
    foreign = db.add_account(OTHER_HOUSEHOLD, {"name": "Theirs"})
    assert test_client.get(f"/api/accounts/{foreign}", headers=auth_headers).status_code == 404
    assert test_client.get(f"/api/accounts/{foreign}/balance", headers=auth_headers).status_code == 404


def test_transfer_flow(test_client, auth_headers):
    checking = create_account(test_client, auth_headers, "Checking", "1000")
    savings = create_account(test_client, auth_headers, "Savings")

    response = test_client.post("/api/transfers/", json={
        "from_account_id": checking,
        "to_account_id": savings,
        "amount": "100.00",
        "fee": "1.00",
        "transfer_date": "2024-02-01",
    }, headers=auth_headers)
    assert response.status_code == 200
    created = response.json()
    transfer_id = created["transfer_id"]

    # Editing a leg edits the whole transfer
    response = test_client.put(f"/api/transactions/{created['to_transaction_id']}", json={"amount": "150.00"},
                               headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["transfer"]["amount_cents"] == 15000

    balance = test_client.get(f"/api/accounts/{checking}/balance", headers=auth_headers).json()
    assert balance["balance_cents"] == 100000 - 15100

    audit = test_client.get("/api/audit/", headers=auth_headers).json()
    assert audit["consistent"] is True

    response = test_client.delete(f"/api/transfers/{transfer_id}", headers=auth_headers)
    assert response.status_code == 200
    assert len(response.json()["deleted_transaction_ids"]) == 2
    assert test_client.get(f"/api/transfers/{transfer_id}", headers=auth_headers).status_code == 404


def test_same_account_transfer_is_400(test_client, auth_headers):
    checking = create_account(test_client, auth_headers, "Checking")
    response = test_client.post("/api/transfers/", json={
        "from_account_id": checking,
        "to_account_id": checking,
        "amount": "10",
        "transfer_date": "2024-02-01",
    }, headers=auth_headers)
    assert response.status_code == 400


def test_bill_payment_through_api(test_client, auth_headers):
    checking = create_account(test_client, auth_headers, "Checking", "500")
    bill_id = test_client.post("/api/bills/", json={"name": "Internet", "default_amount": "40.00"},
                               headers=auth_headers).json()["bill_id"]
    instance_id = test_client.post(f"/api/bills/{bill_id}/instances", json={"due_date": "2099-03-01"},
                                   headers=auth_headers).json()["instance_id"]

    response = test_client.post("/api/transactions/", json={
        "account_id": checking,
        "transaction_date": "2024-03-01",
        "transaction_type": "expense",
        "amount": "40.00",
        "bill_instance_id": instance_id,
    }, headers=auth_headers)
    assert response.status_code == 200

    instance = test_client.get(f"/api/bills/instances/{instance_id}", headers=auth_headers).json()
    assert instance["status"] == "paid"
    assert len(instance["payments"]) == 1
    assert [m["percentage"] for m in instance["milestones"] if m["achieved_at"]] == [25, 50, 75, 100]


def test_debt_detail(test_client, auth_headers):
    response = test_client.post("/api/debts/", json={
        "name": "Student loan",
        "original_amount": "1200.00",
        "interest_type": "none",
        "minimum_payment": "100.00",
    }, headers=auth_headers)
    debt_id = response.json()["debt_id"]

    detail = test_client.get(f"/api/debts/{debt_id}", headers=auth_headers).json()
    assert detail["debt"]["remaining_balance_cents"] == 120000
    assert detail["payoff"]["months_remaining"] == 12
    assert detail["payments"] == []


def test_goal_detail(test_client, auth_headers):
    goal_id = test_client.post("/api/goals/", json={"name": "Bike", "target_amount": "800"},
                               headers=auth_headers).json()["goal_id"]
    detail = test_client.get(f"/api/goals/{goal_id}", headers=auth_headers).json()
    assert detail["progress"]["percentage"] == 0
    assert test_client.get("/api/goals/999", headers=auth_headers).status_code == 404


def test_audit_reports_and_repairs_drift(test_client, auth_headers, db):
    account_id = create_account(test_client, auth_headers, "Checking", "10")
    with db.db_connection() as conn:
        conn.execute("UPDATE accounts SET balance = 11, balance_cents = 1100 WHERE id = ?", (account_id,))

    audit = test_client.get("/api/audit/", headers=auth_headers).json()
    assert audit["consistent"] is False
    assert audit["count"] == 0
    assert audit["balance_drift"][0]["difference_cents"] == 100

    result = test_client.post("/api/audit/recalculate-balances", headers=auth_headers).json()
    assert result["accounts_updated"] == 1

    log = test_client.get("/api/audit/repair-log", headers=auth_headers).json()
    assert log["entries"][0]["actor"] == "alice"


def test_huge_exponent_amount_is_400(test_client, auth_headers):
    account_id = create_account(test_client, auth_headers, "Checking")
    response = test_client.post("/api/transactions/", json={
        "account_id": account_id,
        "transaction_date": "2024-01-01",
        "transaction_type": "expense",
        "amount": "1e999999999",
    }, headers=auth_headers)
    assert response.status_code == 400
    assert "exceeds the maximum" in response.json()["detail"]


def create_transfer(client, headers, source, destination, amount="100.00", fee="0"):
    response = client.post("/api/transfers/", json={
        "from_account_id": source,
        "to_account_id": destination,
        "amount": amount,
        "fee": fee,
        "transfer_date": "2024-02-01",
    }, headers=headers)
    assert response.status_code == 200
    return response.json()


def test_moving_transfer_leg_to_another_account(test_client, auth_headers):
    checking = create_account(test_client, auth_headers, "Checking", "1000")
    savings = create_account(test_client, auth_headers, "Savings")
    brokerage = create_account(test_client, auth_headers, "Brokerage")
    created = create_transfer(test_client, auth_headers, checking, savings)

    response = test_client.put(f"/api/transactions/{created['to_transaction_id']}",
                               json={"account_id": brokerage}, headers=auth_headers)
    assert response.status_code == 200
    transfer = response.json()["transfer"]
    assert transfer["from_account_id"] == checking
    assert transfer["to_account_id"] == brokerage

    balances = {
        account_id: test_client.get(f"/api/accounts/{account_id}/balance", headers=auth_headers).json()["balance_cents"]
        for account_id in (checking, savings, brokerage)
    }
    assert balances == {checking: 90000, savings: 0, brokerage: 10000}


def test_outgoing_leg_amount_is_total_debited(test_client, auth_headers):
    checking = create_account(test_client, auth_headers, "Checking", "1000")
    savings = create_account(test_client, auth_headers, "Savings")
    created = create_transfer(test_client, auth_headers, checking, savings, fee="2.00")

    response = test_client.put(f"/api/transactions/{created['from_transaction_id']}",
                               json={"amount": "52.00"}, headers=auth_headers)
    assert response.status_code == 200
    transfer = response.json()["transfer"]
    assert transfer["amount_cents"] == 5000
    assert transfer["fees_cents"] == 200
    assert test_client.get("/api/audit/", headers=auth_headers).json()["consistent"] is True


@pytest.mark.parametrize("changes", [
    {"transaction_type": "expense"},
    {"category_id": 1},
    {"splits": [{"amount": "50.00"}, {"amount": "50.00"}]},
])
def test_unsupported_transfer_leg_edit_is_400(test_client, auth_headers, changes):
    checking = create_account(test_client, auth_headers, "Checking", "1000")
    savings = create_account(test_client, auth_headers, "Savings")
    created = create_transfer(test_client, auth_headers, checking, savings)

    response = test_client.put(f"/api/transactions/{created['to_transaction_id']}", json=changes,
                               headers=auth_headers)
    assert response.status_code == 400
    assert "transfer leg" in response.json()["detail"]

    transfer = test_client.get(f"/api/transfers/{created['transfer_id']}", headers=auth_headers).json()
    assert [leg["transaction_type"] for leg in transfer["legs"]] == ["transfer_out", "transfer_in"]


def test_contended_write_is_409_with_retry_after(test_client, auth_headers, db, monkeypatch):
    account_id = create_account(test_client, auth_headers, "Checking", "100")
    monkeypatch.setattr(database, "DB_TIMEOUT", 0.05)
    monkeypatch.setattr(database, "RETRY_BACKOFF_SECONDS", 0)

    holder = sqlite3.connect(db.db_path, isolation_level=None)
    holder.execute("BEGIN IMMEDIATE")
    try:
        response = test_client.post("/api/transactions/", json={
            "account_id": account_id,
            "transaction_date": "2024-01-01",
            "transaction_type": "expense",
            "amount": "10.00",
        }, headers=auth_headers)
    finally:
        holder.execute("ROLLBACK")
        holder.close()

    assert response.status_code == 409
    assert response.headers["Retry-After"] == "1"
    assert test_client.get(f"/api/accounts/{account_id}/balance", headers=auth_headers).json()["balance_cents"] == 10000


def test_invalid_transaction_date_is_400(test_client, auth_headers):
    account_id = create_account(test_client, auth_headers, "Checking")
    response = test_client.post("/api/transactions/", json={
        "account_id": account_id,
        "transaction_date": "2024-13-01",
        "transaction_type": "expense",
        "amount": "10.00",
    }, headers=auth_headers)
    assert response.status_code == 400
    assert "Transaction date" in response.json()["detail"]


def test_contribution_spread_over_goals(test_client, auth_headers):
    account_id = create_account(test_client, auth_headers, "Savings")
    bike = test_client.post("/api/goals/", json={"name": "Bike", "target_amount": "800"},
                            headers=auth_headers).json()["goal_id"]
    trip = test_client.post("/api/goals/", json={"name": "Trip", "target_amount": "400"},
                            headers=auth_headers).json()["goal_id"]

    response = test_client.post("/api/transactions/", json={
        "account_id": account_id,
        "transaction_date": "2024-03-01",
        "transaction_type": "income",
        "amount": "300.00",
        "goal_contributions": [
            {"savings_goal_id": bike, "amount": "200.00"},
            {"savings_goal_id": trip, "amount": "100.00"},
        ],
    }, headers=auth_headers)
    assert response.status_code == 200
    transaction_id = response.json()["transaction_id"]

    transaction = test_client.get(f"/api/transactions/{transaction_id}", headers=auth_headers).json()
    assert {c["goal_id"]: c["amount_cents"] for c in transaction["goal_contributions"]} == {bike: 20000, trip: 10000}
    assert test_client.get(f"/api/goals/{trip}", headers=auth_headers).json()["progress"]["percentage"] == 25


def test_payoff_strategy(test_client, auth_headers):
    for name, amount, rate in (("Card", "1000.00", 24), ("Car", "900.00", 0)):
        test_client.post("/api/debts/", json={
            "name": name, "original_amount": amount, "interest_rate": rate, "minimum_payment": "100.00",
        }, headers=auth_headers)

    comparison = test_client.get("/api/debts/payoff-strategy?extra_payment=200", headers=auth_headers).json()
    assert comparison["snowball"]["monthly_budget_cents"] == 40000
    assert comparison["avalanche"]["payoff_order"][0]["name"] == "Card"
    assert comparison["recommended_method"] == "avalanche"

    plan = test_client.get("/api/debts/payoff-strategy?method=snowball", headers=auth_headers).json()
    assert [d["name"] for d in plan["payoff_order"]] == ["Car", "Card"]

    response = test_client.get("/api/debts/payoff-strategy?method=fastest", headers=auth_headers)
    assert response.status_code == 400
