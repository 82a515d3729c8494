import os

# Must be set before the auth module is imported
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-homeledger-tests")

import pytest
from fastapi.testclient import TestClient

from homeledger.database import LedgerDatabase
from homeledger.backend.main import app
from homeledger.backend.api.auth import create_access_token
from homeledger.backend.api.deps import get_db

HOUSEHOLD = "household-a"
OTHER_HOUSEHOLD = "household-b"


@pytest.fixture
def db(tmp_path):
    """Fresh ledger database per test."""
    return LedgerDatabase(db_path=str(tmp_path / "ledger.db"))


@pytest.fixture
def make_account(db):
    """Factory creating accounts in the test household."""
    def _make(name="Checking", opening_balance=0, account_type="checking", household_id=HOUSEHOLD, **extra):
        return db.add_account(household_id, {
            'name': name,
            'account_type': account_type,
            'opening_balance': opening_balance,
            **extra,
        })
    return _make


def balance(db, account_id, household_id=HOUSEHOLD):
    return db.get_account(household_id, account_id)['balance_cents']


@pytest.fixture
def auth_headers():
    token = create_access_token({"sub": "alice", "household_id": HOUSEHOLD})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def test_client(db):
    """FastAPI test client bound to the test database."""
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
