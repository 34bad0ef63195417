from typing import Any, Callable
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from ledger.main import app
from ledger.persistence import InMemoryPersistence
from ledger.store import InMemoryStore


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence(InMemoryStore())


@pytest.fixture
def register() -> Callable[..., dict[str, Any]]:
    def _register(client: TestClient, initial_balance: str | int = 0) -> dict[str, Any]:
        res = client.post(
            "/api/v1/auth/register",
            json={
                "email": f"user-{uuid4().hex[:12]}@example.com",
                "password": "Secret123!",
                "name": "Test User",
                "initialBalance": initial_balance,
            },
        )
        assert res.status_code == 201, res.text
        body = res.json()
        headers = {"Authorization": f"Bearer {body['token']}"}
        accounts = client.get("/api/v1/accounts", headers=headers).json()
        return {"headers": headers, "userId": body["userId"], "accountId": accounts[0]["id"], "email": body["email"]}

    return _register


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)
