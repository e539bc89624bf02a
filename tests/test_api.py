import pytest
import asyncio
import httpx
from datetime import timedelta
from fastapi.testclient import TestClient

from conftest import add_use_transaction
from main import app
from repositories import get_account_repository, get_transaction_repository, now
from services import years_before

client = TestClient(app)


def create_account(user_id=1, initial_balance=1000):
    response = client.post("/account", json={"userId": user_id, "initialBalance": initial_balance})
    assert response.status_code == 201
    return response.json()["accountNumber"]


def balances(user_id=1):
    response = client.get("/account", params={"user_id": user_id})
    assert response.status_code == 200
    return {a["accountNumber"]: a["balance"] for a in response.json()}


def ledger():
    return list(get_transaction_repository().transactions.values())


class TestAccountEndpoints:
    """Test account lifecycle endpoints."""

    def test_create_account(self):
        response = client.post("/account", json={"userId": 1, "initialBalance": 1000})

        assert response.status_code == 201
        data = response.json()
        assert data["userId"] == 1
        assert data["accountNumber"] == "1000000000"
        assert "registeredAt" in data

    def test_create_account_unknown_user(self):
        response = client.post("/account", json={"userId": 999, "initialBalance": 1000})

        assert response.status_code == 404
        assert response.json()["error_code"] == "USER_NOT_FOUND"

    def test_create_account_limit(self):
        for _ in range(10):
            create_account()

        response = client.post("/account", json={"userId": 1, "initialBalance": 0})

        assert response.status_code == 400
        assert response.json()["error_code"] == "MAX_ACCOUNT_PER_USER"

    def test_create_account_negative_balance(self):
        response = client.post("/account", json={"userId": 1, "initialBalance": -1})

        assert response.status_code == 422

    def test_list_accounts(self):
        first = create_account(initial_balance=100)
        second = create_account(initial_balance=200)
        create_account(user_id=2)

        assert balances() == {first: 100, second: 200}

    def test_list_accounts_unknown_user(self):
        response = client.get("/account", params={"user_id": 999})

        assert response.status_code == 404

    def test_get_account(self):
        account_number = create_account(user_id=2, initial_balance=300)
        account_id = get_account_repository().by_number[account_number]

        response = client.get(f"/account/{account_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["accountNumber"] == account_number
        assert data["userId"] == 2
        assert data["balance"] == 300
        assert data["accountStatus"] == "IN_USE"

    def test_get_account_negative_id(self):
        response = client.get("/account/-1")

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_REQUEST"

    def test_get_account_missing(self):
        response = client.get("/account/42")

        assert response.status_code == 404
        assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"
        assert response.json()["detail"] == "Account not found"

    def test_delete_account(self):
        account_number = create_account(initial_balance=0)

        response = client.request("DELETE", "/account", json={"userId": 1, "accountNumber": account_number})

        assert response.status_code == 200
        data = response.json()
        assert data["accountNumber"] == account_number
        assert data["unregisteredAt"] is not None

    def test_delete_account_with_balance(self):
        account_number = create_account(initial_balance=10)

        response = client.request("DELETE", "/account", json={"userId": 1, "accountNumber": account_number})

        assert response.status_code == 400
        assert response.json()["error_code"] == "BALANCE_NOT_EMPTY"

    def test_delete_account_invalid_number(self):
        response = client.request("DELETE", "/account", json={"userId": 1, "accountNumber": "12345"})

        assert response.status_code == 422


class TestUseEndpoint:
    """Test balance use endpoint."""

    def test_use_balance(self):
        account_number = create_account(initial_balance=10000)

        response = client.post("/transaction/use", json={
            "userId": 1,
            "accountNumber": account_number,
            "amount": 200
        })

        assert response.status_code == 201
        data = response.json()
        assert data["accountNumber"] == account_number
        assert data["transactionResult"] == "SUCCESS"
        assert data["amount"] == 200
        assert data["balanceSnapshot"] == 9800
        assert "transactionId" in data
        assert "transactedAt" in data
        assert balances() == {account_number: 9800}

    def test_insufficient_balance_records_failure(self):
        account_number = create_account(initial_balance=100)

        response = client.post("/transaction/use", json={
            "userId": 1,
            "accountNumber": account_number,
            "amount": 1000
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "AMOUNT_EXCEED_BALANCE"
        rows = ledger()
        assert len(rows) == 1
        assert rows[0].transaction_result_type.value == "FAIL"
        assert rows[0].balance_snapshot == 100
        assert balances() == {account_number: 100}

    def test_owner_mismatch_records_failure(self):
        account_number = create_account(initial_balance=100)

        response = client.post("/transaction/use", json={
            "userId": 2,
            "accountNumber": account_number,
            "amount": 50
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "USER_ACCOUNT_UN_MATCH"
        assert len(ledger()) == 1

    def test_unknown_account_writes_no_row(self):
        response = client.post("/transaction/use", json={
            "userId": 1,
            "accountNumber": "1000000099",
            "amount": 50
        })

        assert response.status_code == 404
        assert response.json()["error_code"] == "ACCOUNT_NOT_FOUND"
        assert ledger() == []

    def test_idempotent_requests(self):
        account_number = create_account(initial_balance=1000)
        payload = {
            "userId": 1,
            "accountNumber": account_number,
            "amount": 150,
            "idempotencyKey": "order_001"
        }

        response1 = client.post("/transaction/use", json=payload)
        response2 = client.post("/transaction/use", json=payload)

        assert response1.status_code == 201
        assert response2.status_code == 201
        assert response1.json() == response2.json()
        assert balances() == {account_number: 850}

    @pytest.mark.parametrize("payload", [
        {"userId": 1, "accountNumber": "1000000000", "amount": 5},
        {"userId": 1, "accountNumber": "1000000000", "amount": 1_000_000_001},
        {"userId": 1, "accountNumber": "1000000000", "amount": 100.5},
        {"userId": 1, "accountNumber": "100000000", "amount": 100},
        {"userId": 1, "accountNumber": "10000000ab", "amount": 100},
        {"userId": 0, "accountNumber": "1000000000", "amount": 100},
        {"userId": 1, "accountNumber": "1000000000", "amount": 100, "idempotencyKey": "bad key!"},
        {"userId": 1, "accountNumber": "1000000000"},
    ])
    def test_validation(self, payload):
        create_account()

        response = client.post("/transaction/use", json=payload)

        assert response.status_code == 422
        assert ledger() == []


class TestCancelEndpoint:
    """Test balance cancel endpoint."""

    def _use(self, account_number, amount):
        response = client.post("/transaction/use", json={
            "userId": 1,
            "accountNumber": account_number,
            "amount": amount
        })
        assert response.status_code == 201
        return response.json()["transactionId"]

    def test_cancel_balance(self):
        account_number = create_account(initial_balance=10000)
        transaction_id = self._use(account_number, 200)

        response = client.post("/transaction/cancel", json={
            "transactionId": transaction_id,
            "accountNumber": account_number,
            "amount": 200
        })

        assert response.status_code == 201
        data = response.json()
        assert data["transactionResult"] == "SUCCESS"
        assert data["balanceSnapshot"] == 10000
        assert data["transactionId"] != transaction_id
        assert balances() == {account_number: 10000}

    def test_partial_cancel_records_failure(self):
        account_number = create_account(initial_balance=10000)
        transaction_id = self._use(account_number, 200)

        response = client.post("/transaction/cancel", json={
            "transactionId": transaction_id,
            "accountNumber": account_number,
            "amount": 100
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "CANCEL_MUST_FULLY"
        failed = [r for r in ledger() if r.transaction_result_type.value == "FAIL"]
        assert len(failed) == 1
        assert failed[0].transaction_type.value == "CANCEL"
        assert failed[0].balance_snapshot == 9800

    def test_cancel_unknown_transaction(self):
        account_number = create_account()

        response = client.post("/transaction/cancel", json={
            "transactionId": "missing",
            "accountNumber": account_number,
            "amount": 100
        })

        assert response.status_code == 404
        assert response.json()["error_code"] == "TRANSACTION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_cancel_too_old(self):
        account_number = create_account(initial_balance=9000)
        account = await get_account_repository().find_by_account_number(account_number)
        await add_use_transaction(
            account, 200, transacted_at=years_before(now(), 1) - timedelta(days=1)
        )

        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.post("/transaction/cancel", json={
                "transactionId": "original-transaction",
                "accountNumber": account_number,
                "amount": 200
            })

        assert response.status_code == 400
        assert response.json()["error_code"] == "TOO_OLD_TO_CANCEL"

    def test_cancel_other_account(self):
        first = create_account(initial_balance=1000)
        second = create_account(initial_balance=1000)
        transaction_id = self._use(first, 200)

        response = client.post("/transaction/cancel", json={
            "transactionId": transaction_id,
            "accountNumber": second,
            "amount": 200
        })

        assert response.status_code == 400
        assert response.json()["error_code"] == "TRANSACTION_ACCOUNT_UN_MATCH"
        assert balances() == {first: 800, second: 1000}


class TestQueryEndpoint:
    """Test transaction lookup endpoint."""

    def test_query_transaction(self):
        account_number = create_account(initial_balance=1000)
        response = client.post("/transaction/use", json={
            "userId": 1,
            "accountNumber": account_number,
            "amount": 100
        })
        transaction_id = response.json()["transactionId"]

        response = client.get(f"/transaction/{transaction_id}")

        assert response.status_code == 200
        data = response.json()
        assert data["transactionId"] == transaction_id
        assert data["transactionType"] == "USE"
        assert data["transactionResult"] == "SUCCESS"
        assert data["amount"] == 100
        assert data["balanceSnapshot"] == 900

    def test_query_missing_transaction(self):
        response = client.get("/transaction/missing")

        assert response.status_code == 404
        assert response.json()["error_code"] == "TRANSACTION_NOT_FOUND"


class TestConcurrency:
    """Test concurrent transaction processing."""

    @pytest.mark.asyncio
    async def test_concurrent_uses_same_account(self):
        account_number = create_account(initial_balance=1000)

        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
            tasks = [
                ac.post("/transaction/use", json={
                    "userId": 1,
                    "accountNumber": account_number,
                    "amount": 100
                })
                for _ in range(10)
            ]
            results = await asyncio.gather(*tasks)

        assert all(r.status_code == 201 for r in results)
        snapshots = sorted(r.json()["balanceSnapshot"] for r in results)
        assert snapshots == list(range(0, 1000, 100))
        assert balances() == {account_number: 0}

    @pytest.mark.asyncio
    async def test_concurrent_insufficient_balance(self):
        account_number = create_account(initial_balance=500)

        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
            tasks = [
                ac.post("/transaction/use", json={
                    "userId": 1,
                    "accountNumber": account_number,
                    "amount": 200
                })
                for _ in range(5)
            ]
            results = await asyncio.gather(*tasks)

        successful = [r for r in results if r.status_code == 201]
        failed = [r for r in results if r.status_code == 400]
        assert len(successful) == 2
        assert len(failed) == 3
        assert balances() == {account_number: 100}
        assert len(ledger()) == 5


class TestHealthAndUtility:
    """Test health check and utility endpoints."""

    def test_health_check(self):
        create_account()

        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["accounts_count"] == 1
        assert data["transactions_recorded"] == 0
        assert "timestamp" in data

    def test_root_endpoint(self):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "message" in data
        assert "docs" in data
