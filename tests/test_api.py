"""
Integration tests for the Lending Core API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from lending_core.api import app
from lending_core.api.dependencies import LendingSystem, get_lending_system
from lending_core.storage import InMemoryStorage


LOAN_REQUEST = {
    "customer_id": 7,
    "loan_amount": "1000",
    "interest": "20",
    "months": 6,
    "loan_start": "2024-01-15"
}


@pytest.fixture
def client():
    """Create a test client backed by an in-memory lending system"""
    test_system = LendingSystem(storage=InMemoryStorage())
    app.dependency_overrides[get_lending_system] = lambda: test_system

    yield TestClient(app)

    app.dependency_overrides.clear()


def create_loan(client, **overrides):
    r = client.post("/loans", json={**LOAN_REQUEST, **overrides})
    assert r.status_code == 201
    return r.json()["loan"]


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        """Test health endpoint"""
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        """Test root endpoint"""
        r = client.get("/")
        assert r.status_code == 200
        data = r.json()
        assert data["name"] == "Lending Core API"
        assert "loans" in data["endpoints"]


class TestLoanEndpoints:
    """End-to-end loan tests"""

    def test_create_loan(self, client):
        """Test originating a loan returns it with its schedule"""
        r = client.post("/loans", json=LOAN_REQUEST)
        assert r.status_code == 201
        data = r.json()
        assert data["loan"]["loan_id"] == 1
        assert data["loan"]["gross_receivable"] == "1200.00"
        assert data["loan"]["payday_payment"] == "200.00"
        assert data["loan"]["status"] == "Active"
        assert len(data["installments"]) == 6
        assert data["installments"][1]["schedule"] == "2024-02-15"

    def test_create_loan_validation(self, client):
        """Test invalid terms map to 422"""
        assert client.post("/loans", json={**LOAN_REQUEST, "months": 0}).status_code == 422
        assert client.post("/loans", json={**LOAN_REQUEST, "loan_amount": "abc"}).status_code == 422
        assert client.post("/loans", json={**LOAN_REQUEST, "loan_amount": "1e30"}).status_code == 422
        assert client.post("/loans", json={**LOAN_REQUEST, "loan_amount": "0.01",
                                             "interest": "0"}).status_code == 422
        assert client.post("/loans", json={**LOAN_REQUEST, "loan_start": "15/01/2024"}).status_code == 422
        r = client.post("/loans", json={"customer_id": 7})
        assert r.status_code == 422

    def test_get_and_list_loans(self, client):
        """Test fetching and listing loans"""
        loan = create_loan(client)
        create_loan(client, customer_id=8)

        r = client.get(f"/loans/{loan['loan_id']}")
        assert r.status_code == 200
        assert r.json()["balance"] == "1200.00"

        r = client.get("/loans")
        assert r.status_code == 200
        assert r.json()["count"] == 2

        r = client.get("/loans/customer/8")
        assert r.status_code == 200
        assert [loan["customer_id"] for loan in r.json()["loans"]] == [8]

        assert client.get("/loans/99").status_code == 404

    def test_payment(self, client):
        """Test a payment is allocated and recorded"""
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['loan_id']}/payments", json={
            "amount": "250",
            "payment_method": "GCash",
            "notes": "counter",
            "transaction_time": "2024-02-01T09:30:00+00:00"
        })
        assert r.status_code == 200
        data = r.json()
        assert data["outcome"] == "applied"
        assert data["applied"] == "250.00"
        assert data["new_balance"] == "950.00"
        assert [a["pay_id"] for a in data["allocations"]] == [1, 2]
        assert data["history"][0]["payment_method"] == "GCash"

        r = client.get(f"/loans/{loan['loan_id']}/installments")
        assert r.status_code == 200
        installments = r.json()["installments"]
        assert installments[0]["status"] == "Paid"
        assert installments[1]["amount"] == "50.00"

        r = client.get(f"/loans/{loan['loan_id']}/history")
        assert r.status_code == 200
        assert r.json()["history"][0]["amount"] == "250.00"

    def test_overpayment(self, client):
        """Test overpayment reports the remainder and completes the loan"""
        loan = create_loan(client)

        r = client.post(f"/loans/{loan['loan_id']}/payments", json={"amount": "1500"})
        assert r.status_code == 200
        data = r.json()
        assert data["outcome"] == "applied_with_remainder"
        assert data["remainder"] == "300.00"
        assert data["loan_status"] == "Completed"

        r = client.post(f"/loans/{loan['loan_id']}/payments", json={"amount": "10"})
        assert r.status_code == 409

    def test_payment_errors(self, client):
        """Test payment failures map to distinct status codes"""
        loan = create_loan(client)
        url = f"/loans/{loan['loan_id']}/payments"

        assert client.post("/loans/99/payments", json={"amount": "100"}).status_code == 404
        assert client.post(url, json={"amount": "-5"}).status_code == 422
        assert client.post(url, json={"amount": "abc"}).status_code == 422
        assert client.post(url, json={"amount": "1e30"}).status_code == 422
        assert client.post(url, json={"amount": "100", "pay_id": 999}).status_code == 404
        assert client.post(url, json={"amount": "100",
                                      "transaction_time": "yesterday"}).status_code == 422

    def test_cancel_and_delete(self, client):
        """Test lifecycle endpoints"""
        loan = create_loan(client)
        other = create_loan(client)

        r = client.put(f"/loans/{loan['loan_id']}/cancel")
        assert r.status_code == 200
        assert r.json()["loan"]["status"] == "Cancelled"
        assert client.post(f"/loans/{loan['loan_id']}/payments",
                           json={"amount": "100"}).status_code == 409

        r = client.delete(f"/loans/{other['loan_id']}")
        assert r.status_code == 200
        assert r.json()["status"] == "Deleted"
        assert [item["loan_id"] for item in client.get("/loans").json()["loans"]] == [loan["loan_id"]]

        assert client.delete("/loans/99").status_code == 404
        assert client.put("/loans/99/cancel").status_code == 404

    def test_summary_and_recalculate(self, client):
        """Test portfolio summary and balance recalculation"""
        loan = create_loan(client)
        client.post(f"/loans/{loan['loan_id']}/payments", json={"amount": "600"})

        r = client.get("/loans/summary")
        assert r.status_code == 200
        data = r.json()
        assert data["total_loans"] == 1
        assert data["total_outstanding"] == "600.00"
        assert data["collection_rate"] == "50.00"

        r = client.post("/loans/recalculate-balances")
        assert r.status_code == 200
        assert r.json()["corrected"] == 0
