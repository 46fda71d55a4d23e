"""
API integration tests

Drives the FastAPI app through TestClient against in-memory storage.
"""

import pytest
from datetime import date, timedelta
from fastapi.testclient import TestClient

from pawn_core.api import create_app, status_code_for
from pawn_core.api.dependencies import PawnShopSystem
from pawn_core.config import PawnConfig
from pawn_core.exceptions import (
    ValidationError, InvalidAmountError, NotFoundError, InvalidStateError,
    ConflictError, DuplicateTransactionError, ResourceExhaustedError, NoActiveShiftError
)


ALICE = {"X-User-Id": "user-1", "X-Username": "alice"}
BOB = {"X-User-Id": "user-2", "X-Username": "bob"}


@pytest.fixture
def system():
    config = PawnConfig(database_url="memory://", scheduler_enabled=False, _env_file=None)
    system = PawnShopSystem(config)
    yield system
    system.close()


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


@pytest.fixture
def on_shift(client):
    """Open a shift for alice so loan activity is allowed"""
    response = client.post("/shifts", json={"openingCash": "1000"}, headers=ALICE)
    assert response.status_code == 201, response.text
    return response.json()


def loan_body(**overrides):
    body = {
        "firstName": "Maria",
        "lastName": "Santos",
        "loanAmount": "500",
        "interestRate": "15",
        "loanTerm": 30,
        "itemDescription": "Gold ring",
    }
    body.update(overrides)
    return body


def create_loan(client, **overrides):
    response = client.post("/loans", json=loan_body(**overrides), headers=ALICE)
    assert response.status_code == 201, response.text
    return response.json()


class TestStatusMapping:
    """Test exception to HTTP status mapping"""
    
    @pytest.mark.parametrize("error, expected", [
        (ValidationError("bad"), 400),
        (InvalidAmountError("negative"), 400),
        (NotFoundError("loan", "L1"), 404),
        (InvalidStateError("terminal"), 409),
        (NoActiveShiftError("user-1"), 403),
        (ConflictError("taken"), 409),
        (DuplicateTransactionError(5), 409),
        (ResourceExhaustedError("busy"), 503),
    ])
    def test_status_codes(self, error, expected):
        assert status_code_for(error) == expected


class TestHealth:
    """Test service endpoints"""
    
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
    
    def test_root(self, client):
        assert "loans" in client.get("/").json()["endpoints"]


@pytest.mark.usefixtures("on_shift")
class TestLoanEndpoints:
    """Test loan lifecycle over HTTP"""
    
    def test_create_loan(self, client):
        loan = create_loan(client)
        
        assert loan["status"] == "active"
        assert loan["interest_amount"] == {"amount": "75.00", "currency": "USD"}
        assert loan["total_payable_amount"]["amount"] == "575.00"
        assert loan["initial_loan_amount"]["amount"] == "500.00"
        assert loan["created_by_username"] == "alice"
        assert loan["item_description"] == "Gold ring"
    
    def test_create_loan_snake_case(self, client):
        body = {
            "first_name": "Ana", "last_name": "Cruz",
            "loan_amount": "200", "interest_rate": "10", "loan_term": 14
        }
        response = client.post("/loans", json=body, headers=ALICE)
        assert response.status_code == 201
        assert response.json()["interest_amount"]["amount"] == "20.00"
    
    def test_create_loan_validation_errors(self, client):
        response = client.post("/loans", json={"firstName": "Maria", "loanAmount": "-5"}, headers=ALICE)
        
        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["code"] == "VALIDATION_ERROR"
        assert any("last_name" in e for e in detail["errors"])
        assert any("loan_amount" in e for e in detail["errors"])
    
    def test_create_loan_requires_operator(self, client):
        response = client.post("/loans", json=loan_body())
        assert response.status_code == 422
    
    def test_trusted_precomputed_amounts(self, client):
        loan = create_loan(client, interestAmount="80", totalPayableAmount="590")
        
        assert loan["interest_amount"]["amount"] == "80.00"
        assert loan["remaining_balance"]["amount"] == "590.00"
    
    def test_duplicate_transaction_number(self, client):
        create_loan(client, transactionNumber="000000077")
        
        response = client.post("/loans", json=loan_body(transactionNumber="000000077"), headers=ALICE)
        
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "CONFLICT"
    
    def test_get_and_lookup(self, client):
        loan = create_loan(client)
        
        assert client.get(f"/loans/{loan['id']}").json()["id"] == loan["id"]
        by_number = client.get(f"/loans/transaction/{loan['transaction_number']}")
        assert by_number.json()["id"] == loan["id"]
        assert client.get("/loans/missing").status_code == 404
    
    def test_list_by_status(self, client):
        create_loan(client)
        
        assert client.get("/loans", params={"status": "active"}).json()["count"] == 1
        assert client.get("/loans", params={"status": "redeemed"}).json()["count"] == 0
        assert client.get("/loans", params={"status": "lost"}).status_code == 400
    
    def test_payment_flow(self, client):
        loan = create_loan(client)
        
        response = client.post(f"/loans/{loan['id']}/payments", json={"amount": "75"}, headers=ALICE)
        
        assert response.status_code == 201
        assert response.json()["loan"]["remaining_balance"]["amount"] == "500.00"
        history = client.get(f"/loans/{loan['id']}/payments").json()
        assert history["count"] == 1
        assert history["total_paid"] == "75.00"
    
    def test_invalid_payment_amount(self, client):
        loan = create_loan(client)
        response = client.post(f"/loans/{loan['id']}/payments", json={"amount": "0"}, headers=ALICE)
        
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_AMOUNT"
    
    def test_payment_on_missing_loan(self, client):
        response = client.post("/loans/missing/payments", json={"amount": "10"}, headers=ALICE)
        assert response.status_code == 404
    
    def test_add_principal(self, client):
        loan = create_loan(client)
        
        updated = client.post(f"/loans/{loan['id']}/add-principal", json={"amount": "100"},
                              headers=ALICE).json()
        
        assert updated["loan_amount"]["amount"] == "600.00"
        assert updated["initial_loan_amount"]["amount"] == "500.00"
    
    def test_discount(self, client):
        loan = create_loan(client)
        updated = client.post(f"/loans/{loan['id']}/discount", json={"amount": "25"}, headers=ALICE).json()
        assert updated["remaining_balance"]["amount"] == "550.00"
    
    def test_redeem_twice_conflicts(self, client):
        loan = create_loan(client)
        
        first = client.post(f"/loans/{loan['id']}/redeem", json={"notes": "Collected"}, headers=ALICE)
        second = client.post(f"/loans/{loan['id']}/redeem", json={}, headers=ALICE)
        
        assert first.status_code == 200
        assert first.json()["loan"]["status"] == "redeemed"
        assert first.json()["redemption"]["amount"]["amount"] == "575.00"
        assert second.status_code == 409
        assert second.json()["detail"]["code"] == "INVALID_STATE"
    
    def test_redeem_short_amount(self, client):
        loan = create_loan(client)
        response = client.post(f"/loans/{loan['id']}/redeem", json={"amount": "100"}, headers=ALICE)
        assert response.status_code == 400
    
    def test_forfeit(self, client):
        loan = create_loan(client)
        
        response = client.post(f"/loans/{loan['id']}/forfeit", json={"notes": "Unclaimed"}, headers=ALICE)
        
        assert response.status_code == 200
        assert response.json()["loan"]["status"] == "forfeited"
        assert response.json()["forfeiture"]["username"] == "alice"
    
    def test_extend_due_date(self, client):
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/payments", json={"amount": "75"}, headers=ALICE)
    
        response = client.post(f"/loans/{loan['id']}/extend-due-date", json={"days": 7}, headers=ALICE)
        
        expected = date.fromisoformat(loan["due_date"]) + timedelta(days=7)
        assert response.json()["due_date"] == expected.isoformat()
    
    def test_extend_requires_interest(self, client):
        loan = create_loan(client)
        response = client.post(f"/loans/{loan['id']}/extend-due-date", json={}, headers=ALICE)
        assert response.status_code == 409
    
    def test_zero_interest_rate_rejected(self, client):
        response = client.post("/loans", json=loan_body(interestRate="0"), headers=ALICE)
    
        assert response.status_code == 400
        assert any("interest_rate" in e for e in response.json()["detail"]["errors"])


class TestActiveShiftGuard:
    """Test that loan activity requires the operator's open shift"""
    
    def test_create_without_shift_forbidden(self, client, system):
        response = client.post("/loans", json=loan_body(), headers=ALICE)
    
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "NO_ACTIVE_SHIFT"
        assert system.loan_manager.list_loans() == []
    
    def test_other_operators_shift_does_not_count(self, client, on_shift):
        response = client.post("/loans", json=loan_body(), headers=BOB)
        assert response.status_code == 403
    
    @pytest.mark.parametrize("action, body", [
        ("payments", {"amount": "75"}),
        ("add-principal", {"amount": "50"}),
        ("discount", {"amount": "10"}),
        ("extend-due-date", {}),
        ("reactivate", None),
        ("redeem", {}),
        ("forfeit", {}),
    ])
    def test_mutations_after_close_forbidden(self, client, system, on_shift, action, body):
        loan = create_loan(client)
        client.post(f"/shifts/{on_shift['id']}/close", json={"closingCash": "500"})
    
        response = client.post(f"/loans/{loan['id']}/{action}", json=body, headers=ALICE)
    
        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "NO_ACTIVE_SHIFT"
        unchanged = system.loan_manager.get_loan(loan["id"])
        assert unchanged.status.value == "active"
        assert str(unchanged.remaining_balance.amount) == "575.00"
    
    def test_reads_allowed_without_shift(self, client, on_shift):
        loan = create_loan(client)
        client.post(f"/shifts/{on_shift['id']}/close", json={"closingCash": "500"})
    
        assert client.get(f"/loans/{loan['id']}").status_code == 200
        assert client.get(f"/loans/{loan['id']}/payments").status_code == 200
    
    def test_guard_can_be_disabled(self):
        config = PawnConfig(database_url="memory://", scheduler_enabled=False,
                            require_active_shift=False, _env_file=None)
        system = PawnShopSystem(config)
        try:
            client = TestClient(create_app(system))
            assert client.post("/loans", json=loan_body(), headers=ALICE).status_code == 201
        finally:
            system.close()


@pytest.mark.usefixtures("on_shift")
class TestSweepAndReactivate:
    """Test the admin sweep and reactivation"""
    
    def test_sweep_marks_overdue_then_reactivate(self, client):
        past_due = (date.today() - timedelta(days=3)).isoformat()
        loan = create_loan(client, dueDate=past_due)
        
        sweep = client.post("/admin/sweep", params={"as_of": date.today().isoformat()}).json()
        
        assert sweep["marked_overdue"] == [loan["id"]]
        assert client.get(f"/loans/{loan['id']}").json()["status"] == "overdue"
        
        blocked = client.post(f"/loans/{loan['id']}/reactivate", headers=ALICE)
        assert blocked.status_code == 409
        
        client.post(f"/loans/{loan['id']}/payments", json={"amount": "75"}, headers=ALICE)
        reactivated = client.post(f"/loans/{loan['id']}/reactivate", headers=ALICE).json()
        
        assert reactivated["status"] == "active"
        assert date.fromisoformat(reactivated["due_date"]) > date.today()
    
    def test_audit_verify_and_migrations(self, client):
        create_loan(client)
        
        assert client.get("/admin/audit/verify").json()["valid"] is True
        migrations = client.get("/admin/migrations").json()
        assert migrations["needs_migration"] is False
    
    def test_scheduler_status(self, client):
        status = client.get("/admin/scheduler").json()
        assert status["running"] is False
        assert status["last_sweep"] is None


class TestShiftEndpoints:
    """Test shift handling over HTTP"""
    
    def test_open_and_close_balanced(self, client):
        shift = client.post("/shifts", json={"openingCash": "100"}, headers=ALICE)
        assert shift.status_code == 201
        shift_id = shift.json()["id"]
        
        closed = client.post(f"/shifts/{shift_id}/close", json={"closingCash": "100"}).json()
        
        assert closed["is_balanced"] is True
        assert closed["difference"]["amount"] == "0.00"
        assert closed["is_open"] is False
    
    def test_second_open_conflicts(self, client):
        client.post("/shifts", json={"openingCash": "100"}, headers=ALICE)
        response = client.post("/shifts", json={"openingCash": "100"}, headers=ALICE)
        
        assert response.status_code == 409
        assert client.post("/shifts", json={"openingCash": "50"}, headers=BOB).status_code == 201
    
    def test_close_short_keeps_signed_difference(self, client):
        shift_id = client.post("/shifts", json={"openingCash": "100"}, headers=ALICE).json()["id"]
        
        closed = client.post(f"/shifts/{shift_id}/close", json={"closingCash": "90"}).json()
        
        assert closed["difference"]["amount"] == "-10.00"
        assert closed["is_balanced"] is False
        assert client.post(f"/shifts/{shift_id}/close", json={"closingCash": "90"}).status_code == 409
    
    def test_current_shift_and_add_cash(self, client):
        assert client.get("/shifts/current", headers=ALICE).status_code == 404
        client.post("/shifts", json={"openingCash": "100"}, headers=ALICE)
        
        topped_up = client.post("/shifts/current/add-cash", json={"amount": "50"}, headers=ALICE).json()
        summary = client.get("/shifts/current/summary", headers=ALICE).json()
        
        assert topped_up["opening_cash"]["amount"] == "150.00"
        assert topped_up["cash_added"]["amount"] == "50.00"
        assert summary["expected_balance"]["amount"] == "150.00"
    
    def test_summary_without_shift(self, client):
        assert client.get("/shifts/current/summary", headers=ALICE).status_code == 404
    
    def test_history_and_report(self, client):
        shift_id = client.post("/shifts", json={"openingCash": "100"}, headers=ALICE).json()["id"]
        client.post(f"/shifts/{shift_id}/close", json={"closingCash": "100"})
        
        history = client.get("/shifts/history/user-1").json()
        report = client.get(f"/shifts/{shift_id}/report").json()
        
        assert history["count"] == 1
        assert report["shift"]["id"] == shift_id
        assert report["totals"]["payment_count"] == 0
        assert client.get("/shifts/missing").status_code == 404
    
    def test_negative_opening_cash(self, client):
        assert client.post("/shifts", json={"openingCash": "-1"}, headers=ALICE).status_code == 400


@pytest.mark.usefixtures("on_shift")
class TestReportEndpoints:
    """Test report endpoints"""
    
    def _range(self, loan):
        issued = loan["loan_issued_date"][:10]
        return {"start_date": issued, "end_date": issued}
    
    def test_active_loans(self, client):
        loan = create_loan(client)
        
        report = client.get("/reports/active-loans", params=self._range(loan)).json()
        
        assert report["totals"]["count"] == 1
        assert report["data"][0]["initial_loan_amount"] == "500.00"
    
    def test_csv_format(self, client):
        loan = create_loan(client)
        params = dict(self._range(loan), format="csv")
        
        response = client.get("/reports/active-loans", params=params)
        
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "transaction_number" in response.text.splitlines()[0]
    
    def test_daily_cash_balancing(self, client):
        loan = create_loan(client)
        
        report = client.get("/reports/daily-cash-balancing", params=self._range(loan)).json()
        
        assert report["report_id"] == "daily_cash_balancing"
        assert report["data"][0]["total_loans_issued"] == "500.00"
    
    @pytest.mark.parametrize("path", ["due-loans", "loans-by-status", "shifts", "revenue"])
    def test_other_reports(self, client, path):
        today = date.today().isoformat()
        response = client.get(f"/reports/{path}", params={"start_date": today, "end_date": today})
        assert response.status_code == 200
    
    def test_inverted_range(self, client):
        response = client.get("/reports/active-loans",
                              params={"start_date": "2024-03-02", "end_date": "2024-03-01"})
        assert response.status_code == 400
    
    def test_revenue_report(self, client):
        loan = create_loan(client)
        client.post(f"/loans/{loan['id']}/payments", json={"amount": "115"}, headers=ALICE)
        
        report = client.get("/reports/revenue", params=self._range(loan)).json()
        
        assert report["totals"]["total_revenue"] == "115.00"
        assert report["totals"]["interest_revenue"] == "15.00"
        assert report["totals"]["by_status"]["active"]["principal_received"] == "100.00"
    
    def test_overdue_loans_report(self, client):
        past_due = (date.today() - timedelta(days=3)).isoformat()
        loan = create_loan(client, dueDate=past_due)
        create_loan(client)
        
        as_of = {"as_of": date.today().isoformat()}
        report = client.get("/reports/overdue-loans", params=as_of).json()
        
        assert report["report_id"] == "overdue_loans"
        assert [row["id"] for row in report["data"]] == [loan["id"]]
        assert report["data"][0]["days_overdue"] == 3
        assert report["data"][0]["collateral_description"] == "Gold ring"
        
        csv_response = client.get("/reports/overdue-loans", params=dict(as_of, format="csv"))
        assert csv_response.headers["content-type"].startswith("text/csv")
