"""
API integration tests using FastAPI's TestClient
"""

import pytest
from datetime import date
from unittest.mock import Mock
from fastapi.testclient import TestClient

from lending_core import __version__
from lending_core.api import create_app, status_code_for
from lending_core.api.deps import get_engine
from lending_core.config import LendingConfig
from lending_core.engine import LendingEngine
from lending_core.errors import (
    LendingError, NotFoundError, ValidationError, PolicyError, InvalidTermError,
    InvalidTransitionError, InvalidAmountError, TransientError, ConcurrencyError
)
from lending_core.storage import InMemoryStorage


OFFICER = {"X-User-Id": "officer_1", "X-User-Role": "loan_officer", "X-Branch-Id": "branch_nairobi"}
MANAGER = {"X-User-Id": "manager_1", "X-User-Role": "branch_manager", "X-Branch-Id": "branch_nairobi"}
ADMIN = {"X-User-Id": "admin_1", "X-User-Role": "admin"}


class TestStatusMapping:
    """Test error class to HTTP status mapping"""

    @pytest.mark.parametrize("error,status", [
        (NotFoundError("x"), 404),
        (ValidationError("x"), 400),
        (InvalidAmountError("x"), 400),
        (PolicyError("x"), 422),
        (InvalidTermError("x"), 422),
        (InvalidTransitionError("x"), 409),
        (TransientError("x"), 503),
        (ConcurrencyError("x"), 503),
        (LendingError("x"), 400),
    ])
    def test_status_code_for(self, error, status):
        assert status_code_for(error) == status


class TestLendingAPI:
    """Test the HTTP surface end to end"""

    def setup_method(self):
        self.today = date(2024, 1, 1)
        self.engine = LendingEngine(
            storage=InMemoryStorage(),
            config=LendingConfig(_env_file=None),
            today=lambda: self.today
        )
        self.app = create_app()
        self.app.dependency_overrides[get_engine] = lambda: self.engine
        self.client = TestClient(self.app)

    def teardown_method(self):
        self.app.dependency_overrides.clear()

    def _create_member(self, national_id="12345678", branch_id="branch_nairobi", officer="officer_1"):
        response = self.client.post("/members", json={
            "national_id": national_id,
            "full_name": "Amina Wanjiru",
            "phone_number": "+254700000001",
            "branch_id": branch_id,
            "assigned_officer_id": officer
        }, headers=OFFICER)
        assert response.status_code == 201
        return response.json()["id"]

    def _create_loan(self, member_id, principal="5000", headers=OFFICER, **extra):
        payload = {"member_id": member_id, "program": "small_loan", "principal": principal}
        payload.update(extra)
        return self.client.post("/loans", json=payload, headers=headers)

    def _active_loan(self, member_id, principal="5000"):
        loan_id = self._create_loan(member_id, principal).json()["id"]
        response = self.client.post(f"/loans/{loan_id}/approve", json={}, headers=MANAGER)
        assert response.status_code == 200
        return loan_id

    def test_health_and_info(self):
        health = self.client.get("/health").json()
        assert health == {"status": "healthy", "service": "lending_api", "version": __version__}
        assert self.client.get("/").json()["endpoints"]["loans"] == "/loans"

    def test_member_endpoints(self):
        member_id = self._create_member()

        member = self.client.get(f"/members/{member_id}").json()
        assert member["status"] == "active"
        assert member["last_activity_date"] == "2024-01-01"

        listed = self.client.get("/members", params={"branch_id": "branch_nairobi"}).json()
        assert listed["count"] == 1

        response = self.client.post(
            f"/members/{member_id}/status", json={"status": "suspended", "reason": "review"}, headers=MANAGER
        )
        assert response.status_code == 200
        assert response.json()["status"] == "suspended"

        response = self.client.post(f"/members/{member_id}/status", json={"status": "frozen"}, headers=MANAGER)
        assert response.status_code == 400

    def test_acting_user_required(self):
        response = self.client.post("/members", json={
            "national_id": "1", "full_name": "No Header", "phone_number": "+254700000001", "branch_id": "b1"
        })
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_duplicate_member(self):
        self._create_member()
        response = self.client.post("/members", json={
            "national_id": "12345678", "full_name": "Someone Else",
            "phone_number": "+254700000002", "branch_id": "branch_nairobi"
        }, headers=OFFICER)
        assert response.status_code == 400

    def test_unknown_resources(self):
        assert self.client.get("/members/missing").status_code == 404
        assert self.client.get("/loans/missing").status_code == 404
        assert self.client.get("/loans/missing/schedule").status_code == 404
        response = self.client.post("/loans/missing/approve", json={}, headers=MANAGER)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_loan_lifecycle(self):
        """Create, approve, repay in two payments"""
        member_id = self._create_member()

        increment = self.client.get(f"/members/{member_id}/next-increment").json()
        assert increment["level"] == 1
        assert increment["amount"] == {"amount": "5000.00", "currency": "KES"}
        assert increment["eligible_terms_weeks"] == [8]

        response = self._create_loan(member_id)
        assert response.status_code == 201
        loan = response.json()
        assert loan["status"] == "pending"
        assert loan["current_balance"] == {"amount": "5750.00", "currency": "KES"}
        assert loan["processing_fee"]["amount"] == "300.00"

        approved = self.client.post(f"/loans/{loan['id']}/approve", json={}, headers=MANAGER).json()
        assert approved["status"] == "active"
        assert approved["approved_by"] == "manager_1"
        assert approved["due_date"] == "2024-02-26"

        schedule = self.client.get(f"/loans/{loan['id']}/schedule").json()
        assert schedule["count"] == 8
        assert schedule["installments"][0]["total_amount"] == "718.75"

        response = self.client.post(
            f"/loans/{loan['id']}/payments", json={"amount": "718.75", "method": "mobile_money"}, headers=OFFICER
        )
        assert response.status_code == 201
        result = response.json()
        assert result["loan"]["current_balance"]["amount"] == "5031.25"
        assert result["payment"]["installments_touched"] == [1]
        assert not result["loan_closed"]

        result = self.client.post(
            f"/loans/{loan['id']}/payments", json={"amount": "5031.25"}, headers=OFFICER
        ).json()
        assert result["loan_closed"]
        assert result["loan"]["status"] == "repaid"

        payments = self.client.get(f"/loans/{loan['id']}/payments").json()
        assert payments["count"] == 2

        loans = self.client.get(f"/members/{member_id}/loans").json()
        assert loans["count"] == 1
        assert self.client.get(f"/members/{member_id}/next-increment").json()["level"] == 2

    def test_policy_violations(self):
        member_id = self._create_member()

        response = self._create_loan(member_id, "6000")
        assert response.status_code == 422
        assert response.json()["error"] == "policy_error"

        response = self._create_loan(member_id, "5000", term_weeks=12)
        assert response.status_code == 422
        assert response.json()["error"] == "invalid_term"

        response = self._create_loan(member_id, "20000", headers=ADMIN, term_weeks=12)
        assert response.status_code == 201

        response = self._create_loan(member_id, "1000")
        assert response.status_code == 422
        assert "open_loan_ids" in response.json()["details"]

    def test_validate_endpoint(self):
        member_id = self._create_member()

        body = {"member_id": member_id, "amount": "9000", "term_weeks": 12}
        result = self.client.post("/loans/validate", json=body, headers=OFFICER).json()
        assert not result["is_valid"]
        assert result["suggested_amount"]["amount"] == "5000.00"
        assert result["suggested_weeks"] == 8

        result = self.client.post("/loans/validate", json=body, headers=ADMIN).json()
        assert result["is_valid"]
        assert result["override_applied"]

    def test_invalid_amounts(self):
        member_id = self._create_member()
        assert self._create_loan(member_id, "abc").status_code == 400
        assert self._create_loan(member_id, "0").status_code == 400

        loan_id = self._active_loan(member_id)
        response = self.client.post(f"/loans/{loan_id}/payments", json={"amount": "-5"}, headers=OFFICER)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_amount"

        response = self.client.post(f"/loans/{loan_id}/payments", json={"amount": "1375.005"}, headers=OFFICER)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_amount"

        response = self.client.post(
            f"/loans/{loan_id}/payments", json={"amount": "10", "payment_date": "yesterday"}, headers=OFFICER
        )
        assert response.status_code == 400

    def test_invalid_transitions(self):
        member_id = self._create_member()
        loan_id = self._active_loan(member_id)

        response = self.client.post(f"/loans/{loan_id}/approve", json={}, headers=MANAGER)
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

        response = self.client.post(f"/loans/{loan_id}/reject", json={"reason": "late"}, headers=MANAGER)
        assert response.status_code == 409

    def test_reject_default_and_write_off(self):
        member_id = self._create_member()
        pending = self._create_loan(member_id).json()["id"]
        rejected = self.client.post(
            f"/loans/{pending}/reject", json={"reason": "Guarantor declined"}, headers=MANAGER
        ).json()
        assert rejected["status"] == "rejected"

        loan_id = self._active_loan(member_id)
        response = self.client.post(f"/loans/{loan_id}/write-off", json={"notes": "Slow"}, headers=MANAGER)
        assert response.status_code == 422

        defaulted = self.client.post(f"/loans/{loan_id}/default", json={"notes": "Unreachable"}, headers=MANAGER)
        assert defaulted.json()["status"] == "defaulted"

        written_off = self.client.post(
            f"/loans/{loan_id}/write-off", json={"notes": "Uncollectable"}, headers=ADMIN
        ).json()
        assert written_off["status"] == "bad_debt"
        assert written_off["written_off_amount"] == {"amount": "5750.00", "currency": "KES"}

    def test_list_loans(self):
        member_id = self._create_member()
        self._active_loan(member_id)

        assert self.client.get("/loans", params={"status": "active"}).json()["count"] == 1
        assert self.client.get("/loans", params={"status": "pending"}).json()["count"] == 0
        assert self.client.get("/loans", params={"status": "unknown"}).status_code == 400

    def test_transient_error_is_retryable(self):
        """Lock timeouts surface as 503 with Retry-After"""
        member_id = self._create_member()
        loan_id = self._active_loan(member_id)
        self.engine.record_payment = Mock(side_effect=TransientError("Timed out waiting for lock"))

        response = self.client.post(f"/loans/{loan_id}/payments", json={"amount": "100"}, headers=OFFICER)

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json()["retryable"] is True

    def test_overdue_reports_scoped_by_role(self):
        """Officers see their own loans, branch managers their branch, admins everything"""
        nairobi = self._create_member("1", "branch_nairobi", "officer_1")
        mombasa = self._create_member("2", "branch_mombasa", "officer_2")
        loan_a = self._active_loan(nairobi)
        loan_b = self._active_loan(mombasa)
        params = {"as_of": "2024-02-01"}

        officer = self.client.get("/reports/overdue", params=params, headers=OFFICER).json()
        manager = self.client.get("/reports/overdue", params=params, headers=MANAGER).json()
        admin = self.client.get("/reports/overdue", params=params, headers=ADMIN).json()

        assert [row["loan_id"] for row in officer["loans"]] == [loan_a]
        assert [row["loan_id"] for row in manager["loans"]] == [loan_a]
        assert {row["loan_id"] for row in admin["loans"]} == {loan_a, loan_b}

        summary = self.client.get("/reports/overdue/summary", params=params, headers=ADMIN).json()
        assert summary["total_loans"] == 2
        assert summary["tiers"]["medium"]["loans"] == 2

        due_date_mode = self.client.get(
            "/reports/overdue", params={"as_of": "2024-02-01", "mode": "due_date"}, headers=ADMIN
        ).json()
        assert due_date_mode["count"] == 0

        assert self.client.get("/reports/overdue", params=params).status_code == 400
        assert self.client.get(
            "/reports/overdue", params={"mode": "weekly"}, headers=ADMIN
        ).status_code == 400

    def test_bad_debt_report(self):
        member_id = self._create_member()
        loan_id = self._active_loan(member_id)

        report = self.client.get("/reports/bad-debt", params={"as_of": "2025-01-02"}, headers=ADMIN).json()
        assert [loan["id"] for loan in report["loans"]] == [loan_id]

    def test_dormancy_scan(self):
        self._create_member()
        response = self.client.post("/members/dormancy-scan", json={"as_of": "2024-06-01"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["count"] == 1
        assert response.json()["members"][0]["status"] == "dormant"
