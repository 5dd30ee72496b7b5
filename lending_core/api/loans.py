"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import ActingUser, get_acting_user, get_engine
from .schemas import (
    CreateLoanRequest, ValidateLoanRequest, ApproveLoanRequest, RejectLoanRequest,
    RecordPaymentRequest, WriteOffRequest, MarkDefaultedRequest,
    loan_response, loans_response, installment_response, payment_response,
    payment_result_response, validation_response, parse_amount, parse_request_date
)
from ..engine import LendingEngine
from ..errors import ValidationError
from ..loans import LoanStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Create a loan application"""
    interest_rate = None
    if request.interest_rate is not None:
        interest_rate = parse_amount(request.interest_rate, "interest_rate")

    loan_id = engine.create_loan(
        member_id=request.member_id,
        program=request.program,
        principal=parse_amount(request.principal, "principal"),
        term_weeks=request.term_weeks,
        officer_id=request.officer_id,
        acting_user_id=user.require_id(),
        acting_role=user.role,
        issue_date=parse_request_date(request.issue_date, "issue_date"),
        interest_rate=interest_rate
    )
    return loan_response(engine.get_loan(loan_id))


@router.get("")
def list_loans(
    status: Optional[str] = None,
    branch_id: Optional[str] = None,
    officer_id: Optional[str] = None,
    engine: LendingEngine = Depends(get_engine)
):
    """List loans with optional filters"""
    loan_status = None
    if status:
        try:
            loan_status = LoanStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown loan status: {status}", {"status": status})
    return loans_response(engine.list_loans(loan_status, branch_id, officer_id))


@router.post("/validate")
def validate_requested_loan(
    request: ValidateLoanRequest,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Check a requested amount and term against the member's increment level"""
    result = engine.validate_requested_loan(
        request.member_id, parse_amount(request.amount), request.term_weeks, user.role
    )
    return validation_response(result)


@router.get("/{loan_id}")
def get_loan(loan_id: str, engine: LendingEngine = Depends(get_engine)):
    """Get loan details"""
    return loan_response(engine.get_loan(loan_id))


@router.get("/{loan_id}/schedule")
def get_schedule(loan_id: str, engine: LendingEngine = Depends(get_engine)):
    """Installment schedule of a loan"""
    installments = engine.get_installments(loan_id)
    return {
        "loan_id": loan_id,
        "installments": [installment_response(i) for i in installments],
        "count": len(installments)
    }


@router.post("/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Approve a pending loan and generate its schedule"""
    loan = engine.approve_loan(
        loan_id, user.require_id(), parse_request_date(request.approval_date, "approval_date")
    )
    return loan_response(loan)


@router.post("/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Reject a pending loan"""
    return loan_response(engine.reject_loan(loan_id, user.require_id(), request.reason))


@router.get("/{loan_id}/payments")
def get_loan_payments(loan_id: str, engine: LendingEngine = Depends(get_engine)):
    """Payments recorded against a loan"""
    payments = engine.get_loan_payments(loan_id)
    return {"payments": [payment_response(p) for p in payments], "count": len(payments)}


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def record_payment(
    loan_id: str,
    request: RecordPaymentRequest,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Record a repayment"""
    result = engine.record_payment(
        loan_id=loan_id,
        amount=parse_amount(request.amount),
        payment_date=parse_request_date(request.payment_date, "payment_date"),
        method=request.method,
        recorded_by=user.require_id(),
        note=request.note
    )
    return payment_result_response(result)


@router.post("/{loan_id}/write-off")
def write_off_loan(
    loan_id: str,
    request: WriteOffRequest,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Write a loan off as bad debt"""
    loan = engine.write_off_loan(loan_id, user.require_id(), request.notes, user.role)
    return loan_response(loan)


@router.post("/{loan_id}/default")
def mark_defaulted(
    loan_id: str,
    request: MarkDefaultedRequest,
    user: ActingUser = Depends(get_acting_user),
    engine: LendingEngine = Depends(get_engine)
):
    """Declare an active loan in default"""
    return loan_response(engine.mark_defaulted(loan_id, user.require_id(), request.notes))
