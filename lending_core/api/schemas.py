"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal, InvalidOperation
from datetime import date
from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field

from ..currency import Money
from ..dates import format_date, parse_date
from ..errors import ValidationError
from ..loans import Loan
from ..members import Member
from ..payments import Payment, PaymentResult
from ..schedule import Installment
from ..increments import IncrementSuggestion, LoanValidationResult


def parse_amount(value: str, field: str = "amount") -> Decimal:
    """Decimal from a request string; floats never enter"""
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValidationError(f"Invalid {field}: {value}", {field: value})


def parse_request_date(value: Optional[str], field: str = "date") -> Optional[date]:
    try:
        return parse_date(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}", {field: value})


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (KES, USD, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Member schemas
class CreateMemberRequest(BaseModel):
    national_id: str
    full_name: str
    phone_number: str
    branch_id: str
    group_id: Optional[str] = None
    assigned_officer_id: Optional[str] = None


class UpdateMemberStatusRequest(BaseModel):
    status: str = Field(..., description="active, inactive, dormant or suspended")
    reason: Optional[str] = None


class DormancyScanRequest(BaseModel):
    as_of: Optional[str] = None  # ISO date string


# Loan schemas
class CreateLoanRequest(BaseModel):
    member_id: str
    program: str = Field(..., description="small_loan or big_loan")
    principal: str = Field(..., description="Decimal amount as string")
    term_weeks: Optional[int] = None
    officer_id: Optional[str] = None
    issue_date: Optional[str] = None  # ISO date string
    interest_rate: Optional[str] = None  # Decimal as string


class ValidateLoanRequest(BaseModel):
    member_id: str
    amount: str
    term_weeks: int


class ApproveLoanRequest(BaseModel):
    approval_date: Optional[str] = None


class RejectLoanRequest(BaseModel):
    reason: str


class RecordPaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: Optional[str] = None
    method: str = "cash"
    note: Optional[str] = None


class WriteOffRequest(BaseModel):
    notes: str


class MarkDefaultedRequest(BaseModel):
    notes: Optional[str] = None


# Response serializers

def member_response(member: Member) -> Dict[str, Any]:
    return {
        "id": member.id,
        "national_id": member.national_id,
        "full_name": member.full_name,
        "phone_number": member.phone_number,
        "branch_id": member.branch_id,
        "group_id": member.group_id,
        "assigned_officer_id": member.assigned_officer_id,
        "status": member.status.value,
        "last_activity_date": format_date(member.last_activity_date),
        "created_at": member.created_at.isoformat()
    }


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "member_id": loan.member_id,
        "program": loan.program.value,
        "status": loan.status.value,
        "approval_status": loan.approval_status.value,
        "principal_amount": MoneyModel.from_money(loan.principal_amount).model_dump(),
        "interest_rate": str(loan.interest_rate),
        "interest_amount": MoneyModel.from_money(loan.interest_amount).model_dump(),
        "processing_fee": MoneyModel.from_money(loan.processing_fee).model_dump(),
        "current_balance": MoneyModel.from_money(loan.current_balance).model_dump(),
        "total_paid": MoneyModel.from_money(loan.total_paid).model_dump(),
        "unapplied_credit": MoneyModel.from_money(loan.unapplied_credit).model_dump(),
        "increment_level": loan.increment_level,
        "term_weeks": loan.term_weeks,
        "installment_type": loan.installment_type.value,
        "issue_date": format_date(loan.issue_date),
        "due_date": format_date(loan.due_date),
        "branch_id": loan.branch_id,
        "officer_id": loan.officer_id,
        "previous_loan_id": loan.previous_loan_id,
        "approved_by": loan.approved_by,
        "approved_at": loan.approved_at.isoformat() if loan.approved_at else None,
        "rejection_reason": loan.rejection_reason,
        "defaulted_date": format_date(loan.defaulted_date),
        "written_off_date": format_date(loan.written_off_date),
        "written_off_amount": (
            MoneyModel.from_money(loan.written_off_amount).model_dump()
            if loan.written_off_amount else None
        ),
        "last_payment_date": format_date(loan.last_payment_date),
        "version": loan.version
    }


def installment_response(installment: Installment) -> Dict[str, Any]:
    return {
        "installment_number": installment.installment_number,
        "due_date": format_date(installment.due_date),
        "principal_amount": str(installment.principal_amount.amount),
        "interest_amount": str(installment.interest_amount.amount),
        "total_amount": str(installment.total_amount.amount),
        "amount_paid": str(installment.amount_paid.amount),
        "is_paid": installment.is_paid,
        "paid_date": format_date(installment.paid_date)
    }


def payment_response(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "loan_id": payment.loan_id,
        "amount": MoneyModel.from_money(payment.amount).model_dump(),
        "payment_date": format_date(payment.payment_date),
        "method": payment.method.value,
        "recorded_by": payment.recorded_by,
        "applied_amount": str(payment.applied_amount.amount),
        "excess_amount": str(payment.excess_amount.amount),
        "balance_after": str(payment.balance_after.amount),
        "installments_touched": payment.installments_touched,
        "note": payment.note
    }


def payment_result_response(result: PaymentResult) -> Dict[str, Any]:
    return {
        "payment": payment_response(result.payment),
        "loan": loan_response(result.loan),
        "installments_updated": [installment_response(i) for i in result.installments_updated],
        "excess_amount": str(result.excess_amount.amount),
        "loan_closed": result.loan_closed
    }


def increment_response(suggestion: IncrementSuggestion) -> Dict[str, Any]:
    return {
        "member_id": suggestion.member_id,
        "level": suggestion.level,
        "amount": MoneyModel.from_money(suggestion.amount).model_dump(),
        "eligible_terms_weeks": suggestion.eligible_terms_weeks,
        "can_borrow_less": suggestion.can_borrow_less,
        "previous_loan_id": suggestion.previous_loan_id
    }


def validation_response(result: LoanValidationResult) -> Dict[str, Any]:
    return {
        "is_valid": result.is_valid,
        "level": result.level,
        "suggested_amount": MoneyModel.from_money(result.suggested_amount).model_dump(),
        "suggested_weeks": result.suggested_weeks,
        "error_message": result.error_message,
        "override_applied": result.override_applied,
        "violations": result.violations
    }


def loans_response(loans: List[Loan]) -> Dict[str, Any]:
    return {"loans": [loan_response(loan) for loan in loans], "count": len(loans)}
