"""
Lending Engine

Wires storage, audit, events, members, increment policy, loans, payments and
overdue reporting into one object exposing the engine's commands and
queries. Every command takes the acting user explicitly.
"""

from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Union, Any

from .currency import Money, Currency, exact_money
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .events import EventDispatcher
from .config import LendingConfig, get_config
from .dates import TodayProvider, utc_today
from .errors import ValidationError
from .members import Member, MemberManager, MemberStatus
from .loans import Loan, LoanManager, LoanProgram, LoanRepository, LoanStatus
from .increments import IncrementPolicy, IncrementSuggestion, LoanValidationResult
from .payments import Payment, PaymentMethod, PaymentProcessor, PaymentResult
from .overdue import OverdueClassifier, OverdueLoanView, ReportScope
from .schedule import Installment
from .logging_config import get_logger


class LendingEngine:
    """
    Loan lifecycle and repayment engine

    Args:
        storage: Row store; built from ``config.database_url`` when omitted
        config: Settings; the global configuration when omitted
        today: Business-date provider; the UTC date when omitted
        dispatcher: Event dispatcher subscribers attach to
    """

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LendingConfig] = None,
        today: Optional[TodayProvider] = None,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.database_url, lock_timeout=self.config.database_timeout_seconds
        )
        self.today = today or utc_today
        self.dispatcher = dispatcher or EventDispatcher()
        self.audit_trail = AuditTrail(self.storage)
        self.logger = get_logger("lending.engine")

        self.members = MemberManager(
            self.storage, self.audit_trail, self.dispatcher, self.config, self.today
        )
        self.repository = LoanRepository(self.storage)
        self.policy = IncrementPolicy(self.repository, self.config)
        self.loans = LoanManager(
            self.storage, self.audit_trail, self.repository, self.policy, self.members,
            self.dispatcher, self.config, self.today
        )
        self.payments = PaymentProcessor(
            self.storage, self.audit_trail, self.repository, self.loans, self.members,
            self.dispatcher, self.config, self.today
        )
        self.overdue = OverdueClassifier(self.repository, self.config, self.today)

    @property
    def currency(self) -> Currency:
        return Currency[self.config.default_currency]

    # Members

    def create_member(self, national_id: str, full_name: str, phone_number: str,
                      branch_id: str, group_id: Optional[str] = None,
                      assigned_officer_id: Optional[str] = None,
                      acting_user_id: Optional[str] = None) -> Member:
        return self.members.create_member(
            national_id, full_name, phone_number, branch_id,
            group_id=group_id, assigned_officer_id=assigned_officer_id,
            created_by=acting_user_id
        )

    def get_member(self, member_id: str) -> Member:
        return self.members.require_member(member_id)

    def set_member_status(self, member_id: str, status: Union[MemberStatus, str],
                          acting_user_id: Optional[str] = None,
                          reason: Optional[str] = None) -> Member:
        if not isinstance(status, MemberStatus):
            try:
                status = MemberStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown member status: {status}", {"status": str(status)})
        return self.members.set_status(member_id, status, acting_user_id, reason)

    def mark_dormant_members(self, acting_user_id: Optional[str] = None,
                             as_of: Optional[date] = None) -> List[Member]:
        return self.members.mark_dormant_members(as_of, acting_user_id)

    # Loan lifecycle

    def create_loan(
        self,
        member_id: str,
        program: Union[LoanProgram, str],
        principal: Union[Money, Decimal, str, int],
        term_weeks: Optional[int] = None,
        officer_id: Optional[str] = None,
        acting_user_id: Optional[str] = None,
        acting_role: Optional[str] = None,
        issue_date: Optional[date] = None,
        interest_rate: Optional[Decimal] = None
    ) -> str:
        """Create a pending loan and return its ID"""
        loan = self.loans.create_loan(
            member_id, program, principal, term_weeks, officer_id,
            acting_user_id, acting_role, issue_date=issue_date, interest_rate=interest_rate
        )
        return loan.id

    def approve_loan(self, loan_id: str, approver_id: str,
                     approval_date: Optional[date] = None) -> Loan:
        return self.loans.approve_loan(loan_id, approver_id, approval_date)

    def reject_loan(self, loan_id: str, approver_id: str, reason: str) -> Loan:
        return self.loans.reject_loan(loan_id, approver_id, reason)

    def mark_defaulted(self, loan_id: str, actor_id: str, notes: Optional[str] = None) -> Loan:
        return self.loans.mark_defaulted(loan_id, actor_id, notes)

    def write_off_loan(self, loan_id: str, approver_id: str, notes: str,
                       approver_role: Optional[str] = None) -> Loan:
        return self.loans.write_off_loan(loan_id, approver_id, notes, approver_role)

    def record_payment(
        self,
        loan_id: str,
        amount: Union[Money, Decimal, str, int],
        payment_date: Optional[date] = None,
        method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        recorded_by: Optional[str] = None,
        note: Optional[str] = None
    ) -> PaymentResult:
        return self.payments.record_payment(loan_id, amount, payment_date, method, recorded_by, note)

    # Queries

    def get_loan(self, loan_id: str) -> Loan:
        return self.loans.require_loan(loan_id)

    def get_member_loans(self, member_id: str) -> List[Loan]:
        return self.loans.get_member_loans(member_id)

    def get_installments(self, loan_id: str) -> List[Installment]:
        self.loans.require_loan(loan_id)
        return self.loans.get_installments(loan_id)

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        self.loans.require_loan(loan_id)
        return self.payments.get_loan_payments(loan_id)

    def list_loans(self, status: Optional[LoanStatus] = None,
                   branch_id: Optional[str] = None,
                   officer_id: Optional[str] = None) -> List[Loan]:
        return self.loans.list_loans(status=status, branch_id=branch_id, officer_id=officer_id)

    def get_next_increment(self, member_id: str) -> IncrementSuggestion:
        self.members.require_member(member_id)
        return self.policy.next_increment(member_id)

    def validate_requested_loan(
        self,
        member_id: str,
        requested_amount: Union[Money, Decimal, str, int],
        requested_weeks: int,
        acting_user_role: Optional[str] = None
    ) -> LoanValidationResult:
        self.members.require_member(member_id)
        if not isinstance(requested_amount, Money):
            try:
                requested_amount = exact_money(requested_amount, self.currency)
            except (ArithmeticError, ValueError):
                raise ValidationError(
                    f"Invalid requested amount: {requested_amount}",
                    {"requested_amount": str(requested_amount)}
                )
        return self.policy.validate_requested_loan(
            member_id, requested_amount, requested_weeks, acting_user_role
        )

    def get_overdue_report(self, scope: Optional[ReportScope] = None, mode=None,
                           as_of: Optional[date] = None) -> List[OverdueLoanView]:
        return self.overdue.get_overdue_report(scope, mode, as_of)

    def get_overdue_summary(self, scope: Optional[ReportScope] = None, mode=None,
                            as_of: Optional[date] = None) -> Dict[str, Any]:
        return self.overdue.summarize(self.overdue.get_overdue_report(scope, mode, as_of))

    def get_bad_debt_candidates(self, scope: Optional[ReportScope] = None,
                                as_of: Optional[date] = None) -> List[Loan]:
        return self.overdue.get_bad_debt_candidates(scope, as_of)

    def scope_for(self, role: Optional[str], user_id: str,
                  branch_id: Optional[str] = None) -> ReportScope:
        """Report scope of an acting user"""
        return ReportScope.for_user(role, user_id, branch_id, self.config.admin_role_set)

    def close(self) -> None:
        self.storage.close()
