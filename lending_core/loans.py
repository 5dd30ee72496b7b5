"""
Loan Lifecycle Module

Loan records, the lifecycle state machine and the commands that move a loan
through it: create (pending), approve (schedule generated, active), reject,
mark defaulted and write off. Payments live in ``payments.py`` and reach back
here only through ``LoanManager.mark_repaid``.

Every command runs as one transaction under a row lock on the loan, and audit
records and domain events follow only after the transaction commits.
"""

from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Union, TYPE_CHECKING
from enum import Enum
import uuid

from .currency import Money, Currency, exact_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent, loan_event_data
from .config import LendingConfig, get_config
from .dates import TodayProvider, utc_today, add_weeks, days_between, parse_date, format_date
from .errors import (
    ValidationError, NotFoundError, PolicyError, InvalidTransitionError, ConcurrencyError
)
from .schedule import InstallmentType, Installment, generate_schedule, schedule_totals
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .increments import IncrementPolicy
    from .members import MemberManager


logger = get_logger("lending.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Application awaiting approval
    APPROVED = "approved"      # Approved, schedule being generated
    ACTIVE = "active"          # Disbursed and repaying
    REPAID = "repaid"          # Balance reached zero
    DEFAULTED = "defaulted"    # Declared in default by staff
    BAD_DEBT = "bad_debt"      # Written off
    REJECTED = "rejected"      # Application declined


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LoanProgram(Enum):
    """Loan products"""
    SMALL_LOAN = "small_loan"
    BIG_LOAN = "big_loan"


OPEN_STATUSES = frozenset({LoanStatus.PENDING, LoanStatus.APPROVED, LoanStatus.ACTIVE})
TERMINAL_STATUSES = frozenset({
    LoanStatus.REPAID, LoanStatus.DEFAULTED, LoanStatus.BAD_DEBT, LoanStatus.REJECTED
})

# The only legal lifecycle moves. DEFAULTED -> BAD_DEBT is write-off
# bookkeeping on an already terminal loan.
ALLOWED_TRANSITIONS: Dict[LoanStatus, frozenset] = {
    LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.ACTIVE}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.REPAID, LoanStatus.DEFAULTED, LoanStatus.BAD_DEBT}),
    LoanStatus.DEFAULTED: frozenset({LoanStatus.BAD_DEBT}),
    LoanStatus.REPAID: frozenset(),
    LoanStatus.BAD_DEBT: frozenset(),
    LoanStatus.REJECTED: frozenset(),
}


@dataclass(frozen=True)
class ProgramTerms:
    """Pricing and default term of a loan program"""
    interest_rate: Decimal
    default_term_weeks: int
    installment_type: InstallmentType = InstallmentType.WEEKLY


def program_terms(program: LoanProgram, config: LendingConfig) -> ProgramTerms:
    if program == LoanProgram.SMALL_LOAN:
        return ProgramTerms(Decimal(config.small_loan_interest_rate), config.small_loan_term_weeks)
    return ProgramTerms(Decimal(config.big_loan_interest_rate), config.big_loan_term_weeks)


@dataclass
class Loan(StorageRecord):
    """
    Loan record.

    ``current_balance`` is ``principal + interest - total_paid`` clamped at
    zero. ``processing_fee`` is informational and never part of the balance.
    """
    member_id: str
    program: LoanProgram
    principal_amount: Money
    interest_rate: Decimal
    interest_amount: Money
    processing_fee: Money
    increment_level: int
    term_weeks: int
    installment_type: InstallmentType
    current_balance: Money
    total_paid: Money
    unapplied_credit: Money
    status: LoanStatus = LoanStatus.PENDING
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    branch_id: Optional[str] = None
    officer_id: Optional[str] = None
    created_by: Optional[str] = None
    previous_loan_id: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    defaulted_date: Optional[date] = None
    written_off_date: Optional[date] = None
    written_off_amount: Optional[Money] = None
    write_off_notes: Optional[str] = None
    last_payment_date: Optional[date] = None
    version: int = 0

    @property
    def currency(self) -> Currency:
        return self.principal_amount.currency

    @property
    def total_due(self) -> Money:
        """Principal plus flat interest"""
        return self.principal_amount + self.interest_amount

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


def assert_transition(loan: Loan, target: LoanStatus) -> None:
    """
    Raise InvalidTransitionError unless ``loan`` may move to ``target``.

    Never mutates the loan. Failures are logged at ERROR since they point at
    a caller bug rather than operator input.
    """
    if target not in ALLOWED_TRANSITIONS[loan.status]:
        error = InvalidTransitionError(
            f"Loan {loan.id} cannot move from {loan.status.value} to {target.value}",
            {"loan_id": loan.id, "from_status": loan.status.value, "to_status": target.value}
        )
        log_action(
            logger, "error", error.message,
            action="assert_transition", resource=f"loan:{loan.id}", extra=error.details
        )
        raise error


def meets_bad_debt_definition(loan: Loan, as_of: date, bad_debt_days: int) -> bool:
    """
    Outstanding balance and no payment for more than ``bad_debt_days``,
    counting from the issue date when nothing was ever paid.
    """
    if loan.status not in (LoanStatus.ACTIVE, LoanStatus.DEFAULTED):
        return False
    if not loan.current_balance.is_positive():
        return False
    reference = loan.last_payment_date or loan.issue_date
    if reference is None:
        return False
    return days_between(reference, as_of) > bad_debt_days


class LoanRepository:
    """
    Storage mapping for loans and their installments.

    ``save_loan`` is an optimistic version check: the stored version must
    match the version the caller read, and the saved row carries version + 1.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.loans_table = "loans"
        self.installments_table = "installments"

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return self._loan_from_dict(data) if data else None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return loan

    def get_member_loans(self, member_id: str) -> List[Loan]:
        loans = [self._loan_from_dict(row)
                 for row in self.storage.find(self.loans_table, {'member_id': member_id})]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        branch_id: Optional[str] = None,
        officer_id: Optional[str] = None,
        member_id: Optional[str] = None
    ) -> List[Loan]:
        filters = {}
        if status:
            filters['status'] = status.value
        if branch_id:
            filters['branch_id'] = branch_id
        if officer_id:
            filters['officer_id'] = officer_id
        if member_id:
            filters['member_id'] = member_id
        loans = [self._loan_from_dict(row) for row in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def save_loan(self, loan: Loan) -> None:
        """
        Raises:
            ConcurrencyError: If the stored row moved past the version read
        """
        stored = self.storage.load(self.loans_table, loan.id)
        stored_version = stored.get('version', 0) if stored else 0
        if stored_version != loan.version:
            raise ConcurrencyError(
                f"Loan {loan.id} was modified concurrently",
                {"loan_id": loan.id, "expected_version": loan.version, "stored_version": stored_version}
            )
        loan.version += 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installments of a loan ordered by number"""
        installments = [
            Installment.from_dict(row)
            for row in self.storage.find(self.installments_table, {'loan_id': loan_id})
        ]
        installments.sort(key=lambda i: i.installment_number)
        return installments

    def save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def _loan_to_dict(self, loan: Loan) -> Dict:
        """Convert loan to dictionary"""
        result = {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'member_id': loan.member_id,
            'program': loan.program.value,
            'currency': loan.currency.code,
            'interest_rate': str(loan.interest_rate),
            'increment_level': loan.increment_level,
            'term_weeks': loan.term_weeks,
            'installment_type': loan.installment_type.value,
            'status': loan.status.value,
            'approval_status': loan.approval_status.value,
            'branch_id': loan.branch_id,
            'officer_id': loan.officer_id,
            'created_by': loan.created_by,
            'previous_loan_id': loan.previous_loan_id,
            'approved_by': loan.approved_by,
            'approved_at': loan.approved_at.isoformat() if loan.approved_at else None,
            'rejected_by': loan.rejected_by,
            'rejected_at': loan.rejected_at.isoformat() if loan.rejected_at else None,
            'rejection_reason': loan.rejection_reason,
            'write_off_notes': loan.write_off_notes,
            'version': loan.version
        }

        # Money amounts as Decimal strings in the loan currency
        for field in ['principal_amount', 'interest_amount', 'processing_fee',
                      'current_balance', 'total_paid', 'unapplied_credit']:
            result[field] = str(getattr(loan, field).amount)
        result['written_off_amount'] = (
            str(loan.written_off_amount.amount) if loan.written_off_amount else None
        )

        for field in ['issue_date', 'due_date', 'defaulted_date',
                      'written_off_date', 'last_payment_date']:
            result[field] = format_date(getattr(loan, field))

        return result

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to loan"""
        currency = Currency[data['currency']]

        def get_money(field: str) -> Optional[Money]:
            if data.get(field) is None:
                return None
            return Money(Decimal(data[field]), currency)

        def get_datetime(field: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[field]) if data.get(field) else None

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_id=data['member_id'],
            program=LoanProgram(data['program']),
            principal_amount=get_money('principal_amount'),
            interest_rate=Decimal(data['interest_rate']),
            interest_amount=get_money('interest_amount'),
            processing_fee=get_money('processing_fee'),
            increment_level=data['increment_level'],
            term_weeks=data['term_weeks'],
            installment_type=InstallmentType(data['installment_type']),
            current_balance=get_money('current_balance'),
            total_paid=get_money('total_paid'),
            unapplied_credit=get_money('unapplied_credit'),
            status=LoanStatus(data['status']),
            approval_status=ApprovalStatus(data['approval_status']),
            issue_date=parse_date(data.get('issue_date')),
            due_date=parse_date(data.get('due_date')),
            branch_id=data.get('branch_id'),
            officer_id=data.get('officer_id'),
            created_by=data.get('created_by'),
            previous_loan_id=data.get('previous_loan_id'),
            approved_by=data.get('approved_by'),
            approved_at=get_datetime('approved_at'),
            rejected_by=data.get('rejected_by'),
            rejected_at=get_datetime('rejected_at'),
            rejection_reason=data.get('rejection_reason'),
            defaulted_date=parse_date(data.get('defaulted_date')),
            written_off_date=parse_date(data.get('written_off_date')),
            written_off_amount=get_money('written_off_amount'),
            write_off_notes=data.get('write_off_notes'),
            last_payment_date=parse_date(data.get('last_payment_date')),
            version=data.get('version', 0)
        )


class LoanManager:
    """
    Drives loans through their lifecycle
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        repository: LoanRepository,
        policy: 'IncrementPolicy',
        members: 'MemberManager',
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LendingConfig] = None,
        today: Optional[TodayProvider] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.repository = repository
        self.policy = policy
        self.members = members
        self.dispatcher = dispatcher or EventDispatcher()
        self.config = config or get_config()
        self.today = today or utc_today
        self.currency = Currency[self.config.default_currency]
        self.logger = logger

    def _to_money(self, amount: Union[Money, Decimal, str, int], field: str) -> Money:
        if isinstance(amount, Money):
            if amount.currency != self.currency:
                raise ValidationError(
                    f"{field} must be in {self.currency.code}",
                    {field: amount.to_string()}
                )
            return amount
        try:
            return exact_money(amount, self.currency)
        except (ArithmeticError, ValueError):
            raise ValidationError(f"{field} is not a valid amount", {field: str(amount)})

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
        interest_rate: Optional[Decimal] = None,
        installment_type: Optional[InstallmentType] = None
    ) -> Loan:
        """
        Create a loan application in ``pending``.

        Args:
            member_id: Borrowing member, must be active
            program: small_loan or big_loan
            principal: Requested principal
            term_weeks: Term in weeks; the program default when omitted
            officer_id: Assigned loan officer; the member's officer when omitted
            acting_user_id: Staff user creating the application
            acting_role: Role of the acting user, used for policy overrides
            issue_date: Planned disbursement date; the approval date when omitted
            interest_rate: Flat rate overriding the program rate
            installment_type: Repayment cadence; the program default when omitted

        Returns:
            Created Loan

        Raises:
            ValidationError: On malformed input or an unknown member
            PolicyError: If the member is not active, has an open loan, or the
                request is outside their increment level
        """
        try:
            program = LoanProgram(program) if not isinstance(program, LoanProgram) else program
        except ValueError:
            raise ValidationError(f"Unknown loan program: {program}", {"program": str(program)})
        terms = program_terms(program, self.config)

        principal = self._to_money(principal, "principal")
        if not principal.is_positive():
            raise ValidationError("Principal must be positive", {"principal": str(principal.amount)})

        term_weeks = term_weeks if term_weeks is not None else terms.default_term_weeks
        if isinstance(term_weeks, bool) or not isinstance(term_weeks, int) or term_weeks < 1:
            raise ValidationError("Term must be a positive number of weeks", {"term_weeks": term_weeks})

        rate = Decimal(str(interest_rate)) if interest_rate is not None else terms.interest_rate
        if rate < Decimal('0') or rate > Decimal('1'):
            raise ValidationError("Interest rate must be between 0 and 1", {"interest_rate": str(rate)})

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            # Serializes applications per member so the open-loan check holds
            with self.storage.lock(self.members.table_name, member_id):
                member = self.members.require_member(member_id)
                member.ensure_can_borrow()
                self.policy.ensure_no_open_loan(member_id)

                validation = self.policy.validate_requested_loan(
                    member_id, principal, term_weeks, acting_role
                )
                validation.raise_for_violations()

                interest_amount = principal * rate
                loan = Loan(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    member_id=member_id,
                    program=program,
                    principal_amount=principal,
                    interest_rate=rate,
                    interest_amount=interest_amount,
                    processing_fee=principal * self.config.processing_fee_rate_decimal,
                    increment_level=validation.level,
                    term_weeks=term_weeks,
                    installment_type=installment_type or terms.installment_type,
                    current_balance=principal + interest_amount,
                    total_paid=Money.zero(self.currency),
                    unapplied_credit=Money.zero(self.currency),
                    issue_date=issue_date,
                    branch_id=member.branch_id,
                    officer_id=officer_id or member.assigned_officer_id,
                    created_by=acting_user_id,
                    previous_loan_id=validation.previous_loan_id
                )
                self.repository.save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "member_id": member_id,
                "program": program.value,
                "principal_amount": principal.to_string(),
                "interest_rate": str(rate),
                "term_weeks": term_weeks,
                "increment_level": loan.increment_level,
                "previous_loan_id": loan.previous_loan_id
            },
            user_id=acting_user_id
        )
        if validation.override_applied:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_POLICY_OVERRIDDEN,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "acting_role": acting_role,
                    "violations": validation.violations,
                    "message": validation.error_message,
                    "suggested_amount": validation.suggested_amount.to_string(),
                    "suggested_weeks": validation.suggested_weeks
                },
                user_id=acting_user_id
            )
        self.dispatcher.emit(DomainEvent.LOAN_CREATED, "loan", loan.id, loan_event_data(loan))
        log_action(
            self.logger, "info", f"Loan created: {program.value}",
            user_id=acting_user_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={
                "member_id": member_id,
                "principal_amount": principal.to_string(),
                "term_weeks": term_weeks,
                "increment_level": loan.increment_level,
                "override_applied": validation.override_applied
            }
        )
        return loan

    def approve_loan(
        self,
        loan_id: str,
        approver_id: str,
        approval_date: Optional[date] = None
    ) -> Loan:
        """
        Approve a pending loan, generate its schedule and activate it.

        Approval, schedule persistence and activation commit together; any
        failure leaves the loan pending with no installments.

        Args:
            loan_id: Loan to approve
            approver_id: Approving staff user
            approval_date: Business date of approval; today when omitted

        Returns:
            The active Loan

        Raises:
            InvalidTransitionError: If the loan is not pending
        """
        approval_date = approval_date or self.today()

        with self.storage.atomic():
            with self.storage.lock(self.repository.loans_table, loan_id):
                loan = self.repository.require_loan(loan_id)
                assert_transition(loan, LoanStatus.APPROVED)
                if self.repository.get_installments(loan_id):
                    raise InvalidTransitionError(
                        f"Loan {loan_id} already has a schedule", {"loan_id": loan_id}
                    )

                issue_date = loan.issue_date or approval_date
                schedule = generate_schedule(
                    loan.principal_amount, loan.interest_amount,
                    issue_date, loan.term_weeks, loan.installment_type
                )
                _, _, scheduled_total = schedule_totals(schedule)
                if scheduled_total != loan.total_due:
                    raise ValidationError(
                        f"Schedule for loan {loan_id} does not reconcile",
                        {"scheduled": str(scheduled_total.amount), "expected": str(loan.total_due.amount)}
                    )

                now = datetime.now(timezone.utc)
                for scheduled in schedule:
                    self.repository.save_installment(
                        Installment.from_scheduled(loan.id, scheduled, str(uuid.uuid4()), now)
                    )

                loan.status = LoanStatus.APPROVED
                loan.approval_status = ApprovalStatus.APPROVED
                loan.approved_by = approver_id
                loan.approved_at = now
                loan.issue_date = issue_date
                loan.due_date = schedule[-1].due_date
                loan.current_balance = Money(
                    max(scheduled_total.amount - loan.total_paid.amount, Decimal('0')), loan.currency
                )
                assert_transition(loan, LoanStatus.ACTIVE)
                loan.status = LoanStatus.ACTIVE
                self.repository.save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_APPROVED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "issue_date": format_date(loan.issue_date),
                "due_date": format_date(loan.due_date),
                "installments": len(schedule),
                "current_balance": loan.current_balance.to_string()
            },
            user_id=approver_id
        )
        self.dispatcher.emit(DomainEvent.LOAN_APPROVED, "loan", loan.id, loan_event_data(loan))
        log_action(
            self.logger, "info", "Loan approved and activated",
            user_id=approver_id, action="approve_loan", resource=f"loan:{loan.id}",
            extra={"installments": len(schedule), "due_date": format_date(loan.due_date)}
        )
        return loan

    def reject_loan(self, loan_id: str, approver_id: str, reason: str) -> Loan:
        """
        Reject a pending loan. The loan becomes terminal with no obligation.

        Raises:
            ValidationError: If no reason is given
            InvalidTransitionError: If the loan is not pending
        """
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required", {"loan_id": loan_id})

        with self.storage.atomic():
            with self.storage.lock(self.repository.loans_table, loan_id):
                loan = self.repository.require_loan(loan_id)
                assert_transition(loan, LoanStatus.REJECTED)
                loan.status = LoanStatus.REJECTED
                loan.approval_status = ApprovalStatus.REJECTED
                loan.rejected_by = approver_id
                loan.rejected_at = datetime.now(timezone.utc)
                loan.rejection_reason = reason.strip()
                loan.current_balance = Money.zero(loan.currency)
                self.repository.save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_REJECTED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={"reason": loan.rejection_reason},
            user_id=approver_id
        )
        self.dispatcher.emit(DomainEvent.LOAN_REJECTED, "loan", loan.id, loan_event_data(loan))
        log_action(
            self.logger, "info", "Loan rejected",
            user_id=approver_id, action="reject_loan", resource=f"loan:{loan.id}",
            extra={"reason": loan.rejection_reason}
        )
        return loan

    def mark_defaulted(self, loan_id: str, actor_id: str, notes: Optional[str] = None) -> Loan:
        """
        Declare an active loan in default. Manual only; nothing calls this
        automatically.
        """
        with self.storage.atomic():
            with self.storage.lock(self.repository.loans_table, loan_id):
                loan = self.repository.require_loan(loan_id)
                assert_transition(loan, LoanStatus.DEFAULTED)
                loan.status = LoanStatus.DEFAULTED
                loan.defaulted_date = self.today()
                self.repository.save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DEFAULTED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "current_balance": loan.current_balance.to_string(),
                "defaulted_date": format_date(loan.defaulted_date),
                "notes": notes
            },
            user_id=actor_id
        )
        self.dispatcher.emit(DomainEvent.LOAN_DEFAULTED, "loan", loan.id, loan_event_data(loan))
        log_action(
            self.logger, "info", "Loan marked defaulted",
            user_id=actor_id, action="mark_defaulted", resource=f"loan:{loan.id}"
        )
        return loan

    def write_off_loan(
        self,
        loan_id: str,
        approver_id: str,
        notes: str,
        approver_role: Optional[str] = None
    ) -> Loan:
        """
        Write a loan off as bad debt.

        The outstanding balance is frozen as ``written_off_amount``.
        Administrators may write off any active or defaulted loan; other
        approvers only loans meeting the bad-debt definition.

        Args:
            loan_id: Loan to write off
            approver_id: Approving staff user
            notes: Justification, required
            approver_role: Role of the approver

        Returns:
            The written-off Loan

        Raises:
            ValidationError: If notes are missing
            InvalidTransitionError: If the loan is not active or defaulted
            PolicyError: If a non-administrator writes off an ineligible loan
        """
        if not notes or not notes.strip():
            raise ValidationError("Write-off notes are required", {"loan_id": loan_id})

        today = self.today()
        with self.storage.atomic():
            with self.storage.lock(self.repository.loans_table, loan_id):
                loan = self.repository.require_loan(loan_id)
                assert_transition(loan, LoanStatus.BAD_DEBT)

                is_admin = approver_role in self.config.admin_role_set
                if not is_admin and not meets_bad_debt_definition(loan, today, self.config.bad_debt_days):
                    raise PolicyError(
                        f"Loan {loan_id} does not meet the bad debt definition",
                        {
                            "loan_id": loan_id,
                            "bad_debt_days": self.config.bad_debt_days,
                            "last_payment_date": format_date(loan.last_payment_date)
                        }
                    )

                previous_status = loan.status
                loan.status = LoanStatus.BAD_DEBT
                loan.written_off_amount = loan.current_balance
                loan.written_off_date = today
                loan.write_off_notes = notes.strip()
                self.repository.save_loan(loan)

        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_WRITTEN_OFF,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "previous_status": previous_status.value,
                "written_off_amount": loan.written_off_amount.to_string(),
                "written_off_date": format_date(today),
                "notes": loan.write_off_notes,
                "approver_role": approver_role
            },
            user_id=approver_id
        )
        self.dispatcher.emit(DomainEvent.LOAN_WRITTEN_OFF, "loan", loan.id, loan_event_data(loan))
        log_action(
            self.logger, "info", "Loan written off",
            user_id=approver_id, action="write_off_loan", resource=f"loan:{loan.id}",
            extra={"written_off_amount": loan.written_off_amount.to_string()}
        )
        return loan

    def mark_repaid(self, loan: Loan) -> Loan:
        """
        Move an active loan with zero balance to ``repaid``. Mutates ``loan``
        in place; the caller saves it inside its own transaction.
        """
        if not loan.current_balance.is_zero():
            raise InvalidTransitionError(
                f"Loan {loan.id} still has a balance of {loan.current_balance.to_string()}",
                {"loan_id": loan.id, "current_balance": str(loan.current_balance.amount)}
            )
        assert_transition(loan, LoanStatus.REPAID)
        loan.status = LoanStatus.REPAID
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        return self.repository.get_loan(loan_id)

    def require_loan(self, loan_id: str) -> Loan:
        return self.repository.require_loan(loan_id)

    def get_member_loans(self, member_id: str) -> List[Loan]:
        """All loans of a member, oldest first"""
        return self.repository.get_member_loans(member_id)

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installment schedule of a loan"""
        return self.repository.get_installments(loan_id)

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        branch_id: Optional[str] = None,
        officer_id: Optional[str] = None
    ) -> List[Loan]:
        return self.repository.list_loans(status=status, branch_id=branch_id, officer_id=officer_id)
