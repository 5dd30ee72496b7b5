"""
Increment Level Policy Module

Graduated lending: a member starts at level 1 and moves up one level each
time their most recent loan is fully repaid. Each level fixes the largest
principal a member may borrow and which terms (8 or 12 weeks) are open to
them. The policy only reads loan history; it never writes.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Iterable

from .currency import Money, Currency
from .config import LendingConfig, get_config
from .errors import PolicyError, InvalidTermError
from .loans import Loan, LoanStatus, OPEN_STATUSES, LoanRepository
from .logging_config import get_logger


@dataclass(frozen=True)
class IncrementLevel:
    """One row of the increment table"""
    level: int
    amount: Decimal
    weeks_8: bool = True
    weeks_12: bool = False

    @property
    def eligible_terms(self) -> List[int]:
        terms = []
        if self.weeks_8:
            terms.append(8)
        if self.weeks_12:
            terms.append(12)
        return terms


DEFAULT_INCREMENT_LEVELS = [
    IncrementLevel(1, Decimal('5000')),
    IncrementLevel(2, Decimal('7000')),
    IncrementLevel(3, Decimal('9000'), weeks_12=True),
    IncrementLevel(4, Decimal('11000'), weeks_12=True),
    IncrementLevel(5, Decimal('13000'), weeks_12=True),
    IncrementLevel(6, Decimal('15000'), weeks_12=True),
    IncrementLevel(7, Decimal('17000'), weeks_12=True),
    IncrementLevel(8, Decimal('20000'), weeks_12=True),
    IncrementLevel(9, Decimal('25000'), weeks_12=True),
    IncrementLevel(10, Decimal('30000'), weeks_12=True),
    IncrementLevel(11, Decimal('35000'), weeks_12=True),
    IncrementLevel(12, Decimal('40000'), weeks_12=True),
    IncrementLevel(13, Decimal('45000'), weeks_12=True),
    IncrementLevel(14, Decimal('50000'), weeks_12=True),
]


class IncrementLevelTable:
    """Read-only level lookup. Levels above the top resolve to the top level."""

    def __init__(self, levels: Optional[Iterable[IncrementLevel]] = None):
        rows = sorted(levels or DEFAULT_INCREMENT_LEVELS, key=lambda row: row.level)
        if not rows:
            raise ValueError("Increment table cannot be empty")
        expected = list(range(1, len(rows) + 1))
        if [row.level for row in rows] != expected:
            raise ValueError("Increment levels must be contiguous starting at 1")
        for row in rows:
            if row.amount <= Decimal('0'):
                raise ValueError(f"Level {row.level} amount must be positive")
            if not row.eligible_terms:
                raise ValueError(f"Level {row.level} enables no term")
        self._levels: Dict[int, IncrementLevel] = {row.level: row for row in rows}

    @property
    def top_level(self) -> int:
        return max(self._levels)

    def get(self, level: int) -> IncrementLevel:
        if level < 1:
            raise ValueError(f"Increment level must be >= 1, got {level}")
        return self._levels[min(level, self.top_level)]

    def levels(self) -> List[IncrementLevel]:
        return [self._levels[level] for level in sorted(self._levels)]


@dataclass
class IncrementSuggestion:
    """What a member may borrow next"""
    member_id: str
    level: int
    amount: Money
    eligible_terms_weeks: List[int]
    can_borrow_less: bool = True
    previous_loan_id: Optional[str] = None


# Violation codes carried by LoanValidationResult
NON_POSITIVE_AMOUNT = "non_positive_amount"
AMOUNT_EXCEEDS_LEVEL = "amount_exceeds_level"
TERM_NOT_ENABLED = "term_not_enabled"


@dataclass
class LoanValidationResult:
    """
    Outcome of checking a requested loan against the member's level.

    ``suggested_amount`` and ``suggested_weeks`` are always what the policy
    considers correct, even when an administrator override makes the request
    valid.
    """
    is_valid: bool
    level: int
    suggested_amount: Money
    suggested_weeks: int
    error_message: Optional[str] = None
    override_applied: bool = False
    violations: List[str] = field(default_factory=list)
    previous_loan_id: Optional[str] = None

    def raise_for_violations(self) -> None:
        """Raise the matching PolicyError when the request is not valid"""
        if self.is_valid:
            return
        details = {
            "level": self.level,
            "suggested_amount": str(self.suggested_amount.amount),
            "suggested_weeks": self.suggested_weeks,
            "violations": self.violations
        }
        if self.violations == [TERM_NOT_ENABLED]:
            raise InvalidTermError(self.error_message, details)
        raise PolicyError(self.error_message, details)


class IncrementPolicy:
    """
    Computes a member's next increment level from their loan history and
    validates requested loans against it.
    """

    def __init__(
        self,
        loans: LoanRepository,
        config: Optional[LendingConfig] = None,
        table: Optional[IncrementLevelTable] = None
    ):
        self.loans = loans
        self.config = config or get_config()
        self.table = table or IncrementLevelTable()
        self.currency = Currency[self.config.default_currency]
        self.logger = get_logger("lending.increments")

    def _history(self, member_id: str) -> List[Loan]:
        """Member's loans in creation order, rejected applications excluded"""
        loans = [
            loan for loan in self.loans.get_member_loans(member_id)
            if loan.status != LoanStatus.REJECTED
        ]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def next_increment(self, member_id: str) -> IncrementSuggestion:
        """
        Level, amount and terms the member is eligible for next.

        * No prior loan: level 1.
        * Most recent loan repaid with nothing outstanding: its level + 1,
          capped at the top of the table.
        * Otherwise (defaulted, written off, still open): the most recent
          loan's level.
        """
        history = self._history(member_id)
        level = 1
        previous_loan_id = None

        if history:
            latest = history[-1]
            previous_loan_id = latest.id
            if latest.status == LoanStatus.REPAID and latest.current_balance.is_zero():
                level = min(latest.increment_level + 1, self.table.top_level)
            else:
                level = min(latest.increment_level, self.table.top_level)

        row = self.table.get(level)
        return IncrementSuggestion(
            member_id=member_id,
            level=row.level,
            amount=Money(row.amount, self.currency),
            eligible_terms_weeks=row.eligible_terms,
            can_borrow_less=True,
            previous_loan_id=previous_loan_id
        )

    def ensure_no_open_loan(self, member_id: str) -> None:
        """
        Raises:
            PolicyError: If the member has a pending, approved or active loan
        """
        open_loans = [
            loan for loan in self.loans.get_member_loans(member_id)
            if loan.status in OPEN_STATUSES
        ]
        if open_loans:
            raise PolicyError(
                f"Member {member_id} already has an open loan",
                {
                    "member_id": member_id,
                    "open_loan_ids": [loan.id for loan in open_loans],
                    "statuses": [loan.status.value for loan in open_loans]
                }
            )

    def check_term(self, level: int, weeks: int) -> None:
        """
        Raises:
            InvalidTermError: If ``weeks`` is not enabled at ``level``
        """
        row = self.table.get(level)
        if weeks not in row.eligible_terms:
            raise InvalidTermError(
                f"{weeks}-week term is not available at level {row.level}",
                {"level": row.level, "requested_weeks": weeks, "eligible_terms_weeks": row.eligible_terms}
            )

    def validate_requested_loan(
        self,
        member_id: str,
        requested_amount: Money,
        requested_weeks: int,
        acting_user_role: Optional[str] = None
    ) -> LoanValidationResult:
        """
        Check a requested amount and term against the member's level.

        Administrators get ``is_valid=True`` with ``override_applied`` set and
        the message a non-administrator would have seen. A non-positive amount
        and an open loan are never overridable.

        Args:
            member_id: Borrowing member
            requested_amount: Principal asked for
            requested_weeks: Term asked for
            acting_user_role: Role of the staff user making the request

        Returns:
            LoanValidationResult

        Raises:
            PolicyError: If the member already has an open loan
        """
        self.ensure_no_open_loan(member_id)
        suggestion = self.next_increment(member_id)

        violations = []
        messages = []
        if not requested_amount.is_positive():
            violations.append(NON_POSITIVE_AMOUNT)
            messages.append("Requested amount must be positive")
        elif requested_amount > suggestion.amount:
            violations.append(AMOUNT_EXCEEDS_LEVEL)
            messages.append(
                f"Requested amount {requested_amount.to_string()} exceeds the level "
                f"{suggestion.level} limit of {suggestion.amount.to_string()}"
            )
        if requested_weeks not in suggestion.eligible_terms_weeks:
            violations.append(TERM_NOT_ENABLED)
            messages.append(
                f"{requested_weeks}-week term is not available at level {suggestion.level}"
            )

        if requested_amount.is_positive() and requested_amount <= suggestion.amount:
            suggested_amount = requested_amount
        else:
            suggested_amount = suggestion.amount
        if requested_weeks in suggestion.eligible_terms_weeks:
            suggested_weeks = requested_weeks
        else:
            suggested_weeks = suggestion.eligible_terms_weeks[0]

        is_admin = acting_user_role in self.config.admin_role_set
        overridable = NON_POSITIVE_AMOUNT not in violations
        override_applied = bool(violations) and is_admin and overridable

        result = LoanValidationResult(
            is_valid=not violations or override_applied,
            level=suggestion.level,
            suggested_amount=suggested_amount,
            suggested_weeks=suggested_weeks,
            error_message="; ".join(messages) if messages else None,
            override_applied=override_applied,
            violations=violations,
            previous_loan_id=suggestion.previous_loan_id
        )
        if violations:
            self.logger.warning(
                f"Loan request for member {member_id} outside policy: {result.error_message}"
                + (" (administrator override)" if override_applied else "")
            )
        return result
