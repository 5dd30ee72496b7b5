"""
Installment Schedule Module

Turns a loan's principal, flat interest, issue date and term into an ordered
repayment plan. ``generate_schedule`` is pure: it returns value objects and
never touches storage. The lifecycle persists the result as ``Installment``
rows exactly once, when the loan is approved.
"""

from datetime import date, datetime
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
from enum import Enum

from .currency import Money, Currency, split_evenly, money_sum
from .dates import add_weeks, format_date, parse_date
from .errors import ValidationError
from .storage import StorageRecord


class InstallmentType(Enum):
    """Repayment cadence"""
    WEEKLY = "weekly"              # One installment per week of the term
    END_OF_TERM = "end_of_term"    # Single lump sum at maturity


@dataclass(frozen=True)
class ScheduledInstallment:
    """One due slice of a generated schedule"""
    number: int
    due_date: date
    principal: Money
    interest: Money
    total: Money


def generate_schedule(
    principal: Money,
    interest_amount: Money,
    issue_date: date,
    term_weeks: int,
    installment_type: InstallmentType = InstallmentType.WEEKLY
) -> List[ScheduledInstallment]:
    """
    Generate the repayment schedule for a flat-interest loan.

    Weekly schedules split principal and interest independently over
    ``term_weeks`` installments. Installments 1..n-1 get the rounded-down
    share and installment n takes the remainder of each, so the totals
    reconcile to the minor unit. Installment k is due ``issue_date + 7k``.

    End-of-term schedules have a single installment due
    ``issue_date + 7 * term_weeks``.

    Args:
        principal: Disbursed principal
        interest_amount: Flat interest for the whole term
        issue_date: Disbursement date
        term_weeks: Term length in weeks (>= 1)
        installment_type: Repayment cadence

    Returns:
        Installments ordered by number, starting at 1

    Raises:
        ValidationError: On a bad term, negative amounts or mixed currencies
    """
    if not isinstance(term_weeks, int) or isinstance(term_weeks, bool) or term_weeks < 1:
        raise ValidationError("Term must be at least one week", {"term_weeks": term_weeks})
    if principal.currency != interest_amount.currency:
        raise ValidationError(
            "Principal and interest must share a currency",
            {"principal": principal.currency.code, "interest": interest_amount.currency.code}
        )
    if not principal.is_positive():
        raise ValidationError("Principal must be positive", {"principal": str(principal.amount)})
    if interest_amount.is_negative():
        raise ValidationError("Interest cannot be negative", {"interest": str(interest_amount.amount)})

    if installment_type == InstallmentType.END_OF_TERM:
        return [
            ScheduledInstallment(
                number=1,
                due_date=add_weeks(issue_date, term_weeks),
                principal=principal,
                interest=interest_amount,
                total=principal + interest_amount
            )
        ]

    principal_parts = split_evenly(principal, term_weeks)
    interest_parts = split_evenly(interest_amount, term_weeks)

    schedule = []
    for k, (principal_part, interest_part) in enumerate(zip(principal_parts, interest_parts), start=1):
        schedule.append(
            ScheduledInstallment(
                number=k,
                due_date=add_weeks(issue_date, k),
                principal=principal_part,
                interest=interest_part,
                total=principal_part + interest_part
            )
        )
    return schedule


def schedule_totals(schedule: Iterable[ScheduledInstallment]) -> Tuple[Money, Money, Money]:
    """(principal, interest, total) summed over a schedule"""
    schedule = list(schedule)
    if not schedule:
        raise ValidationError("Schedule is empty")
    currency = schedule[0].total.currency
    return (
        money_sum((i.principal for i in schedule), currency),
        money_sum((i.interest for i in schedule), currency),
        money_sum((i.total for i in schedule), currency),
    )


@dataclass
class Installment(StorageRecord):
    """
    Persisted installment of a loan. Created in one batch at approval,
    afterwards only ``amount_paid``, ``is_paid`` and ``paid_date`` change.
    """
    loan_id: str
    installment_number: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    amount_paid: Money
    is_paid: bool = False
    paid_date: Optional[date] = None

    @property
    def outstanding(self) -> Money:
        """Amount still owed on this installment"""
        return self.total_amount - self.amount_paid

    def is_overdue(self, as_of: date) -> bool:
        """Unpaid and due strictly before ``as_of``"""
        return not self.is_paid and self.due_date < as_of

    @classmethod
    def from_scheduled(cls, loan_id: str, scheduled: ScheduledInstallment,
                       installment_id: str, now: datetime) -> 'Installment':
        return cls(
            id=installment_id,
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            installment_number=scheduled.number,
            due_date=scheduled.due_date,
            principal_amount=scheduled.principal,
            interest_amount=scheduled.interest,
            total_amount=scheduled.total,
            amount_paid=Money.zero(scheduled.total.currency)
        )

    def to_dict(self) -> Dict:
        currency = self.total_amount.currency
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': format_date(self.due_date),
            'principal_amount': str(self.principal_amount.amount),
            'interest_amount': str(self.interest_amount.amount),
            'total_amount': str(self.total_amount.amount),
            'amount_paid': str(self.amount_paid.amount),
            'currency': currency.code,
            'is_paid': self.is_paid,
            'paid_date': format_date(self.paid_date)
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Installment':
        currency = Currency[data['currency']]

        def money(field: str) -> Money:
            return Money(Decimal(data[field]), currency)

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=parse_date(data['due_date']),
            principal_amount=money('principal_amount'),
            interest_amount=money('interest_amount'),
            total_amount=money('total_amount'),
            amount_paid=money('amount_paid'),
            is_paid=data['is_paid'],
            paid_date=parse_date(data.get('paid_date'))
        )
