"""
Overdue & Risk Classification Module

Read-only reporting over active loans: how far behind each loan is, how much
is overdue, and which risk tier that puts it in. Two ways of measuring
"overdue" are supported:

* ``installment``: days since the oldest unpaid installment fell due, amount
  is everything unpaid on installments already past due.
* ``due_date``: days since the loan's final due date, amount is the whole
  outstanding balance.

Nothing here writes or caches; every report reads committed state.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Iterable
from enum import Enum

from .currency import Money, Currency, money_sum
from .config import LendingConfig, get_config
from .dates import TodayProvider, utc_today, days_between, format_date
from .errors import ValidationError
from .loans import Loan, LoanStatus, LoanRepository, meets_bad_debt_definition
from .schedule import Installment
from .logging_config import get_logger


class RiskTier(Enum):
    """Collections priority bucket, ordered from least to most severe"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(RiskTier).index(self)

    def __lt__(self, other: 'RiskTier') -> bool:
        return self.rank < other.rank

    def __le__(self, other: 'RiskTier') -> bool:
        return self.rank <= other.rank

    def __gt__(self, other: 'RiskTier') -> bool:
        return self.rank > other.rank

    def __ge__(self, other: 'RiskTier') -> bool:
        return self.rank >= other.rank


class RiskTierTable:
    """
    Days-overdue thresholds, upper bounds inclusive:
    0 is low, 1..medium_max is medium, ..high_max is high, beyond is critical.
    """

    def __init__(self, medium_max_days: int = 30, high_max_days: int = 90):
        if medium_max_days < 1 or high_max_days <= medium_max_days:
            raise ValueError(
                f"Risk thresholds must satisfy 1 <= medium ({medium_max_days}) < high ({high_max_days})"
            )
        self.medium_max_days = medium_max_days
        self.high_max_days = high_max_days

    @classmethod
    def from_config(cls, config: LendingConfig) -> 'RiskTierTable':
        return cls(config.risk_medium_max_days, config.risk_high_max_days)

    def classify(self, days_overdue: int) -> RiskTier:
        if days_overdue <= 0:
            return RiskTier.LOW
        if days_overdue <= self.medium_max_days:
            return RiskTier.MEDIUM
        if days_overdue <= self.high_max_days:
            return RiskTier.HIGH
        return RiskTier.CRITICAL


class ScopeKind(Enum):
    GLOBAL = "global"
    BRANCH = "branch"
    OFFICER = "officer"


@dataclass(frozen=True)
class ReportScope:
    """Which loans a requester may see"""
    kind: ScopeKind
    value: Optional[str] = None

    def __post_init__(self):
        if self.kind != ScopeKind.GLOBAL and not self.value:
            raise ValidationError(f"A {self.kind.value} scope needs an identifier")

    @classmethod
    def all_loans(cls) -> 'ReportScope':
        return cls(ScopeKind.GLOBAL)

    @classmethod
    def branch(cls, branch_id: str) -> 'ReportScope':
        return cls(ScopeKind.BRANCH, branch_id)

    @classmethod
    def officer(cls, officer_id: str) -> 'ReportScope':
        return cls(ScopeKind.OFFICER, officer_id)

    @classmethod
    def for_user(
        cls,
        role: Optional[str],
        user_id: str,
        branch_id: Optional[str] = None,
        admin_roles: Iterable[str] = ("admin", "super_admin")
    ) -> 'ReportScope':
        """
        Administrators see everything, branch managers their branch, anyone
        else the loans assigned to them.
        """
        if role in set(admin_roles):
            return cls.all_loans()
        if role == "branch_manager" and branch_id:
            return cls.branch(branch_id)
        return cls.officer(user_id)

    def matches(self, loan: Loan) -> bool:
        if self.kind == ScopeKind.GLOBAL:
            return True
        if self.kind == ScopeKind.BRANCH:
            return loan.branch_id == self.value
        return loan.officer_id == self.value


class OverdueMode(Enum):
    INSTALLMENT = "installment"
    DUE_DATE = "due_date"


@dataclass
class OverdueAssessment:
    days_overdue: int
    overdue_amount: Money
    overdue_installments: int


class InstallmentOverdueStrategy:
    """Measures lateness from the oldest unpaid installment already due"""

    mode = OverdueMode.INSTALLMENT

    def assess(self, loan: Loan, installments: List[Installment], as_of: date) -> Optional[OverdueAssessment]:
        late = [i for i in installments if i.is_overdue(as_of)]
        if not late:
            return None
        oldest_due = min(i.due_date for i in late)
        return OverdueAssessment(
            days_overdue=max(0, days_between(oldest_due, as_of)),
            overdue_amount=money_sum((i.outstanding for i in late), loan.currency),
            overdue_installments=len(late)
        )


class DueDateOverdueStrategy:
    """Measures lateness from the loan's final due date only"""

    mode = OverdueMode.DUE_DATE

    def assess(self, loan: Loan, installments: List[Installment], as_of: date) -> Optional[OverdueAssessment]:
        if not loan.due_date or as_of <= loan.due_date or not loan.current_balance.is_positive():
            return None
        return OverdueAssessment(
            days_overdue=days_between(loan.due_date, as_of),
            overdue_amount=loan.current_balance,
            overdue_installments=len([i for i in installments if i.is_overdue(as_of)])
        )


@dataclass
class OverdueLoanView:
    """One row of the overdue report"""
    loan_id: str
    member_id: str
    branch_id: Optional[str]
    officer_id: Optional[str]
    program: str
    principal_amount: Money
    current_balance: Money
    overdue_amount: Money
    days_overdue: int
    risk_tier: RiskTier
    total_installments: int
    paid_installments: int
    overdue_installments: int
    next_due_date: Optional[date]
    due_date: Optional[date]
    last_payment_date: Optional[date]
    mode: OverdueMode

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'member_id': self.member_id,
            'branch_id': self.branch_id,
            'officer_id': self.officer_id,
            'program': self.program,
            'currency': self.current_balance.currency.code,
            'principal_amount': str(self.principal_amount.amount),
            'current_balance': str(self.current_balance.amount),
            'overdue_amount': str(self.overdue_amount.amount),
            'days_overdue': self.days_overdue,
            'risk_tier': self.risk_tier.value,
            'total_installments': self.total_installments,
            'paid_installments': self.paid_installments,
            'overdue_installments': self.overdue_installments,
            'next_due_date': format_date(self.next_due_date),
            'due_date': format_date(self.due_date),
            'last_payment_date': format_date(self.last_payment_date),
            'mode': self.mode.value
        }


class OverdueClassifier:
    """
    Builds overdue reports for a requester's scope
    """

    def __init__(
        self,
        repository: LoanRepository,
        config: Optional[LendingConfig] = None,
        today: Optional[TodayProvider] = None,
        tiers: Optional[RiskTierTable] = None
    ):
        self.repository = repository
        self.config = config or get_config()
        self.today = today or utc_today
        self.tiers = tiers or RiskTierTable.from_config(self.config)
        self.strategies = {
            OverdueMode.INSTALLMENT: InstallmentOverdueStrategy(),
            OverdueMode.DUE_DATE: DueDateOverdueStrategy(),
        }
        self.logger = get_logger("lending.overdue")

    def _resolve_mode(self, mode) -> OverdueMode:
        if mode is None:
            mode = self.config.overdue_mode
        if isinstance(mode, OverdueMode):
            return mode
        try:
            return OverdueMode(mode)
        except ValueError:
            raise ValidationError(f"Unknown overdue mode: {mode}", {"mode": str(mode)})

    def get_overdue_report(
        self,
        scope: Optional[ReportScope] = None,
        mode=None,
        as_of: Optional[date] = None
    ) -> List[OverdueLoanView]:
        """
        Overdue active loans visible in ``scope``, most days overdue first.

        Args:
            scope: Requester's scope; everything when omitted
            mode: ``installment`` or ``due_date``; the configured mode when omitted
            as_of: Reporting date; today when omitted

        Returns:
            List of OverdueLoanView
        """
        scope = scope or ReportScope.all_loans()
        strategy = self.strategies[self._resolve_mode(mode)]
        as_of = as_of or self.today()

        report = []
        for loan in self.repository.list_loans(status=LoanStatus.ACTIVE):
            if not scope.matches(loan):
                continue
            installments = self.repository.get_installments(loan.id)
            assessment = strategy.assess(loan, installments, as_of)
            if assessment is None:
                continue
            unpaid = [i for i in installments if not i.is_paid]
            report.append(OverdueLoanView(
                loan_id=loan.id,
                member_id=loan.member_id,
                branch_id=loan.branch_id,
                officer_id=loan.officer_id,
                program=loan.program.value,
                principal_amount=loan.principal_amount,
                current_balance=loan.current_balance,
                overdue_amount=assessment.overdue_amount,
                days_overdue=assessment.days_overdue,
                risk_tier=self.tiers.classify(assessment.days_overdue),
                total_installments=len(installments),
                paid_installments=len(installments) - len(unpaid),
                overdue_installments=assessment.overdue_installments,
                next_due_date=min((i.due_date for i in unpaid), default=None),
                due_date=loan.due_date,
                last_payment_date=loan.last_payment_date,
                mode=strategy.mode
            ))

        report.sort(key=lambda view: (-view.days_overdue, -view.overdue_amount.amount, view.loan_id))
        self.logger.debug(
            f"Overdue report ({strategy.mode.value}, {scope.kind.value}) as of {as_of}: {len(report)} loans"
        )
        return report

    def summarize(self, report: List[OverdueLoanView]) -> Dict[str, Any]:
        """Loan counts and overdue amounts per risk tier"""
        currency = report[0].overdue_amount.currency if report else Currency[self.config.default_currency]
        tiers = {}
        for tier in RiskTier:
            rows = [view for view in report if view.risk_tier == tier]
            tiers[tier.value] = {
                'loans': len(rows),
                'overdue_amount': str(money_sum((v.overdue_amount for v in rows), currency).amount),
                'outstanding_balance': str(money_sum((v.current_balance for v in rows), currency).amount)
            }
        return {
            'currency': currency.code,
            'total_loans': len(report),
            'total_overdue_amount': str(money_sum((v.overdue_amount for v in report), currency).amount),
            'tiers': tiers
        }

    def get_bad_debt_candidates(
        self,
        scope: Optional[ReportScope] = None,
        as_of: Optional[date] = None
    ) -> List[Loan]:
        """
        Active or defaulted loans with a balance and no payment for more than
        ``bad_debt_days``. Candidates only; writing off stays a manual command.
        """
        scope = scope or ReportScope.all_loans()
        as_of = as_of or self.today()
        candidates = []
        for status in (LoanStatus.ACTIVE, LoanStatus.DEFAULTED):
            for loan in self.repository.list_loans(status=status):
                if scope.matches(loan) and meets_bad_debt_definition(loan, as_of, self.config.bad_debt_days):
                    candidates.append(loan)
        candidates.sort(key=lambda loan: loan.last_payment_date or loan.issue_date)
        return candidates
