"""
Payment Distribution Module

Applies money received against a loan's installments in order and keeps the
loan aggregates in step. ``distribute_payment`` is the pure allocation rule;
``PaymentProcessor.record_payment`` runs it under the loan's row lock and
commits installments, aggregates, the payment record and any ``repaid``
transition as one unit.
"""

from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Union
from enum import Enum
import uuid

from .currency import Money, Currency, exact_money, money_min
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, DomainEvent, loan_event_data
from .config import LendingConfig, get_config
from .dates import TodayProvider, utc_today, parse_date, format_date
from .errors import ValidationError, InvalidAmountError, InvalidTransitionError, ConcurrencyError
from .schedule import Installment
from .loans import Loan, LoanStatus, LoanManager, LoanRepository
from .members import MemberManager
from .logging_config import get_logger, log_action


class PaymentMethod(Enum):
    """How the money was received"""
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    MOBILE_MONEY = "mobile_money"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    OTHER = "other"


@dataclass
class Payment(StorageRecord):
    """
    Immutable record of money received against a loan
    """
    loan_id: str
    member_id: str
    amount: Money
    payment_date: date
    method: PaymentMethod
    recorded_by: Optional[str]
    applied_amount: Money
    excess_amount: Money
    balance_after: Money
    installments_touched: List[int] = field(default_factory=list)
    note: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'member_id': self.member_id,
            'currency': self.amount.currency.code,
            'amount': str(self.amount.amount),
            'payment_date': format_date(self.payment_date),
            'method': self.method.value,
            'recorded_by': self.recorded_by,
            'applied_amount': str(self.applied_amount.amount),
            'excess_amount': str(self.excess_amount.amount),
            'balance_after': str(self.balance_after.amount),
            'installments_touched': list(self.installments_touched),
            'note': self.note
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Payment':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            member_id=data['member_id'],
            amount=Money(Decimal(data['amount']), currency),
            payment_date=parse_date(data['payment_date']),
            method=PaymentMethod(data['method']),
            recorded_by=data.get('recorded_by'),
            applied_amount=Money(Decimal(data['applied_amount']), currency),
            excess_amount=Money(Decimal(data['excess_amount']), currency),
            balance_after=Money(Decimal(data['balance_after']), currency),
            installments_touched=data.get('installments_touched', []),
            note=data.get('note')
        )


@dataclass
class DistributionResult:
    """Outcome of allocating one payment; nothing here is persisted yet"""
    installments_updated: List[Installment]
    new_balance: Money
    new_total_paid: Money
    applied_amount: Money
    excess_amount: Money
    loan_closed: bool


@dataclass
class PaymentResult:
    """What ``record_payment`` committed"""
    payment: Payment
    loan: Loan
    installments_updated: List[Installment]
    excess_amount: Money
    loan_closed: bool

    @property
    def new_balance(self) -> Money:
        return self.loan.current_balance


def distribute_payment(
    loan: Loan,
    installments: List[Installment],
    amount: Money,
    payment_date: date
) -> DistributionResult:
    """
    Allocate ``amount`` across a loan's installments.

    Installments are visited by ascending number. Each unpaid one receives
    ``min(remaining, outstanding)``; a fully covered installment is marked
    paid on ``payment_date``. ``total_paid`` grows by the whole amount, the
    balance is ``total_due - total_paid`` clamped at zero, and whatever
    exceeds the balance is reported as ``excess_amount``.

    The inputs are not modified; updated installments are copies.

    Raises:
        InvalidAmountError: If ``amount`` is not strictly positive
    """
    if not amount.is_positive():
        raise InvalidAmountError(
            "Payment amount must be positive", {"amount": str(amount.amount)}
        )
    if amount.currency != loan.currency:
        raise InvalidAmountError(
            f"Payment must be in {loan.currency.code}", {"amount": amount.to_string()}
        )

    remaining = amount
    updated = []
    for installment in sorted(installments, key=lambda i: i.installment_number):
        if remaining.is_zero():
            break
        if installment.is_paid or not installment.outstanding.is_positive():
            continue

        applied = money_min(remaining, installment.outstanding)
        amount_paid = installment.amount_paid + applied
        fully_paid = amount_paid >= installment.total_amount
        updated.append(replace(
            installment,
            amount_paid=amount_paid,
            is_paid=fully_paid,
            paid_date=payment_date if fully_paid else installment.paid_date
        ))
        remaining = remaining - applied

    zero = Money.zero(loan.currency)
    new_total_paid = loan.total_paid + amount
    unclamped = loan.total_due - new_total_paid
    new_balance = unclamped if unclamped.is_positive() else zero
    excess = amount - loan.current_balance
    excess = excess if excess.is_positive() else zero

    return DistributionResult(
        installments_updated=updated,
        new_balance=new_balance,
        new_total_paid=new_total_paid,
        applied_amount=amount - excess,
        excess_amount=excess,
        loan_closed=new_balance.is_zero()
    )


class PaymentProcessor:
    """
    Records loan repayments
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        repository: LoanRepository,
        loan_manager: LoanManager,
        members: MemberManager,
        dispatcher: Optional[EventDispatcher] = None,
        config: Optional[LendingConfig] = None,
        today: Optional[TodayProvider] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.repository = repository
        self.loan_manager = loan_manager
        self.members = members
        self.dispatcher = dispatcher or EventDispatcher()
        self.config = config or get_config()
        self.today = today or utc_today
        self.payments_table = "payments"
        self.logger = get_logger("lending.payments")

    def record_payment(
        self,
        loan_id: str,
        amount: Union[Money, Decimal, str, int],
        payment_date: Optional[date] = None,
        method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        recorded_by: Optional[str] = None,
        note: Optional[str] = None
    ) -> PaymentResult:
        """
        Record a repayment and distribute it over the loan's installments.

        Args:
            loan_id: Loan being repaid, must be active
            amount: Amount received, strictly positive
            payment_date: Date the money was received; today when omitted
            method: Payment channel
            recorded_by: Staff user recording the payment
            note: Optional free text

        Returns:
            PaymentResult

        Raises:
            InvalidAmountError: If the amount is not positive, is malformed or
                is finer than the currency's minor unit
            InvalidTransitionError: If the loan is not active
            ConcurrencyError: If the loan kept changing across every retry
        """
        amount = self._to_money(amount)
        if not amount.is_positive():
            self.logger.warning(f"Rejected non-positive payment of {amount.to_string()} on loan {loan_id}")
            raise InvalidAmountError(
                "Payment amount must be positive", {"loan_id": loan_id, "amount": str(amount.amount)}
            )
        try:
            method = method if isinstance(method, PaymentMethod) else PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {method}", {"method": str(method)})
        payment_date = payment_date or self.today()

        attempts = max(1, self.config.max_payment_retries)
        for attempt in range(1, attempts + 1):
            try:
                return self._record_payment_once(loan_id, amount, payment_date, method, recorded_by, note)
            except ConcurrencyError as e:
                if attempt == attempts:
                    raise
                log_action(
                    self.logger, "warning", f"Retrying payment after conflict: {e.message}",
                    user_id=recorded_by, action="record_payment", resource=f"loan:{loan_id}",
                    extra={"attempt": attempt}
                )

    def _to_money(self, amount: Union[Money, Decimal, str, int]) -> Money:
        if isinstance(amount, Money):
            return amount
        try:
            return exact_money(amount, Currency[self.config.default_currency])
        except (ArithmeticError, ValueError):
            raise InvalidAmountError(f"Invalid payment amount: {amount}", {"amount": str(amount)})

    def _record_payment_once(
        self,
        loan_id: str,
        amount: Money,
        payment_date: date,
        method: PaymentMethod,
        recorded_by: Optional[str],
        note: Optional[str]
    ) -> PaymentResult:
        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            with self.storage.lock(self.repository.loans_table, loan_id):
                loan = self.repository.require_loan(loan_id)
                if loan.status != LoanStatus.ACTIVE:
                    error = InvalidTransitionError(
                        f"Cannot record a payment on a {loan.status.value} loan",
                        {"loan_id": loan_id, "status": loan.status.value}
                    )
                    log_action(
                        self.logger, "error", error.message,
                        user_id=recorded_by, action="record_payment",
                        resource=f"loan:{loan_id}", extra=error.details
                    )
                    raise error

                distribution = distribute_payment(
                    loan, self.repository.get_installments(loan_id), amount, payment_date
                )

                for installment in distribution.installments_updated:
                    installment.updated_at = now
                    self.repository.save_installment(installment)

                loan.total_paid = distribution.new_total_paid
                loan.current_balance = distribution.new_balance
                loan.unapplied_credit = loan.unapplied_credit + distribution.excess_amount
                if not loan.last_payment_date or payment_date > loan.last_payment_date:
                    loan.last_payment_date = payment_date
                if distribution.loan_closed:
                    self.loan_manager.mark_repaid(loan)

                payment = Payment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    member_id=loan.member_id,
                    amount=amount,
                    payment_date=payment_date,
                    method=method,
                    recorded_by=recorded_by,
                    applied_amount=distribution.applied_amount,
                    excess_amount=distribution.excess_amount,
                    balance_after=loan.current_balance,
                    installments_touched=[i.installment_number for i in distribution.installments_updated],
                    note=note
                )
                self.storage.save(self.payments_table, payment.id, payment.to_dict())
                self.repository.save_loan(loan)
                self.members.touch_activity(loan.member_id, payment_date)

        self._after_commit(loan, payment, distribution)
        return PaymentResult(
            payment=payment,
            loan=loan,
            installments_updated=distribution.installments_updated,
            excess_amount=distribution.excess_amount,
            loan_closed=distribution.loan_closed
        )

    def _after_commit(self, loan: Loan, payment: Payment, distribution: DistributionResult) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_PAYMENT_RECORDED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "payment_id": payment.id,
                "amount": payment.amount.to_string(),
                "payment_date": format_date(payment.payment_date),
                "method": payment.method.value,
                "installments_touched": payment.installments_touched,
                "balance_after": loan.current_balance.to_string()
            },
            user_id=payment.recorded_by
        )
        data = loan_event_data(loan)
        data["payment_id"] = payment.id
        data["amount"] = str(payment.amount.amount)
        self.dispatcher.emit(DomainEvent.LOAN_PAYMENT_RECORDED, "loan", loan.id, data)

        if distribution.excess_amount.is_positive():
            metadata = {
                "payment_id": payment.id,
                "excess_amount": distribution.excess_amount.to_string(),
                "unapplied_credit": loan.unapplied_credit.to_string()
            }
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_OVERPAYMENT_FLAGGED,
                entity_type="loan",
                entity_id=loan.id,
                metadata=metadata,
                user_id=payment.recorded_by
            )
            self.dispatcher.emit(DomainEvent.LOAN_OVERPAYMENT_FLAGGED, "loan", loan.id, metadata)
            log_action(
                self.logger, "warning", "Overpayment flagged for reconciliation",
                user_id=payment.recorded_by, action="record_payment",
                resource=f"loan:{loan.id}", extra=metadata
            )

        if distribution.loan_closed:
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REPAID,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"total_paid": loan.total_paid.to_string(), "payment_id": payment.id},
                user_id=payment.recorded_by
            )
            self.dispatcher.emit(DomainEvent.LOAN_REPAID, "loan", loan.id, loan_event_data(loan))

        log_action(
            self.logger, "info", f"Payment recorded: {payment.amount.to_string()}",
            user_id=payment.recorded_by, action="record_payment", resource=f"loan:{loan.id}",
            extra={
                "payment_id": payment.id,
                "installments_touched": payment.installments_touched,
                "balance_after": loan.current_balance.to_string(),
                "loan_closed": distribution.loan_closed
            }
        )

    def get_loan_payments(self, loan_id: str) -> List[Payment]:
        """Payments of a loan in the order they were received"""
        payments = [
            Payment.from_dict(row)
            for row in self.storage.find(self.payments_table, {'loan_id': loan_id})
        ]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments
