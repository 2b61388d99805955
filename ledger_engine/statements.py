"""
Credit Card Statement Module

Aggregates a card's billed period into a statement: period transactions
(excluding purchases converted to EMI), EMI installments falling due in the
period, and netting against the card's advance balance. Also holds the EMI
transaction model with its pay/unpay/cancel state machine and the minimum
due policy.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional
from enum import Enum
import uuid

from .accounts import AccountManager
from .billing_cycle import DueStatus, billed_period, due_date as statement_due_date, payment_due_status
from .config import LedgerConfig, get_config
from .currency import Currency, Money, ZERO, round_money, to_decimal
from .exceptions import ValidationError, NotFoundError, InvalidStateError
from .ledger import LedgerEngine, Transaction, TransactionKind
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .advances import AdvanceLedger


class EMIStatus(Enum):
    """EMI lifecycle states"""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


def calculate_monthly_emi(purchase_amount: Decimal, bank_charges: Decimal, emi_months: int) -> Decimal:
    """Installment for a card purchase split evenly over emi_months"""
    if emi_months <= 0:
        raise ValidationError("EMI duration must be at least one month", field="emi_months")
    return round_money((to_decimal(purchase_amount) + to_decimal(bank_charges)) / Decimal(emi_months))


@dataclass
class EMITransaction(StorageRecord):
    """
    Card purchase converted to monthly installments.

    active -> completed when the last installment is paid; active ->
    cancelled on cancel. Paying is reversible and unpay reactivates a
    completed EMI.
    """
    account_id: str
    purchase_amount: Decimal
    emi_months: int
    start_date: date
    bank_charges: Decimal = ZERO
    monthly_emi: Optional[Decimal] = None
    remaining_installments: Optional[int] = None
    status: EMIStatus = EMIStatus.ACTIVE
    transaction_id: Optional[str] = None
    description: str = ""

    def __post_init__(self):
        self.purchase_amount = to_decimal(self.purchase_amount)
        self.bank_charges = to_decimal(self.bank_charges)

        if self.purchase_amount <= ZERO:
            raise ValidationError("EMI purchase amount must be positive", field="purchase_amount")
        if self.bank_charges < ZERO:
            raise ValidationError("Bank charges cannot be negative", field="bank_charges")

        if self.monthly_emi is None:
            self.monthly_emi = calculate_monthly_emi(self.purchase_amount, self.bank_charges, self.emi_months)
        else:
            if self.emi_months <= 0:
                raise ValidationError("EMI duration must be at least one month", field="emi_months")
            self.monthly_emi = to_decimal(self.monthly_emi)

        if self.remaining_installments is None:
            self.remaining_installments = self.emi_months
        if not 0 <= self.remaining_installments <= self.emi_months:
            raise ValidationError("Remaining installments out of range", field="remaining_installments")

    @property
    def total_amount(self) -> Decimal:
        return self.purchase_amount + self.bank_charges

    @property
    def installments_paid(self) -> int:
        return self.emi_months - self.remaining_installments

    @property
    def remaining_amount(self) -> Decimal:
        return round_money(self.monthly_emi * Decimal(self.remaining_installments))

    def pay(self) -> None:
        """Pay one installment"""
        if self.status != EMIStatus.ACTIVE:
            raise InvalidStateError(f"Cannot pay a {self.status.value} EMI")
        self.remaining_installments -= 1
        if self.remaining_installments == 0:
            self.status = EMIStatus.COMPLETED

    def unpay(self) -> None:
        """Undo one installment payment"""
        if self.status == EMIStatus.CANCELLED:
            raise InvalidStateError("Cannot unpay a cancelled EMI")
        if self.remaining_installments >= self.emi_months:
            raise InvalidStateError("No paid installment to undo")
        self.remaining_installments += 1
        self.status = EMIStatus.ACTIVE

    def cancel(self) -> None:
        if self.status != EMIStatus.ACTIVE:
            raise InvalidStateError(f"Cannot cancel a {self.status.value} EMI")
        self.status = EMIStatus.CANCELLED

    def due_in_month(self, year: int, month: int) -> bool:
        """An installment falls due in (year, month)"""
        months_diff = (year - self.start_date.year) * 12 + (month - self.start_date.month)
        return (
            self.status == EMIStatus.ACTIVE
            and 0 <= months_diff < self.emi_months
            and self.remaining_installments > 0
        )


@dataclass(frozen=True)
class StatementAmount:
    """Aggregated statement for one billed period"""
    transactions_amount: Decimal
    emis_amount: Decimal
    statement_amount: Decimal
    net_statement_amount: Decimal
    period_start: date
    period_end: date
    due_date: Optional[date] = None


@dataclass(frozen=True)
class StatementLine:
    """A payable line of a statement: a transaction or an EMI installment"""
    line_id: str
    amount: Decimal
    description: str
    line_date: date
    transaction_id: Optional[str] = None
    emi_id: Optional[str] = None

    @property
    def is_emi(self) -> bool:
        return self.emi_id is not None


def transaction_statement_delta(transaction: Transaction, account_id: str) -> Decimal:
    """
    Effect of a transaction on a card's statement: spending from the card
    adds, transfers and repayments into it subtract.
    """
    if transaction.from_account_id == account_id:
        return transaction.amount
    if transaction.to_account_id == account_id and transaction.kind in (
        TransactionKind.TRANSFER, TransactionKind.CREDIT_CARD_REPAYMENT
    ):
        return -transaction.amount
    return ZERO


def _emi_transaction_ids(emis: Iterable[EMITransaction]) -> set:
    return {emi.transaction_id for emi in emis if emi.transaction_id}


def _period_transactions(account_id: str, transactions: Iterable[Transaction], emis: List[EMITransaction],
                         period_start: date, period_end: date) -> List[Transaction]:
    converted = _emi_transaction_ids(emis)
    return [
        t for t in transactions
        if t.touches(account_id)
        and period_start <= t.transaction_date < period_end
        and t.id not in converted
    ]


def statement_amount(
    account_id: str,
    statement_day: int,
    transactions: Iterable[Transaction],
    emis: Iterable[EMITransaction],
    reference_date: Optional[date] = None,
    current_balance: Optional[Decimal] = None,
    due_day: Optional[int] = None,
    advance_balance: Decimal = ZERO
) -> StatementAmount:
    """
    Amount of the most recently generated statement.

    Period transactions touching the card are summed, skipping any whose id
    was converted to an EMI. EMIs with an installment due in the period's
    closing month add their monthly installment. When current_balance is
    given, the statement amount is instead the balance less spending posted
    after the statement date, which accounts for carried-over debt and
    partial payments. The net amount subtracts the advance balance, floored
    at zero.
    """
    reference_date = reference_date or date.today()
    transactions = list(transactions)
    emis = list(emis)
    period_start, period_end = billed_period(statement_day, reference_date)

    transactions_amount = sum(
        (transaction_statement_delta(t, account_id)
         for t in _period_transactions(account_id, transactions, emis, period_start, period_end)),
        ZERO
    )
    emis_amount = sum(
        (emi.monthly_emi for emi in emis if emi.due_in_month(period_end.year, period_end.month)),
        ZERO
    )
    amount = transactions_amount + emis_amount

    if current_balance is not None:
        spending_kinds = (TransactionKind.EXPENSE, TransactionKind.WITHDRAWAL, TransactionKind.TRANSFER)
        new_spending = sum(
            (t.amount for t in transactions
             if t.from_account_id == account_id
             and t.kind in spending_kinds
             and t.transaction_date > period_end),
            ZERO
        )
        amount = to_decimal(current_balance) - new_spending

    net = max(ZERO, amount - to_decimal(advance_balance))

    return StatementAmount(
        transactions_amount=round_money(transactions_amount),
        emis_amount=round_money(emis_amount),
        statement_amount=round_money(amount),
        net_statement_amount=round_money(net),
        period_start=period_start,
        period_end=period_end,
        due_date=statement_due_date(statement_day, due_day, reference_date) if due_day else None
    )


def statement_lines(
    account_id: str,
    statement_day: int,
    transactions: Iterable[Transaction],
    emis: Iterable[EMITransaction],
    reference_date: Optional[date] = None
) -> List[StatementLine]:
    """Payable lines of the billed period for repayment allocation"""
    reference_date = reference_date or date.today()
    emis = list(emis)
    period_start, period_end = billed_period(statement_day, reference_date)

    lines = []
    for t in _period_transactions(account_id, transactions, emis, period_start, period_end):
        delta = transaction_statement_delta(t, account_id)
        if delta > ZERO:
            lines.append(StatementLine(
                line_id=f"txn:{t.id}", amount=delta, description=t.description,
                line_date=t.transaction_date, transaction_id=t.id
            ))
    for emi in emis:
        if emi.due_in_month(period_end.year, period_end.month):
            lines.append(StatementLine(
                line_id=f"emi:{emi.id}:{emi.installments_paid + 1}", amount=emi.monthly_emi,
                description=emi.description or "EMI installment",
                line_date=period_end, transaction_id=emi.transaction_id, emi_id=emi.id
            ))
    lines.sort(key=lambda line: line.line_date)
    return lines


def minimum_due(due_amount: Money, config: Optional[LedgerConfig] = None) -> Money:
    """
    Minimum payment: nothing when nothing is due, the full amount when it is
    below the floor, otherwise the larger of the percentage and the floor.
    """
    config = config or get_config()
    currency = due_amount.currency
    if due_amount.amount <= ZERO:
        return Money(ZERO, currency)

    floor_amount = config.minimum_due_floor_usd if currency == Currency.USD else config.minimum_due_floor
    if due_amount.amount < floor_amount:
        return due_amount
    return Money(max(due_amount.amount * config.minimum_due_rate, floor_amount), currency)


class EMIManager:
    """
    Stores EMI transactions and drives their state machine
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.emis_table = "emi_transactions"
        self.logger = get_logger("ledger_engine.emis")

    def create_emi(
        self,
        account_id: str,
        purchase_amount: Decimal,
        emi_months: int,
        start_date: date,
        bank_charges: Decimal = ZERO,
        transaction_id: Optional[str] = None,
        description: str = ""
    ) -> EMITransaction:
        """Convert a card purchase into installments"""
        now = datetime.now(timezone.utc)
        emi = EMITransaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            purchase_amount=purchase_amount,
            emi_months=emi_months,
            start_date=start_date,
            bank_charges=bank_charges,
            transaction_id=transaction_id,
            description=description
        )
        self._save_emi(emi)

        log_action(
            self.logger, "info", "EMI created",
            action="create_emi", resource=f"emi:{emi.id}",
            extra={"account_id": account_id, "total_amount": str(emi.total_amount),
                   "emi_months": emi_months, "monthly_emi": str(emi.monthly_emi),
                   "transaction_id": transaction_id}
        )
        return emi

    def get_emi(self, emi_id: str) -> Optional[EMITransaction]:
        data = self.storage.load(self.emis_table, emi_id)
        if data:
            return self._emi_from_dict(data)
        return None

    def require_emi(self, emi_id: str) -> EMITransaction:
        emi = self.get_emi(emi_id)
        if not emi:
            raise NotFoundError("EMITransaction", emi_id)
        return emi

    def list_emis(self, account_id: str, status: Optional[EMIStatus] = None) -> List[EMITransaction]:
        """EMIs on a card, oldest start first"""
        filters = {"account_id": account_id}
        if status:
            filters["status"] = status.value
        emis = [self._emi_from_dict(row) for row in self.storage.find(self.emis_table, filters)]
        emis.sort(key=lambda e: (e.start_date, e.created_at))
        return emis

    def update_emi(self, emi_id: str, **changes) -> EMITransaction:
        """
        Edit an EMI's terms. The installment is recomputed and installments
        already paid are kept.
        """
        allowed = {'purchase_amount', 'bank_charges', 'emi_months', 'start_date', 'description'}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Cannot update EMI fields: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            emi = self.require_emi(emi_id)
            if emi.status == EMIStatus.CANCELLED:
                raise InvalidStateError("Cannot edit a cancelled EMI")
            paid = emi.installments_paid
            values = {
                'purchase_amount': emi.purchase_amount,
                'bank_charges': emi.bank_charges,
                'emi_months': emi.emi_months,
                'start_date': emi.start_date,
                'description': emi.description,
            }
            values.update(changes)
            if values['emi_months'] < paid:
                raise ValidationError("EMI duration is shorter than installments already paid",
                                      field="emi_months")
            remaining = values['emi_months'] - paid
            updated = EMITransaction(
                id=emi.id,
                created_at=emi.created_at,
                updated_at=datetime.now(timezone.utc),
                account_id=emi.account_id,
                remaining_installments=remaining,
                status=EMIStatus.ACTIVE if remaining else EMIStatus.COMPLETED,
                transaction_id=emi.transaction_id,
                **values
            )
            self._save_emi(updated)

        log_action(self.logger, "info", "EMI updated", action="update_emi",
                   resource=f"emi:{emi_id}", extra={"fields": sorted(changes)})
        return updated

    def pay_installment(self, emi_id: str) -> EMITransaction:
        return self._transition(emi_id, "pay")

    def unpay_installment(self, emi_id: str) -> EMITransaction:
        return self._transition(emi_id, "unpay")

    def cancel_emi(self, emi_id: str) -> EMITransaction:
        return self._transition(emi_id, "cancel")

    def _transition(self, emi_id: str, operation: str) -> EMITransaction:
        with self.storage.atomic():
            emi = self.require_emi(emi_id)
            getattr(emi, operation)()
            emi.updated_at = datetime.now(timezone.utc)
            self._save_emi(emi)

        log_action(
            self.logger, "info", f"EMI {operation}",
            action=f"emi_{operation}", resource=f"emi:{emi_id}",
            extra={"remaining_installments": emi.remaining_installments, "status": emi.status.value}
        )
        return emi

    def _save_emi(self, emi: EMITransaction) -> None:
        self.storage.save(self.emis_table, emi.id, emi.to_dict())

    def _emi_from_dict(self, data: Dict) -> EMITransaction:
        return EMITransaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            purchase_amount=Decimal(data['purchase_amount']),
            emi_months=data['emi_months'],
            start_date=date.fromisoformat(data['start_date']),
            bank_charges=Decimal(data['bank_charges']),
            monthly_emi=Decimal(data['monthly_emi']),
            remaining_installments=data['remaining_installments'],
            status=EMIStatus(data['status']),
            transaction_id=data.get('transaction_id'),
            description=data.get('description', '')
        )


class CreditCardStatementService:
    """
    Builds statements for stored cards from the ledger, the EMI store and
    the advance sub-ledger
    """

    def __init__(
        self,
        account_manager: AccountManager,
        ledger: LedgerEngine,
        emi_manager: EMIManager,
        advance_ledger: Optional['AdvanceLedger'] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.account_manager = account_manager
        self.ledger = ledger
        self.emi_manager = emi_manager
        self.advance_ledger = advance_ledger
        self.config = config or get_config()

    def _card(self, account_id: str):
        account = self.account_manager.require_account(account_id)
        if not account.is_credit_card or not account.statement_day:
            raise ValidationError(f"Account {account_id} is not a credit card with a statement day",
                                  field="account_id")
        return account

    def statement(self, account_id: str, reference_date: Optional[date] = None,
                  use_current_balance: bool = False) -> StatementAmount:
        """Statement for a stored card, netted against its advance balance"""
        card = self._card(account_id)
        advance = self.advance_ledger.balance(account_id) if self.advance_ledger else ZERO
        return statement_amount(
            account_id=card.id,
            statement_day=card.statement_day,
            transactions=self.ledger.list_transactions(account_id=card.id),
            emis=self.emi_manager.list_emis(card.id),
            reference_date=reference_date,
            current_balance=card.balance if use_current_balance else None,
            due_day=card.due_day,
            advance_balance=advance
        )

    def lines(self, account_id: str, reference_date: Optional[date] = None) -> List[StatementLine]:
        card = self._card(account_id)
        return statement_lines(
            card.id, card.statement_day,
            self.ledger.list_transactions(account_id=card.id),
            self.emi_manager.list_emis(card.id),
            reference_date
        )

    def minimum_due(self, account_id: str, reference_date: Optional[date] = None) -> Money:
        card = self._card(account_id)
        result = self.statement(account_id, reference_date)
        return minimum_due(Money(result.net_statement_amount, card.currency), self.config)

    def due_status(self, account_id: str, reference_date: Optional[date] = None) -> DueStatus:
        """Urgency of the statement currently due, using the configured due-soon window"""
        card = self._card(account_id)
        reference_date = reference_date or date.today()
        due = statement_due_date(card.statement_day, card.due_day, reference_date) if card.due_day else None
        return payment_due_status(due, reference_date, self.config.due_soon_days)
