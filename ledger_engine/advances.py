"""
Advance Balance and Credit Card Repayment Module

A repayment larger than the statement lines it is allocated to leaves an
advance on the card. The advance is tracked as an append-only event
sub-ledger (created / consumed) and its balance is always derived from the
events, never stored. Repayments may be funded from a bank or cash account
(posting a credit_card_repayment transaction) or from the card's advance
(posting nothing to the ledger).
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
from enum import Enum
import uuid

from .accounts import AccountKind, AccountManager
from .currency import ZERO, round_money, to_decimal
from .exceptions import ValidationError, NotFoundError, InvalidStateError
from .ledger import LedgerEngine, TransactionKind
from .statements import EMIManager, StatementLine, statement_lines
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class BankAccount:
    """Fund a repayment from a cash or bank account"""
    account_id: str


@dataclass(frozen=True)
class AdvanceBalance:
    """Fund a repayment from the card's own advance"""


PaymentSource = Union[BankAccount, AdvanceBalance]


class AdvanceEventType(Enum):
    CREATED = "created"
    CONSUMED = "consumed"


@dataclass
class AdvanceEvent(StorageRecord):
    """One movement of a card's advance balance"""
    card_id: str
    event_type: AdvanceEventType
    amount: Decimal
    event_date: date
    repayment_id: Optional[str] = None
    description: str = ""

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        if self.amount <= ZERO:
            raise ValidationError("Advance event amount must be positive", field="amount")

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.event_type == AdvanceEventType.CREATED else -self.amount


@dataclass(frozen=True)
class RepaymentAllocation:
    """Part of a repayment assigned to one statement line"""
    statement_line_id: str
    amount_paid: Decimal
    transaction_id: Optional[str] = None
    emi_id: Optional[str] = None
    description: str = ""

    def to_dict(self) -> Dict:
        return {
            "statement_line_id": self.statement_line_id,
            "amount_paid": str(self.amount_paid),
            "transaction_id": self.transaction_id,
            "emi_id": self.emi_id,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "RepaymentAllocation":
        return cls(
            statement_line_id=data["statement_line_id"],
            amount_paid=Decimal(data["amount_paid"]),
            transaction_id=data.get("transaction_id"),
            emi_id=data.get("emi_id"),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class RepaymentResult:
    """Outcome of one credit card repayment"""
    repayment_id: str
    advance_created: Decimal
    advance_consumed: Decimal
    allocations: List[RepaymentAllocation] = field(default_factory=list)
    transaction_id: Optional[str] = None


@dataclass
class CardRepayment(StorageRecord):
    """Stored repayment, kept so it can be reversed as a unit"""
    card_id: str
    amount: Decimal
    repayment_date: date
    source_account_id: Optional[str]
    transaction_id: Optional[str]
    advance_created: Decimal
    advance_consumed: Decimal
    allocations: List[Dict] = field(default_factory=list)
    is_reversed: bool = False

    @property
    def from_advance(self) -> bool:
        return self.source_account_id is None


class AdvanceLedger:
    """
    Append-only advance events per card. The balance is the sum of created
    amounts less consumed amounts and never goes negative.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.events_table = "advance_events"
        self.logger = get_logger("ledger_engine.advances")

    def events(self, card_id: str) -> List[AdvanceEvent]:
        rows = self.storage.find(self.events_table, {"card_id": card_id})
        events = [self._event_from_dict(row) for row in rows]
        events.sort(key=lambda e: (e.event_date, e.created_at))
        return events

    def balance(self, card_id: str) -> Decimal:
        return round_money(sum((e.signed_amount for e in self.events(card_id)), ZERO))

    def record_created(self, card_id: str, amount: Decimal, event_date: date,
                       repayment_id: Optional[str] = None, description: str = "") -> AdvanceEvent:
        return self._append(card_id, AdvanceEventType.CREATED, amount, event_date, repayment_id, description)

    def record_consumed(self, card_id: str, amount: Decimal, event_date: date,
                        repayment_id: Optional[str] = None, description: str = "") -> AdvanceEvent:
        """
        Raises:
            ValidationError: If the card's advance cannot cover amount
        """
        with self.storage.atomic():
            available = self.balance(card_id)
            if to_decimal(amount) > available:
                raise ValidationError(
                    f"Advance balance {available} cannot cover {amount}", field="amount",
                    details={"card_id": card_id, "available": str(available)}
                )
            return self._append(card_id, AdvanceEventType.CONSUMED, amount, event_date, repayment_id, description)

    def delete_repayment_events(self, card_id: str, repayment_id: str) -> int:
        """
        Remove the events a repayment produced.

        Raises:
            InvalidStateError: If removing them would leave a negative balance
        """
        with self.storage.atomic():
            removed = [e for e in self.events(card_id) if e.repayment_id == repayment_id]
            if not removed:
                return 0
            remaining = self.balance(card_id) - sum((e.signed_amount for e in removed), ZERO)
            if remaining < ZERO:
                raise InvalidStateError(
                    f"Advance from repayment {repayment_id} has already been used",
                    details={"card_id": card_id, "shortfall": str(-remaining)}
                )
            count = self.storage.delete_where(self.events_table, {"repayment_id": repayment_id})

        log_action(self.logger, "info", "Advance events removed",
                   action="delete_advance_events", resource=f"card:{card_id}",
                   extra={"repayment_id": repayment_id, "count": count})
        return count

    def _append(self, card_id, event_type, amount, event_date, repayment_id, description) -> AdvanceEvent:
        now = datetime.now(timezone.utc)
        event = AdvanceEvent(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            card_id=card_id,
            event_type=event_type,
            amount=round_money(amount),
            event_date=event_date,
            repayment_id=repayment_id,
            description=description
        )
        self.storage.save(self.events_table, event.id, event.to_dict())

        log_action(
            self.logger, "info", f"Advance {event_type.value}",
            action=f"advance_{event_type.value}", resource=f"card:{card_id}",
            extra={"amount": str(event.amount), "repayment_id": repayment_id}
        )
        return event

    def _event_from_dict(self, data: Dict) -> AdvanceEvent:
        return AdvanceEvent(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            card_id=data['card_id'],
            event_type=AdvanceEventType(data['event_type']),
            amount=Decimal(data['amount']),
            event_date=date.fromisoformat(data['event_date']),
            repayment_id=data.get('repayment_id'),
            description=data.get('description', '')
        )


class CreditCardRepaymentService:
    """
    Applies card repayments: the ledger transaction, the advance events and
    the EMI installments they pay, all in one atomic unit
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        ledger: LedgerEngine,
        emi_manager: EMIManager,
        advance_ledger: AdvanceLedger
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
        self.emi_manager = emi_manager
        self.advance_ledger = advance_ledger
        self.repayments_table = "card_repayments"
        self.logger = get_logger("ledger_engine.repayments")

    def repay(
        self,
        card_id: str,
        amount: Decimal,
        source: PaymentSource,
        allocations: Optional[List[RepaymentAllocation]] = None,
        repayment_date: Optional[date] = None,
        description: str = "Credit card repayment"
    ) -> RepaymentResult:
        """
        Repay a credit card.

        From a bank or cash account the full amount is posted as a
        credit_card_repayment and whatever is not allocated to statement
        lines becomes advance. From the advance nothing is posted to the
        ledger; the amount is consumed from the card's advance instead.
        Every allocation must name a payable line of the card's current
        statement, at most once and for no more than the line amount.
        Allocations to EMI lines pay one installment of that EMI.

        Raises:
            ValidationError: Non-positive amount, over-allocation, an
                allocation that does not match a statement line, or
                insufficient advance
            NotFoundError: Card, source account or allocated EMI missing
        """
        amount = round_money(to_decimal(amount))
        allocations = list(allocations or [])
        repayment_date = repayment_date or date.today()

        if amount <= ZERO:
            raise ValidationError("Repayment amount must be positive", field="amount")
        for allocation in allocations:
            if to_decimal(allocation.amount_paid) <= ZERO:
                raise ValidationError("Allocated amounts must be positive", field="allocations")
        allocated = round_money(sum((to_decimal(a.amount_paid) for a in allocations), ZERO))
        if allocated > amount:
            raise ValidationError(
                f"Allocated {allocated} exceeds repayment {amount}", field="allocations"
            )

        card = self.account_manager.require_account(card_id)
        if card.kind != AccountKind.CREDIT_CARD:
            raise ValidationError(f"Account {card_id} is not a credit card", field="card_id")
        allocations = self._resolve_allocations(card, allocations, repayment_date)

        repayment_id = str(uuid.uuid4())
        transaction_id = None
        advance_created = ZERO
        advance_consumed = ZERO

        with self.storage.atomic():
            if isinstance(source, BankAccount):
                transaction = self.ledger.create_transaction(
                    TransactionKind.CREDIT_CARD_REPAYMENT, amount,
                    transaction_date=repayment_date,
                    from_account_id=source.account_id,
                    to_account_id=card_id,
                    user_id=card.user_id,
                    description=description,
                    metadata={"repayment_id": repayment_id}
                )
                transaction_id = transaction.id
                advance_created = amount - allocated
                if advance_created > ZERO:
                    self.advance_ledger.record_created(
                        card_id, advance_created, repayment_date, repayment_id,
                        description="Unallocated repayment"
                    )
            elif isinstance(source, AdvanceBalance):
                advance_consumed = amount
                self.advance_ledger.record_consumed(
                    card_id, amount, repayment_date, repayment_id, description=description
                )
            else:
                raise ValidationError(f"Unsupported payment source: {source!r}", field="source")

            for allocation in allocations:
                if allocation.emi_id:
                    self.emi_manager.pay_installment(allocation.emi_id)

            now = datetime.now(timezone.utc)
            record = CardRepayment(
                id=repayment_id,
                created_at=now,
                updated_at=now,
                card_id=card_id,
                amount=amount,
                repayment_date=repayment_date,
                source_account_id=source.account_id if isinstance(source, BankAccount) else None,
                transaction_id=transaction_id,
                advance_created=advance_created,
                advance_consumed=advance_consumed,
                allocations=[a.to_dict() for a in allocations]
            )
            self.storage.save(self.repayments_table, record.id, record.to_dict())

        log_action(
            self.logger, "info", "Credit card repaid",
            action="repay_card", resource=f"card:{card_id}",
            extra={"repayment_id": repayment_id, "amount": str(amount),
                   "allocated": str(allocated), "advance_created": str(advance_created),
                   "advance_consumed": str(advance_consumed), "transaction_id": transaction_id}
        )

        return RepaymentResult(
            repayment_id=repayment_id,
            advance_created=advance_created,
            advance_consumed=advance_consumed,
            allocations=allocations,
            transaction_id=transaction_id
        )

    def payable_lines(self, card_id: str, on_date: Optional[date] = None) -> List[StatementLine]:
        """Lines of the statement currently due that a repayment can be allocated to"""
        card = self.account_manager.require_account(card_id)
        if card.statement_day is None:
            return []
        return statement_lines(
            card_id, card.statement_day,
            self.ledger.list_transactions(account_id=card_id),
            self.emi_manager.list_emis(card_id),
            on_date or date.today()
        )

    def _resolve_allocations(self, card, allocations: List[RepaymentAllocation],
                             repayment_date: date) -> List[RepaymentAllocation]:
        """Match allocations to statement lines, taking line details from the line"""
        if not allocations:
            return []
        if card.statement_day is None:
            raise ValidationError(
                f"Card {card.id} has no statement day to allocate against", field="allocations"
            )

        lines = {line.line_id: line for line in self.payable_lines(card.id, repayment_date)}
        seen = set()
        resolved = []
        for allocation in allocations:
            line_id = allocation.statement_line_id
            if allocation.emi_id:
                emi = self.emi_manager.require_emi(allocation.emi_id)
                if emi.account_id != card.id:
                    raise ValidationError(f"EMI {emi.id} belongs to another card", field="allocations")
            if line_id in seen:
                raise ValidationError(f"Statement line {line_id} is allocated more than once",
                                      field="allocations")
            seen.add(line_id)

            line = lines.get(line_id)
            if line is None:
                raise ValidationError(f"Unknown statement line {line_id}", field="allocations",
                                      details={"statement_line_id": line_id})
            amount_paid = round_money(to_decimal(allocation.amount_paid))
            if allocation.emi_id and allocation.emi_id != line.emi_id:
                raise ValidationError(f"EMI {allocation.emi_id} does not match statement line {line_id}",
                                      field="allocations")
            if amount_paid > line.amount:
                raise ValidationError(
                    f"Allocated {amount_paid} exceeds statement line {line_id} of {line.amount}",
                    field="allocations"
                )
            if line.is_emi and amount_paid != line.amount:
                raise ValidationError(
                    f"EMI line {line_id} must be paid in full ({line.amount})", field="allocations"
                )

            resolved.append(RepaymentAllocation(
                statement_line_id=line_id,
                amount_paid=amount_paid,
                transaction_id=line.transaction_id,
                emi_id=line.emi_id,
                description=allocation.description or line.description
            ))
        return resolved

    def get_repayment(self, repayment_id: str) -> Optional[CardRepayment]:
        data = self.storage.load(self.repayments_table, repayment_id)
        if data:
            return self._repayment_from_dict(data)
        return None

    def list_repayments(self, card_id: str) -> List[CardRepayment]:
        """Repayments on a card, newest first"""
        rows = self.storage.find(self.repayments_table, {"card_id": card_id})
        repayments = [self._repayment_from_dict(row) for row in rows]
        repayments.sort(key=lambda r: (r.repayment_date, r.created_at), reverse=True)
        return repayments

    def reverse_repayment(self, repayment_id: str) -> CardRepayment:
        """
        Undo a repayment: delete its ledger transaction, remove its advance
        events and unpay the EMI installments it paid.

        Raises:
            NotFoundError: Unknown repayment
            InvalidStateError: Already reversed, or its advance has been used
        """
        with self.storage.atomic():
            repayment = self.get_repayment(repayment_id)
            if not repayment:
                raise NotFoundError("CardRepayment", repayment_id)
            if repayment.is_reversed:
                raise InvalidStateError(f"Repayment {repayment_id} is already reversed")

            self.advance_ledger.delete_repayment_events(repayment.card_id, repayment_id)
            if repayment.transaction_id:
                self.ledger.delete_transaction(repayment.transaction_id, allow_linked=True)
            for allocation in map(RepaymentAllocation.from_dict, repayment.allocations):
                if allocation.emi_id:
                    self.emi_manager.unpay_installment(allocation.emi_id)

            repayment.is_reversed = True
            repayment.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.repayments_table, repayment.id, repayment.to_dict())

        log_action(
            self.logger, "info", "Credit card repayment reversed",
            action="reverse_repayment", resource=f"card:{repayment.card_id}",
            extra={"repayment_id": repayment_id, "amount": str(repayment.amount)}
        )
        return repayment

    def _repayment_from_dict(self, data: Dict) -> CardRepayment:
        return CardRepayment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            card_id=data['card_id'],
            amount=Decimal(data['amount']),
            repayment_date=date.fromisoformat(data['repayment_date']),
            source_account_id=data.get('source_account_id'),
            transaction_id=data.get('transaction_id'),
            advance_created=Decimal(data['advance_created']),
            advance_consumed=Decimal(data['advance_consumed']),
            allocations=data.get('allocations', []),
            is_reversed=data.get('is_reversed', False)
        )
