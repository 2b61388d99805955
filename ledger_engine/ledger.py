"""
Ledger Transaction Module

Applies and reverses a transaction's effect on one or two account balances.
The sign of each leg depends on the transaction kind and the account kind
(liability-positive for credit cards and loans, asset-positive for cash and
bank), resolved through one exhaustive rule table.

Every applied delta is appended to a balance delta log. Reversal replays the
recorded deltas negated, so apply followed by reverse restores the exact
prior balance. Update and delete run reverse-then-apply inside one atomic
storage unit.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
import uuid

from .accounts import Account, AccountKind, AccountManager, CreditLimitWarning
from .config import LedgerConfig, get_config
from .currency import Currency, ZERO, round_money, to_decimal
from .exceptions import ValidationError, NotFoundError, CreditLimitExceededError, InvalidStateError
from .hooks import ChangeHooksMixin
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class TransactionKind(Enum):
    """Kinds of ledger transaction"""
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"
    WITHDRAWAL = "withdrawal"
    LOAN_PAYMENT = "loan_payment"
    CREDIT_CARD_REPAYMENT = "credit_card_repayment"
    INTEREST_CHARGE = "interest_charge"


class Leg(Enum):
    """Side of a transaction an account sits on"""
    FROM = "from"
    TO = "to"


CASH, BANK = AccountKind.CASH, AccountKind.BANK
CARD, LOAN = AccountKind.CREDIT_CARD, AccountKind.LOAN

# (transaction kind, leg, account kind) -> sign of the delta on that account.
# Combinations absent from the table are rejected.
SIGN_RULES: Dict[Tuple[TransactionKind, Leg, AccountKind], int] = {
    (TransactionKind.INCOME, Leg.TO, CASH): 1,
    (TransactionKind.INCOME, Leg.TO, BANK): 1,
    (TransactionKind.INCOME, Leg.TO, CARD): 1,

    (TransactionKind.EXPENSE, Leg.FROM, CASH): -1,
    (TransactionKind.EXPENSE, Leg.FROM, BANK): -1,
    (TransactionKind.EXPENSE, Leg.FROM, CARD): 1,

    (TransactionKind.WITHDRAWAL, Leg.FROM, CASH): -1,
    (TransactionKind.WITHDRAWAL, Leg.FROM, BANK): -1,
    (TransactionKind.WITHDRAWAL, Leg.FROM, CARD): 1,
    (TransactionKind.WITHDRAWAL, Leg.TO, CASH): 1,

    (TransactionKind.TRANSFER, Leg.FROM, CASH): -1,
    (TransactionKind.TRANSFER, Leg.FROM, BANK): -1,
    (TransactionKind.TRANSFER, Leg.FROM, CARD): 1,
    (TransactionKind.TRANSFER, Leg.TO, CASH): 1,
    (TransactionKind.TRANSFER, Leg.TO, BANK): 1,
    (TransactionKind.TRANSFER, Leg.TO, CARD): -1,

    (TransactionKind.LOAN_PAYMENT, Leg.FROM, CASH): -1,
    (TransactionKind.LOAN_PAYMENT, Leg.FROM, BANK): -1,
    (TransactionKind.LOAN_PAYMENT, Leg.FROM, CARD): 1,
    (TransactionKind.LOAN_PAYMENT, Leg.TO, LOAN): -1,

    (TransactionKind.CREDIT_CARD_REPAYMENT, Leg.FROM, CASH): -1,
    (TransactionKind.CREDIT_CARD_REPAYMENT, Leg.FROM, BANK): -1,
    (TransactionKind.CREDIT_CARD_REPAYMENT, Leg.TO, CARD): -1,

    (TransactionKind.INTEREST_CHARGE, Leg.TO, LOAN): 1,
}

# Legs each kind must carry, and legs it may carry
REQUIRED_LEGS: Dict[TransactionKind, Tuple[Leg, ...]] = {
    TransactionKind.INCOME: (Leg.TO,),
    TransactionKind.EXPENSE: (Leg.FROM,),
    TransactionKind.WITHDRAWAL: (Leg.FROM,),
    TransactionKind.TRANSFER: (Leg.FROM, Leg.TO),
    TransactionKind.LOAN_PAYMENT: (Leg.FROM, Leg.TO),
    TransactionKind.CREDIT_CARD_REPAYMENT: (Leg.FROM, Leg.TO),
    TransactionKind.INTEREST_CHARGE: (Leg.TO,),
}

ALLOWED_LEGS: Dict[TransactionKind, Tuple[Leg, ...]] = {
    kind: tuple(leg for leg in Leg if any((kind, leg, ak) in SIGN_RULES for ak in AccountKind))
    for kind in TransactionKind
}


def leg_delta(kind: TransactionKind, leg: Leg, account_kind: AccountKind, amount: Decimal) -> Decimal:
    """
    Signed balance change for one leg.

    Raises:
        ValidationError: If the account kind cannot sit on that leg
    """
    sign = SIGN_RULES.get((kind, leg, account_kind))
    if sign is None:
        raise ValidationError(
            f"A {account_kind.value} account cannot be the {leg.value} leg of a {kind.value} transaction",
            field=f"{leg.value}_account_id"
        )
    return amount if sign > 0 else -amount


@dataclass
class Transaction(StorageRecord):
    """
    Ledger transaction. amount is unsigned; the sign per account comes from
    the rule table.
    """
    kind: TransactionKind
    amount: Decimal
    transaction_date: date
    currency: Currency
    user_id: str = ""
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    description: str = ""
    category: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.amount = round_money(to_decimal(self.amount), self.currency.precision)

        if self.amount <= ZERO:
            raise ValidationError("Transaction amount must be positive", field="amount")

        legs = {Leg.FROM: self.from_account_id, Leg.TO: self.to_account_id}
        for leg in REQUIRED_LEGS[self.kind]:
            if not legs[leg]:
                raise ValidationError(
                    f"{self.kind.value} transaction requires a {leg.value} account",
                    field=f"{leg.value}_account_id"
                )
        for leg, account_id in legs.items():
            if account_id and leg not in ALLOWED_LEGS[self.kind]:
                raise ValidationError(
                    f"{self.kind.value} transaction cannot have a {leg.value} account",
                    field=f"{leg.value}_account_id"
                )

        if self.from_account_id and self.from_account_id == self.to_account_id:
            raise ValidationError("From and to accounts must differ", field="to_account_id")

    def legs(self) -> List[Tuple[Leg, str]]:
        """Present legs in from, to order"""
        result = []
        if self.from_account_id:
            result.append((Leg.FROM, self.from_account_id))
        if self.to_account_id:
            result.append((Leg.TO, self.to_account_id))
        return result

    def touches(self, account_id: str) -> bool:
        return account_id in (self.from_account_id, self.to_account_id)

    def touches_any(self, account_ids) -> bool:
        return self.from_account_id in account_ids or self.to_account_id in account_ids


@dataclass
class BalanceDelta(StorageRecord):
    """
    One entry of the append-only delta log. A reversal entry points at the
    entry it cancels through reversal_of.
    """
    transaction_id: str
    account_id: str
    leg: Leg
    delta: Decimal
    reversal_of: Optional[str] = None


@dataclass
class TransactionPreview:
    """Effect a transaction would have, computed without mutating anything"""
    deltas: Dict[str, Decimal]
    projected_balances: Dict[str, Decimal]
    warnings: List[CreditLimitWarning] = field(default_factory=list)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


class LedgerEngine(ChangeHooksMixin):
    """
    Root balance mutator. Every transaction create, update and delete flows
    through here, and registered listeners see each change before it commits.
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        config: Optional[LedgerConfig] = None
    ):
        super().__init__()
        self.storage = storage
        self.account_manager = account_manager
        self.config = config or get_config()
        self.transactions_table = "transactions"
        self.deltas_table = "balance_deltas"
        self.logger = get_logger("ledger_engine.ledger")

    # -- transaction lifecycle -------------------------------------------

    def preview_transaction(
        self,
        kind: TransactionKind,
        amount: Decimal,
        from_account_id: Optional[str] = None,
        to_account_id: Optional[str] = None,
        transaction_date: Optional[date] = None,
        currency: Optional[Currency] = None
    ) -> TransactionPreview:
        """
        Live preview of a transaction. Over-limit credit cards are reported
        as warnings, never rejected.
        """
        transaction = self._build_transaction(
            kind, amount, transaction_date, from_account_id, to_account_id, currency
        )
        legs = self._resolve_legs(transaction)
        return self._preview(legs)

    def create_transaction(
        self,
        kind: TransactionKind,
        amount: Decimal,
        transaction_date: Optional[date] = None,
        from_account_id: Optional[str] = None,
        to_account_id: Optional[str] = None,
        user_id: str = "",
        description: str = "",
        category: Optional[str] = None,
        currency: Optional[Currency] = None,
        metadata: Optional[Dict[str, Any]] = None,
        allow_over_limit: bool = False
    ) -> Transaction:
        """
        Record a transaction and apply its balance effect atomically.

        Args:
            kind: Transaction kind
            amount: Unsigned amount
            transaction_date: Business date (today when omitted)
            from_account_id: Source leg
            to_account_id: Destination leg
            user_id: Owner
            description: Free text
            category: Optional category label
            currency: Transaction currency (taken from the first leg when omitted)
            metadata: Extra data stored with the transaction
            allow_over_limit: Submit even if a credit card would exceed its limit

        Returns:
            The stored Transaction

        Raises:
            ValidationError: Invalid amount or legs
            NotFoundError: A referenced account does not exist
            CreditLimitExceededError: Over limit at submission with blocking enabled
        """
        transaction = self._build_transaction(
            kind, amount, transaction_date, from_account_id, to_account_id, currency,
            user_id=user_id, description=description, category=category, metadata=metadata
        )

        with self.storage.atomic():
            self._enforce_credit_limit(self._resolve_legs(transaction), allow_over_limit)
            self._save_transaction(transaction)
            self.apply(transaction)
            self._notify(None, transaction)

        log_action(
            self.logger, "info", f"Transaction created: {kind.value}",
            action="create_transaction", resource=f"transaction:{transaction.id}",
            extra={
                "kind": kind.value,
                "amount": str(transaction.amount),
                "from_account": transaction.from_account_id,
                "to_account": transaction.to_account_id,
                "transaction_date": transaction.transaction_date.isoformat()
            }
        )
        return transaction

    def update_transaction(self, transaction_id: str, allow_over_limit: bool = False,
                           allow_linked: bool = False, **changes: Any) -> Transaction:
        """
        Replace a transaction's fields, reversing the stored effect before
        applying the new one. Both steps commit together or not at all.

        Transactions posted by a card repayment are owned by it and are
        rejected unless allow_linked is set.
        """
        unknown = set(changes) - {
            'kind', 'amount', 'transaction_date', 'from_account_id', 'to_account_id',
            'description', 'category', 'metadata', 'user_id'
        }
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            old = self.require_transaction(transaction_id)
            self._guard_linked(old, allow_linked)
            values = {
                'kind': old.kind,
                'amount': old.amount,
                'transaction_date': old.transaction_date,
                'from_account_id': old.from_account_id,
                'to_account_id': old.to_account_id,
                'user_id': old.user_id,
                'description': old.description,
                'category': old.category,
                'metadata': old.metadata,
            }
            values.update(changes)

            self.reverse(old)

            updated = Transaction(
                id=old.id,
                created_at=old.created_at,
                updated_at=datetime.now(timezone.utc),
                currency=old.currency,
                **values
            )
            self._enforce_credit_limit(self._resolve_legs(updated), allow_over_limit)
            self._save_transaction(updated)
            self.apply(updated)
            self._notify(old, updated)

        log_action(
            self.logger, "info", "Transaction updated",
            action="update_transaction", resource=f"transaction:{transaction_id}",
            extra={"fields": sorted(changes), "old_amount": str(old.amount), "new_amount": str(updated.amount)}
        )
        return updated

    def delete_transaction(self, transaction_id: str, allow_linked: bool = False) -> None:
        """Reverse a transaction's effect and remove it"""
        with self.storage.atomic():
            transaction = self.require_transaction(transaction_id)
            self._guard_linked(transaction, allow_linked)
            self.reverse(transaction)
            self.storage.delete(self.transactions_table, transaction_id)
            self._notify(transaction, None)

        log_action(
            self.logger, "info", "Transaction deleted",
            action="delete_transaction", resource=f"transaction:{transaction_id}",
            extra={"kind": transaction.kind.value, "amount": str(transaction.amount)}
        )

    # -- balance mutation ------------------------------------------------

    def apply(self, transaction: Transaction) -> Dict[str, Decimal]:
        """
        Apply a transaction's deltas to its accounts.

        Returns:
            New balance per touched account
        """
        with self.storage.atomic():
            if self.live_deltas(transaction.id):
                raise ValidationError(f"Transaction {transaction.id} is already applied")

            new_balances = {}
            for leg, account, delta in self._resolve_legs(transaction):
                new_balances[account.id] = self.account_manager.adjust_balance(account.id, delta)
                self._append_delta(transaction.id, account.id, leg, delta)

        log_action(
            self.logger, "debug", "Transaction applied",
            action="apply", resource=f"transaction:{transaction.id}",
            extra={account_id: str(balance) for account_id, balance in new_balances.items()}
        )
        return new_balances

    def reverse(self, transaction: Transaction) -> Dict[str, Decimal]:
        """
        Undo a transaction's recorded deltas.

        Returns:
            New balance per touched account
        """
        with self.storage.atomic():
            live = self.live_deltas(transaction.id)
            if not live:
                raise ValidationError(f"Transaction {transaction.id} has no applied effect to reverse")

            new_balances = {}
            for entry in live:
                new_balances[entry.account_id] = self.account_manager.adjust_balance(entry.account_id, -entry.delta)
                self._append_delta(transaction.id, entry.account_id, entry.leg, -entry.delta, reversal_of=entry.id)

        log_action(
            self.logger, "debug", "Transaction reversed",
            action="reverse", resource=f"transaction:{transaction.id}",
            extra={account_id: str(balance) for account_id, balance in new_balances.items()}
        )
        return new_balances

    # -- queries -----------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get transaction by ID"""
        data = self.storage.load(self.transactions_table, transaction_id)
        if data:
            return self._transaction_from_dict(data)
        return None

    def require_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise NotFoundError("Transaction", transaction_id)
        return transaction

    def list_transactions(
        self,
        account_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        kinds: Optional[List[TransactionKind]] = None,
        user_id: Optional[str] = None
    ) -> List[Transaction]:
        """
        Transactions with optional filters, newest first. Date bounds are
        inclusive.
        """
        transactions = [self._transaction_from_dict(data)
                        for data in self.storage.load_all(self.transactions_table)]

        if account_id:
            transactions = [t for t in transactions if t.touches(account_id)]
        if user_id:
            transactions = [t for t in transactions if t.user_id == user_id]
        if start_date:
            transactions = [t for t in transactions if t.transaction_date >= start_date]
        if end_date:
            transactions = [t for t in transactions if t.transaction_date <= end_date]
        if kinds:
            transactions = [t for t in transactions if t.kind in kinds]

        transactions.sort(key=lambda t: (t.transaction_date, t.created_at), reverse=True)
        return transactions

    def deltas_for(self, transaction_id: str) -> List[BalanceDelta]:
        """Full delta log for one transaction, in append order"""
        rows = self.storage.find(self.deltas_table, {"transaction_id": transaction_id})
        entries = [self._delta_from_dict(row) for row in rows]
        entries.sort(key=lambda e: e.created_at)
        return entries

    def live_deltas(self, transaction_id: str) -> List[BalanceDelta]:
        """Deltas of a transaction that have not been reversed"""
        entries = self.deltas_for(transaction_id)
        reversed_ids = {e.reversal_of for e in entries if e.reversal_of}
        return [e for e in entries if not e.reversal_of and e.id not in reversed_ids]

    def derived_balance(self, account_id: str) -> Decimal:
        """Opening balance plus every logged delta for the account"""
        account = self.account_manager.require_account(account_id)
        rows = self.storage.find(self.deltas_table, {"account_id": account_id})
        return account.opening_balance + sum((Decimal(row['delta']) for row in rows), ZERO)

    # -- internals ---------------------------------------------------------

    def _build_transaction(self, kind, amount, transaction_date, from_account_id, to_account_id,
                           currency, **extra) -> Transaction:
        if currency is None:
            leg_id = from_account_id or to_account_id
            account = self.account_manager.get_account(leg_id) if leg_id else None
            currency = account.currency if account else Currency.from_code(self.config.default_currency)

        metadata = extra.pop('metadata', None) or {}
        now = datetime.now(timezone.utc)
        return Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            kind=kind,
            amount=amount,
            transaction_date=transaction_date or date.today(),
            currency=currency,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            metadata=metadata,
            **extra
        )

    def _guard_linked(self, transaction: Transaction, allow_linked: bool) -> None:
        repayment_id = transaction.metadata.get("repayment_id")
        if repayment_id and not allow_linked:
            raise InvalidStateError(
                f"Transaction {transaction.id} belongs to card repayment {repayment_id}; "
                f"use reverse_repayment instead",
                details={"transaction_id": transaction.id, "repayment_id": repayment_id}
            )

    def _resolve_legs(self, transaction: Transaction) -> List[Tuple[Leg, Account, Decimal]]:
        """Load every leg's account and compute its delta; any missing account fails the whole set"""
        resolved = []
        for leg, account_id in transaction.legs():
            account = self.account_manager.require_account(account_id)
            if account.currency != transaction.currency:
                raise ValidationError(
                    f"Account {account_id} is in {account.currency.code}, "
                    f"transaction is in {transaction.currency.code}",
                    field="currency"
                )
            resolved.append((leg, account, leg_delta(transaction.kind, leg, account.kind, transaction.amount)))
        return resolved

    def _preview(self, legs: List[Tuple[Leg, Account, Decimal]]) -> TransactionPreview:
        deltas, projected, warnings = {}, {}, []
        for _, account, delta in legs:
            deltas[account.id] = delta
            projected[account.id] = account.balance + delta
            warning = self.account_manager.check_credit_limit(account, delta)
            if warning:
                warnings.append(warning)
        return TransactionPreview(deltas=deltas, projected_balances=projected, warnings=warnings)

    def _enforce_credit_limit(self, legs, allow_over_limit: bool) -> None:
        preview = self._preview(legs)
        if not preview.has_warnings:
            return
        warning = preview.warnings[0]
        if self.config.block_over_limit_on_submit and not allow_over_limit:
            raise CreditLimitExceededError(
                warning.message, field="amount",
                details={"account_id": warning.account_id, "excess": str(warning.excess)}
            )
        log_action(
            self.logger, "warning", warning.message,
            action="credit_limit_warning", resource=f"account:{warning.account_id}",
            extra={"excess": str(warning.excess), "level": warning.level.value}
        )

    def _append_delta(self, transaction_id: str, account_id: str, leg: Leg, delta: Decimal,
                      reversal_of: Optional[str] = None) -> BalanceDelta:
        now = datetime.now(timezone.utc)
        entry = BalanceDelta(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            transaction_id=transaction_id,
            account_id=account_id,
            leg=leg,
            delta=delta,
            reversal_of=reversal_of
        )
        self.storage.save(self.deltas_table, entry.id, entry.to_dict())
        return entry

    def _save_transaction(self, transaction: Transaction) -> None:
        """Save transaction to storage"""
        self.storage.save(self.transactions_table, transaction.id, self._transaction_to_dict(transaction))

    def _transaction_to_dict(self, transaction: Transaction) -> Dict:
        """Convert Transaction to dictionary for storage"""
        result = transaction.to_dict()
        result['currency'] = transaction.currency.code
        return result

    def _transaction_from_dict(self, data: Dict) -> Transaction:
        """Convert dictionary to Transaction"""
        return Transaction(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            kind=TransactionKind(data['kind']),
            amount=Decimal(data['amount']),
            transaction_date=date.fromisoformat(data['transaction_date']),
            currency=Currency[data['currency']],
            user_id=data.get('user_id', ''),
            from_account_id=data.get('from_account_id'),
            to_account_id=data.get('to_account_id'),
            description=data.get('description', ''),
            category=data.get('category'),
            metadata=data.get('metadata', {})
        )

    def _delta_from_dict(self, data: Dict) -> BalanceDelta:
        return BalanceDelta(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            transaction_id=data['transaction_id'],
            account_id=data['account_id'],
            leg=Leg(data['leg']),
            delta=Decimal(data['delta']),
            reversal_of=data.get('reversal_of')
        )
