"""
Account Management Module

Manages cash, bank, credit card and loan accounts and their balances.
Credit card and loan balances are liability-positive (positive = owed);
cash and bank balances are asset-positive.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .currency import Currency, Money, ZERO, round_money, to_decimal
from .config import LedgerConfig, get_config
from .exceptions import ValidationError, NotFoundError
from .hooks import ChangeHooksMixin
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class AccountKind(Enum):
    """Kinds of account the ledger can mutate"""
    CASH = "cash"
    BANK = "bank"
    CREDIT_CARD = "credit_card"
    LOAN = "loan"

    @property
    def is_liability(self) -> bool:
        """Credit cards and loans carry a liability-positive balance"""
        return self in (AccountKind.CREDIT_CARD, AccountKind.LOAN)


class RateType(Enum):
    """Loan interest rate types"""
    FIXED = "fixed"
    FLOATING = "floating"


class CreditWarningLevel(Enum):
    """Credit utilisation bands"""
    SAFE = "safe"
    WARNING = "warning"
    DANGER = "danger"


@dataclass
class Account(StorageRecord):
    """
    Ledger account. Loan fields are only meaningful for LOAN accounts and
    statement_day only for CREDIT_CARD accounts.
    """
    user_id: str
    kind: AccountKind
    name: str
    currency: Currency
    balance: Decimal = ZERO
    opening_balance: Decimal = ZERO
    credit_limit: Optional[Decimal] = None
    principal: Optional[Decimal] = None
    tenure_months: Optional[int] = None
    start_date: Optional[date] = None
    rate_type: Optional[RateType] = None
    current_rate: Optional[Decimal] = None
    due_day: Optional[int] = None
    statement_day: Optional[int] = None

    def __post_init__(self):
        self.balance = to_decimal(self.balance)
        self.opening_balance = to_decimal(self.opening_balance)

        for day_field in ('due_day', 'statement_day'):
            value = getattr(self, day_field)
            if value is not None and not 1 <= value <= 31:
                raise ValidationError(f"{day_field} must be between 1 and 31", field=day_field)

        if self.credit_limit is not None:
            self.credit_limit = to_decimal(self.credit_limit)
            if self.credit_limit < ZERO:
                raise ValidationError("Credit limit cannot be negative", field="credit_limit")

        if self.principal is not None:
            self.principal = to_decimal(self.principal)
            if self.principal < ZERO:
                raise ValidationError("Loan principal cannot be negative", field="principal")

        if self.tenure_months is not None and self.tenure_months <= 0:
            raise ValidationError("Loan tenure must be at least one month", field="tenure_months")

        if self.current_rate is not None:
            self.current_rate = to_decimal(self.current_rate)
            if self.current_rate < ZERO:
                raise ValidationError("Interest rate cannot be negative", field="current_rate")

    @property
    def is_credit_card(self) -> bool:
        return self.kind == AccountKind.CREDIT_CARD

    @property
    def is_loan(self) -> bool:
        return self.kind == AccountKind.LOAN

    @property
    def balance_money(self) -> Money:
        return Money(self.balance, self.currency)


@dataclass(frozen=True)
class CreditLimitWarning:
    """
    Advisory result when a projected credit card balance would exceed its
    limit. Returned for confirmation, never raised.
    """
    account_id: str
    credit_limit: Decimal
    projected_balance: Decimal
    level: CreditWarningLevel

    @property
    def excess(self) -> Decimal:
        return max(ZERO, self.projected_balance - self.credit_limit)

    @property
    def message(self) -> str:
        return (f"Projected balance {self.projected_balance} exceeds credit limit "
                f"{self.credit_limit} by {self.excess}")


class AccountManager(ChangeHooksMixin):
    """
    Manages account lifecycle and balance increments. Listeners see every
    update_account change before it commits.
    """

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        super().__init__()
        self.storage = storage
        self.config = config or get_config()
        self.accounts_table = "accounts"
        self.logger = get_logger("ledger_engine.accounts")

    def create_account(
        self,
        user_id: str,
        kind: AccountKind,
        name: str,
        currency: Optional[Currency] = None,
        opening_balance: Decimal = ZERO,
        credit_limit: Optional[Decimal] = None,
        principal: Optional[Decimal] = None,
        tenure_months: Optional[int] = None,
        start_date: Optional[date] = None,
        rate_type: Optional[RateType] = None,
        current_rate: Optional[Decimal] = None,
        due_day: Optional[int] = None,
        statement_day: Optional[int] = None
    ) -> Account:
        """
        Create a new account

        Args:
            user_id: Owner of the account
            kind: Cash, bank, credit card or loan
            name: Display name
            currency: Account currency (config default when omitted)
            opening_balance: Starting balance in the account's sign convention
            credit_limit: Credit card limit
            principal: Loan principal
            tenure_months: Loan tenure
            start_date: Loan start date
            rate_type: Fixed or floating loan rate
            current_rate: Annual loan rate in percent
            due_day: Day of month payments are due
            statement_day: Day of month the card statement closes

        Returns:
            Created Account object
        """
        now = datetime.now(timezone.utc)
        opening_balance = round_money(opening_balance)

        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            kind=kind,
            name=name,
            currency=currency or Currency.from_code(self.config.default_currency),
            balance=opening_balance,
            opening_balance=opening_balance,
            credit_limit=credit_limit,
            principal=principal,
            tenure_months=tenure_months,
            start_date=start_date,
            rate_type=rate_type,
            current_rate=current_rate,
            due_day=due_day,
            statement_day=statement_day
        )

        self._save_account(account)

        log_action(
            self.logger, "info", f"Account created: {kind.value}",
            action="create_account", resource=f"account:{account.id}",
            extra={"user_id": user_id, "kind": kind.value, "currency": account.currency.code,
                   "opening_balance": str(opening_balance)}
        )

        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        account_dict = self.storage.load(self.accounts_table, account_id)
        if account_dict:
            return self._account_from_dict(account_dict)
        return None

    def require_account(self, account_id: str) -> Account:
        """Get account by ID or raise NotFoundError"""
        account = self.get_account(account_id)
        if not account:
            raise NotFoundError("Account", account_id)
        return account

    def list_accounts(self, kinds: Optional[List[AccountKind]] = None) -> List[Account]:
        """List all accounts, optionally restricted to some kinds"""
        accounts = [self._account_from_dict(data) for data in self.storage.load_all(self.accounts_table)]
        if kinds:
            accounts = [a for a in accounts if a.kind in kinds]
        return accounts

    def get_user_accounts(self, user_id: str, kinds: Optional[List[AccountKind]] = None) -> List[Account]:
        """Get all accounts for a user"""
        accounts = [self._account_from_dict(data)
                    for data in self.storage.find(self.accounts_table, {"user_id": user_id})]
        if kinds:
            accounts = [a for a in accounts if a.kind in kinds]
        return accounts

    def update_account(self, account_id: str, **changes: Any) -> Account:
        """
        Update descriptive or loan/card configuration fields.

        Balances only move through the ledger; passing balance here is rejected.
        """
        if 'balance' in changes or 'opening_balance' in changes:
            raise ValidationError("Balances are changed through transactions only", field="balance")

        with self.storage.atomic():
            previous = self.require_account(account_id)
            account = self.require_account(account_id)
            for key, value in changes.items():
                if not hasattr(account, key) or key in ('id', 'created_at'):
                    raise ValidationError(f"Unknown account field: {key}", field=key)
                setattr(account, key, value)
            account.updated_at = datetime.now(timezone.utc)
            # Re-run field validation
            account.__post_init__()
            self._save_account(account)
            self._notify(previous, account)

        log_action(
            self.logger, "info", "Account updated",
            action="update_account", resource=f"account:{account_id}",
            extra={"fields": sorted(changes)}
        )
        return account

    def delete_account(self, account_id: str) -> None:
        """Delete an account"""
        if not self.storage.delete(self.accounts_table, account_id):
            raise NotFoundError("Account", account_id)
        log_action(self.logger, "info", "Account deleted",
                   action="delete_account", resource=f"account:{account_id}")

    def adjust_balance(self, account_id: str, delta: Decimal) -> Decimal:
        """
        Add a signed delta to an account balance as one storage step.

        Raises:
            NotFoundError: If the account does not exist
        """
        try:
            new_balance = self.storage.increment(self.accounts_table, account_id, "balance", delta)
        except NotFoundError:
            raise NotFoundError("Account", account_id)
        return new_balance

    def available_credit(self, account: Account) -> Decimal:
        """Remaining credit on a card, never negative"""
        if account.credit_limit is None:
            return ZERO
        return max(ZERO, account.credit_limit - account.balance)

    def utilization_pct(self, account: Account, balance: Optional[Decimal] = None) -> Decimal:
        """Balance as a percentage of the credit limit"""
        if not account.credit_limit:
            return ZERO
        balance = account.balance if balance is None else balance
        return round_money(balance / account.credit_limit * Decimal('100'))

    def credit_warning_level(self, account: Account, balance: Optional[Decimal] = None) -> CreditWarningLevel:
        """Classify utilisation into safe, warning and danger bands"""
        if not account.credit_limit:
            return CreditWarningLevel.SAFE
        balance = account.balance if balance is None else balance
        ratio = balance / account.credit_limit
        if ratio >= Decimal('1'):
            return CreditWarningLevel.DANGER
        if ratio >= self.config.credit_limit_warning_ratio:
            return CreditWarningLevel.WARNING
        return CreditWarningLevel.SAFE

    def check_credit_limit(self, account: Account, delta: Decimal) -> Optional[CreditLimitWarning]:
        """
        Return a CreditLimitWarning if applying delta would push a credit card
        past its limit, otherwise None.
        """
        if not account.is_credit_card or account.credit_limit is None or delta <= ZERO:
            return None
        projected = account.balance + delta
        if projected <= account.credit_limit:
            return None
        return CreditLimitWarning(
            account_id=account.id,
            credit_limit=account.credit_limit,
            projected_balance=projected,
            level=self.credit_warning_level(account, projected)
        )

    def _save_account(self, account: Account) -> None:
        """Save account to storage"""
        self.storage.save(self.accounts_table, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert Account to dictionary for storage"""
        result = account.to_dict()
        result['currency'] = account.currency.code
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to Account"""

        def get_decimal(key: str) -> Optional[Decimal]:
            value = data.get(key)
            return Decimal(value) if value is not None else None

        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            kind=AccountKind(data['kind']),
            name=data['name'],
            currency=Currency[data['currency']],
            balance=Decimal(data['balance']),
            opening_balance=Decimal(data.get('opening_balance') or '0'),
            credit_limit=get_decimal('credit_limit'),
            principal=get_decimal('principal'),
            tenure_months=data.get('tenure_months'),
            start_date=date.fromisoformat(data['start_date']) if data.get('start_date') else None,
            rate_type=RateType(data['rate_type']) if data.get('rate_type') else None,
            current_rate=get_decimal('current_rate'),
            due_day=data.get('due_day'),
            statement_day=data.get('statement_day')
        )
