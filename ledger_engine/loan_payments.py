"""
Loan Payment Module

Keeps a loan's LoanEMIPayment rows in step with its loan_payment
transactions and posts monthly interest charges. The rows are derived data:
the manager listens to the ledger, the account manager and the rate history,
and whenever a payment, the loan's terms or its rates change, the whole set is
recomputed and replaced inside the unit that made the change.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional

from .accounts import Account, AccountManager
from .amortization import (
    LoanEMIPayment, ScheduledPayment, add_months, accrued_interest, calculate_emi,
    interest_for_period, monthly_interest, projected_schedule, remaining_tenure,
    schedule_breakdown, total_interest
)
from .billing_cycle import safe_day_in_month
from .config import LedgerConfig, get_config
from .currency import ZERO, round_money
from .exceptions import ValidationError
from .ledger import LedgerEngine, Transaction, TransactionKind
from .rate_history import InterestRateEntry, RateHistoryManager, opening_rate
from .storage import StorageInterface
from .logging_config import get_logger, log_action

# Account fields that feed the payment breakdown
SCHEDULE_FIELDS = ("principal", "start_date", "due_day", "current_rate")


@dataclass(frozen=True)
class LoanSummary:
    """Headline figures for a loan"""
    account_id: str
    emi: Decimal
    outstanding_balance: Decimal
    total_interest: Decimal
    remaining_tenure: int
    monthly_interest: Decimal
    accrued_interest: Decimal
    current_rate: Decimal


class LoanPaymentManager:
    """
    Records loan payments and maintains the per-loan payment history
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        ledger: LedgerEngine,
        rate_manager: RateHistoryManager,
        config: Optional[LedgerConfig] = None
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.ledger = ledger
        self.rate_manager = rate_manager
        self.config = config or get_config()
        self.payments_table = "loan_emi_payments"
        self.logger = get_logger("ledger_engine.loans")

        ledger.add_listener(self._on_transaction_change)
        account_manager.add_listener(self._on_account_change)
        rate_manager.add_listener(self._on_rate_change)

    def _loan(self, loan_id: str) -> Account:
        loan = self.account_manager.require_account(loan_id)
        if not loan.is_loan:
            raise ValidationError(f"Account {loan_id} is not a loan", field="loan_id")
        if loan.principal is None or loan.start_date is None:
            raise ValidationError(f"Loan {loan_id} has no principal or start date", field="loan_id")
        return loan

    def record_payment(
        self,
        loan_id: str,
        amount: Decimal,
        from_account_id: str,
        payment_date: Optional[date] = None,
        description: str = "Loan EMI"
    ) -> LoanEMIPayment:
        """
        Pay a loan from a cash, bank or card account.

        The loan_payment transaction and the regenerated payment rows commit
        in one unit, so a payment that does not cover its interest leaves
        nothing behind.

        Returns:
            The payment row for the new transaction
        """
        loan = self._loan(loan_id)
        transaction = self.ledger.create_transaction(
            TransactionKind.LOAN_PAYMENT, amount,
            transaction_date=payment_date,
            from_account_id=from_account_id,
            to_account_id=loan_id,
            user_id=loan.user_id,
            description=description
        )
        return next(row for row in self.list_payments(loan_id) if row.transaction_id == transaction.id)

    # -- change listeners -------------------------------------------------

    def _regenerate_if_scheduled(self, loan_id: str) -> None:
        loan = self.account_manager.get_account(loan_id)
        if loan and loan.is_loan and loan.principal is not None and loan.start_date is not None:
            self.regenerate_schedule(loan_id)

    def _on_transaction_change(self, old: Optional[Transaction], new: Optional[Transaction]) -> None:
        loan_ids = {
            t.to_account_id for t in (old, new)
            if t is not None and t.kind == TransactionKind.LOAN_PAYMENT and t.to_account_id
        }
        for loan_id in sorted(loan_ids):
            self._regenerate_if_scheduled(loan_id)

    def _on_account_change(self, old: Account, new: Account) -> None:
        if new.is_loan and any(getattr(old, name) != getattr(new, name) for name in SCHEDULE_FIELDS):
            self._regenerate_if_scheduled(new.id)

    def _on_rate_change(self, old: Optional[InterestRateEntry], new: Optional[InterestRateEntry]) -> None:
        self._regenerate_if_scheduled((new or old).account_id)

    def loan_payment_transactions(self, loan_id: str) -> List[Transaction]:
        """The loan's payments in the order they are amortized"""
        transactions = self.ledger.list_transactions(
            account_id=loan_id, kinds=[TransactionKind.LOAN_PAYMENT]
        )
        transactions = [t for t in transactions if t.to_account_id == loan_id]
        transactions.sort(key=lambda t: (t.transaction_date, t.created_at))
        return transactions

    def regenerate_schedule(self, loan_id: str) -> List[LoanEMIPayment]:
        """
        Recompute every payment row from the loan's transactions and rate
        history, replacing the stored rows as one unit.
        """
        loan = self._loan(loan_id)
        transactions = self.loan_payment_transactions(loan_id)

        rows = schedule_breakdown(
            start_date=loan.start_date,
            opening_principal=loan.principal,
            payments=[ScheduledPayment(t.transaction_date, t.amount) for t in transactions],
            rate_history=self.rate_manager.list_rates(loan_id),
            due_day=loan.due_day,
            fallback_rate=loan.current_rate,
            account_id=loan_id,
            days_in_year=self.config.days_in_year
        )
        # schedule_breakdown keeps input order for equal dates
        for row, transaction in zip(rows, transactions):
            row.transaction_id = transaction.id

        with self.storage.atomic():
            self.storage.delete_where(self.payments_table, {"account_id": loan_id})
            self.storage.save_many(self.payments_table, {row.id: row.to_dict() for row in rows})

        log_action(
            self.logger, "info", "Loan schedule regenerated",
            action="regenerate_schedule", resource=f"loan:{loan_id}",
            extra={"payments": len(rows),
                   "outstanding": str(rows[-1].outstanding_principal) if rows else str(loan.principal)}
        )
        return rows

    def list_payments(self, loan_id: str) -> List[LoanEMIPayment]:
        """Stored payment rows, by payment number"""
        rows = [self._payment_from_dict(data)
                for data in self.storage.find(self.payments_table, {"account_id": loan_id})]
        rows.sort(key=lambda row: row.payment_number)
        return rows

    def projected_schedule(self, loan_id: str) -> List[LoanEMIPayment]:
        loan = self._loan(loan_id)
        return projected_schedule(
            principal=loan.principal,
            tenure_months=loan.tenure_months,
            start_date=loan.start_date,
            rate_history=self.rate_manager.list_rates(loan_id),
            current_rate=loan.current_rate,
            due_day=loan.due_day,
            account_id=loan_id
        )

    def loan_summary(self, loan_id: str, as_of: Optional[date] = None) -> LoanSummary:
        as_of = as_of or date.today()
        loan = self._loan(loan_id)
        history = self.rate_manager.list_rates(loan_id)
        rate = self.rate_manager.rate_on(loan_id, as_of, loan.current_rate)
        emi = calculate_emi(loan.principal, opening_rate(history, loan.current_rate), loan.tenure_months)
        payments = self.list_payments(loan_id)

        return LoanSummary(
            account_id=loan_id,
            emi=emi,
            outstanding_balance=loan.balance,
            total_interest=total_interest(loan.principal, emi, loan.tenure_months),
            remaining_tenure=remaining_tenure(loan.principal, loan.balance, loan.tenure_months),
            monthly_interest=monthly_interest(loan.balance, rate),
            accrued_interest=accrued_interest(
                loan.start_date, loan.balance, history, loan.current_rate, as_of,
                last_payment_date=payments[-1].payment_date if payments else None,
                days_in_year=self.config.days_in_year
            ),
            current_rate=rate
        )

    def _interest_posted_in_month(self, loan_id: str, on_date: date) -> bool:
        posted = self.ledger.list_transactions(
            account_id=loan_id, start_date=on_date.replace(day=1),
            kinds=[TransactionKind.INTEREST_CHARGE]
        )
        return any(
            (t.transaction_date.year, t.transaction_date.month) == (on_date.year, on_date.month)
            for t in posted
        )

    def should_post_interest(self, loan_id: str, today: Optional[date] = None) -> bool:
        """Today is the loan's due day and no interest has been posted this month"""
        today = today or date.today()
        loan = self._loan(loan_id)
        if not loan.due_day or loan.balance <= ZERO:
            return False
        due = safe_day_in_month(today.year, today.month, loan.due_day)
        return today == due and not self._interest_posted_in_month(loan_id, today)

    def post_monthly_interest(self, loan_id: str, today: Optional[date] = None) -> Optional[Transaction]:
        """
        Post an interest_charge for the month that ended today, counted by day
        across any rate changes. Returns None when nothing is due.
        """
        today = today or date.today()
        if not self.should_post_interest(loan_id, today):
            return None

        loan = self._loan(loan_id)
        period_start = add_months(today, -1, loan.due_day)
        interest = round_money(interest_for_period(
            max(period_start, loan.start_date), today, loan.balance,
            self.rate_manager.list_rates(loan_id), loan.current_rate, self.config.days_in_year
        ))
        if interest <= ZERO:
            return None

        transaction = self.ledger.create_transaction(
            TransactionKind.INTEREST_CHARGE, interest,
            transaction_date=today,
            to_account_id=loan_id,
            user_id=loan.user_id,
            description=f"Interest for {period_start.isoformat()} to {today.isoformat()}"
        )
        log_action(
            self.logger, "info", "Monthly interest posted",
            action="post_interest", resource=f"loan:{loan_id}",
            extra={"interest": str(interest), "transaction_id": transaction.id}
        )
        return transaction

    def _payment_from_dict(self, data: Dict) -> LoanEMIPayment:
        return LoanEMIPayment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            payment_number=data['payment_number'],
            payment_date=date.fromisoformat(data['payment_date']),
            emi_amount=Decimal(data['emi_amount']),
            principal_component=Decimal(data['principal_component']),
            interest_component=Decimal(data['interest_component']),
            outstanding_principal=Decimal(data['outstanding_principal']),
            interest_rate=Decimal(data['interest_rate']),
            transaction_id=data.get('transaction_id'),
            amount_paid=Decimal(data.get('amount_paid') or data['emi_amount']),
            excess_amount=Decimal(data.get('excess_amount') or '0')
        )
