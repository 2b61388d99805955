"""
Cash Flow Projection Module

Read-only monthly projection over a user's accounts: the month's opening
balance on cash and bank accounts, month-to-date income, expenses and
repayments, outstanding credit card dues and what is left after them.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional

from .accounts import Account, AccountKind, AccountManager
from .currency import ZERO, round_money, to_decimal
from .ledger import LedgerEngine, Transaction, TransactionKind, leg_delta
from .statements import CreditCardStatementService
from .logging_config import get_logger

LIQUID_KINDS = (AccountKind.CASH, AccountKind.BANK)
INCOME_KINDS = (TransactionKind.INCOME,)
EXPENSE_KINDS = (TransactionKind.EXPENSE, TransactionKind.WITHDRAWAL)
REPAYMENT_KINDS = (TransactionKind.CREDIT_CARD_REPAYMENT, TransactionKind.LOAN_PAYMENT)


@dataclass(frozen=True)
class MonthlyCashFlow:
    """Month-to-date cash position"""
    opening_balance: Decimal
    income: Decimal
    expenses: Decimal
    repayments: Decimal
    remaining_budget: Decimal
    expected_balance: Decimal
    credit_card_dues: Decimal
    net_available: Decimal


def opening_balance(accounts: List[Account], month_transactions: List[Transaction]) -> Decimal:
    """
    Balance of the cash and bank accounts at the start of the month: their
    current balances with every transaction of the month reversed.
    """
    liquid = {a.id: a for a in accounts if a.kind in LIQUID_KINDS}
    total = sum((a.balance for a in liquid.values()), ZERO)
    for transaction in month_transactions:
        for leg, account_id in transaction.legs():
            account = liquid.get(account_id)
            if account:
                total -= leg_delta(transaction.kind, leg, account.kind, transaction.amount)
    return round_money(total)


def remaining_budget(budgeted_expenses: Optional[Decimal], actual_expenses: Decimal) -> Decimal:
    """Unspent budget, never negative; zero without a budget"""
    if budgeted_expenses is None:
        return round_money(ZERO)
    return max(ZERO, round_money(to_decimal(budgeted_expenses) - actual_expenses))


def _total(transactions: List[Transaction], kinds) -> Decimal:
    return round_money(sum((t.amount for t in transactions if t.kind in kinds), ZERO))


class CashFlowProjector:
    """
    Aggregates ledger and statement data into a MonthlyCashFlow
    """

    def __init__(
        self,
        account_manager: AccountManager,
        ledger: LedgerEngine,
        statement_service: Optional[CreditCardStatementService] = None
    ):
        self.account_manager = account_manager
        self.ledger = ledger
        self.statement_service = statement_service
        self.logger = get_logger("ledger_engine.cashflow")

    def credit_card_dues(self, cards: List[Account], today: date) -> Decimal:
        """
        Net statement amount for cards with a statement day, the absolute
        balance for the rest.
        """
        total = ZERO
        for card in cards:
            if card.statement_day and self.statement_service:
                total += self.statement_service.statement(card.id, today).net_statement_amount
            else:
                total += abs(card.balance)
        return round_money(total)

    def monthly_cash_flow(
        self,
        user_id: str,
        budgeted_expenses: Optional[Decimal] = None,
        today: Optional[date] = None
    ) -> MonthlyCashFlow:
        """
        Project the current month for a user.

        expected = opening + income - expenses - remaining budget, and
        net available = expected - credit card dues.
        """
        today = today or date.today()
        month_start = today.replace(day=1)
        accounts = self.account_manager.get_user_accounts(user_id)
        account_ids = {a.id for a in accounts}

        month_transactions = [
            t for t in self.ledger.list_transactions(start_date=month_start)
            if t.touches_any(account_ids)
        ]
        to_date = [t for t in month_transactions if t.transaction_date <= today]

        opening = opening_balance(accounts, month_transactions)
        income = _total(to_date, INCOME_KINDS)
        expenses = _total(to_date, EXPENSE_KINDS)
        repayments = _total(to_date, REPAYMENT_KINDS)
        budget_left = remaining_budget(budgeted_expenses, expenses)
        expected = opening + income - expenses - budget_left

        cards = [a for a in accounts if a.kind == AccountKind.CREDIT_CARD]
        dues = self.credit_card_dues(cards, today)

        self.logger.debug("Cash flow projected for user %s, month starting %s", user_id, month_start)
        return MonthlyCashFlow(
            opening_balance=opening,
            income=income,
            expenses=expenses,
            repayments=repayments,
            remaining_budget=budget_left,
            expected_balance=round_money(expected),
            credit_card_dues=dues,
            net_available=round_money(expected - dues)
        )
