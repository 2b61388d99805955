"""
Test suite for loan payments

Tests payment rows regenerated from loan_payment transactions, rollback of
payments that do not cover interest, monthly interest posting and the loan
summary.
"""

import pytest
from decimal import Decimal
from datetime import date

from ledger_engine.accounts import AccountKind, AccountManager, RateType
from ledger_engine.config import LedgerConfig
from ledger_engine.exceptions import InconsistentScheduleError, ValidationError
from ledger_engine.ledger import LedgerEngine, TransactionKind
from ledger_engine.loan_payments import LoanPaymentManager
from ledger_engine.rate_history import RateHistoryManager
from ledger_engine.storage import InMemoryStorage, SQLiteStorage

EMI = Decimal('10661.85')


class LoanFixture:
    """A 120000 loan at 12% over 12 months, paid from a bank account"""

    due_day = None

    def make_storage(self):
        return InMemoryStorage()

    def setup_method(self):
        self.storage = self.make_storage()
        self.config = LedgerConfig(default_currency="INR")
        self.accounts = AccountManager(self.storage, self.config)
        self.ledger = LedgerEngine(self.storage, self.accounts, self.config)
        self.rates = RateHistoryManager(self.storage)
        self.loans = LoanPaymentManager(self.storage, self.accounts, self.ledger, self.rates, self.config)

        self.bank = self.accounts.create_account("u1", AccountKind.BANK, "Bank", opening_balance=Decimal('100000'))
        self.loan = self.accounts.create_account(
            "u1", AccountKind.LOAN, "Home loan", opening_balance=Decimal('120000'),
            principal=Decimal('120000'), tenure_months=12, start_date=date(2024, 1, 1),
            rate_type=RateType.FIXED, current_rate=Decimal('12'), due_day=self.due_day
        )

    def pay(self, on, amount=EMI):
        return self.loans.record_payment(self.loan.id, amount, self.bank.id, on)

    def loan_balance(self):
        return self.accounts.require_account(self.loan.id).balance


class TestRecordPayment(LoanFixture):
    """Payments and their rows"""

    def test_first_payment(self):
        row = self.pay(date(2024, 2, 1))

        assert row.payment_number == 1
        assert row.interest_component == Decimal('1200.00')
        assert row.principal_component == Decimal('9461.85')
        assert row.outstanding_principal == Decimal('110538.15')
        assert row.transaction_id is not None
        assert self.loan_balance() == Decimal('109338.15')
        assert self.accounts.require_account(self.bank.id).balance == Decimal('100000') - EMI

    def test_rows_follow_payment_dates(self):
        """A back-dated payment is renumbered ahead of later ones"""
        self.pay(date(2024, 3, 1))
        self.pay(date(2024, 2, 1))

        rows = self.loans.list_payments(self.loan.id)
        assert [r.payment_number for r in rows] == [1, 2]
        assert [r.payment_date for r in rows] == [date(2024, 2, 1), date(2024, 3, 1)]
        assert rows[0].interest_component == Decimal('1200.00')

    def test_delete_renumbers_without_gaps(self):
        first = self.pay(date(2024, 2, 1))
        self.pay(date(2024, 3, 1))
        self.pay(date(2024, 4, 1))

        self.ledger.delete_transaction(first.transaction_id)
        rows = self.loans.list_payments(self.loan.id)

        assert [r.payment_number for r in rows] == [1, 2]
        assert rows[0].payment_date == date(2024, 3, 1)
        assert rows[0].interest_component == Decimal('1200.00')
        assert len(self.loans.list_payments(self.loan.id)) == 2

    def test_payment_below_interest_is_rolled_back(self):
        with pytest.raises(InconsistentScheduleError):
            self.pay(date(2024, 2, 1), Decimal('500'))

        assert self.loan_balance() == Decimal('120000')
        assert self.ledger.list_transactions(kinds=[TransactionKind.LOAN_PAYMENT]) == []
        assert self.loans.list_payments(self.loan.id) == []

    def test_rate_change_reprices_later_rows(self):
        self.rates.add_rate(self.loan.id, date(2024, 1, 1), Decimal('12'))
        self.pay(date(2024, 2, 1))
        self.pay(date(2024, 3, 1))

        self.rates.add_rate(self.loan.id, date(2024, 2, 15), Decimal('6'))
        rows = self.loans.list_payments(self.loan.id)

        assert rows[0].interest_rate == Decimal('12')
        assert rows[1].interest_rate == Decimal('6')
        assert rows[1].interest_component == Decimal('552.69')

    def test_overshoot_is_stored(self):
        small = self.accounts.create_account(
            "u1", AccountKind.LOAN, "Gadget loan", opening_balance=Decimal('1000'), principal=Decimal('1000'),
            tenure_months=6, start_date=date(2024, 1, 1), current_rate=Decimal('12')
        )
        self.loans.record_payment(small.id, Decimal('1500'), self.bank.id, date(2024, 2, 1))

        row = self.loans.list_payments(small.id)[0]
        assert row.emi_amount == Decimal('1010.00')
        assert row.amount_paid == Decimal('1500.00')
        assert row.excess_amount == Decimal('490.00')
        assert row.outstanding_principal == Decimal('0')

    def test_non_loan_rejected(self):
        with pytest.raises(ValidationError, match="not a loan"):
            self.loans.record_payment(self.bank.id, EMI, self.bank.id, date(2024, 2, 1))


class TestScheduleFollowsChanges(LoanFixture):
    """Stored rows track edits made through the ledger, the account and the rate history"""

    def test_amount_edit_regenerates(self):
        first = self.pay(date(2024, 2, 1))
        self.pay(date(2024, 3, 1))

        self.ledger.update_transaction(first.transaction_id, amount=Decimal('11200'))

        rows = self.loans.list_payments(self.loan.id)
        assert rows[0].principal_component == Decimal('10000.00')
        assert rows[0].outstanding_principal == Decimal('110000.00')
        assert rows[1].interest_component == Decimal('1100.00')

    def test_edit_below_interest_is_rolled_back(self):
        first = self.pay(date(2024, 2, 1))

        with pytest.raises(InconsistentScheduleError):
            self.ledger.update_transaction(first.transaction_id, amount=Decimal('100'))

        assert self.ledger.require_transaction(first.transaction_id).amount == EMI
        assert self.loans.list_payments(self.loan.id)[0].principal_component == Decimal('9461.85')
        assert self.loan_balance() == Decimal('109338.15')

    def test_term_change_regenerates(self):
        self.pay(date(2024, 2, 1))

        self.accounts.update_account(self.loan.id, current_rate=Decimal('6'))

        row = self.loans.list_payments(self.loan.id)[0]
        assert row.interest_component == Decimal('600.00')
        assert row.interest_rate == Decimal('6')

    def test_descriptive_change_keeps_rows(self):
        first = self.pay(date(2024, 2, 1))
        self.accounts.update_account(self.loan.id, name="Mortgage")
        assert self.loans.list_payments(self.loan.id)[0].id == first.id

    def test_rate_added_and_removed(self):
        self.pay(date(2024, 2, 1))

        entry = self.rates.add_rate(self.loan.id, date(2024, 1, 1), Decimal('6'))
        assert self.loans.list_payments(self.loan.id)[0].interest_component == Decimal('600.00')

        self.rates.delete_rate(entry.id)
        assert self.loans.list_payments(self.loan.id)[0].interest_component == Decimal('1200.00')


class TestRecordPaymentSQLite(LoanFixture):
    """The rollback also holds on SQLite"""

    def make_storage(self):
        return SQLiteStorage()

    def test_payment_below_interest_is_rolled_back(self):
        self.pay(date(2024, 2, 1))
        with pytest.raises(InconsistentScheduleError):
            self.pay(date(2024, 3, 1), Decimal('10'))

        assert self.loan_balance() == Decimal('109338.15')
        assert len(self.loans.list_payments(self.loan.id)) == 1


class TestMonthlyInterest(LoanFixture):
    """Interest posting on the due day"""

    due_day = 5

    def test_only_on_due_day(self):
        assert not self.loans.should_post_interest(self.loan.id, date(2024, 3, 4))
        assert self.loans.should_post_interest(self.loan.id, date(2024, 3, 5))
        assert self.loans.post_monthly_interest(self.loan.id, date(2024, 3, 4)) is None

    def test_post_interest_once_per_month(self):
        transaction = self.loans.post_monthly_interest(self.loan.id, date(2024, 3, 5))

        # 120000 * 12% * 29 days / 365
        assert transaction.kind == TransactionKind.INTEREST_CHARGE
        assert transaction.amount == Decimal('1144.11')
        assert self.loan_balance() == Decimal('121144.11')

        assert not self.loans.should_post_interest(self.loan.id, date(2024, 3, 5))
        assert self.loans.post_monthly_interest(self.loan.id, date(2024, 3, 5)) is None

    def test_interest_counted_from_loan_start(self):
        transaction = self.loans.post_monthly_interest(self.loan.id, date(2024, 1, 5))
        # 120000 * 12% * 4 days / 365
        assert transaction.amount == Decimal('157.81')

    def test_cleared_loan_posts_nothing(self):
        cleared = self.accounts.create_account(
            "u1", AccountKind.LOAN, "Car loan", principal=Decimal('50000'), tenure_months=12,
            start_date=date(2023, 1, 1), current_rate=Decimal('9'), due_day=5
        )
        assert not self.loans.should_post_interest(cleared.id, date(2024, 3, 5))


class TestLoanSummary(LoanFixture):
    """Headline loan figures"""

    def test_summary(self):
        self.pay(date(2024, 2, 1))
        summary = self.loans.loan_summary(self.loan.id, as_of=date(2024, 2, 11))

        assert summary.emi == EMI
        assert summary.total_interest == Decimal('7942.20')
        assert summary.outstanding_balance == Decimal('109338.15')
        assert summary.current_rate == Decimal('12')
        assert summary.remaining_tenure == 11
        assert summary.accrued_interest > Decimal('0')

    def test_projected_schedule(self):
        rows = self.loans.projected_schedule(self.loan.id)
        assert len(rows) == 12
        assert rows[0].emi_amount == EMI
        assert rows[-1].outstanding_principal == Decimal('0')
