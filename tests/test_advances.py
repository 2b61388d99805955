"""
Test suite for card repayments and the advance sub-ledger

Tests the overpayment scenario, repayment from advance, allocation against
statement lines, rejection paths that must leave no trace, and repayment
reversal.
"""

import pytest
from decimal import Decimal
from datetime import date

from ledger_engine.accounts import AccountKind, AccountManager
from ledger_engine.advances import (
    AdvanceBalance, AdvanceLedger, BankAccount, CreditCardRepaymentService, RepaymentAllocation
)
from ledger_engine.config import LedgerConfig
from ledger_engine.exceptions import InvalidStateError, NotFoundError, ValidationError
from ledger_engine.ledger import LedgerEngine, TransactionKind
from ledger_engine.statements import CreditCardStatementService, EMIManager, EMIStatus
from ledger_engine.storage import InMemoryStorage

PAY_DATE = date(2024, 3, 20)


class RepaymentFixture:
    """A bank with 5000 and a card whose 15 March statement bills 600 and 400"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.config = LedgerConfig(default_currency="INR")
        self.accounts = AccountManager(self.storage, self.config)
        self.ledger = LedgerEngine(self.storage, self.accounts, self.config)
        self.emis = EMIManager(self.storage)
        self.advances = AdvanceLedger(self.storage)
        self.service = CreditCardRepaymentService(
            self.storage, self.accounts, self.ledger, self.emis, self.advances
        )

        self.bank = self.accounts.create_account("u1", AccountKind.BANK, "Bank", opening_balance=Decimal('5000'))
        self.card = self.accounts.create_account("u1", AccountKind.CREDIT_CARD, "Card",
                                                 statement_day=15, due_day=5)
        self.groceries = self.ledger.create_transaction(
            TransactionKind.EXPENSE, Decimal('600'), transaction_date=date(2024, 2, 20),
            from_account_id=self.card.id, description="Groceries"
        )
        self.fuel = self.ledger.create_transaction(
            TransactionKind.EXPENSE, Decimal('400'), transaction_date=date(2024, 3, 1),
            from_account_id=self.card.id, description="Fuel"
        )

    def balance(self, account):
        return self.accounts.require_account(account.id).balance

    def allocation(self, line_id, amount, **kwargs):
        return RepaymentAllocation(statement_line_id=line_id, amount_paid=Decimal(amount), **kwargs)

    def pay_both_lines(self):
        return [self.allocation(f"txn:{self.groceries.id}", '600'),
                self.allocation(f"txn:{self.fuel.id}", '400')]

    def repayments_posted(self):
        return self.ledger.list_transactions(kinds=[TransactionKind.CREDIT_CARD_REPAYMENT])


class TestCreditCardRepayment(RepaymentFixture):
    """Repayments funded from a bank account or from the advance"""

    def test_overpayment_creates_advance(self):
        """Paying 1500 against 1000 of statement lines leaves a 500 advance"""
        result = self.service.repay(self.card.id, Decimal('1500'), BankAccount(self.bank.id),
                                    self.pay_both_lines(), PAY_DATE)

        assert self.balance(self.card) == Decimal('-500.00')
        assert self.balance(self.bank) == Decimal('3500.00')
        assert result.advance_created == Decimal('500.00')
        assert result.advance_consumed == Decimal('0')
        assert self.advances.balance(self.card.id) == Decimal('500.00')

        transaction = self.ledger.require_transaction(result.transaction_id)
        assert transaction.kind == TransactionKind.CREDIT_CARD_REPAYMENT
        assert transaction.metadata["repayment_id"] == result.repayment_id

    def test_exact_payment_creates_no_advance(self):
        result = self.service.repay(self.card.id, Decimal('1000'), BankAccount(self.bank.id),
                                    self.pay_both_lines(), PAY_DATE)
        assert result.advance_created == Decimal('0')
        assert self.advances.events(self.card.id) == []

    def test_allocations_take_line_details(self):
        result = self.service.repay(self.card.id, Decimal('600'), BankAccount(self.bank.id),
                                    [self.allocation(f"txn:{self.groceries.id}", '600')], PAY_DATE)
        allocation = result.allocations[0]
        assert allocation.transaction_id == self.groceries.id
        assert allocation.description == "Groceries"
        assert allocation.emi_id is None

    def test_repay_from_advance(self):
        """No ledger transaction; the advance is consumed"""
        self.service.repay(self.card.id, Decimal('1500'), BankAccount(self.bank.id),
                           self.pay_both_lines(), PAY_DATE)
        transactions_before = len(self.ledger.list_transactions())

        result = self.service.repay(self.card.id, Decimal('200'), AdvanceBalance(),
                                    [self.allocation(f"txn:{self.groceries.id}", '200')], PAY_DATE)

        assert result.transaction_id is None
        assert result.advance_consumed == Decimal('200.00')
        assert self.advances.balance(self.card.id) == Decimal('300.00')
        assert self.balance(self.card) == Decimal('-500.00')
        assert len(self.ledger.list_transactions()) == transactions_before

    def test_advance_nets_next_statement(self):
        """A 1500 advance covers a later 300 statement and leaves 1200"""
        self.service.repay(self.card.id, Decimal('1500'), BankAccount(self.bank.id), [], date(2024, 3, 14))
        self.ledger.create_transaction(TransactionKind.EXPENSE, Decimal('300'), transaction_date=date(2024, 3, 20),
                                       from_account_id=self.card.id)

        statements = CreditCardStatementService(self.accounts, self.ledger, self.emis, self.advances, self.config)
        statement = statements.statement(self.card.id, date(2024, 4, 20))
        assert statement.statement_amount == Decimal('300.00')
        assert statement.net_statement_amount == Decimal('0.00')

        self.service.repay(self.card.id, statement.statement_amount, AdvanceBalance(), [], date(2024, 4, 20))
        assert self.advances.balance(self.card.id) == Decimal('1200.00')

    def test_advance_cannot_go_negative(self):
        with pytest.raises(ValidationError, match="Advance balance"):
            self.service.repay(self.card.id, Decimal('1'), AdvanceBalance(), [], PAY_DATE)
        assert self.service.list_repayments(self.card.id) == []

    def test_over_allocation_rejected(self):
        with pytest.raises(ValidationError, match="exceeds repayment"):
            self.service.repay(self.card.id, Decimal('100'), BankAccount(self.bank.id),
                               [self.allocation(f"txn:{self.groceries.id}", '101')], PAY_DATE)
        assert self.balance(self.bank) == Decimal('5000')
        assert self.repayments_posted() == []

    def test_non_positive_amount_rejected(self):
        with pytest.raises(ValidationError):
            self.service.repay(self.card.id, Decimal('0'), BankAccount(self.bank.id))

    def test_missing_source_account_leaves_no_trace(self):
        with pytest.raises(NotFoundError):
            self.service.repay(self.card.id, Decimal('1500'), BankAccount("missing"), [], PAY_DATE)
        assert self.balance(self.card) == Decimal('1000')
        assert self.advances.balance(self.card.id) == Decimal('0')

    def test_repay_non_card_rejected(self):
        with pytest.raises(ValidationError, match="not a credit card"):
            self.service.repay(self.bank.id, Decimal('10'), BankAccount(self.bank.id))

    def test_emi_allocation_pays_installment(self):
        emi = self.emis.create_emi(self.card.id, Decimal('600'), 3, date(2024, 3, 1))
        result = self.service.repay(self.card.id, Decimal('200'), BankAccount(self.bank.id),
                                    [self.allocation(f"emi:{emi.id}:1", '200')], PAY_DATE)
        assert result.allocations[0].emi_id == emi.id
        assert self.emis.require_emi(emi.id).remaining_installments == 2

    def test_emi_of_other_card_rejected(self):
        other = self.accounts.create_account("u1", AccountKind.CREDIT_CARD, "Other")
        emi = self.emis.create_emi(other.id, Decimal('600'), 3, date(2024, 3, 1))

        with pytest.raises(ValidationError, match="another card"):
            self.service.repay(self.card.id, Decimal('200'), BankAccount(self.bank.id),
                               [self.allocation(f"emi:{emi.id}:1", '200', emi_id=emi.id)], PAY_DATE)
        assert self.balance(self.bank) == Decimal('5000')
        assert self.emis.require_emi(emi.id).remaining_installments == 3


class TestAllocationMatching(RepaymentFixture):
    """Allocations must match the payable lines of the statement currently due"""

    def test_payable_lines(self):
        emi = self.emis.create_emi(self.card.id, Decimal('600'), 3, date(2024, 3, 1))
        lines = self.service.payable_lines(self.card.id, PAY_DATE)
        assert {line.line_id for line in lines} == {
            f"txn:{self.groceries.id}", f"txn:{self.fuel.id}", f"emi:{emi.id}:1"
        }

    def test_unknown_line_rejected(self):
        with pytest.raises(ValidationError, match="Unknown statement line"):
            self.service.repay(self.card.id, Decimal('100'), BankAccount(self.bank.id),
                               [self.allocation("txn:not-on-statement", '100')], PAY_DATE)
        assert self.balance(self.bank) == Decimal('5000')
        assert self.repayments_posted() == []

    def test_line_outside_billed_period_rejected(self):
        """A purchase after the statement date is not payable yet"""
        later = self.ledger.create_transaction(TransactionKind.EXPENSE, Decimal('50'),
                                               transaction_date=date(2024, 3, 18), from_account_id=self.card.id)
        with pytest.raises(ValidationError, match="Unknown statement line"):
            self.service.repay(self.card.id, Decimal('50'), BankAccount(self.bank.id),
                               [self.allocation(f"txn:{later.id}", '50')], PAY_DATE)

    def test_duplicate_line_rejected(self):
        line_id = f"txn:{self.groceries.id}"
        with pytest.raises(ValidationError, match="more than once"):
            self.service.repay(self.card.id, Decimal('600'), BankAccount(self.bank.id),
                               [self.allocation(line_id, '300'), self.allocation(line_id, '300')], PAY_DATE)
        assert self.balance(self.bank) == Decimal('5000')

    def test_amount_above_line_rejected(self):
        with pytest.raises(ValidationError, match="exceeds statement line"):
            self.service.repay(self.card.id, Decimal('1000'), BankAccount(self.bank.id),
                               [self.allocation(f"txn:{self.fuel.id}", '500')], PAY_DATE)
        assert self.balance(self.card) == Decimal('1000')

    def test_partial_emi_line_rejected(self):
        emi = self.emis.create_emi(self.card.id, Decimal('600'), 3, date(2024, 3, 1))
        with pytest.raises(ValidationError, match="paid in full"):
            self.service.repay(self.card.id, Decimal('150'), BankAccount(self.bank.id),
                               [self.allocation(f"emi:{emi.id}:1", '150')], PAY_DATE)
        assert self.emis.require_emi(emi.id).remaining_installments == 3

    def test_card_without_statement_day(self):
        plain = self.accounts.create_account("u1", AccountKind.CREDIT_CARD, "Plain", opening_balance=Decimal('100'))
        with pytest.raises(ValidationError, match="no statement day"):
            self.service.repay(plain.id, Decimal('100'), BankAccount(self.bank.id),
                               [self.allocation("txn:x", '100')], PAY_DATE)

        result = self.service.repay(plain.id, Decimal('100'), BankAccount(self.bank.id), [], PAY_DATE)
        assert result.advance_created == Decimal('100.00')


class TestRepaymentReversal(RepaymentFixture):
    """Reversing a repayment restores balances, advance and EMIs"""

    def test_reverse_bank_repayment(self):
        emi = self.emis.create_emi(self.card.id, Decimal('600'), 3, date(2024, 3, 1))
        result = self.service.repay(self.card.id, Decimal('1500'), BankAccount(self.bank.id),
                                    [self.allocation(f"emi:{emi.id}:1", '200')], PAY_DATE)

        reversed_repayment = self.service.reverse_repayment(result.repayment_id)

        assert reversed_repayment.is_reversed
        assert self.balance(self.card) == Decimal('1000')
        assert self.balance(self.bank) == Decimal('5000')
        assert self.advances.balance(self.card.id) == Decimal('0')
        assert self.emis.require_emi(emi.id).remaining_installments == 3
        assert self.emis.require_emi(emi.id).status == EMIStatus.ACTIVE
        assert self.ledger.get_transaction(result.transaction_id) is None

        with pytest.raises(InvalidStateError, match="already reversed"):
            self.service.reverse_repayment(result.repayment_id)

    def test_reverse_advance_repayment_restores_advance(self):
        self.service.repay(self.card.id, Decimal('1500'), BankAccount(self.bank.id),
                           self.pay_both_lines(), PAY_DATE)
        from_advance = self.service.repay(self.card.id, Decimal('200'), AdvanceBalance(), [], PAY_DATE)

        self.service.reverse_repayment(from_advance.repayment_id)
        assert self.advances.balance(self.card.id) == Decimal('500.00')

    def test_cannot_reverse_spent_advance(self):
        funding = self.service.repay(self.card.id, Decimal('1500'), BankAccount(self.bank.id),
                                     self.pay_both_lines(), PAY_DATE)
        self.service.repay(self.card.id, Decimal('200'), AdvanceBalance(), [], PAY_DATE)

        with pytest.raises(InvalidStateError, match="already been used"):
            self.service.reverse_repayment(funding.repayment_id)

        assert self.balance(self.card) == Decimal('-500.00')
        assert self.advances.balance(self.card.id) == Decimal('300.00')
        assert not self.service.get_repayment(funding.repayment_id).is_reversed

    def test_unknown_repayment(self):
        with pytest.raises(NotFoundError):
            self.service.reverse_repayment("nope")

    def test_repayment_transaction_cannot_be_edited_directly(self):
        result = self.service.repay(self.card.id, Decimal('1500'), BankAccount(self.bank.id),
                                    self.pay_both_lines(), PAY_DATE)

        with pytest.raises(InvalidStateError, match="reverse_repayment"):
            self.ledger.delete_transaction(result.transaction_id)
        with pytest.raises(InvalidStateError, match="reverse_repayment"):
            self.ledger.update_transaction(result.transaction_id, amount=Decimal('1000'))

        assert self.balance(self.card) == Decimal('-500.00')
        assert self.advances.balance(self.card.id) == Decimal('500.00')
        assert self.ledger.get_transaction(result.transaction_id) is not None
