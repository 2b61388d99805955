"""
Async Ledger Facade

Exposes the ledger operations to async callers. Each operation runs whole
on a worker thread, so its atomic unit begins and ends on one thread.
Reads are bounded by the configured storage timeout; mutations roll back
when they overrun it.
"""

from decimal import Decimal
from datetime import date
from typing import Any, Callable, Dict, List, Optional, TypeVar
import asyncio
import time

from .advances import CreditCardRepaymentService, PaymentSource, RepaymentAllocation, RepaymentResult
from .amortization import LoanEMIPayment
from .config import LedgerConfig, get_config
from .exceptions import StorageTimeoutError
from .ledger import LedgerEngine, Transaction, TransactionKind, TransactionPreview
from .loan_payments import LoanPaymentManager
from .logging_config import get_logger, log_action

T = TypeVar("T")


class AsyncLedgerEngine:
    """
    Async wrapper around LedgerEngine and the services that post through it
    """

    def __init__(
        self,
        ledger: LedgerEngine,
        repayment_service: Optional[CreditCardRepaymentService] = None,
        loan_payments: Optional[LoanPaymentManager] = None,
        timeout: Optional[float] = None,
        config: Optional[LedgerConfig] = None
    ):
        self.ledger = ledger
        self.repayment_service = repayment_service
        self.loan_payments = loan_payments
        config = config or get_config()
        self.timeout = timeout if timeout is not None else config.storage_timeout_seconds
        self.logger = get_logger("ledger_engine.async")

    def _timed_out(self, operation: Callable[..., Any]) -> StorageTimeoutError:
        name = operation.__name__
        log_action(
            self.logger, "error", f"{name} timed out",
            action="timeout", extra={"operation": name, "timeout": self.timeout}
        )
        return StorageTimeoutError(
            f"{name} did not finish within {self.timeout}s",
            details={"operation": name, "timeout": self.timeout}
        )

    async def _read(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(operation, *args, **kwargs), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise self._timed_out(operation)

    def _within_deadline(self, operation: Callable[..., T], deadline: float,
                         args: tuple, kwargs: Dict[str, Any]) -> T:
        with self.ledger.storage.atomic():
            result = operation(*args, **kwargs)
            if time.monotonic() > deadline:
                raise self._timed_out(operation)
        return result

    async def _write(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run a mutation inside one atomic unit that rolls back when the
        deadline passes before it commits. The caller waits for the unit to
        close, so a StorageTimeoutError always means nothing was written.
        """
        deadline = time.monotonic() + self.timeout
        return await asyncio.to_thread(self._within_deadline, operation, deadline, args, kwargs)

    async def preview_transaction(self, kind: TransactionKind, amount: Decimal,
                                  **kwargs: Any) -> TransactionPreview:
        return await self._read(self.ledger.preview_transaction, kind, amount, **kwargs)

    async def create_transaction(self, kind: TransactionKind, amount: Decimal, **kwargs: Any) -> Transaction:
        return await self._write(self.ledger.create_transaction, kind, amount, **kwargs)

    async def update_transaction(self, transaction_id: str, **changes: Any) -> Transaction:
        return await self._write(self.ledger.update_transaction, transaction_id, **changes)

    async def delete_transaction(self, transaction_id: str, **options: Any) -> None:
        await self._write(self.ledger.delete_transaction, transaction_id, **options)

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return await self._read(self.ledger.get_transaction, transaction_id)

    async def list_transactions(self, **filters: Any) -> List[Transaction]:
        return await self._read(self.ledger.list_transactions, **filters)

    async def get_balance(self, account_id: str) -> Decimal:
        account = await self._read(self.ledger.account_manager.require_account, account_id)
        return account.balance

    async def repay_card(
        self,
        card_id: str,
        amount: Decimal,
        source: PaymentSource,
        allocations: Optional[List[RepaymentAllocation]] = None,
        repayment_date: Optional[date] = None
    ) -> RepaymentResult:
        if self.repayment_service is None:
            raise RuntimeError("No repayment service configured")
        return await self._write(
            self.repayment_service.repay, card_id, amount, source, allocations, repayment_date
        )

    async def record_loan_payment(self, loan_id: str, amount: Decimal, from_account_id: str,
                                  payment_date: Optional[date] = None) -> LoanEMIPayment:
        if self.loan_payments is None:
            raise RuntimeError("No loan payment manager configured")
        return await self._write(
            self.loan_payments.record_payment, loan_id, amount, from_account_id, payment_date
        )
