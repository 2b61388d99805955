"""
Interest Rate History Module

Resolves the annual rate in force on any date from a sparse, dated rate
timeline, splits a date range into rate segments, and stores the timeline
per loan account.
"""

from bisect import bisect_right
from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
import uuid

from .currency import to_decimal
from .exceptions import ValidationError, NotFoundError
from .hooks import ChangeHooksMixin
from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


@dataclass
class InterestRateEntry(StorageRecord):
    """Annual rate (percent) effective from effective_date onwards"""
    account_id: str
    effective_date: date
    interest_rate: Decimal

    def __post_init__(self):
        self.interest_rate = to_decimal(self.interest_rate)
        if self.interest_rate < Decimal('0'):
            raise ValidationError("Interest rate cannot be negative", field="interest_rate")

    @classmethod
    def new(cls, effective_date: date, interest_rate: Decimal, account_id: str = "") -> "InterestRateEntry":
        """Build an unsaved entry with a fresh id"""
        now = datetime.now(timezone.utc)
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            effective_date=effective_date,
            interest_rate=interest_rate
        )


def sort_history(history: Iterable[InterestRateEntry]) -> List[InterestRateEntry]:
    """Order entries by effective date, keeping insertion order on ties"""
    return sorted(history, key=lambda entry: entry.effective_date)


def effective_rate(history: Iterable[InterestRateEntry], on_date: date,
                   fallback_rate: Optional[Decimal] = None) -> Decimal:
    """
    Rate in force on on_date: the latest entry with effective_date <= on_date.

    An entry dated exactly on on_date applies. With an empty history the
    fallback (the account's current rate) is returned. For a date before the
    first entry the opening entry's rate applies, since that entry describes
    the rate the loan started on.
    """
    entries = sort_history(history)
    if not entries:
        if fallback_rate is None:
            raise ValidationError("No rate history and no fallback rate", field="rate_history")
        return to_decimal(fallback_rate)

    dates = [entry.effective_date for entry in entries]
    index = bisect_right(dates, on_date)
    if index == 0:
        return entries[0].interest_rate
    return entries[index - 1].interest_rate


def opening_rate(history: Iterable[InterestRateEntry], fallback_rate: Optional[Decimal]) -> Decimal:
    """The first rate in the timeline, or the fallback when there is none"""
    entries = sort_history(history)
    if entries:
        return entries[0].interest_rate
    if fallback_rate is None:
        raise ValidationError("No rate history and no fallback rate", field="rate_history")
    return to_decimal(fallback_rate)


def rate_segments(history: Iterable[InterestRateEntry], start: date, end: date,
                  fallback_rate: Optional[Decimal] = None) -> List[Tuple[date, date, Decimal]]:
    """
    Split [start, end) into (segment_start, segment_end, rate) pieces at
    every rate change inside the range.
    """
    if end <= start:
        return []
    entries = sort_history(history)
    boundaries = [entry.effective_date for entry in entries if start < entry.effective_date < end]

    segments = []
    cursor = start
    for boundary in boundaries:
        if boundary > cursor:
            segments.append((cursor, boundary, effective_rate(entries, cursor, fallback_rate)))
            cursor = boundary
    segments.append((cursor, end, effective_rate(entries, cursor, fallback_rate)))
    return segments


class RateHistoryManager(ChangeHooksMixin):
    """
    Stores the dated rate timeline for loan accounts
    """

    def __init__(self, storage: StorageInterface):
        super().__init__()
        self.storage = storage
        self.rates_table = "interest_rate_history"
        self.logger = get_logger("ledger_engine.rates")

    def add_rate(self, account_id: str, effective_date: date, interest_rate: Decimal) -> InterestRateEntry:
        """Record a rate change for a loan"""
        entry = InterestRateEntry.new(effective_date, interest_rate, account_id)
        with self.storage.atomic():
            self.storage.save(self.rates_table, entry.id, entry.to_dict())
            self._notify(None, entry)

        log_action(
            self.logger, "info", "Interest rate recorded",
            action="add_rate", resource=f"account:{account_id}",
            extra={"effective_date": effective_date.isoformat(), "interest_rate": str(entry.interest_rate)}
        )
        return entry

    def list_rates(self, account_id: str) -> List[InterestRateEntry]:
        """Rate history for a loan, oldest first"""
        rows = self.storage.find(self.rates_table, {"account_id": account_id})
        return sort_history(self._entry_from_dict(row) for row in rows)

    def delete_rate(self, entry_id: str) -> None:
        """Remove one history entry"""
        with self.storage.atomic():
            data = self.storage.load(self.rates_table, entry_id)
            if not data:
                raise NotFoundError("InterestRateEntry", entry_id)
            self.storage.delete(self.rates_table, entry_id)
            self._notify(self._entry_from_dict(data), None)
        log_action(self.logger, "info", "Interest rate deleted",
                   action="delete_rate", resource=f"rate:{entry_id}")

    def rate_on(self, account_id: str, on_date: date, fallback_rate: Optional[Decimal] = None) -> Decimal:
        """Resolve the stored timeline for one account"""
        return effective_rate(self.list_rates(account_id), on_date, fallback_rate)

    def _entry_from_dict(self, data: Dict) -> InterestRateEntry:
        return InterestRateEntry(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_id=data['account_id'],
            effective_date=date.fromisoformat(data['effective_date']),
            interest_rate=Decimal(data['interest_rate'])
        )
