"""
Tests for storage backends and atomic units
"""

import pytest
import threading
from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass

from ledger_engine.exceptions import NotFoundError
from ledger_engine.storage import InMemoryStorage, SQLiteStorage, StorageRecord


def make_record(record_id, balance="100.00", owner="u1"):
    return {"id": record_id, "owner": owner, "balance": balance}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Every backend must honour the same contract"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "ledger.db")
    yield backend
    backend.close()


class TestStorageContract:
    """CRUD behaviour shared by all backends"""

    def test_basic_operations(self, storage):
        """Save, load, find, count and delete"""
        storage.save("accounts", "a1", make_record("a1"))
        storage.save("accounts", "a2", make_record("a2", owner="u2"))

        assert storage.load("accounts", "a1") == make_record("a1")
        assert storage.load("accounts", "missing") is None
        assert storage.exists("accounts", "a1")
        assert storage.count("accounts") == 2
        assert [r["id"] for r in storage.find("accounts", {"owner": "u2"})] == ["a2"]

        assert storage.delete("accounts", "a1")
        assert not storage.delete("accounts", "a1")
        assert storage.count("accounts") == 1

    def test_save_overwrites(self, storage):
        storage.save("accounts", "a1", make_record("a1"))
        storage.save("accounts", "a1", make_record("a1", balance="5.00"))
        assert storage.load("accounts", "a1")["balance"] == "5.00"
        assert storage.count("accounts") == 1

    def test_loaded_records_are_copies(self, storage):
        storage.save("accounts", "a1", make_record("a1"))
        loaded = storage.load("accounts", "a1")
        loaded["balance"] = "0"
        assert storage.load("accounts", "a1")["balance"] == "100.00"

    def test_increment(self, storage):
        """increment adds a signed delta and returns the new value"""
        storage.save("accounts", "a1", make_record("a1"))

        assert storage.increment("accounts", "a1", "balance", Decimal('25.50')) == Decimal('125.50')
        assert storage.increment("accounts", "a1", "balance", Decimal('-200')) == Decimal('-74.50')
        assert Decimal(storage.load("accounts", "a1")["balance"]) == Decimal('-74.50')

    def test_increment_missing_record(self, storage):
        with pytest.raises(NotFoundError):
            storage.increment("accounts", "nope", "balance", Decimal('1'))

    def test_save_many_and_delete_where(self, storage):
        storage.save_many("rows", {f"r{i}": {"id": f"r{i}", "loan": "L1"} for i in range(3)})
        storage.save("rows", "other", {"id": "other", "loan": "L2"})

        assert storage.delete_where("rows", {"loan": "L1"}) == 3
        assert [r["id"] for r in storage.load_all("rows")] == ["other"]

    def test_atomic_commit(self, storage):
        with storage.atomic():
            storage.save("accounts", "a1", make_record("a1"))
            storage.increment("accounts", "a1", "balance", Decimal('1'))
        assert storage.load("accounts", "a1")["balance"] == "101.00"

    def test_atomic_rollback_restores_everything(self, storage):
        """A failing unit leaves no trace of any write in it"""
        storage.save("accounts", "a1", make_record("a1"))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.increment("accounts", "a1", "balance", Decimal('50'))
                storage.save("accounts", "a2", make_record("a2"))
                raise RuntimeError("boom")

        assert storage.load("accounts", "a1")["balance"] == "100.00"
        assert storage.load("accounts", "a2") is None

    def test_nested_unit_rolls_back_alone(self, storage):
        storage.save("accounts", "a1", make_record("a1"))

        with storage.atomic():
            storage.increment("accounts", "a1", "balance", Decimal('10'))
            with pytest.raises(RuntimeError):
                with storage.atomic():
                    storage.increment("accounts", "a1", "balance", Decimal('1000'))
                    raise RuntimeError("inner")

        assert Decimal(storage.load("accounts", "a1")["balance"]) == Decimal('110.00')

    def test_failed_inner_unit_aborts_outer(self, storage):
        storage.save("accounts", "a1", make_record("a1"))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.increment("accounts", "a1", "balance", Decimal('10'))
                with storage.atomic():
                    raise RuntimeError("inner")

        assert storage.load("accounts", "a1")["balance"] == "100.00"


class TestConcurrentIncrements:
    """Concurrent increments on one record must not lose updates"""

    @pytest.mark.parametrize("backend", ["memory", "sqlite"])
    def test_parallel_increments(self, backend):
        storage = InMemoryStorage() if backend == "memory" else SQLiteStorage()
        storage.save("accounts", "a1", make_record("a1", balance="0"))

        def worker():
            for _ in range(50):
                storage.increment("accounts", "a1", "balance", Decimal('1.10'))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert Decimal(storage.load("accounts", "a1")["balance"]) == Decimal('220.00')
        storage.close()


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    on: date


class TestStorageRecord:
    """Test record serialisation"""

    def test_to_dict_encodes_values(self):
        now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        record = SampleRecord(id="r1", created_at=now, updated_at=now,
                              amount=Decimal('10.50'), on=date(2024, 1, 2))
        data = record.to_dict()
        assert data["amount"] == "10.50"
        assert data["on"] == "2024-01-02"
        assert data["created_at"] == now.isoformat()
