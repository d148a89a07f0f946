"""
Tests for storage backends, transactions and sequences
"""

import threading
import pytest
import tempfile
from decimal import Decimal
from datetime import datetime, timezone, date
from pathlib import Path
from dataclasses import dataclass

from lendbook.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage, to_storage_value
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each backend in turn"""
    if request.param == "memory":
        backend = InMemoryStorage()
        yield backend
        backend.close()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            backend = SQLiteStorage(Path(temp_dir) / "test.db")
            yield backend
            backend.close()


class TestStorageInterface:
    """Test basic storage operations on both backends"""

    def test_basic_operations(self, storage):
        """Test basic CRUD operations"""
        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data

        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")

        storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
        assert len(storage.load_all("test_table")) == 2

        results = storage.find("test_table", {"id": "test_001"})
        assert len(results) == 1
        assert results[0]["id"] == "test_001"

        assert storage.count("test_table") == 2

        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.count("test_table") == 1

        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

    def test_load_missing(self, storage):
        assert storage.load("empty_table", "nope") is None
        assert storage.load_all("empty_table") == []

    def test_loaded_records_are_copies(self, storage):
        storage.save("test_table", "r", {"id": "r", "items": [1, 2]})
        loaded = storage.load("test_table", "r")
        loaded["items"].append(3)
        assert storage.load("test_table", "r")["items"] == [1, 2]

    def test_find_between(self, storage):
        for day in (1, 10, 20):
            storage.save("payments", f"p{day}", {"id": f"p{day}", "loan_id": "L1", "payment_date": f"2025-03-{day:02d}"})
        storage.save("payments", "other", {"id": "other", "loan_id": "L2", "payment_date": "2025-03-10"})

        found = storage.find_between("payments", "payment_date", "2025-03-05", "2025-03-20", {"loan_id": "L1"})
        assert sorted(r["id"] for r in found) == ["p10", "p20"]

        open_ended = storage.find_between("payments", "payment_date", start="2025-03-10")
        assert len(open_ended) == 3


class TestTransactionSupport:
    """Test atomic blocks"""

    def test_atomic_commit(self, storage):
        with storage.atomic():
            storage.save("accounts", "a1", {"id": "a1", "balance": "10"})
            storage.save("accounts", "a2", {"id": "a2", "balance": "20"})
        assert storage.count("accounts") == 2

    def test_atomic_rollback(self, storage):
        storage.save("accounts", "a1", {"id": "a1", "balance": "10"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("accounts", "a1", {"id": "a1", "balance": "99"})
                storage.save("accounts", "a2", {"id": "a2", "balance": "20"})
                storage.next_sequence("receipt:RCPT:2025")
                raise RuntimeError("boom")

        assert storage.load("accounts", "a1")["balance"] == "10"
        assert not storage.exists("accounts", "a2")
        assert storage.next_sequence("receipt:RCPT:2025") == 1

    def test_nested_atomic(self, storage):
        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("t", "outer", {"id": "outer"})
                with storage.atomic():
                    storage.save("t", "inner", {"id": "inner"})
                raise ValueError("outer fails")

        assert storage.count("t") == 0


class TestSequences:
    """Test atomic counters"""

    def test_sequences_increment_independently(self, storage):
        assert storage.next_sequence("loan:LN:2025") == 1
        assert storage.next_sequence("loan:LN:2025") == 2
        assert storage.next_sequence("invoice:INV:2025") == 1

    def test_concurrent_allocation_is_unique(self, storage):
        values = []
        lock = threading.Lock()

        def allocate():
            for _ in range(25):
                value = storage.next_sequence("receipt:RCPT:2025")
                with lock:
                    values.append(value)

        threads = [threading.Thread(target=allocate) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(values) == list(range(1, 201))

    def test_sqlite_sequences_persist(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "seq.db"
            first = SQLiteStorage(db_path)
            first.next_sequence("loan:LN:2025")
            first.close()

            second = SQLiteStorage(db_path)
            assert second.next_sequence("loan:LN:2025") == 2
            second.close()


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    due: date


class TestStorageRecord:
    """Test record serialization"""

    def test_storage_record_serialization(self):
        now = datetime.now(timezone.utc)
        record = SampleRecord(id="s1", created_at=now, updated_at=now, amount=Decimal('12.50'), due=date(2025, 1, 1))
        data = record.to_dict()

        assert data["amount"] == "12.50"
        assert data["due"] == "2025-01-01"
        assert data["created_at"] == now.isoformat()

    def test_to_storage_value_nested(self):
        value = to_storage_value({"a": [Decimal('1.00'), date(2025, 5, 1)], "b": None})
        assert value == {"a": ["1.00", "2025-05-01"], "b": None}


class TestStorageFactory:
    """Test backend selection"""

    def test_memory_backend(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)

    def test_sqlite_backend(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            backend = create_storage("sqlite", str(Path(temp_dir) / "x.db"))
            assert isinstance(backend, SQLiteStorage)
            backend.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage("postgres")
