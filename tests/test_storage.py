"""
Tests for storage backends and transaction support
"""

import pytest
from datetime import datetime, timezone

from fleet_billing.storage import (
    InMemoryStorage, SQLiteStorage, create_storage, matches_filters
)


def make_record(record_id, **fields):
    now = datetime.now(timezone.utc).isoformat()
    record = {"id": record_id, "created_at": now, "updated_at": now}
    record.update(fields)
    return record


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "ledger.db")
    yield backend
    backend.close()


class TestStorageBackends:
    """Behaviour shared by every backend"""

    def test_save_and_load(self, storage):
        record = make_record("r1", amount="100.50", status="pending")
        storage.save("records", "r1", record)
        assert storage.load("records", "r1") == record
        assert storage.load("records", "missing") is None

    def test_loaded_records_are_copies(self, storage):
        storage.save("records", "r1", make_record("r1", status="pending"))
        loaded = storage.load("records", "r1")
        loaded["status"] = "paid"
        assert storage.load("records", "r1")["status"] == "pending"

    def test_exists_and_delete(self, storage):
        storage.save("records", "r1", make_record("r1"))
        storage.save("records", "r2", make_record("r2"))
        assert storage.exists("records", "r1")
        assert not storage.exists("records", "r3")

        assert storage.delete("records", "r1")
        assert not storage.delete("records", "r1")
        assert [r["id"] for r in storage.load_all("records")] == ["r2"]

    def test_replace_keeps_insertion_order(self, storage):
        storage.save("records", "r1", make_record("r1", status="pending"))
        storage.save("records", "r2", make_record("r2", status="pending"))
        storage.save("records", "r1", make_record("r1", status="paid"))
        documents = storage.load_all("records")
        assert [r["id"] for r in documents] == ["r1", "r2"]
        assert documents[0]["status"] == "paid"

    def test_find_with_operators(self, storage):
        storage.save("quotas", "q1", make_record("q1", status="pending", due_date="2026-02-01"))
        storage.save("quotas", "q2", make_record("q2", status="overdue", due_date="2026-02-08"))
        storage.save("quotas", "q3", make_record("q3", status="paid", due_date="2026-01-25"))

        found = storage.find("quotas", {
            "status": {"$in": ["pending", "overdue"]},
            "due_date": {"$lte": "2026-02-05"},
        })
        assert [r["id"] for r in found] == ["q1"]


class TestSQLiteTransactions:
    """Test atomic blocks on the SQLite backend"""

    def test_rollback_discards_writes(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "ledger.db")
        storage.save("records", "r1", make_record("r1"))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("records", "r2", make_record("r2"))
                raise RuntimeError("abort")

        assert storage.exists("records", "r1")
        assert not storage.exists("records", "r2")
        storage.close()

    def test_commit_persists_across_connections(self, tmp_path):
        path = tmp_path / "ledger.db"
        storage = SQLiteStorage(path)
        with storage.atomic():
            storage.save("records", "r1", make_record("r1", status="paid"))
        storage.close()

        reopened = SQLiteStorage(path)
        assert reopened.load("records", "r1")["status"] == "paid"
        reopened.close()

    def test_table_created_in_rolled_back_block_is_recreated(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "ledger.db")
        storage.save("records", "r1", make_record("r1"))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("records", "r2", make_record("r2"))
                storage.save("quotas", "q1", make_record("q1"))
                raise RuntimeError("abort")

        assert storage.load("quotas", "q1") is None
        storage.save("quotas", "q1", make_record("q1"))
        assert storage.exists("quotas", "q1")
        storage.close()


class TestFilters:

    def test_plain_value_means_equality(self):
        assert matches_filters({"a": 1}, {"a": 1})
        assert not matches_filters({"a": 1}, {"a": 2})
        assert not matches_filters({}, {"a": None})

    def test_comparison_ignores_missing_values(self):
        assert not matches_filters({"due_date": None}, {"due_date": {"$lte": "2026-01-01"}})

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValueError):
            matches_filters({"a": 1}, {"a": {"$regex": "x"}})


class TestCreateStorage:

    def test_backends_by_name(self):
        assert isinstance(create_storage("memory"), InMemoryStorage)
        assert isinstance(create_storage("sqlite", ":memory:"), SQLiteStorage)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage("postgres")
