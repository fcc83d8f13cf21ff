"""
Billing Repository Module

The persistence contract the billing orchestrator works against, and its
implementation over the table storage backends. Financing writes are
conditional on the record's ``version`` so a stale read never overwrites a
concurrent update.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, date, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional
from enum import Enum
from decimal import Decimal
import threading
import weakref

from .exceptions import (
    ConcurrencyConflictError, FinancingNotFoundError, QuotaNotFoundError
)
from .financing import Financing, FinancingStatus
from .quotas import QuotaRecord, QuotaStatus
from .storage import StorageInterface


def _to_storage_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.code if hasattr(value, 'code') else value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class BillingRepository(ABC):
    """Abstract persistence contract for financings and their quota ledger"""

    def __init__(self):
        # Entries vanish once no caller holds or waits on the lock
        self._locks = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @contextmanager
    def financing_lock(self, financing_id: str) -> Iterator[None]:
        """Re-entrant lock serializing read-compute-write cycles on one financing"""
        with self._locks_guard:
            lock = self._locks.get(financing_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[financing_id] = lock
        with lock:
            yield

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Group writes; backends without transactions just run the block"""
        yield

    # Financings

    @abstractmethod
    def get_financing(self, financing_id: str) -> Optional[Financing]:
        pass

    @abstractmethod
    def list_financings(self, status: Optional[FinancingStatus] = None) -> List[Financing]:
        pass

    def list_active_financings(self) -> List[Financing]:
        return self.list_financings(FinancingStatus.ACTIVE)

    @abstractmethod
    def create_financing(self, financing: Financing) -> Financing:
        pass

    @abstractmethod
    def update_financing(self, financing_id: str, fields: Dict[str, Any],
                         expected_version: Optional[int] = None) -> Financing:
        """
        Apply ``fields`` and bump the version.

        Raises:
            FinancingNotFoundError: If the financing does not exist
            ConcurrencyConflictError: If expected_version is given and stale
        """
        pass

    # Quotas

    @abstractmethod
    def get_quota(self, quota_id: str) -> Optional[QuotaRecord]:
        pass

    @abstractmethod
    def find_quota(self, financing_id: str, quota_number: int) -> Optional[QuotaRecord]:
        pass

    @abstractmethod
    def list_quotas(self, financing_id: str,
                    statuses: Optional[Iterable[QuotaStatus]] = None) -> List[QuotaRecord]:
        """Quotas of a financing ordered by quota number"""
        pass

    @abstractmethod
    def list_quotas_due(self, statuses: Iterable[QuotaStatus],
                        on_or_before: date) -> List[QuotaRecord]:
        """Quotas in ``statuses`` with a due date on or before the given date"""
        pass

    @abstractmethod
    def create_quota(self, record: QuotaRecord) -> QuotaRecord:
        pass

    @abstractmethod
    def update_quota(self, quota_id: str, fields: Dict[str, Any]) -> QuotaRecord:
        pass

    @abstractmethod
    def delete_quota(self, quota_id: str) -> bool:
        pass

    @abstractmethod
    def next_receipt_sequence(self, prefix: str) -> int:
        """Monotonic counter per receipt prefix, starting at 1"""
        pass


class StorageBillingRepository(BillingRepository):
    """BillingRepository over a StorageInterface backend"""

    def __init__(self, storage: StorageInterface):
        super().__init__()
        self.storage = storage
        self.financings_table = "financings"
        self.quotas_table = "billing_records"
        self.sequences_table = "receipt_sequences"
        self._write_lock = threading.RLock()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._write_lock, self.storage.atomic():
            yield

    def get_financing(self, financing_id: str) -> Optional[Financing]:
        data = self.storage.load(self.financings_table, financing_id)
        return Financing.from_dict(data) if data else None

    def _require_financing(self, financing_id: str) -> Dict[str, Any]:
        data = self.storage.load(self.financings_table, financing_id)
        if data is None:
            raise FinancingNotFoundError(f"Financing {financing_id} not found")
        return data

    def list_financings(self, status: Optional[FinancingStatus] = None) -> List[Financing]:
        filters = {"status": status.value} if status else {}
        financings = [Financing.from_dict(d) for d in self.storage.find(self.financings_table, filters)]
        financings.sort(key=lambda f: (f.created_at, f.financing_number))
        return financings

    def create_financing(self, financing: Financing) -> Financing:
        with self._write_lock:
            if self.storage.exists(self.financings_table, financing.id):
                raise ValueError(f"Financing {financing.id} already exists")
            self.storage.save(self.financings_table, financing.id, financing.to_dict())
        return financing

    def update_financing(self, financing_id: str, fields: Dict[str, Any],
                         expected_version: Optional[int] = None) -> Financing:
        with self._write_lock:
            data = self._require_financing(financing_id)
            current_version = data.get('version', 0)
            if expected_version is not None and expected_version != current_version:
                raise ConcurrencyConflictError(financing_id, expected_version, current_version)

            data.update({key: _to_storage_value(value) for key, value in fields.items()})
            data['version'] = current_version + 1
            data['updated_at'] = datetime.now(timezone.utc).isoformat()
            self.storage.save(self.financings_table, financing_id, data)
            return Financing.from_dict(data)

    def get_quota(self, quota_id: str) -> Optional[QuotaRecord]:
        data = self.storage.load(self.quotas_table, quota_id)
        return QuotaRecord.from_dict(data) if data else None

    def find_quota(self, financing_id: str, quota_number: int) -> Optional[QuotaRecord]:
        matches = self.storage.find(
            self.quotas_table, {"financing_id": financing_id, "quota_number": quota_number}
        )
        return QuotaRecord.from_dict(matches[0]) if matches else None

    def list_quotas(self, financing_id: str,
                    statuses: Optional[Iterable[QuotaStatus]] = None) -> List[QuotaRecord]:
        filters: Dict[str, Any] = {"financing_id": financing_id}
        if statuses is not None:
            filters["status"] = {"$in": [s.value for s in statuses]}
        records = [QuotaRecord.from_dict(d) for d in self.storage.find(self.quotas_table, filters)]
        records.sort(key=lambda r: r.quota_number)
        return records

    def list_quotas_due(self, statuses: Iterable[QuotaStatus],
                        on_or_before: date) -> List[QuotaRecord]:
        filters = {
            "status": {"$in": [s.value for s in statuses]},
            "due_date": {"$lte": on_or_before.isoformat()},
        }
        records = [QuotaRecord.from_dict(d) for d in self.storage.find(self.quotas_table, filters)]
        records.sort(key=lambda r: (r.financing_id, r.quota_number))
        return records

    def create_quota(self, record: QuotaRecord) -> QuotaRecord:
        with self._write_lock:
            if self.find_quota(record.financing_id, record.quota_number) is not None:
                raise ValueError(
                    f"Quota {record.quota_number} already exists for financing {record.financing_id}"
                )
            self.storage.save(self.quotas_table, record.id, record.to_dict())
        return record

    def update_quota(self, quota_id: str, fields: Dict[str, Any]) -> QuotaRecord:
        with self._write_lock:
            data = self.storage.load(self.quotas_table, quota_id)
            if data is None:
                raise QuotaNotFoundError(f"Quota record {quota_id} not found")
            data.update({key: _to_storage_value(value) for key, value in fields.items()})
            data['updated_at'] = datetime.now(timezone.utc).isoformat()
            self.storage.save(self.quotas_table, quota_id, data)
            return QuotaRecord.from_dict(data)

    def delete_quota(self, quota_id: str) -> bool:
        with self._write_lock:
            return self.storage.delete(self.quotas_table, quota_id)

    def next_receipt_sequence(self, prefix: str) -> int:
        with self._write_lock:
            data = self.storage.load(self.sequences_table, prefix) or {"value": 0}
            value = data["value"] + 1
            self.storage.save(self.sequences_table, prefix, {"id": prefix, "value": value})
            return value
