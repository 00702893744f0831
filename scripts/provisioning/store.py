"""Record store contract and the in-memory implementation.

Every mutation is a compare-and-swap on the record's (status, attempts) pair,
so two workers can never both hold the same record IN_PROGRESS.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from scripts.provisioning.errors import ClaimConflictError, StoreWriteError
from scripts.provisioning.models import ProvisioningRecord, RecordStatus, utcnow

logger = logging.getLogger("provisioning.store")

CursorKey = tuple[datetime, str]


class RecordStore(ABC):
    """Persistence for provisioning records."""

    @abstractmethod
    def fetch_eligible(
        self,
        limit: int,
        max_attempts: int,
        after: Optional[CursorKey] = None,
    ) -> list[ProvisioningRecord]:
        """Return up to ``limit`` claimable records ordered by (created_at, record_id)."""

    @abstractmethod
    def claim(self, record: ProvisioningRecord) -> ProvisioningRecord:
        """PENDING/FAILED -> IN_PROGRESS, counting one attempt.

        Raises ClaimConflictError if the stored row no longer matches ``record``.
        """

    @abstractmethod
    def record_retry(self, record: ProvisioningRecord, error: str) -> ProvisioningRecord:
        """Count another attempt on a record this worker holds IN_PROGRESS."""

    @abstractmethod
    def mark_active(self, record: ProvisioningRecord, external_account_id: str) -> ProvisioningRecord:
        """IN_PROGRESS -> ACTIVE."""

    @abstractmethod
    def mark_failed(self, record: ProvisioningRecord, error: str, retriable: bool) -> ProvisioningRecord:
        """IN_PROGRESS -> FAILED."""

    @abstractmethod
    def register(self, subject_id: str) -> tuple[ProvisioningRecord, bool]:
        """Create a PENDING record for a subject. Returns (record, created)."""

    @abstractmethod
    def find_orphans(self, older_than: datetime) -> list[ProvisioningRecord]:
        """IN_PROGRESS records claimed before ``older_than``."""

    @abstractmethod
    def queue_for_reconciliation(self, record_id: str, reason: str) -> bool:
        """Add an orphan to the reconciliation queue. False if already queued."""

    @abstractmethod
    def reconciliation_queue(self) -> list[dict]:
        """Open reconciliation entries, oldest first."""

    @abstractmethod
    def release_orphan(self, record_id: str, error: str) -> ProvisioningRecord:
        """Operator action: IN_PROGRESS -> FAILED (retriable)."""

    @abstractmethod
    def resolve_orphan(self, record_id: str, external_account_id: str) -> ProvisioningRecord:
        """Operator action: IN_PROGRESS -> ACTIVE with a known account."""

    @abstractmethod
    def get(self, record_id: str) -> Optional[ProvisioningRecord]:
        ...

    @abstractmethod
    def list_records(
        self,
        status: Optional[RecordStatus] = None,
        limit: int = 100,
    ) -> list[ProvisioningRecord]:
        ...

    @abstractmethod
    def counts_by_status(self) -> dict[str, int]:
        ...


class InMemoryRecordStore(RecordStore):
    """Thread-safe store for tests and dry runs.

    ``fail_writes`` simulates an unreachable backend.
    """

    def __init__(self, records: Optional[list[ProvisioningRecord]] = None) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ProvisioningRecord] = {}
        self._reconciliation: dict[str, dict] = {}
        self.fail_writes = False
        for rec in records or []:
            self._records[rec.record_id] = rec

    def _check_available(self) -> None:
        if self.fail_writes:
            raise StoreWriteError("in-memory store marked unavailable")

    def _compare_and_set(
        self,
        record_id: str,
        expected_status: tuple[RecordStatus, ...],
        expected_attempts: Optional[int],
        **changes,
    ) -> ProvisioningRecord:
        with self._lock:
            self._check_available()
            current = self._records.get(record_id)
            if (
                current is None
                or current.status not in expected_status
                or (expected_attempts is not None and current.attempts != expected_attempts)
            ):
                raise ClaimConflictError(record_id)
            updated = current.evolve(**changes)
            self._records[record_id] = updated
            return updated

    def fetch_eligible(self, limit, max_attempts, after=None):
        with self._lock:
            self._check_available()
            eligible = [
                r for r in self._records.values()
                if r.is_eligible(max_attempts) and (after is None or r.sort_key > after)
            ]
        eligible.sort(key=lambda r: r.sort_key)
        return eligible[:limit]

    def claim(self, record):
        return self._compare_and_set(
            record.record_id,
            (RecordStatus.PENDING, RecordStatus.FAILED),
            record.attempts,
            status=RecordStatus.IN_PROGRESS,
            attempts=record.attempts + 1,
            claimed_at=utcnow(),
        )

    def record_retry(self, record, error):
        return self._compare_and_set(
            record.record_id,
            (RecordStatus.IN_PROGRESS,),
            record.attempts,
            attempts=record.attempts + 1,
            last_error=error,
            claimed_at=utcnow(),
        )

    def mark_active(self, record, external_account_id):
        return self._compare_and_set(
            record.record_id,
            (RecordStatus.IN_PROGRESS,),
            record.attempts,
            status=RecordStatus.ACTIVE,
            external_account_id=external_account_id,
            last_error=None,
        )

    def mark_failed(self, record, error, retriable):
        return self._compare_and_set(
            record.record_id,
            (RecordStatus.IN_PROGRESS,),
            record.attempts,
            status=RecordStatus.FAILED,
            last_error=error,
            retriable=retriable,
        )

    def register(self, subject_id):
        with self._lock:
            self._check_available()
            for rec in self._records.values():
                if rec.subject_id == subject_id:
                    return rec, False
            rec = ProvisioningRecord(record_id=str(uuid.uuid4()), subject_id=subject_id)
            self._records[rec.record_id] = rec
            return rec, True

    def find_orphans(self, older_than):
        with self._lock:
            self._check_available()
            orphans = [
                r for r in self._records.values()
                if r.status is RecordStatus.IN_PROGRESS
                and r.claimed_at is not None
                and r.claimed_at < older_than
            ]
        return sorted(orphans, key=lambda r: r.sort_key)

    def queue_for_reconciliation(self, record_id, reason):
        with self._lock:
            self._check_available()
            if record_id in self._reconciliation:
                return False
            self._reconciliation[record_id] = {
                "record_id": record_id,
                "reason": reason,
                "queued_at": utcnow(),
            }
            return True

    def reconciliation_queue(self):
        with self._lock:
            self._check_available()
            return sorted(self._reconciliation.values(), key=lambda e: e["queued_at"])

    def _close_reconciliation(self, record_id: str) -> None:
        with self._lock:
            self._reconciliation.pop(record_id, None)

    def release_orphan(self, record_id, error):
        updated = self._compare_and_set(
            record_id,
            (RecordStatus.IN_PROGRESS,),
            None,
            status=RecordStatus.FAILED,
            last_error=error,
            retriable=True,
        )
        self._close_reconciliation(record_id)
        return updated

    def resolve_orphan(self, record_id, external_account_id):
        updated = self._compare_and_set(
            record_id,
            (RecordStatus.IN_PROGRESS,),
            None,
            status=RecordStatus.ACTIVE,
            external_account_id=external_account_id,
            last_error=None,
        )
        self._close_reconciliation(record_id)
        return updated

    def get(self, record_id):
        with self._lock:
            self._check_available()
            return self._records.get(record_id)

    def list_records(self, status=None, limit=100):
        with self._lock:
            self._check_available()
            rows = [r for r in self._records.values() if status is None or r.status is status]
        return sorted(rows, key=lambda r: r.sort_key)[:limit]

    def counts_by_status(self):
        counts = {s.value: 0 for s in RecordStatus}
        with self._lock:
            self._check_available()
            for rec in self._records.values():
                counts[rec.status.value] += 1
        return counts
