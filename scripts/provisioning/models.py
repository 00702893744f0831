"""Provisioning records, batch summaries and resume cursors."""

from __future__ import annotations

import base64
import binascii
import enum
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from scripts.provisioning.errors import InvalidCursorError


class RecordStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ProvisioningRecord:
    """One subject's pending (or resolved) external account acquisition."""

    record_id: str
    subject_id: str
    status: RecordStatus = RecordStatus.PENDING
    external_account_id: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None
    retriable: bool = True
    claimed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if (self.external_account_id is not None) != (self.status is RecordStatus.ACTIVE):
            raise ValueError(
                f"record {self.record_id}: external_account_id must be set "
                f"iff status is ACTIVE (status={self.status.value})"
            )

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.record_id)

    def is_eligible(self, max_attempts: int) -> bool:
        """True if a batch may claim this record."""
        if self.status is RecordStatus.PENDING:
            return True
        return (
            self.status is RecordStatus.FAILED
            and self.retriable
            and self.attempts < max_attempts
        )

    def evolve(self, **changes: Any) -> "ProvisioningRecord":
        changes.setdefault("updated_at", utcnow())
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recordId": self.record_id,
            "subjectId": self.subject_id,
            "status": self.status.value,
            "externalAccountId": self.external_account_id,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "retriable": self.retriable,
            "claimedAt": self.claimed_at.isoformat() if self.claimed_at else None,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class BatchSummary:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    next_cursor: Optional[str] = None
    has_more: bool = False
    aborted: bool = False
    deadline_reached: bool = False
    errors: list[dict[str, str]] = field(default_factory=list)

    def merge(self, other: "BatchSummary") -> None:
        """Fold a later batch into this running total."""
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)
        if other.next_cursor is not None:
            self.next_cursor = other.next_cursor
        self.has_more = other.has_more
        self.aborted = self.aborted or other.aborted
        self.deadline_reached = self.deadline_reached or other.deadline_reached

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "nextCursor": self.next_cursor,
            "hasMore": self.has_more,
            "aborted": self.aborted,
            "deadlineReached": self.deadline_reached,
            "errors": list(self.errors),
        }


# ------------------------------------------------------------------
# Cursor codec
# ------------------------------------------------------------------

def encode_cursor(created_at: datetime, record_id: str) -> str:
    """Encode a (created_at, record_id) resume position as an opaque token."""
    payload = json.dumps([created_at.isoformat(), record_id], separators=(",", ":"))
    return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii"))
        created_raw, record_id = json.loads(raw)
        created_at = datetime.fromisoformat(created_raw)
    except (binascii.Error, UnicodeError, ValueError, TypeError) as exc:
        raise InvalidCursorError(f"malformed cursor: {cursor!r}") from exc
    if not isinstance(record_id, str):
        raise InvalidCursorError(f"malformed cursor: {cursor!r}")
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return created_at, record_id
