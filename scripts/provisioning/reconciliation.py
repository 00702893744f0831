"""Orphaned IN_PROGRESS record detection and operator reconciliation.

A record stays IN_PROGRESS if the worker died between the account service
call and the status write. The account may or may not exist, so orphans are
queued for a human instead of being retried.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, Optional

from scripts.provisioning.config import PipelineConfig
from scripts.provisioning.models import ProvisioningRecord, utcnow
from scripts.provisioning.store import RecordStore

logger = logging.getLogger("provisioning.reconciliation")


class OrphanSweeper:
    def __init__(
        self,
        store: RecordStore,
        config: PipelineConfig,
        now: Callable = utcnow,
    ) -> None:
        self.store = store
        self.claim_timeout = timedelta(milliseconds=config.claim_timeout_ms)
        self._now = now

    def sweep(self) -> dict[str, int]:
        """Queue every stale IN_PROGRESS record. Returns counts per outcome."""
        cutoff = self._now() - self.claim_timeout
        orphans = self.store.find_orphans(older_than=cutoff)
        queued = 0
        for record in orphans:
            reason = (
                f"IN_PROGRESS since {record.claimed_at.isoformat()} "
                f"(attempts={record.attempts}); external account may exist"
            )
            if self.store.queue_for_reconciliation(record.record_id, reason):
                queued += 1
                logger.warning(
                    "Orphaned record queued for reconciliation; "
                    "check the ledger for a duplicate account",
                    extra={
                        "record_id": record.record_id,
                        "subject_id": record.subject_id,
                        "attempts": record.attempts,
                    },
                )
        logger.info("Orphan sweep found %d records, queued %d new", len(orphans), queued)
        return {"orphans": len(orphans), "queued": queued}

    def resolve(
        self,
        record_id: str,
        external_account_id: Optional[str] = None,
    ) -> ProvisioningRecord:
        """Close out an orphan.

        With ``external_account_id`` (found on the ledger) the record becomes
        ACTIVE; without it the record is released as a retriable failure.
        """
        if external_account_id:
            record = self.store.resolve_orphan(record_id, external_account_id)
            logger.info(
                "Orphan resolved to existing account %s",
                external_account_id,
                extra={"record_id": record_id, "status": record.status.value},
            )
        else:
            record = self.store.release_orphan(
                record_id, "released by operator after orphan reconciliation"
            )
            logger.info(
                "Orphan released for retry",
                extra={"record_id": record_id, "status": record.status.value},
            )
        return record
