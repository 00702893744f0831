"""Batched ledger account provisioning.

One ``run_batch`` call drains up to ``batch_size`` eligible records in
(created_at, record_id) order. Each record is claimed with a conditional
write, handed to the account service and resolved to ACTIVE or FAILED
before the next one is touched, so a crash mid-batch never loses finished
work and the next call simply continues.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from scripts.provisioning.acquirer import AccountAcquirer
from scripts.provisioning.config import MAX_BATCH_SIZE, PipelineConfig
from scripts.provisioning.errors import (
    ClaimConflictError,
    StoreWriteError,
    StructuralError,
    TransientExternalError,
)
from scripts.provisioning.models import (
    BatchSummary,
    ProvisioningRecord,
    decode_cursor,
    encode_cursor,
)
from scripts.provisioning.rate_limiter import RateLimiter
from scripts.provisioning.store import RecordStore

logger = logging.getLogger("provisioning.pipeline")

_ERROR_MAX_LEN = 1000


class _DeadlineReached(Exception):
    pass


class ProvisioningPipeline:
    """Drains pending records into external ledger accounts."""

    def __init__(
        self,
        store: RecordStore,
        acquirer: AccountAcquirer,
        config: PipelineConfig,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.acquirer = acquirer
        self.config = config
        self.rate_limiter = rate_limiter or RateLimiter.from_millis(config.inter_call_delay_ms)
        self._clock = clock

    def deadline_from_now(self, seconds: Optional[float] = None) -> Optional[float]:
        """Absolute monotonic deadline, defaulting to the configured budget."""
        budget = seconds if seconds is not None else self.config.deadline_s
        return None if budget is None else self._clock() + budget

    def _deadline_passed(self, deadline: Optional[float], after: float = 0.0) -> bool:
        return deadline is not None and self._clock() + after >= deadline

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    def run_batch(
        self,
        batch_size: Optional[int] = None,
        cursor: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> BatchSummary:
        """Process one bounded batch. Never raises for per-record failures.

        ``deadline`` is an absolute value of the pipeline clock; when it is
        passed between records the batch stops and the summary cursor points
        just after the last resolved record.
        """
        if batch_size is None:
            batch_size = self.config.batch_size
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        after = decode_cursor(cursor) if cursor else None

        summary = BatchSummary(next_cursor=cursor)
        started = time.monotonic()

        try:
            records = self.store.fetch_eligible(
                limit=batch_size,
                max_attempts=self.config.max_attempts,
                after=after,
            )
        except StoreWriteError as exc:
            logger.error("Record store unavailable, batch aborted: %s", exc)
            summary.aborted = True
            summary.has_more = True
            return summary

        for index, record in enumerate(records):
            if self._deadline_passed(deadline):
                logger.warning(
                    "Deadline reached after %d of %d records", index, len(records)
                )
                summary.deadline_reached = True
                summary.has_more = True
                break
            try:
                self._process_record(record, summary, deadline)
            except StoreWriteError as exc:
                logger.error(
                    "Record store unavailable, batch aborted: %s",
                    exc,
                    extra={"record_id": record.record_id},
                )
                summary.aborted = True
                summary.has_more = True
                break
            except _DeadlineReached:
                summary.deadline_reached = True
                summary.has_more = True
                summary.next_cursor = encode_cursor(*record.sort_key)
                break
            summary.next_cursor = encode_cursor(*record.sort_key)
        else:
            summary.has_more = len(records) == batch_size

        logger.info(
            "Batch complete: %d processed, %d succeeded, %d failed, %d skipped",
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.skipped,
            extra={
                "processed": summary.processed,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "duration_s": round(time.monotonic() - started, 3),
            },
        )
        return summary

    def drain(
        self,
        batch_size: Optional[int] = None,
        max_batches: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> BatchSummary:
        """Run batches, following cursors, until no eligible records remain."""
        total = BatchSummary()
        cursor: Optional[str] = None
        batches = 0
        while max_batches is None or batches < max_batches:
            summary = self.run_batch(batch_size=batch_size, cursor=cursor, deadline=deadline)
            batches += 1
            total.merge(summary)
            if not summary.has_more or summary.aborted or summary.deadline_reached:
                break
            cursor = summary.next_cursor
        return total

    # ------------------------------------------------------------------
    # Per-record state machine
    # ------------------------------------------------------------------

    def _process_record(
        self,
        record: ProvisioningRecord,
        summary: BatchSummary,
        deadline: Optional[float],
    ) -> None:
        log_extra = {"record_id": record.record_id, "subject_id": record.subject_id}
        try:
            held = self.store.claim(record)
        except ClaimConflictError:
            logger.info("Record already claimed elsewhere, skipping", extra=log_extra)
            summary.skipped += 1
            return

        summary.processed += 1
        max_attempts = self.config.max_attempts

        while True:
            self.rate_limiter.wait()
            try:
                account = self.acquirer.acquire(held.subject_id)
            except StructuralError as exc:
                self._fail(held, exc, retriable=False, summary=summary)
                return
            except Exception as exc:
                # Anything that is not structural counts as transient.
                if not isinstance(exc, TransientExternalError):
                    logger.exception("Unexpected acquisition error", extra=log_extra)
                if held.attempts >= max_attempts:
                    self._fail(held, exc, retriable=False, summary=summary)
                    return
                retry_after = getattr(exc, "retry_after", None) or 0.0
                if self._deadline_passed(deadline, after=retry_after):
                    self._fail(held, exc, retriable=True, summary=summary)
                    raise _DeadlineReached() from exc
                self.rate_limiter.defer(retry_after)
                error = _describe(exc)
                logger.warning(
                    "Transient failure (attempt %d/%d): %s",
                    held.attempts,
                    max_attempts,
                    error,
                    extra={
                        **log_extra,
                        "attempts": held.attempts,
                        "retry_after_s": retry_after or None,
                    },
                )
                held = self._record_retry(held, error, summary)
                if held is None:
                    return
                continue

            try:
                self.store.mark_active(held, account.account_id)
            except ClaimConflictError:
                # Released by an operator while the call was in flight.
                logger.error(
                    "Account %s created but record no longer held; "
                    "reconcile for a possible duplicate",
                    account.account_id,
                    extra={**log_extra, "account_id": account.account_id},
                )
                summary.failed += 1
                summary.errors.append({
                    "record_id": held.record_id,
                    "error": f"orphaned external account {account.account_id}",
                })
                return
            summary.succeeded += 1
            logger.info(
                "Provisioned account %s",
                account.account_id,
                extra={
                    **log_extra,
                    "status": "ACTIVE",
                    "attempts": held.attempts,
                    "account_id": account.account_id,
                },
            )
            return

    def _record_retry(
        self,
        held: ProvisioningRecord,
        error: str,
        summary: BatchSummary,
    ) -> Optional[ProvisioningRecord]:
        try:
            return self.store.record_retry(held, error)
        except ClaimConflictError:
            logger.warning(
                "Record released while retrying, giving up",
                extra={"record_id": held.record_id},
            )
            summary.failed += 1
            summary.errors.append({"record_id": held.record_id, "error": error})
            return None

    def _fail(
        self,
        held: ProvisioningRecord,
        exc: BaseException,
        retriable: bool,
        summary: BatchSummary,
    ) -> None:
        error = _describe(exc)
        try:
            self.store.mark_failed(held, error, retriable=retriable)
        except ClaimConflictError:
            logger.warning(
                "Record released before failure could be recorded",
                extra={"record_id": held.record_id},
            )
        summary.failed += 1
        summary.errors.append({"record_id": held.record_id, "error": error})
        logger.error(
            "Provisioning failed%s: %s",
            "" if retriable else " permanently",
            error,
            extra={
                "record_id": held.record_id,
                "subject_id": held.subject_id,
                "status": "FAILED",
                "attempts": held.attempts,
            },
        )


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"[:_ERROR_MAX_LEN]
