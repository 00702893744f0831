"""Process-level wiring, built once by each entry point."""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass
from typing import Optional

from scripts.provisioning.acquirer import AccountAcquirer, HttpAccountAcquirer
from scripts.provisioning.config import ProvisioningConfig
from scripts.provisioning.db import Database, PostgresRecordStore
from scripts.provisioning.errors import StoreWriteError
from scripts.provisioning.models import BatchSummary
from scripts.provisioning.pipeline import ProvisioningPipeline
from scripts.provisioning.reconciliation import OrphanSweeper
from scripts.provisioning.store import RecordStore

logger = logging.getLogger("provisioning.runtime")


@dataclass
class Runtime:
    config: ProvisioningConfig
    store: RecordStore
    acquirer: AccountAcquirer
    pipeline: ProvisioningPipeline
    sweeper: OrphanSweeper
    db: Optional[Database] = None

    def run_tracked(
        self,
        trigger: str,
        batch_size: Optional[int] = None,
        cursor: Optional[str] = None,
        drain: bool = False,
        deadline_s: Optional[float] = None,
    ) -> BatchSummary:
        """Run the pipeline and record the run in provisioning_runs."""
        run_id = None
        if self.db is not None:
            try:
                run_id = self.db.record_run_start(
                    trigger,
                    metadata={"batch_size": batch_size, "cursor": cursor, "drain": drain},
                )
            except StoreWriteError as exc:
                logger.error("Could not record run start, running untracked: %s", exc)
        deadline = self.pipeline.deadline_from_now(deadline_s)
        try:
            if drain:
                summary = self.pipeline.drain(batch_size=batch_size, deadline=deadline)
            else:
                summary = self.pipeline.run_batch(
                    batch_size=batch_size, cursor=cursor, deadline=deadline
                )
        except Exception as exc:
            if run_id is not None:
                self.db.record_run_end(
                    run_id,
                    "FAILED",
                    error_message=str(exc)[:1000],
                    error_detail={"traceback": traceback.format_exc()},
                )
            logger.error("Provisioning run failed: %s", exc, extra={"run_id": run_id})
            raise

        status = "ABORTED" if summary.aborted else "SUCCESS"
        if run_id is not None:
            try:
                self.db.record_run_end(run_id, status, summary=summary)
            except StoreWriteError as exc:
                logger.error(
                    "Could not record run end: %s", exc, extra={"run_id": run_id}
                )
        logger.info(
            "Provisioning run finished with status %s",
            status,
            extra={
                "run_id": run_id,
                "trigger": trigger,
                "processed": summary.processed,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
            },
        )
        return summary

    def close(self) -> None:
        self.acquirer.close()
        if self.db is not None:
            self.db.close()


def build_runtime(
    config: ProvisioningConfig,
    store: Optional[RecordStore] = None,
    acquirer: Optional[AccountAcquirer] = None,
) -> Runtime:
    """Create every long-lived component. Call once at process start.

    Passing ``store`` skips the PostgreSQL pool entirely.
    """
    db = None
    if store is None:
        db = Database(config.database)
        store = PostgresRecordStore(db)
    acquirer = acquirer or HttpAccountAcquirer(config.account_service)
    pipeline = ProvisioningPipeline(store, acquirer, config.pipeline)
    sweeper = OrphanSweeper(store, config.pipeline)
    return Runtime(
        config=config,
        store=store,
        acquirer=acquirer,
        pipeline=pipeline,
        sweeper=sweeper,
        db=db,
    )
