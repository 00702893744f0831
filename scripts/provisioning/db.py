"""Database helpers: connection pool, PostgreSQL record store, run tracking."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from typing import Any, Generator, Optional

import psycopg2
import psycopg2.extras
import psycopg2.pool

from scripts.provisioning.config import DatabaseConfig
from scripts.provisioning.errors import ClaimConflictError, StoreWriteError
from scripts.provisioning.models import BatchSummary, ProvisioningRecord, RecordStatus
from scripts.provisioning.store import RecordStore

logger = logging.getLogger("provisioning.db")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS provisioning_records (
    record_id            uuid PRIMARY KEY,
    subject_id           text NOT NULL UNIQUE,
    status               text NOT NULL DEFAULT 'PENDING'
                         CHECK (status IN ('PENDING', 'IN_PROGRESS', 'ACTIVE', 'FAILED')),
    external_account_id  text,
    attempts             integer NOT NULL DEFAULT 0 CHECK (attempts >= 0),
    last_error           text,
    retriable            boolean NOT NULL DEFAULT true,
    claimed_at           timestamptz,
    created_at           timestamptz NOT NULL DEFAULT NOW(),
    updated_at           timestamptz NOT NULL DEFAULT NOW(),
    CONSTRAINT provisioning_records_account_iff_active
        CHECK ((status = 'ACTIVE') = (external_account_id IS NOT NULL))
);

CREATE INDEX IF NOT EXISTS provisioning_records_eligible_idx
    ON provisioning_records (created_at, record_id)
    WHERE status IN ('PENDING', 'FAILED');

CREATE INDEX IF NOT EXISTS provisioning_records_in_progress_idx
    ON provisioning_records (claimed_at)
    WHERE status = 'IN_PROGRESS';

CREATE TABLE IF NOT EXISTS reconciliation_queue (
    record_id    uuid PRIMARY KEY REFERENCES provisioning_records (record_id),
    reason       text NOT NULL,
    status       text NOT NULL DEFAULT 'OPEN',
    queued_at    timestamptz NOT NULL DEFAULT NOW(),
    resolved_at  timestamptz
);

CREATE TABLE IF NOT EXISTS provisioning_runs (
    id             uuid PRIMARY KEY,
    trigger        text NOT NULL,
    status         text NOT NULL,
    started_at     timestamptz NOT NULL DEFAULT NOW(),
    finished_at    timestamptz,
    processed      integer NOT NULL DEFAULT 0,
    succeeded      integer NOT NULL DEFAULT 0,
    failed         integer NOT NULL DEFAULT 0,
    next_cursor    text,
    error_message  text,
    error_detail   jsonb,
    run_metadata   jsonb NOT NULL DEFAULT '{}'::jsonb
);
"""

_RECORD_COLUMNS = (
    "record_id, subject_id, status, external_account_id, attempts, "
    "last_error, retriable, claimed_at, created_at, updated_at"
)

# Connection-level failures; anything else is a bug and propagates as-is.
_UNAVAILABLE = (psycopg2.OperationalError, psycopg2.InterfaceError, psycopg2.pool.PoolError)


class Database:
    """Thin wrapper around a ThreadedConnectionPool."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=config.min_connections,
            maxconn=config.max_connections,
            dsn=config.url,
        )

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def connection(self) -> Generator:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self, dict_rows: bool = False) -> Generator:
        """Yield a cursor inside an auto-commit/rollback transaction.

        Connection failures surface as StoreWriteError.
        """
        factory = psycopg2.extras.RealDictCursor if dict_rows else None
        try:
            with self.connection() as conn:
                try:
                    with conn.cursor(cursor_factory=factory) as cur:
                        yield cur
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
        except _UNAVAILABLE as exc:
            raise StoreWriteError(f"database unavailable: {exc}") from exc

    def apply_schema(self) -> None:
        with self.transaction() as cur:
            cur.execute(SCHEMA_SQL)
        logger.info("Provisioning schema applied")

    # ------------------------------------------------------------------
    # Run tracking
    # ------------------------------------------------------------------

    def record_run_start(self, trigger: str, metadata: Optional[dict] = None) -> str:
        """Insert a provisioning_runs row with status RUNNING. Returns the run id."""
        run_id = str(uuid.uuid4())
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO provisioning_runs (id, trigger, status, run_metadata)
                   VALUES (%s, %s, 'RUNNING', %s)""",
                (run_id, trigger, psycopg2.extras.Json(metadata or {})),
            )
        return run_id

    def record_run_end(
        self,
        run_id: str,
        status: str,
        summary: Optional[BatchSummary] = None,
        error_message: Optional[str] = None,
        error_detail: Optional[dict] = None,
    ) -> None:
        """Finalise a provisioning_runs row."""
        summary = summary or BatchSummary()
        with self.transaction() as cur:
            cur.execute(
                """UPDATE provisioning_runs
                   SET status = %s,
                       finished_at = NOW(),
                       processed = %s,
                       succeeded = %s,
                       failed = %s,
                       next_cursor = %s,
                       error_message = %s,
                       error_detail = %s
                   WHERE id = %s""",
                (
                    status,
                    summary.processed,
                    summary.succeeded,
                    summary.failed,
                    summary.next_cursor,
                    error_message,
                    psycopg2.extras.Json(error_detail) if error_detail else None,
                    run_id,
                ),
            )

    def get_recent_runs(self, limit: int = 10) -> list[dict[str, Any]]:
        with self.transaction(dict_rows=True) as cur:
            cur.execute(
                """SELECT id, trigger, status, started_at, finished_at,
                          processed, succeeded, failed, error_message
                   FROM provisioning_runs
                   ORDER BY started_at DESC LIMIT %s""",
                (limit,),
            )
            return [dict(row) for row in cur.fetchall()]


def _row_to_record(row: dict[str, Any]) -> ProvisioningRecord:
    return ProvisioningRecord(
        record_id=str(row["record_id"]),
        subject_id=row["subject_id"],
        status=RecordStatus(row["status"]),
        external_account_id=row["external_account_id"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        retriable=row["retriable"],
        claimed_at=row["claimed_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresRecordStore(RecordStore):
    """RecordStore backed by provisioning_records.

    Each transition is a single conditional UPDATE ... RETURNING; an empty
    result means another worker got there first.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def _update_one(self, record_id: str, sql: str, params: dict[str, Any]) -> ProvisioningRecord:
        with self.db.transaction(dict_rows=True) as cur:
            cur.execute(sql, {"rid": record_id, **params})
            row = cur.fetchone()
        if row is None:
            raise ClaimConflictError(record_id)
        return _row_to_record(row)

    def fetch_eligible(self, limit, max_attempts, after=None):
        sql = f"""
            SELECT {_RECORD_COLUMNS}
            FROM provisioning_records
            WHERE (status = 'PENDING'
                   OR (status = 'FAILED' AND retriable AND attempts < %(max_attempts)s))
        """
        params: dict[str, Any] = {"max_attempts": max_attempts, "limit": limit}
        if after is not None:
            sql += " AND (created_at, record_id) > (%(after_ts)s, %(after_id)s::uuid)"
            params["after_ts"], params["after_id"] = after
        sql += " ORDER BY created_at, record_id LIMIT %(limit)s"
        with self.db.transaction(dict_rows=True) as cur:
            cur.execute(sql, params)
            return [_row_to_record(row) for row in cur.fetchall()]

    def claim(self, record):
        return self._update_one(
            record.record_id,
            f"""UPDATE provisioning_records
                SET status = 'IN_PROGRESS', attempts = attempts + 1,
                    claimed_at = NOW(), updated_at = NOW()
                WHERE record_id = %(rid)s
                  AND status IN ('PENDING', 'FAILED')
                  AND attempts = %(attempts)s
                RETURNING {_RECORD_COLUMNS}""",
            {"attempts": record.attempts},
        )

    def record_retry(self, record, error):
        return self._update_one(
            record.record_id,
            f"""UPDATE provisioning_records
                SET attempts = attempts + 1, last_error = %(error)s,
                    claimed_at = NOW(), updated_at = NOW()
                WHERE record_id = %(rid)s
                  AND status = 'IN_PROGRESS'
                  AND attempts = %(attempts)s
                RETURNING {_RECORD_COLUMNS}""",
            {"attempts": record.attempts, "error": error},
        )

    def mark_active(self, record, external_account_id):
        return self._update_one(
            record.record_id,
            f"""UPDATE provisioning_records
                SET status = 'ACTIVE', external_account_id = %(account)s,
                    last_error = NULL, updated_at = NOW()
                WHERE record_id = %(rid)s
                  AND status = 'IN_PROGRESS'
                  AND attempts = %(attempts)s
                RETURNING {_RECORD_COLUMNS}""",
            {"attempts": record.attempts, "account": external_account_id},
        )

    def mark_failed(self, record, error, retriable):
        return self._update_one(
            record.record_id,
            f"""UPDATE provisioning_records
                SET status = 'FAILED', last_error = %(error)s,
                    retriable = %(retriable)s, updated_at = NOW()
                WHERE record_id = %(rid)s
                  AND status = 'IN_PROGRESS'
                  AND attempts = %(attempts)s
                RETURNING {_RECORD_COLUMNS}""",
            {"attempts": record.attempts, "error": error, "retriable": retriable},
        )

    def register(self, subject_id):
        with self.db.transaction(dict_rows=True) as cur:
            cur.execute(
                f"""INSERT INTO provisioning_records (record_id, subject_id)
                    VALUES (%s, %s)
                    ON CONFLICT (subject_id) DO NOTHING
                    RETURNING {_RECORD_COLUMNS}""",
                (str(uuid.uuid4()), subject_id),
            )
            row = cur.fetchone()
            if row is not None:
                return _row_to_record(row), True
            cur.execute(
                f"SELECT {_RECORD_COLUMNS} FROM provisioning_records WHERE subject_id = %s",
                (subject_id,),
            )
            return _row_to_record(cur.fetchone()), False

    def find_orphans(self, older_than):
        with self.db.transaction(dict_rows=True) as cur:
            cur.execute(
                f"""SELECT {_RECORD_COLUMNS}
                    FROM provisioning_records
                    WHERE status = 'IN_PROGRESS' AND claimed_at < %s
                    ORDER BY created_at, record_id""",
                (older_than,),
            )
            return [_row_to_record(row) for row in cur.fetchall()]

    def queue_for_reconciliation(self, record_id, reason):
        with self.db.transaction() as cur:
            cur.execute(
                """INSERT INTO reconciliation_queue (record_id, reason)
                   VALUES (%s, %s)
                   ON CONFLICT (record_id) DO UPDATE
                   SET reason = EXCLUDED.reason, status = 'OPEN',
                       queued_at = NOW(), resolved_at = NULL
                   WHERE reconciliation_queue.status <> 'OPEN'""",
                (record_id, reason),
            )
            return cur.rowcount > 0

    def reconciliation_queue(self):
        with self.db.transaction(dict_rows=True) as cur:
            cur.execute(
                """SELECT record_id, reason, queued_at
                   FROM reconciliation_queue
                   WHERE status = 'OPEN'
                   ORDER BY queued_at"""
            )
            return [
                {**dict(row), "record_id": str(row["record_id"])}
                for row in cur.fetchall()
            ]

    def _resolve_orphan(self, record_id: str, set_clause: str, params: dict[str, Any]) -> ProvisioningRecord:
        with self.db.transaction(dict_rows=True) as cur:
            cur.execute(
                f"""UPDATE provisioning_records
                    SET {set_clause}, updated_at = NOW()
                    WHERE record_id = %(rid)s AND status = 'IN_PROGRESS'
                    RETURNING {_RECORD_COLUMNS}""",
                {"rid": record_id, **params},
            )
            row = cur.fetchone()
            if row is None:
                raise ClaimConflictError(record_id)
            cur.execute(
                """UPDATE reconciliation_queue
                   SET status = 'RESOLVED', resolved_at = NOW()
                   WHERE record_id = %s AND status = 'OPEN'""",
                (record_id,),
            )
        return _row_to_record(row)

    def release_orphan(self, record_id, error):
        return self._resolve_orphan(
            record_id,
            "status = 'FAILED', last_error = %(error)s, retriable = true",
            {"error": error},
        )

    def resolve_orphan(self, record_id, external_account_id):
        return self._resolve_orphan(
            record_id,
            "status = 'ACTIVE', external_account_id = %(account)s, last_error = NULL",
            {"account": external_account_id},
        )

    def get(self, record_id):
        with self.db.transaction(dict_rows=True) as cur:
            cur.execute(
                f"SELECT {_RECORD_COLUMNS} FROM provisioning_records WHERE record_id = %s",
                (record_id,),
            )
            row = cur.fetchone()
        return _row_to_record(row) if row else None

    def list_records(self, status=None, limit=100):
        with self.db.transaction(dict_rows=True) as cur:
            if status is not None:
                cur.execute(
                    f"""SELECT {_RECORD_COLUMNS} FROM provisioning_records
                        WHERE status = %s
                        ORDER BY created_at, record_id LIMIT %s""",
                    (status.value, limit),
                )
            else:
                cur.execute(
                    f"""SELECT {_RECORD_COLUMNS} FROM provisioning_records
                        ORDER BY created_at, record_id LIMIT %s""",
                    (limit,),
                )
            return [_row_to_record(row) for row in cur.fetchall()]

    def counts_by_status(self):
        counts = {s.value: 0 for s in RecordStatus}
        with self.db.transaction() as cur:
            cur.execute("SELECT status, COUNT(*) FROM provisioning_records GROUP BY status")
            for status, count in cur.fetchall():
                counts[status] = count
        return counts
