#!/usr/bin/env python3
"""
Repeatable seed script for demo provisioning records.

Populates:
  - provisioning_records (N PENDING records for generated demo subjects)

Subject ids are deterministic, so re-running with the same --count and
--prefix inserts nothing new (ON CONFLICT DO NOTHING).

Usage:
  python -m scripts.seed_pending_records                          # uses DATABASE_URL env var
  python -m scripts.seed_pending_records --count 200              # more subjects
  python -m scripts.seed_pending_records --dsn "postgresql://..." # explicit DSN
  python -m scripts.seed_pending_records --dry-run                # print SQL, don't execute
"""

import argparse
import hashlib
import os
import sys
import uuid

from scripts.provisioning.db import SCHEMA_SQL

DEFAULT_PREFIX = "demo-user"


# Deterministic UUID from a seed string
def duuid(seed: str) -> str:
    return str(uuid.UUID(hashlib.md5(seed.encode()).hexdigest()))


def demo_subjects(count: int, prefix: str = DEFAULT_PREFIX) -> list[str]:
    return [f"{prefix}-{i:05d}" for i in range(1, count + 1)]


# ---------------------------------------------------------------------------
# SQL generation helpers
# ---------------------------------------------------------------------------

def sql_records(subjects: list[str]) -> str:
    if not subjects:
        return "-- no subjects\n"
    # Spread created_at one second apart so ordering is stable and readable.
    rows = [
        "  ('%s', '%s', NOW() - INTERVAL '%d seconds')"
        % (duuid(s), s.replace("'", "''"), len(subjects) - i)
        for i, s in enumerate(subjects)
    ]
    return (
        "INSERT INTO provisioning_records (record_id, subject_id, created_at) VALUES\n"
        + ",\n".join(rows)
        + "\nON CONFLICT (subject_id) DO NOTHING;\n"
    )


def generate_full_sql(count: int, prefix: str = DEFAULT_PREFIX) -> str:
    parts = [
        "-- Auto-generated by scripts/seed_pending_records.py",
        "-- Repeatable: safe to run multiple times (uses ON CONFLICT DO NOTHING)",
        "",
        "BEGIN;",
        SCHEMA_SQL,
        "-- Pending records",
        sql_records(demo_subjects(count, prefix)),
        "COMMIT;",
    ]
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Seed pending provisioning records into PostgreSQL")
    parser.add_argument("--dsn", default=os.environ.get("DATABASE_URL", ""),
                        help="PostgreSQL DSN (default: $DATABASE_URL)")
    parser.add_argument("--count", "-n", type=int, default=50,
                        help="Number of demo subjects (default: 50)")
    parser.add_argument("--prefix", default=DEFAULT_PREFIX,
                        help="Subject id prefix (default: %(default)s)")
    parser.add_argument("--dry-run", action="store_true",
                        help="Print generated SQL instead of executing")
    parser.add_argument("--output", "-o", default=None,
                        help="Write SQL to file instead of executing")
    args = parser.parse_args()

    if args.count < 0:
        parser.error("--count must not be negative")

    sql = generate_full_sql(args.count, args.prefix)

    if args.dry_run or args.output:
        if args.output:
            with open(args.output, "w") as f:
                f.write(sql)
            print(f"SQL written to {args.output}")
        else:
            print(sql)
        return

    if not args.dsn:
        print("ERROR: No database connection. Set DATABASE_URL or use --dsn.", file=sys.stderr)
        print("       Use --dry-run to print SQL without executing.", file=sys.stderr)
        sys.exit(1)

    import psycopg2

    conn = psycopg2.connect(args.dsn)
    try:
        with conn.cursor() as cur:
            cur.execute(sql)
            cur.execute(
                "SELECT status, COUNT(*) FROM provisioning_records GROUP BY status ORDER BY 1"
            )
            print("Seed complete. Records by status:")
            for status, count in cur.fetchall():
                print(f"  {status:20s} {count:>6}")
        conn.commit()
    except Exception as e:
        conn.rollback()
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
