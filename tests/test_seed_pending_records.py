"""Tests for the demo seed SQL generator."""

from scripts.seed_pending_records import demo_subjects, duuid, generate_full_sql, sql_records


def test_duuid_is_deterministic():
    assert duuid("demo-user-00001") == duuid("demo-user-00001")
    assert duuid("demo-user-00001") != duuid("demo-user-00002")


def test_demo_subjects():
    assert demo_subjects(3, "x") == ["x-00001", "x-00002", "x-00003"]


def test_sql_records_escapes_quotes_and_orders_rows():
    sql = sql_records(["o'brien", "b"])
    assert "'o''brien'" in sql
    assert "INTERVAL '2 seconds'" in sql
    assert "INTERVAL '1 seconds'" in sql
    assert sql.rstrip().endswith("ON CONFLICT (subject_id) DO NOTHING;")


def test_sql_records_empty():
    assert sql_records([]) == "-- no subjects\n"


def test_generate_full_sql_is_transactional():
    sql = generate_full_sql(2)
    assert sql.index("BEGIN;") < sql.index("CREATE TABLE IF NOT EXISTS provisioning_records")
    assert duuid("demo-user-00002") in sql
    assert sql.rstrip().endswith("COMMIT;")
