"""Tests for orphan detection and operator reconciliation."""

from datetime import timedelta

import pytest

from scripts.provisioning.config import PipelineConfig
from scripts.provisioning.errors import ClaimConflictError
from scripts.provisioning.models import RecordStatus, utcnow
from scripts.provisioning.reconciliation import OrphanSweeper
from tests.fakes import ScriptedAcquirer, make_pipeline, make_store


@pytest.fixture
def store():
    s = make_store(3)
    s.claim(s.get("rec-001"))
    return s


def _sweeper(store, minutes_later=0):
    config = PipelineConfig(claim_timeout_ms=10 * 60 * 1000)
    return OrphanSweeper(store, config, now=lambda: utcnow() + timedelta(minutes=minutes_later))


class TestSweep:
    def test_fresh_claims_are_not_orphans(self, store):
        assert _sweeper(store).sweep() == {"orphans": 0, "queued": 0}

    def test_stale_claims_are_queued_once(self, store):
        sweeper = _sweeper(store, minutes_later=11)
        assert sweeper.sweep() == {"orphans": 1, "queued": 1}
        assert sweeper.sweep() == {"orphans": 1, "queued": 0}
        entry = store.reconciliation_queue()[0]
        assert entry["record_id"] == "rec-001"
        assert "external account may exist" in entry["reason"]

    def test_sweep_never_retries(self, store):
        _sweeper(store, minutes_later=11).sweep()
        assert store.get("rec-001").status is RecordStatus.IN_PROGRESS


class TestResolve:
    def test_resolve_with_found_account(self, store):
        record = _sweeper(store).resolve("rec-001", "0.0.555")
        assert record.status is RecordStatus.ACTIVE
        assert record.external_account_id == "0.0.555"

    def test_release_makes_record_eligible_again(self, store):
        record = _sweeper(store).resolve("rec-001")
        assert record.status is RecordStatus.FAILED
        assert record.retriable is True
        assert record.attempts == 1

        acquirer = ScriptedAcquirer()
        make_pipeline(store, acquirer).run_batch(batch_size=10)
        rec = store.get("rec-001")
        assert rec.status is RecordStatus.ACTIVE
        assert rec.attempts == 2

    def test_resolve_rejects_records_not_in_progress(self, store):
        with pytest.raises(ClaimConflictError):
            _sweeper(store).resolve("rec-002", "0.0.1")

    def test_late_worker_after_release_reports_orphaned_account(self):
        store = make_store(1)
        sweeper = _sweeper(store)

        def operator_releases(_):
            sweeper.resolve("rec-001")

        pipeline = make_pipeline(store, ScriptedAcquirer(on_call=operator_releases))
        summary = pipeline.run_batch(batch_size=1)

        assert summary.succeeded == 0
        assert summary.failed == 1
        assert "orphaned external account" in summary.errors[0]["error"]
        assert store.get("rec-001").status is RecordStatus.FAILED
