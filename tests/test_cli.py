"""Tests for the provisioning CLI commands."""

import json
from unittest.mock import patch

import pytest

from scripts.provisioning.cli import build_parser, main
from scripts.provisioning.models import RecordStatus
from scripts.provisioning.runtime import build_runtime
from tests.fakes import ScriptedAcquirer, make_config, make_store


@pytest.fixture
def store():
    return make_store(3)


@pytest.fixture(autouse=True)
def fake_runtime(store):
    config = make_config()
    acquirer = ScriptedAcquirer()
    with patch("scripts.provisioning.cli.load_config", return_value=config), \
            patch(
                "scripts.provisioning.cli.build_runtime",
                side_effect=lambda cfg: build_runtime(cfg, store=store, acquirer=acquirer),
            ):
        yield


class TestParser:
    def test_run_defaults(self):
        args = build_parser().parse_args(["run"])
        assert args.batch_size is None
        assert args.cursor is None
        assert args.drain is False

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestRegister:
    def test_registers_new_and_existing(self, store, capsys):
        assert main(["register", "user-001", "new-subject"]) == 0
        assert json.loads(capsys.readouterr().out) == {"registered": 1, "existing": 1}
        assert store.counts_by_status()["PENDING"] == 4

    def test_reads_subjects_from_file(self, store, tmp_path, capsys):
        path = tmp_path / "subjects.txt"
        path.write_text("a\n\nb\n")
        assert main(["register", "--file", str(path)]) == 0
        assert json.loads(capsys.readouterr().out)["registered"] == 2

    def test_no_subjects(self):
        assert main(["register"]) == 2


class TestRun:
    def test_single_batch(self, capsys):
        assert main(["run", "--batch-size", "2"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["succeeded"] == 2
        assert out["hasMore"] is True
        assert out["nextCursor"]

    def test_resume_from_cursor(self, store, capsys):
        main(["run", "-b", "2"])
        cursor = json.loads(capsys.readouterr().out)["nextCursor"]
        main(["run", "-b", "2", "--cursor", cursor])
        out = json.loads(capsys.readouterr().out)
        assert out["succeeded"] == 1
        assert out["hasMore"] is False
        assert store.counts_by_status()["ACTIVE"] == 3

    def test_drain(self, store, capsys):
        assert main(["run", "--drain", "-b", "1"]) == 0
        assert json.loads(capsys.readouterr().out)["succeeded"] == 3

    def test_aborted_run_exits_nonzero(self, store, capsys):
        store.fail_writes = True
        assert main(["run"]) == 1
        assert json.loads(capsys.readouterr().out)["aborted"] is True


class TestStatusAndExport:
    def test_status_lists_counts_and_failures(self, store, capsys):
        held = store.claim(store.get("rec-001"))
        store.mark_failed(held, "StructuralError: rejected", retriable=False)

        assert main(["status"]) == 0
        out = capsys.readouterr().out
        assert "PENDING" in out
        assert "rec-001" in out
        assert "StructuralError: rejected" in out

    def test_export_includes_did_for_active_records(self, capsys):
        main(["run", "--drain"])
        capsys.readouterr()

        assert main(["export", "--status", "ACTIVE"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["count"] == 3
        rec = out["records"][0]
        assert rec["network"] == "testnet"
        assert rec["did"] == f"did:hedera:testnet:{rec['externalAccountId']}_0.0.0"

    def test_export_to_file(self, tmp_path):
        path = tmp_path / "out.json"
        assert main(["export", "--output", str(path)]) == 0
        data = json.loads(path.read_text())
        assert data["count"] == 3
        assert "did" not in data["records"][0]

    def test_runs_requires_database(self, capsys):
        assert main(["runs"]) == 1


class TestReconciliation:
    def test_sweep_reports_queue(self, capsys):
        assert main(["sweep"]) == 0
        assert json.loads(capsys.readouterr().out) == {"orphans": 0, "queued": 0, "open": []}

    def test_resolve_with_account(self, store, capsys):
        store.claim(store.get("rec-002"))
        assert main(["resolve", "rec-002", "--account-id", "0.0.42"]) == 0
        assert json.loads(capsys.readouterr().out)["status"] == "ACTIVE"
        assert store.get("rec-002").external_account_id == "0.0.42"

    def test_resolve_release(self, store, capsys):
        store.claim(store.get("rec-002"))
        assert main(["resolve", "rec-002"]) == 0
        assert store.get("rec-002").status is RecordStatus.FAILED

    def test_resolve_not_in_progress(self):
        assert main(["resolve", "rec-003", "--account-id", "0.0.1"]) == 1
