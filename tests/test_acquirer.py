"""Tests for the HTTP account service client and its error classification."""

from unittest.mock import MagicMock

import pytest
import requests

from scripts.provisioning.acquirer import HttpAccountAcquirer, ledger_did
from scripts.provisioning.config import AccountServiceConfig
from scripts.provisioning.errors import StructuralError, TransientExternalError


def _response(status, json_body=None, text="", headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.headers = headers or {}
    if json_body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = json_body
    return resp


@pytest.fixture
def session():
    s = MagicMock()
    s.headers = {}
    return s


@pytest.fixture
def config():
    return AccountServiceConfig(
        base_url="https://ledger.example.test/",
        api_key="k-123",
        network="testnet",
        initial_balance=0.1,
        memo_prefix="CNE",
        timeout_s=5.0,
    )


class TestRequest:
    def test_posts_account_request(self, session, config):
        session.post.return_value = _response(201, {"accountId": "0.0.777", "publicKey": "302a"})
        acquirer = HttpAccountAcquirer(config, session=session)

        account = acquirer.acquire("firebaseUid123456")

        assert account.account_id == "0.0.777"
        assert account.public_key == "302a"
        assert account.memo == "CNE-firebase"
        session.post.assert_called_once_with(
            "https://ledger.example.test/accounts",
            json={"memo": "CNE-firebase", "initialBalance": 0.1, "network": "testnet"},
            timeout=5.0,
        )

    def test_sets_auth_header(self, session, config):
        HttpAccountAcquirer(config, session=session)
        assert session.headers["Authorization"] == "Bearer k-123"

    def test_empty_owner_is_structural(self, session, config):
        with pytest.raises(StructuralError):
            HttpAccountAcquirer(config, session=session).acquire("")
        session.post.assert_not_called()


class TestClassification:
    @pytest.mark.parametrize("status", [429, 500, 502, 503, 504, 408])
    def test_transient_statuses(self, session, config, status):
        session.post.return_value = _response(status, text="slow down")
        with pytest.raises(TransientExternalError):
            HttpAccountAcquirer(config, session=session).acquire("user-1")

    def test_retry_after_hint(self, session, config):
        session.post.return_value = _response(429, headers={"Retry-After": "7"})
        with pytest.raises(TransientExternalError) as excinfo:
            HttpAccountAcquirer(config, session=session).acquire("user-1")
        assert excinfo.value.retry_after == 7.0

    @pytest.mark.parametrize("status", [400, 409, 422])
    def test_structural_statuses(self, session, config, status):
        session.post.return_value = _response(status, text="duplicate")
        with pytest.raises(StructuralError):
            HttpAccountAcquirer(config, session=session).acquire("user-1")

    @pytest.mark.parametrize("exc", [requests.Timeout("t"), requests.ConnectionError("c")])
    def test_network_errors_are_transient(self, session, config, exc):
        session.post.side_effect = exc
        with pytest.raises(TransientExternalError):
            HttpAccountAcquirer(config, session=session).acquire("user-1")

    def test_success_without_account_id_is_structural(self, session, config):
        session.post.return_value = _response(200, {"status": "ok"})
        with pytest.raises(StructuralError):
            HttpAccountAcquirer(config, session=session).acquire("user-1")

    def test_success_with_non_json_body_is_structural(self, session, config):
        session.post.return_value = _response(200, None, text="<html>")
        with pytest.raises(StructuralError):
            HttpAccountAcquirer(config, session=session).acquire("user-1")


def test_ledger_did():
    assert ledger_did("mainnet", "0.0.1234") == "did:hedera:mainnet:0.0.1234_0.0.0"
