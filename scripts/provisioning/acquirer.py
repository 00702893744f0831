"""External ledger account acquisition."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import requests

from scripts.provisioning.config import AccountServiceConfig
from scripts.provisioning.errors import StructuralError, TransientExternalError

logger = logging.getLogger("provisioning.acquirer")

_TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}
_STRUCTURAL_STATUSES = {400, 401, 403, 404, 409, 422}


@dataclass(frozen=True)
class AcquiredAccount:
    account_id: str
    public_key: Optional[str] = None
    memo: Optional[str] = None


def ledger_did(network: str, account_id: str) -> str:
    """Decentralised identifier for a ledger account."""
    return f"did:hedera:{network}:{account_id}_0.0.0"


class AccountAcquirer(ABC):
    """Creates one external account per call. Not idempotent."""

    @abstractmethod
    def acquire(self, owner_hint: str) -> AcquiredAccount:
        """Create an account for ``owner_hint``.

        Raises TransientExternalError or StructuralError on failure.
        """

    def close(self) -> None:
        pass


class HttpAccountAcquirer(AccountAcquirer):
    """Client for the custodial ledger account service.

    Never retries internally: retry policy belongs to the pipeline, and a
    blind retry here could create a second account.
    """

    def __init__(self, config: AccountServiceConfig, session: Optional[requests.Session] = None) -> None:
        self._config = config
        self._base = config.base_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update({"Accept": "application/json"})
        if config.api_key:
            self._session.headers.update({"Authorization": f"Bearer {config.api_key}"})

    def memo_for(self, owner_hint: str) -> str:
        return f"{self._config.memo_prefix}-{owner_hint[:8]}"

    def acquire(self, owner_hint: str) -> AcquiredAccount:
        if not owner_hint:
            raise StructuralError("owner hint must not be empty")

        memo = self.memo_for(owner_hint)
        payload = {
            "memo": memo,
            "initialBalance": self._config.initial_balance,
            "network": self._config.network,
        }
        try:
            resp = self._session.post(
                f"{self._base}/accounts",
                json=payload,
                timeout=self._config.timeout_s,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientExternalError(f"account service unreachable: {exc}") from exc
        except requests.RequestException as exc:
            raise StructuralError(f"invalid account service request: {exc}") from exc

        if resp.status_code in _TRANSIENT_STATUSES:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            raise TransientExternalError(
                f"account service returned {resp.status_code}: {resp.text[:200]}",
                retry_after=retry_after,
            )
        if resp.status_code in _STRUCTURAL_STATUSES:
            raise StructuralError(
                f"account service rejected request ({resp.status_code}): {resp.text[:200]}"
            )
        if resp.status_code >= 400:
            raise TransientExternalError(
                f"account service returned {resp.status_code}: {resp.text[:200]}"
            )

        # A 2xx without an account id may still have created one, so it is
        # not safe to retry.
        try:
            data = resp.json()
        except ValueError as exc:
            raise StructuralError("account service returned a non-JSON body") from exc
        account_id = data.get("accountId") if isinstance(data, dict) else None
        if not account_id:
            raise StructuralError("account service response missing accountId")

        logger.info("Created ledger account %s (memo=%s)", account_id, memo)
        return AcquiredAccount(
            account_id=str(account_id),
            public_key=data.get("publicKey"),
            memo=memo,
        )

    def close(self) -> None:
        self._session.close()


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
