"""Configuration via environment variables with cloud-native secret support."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from scripts.provisioning.errors import ConfigError
from scripts.provisioning.secrets import resolve_database_url, resolve_secret

MAX_BATCH_SIZE = 500


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    min_connections: int = 1
    max_connections: int = 5


@dataclass(frozen=True)
class PipelineConfig:
    batch_size: int = 50
    max_attempts: int = 3
    inter_call_delay_ms: int = 1000
    # IN_PROGRESS records older than this are reported as orphans
    claim_timeout_ms: int = 15 * 60 * 1000
    # Wall-clock budget for one invocation; None = unbounded
    deadline_s: Optional[float] = None

    def __post_init__(self) -> None:
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ConfigError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        if self.max_attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if self.inter_call_delay_ms < 0:
            raise ConfigError("inter_call_delay_ms must not be negative")
        if self.claim_timeout_ms <= 0:
            raise ConfigError("claim_timeout_ms must be positive")
        if self.deadline_s is not None and self.deadline_s <= 0:
            raise ConfigError("deadline_s must be positive")


@dataclass(frozen=True)
class AccountServiceConfig:
    base_url: str
    api_key: str = ""
    network: str = "mainnet"
    initial_balance: float = 0.1
    memo_prefix: str = "CNE"
    timeout_s: float = 30.0


@dataclass(frozen=True)
class SchedulerConfig:
    provision_interval_min: int = 5
    sweep_interval_min: int = 30
    misfire_grace_time: int = 300


@dataclass(frozen=True)
class ProvisioningConfig:
    database: DatabaseConfig
    account_service: AccountServiceConfig
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc


def load_config() -> ProvisioningConfig:
    """Load configuration from environment variables (and .env locally)."""
    load_dotenv()

    database = DatabaseConfig(
        url=resolve_database_url(),
        min_connections=_env_int("DB_MIN_CONNECTIONS", 1),
        max_connections=_env_int("DB_MAX_CONNECTIONS", 5),
    )

    base_url = os.environ.get("ACCOUNT_SERVICE_URL", "")
    if not base_url:
        raise ConfigError("ACCOUNT_SERVICE_URL environment variable is required")
    account_service = AccountServiceConfig(
        base_url=base_url,
        api_key=resolve_secret(os.environ.get("ACCOUNT_SERVICE_API_KEY", "")),
        network=os.environ.get("LEDGER_NETWORK", "mainnet"),
        initial_balance=_env_float("LEDGER_INITIAL_BALANCE", 0.1),
        memo_prefix=os.environ.get("LEDGER_MEMO_PREFIX", "CNE"),
        timeout_s=_env_float("ACCOUNT_SERVICE_TIMEOUT_S", 30.0),
    )

    pipeline = PipelineConfig(
        batch_size=_env_int("PROVISIONING_BATCH_SIZE", 50),
        max_attempts=_env_int("PROVISIONING_MAX_ATTEMPTS", 3),
        inter_call_delay_ms=_env_int("PROVISIONING_INTER_CALL_DELAY_MS", 1000),
        claim_timeout_ms=_env_int("PROVISIONING_CLAIM_TIMEOUT_MS", 15 * 60 * 1000),
        deadline_s=_env_float("PROVISIONING_DEADLINE_S", None),
    )

    scheduler = SchedulerConfig(
        provision_interval_min=_env_int("SCHEDULER_PROVISION_INTERVAL_MIN", 5),
        sweep_interval_min=_env_int("SCHEDULER_SWEEP_INTERVAL_MIN", 30),
        misfire_grace_time=_env_int("SCHEDULER_MISFIRE_GRACE_TIME", 300),
    )

    return ProvisioningConfig(
        database=database,
        account_service=account_service,
        pipeline=pipeline,
        scheduler=scheduler,
    )
