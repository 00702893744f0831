"""Test doubles and record factories shared by the provisioning tests."""
import threading
from datetime import datetime, timedelta, timezone

from scripts.provisioning.acquirer import AccountAcquirer, AcquiredAccount
from scripts.provisioning.config import (
    AccountServiceConfig,
    DatabaseConfig,
    PipelineConfig,
    ProvisioningConfig,
)
from scripts.provisioning.models import ProvisioningRecord
from scripts.provisioning.pipeline import ProvisioningPipeline
from scripts.provisioning.rate_limiter import RateLimiter
from scripts.provisioning.store import InMemoryRecordStore

BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedAcquirer(AccountAcquirer):
    """Returns accounts unless a subject has queued exceptions.

    ``outcomes[subject]`` is consumed one entry per call; an exception entry
    is raised, None means succeed. ``on_call`` runs before each outcome.
    """

    def __init__(self, outcomes=None, on_call=None):
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.on_call = on_call
        self.calls = []
        self._lock = threading.Lock()

    def acquire(self, owner_hint):
        with self._lock:
            self.calls.append(owner_hint)
            seq = len(self.calls)
            script = self.outcomes.get(owner_hint)
            outcome = script.pop(0) if script else None
        if self.on_call is not None:
            self.on_call(owner_hint)
        if outcome is not None:
            raise outcome
        return AcquiredAccount(account_id=f"0.0.{100000 + seq}")

    def calls_for(self, subject_id):
        return self.calls.count(subject_id)


def make_record(n: int, **kwargs) -> ProvisioningRecord:
    created = BASE_TIME + timedelta(seconds=n)
    return ProvisioningRecord(
        record_id=f"rec-{n:03d}",
        subject_id=f"user-{n:03d}",
        created_at=created,
        updated_at=created,
        **kwargs,
    )


def make_store(count: int) -> InMemoryRecordStore:
    return InMemoryRecordStore([make_record(i) for i in range(1, count + 1)])


def make_pipeline(store, acquirer, clock=None, **config_overrides) -> ProvisioningPipeline:
    config = PipelineConfig(**{"inter_call_delay_ms": 0, **config_overrides})
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return ProvisioningPipeline(
        store,
        acquirer,
        config,
        rate_limiter=RateLimiter(0),
        **kwargs,
    )


def make_config(**pipeline_overrides) -> ProvisioningConfig:
    return ProvisioningConfig(
        database=DatabaseConfig(url="postgresql://test@localhost/test"),
        account_service=AccountServiceConfig(base_url="https://ledger.example.test", network="testnet"),
        pipeline=PipelineConfig(**{"inter_call_delay_ms": 0, **pipeline_overrides}),
    )
