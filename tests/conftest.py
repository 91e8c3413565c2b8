"""
Pytest configuration and shared fixtures for subscription root tests.
"""

import asyncio
import hashlib
from collections import Counter
from collections.abc import Callable

import pytest

from subroot.crypto.authority import AuthoritySigner
from subroot.db.repository import StoreUnavailableError
from subroot.services.memory_ledger import InMemoryLedgerClient
from subroot.services.records import RootRecord, SubscriberRecord

NOW = 1_700_000_000


def make_identity(n: int) -> bytes:
    """Deterministic 32-byte identity for test subscriber n."""
    return hashlib.sha256(b"identity-%d" % n).digest()


def make_subscribers(count: int, expiration_ts: int = NOW + 3600) -> list[SubscriberRecord]:
    return [
        SubscriberRecord(identity=make_identity(i), expiration_ts=expiration_ts)
        for i in range(count)
    ]


class FakeSubscriberStore:
    """In-memory subscriber store."""

    def __init__(self, records: list[SubscriberRecord] | None = None) -> None:
        self.records = list(records or [])
        self.unavailable = False
        self.list_calls = 0

    async def list_all(self) -> list[SubscriberRecord]:
        self.list_calls += 1
        if self.unavailable:
            raise StoreUnavailableError("connection refused")
        return list(self.records)

    async def get(self, identity: bytes) -> SubscriberRecord | None:
        return next((r for r in self.records if r.identity == identity), None)


class FakeRootLog:
    """In-memory append-only root log."""

    def __init__(self) -> None:
        self.records: list[RootRecord] = []
        self.fail_appends = False

    async def latest(self) -> RootRecord | None:
        return self.records[-1] if self.records else None

    async def latest_synced(self) -> RootRecord | None:
        synced = [r for r in self.records if r.is_synced_on_chain]
        return synced[-1] if synced else None

    async def append(self, record: RootRecord) -> RootRecord:
        if self.fail_appends:
            raise StoreUnavailableError("disk full")
        record.id = len(self.records) + 1
        self.records.append(record)
        return record

    async def list_recent(self, limit: int = 50) -> list[RootRecord]:
        return list(reversed(self.records))[:limit]


class ScriptedLedger(InMemoryLedgerClient):
    """In-memory ledger that counts calls and can inject failures."""

    def __init__(self, clock: Callable[[], int] | None = None) -> None:
        super().__init__(clock=clock or (lambda: NOW))
        self.calls: Counter[str] = Counter()
        self.update_failures: list[Exception] = []
        self.update_delay = 0.0
        # Apply the update before the delay, like a reply lost after commit
        self.update_lands_first = False
        self.root_read_failure: Exception | None = None

    async def initialize_config(self, initial_root, authority):
        self.calls["initialize_config"] += 1
        return await super().initialize_config(initial_root, authority)

    async def update_root(self, config_handle, new_root, authority):
        self.calls["update_root"] += 1
        if self.update_lands_first:
            tx_reference = await super().update_root(config_handle, new_root, authority)
            await asyncio.sleep(self.update_delay)
            return tx_reference
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        if self.update_failures:
            raise self.update_failures.pop(0)
        return await super().update_root(config_handle, new_root, authority)

    async def get_current_root(self, config_handle):
        self.calls["get_current_root"] += 1
        if self.root_read_failure:
            raise self.root_read_failure
        return await super().get_current_root(config_handle)


@pytest.fixture
def authority() -> AuthoritySigner:
    """Authority keypair used to initialize the ledger config."""
    return AuthoritySigner.generate()


@pytest.fixture
def subscribers() -> list[SubscriberRecord]:
    """Five active subscribers."""
    return make_subscribers(5)


@pytest.fixture
def store(subscribers: list[SubscriberRecord]) -> FakeSubscriberStore:
    return FakeSubscriberStore(subscribers)


@pytest.fixture
def root_log() -> FakeRootLog:
    return FakeRootLog()


@pytest.fixture
def ledger() -> ScriptedLedger:
    return ScriptedLedger()


@pytest.fixture
def stale_root() -> bytes:
    """A root that does not match any fixture subscriber set."""
    return hashlib.sha256(b"stale root").digest()
