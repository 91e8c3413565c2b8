"""
Unit tests for the Root Sync Service.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from conftest import FakeRootLog, FakeSubscriberStore, ScriptedLedger, make_identity
from subroot.crypto.authority import AuthoritySigner
from subroot.crypto.merkle import MerkleTree
from subroot.services.ledger_client import LedgerSyncError
from subroot.services.records import SubscriberRecord
from subroot.services.root_sync import (
    RootSyncError,
    RootSyncService,
    SyncOutcome,
    SyncResult,
    SyncState,
)


def _tree(records: list[SubscriberRecord]) -> MerkleTree:
    return MerkleTree.build(r.leaf_hash() for r in records)


def _service(
    store: FakeSubscriberStore,
    root_log: FakeRootLog,
    ledger: ScriptedLedger,
    authority: AuthoritySigner,
    config_handle: str | None,
    **overrides,
) -> RootSyncService:
    options = {
        "publish_timeout": 1.0,
        "retry_count": 3,
        "retry_delay": 0,
        "retry_max_delay": 0,
    }
    options.update(overrides)
    return RootSyncService(
        store=store,
        root_log=root_log,
        ledger=ledger,
        authority=authority,
        config_handle=config_handle,
        **options,
    )


class TestSyncResult:
    """Tests for SyncResult."""

    def test_to_dict(self) -> None:
        result = SyncResult(
            outcome=SyncOutcome.PUBLISHED,
            root_hash="ab" * 32,
            leaf_count=3,
            tx_reference="tx",
            error=None,
            attempts=1,
            duration_seconds=0.12345,
        )

        data = result.to_dict()
        assert data["outcome"] == "published"
        assert data["success"] is True
        assert data["duration_seconds"] == 0.123

    def test_failed_is_not_success(self) -> None:
        result = SyncResult(
            outcome=SyncOutcome.FAILED,
            root_hash=None,
            leaf_count=0,
            tx_reference=None,
            error="boom",
            attempts=0,
            duration_seconds=0.0,
        )
        assert not result.success


class TestBootstrap:
    """Tests for ledger config bootstrap."""

    @pytest.mark.asyncio
    async def test_initializes_config(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        subscribers: list[SubscriberRecord],
    ) -> None:
        service = _service(store, root_log, ledger, authority, None)

        handle = await service.bootstrap()

        assert service.config_handle == handle
        assert await ledger.get_current_root(handle) == _tree(subscribers).root
        assert len(root_log.records) == 1
        assert root_log.records[0].is_synced_on_chain

    @pytest.mark.asyncio
    async def test_idempotent(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
    ) -> None:
        service = _service(store, root_log, ledger, authority, None)

        first = await service.bootstrap()
        second = await service.bootstrap()

        assert first == second
        assert ledger.calls["initialize_config"] == 1

    @pytest.mark.asyncio
    async def test_empty_store(
        self,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
    ) -> None:
        service = _service(FakeSubscriberStore(), root_log, ledger, authority, None)

        with pytest.raises(RootSyncError):
            await service.bootstrap()

        assert service.config_handle is None
        assert root_log.records == []

    @pytest.mark.asyncio
    async def test_then_sync_is_noop(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
    ) -> None:
        service = _service(store, root_log, ledger, authority, None)
        await service.bootstrap()

        result = await service.sync()

        assert result.outcome == SyncOutcome.UNCHANGED
        assert ledger.calls["update_root"] == 0


class TestSync:
    """Tests for the sync cycle."""

    @pytest.mark.asyncio
    async def test_not_bootstrapped(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
    ) -> None:
        service = _service(store, root_log, ledger, authority, None)

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert "not bootstrapped" in result.error
        assert store.list_calls == 0

    @pytest.mark.asyncio
    async def test_publishes_changed_root(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        subscribers: list[SubscriberRecord],
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        expected_root = _tree(subscribers).root
        assert result.outcome == SyncOutcome.PUBLISHED
        assert result.success
        assert result.root_hash == expected_root.hex()
        assert result.leaf_count == len(subscribers)
        assert result.attempts == 1
        assert await ledger.get_current_root(handle) == expected_root

        assert len(root_log.records) == 1
        record = root_log.records[0]
        assert record.root_hash == expected_root
        assert record.is_synced_on_chain
        assert record.tx_signature == result.tx_reference

        assert service.state == SyncState.IDLE
        assert service.last_result is result

    @pytest.mark.asyncio
    async def test_second_run_is_noop(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        """Unchanged leaf set: one synced record, no further ledger calls."""
        handle = await ledger.initialize_config(stale_root, authority)
        service = _service(store, root_log, ledger, authority, handle)

        await service.sync()
        calls_after_first = dict(ledger.calls)

        result = await service.sync()

        assert result.outcome == SyncOutcome.UNCHANGED
        assert result.success
        assert dict(ledger.calls) == calls_after_first
        assert len(root_log.records) == 1
        assert root_log.records[0].is_synced_on_chain

    @pytest.mark.asyncio
    async def test_changed_set_publishes_again(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        service = _service(store, root_log, ledger, authority, handle)
        await service.sync()

        renewed = store.records[0]
        store.records[0] = SubscriberRecord(
            identity=renewed.identity,
            expiration_ts=renewed.expiration_ts + 86400,
        )
        result = await service.sync()

        assert result.outcome == SyncOutcome.PUBLISHED
        assert ledger.calls["update_root"] == 2
        assert len(root_log.records) == 2
        assert root_log.records[0].root_hash != root_log.records[1].root_hash

    @pytest.mark.asyncio
    async def test_reconciles_unrecorded_publish(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        subscribers: list[SubscriberRecord],
    ) -> None:
        """Ledger already holds the root but the log never recorded it."""
        handle = await ledger.initialize_config(_tree(subscribers).root, authority)
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.RECONCILED
        assert ledger.calls["update_root"] == 0
        assert len(root_log.records) == 1
        assert root_log.records[0].is_synced_on_chain
        assert root_log.records[0].tx_signature is None

    @pytest.mark.asyncio
    async def test_unreadable_ledger_root_still_publishes(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        ledger.root_read_failure = LedgerSyncError("rpc down")
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.PUBLISHED

    @pytest.mark.asyncio
    async def test_retries_transient_failures(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        ledger.update_failures = [LedgerSyncError("congested"), LedgerSyncError("congested")]
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.PUBLISHED
        assert result.attempts == 3
        assert ledger.calls["update_root"] == 3
        assert len(root_log.records) == 1
        assert root_log.records[0].is_synced_on_chain

    @pytest.mark.asyncio
    async def test_retries_exhausted(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        ledger.update_failures = [LedgerSyncError("congested")] * 3
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert result.attempts == 3
        assert "congested" in result.error
        assert await ledger.get_current_root(handle) == stale_root

        assert len(root_log.records) == 1
        assert not root_log.records[0].is_synced_on_chain
        assert root_log.records[0].tx_signature is None
        assert service.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_authority_mismatch_not_retried(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        service = _service(store, root_log, ledger, AuthoritySigner.generate(), handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert ledger.calls["update_root"] == 1
        assert "not authorized" in result.error
        assert len(root_log.records) == 1
        assert not root_log.records[0].is_synced_on_chain

    @pytest.mark.asyncio
    async def test_publish_timeout_is_retried(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        ledger.update_delay = 0.2
        service = _service(
            store, root_log, ledger, authority, handle,
            publish_timeout=0.05, retry_count=2,
        )

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert result.attempts == 2
        assert ledger.calls["update_root"] == 2
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_empty_subscriber_set(
        self,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        service = _service(FakeSubscriberStore(), root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert "empty" in result.error
        assert ledger.calls["update_root"] == 0
        assert root_log.records == []

    @pytest.mark.asyncio
    async def test_store_unavailable(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        store.unavailable = True
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert ledger.calls["update_root"] == 0
        assert root_log.records == []

    @pytest.mark.asyncio
    async def test_record_failure_after_publish(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        subscribers: list[SubscriberRecord],
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        root_log.fail_appends = True
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert result.tx_reference is not None
        assert await ledger.get_current_root(handle) == _tree(subscribers).root

        # Next cycle notices the ledger already holds the root
        root_log.fail_appends = False
        result = await service.sync()
        assert result.outcome == SyncOutcome.RECONCILED
        assert ledger.calls["update_root"] == 1

    @pytest.mark.asyncio
    async def test_timed_out_publish_that_landed_is_not_resent(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        subscribers: list[SubscriberRecord],
        stale_root: bytes,
    ) -> None:
        """The first attempt commits on the ledger but its reply arrives too late."""
        handle = await ledger.initialize_config(stale_root, authority)
        ledger.update_lands_first = True
        ledger.update_delay = 0.2
        service = _service(store, root_log, ledger, authority, handle, publish_timeout=0.05)

        result = await service.sync()

        assert result.outcome == SyncOutcome.RECONCILED
        assert result.attempts == 2
        assert ledger.calls["update_root"] == 1
        assert await ledger.get_current_root(handle) == _tree(subscribers).root
        assert len(root_log.records) == 1
        assert root_log.records[0].is_synced_on_chain
        assert root_log.records[0].tx_signature is None


class TestFailureContainment:
    """sync() reports every failure in its result instead of raising."""

    @pytest.mark.asyncio
    async def test_short_identity_in_store(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        store.records.append(SubscriberRecord(b"\x01" * 31, 10**10))
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert "Invalid subscriber record" in result.error
        assert ledger.calls["update_root"] == 0
        assert root_log.records == []
        assert service.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_expiration_out_of_range_in_store(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        store.records.append(SubscriberRecord(make_identity(99), 2**63))
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert ledger.calls["update_root"] == 0

    @pytest.mark.asyncio
    async def test_unexpected_publish_error_records_unsynced(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        ledger.update_failures = [KeyError("tx_reference")]
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert "tx_reference" in result.error
        assert result.attempts == 1
        assert ledger.calls["update_root"] == 1
        assert len(root_log.records) == 1
        assert not root_log.records[0].is_synced_on_chain
        assert service.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_unexpected_root_log_error(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        root_log.latest = AsyncMock(side_effect=RuntimeError("cursor closed"))
        service = _service(store, root_log, ledger, authority, handle)

        result = await service.sync()

        assert result.outcome == SyncOutcome.FAILED
        assert "cursor closed" in result.error
        assert ledger.calls["update_root"] == 0
        assert service.state == SyncState.IDLE
        assert service.last_result is result

    @pytest.mark.asyncio
    async def test_service_recovers_after_unexpected_error(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        ledger.update_failures = [KeyError("tx_reference")]
        service = _service(store, root_log, ledger, authority, handle)

        first = await service.sync()
        second = await service.sync()

        assert first.outcome == SyncOutcome.FAILED
        assert second.outcome == SyncOutcome.PUBLISHED
        assert root_log.records[-1].is_synced_on_chain


class TestConcurrency:
    """Tests for overlapping sync triggers."""

    @pytest.mark.asyncio
    async def test_overlapping_triggers_publish_once(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        ledger.update_delay = 0.05
        service = _service(store, root_log, ledger, authority, handle)

        first, second = await asyncio.gather(service.sync(), service.sync())

        assert first is second
        assert first.outcome == SyncOutcome.PUBLISHED
        assert ledger.calls["update_root"] == 1
        assert len(root_log.records) == 1

    @pytest.mark.asyncio
    async def test_busy_while_in_flight(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        ledger.update_delay = 0.05
        service = _service(store, root_log, ledger, authority, handle)

        task = asyncio.create_task(service.sync())
        await asyncio.sleep(0.01)

        assert service.is_busy
        assert service.state == SyncState.PUBLISHING

        await task
        assert not service.is_busy
        assert service.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_cycle(
        self,
        store: FakeSubscriberStore,
        root_log: FakeRootLog,
        ledger: ScriptedLedger,
        authority: AuthoritySigner,
        stale_root: bytes,
    ) -> None:
        handle = await ledger.initialize_config(stale_root, authority)
        ledger.update_delay = 0.05
        service = _service(store, root_log, ledger, authority, handle)

        caller = asyncio.create_task(service.sync())
        await asyncio.sleep(0.01)
        caller.cancel()

        result = await service.sync()

        assert result.outcome == SyncOutcome.PUBLISHED
        assert ledger.calls["update_root"] == 1
