"""
Subscription Root Service - Root Synchronization

Keeps the root published on the ledger consistent with the subscriber store:
1. Read the full subscriber set as one snapshot
2. Rebuild the Merkle tree
3. Compare the new root with the last recorded publication
4. Reconcile against the ledger's actual root
5. Publish via the ledger client, retrying transient failures
6. Append the outcome to the root log

Only one cycle runs at a time; overlapping triggers join the cycle already
in flight instead of publishing independently.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog
from prometheus_client import Counter, Gauge, Histogram
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from subroot.core.config import settings
from subroot.crypto.authority import AuthoritySigner
from subroot.crypto.merkle import EmptyTreeError, MerkleError, MerkleTree
from subroot.db.repository import RootLog, StoreUnavailableError, SubscriberStore
from subroot.services.ledger_client import (
    AuthorityMismatchError,
    LedgerClient,
    LedgerClientError,
    LedgerSyncError,
)
from subroot.services.records import RootRecord

logger = structlog.get_logger(__name__)

# Prometheus metrics
SYNC_CYCLES_TOTAL = Counter(
    "subroot_sync_cycles_total",
    "Total root sync cycles",
    ["outcome"],
)
SYNC_PUBLISH_RETRIES = Counter(
    "subroot_sync_publish_retries_total",
    "Total publish retry attempts",
)
SYNC_COALESCED_TOTAL = Counter(
    "subroot_sync_coalesced_total",
    "Sync triggers that joined a cycle already in flight",
)
SYNC_DURATION = Histogram(
    "subroot_sync_duration_seconds",
    "Duration of a root sync cycle",
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300],
)
SUBSCRIBER_LEAVES = Gauge(
    "subroot_subscriber_leaves",
    "Number of leaves in the most recently built tree",
)


class SyncState(str, Enum):
    """Root sync state machine states."""

    IDLE = "idle"
    BUILDING = "building"
    COMPARING = "comparing"
    PUBLISHING = "publishing"
    RETRYING = "retrying"
    RECORDING = "recording"
    FAILED = "failed"


class SyncOutcome(str, Enum):
    """How a sync cycle ended."""

    PUBLISHED = "published"
    RECONCILED = "reconciled"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Result of one sync cycle."""

    outcome: SyncOutcome
    root_hash: str | None
    leaf_count: int
    tx_reference: str | None
    error: str | None
    attempts: int
    duration_seconds: float

    @property
    def success(self) -> bool:
        return self.outcome != SyncOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "outcome": self.outcome.value,
            "success": self.success,
            "root_hash": self.root_hash,
            "leaf_count": self.leaf_count,
            "tx_reference": self.tx_reference,
            "error": self.error,
            "attempts": self.attempts,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class RootSyncError(Exception):
    """Base exception for root sync errors."""

    pass


class RootSyncService:
    """
    Publishes the subscriber-set root to the ledger.

    Holds the only mutable shared state of the system: the in-flight cycle,
    the current state, and the ledger config handle.
    """

    def __init__(
        self,
        store: SubscriberStore,
        root_log: RootLog,
        ledger: LedgerClient,
        authority: AuthoritySigner,
        config_handle: str | None = settings.LEDGER_CONFIG_HANDLE,
        publish_timeout: float = settings.SYNC_PUBLISH_TIMEOUT,
        retry_count: int = settings.SYNC_RETRY_COUNT,
        retry_delay: float = settings.SYNC_RETRY_DELAY,
        retry_max_delay: float = settings.SYNC_RETRY_MAX_DELAY,
    ) -> None:
        """
        Initialize root sync service.

        Args:
            store: Subscriber snapshot source
            root_log: Append-only root publication log
            ledger: Ledger client
            authority: Signer allowed to update the root
            config_handle: Ledger config handle (None until bootstrapped)
            publish_timeout: Per-call ledger timeout (seconds)
            retry_count: Maximum publish attempts
            retry_delay: Backoff multiplier (seconds)
            retry_max_delay: Backoff cap (seconds)
        """
        self._store = store
        self._root_log = root_log
        self._ledger = ledger
        self._authority = authority
        self._config_handle = config_handle
        self._publish_timeout = publish_timeout
        self._retry_count = retry_count
        self._retry_delay = retry_delay
        self._retry_max_delay = retry_max_delay

        self._state = SyncState.IDLE
        self._gate = asyncio.Lock()
        self._inflight: asyncio.Task[SyncResult] | None = None
        self._last_result: SyncResult | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def last_result(self) -> SyncResult | None:
        """Result of the most recently completed cycle."""
        return self._last_result

    @property
    def config_handle(self) -> str | None:
        return self._config_handle

    async def bootstrap(self) -> str:
        """
        Make sure the ledger config exists.

        When no config handle is known, builds the current tree and
        initializes the ledger config with its root.

        Returns:
            The ledger config handle

        Raises:
            RootSyncError: If the config cannot be initialized
        """
        if self._config_handle:
            return self._config_handle

        async with self._gate:
            if self._config_handle:
                return self._config_handle

            try:
                records = await self._store.list_all()
                tree = MerkleTree.build(r.leaf_hash() for r in records)
                handle = await asyncio.wait_for(
                    self._ledger.initialize_config(tree.root, self._authority),
                    timeout=self._publish_timeout,
                )
            except (StoreUnavailableError, EmptyTreeError, LedgerClientError) as e:
                raise RootSyncError(f"Failed to bootstrap ledger config: {e}") from e
            except asyncio.TimeoutError as e:
                raise RootSyncError("Timed out initializing ledger config") from e

            await self._root_log.append(
                RootRecord(root_hash=tree.root, is_synced_on_chain=True)
            )
            self._config_handle = handle

            logger.info(
                "Ledger config bootstrapped",
                handle=handle[:16] + "...",
                root=tree.root_hex[:16] + "...",
                leaf_count=tree.leaf_count,
            )
            return handle

    async def sync(self) -> SyncResult:
        """
        Run a sync cycle, or join the one already in flight.

        Never raises for sync failures; they are reported in the result.
        """
        if self.is_busy:
            logger.info("Sync already in flight, joining current cycle")
            SYNC_COALESCED_TOTAL.inc()
        else:
            self._inflight = asyncio.create_task(self._run_gated())

        # Shield so a cancelled caller does not cancel the shared cycle
        return await asyncio.shield(self._inflight)

    async def _run_gated(self) -> SyncResult:
        async with self._gate:
            start = time.monotonic()
            try:
                self._last_result = await self._run_cycle(start)
            except Exception as e:
                logger.exception("Unexpected error in sync cycle")
                self._last_result = self._fail(start, f"Unexpected error: {e!r}")
            finally:
                self._state = SyncState.IDLE
            return self._last_result

    async def _run_cycle(self, start: float) -> SyncResult:
        if not self._config_handle:
            return self._fail(start, "Ledger config not bootstrapped")

        # Building
        self._state = SyncState.BUILDING
        try:
            records = await self._store.list_all()
            tree = MerkleTree.build(r.leaf_hash() for r in records)
        except (StoreUnavailableError, EmptyTreeError) as e:
            return self._fail(start, str(e))
        except (MerkleError, ValueError, OverflowError) as e:
            # Malformed subscriber row
            return self._fail(start, f"Invalid subscriber record: {e}")

        SUBSCRIBER_LEAVES.set(tree.leaf_count)
        logger.info(
            "Built subscriber tree",
            leaf_count=tree.leaf_count,
            depth=tree.depth,
            root=tree.root_hex[:16] + "...",
        )

        # Comparing
        self._state = SyncState.COMPARING
        try:
            latest = await self._root_log.latest()
        except StoreUnavailableError as e:
            return self._fail(start, str(e), tree)

        if latest and latest.is_synced_on_chain and latest.root_hash == tree.root:
            logger.info("Root unchanged, nothing to publish", root=tree.root_hex[:16] + "...")
            return self._result(start, SyncOutcome.UNCHANGED, tree)

        if await self._read_ledger_root() == tree.root:
            # An earlier publish landed without being recorded
            return await self._record_reconciled(start, tree)

        # Publishing
        attempts = 0
        tx_reference = None
        landed = False
        self._state = SyncState.PUBLISHING
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retry_count),
                wait=wait_exponential(
                    multiplier=self._retry_delay,
                    max=self._retry_max_delay,
                ),
                retry=retry_if_exception_type(LedgerSyncError),
                before_sleep=self._before_retry,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    # A timed-out attempt may still have landed
                    if attempts > 1 and await self._read_ledger_root() == tree.root:
                        landed = True
                    else:
                        self._state = SyncState.PUBLISHING
                        tx_reference = await self._publish(tree.root)

        except AuthorityMismatchError as e:
            logger.error("Ledger rejected authority", error=str(e))
            await self._record_unsynced(tree)
            return self._fail(start, str(e), tree, attempts)

        except LedgerClientError as e:
            logger.error("Publish failed", attempts=attempts, error=str(e))
            await self._record_unsynced(tree)
            return self._fail(start, str(e), tree, attempts)

        except Exception as e:
            logger.exception("Unexpected publish error", attempts=attempts)
            await self._record_unsynced(tree)
            return self._fail(start, f"Unexpected publish error: {e!r}", tree, attempts)

        if landed:
            return await self._record_reconciled(start, tree, attempts)

        # Recording
        self._state = SyncState.RECORDING
        try:
            await self._root_log.append(
                RootRecord(
                    root_hash=tree.root,
                    is_synced_on_chain=True,
                    tx_signature=tx_reference,
                )
            )
        except StoreUnavailableError as e:
            # Root is live on the ledger; the next cycle reconciles the log
            return self._fail(start, str(e), tree, attempts, tx_reference)

        logger.info(
            "Root published",
            root=tree.root_hex[:16] + "...",
            leaf_count=tree.leaf_count,
            tx_reference=tx_reference,
            attempts=attempts,
        )
        return self._result(
            start,
            SyncOutcome.PUBLISHED,
            tree,
            tx_reference=tx_reference,
            attempts=attempts,
        )

    async def _publish(self, root: bytes) -> str:
        """Single publish attempt, bounded by the publish timeout."""
        try:
            return await asyncio.wait_for(
                self._ledger.update_root(self._config_handle, root, self._authority),
                timeout=self._publish_timeout,
            )
        except asyncio.TimeoutError as e:
            raise LedgerSyncError(
                f"Ledger publish timed out after {self._publish_timeout}s"
            ) from e

    async def _read_ledger_root(self) -> bytes | None:
        """Current ledger root, or None when it cannot be read right now."""
        try:
            return await asyncio.wait_for(
                self._ledger.get_current_root(self._config_handle),
                timeout=self._publish_timeout,
            )
        except (LedgerClientError, asyncio.TimeoutError) as e:
            logger.warning(
                "Could not read ledger root before publishing",
                error=str(e) or type(e).__name__,
            )
            return None

    async def _record_reconciled(
        self,
        start: float,
        tree: MerkleTree,
        attempts: int = 0,
    ) -> SyncResult:
        self._state = SyncState.RECORDING
        try:
            await self._root_log.append(
                RootRecord(root_hash=tree.root, is_synced_on_chain=True)
            )
        except StoreUnavailableError as e:
            return self._fail(start, str(e), tree, attempts)

        logger.info(
            "Ledger already holds root, recorded as synced",
            root=tree.root_hex[:16] + "...",
            attempts=attempts,
        )
        return self._result(start, SyncOutcome.RECONCILED, tree, attempts=attempts)

    async def _record_unsynced(self, tree: MerkleTree) -> None:
        self._state = SyncState.RECORDING
        try:
            await self._root_log.append(
                RootRecord(root_hash=tree.root, is_synced_on_chain=False)
            )
        except StoreUnavailableError as e:
            logger.error("Failed to record unsynced root", error=str(e))

    def _before_retry(self, retry_state: RetryCallState) -> None:
        self._state = SyncState.RETRYING
        SYNC_PUBLISH_RETRIES.inc()
        logger.warning(
            "Publish attempt failed, retrying",
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
        )

    def _fail(
        self,
        start: float,
        error: str,
        tree: MerkleTree | None = None,
        attempts: int = 0,
        tx_reference: str | None = None,
    ) -> SyncResult:
        self._state = SyncState.FAILED
        logger.error("Sync cycle failed", error=error)
        return self._result(
            start,
            SyncOutcome.FAILED,
            tree,
            tx_reference=tx_reference,
            error=error,
            attempts=attempts,
        )

    def _result(
        self,
        start: float,
        outcome: SyncOutcome,
        tree: MerkleTree | None,
        tx_reference: str | None = None,
        error: str | None = None,
        attempts: int = 0,
    ) -> SyncResult:
        duration = time.monotonic() - start
        SYNC_CYCLES_TOTAL.labels(outcome=outcome.value).inc()
        SYNC_DURATION.observe(duration)
        return SyncResult(
            outcome=outcome,
            root_hash=tree.root_hex if tree else None,
            leaf_count=tree.leaf_count if tree else 0,
            tx_reference=tx_reference,
            error=error,
            attempts=attempts,
            duration_seconds=duration,
        )
