"""
Subscription Root Service - Repositories

Database operations for subscriber records and the root publication log.
"""

from typing import Protocol

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subroot.services.records import RootRecord, SubscriberRecord

logger = structlog.get_logger(__name__)


class StoreUnavailableError(Exception):
    """The backing store could not be read or written."""

    pass


class SubscriberStore(Protocol):
    """Read-only view of the subscriber table."""

    async def list_all(self) -> list[SubscriberRecord]:
        """Return every subscriber from one consistent snapshot."""
        ...

    async def get(self, identity: bytes) -> SubscriberRecord | None:
        ...


class RootLog(Protocol):
    """Append-only log of root publications."""

    async def latest(self) -> RootRecord | None:
        ...

    async def latest_synced(self) -> RootRecord | None:
        ...

    async def append(self, record: RootRecord) -> RootRecord:
        ...

    async def list_recent(self, limit: int = 50) -> list[RootRecord]:
        """Most recent records, newest first."""
        ...


class SubscriberRepository:
    """Repository for subscriber_storage reads."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """
        Initialize repository with a session factory.

        Each call opens its own session so a long-lived service never
        holds a connection between sync cycles.

        Args:
            session_factory: Async SQLAlchemy session factory
        """
        self._session_factory = session_factory

    async def list_all(self) -> list[SubscriberRecord]:
        """
        Read the full subscriber set.

        Runs in a single REPEATABLE READ, read-only transaction so the
        caller never sees a partially applied concurrent write.

        Raises:
            StoreUnavailableError: If the database cannot be read
        """
        query = text("""
            SELECT identity, expiration_ts, last_updated_at
            FROM subscriber_storage
            ORDER BY identity
        """)

        try:
            async with self._session_factory() as session:
                conn = await session.connection(
                    execution_options={
                        "isolation_level": "REPEATABLE READ",
                        "postgresql_readonly": True,
                    }
                )
                result = await conn.execute(query)
                rows = result.fetchall()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to read subscriber snapshot", error=str(e))
            raise StoreUnavailableError(f"Subscriber store unavailable: {e}") from e

        return [
            SubscriberRecord(
                identity=bytes.fromhex(row.identity),
                expiration_ts=row.expiration_ts,
                last_updated_at=row.last_updated_at,
            )
            for row in rows
        ]

    async def get(self, identity: bytes) -> SubscriberRecord | None:
        """
        Get a subscriber by identity.

        Args:
            identity: 32-byte identity

        Returns:
            SubscriberRecord or None if not found
        """
        query = text("""
            SELECT identity, expiration_ts, last_updated_at
            FROM subscriber_storage
            WHERE identity = :identity
        """)

        try:
            async with self._session_factory() as session:
                result = await session.execute(query, {"identity": identity.hex()})
                row = result.fetchone()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Subscriber store unavailable: {e}") from e

        if not row:
            return None

        return SubscriberRecord(
            identity=bytes.fromhex(row.identity),
            expiration_ts=row.expiration_ts,
            last_updated_at=row.last_updated_at,
        )


class RootStateRepository:
    """Repository for the merkle_state publication log."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def latest(self) -> RootRecord | None:
        """
        Get the most recent root record.

        Returns:
            RootRecord or None if nothing was recorded yet
        """
        query = text("""
            SELECT id, root_hash, is_synced_on_chain, tx_signature, created_at
            FROM merkle_state
            ORDER BY id DESC
            LIMIT 1
        """)

        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                row = result.fetchone()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Root log unavailable: {e}") from e

        if not row:
            return None
        return self._row_to_record(row)

    async def latest_synced(self) -> RootRecord | None:
        """Get the most recent root known to be on the ledger."""
        query = text("""
            SELECT id, root_hash, is_synced_on_chain, tx_signature, created_at
            FROM merkle_state
            WHERE is_synced_on_chain = TRUE
            ORDER BY id DESC
            LIMIT 1
        """)

        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                row = result.fetchone()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Root log unavailable: {e}") from e

        if not row:
            return None
        return self._row_to_record(row)

    async def append(self, record: RootRecord) -> RootRecord:
        """
        Append a root record to the log.

        Args:
            record: RootRecord to persist

        Returns:
            The record with its database ID set
        """
        query = text("""
            INSERT INTO merkle_state (
                root_hash, is_synced_on_chain, tx_signature, created_at
            ) VALUES (
                :root_hash, :is_synced_on_chain, :tx_signature, :created_at
            )
            RETURNING id
        """)

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    query,
                    {
                        "root_hash": record.root_hex,
                        "is_synced_on_chain": record.is_synced_on_chain,
                        "tx_signature": record.tx_signature,
                        "created_at": record.created_at,
                    },
                )
                row = result.fetchone()
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error("Failed to append root record", error=str(e))
            raise StoreUnavailableError(f"Root log unavailable: {e}") from e

        record.id = row.id if row else None

        logger.debug(
            "Root record appended",
            record_id=record.id,
            root=record.root_hex[:16] + "...",
            synced=record.is_synced_on_chain,
        )
        return record

    async def list_recent(self, limit: int = 50) -> list[RootRecord]:
        """List the most recent root records, newest first."""
        query = text("""
            SELECT id, root_hash, is_synced_on_chain, tx_signature, created_at
            FROM merkle_state
            ORDER BY id DESC
            LIMIT :limit
        """)

        try:
            async with self._session_factory() as session:
                result = await session.execute(query, {"limit": limit})
                rows = result.fetchall()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailableError(f"Root log unavailable: {e}") from e

        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row) -> RootRecord:
        return RootRecord(
            id=row.id,
            root_hash=bytes.fromhex(row.root_hash),
            is_synced_on_chain=row.is_synced_on_chain,
            tx_signature=row.tx_signature,
            created_at=row.created_at,
        )
