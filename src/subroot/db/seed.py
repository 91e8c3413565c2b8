"""
Subscription Root Service - Development Seeding

Populates subscriber_storage with freshly generated identities so a local
stack has something to commit to.

Usage:
    subroot-seed 100
    subroot-seed 10 --ttl 3600

Exit Codes:
    0 = Subscribers inserted
    1 = Database error
"""

import argparse
import asyncio
import sys
import time

import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subroot.core.logging import setup_logging
from subroot.db.session import async_session_factory, close_db, init_db
from subroot.services.records import SubscriberRecord, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 30 * 24 * 60 * 60


def generate_identity() -> bytes:
    """Generate a random Ed25519 public key to use as an identity."""
    return Ed25519PrivateKey.generate().public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


async def generate_subscribers(
    session: AsyncSession,
    count: int,
    ttl_seconds: int = DEFAULT_TTL_SECONDS,
    now: int | None = None,
) -> list[SubscriberRecord]:
    """
    Insert `count` new subscribers expiring `ttl_seconds` from now.

    Args:
        session: Database session
        count: Number of subscribers to create
        ttl_seconds: Subscription lifetime
        now: Reference Unix time (defaults to the wall clock)

    Returns:
        The inserted records
    """
    if now is None:
        now = int(time.time())

    query = text("""
        INSERT INTO subscriber_storage (identity, expiration_ts, last_updated_at)
        VALUES (:identity, :expiration_ts, :last_updated_at)
    """)

    records = []
    for _ in range(count):
        record = SubscriberRecord(
            identity=generate_identity(),
            expiration_ts=now + ttl_seconds,
            last_updated_at=utcnow(),
        )
        await session.execute(
            query,
            {
                "identity": record.identity_hex,
                "expiration_ts": record.expiration_ts,
                "last_updated_at": record.last_updated_at,
            },
        )
        records.append(record)

    await session.commit()

    logger.info("Seeded subscribers", count=count, ttl_seconds=ttl_seconds)
    return records


async def _seed(count: int, ttl_seconds: int) -> list[SubscriberRecord]:
    await init_db()
    try:
        async with async_session_factory() as session:
            return await generate_subscribers(session, count, ttl_seconds)
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Insert freshly generated subscribers into subscriber_storage"
    )
    parser.add_argument(
        "count",
        type=int,
        help="Number of subscribers to create",
    )
    parser.add_argument(
        "--ttl",
        type=int,
        default=DEFAULT_TTL_SECONDS,
        help=f"Subscription lifetime in seconds (default: {DEFAULT_TTL_SECONDS})",
    )

    args = parser.parse_args(argv)
    if args.count < 1:
        parser.error("count must be at least 1")

    setup_logging()

    try:
        records = asyncio.run(_seed(args.count, args.ttl))
    except (SQLAlchemyError, OSError) as e:
        print(f"Seeding failed: {e}", file=sys.stderr)
        return 1

    for record in records:
        print(f"{record.identity_hex} {record.expiration_ts}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
