"""
Subscription Root Service - Database Package

Provides async database session management and repository layer.
"""

from subroot.db.session import (
    async_session_factory,
    close_db,
    engine,
    init_db,
)

__all__ = [
    "engine",
    "async_session_factory",
    "init_db",
    "close_db",
]
