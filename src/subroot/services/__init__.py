"""
Subscription Root Service - Services Package

Provides the ledger clients, root synchronization and proof services.

Note: Imports are performed lazily to avoid circular import issues.
Use direct imports from submodules when needed:
    from subroot.services.root_sync import RootSyncService
    from subroot.services.ledger_client import HttpLedgerClient
    etc.
"""

__all__ = [
    "LedgerClient",
    "HttpLedgerClient",
    "InMemoryLedgerClient",
    "AuthorityMismatchError",
    "LedgerSyncError",
    "RootSyncService",
    "SyncResult",
    "SyncState",
    "ProofService",
    "MembershipProof",
    "SubscriberRecord",
    "RootRecord",
]
