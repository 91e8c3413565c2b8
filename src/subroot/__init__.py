"""
Subscription Root Service

Commits the subscriber set to a single Merkle root and keeps it
published on the ledger.
"""

__version__ = "1.0.0"
