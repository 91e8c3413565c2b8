"""
Subscription Root Service - In-Memory Ledger

Reference implementation of the ledger program, used for local development
and as the ledger side of the shared verification test vectors.

It mirrors the on-ledger behavior: one config slot derived from a seed,
authority fixed at initialization, root updates accepted only with a valid
authority signature, and membership checked against the stored root with
the ledger's own clock.
"""

import asyncio
import hashlib
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import structlog

from subroot.crypto.authority import (
    AuthoritySigner,
    update_root_message,
    verify_authority_signature,
)
from subroot.crypto.leaf import encode_leaf
from subroot.crypto.merkle import verify_membership
from subroot.services.ledger_client import (
    AuthorityMismatchError,
    ConfigAlreadyInitializedError,
    ConfigNotFoundError,
    LedgerClient,
)

logger = structlog.get_logger(__name__)

CONFIG_SEED = b"config"


@dataclass
class SubscriptionConfig:
    """Ledger-side config account."""

    authority: bytes
    merkle_root: bytes


def derive_config_handle(namespace: str) -> str:
    """Deterministic config address for a namespace."""
    return hashlib.sha256(CONFIG_SEED + namespace.encode("utf-8")).hexdigest()


class InMemoryLedgerClient(LedgerClient):
    """Ledger program simulated in process memory."""

    def __init__(
        self,
        namespace: str = "subroot",
        clock: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize the in-memory ledger.

        Args:
            namespace: Seed namespace for the config address
            clock: Ledger clock returning Unix seconds
        """
        self._namespace = namespace
        self._clock = clock or (lambda: int(time.time()))
        self._configs: dict[str, SubscriptionConfig] = {}
        self._slot = 0
        self._lock = asyncio.Lock()

    @property
    def slot(self) -> int:
        """Number of transactions applied so far."""
        return self._slot

    async def initialize_config(
        self,
        initial_root: bytes,
        authority: AuthoritySigner,
    ) -> str:
        handle = derive_config_handle(self._namespace)
        async with self._lock:
            if handle in self._configs:
                raise ConfigAlreadyInitializedError(f"Config {handle[:16]}... already exists")
            self._configs[handle] = SubscriptionConfig(
                authority=authority.public_key,
                merkle_root=initial_root,
            )
            self._slot += 1

        logger.info("Ledger config initialized", handle=handle[:16] + "...")
        return handle

    async def update_root(
        self,
        config_handle: str,
        new_root: bytes,
        authority: AuthoritySigner,
    ) -> str:
        signature = authority.sign_update(config_handle, new_root)

        async with self._lock:
            config = self._get_config(config_handle)

            if authority.public_key != config.authority or not verify_authority_signature(
                config.authority,
                update_root_message(config_handle, new_root),
                signature,
            ):
                raise AuthorityMismatchError("You are not authorized to update the root")

            config.merkle_root = new_root
            self._slot += 1
            tx_reference = hashlib.sha256(
                signature + self._slot.to_bytes(8, "little")
            ).hexdigest()

        logger.info(
            "Ledger root updated",
            root=new_root.hex()[:16] + "...",
            tx_reference=tx_reference[:16] + "...",
        )
        return tx_reference

    async def get_current_root(self, config_handle: str) -> bytes:
        return self._get_config(config_handle).merkle_root

    async def get_authority(self, config_handle: str) -> bytes:
        return self._get_config(config_handle).authority

    async def verify_membership(
        self,
        config_handle: str,
        identity: bytes,
        expiration: int,
        siblings: Sequence[bytes],
    ) -> bool:
        config = self._get_config(config_handle)
        leaf = encode_leaf(identity, expiration)
        verify_membership(
            leaf,
            siblings,
            config.merkle_root,
            expiration=expiration,
            now=self._clock(),
        )
        return True

    def _get_config(self, config_handle: str) -> SubscriptionConfig:
        config = self._configs.get(config_handle)
        if config is None:
            raise ConfigNotFoundError(f"Config {config_handle[:16]}... not initialized")
        return config
