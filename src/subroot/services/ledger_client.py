"""
Subscription Root Service - Ledger Client

Interface to the ledger program that stores the published subscription root,
plus an HTTP client for a ledger gateway.

The ledger keeps a single config slot: the authority public key and the
current 32-byte root. Only the authority may update the root; anyone may ask
the ledger to verify a membership proof against it.
"""

import abc
from collections.abc import Sequence
from typing import Any

import httpx
import structlog

from subroot.core.config import settings
from subroot.crypto.authority import AuthoritySigner
from subroot.crypto.merkle import ProofMismatchError, SubscriptionExpiredError

logger = structlog.get_logger(__name__)


class LedgerClientError(Exception):
    """Base exception for ledger client errors."""

    pass


class AuthorityMismatchError(LedgerClientError):
    """Signer is not the authority stored in the ledger config. Not retryable."""

    pass


class LedgerSyncError(LedgerClientError):
    """Transient failure talking to the ledger (connectivity, congestion, timeout)."""

    pass


class ConfigAlreadyInitializedError(LedgerClientError):
    """The ledger config slot already exists."""

    pass


class ConfigNotFoundError(LedgerClientError):
    """The ledger config slot does not exist."""

    pass


class LedgerClient(abc.ABC):
    """Operations the root service needs from the ledger."""

    @abc.abstractmethod
    async def initialize_config(
        self,
        initial_root: bytes,
        authority: AuthoritySigner,
    ) -> str:
        """
        Create the config slot holding the root and its authority.

        Returns:
            Config handle (hex-encoded 32-byte address)

        Raises:
            ConfigAlreadyInitializedError: If the config already exists
        """

    @abc.abstractmethod
    async def update_root(
        self,
        config_handle: str,
        new_root: bytes,
        authority: AuthoritySigner,
    ) -> str:
        """
        Replace the stored root.

        Returns:
            Ledger transaction reference

        Raises:
            AuthorityMismatchError: If the signer is not the stored authority
            LedgerSyncError: On transient failures
        """

    @abc.abstractmethod
    async def get_current_root(self, config_handle: str) -> bytes:
        """
        Read the root currently stored on the ledger.

        Raises:
            ConfigNotFoundError: If the config does not exist
            LedgerSyncError: On transient failures
        """

    @abc.abstractmethod
    async def verify_membership(
        self,
        config_handle: str,
        identity: bytes,
        expiration: int,
        siblings: Sequence[bytes],
    ) -> bool:
        """
        Ask the ledger to verify a membership proof against its stored root
        and its own clock.

        Returns:
            True on success

        Raises:
            SubscriptionExpiredError: If expiration <= ledger time
            ProofMismatchError: If the proof does not match the stored root
        """

    async def connect(self) -> None:
        """Open any underlying connection."""

    async def disconnect(self) -> None:
        """Close any underlying connection."""


class HttpLedgerClient(LedgerClient):
    """
    Ledger gateway client over HTTP.

    The gateway relays calls to the ledger program and returns JSON.
    Status codes are mapped onto the ledger error taxonomy:
    401/403 -> AuthorityMismatchError, 404 -> ConfigNotFoundError,
    409 -> ConfigAlreadyInitializedError, 422 -> verification failure,
    429/5xx and transport errors -> LedgerSyncError.
    """

    def __init__(
        self,
        base_url: str = settings.LEDGER_GATEWAY_URL,
        timeout: float = settings.LEDGER_REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize HTTP ledger client.

        Args:
            base_url: Ledger gateway base URL
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        if self._client is not None:
            return

        logger.info("Connecting to ledger gateway", url=self._base_url)
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout),
            headers={"Content-Type": "application/json"},
            transport=self._transport,
        )

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("Disconnected from ledger gateway")

    async def initialize_config(
        self,
        initial_root: bytes,
        authority: AuthoritySigner,
    ) -> str:
        data = await self._request(
            "POST",
            "/configs",
            json={
                "initial_root": initial_root.hex(),
                "authority": authority.public_key.hex(),
            },
        )
        handle = self._field(data, "handle")
        logger.info("Initialized ledger config", handle=handle)
        return handle

    async def update_root(
        self,
        config_handle: str,
        new_root: bytes,
        authority: AuthoritySigner,
    ) -> str:
        signature = authority.sign_update(config_handle, new_root)
        data = await self._request(
            "POST",
            f"/configs/{config_handle}/root",
            json={
                "new_root": new_root.hex(),
                "authority": authority.public_key.hex(),
                "signature": signature.hex(),
            },
        )
        return self._field(data, "tx_reference")

    async def get_current_root(self, config_handle: str) -> bytes:
        data = await self._request("GET", f"/configs/{config_handle}")
        value = self._field(data, "merkle_root")
        try:
            root = bytes.fromhex(value)
        except (TypeError, ValueError) as e:
            raise LedgerClientError(f"Malformed ledger root: {value!r}") from e
        if len(root) != 32:
            raise LedgerClientError(f"Ledger root must be 32 bytes, got {len(root)}")
        return root

    async def verify_membership(
        self,
        config_handle: str,
        identity: bytes,
        expiration: int,
        siblings: Sequence[bytes],
    ) -> bool:
        await self._request(
            "POST",
            f"/configs/{config_handle}/verify",
            json={
                "identity": identity.hex(),
                "expiration": expiration,
                "proof": [s.hex() for s in siblings],
            },
        )
        return True

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and map failures onto ledger errors."""
        if self._client is None:
            await self.connect()

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise LedgerSyncError(f"Ledger gateway unreachable: {e}") from e

        if response.is_success:
            try:
                data = response.json()
            except ValueError as e:
                raise LedgerClientError(f"Ledger gateway returned invalid JSON: {e}") from e
            if not isinstance(data, dict):
                raise LedgerClientError("Ledger gateway returned a non-object body")
            return data

        self._raise_for_status(response)
        return {}

    @staticmethod
    def _field(data: dict[str, Any], key: str) -> Any:
        try:
            return data[key]
        except KeyError as e:
            raise LedgerClientError(f"Ledger response missing '{key}'") from e

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        code = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None
        detail = body.get("error", response.text) if isinstance(body, dict) else response.text

        if code in (401, 403):
            raise AuthorityMismatchError(f"Ledger rejected authority: {detail}")
        if code == 404:
            raise ConfigNotFoundError(f"Ledger config not found: {detail}")
        if code == 409:
            raise ConfigAlreadyInitializedError(f"Ledger config already initialized: {detail}")
        if code == 422:
            if detail == "SubscriptionExpired":
                raise SubscriptionExpiredError("Ledger reports subscription expired")
            raise ProofMismatchError("Ledger rejected membership proof")
        if code == 429 or code >= 500:
            logger.warning(
                "Ledger gateway transient failure",
                status_code=code,
                response=response.text[:200],
            )
            raise LedgerSyncError(f"Ledger gateway error: {code}")

        raise LedgerClientError(f"Unexpected ledger response {code}: {detail}")


def get_ledger_client(backend: str = settings.LEDGER_BACKEND) -> LedgerClient:
    """Create the ledger client selected by configuration."""
    if backend == "http":
        return HttpLedgerClient()
    if backend == "memory":
        from subroot.services.memory_ledger import InMemoryLedgerClient

        return InMemoryLedgerClient()
    raise ValueError(f"Unknown ledger backend: {backend}")
