"""
Chain Connections

One owned connection per chain, kept in a registry keyed by chain key.
Connect and query calls are bounded by timeouts; the transaction watch
stream is not (finality can take minutes).
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional

from loguru import logger

from .errors import ChainUnreachable, QueryFailed, TransactionFailed, XcmTransferError
from .topology import ChainConfig, NetworkTopology


class TxPhase(str, Enum):
    BROADCAST = 'Broadcast'
    IN_BLOCK = 'InBlock'
    FINALIZED = 'Finalized'


@dataclass(frozen=True)
class ChainEvent:
    """Runtime event emitted alongside an extrinsic"""
    section: str
    method: str
    data: Any = None

    def matches(self, section: str, method: str) -> bool:
        return self.section == section and self.method == method


@dataclass(frozen=True)
class WatchEvent:
    """One status update from submit-and-watch"""
    phase: TxPhase
    events: List[ChainEvent] = field(default_factory=list)
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    block_hash: Optional[str] = None


@dataclass(frozen=True)
class AccountData:
    free: int
    reserved: int


class WatchSubscription(ABC):
    """Async stream of WatchEvent that must be released with unsubscribe()"""

    def __aiter__(self) -> AsyncIterator[WatchEvent]:
        return self.events()

    @abstractmethod
    def events(self) -> AsyncIterator[WatchEvent]:
        ...

    @abstractmethod
    async def unsubscribe(self) -> None:
        ...


class ChainTransport(ABC):
    """
    Per-chain RPC transport (external collaborator)

    Implementations wrap whatever client library speaks to the node. They
    raise ConnectionError/OSError for transport failures; any other
    exception from query() is treated as unusable data.
    """

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def query(self, path: str, *args: Any) -> Any:
        ...

    @abstractmethod
    async def submit_and_watch(self, signed_payload: Any) -> WatchSubscription:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


@dataclass
class ConnectionHealth:
    """Connection status"""
    chain: str
    is_connected: bool
    last_checked: datetime
    error_message: Optional[str] = None

    def __repr__(self):
        status = "✓ CONNECTED" if self.is_connected else "✗ UNREACHABLE"
        return f"ConnectionHealth({self.chain}: {status})"


class ChainConnection:
    """
    Typed access to a single chain

    Features:
    - Bounded connect/query timeouts (expiry -> ChainUnreachable)
    - Account balance query decoding
    - Serialized submissions
    - Health tracking
    """

    ACCOUNT_QUERY = 'system.account'

    def __init__(
        self,
        chain: ChainConfig,
        transport: ChainTransport,
        connect_timeout: float = 30.0,
        query_timeout: float = 15.0
    ):
        self.chain = chain
        self._transport = transport
        self.connect_timeout = connect_timeout
        self.query_timeout = query_timeout

        self._connected = False
        self._submit_lock = asyncio.Lock()
        self.health = ConnectionHealth(
            chain=chain.key,
            is_connected=False,
            last_checked=datetime.now(timezone.utc),
            error_message="Not connected"
        )

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _mark(self, connected: bool, error: Optional[str] = None):
        self._connected = connected
        self.health = ConnectionHealth(
            chain=self.chain.key,
            is_connected=connected,
            last_checked=datetime.now(timezone.utc),
            error_message=error
        )

    async def connect(self):
        """
        Open the transport

        Raises:
            ChainUnreachable: timeout or transport error
        """
        if self._connected:
            return

        try:
            await asyncio.wait_for(self._transport.connect(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            error = f"connect timed out after {self.connect_timeout}s"
            self._mark(False, error)
            raise ChainUnreachable(self.chain.key, error) from None
        except (ConnectionError, OSError) as e:
            self._mark(False, str(e))
            raise ChainUnreachable(self.chain.key, f"connect failed: {e}") from e

        self._mark(True)
        logger.info(f"✓ Connected to {self.chain.name} ({self.chain.ws_url})")

    async def query(self, path: str, *args: Any) -> Any:
        """
        Run a storage query

        Args:
            path: Dotted storage path, e.g. 'system.account'
            *args: Storage keys

        Returns:
            Raw transport value

        Raises:
            ChainUnreachable: not connected, timeout or transport error
            QueryFailed: transport raised something other than a connection error
        """
        if not self._connected:
            raise ChainUnreachable(self.chain.key, "not connected")

        try:
            return await asyncio.wait_for(self._transport.query(path, *args), timeout=self.query_timeout)
        except asyncio.TimeoutError:
            error = f"{path} timed out after {self.query_timeout}s"
            self._mark(False, error)
            raise ChainUnreachable(self.chain.key, error) from None
        except (ConnectionError, OSError) as e:
            self._mark(False, str(e))
            raise ChainUnreachable(self.chain.key, f"{path} failed: {e}") from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise QueryFailed(self.chain.key, path, str(e)) from e

    async def query_account(self, address: str) -> AccountData:
        """
        Native balance of `address` in minor units

        Raises:
            ChainUnreachable, QueryFailed
        """
        raw = await self.query(self.ACCOUNT_QUERY, address)

        try:
            data = raw['data']
            free = int(str(data['free']))
            reserved = int(str(data['reserved']))
        except (KeyError, TypeError, ValueError) as e:
            raise QueryFailed(self.chain.key, self.ACCOUNT_QUERY, f"unexpected account data: {raw!r}") from e

        if free < 0 or reserved < 0:
            raise QueryFailed(self.chain.key, self.ACCOUNT_QUERY, f"negative balance in {raw!r}")

        return AccountData(free=free, reserved=reserved)

    async def submit_and_watch(self, signed_payload: Any) -> WatchSubscription:
        """
        Submit a signed extrinsic and return its status stream

        No timeout is applied to the stream itself.

        Raises:
            ChainUnreachable: not connected or the transport dropped
            TransactionFailed: the node rejected the extrinsic (e.g. 1010 Invalid Transaction)
        """
        if not self._connected:
            raise ChainUnreachable(self.chain.key, "not connected")

        async with self._submit_lock:
            try:
                subscription = await self._transport.submit_and_watch(signed_payload)
            except (ConnectionError, OSError, asyncio.TimeoutError) as e:
                self._mark(False, str(e))
                raise ChainUnreachable(self.chain.key, f"submit failed: {e}") from e
            except XcmTransferError:
                raise
            except Exception as e:
                logger.error(f"Submission rejected by {self.chain.key}: {e}")
                raise TransactionFailed(f"Submission rejected by {self.chain.key}: {e}") from e

        logger.debug(f"Submitted extrinsic on {self.chain.key}, watching status")
        return subscription

    async def close(self):
        try:
            await self._transport.close()
        except (ConnectionError, OSError, RuntimeError) as e:
            logger.debug(f"Error closing {self.chain.key} transport: {e}")
        finally:
            self._mark(False, "closed")


class ChainRegistry:
    """
    Owned connection handles keyed by chain key

    Consumers get read-only access; only the registry opens and closes
    connections.
    """

    def __init__(
        self,
        topology: NetworkTopology,
        transport_factory: Callable[[ChainConfig], ChainTransport],
        connect_timeout: float = 30.0,
        query_timeout: float = 15.0
    ):
        self.topology = topology
        self._connections: Dict[str, ChainConnection] = {
            key: ChainConnection(chain, transport_factory(chain), connect_timeout, query_timeout)
            for key, chain in topology.chains.items()
        }

    @property
    def connections(self) -> Mapping[str, ChainConnection]:
        return MappingProxyType(self._connections)

    def get(self, chain_key: str) -> ChainConnection:
        try:
            return self._connections[chain_key]
        except KeyError:
            raise ChainUnreachable(chain_key, "no connection registered") from None

    async def connect_all(self) -> Dict[str, Optional[str]]:
        """
        Connect every chain concurrently

        Returns:
            Dict chain_key -> error message (None when connected)
        """
        async def _connect(key: str, connection: ChainConnection) -> Optional[str]:
            try:
                await connection.connect()
                return None
            except ChainUnreachable as e:
                logger.error(f"✗ Failed to connect to {key}: {e}")
                return str(e)

        keys = list(self._connections)
        results = await asyncio.gather(*(_connect(k, self._connections[k]) for k in keys))
        errors = dict(zip(keys, results))

        failed = [k for k, err in errors.items() if err]
        if failed:
            logger.warning(f"Connection issues: {len(failed)} network(s) failed: {failed}")
        else:
            logger.info("Connected to all networks")

        return errors

    def health_report(self) -> Dict[str, ConnectionHealth]:
        return {key: conn.health for key, conn in self._connections.items()}

    async def close(self):
        """Close all connections"""
        if not self._connections:
            return
        await asyncio.gather(
            *(conn.close() for conn in self._connections.values()),
            return_exceptions=True
        )
        logger.debug(f"Closed {len(self._connections)} chain connections")
