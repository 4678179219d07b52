"""
Balance Aggregator

Fetches per (chain, asset) balances and hands out immutable snapshots.
Native balances come from the chain's account query; reserve-backed assets
held as foreign assets come from a separate surface keyed by collection id.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

import aiohttp
from loguru import logger

from .amount import Amount
from .chain_connection import ChainRegistry
from .errors import InvalidAmountError, QueryFailed, XcmTransferError
from .topology import FOREIGN_SURFACE, NATIVE_SURFACE, NetworkTopology

BalanceKey = Tuple[str, str]


@dataclass(frozen=True)
class BalanceSnapshot:
    """Balance of one asset on one chain at one point in time"""
    chain: str
    asset: str
    free: Amount
    reserved: Amount
    observed_at: datetime
    surface: str = NATIVE_SURFACE

    @property
    def total(self) -> Amount:
        return self.free + self.reserved

    def to_display_dict(self) -> Dict[str, str]:
        return {
            'chain': self.chain,
            'asset': self.asset,
            'free': self.free.to_display_string(),
            'reserved': self.reserved.to_display_string(),
            'total': self.total.to_display_string(),
            'observed_at': self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class BalanceReport:
    """Result of one poll cycle across all chains"""
    snapshots: Mapping[BalanceKey, BalanceSnapshot] = field(default_factory=dict)
    errors: Mapping[BalanceKey, XcmTransferError] = field(default_factory=dict)

    def get(self, chain: str, asset: str) -> Optional[BalanceSnapshot]:
        return self.snapshots.get((chain, asset))


class ForeignAssetSource(ABC):
    """Balance surface for assets held as foreign assets"""

    @abstractmethod
    async def fetch_balance(self, chain: str, collection_id: int, address: str, decimals: int) -> Amount:
        ...

    async def close(self):
        pass


class ChainForeignAssetSource(ForeignAssetSource):
    """Foreign-asset balance through the holding chain's own storage query"""

    def __init__(self, registry: ChainRegistry, query_path: str = 'fungible.balance'):
        self.registry = registry
        self.query_path = query_path

    async def fetch_balance(self, chain: str, collection_id: int, address: str, decimals: int) -> Amount:
        connection = self.registry.get(chain)
        raw = await connection.query(self.query_path, collection_id, {'Substrate': address})

        value = raw.get('balance') if isinstance(raw, dict) else raw
        if value is None:
            return Amount.zero(decimals)

        try:
            return Amount.from_minor(str(value), decimals)
        except InvalidAmountError as e:
            raise QueryFailed(chain, self.query_path, str(e)) from e


class RestForeignAssetSource(ForeignAssetSource):
    """
    Foreign-asset balance from a chain REST API

    Expects a JSON body {"balance": "<minor units>", "decimals": <int>}.
    """

    def __init__(
        self,
        base_url: str,
        path_template: str = '/fungible/{collection_id}/balance/{address}',
        timeout_seconds: float = 10.0
    ):
        self.base_url = base_url.rstrip('/')
        self.path_template = path_template
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def fetch_balance(self, chain: str, collection_id: int, address: str, decimals: int) -> Amount:
        path = self.path_template.format(collection_id=collection_id, address=address)
        url = f"{self.base_url}{path}"
        session = await self._get_session()

        async with session.get(url) as response:
            if response.status != 200:
                raise QueryFailed(chain, path, f"HTTP {response.status}")
            body = await response.json(content_type=None)

        if not isinstance(body, dict) or 'balance' not in body:
            raise QueryFailed(chain, path, f"unexpected body: {body!r}")

        reported = body.get('decimals')
        if reported is not None and int(reported) != decimals:
            raise QueryFailed(chain, path, f"decimals {reported} do not match configured {decimals}")

        try:
            return Amount.from_minor(str(body['balance']), decimals)
        except InvalidAmountError as e:
            raise QueryFailed(chain, path, str(e)) from e

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()


class BalanceAggregator:
    """
    Poll-cycle balance aggregation

    Features:
    - Native balances via the chain connection (errors propagate)
    - Foreign-asset balances via a separate source (errors degrade to zero)
    - Concurrent refresh of every chain with per-chain error isolation
    - Latest report replaced wholesale, never mutated
    """

    def __init__(
        self,
        registry: ChainRegistry,
        topology: NetworkTopology,
        foreign_source: Optional[ForeignAssetSource] = None
    ):
        self.registry = registry
        self.topology = topology
        self.foreign_source = foreign_source or ChainForeignAssetSource(registry)
        self._latest = BalanceReport()

    @property
    def latest(self) -> BalanceReport:
        return self._latest

    async def refresh(self, chain: str, account: str, asset: Optional[str] = None) -> BalanceSnapshot:
        """
        Fetch a fresh snapshot for one (chain, asset)

        Args:
            chain: Chain key
            account: Account address
            asset: Asset symbol (defaults to the chain's native asset)

        Returns:
            BalanceSnapshot

        Raises:
            ChainUnreachable, QueryFailed: native surface failures only
        """
        chain_config = self.topology.get_chain(chain)
        asset = asset or chain_config.native_asset
        asset_config = self.topology.get_asset(asset)
        surface = self.topology.balance_surface(chain, asset)

        if surface == NATIVE_SURFACE:
            data = await self.registry.get(chain).query_account(account)
            snapshot = BalanceSnapshot(
                chain=chain,
                asset=asset,
                free=Amount(data.free, asset_config.decimals),
                reserved=Amount(data.reserved, asset_config.decimals),
                observed_at=datetime.now(timezone.utc),
                surface=NATIVE_SURFACE,
            )
        elif surface == FOREIGN_SURFACE:
            free = await self._fetch_foreign(chain, chain_config.foreign_assets[asset], account, asset_config.decimals)
            snapshot = BalanceSnapshot(
                chain=chain,
                asset=asset,
                free=free,
                reserved=Amount.zero(asset_config.decimals),
                observed_at=datetime.now(timezone.utc),
                surface=FOREIGN_SURFACE,
            )
        else:
            raise QueryFailed(chain, asset, f"{chain} does not hold {asset}")

        logger.debug(
            f"{chain}/{asset} balance: free={snapshot.free} reserved={snapshot.reserved} "
            f"(raw free {snapshot.free.to_minor_string()}, {asset_config.decimals} decimals)"
        )
        return snapshot

    async def _fetch_foreign(self, chain: str, collection_id: int, account: str, decimals: int) -> Amount:
        # A missing ledger entry is normal for new accounts, so any failure reads as zero
        try:
            return await self.foreign_source.fetch_balance(chain, collection_id, account, decimals)
        except (XcmTransferError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning(f"Foreign asset balance on {chain} (collection {collection_id}) unavailable: {e}, using zero")
            return Amount.zero(decimals)

    async def refresh_all(self, account: str) -> BalanceReport:
        """
        Refresh every (chain, asset) holding concurrently

        A slow or failing chain never blocks the others; its error is
        reported under its own key.

        Args:
            account: Account address

        Returns:
            BalanceReport (also stored as the latest report)
        """
        pairs = self.topology.holdings()

        async def _one(chain: str, asset: str):
            try:
                return await self.refresh(chain, account, asset)
            except XcmTransferError as e:
                logger.warning(f"Failed to fetch {chain}/{asset} balance: {e}")
                return e

        results = await asyncio.gather(*(_one(chain, asset) for chain, asset in pairs))

        snapshots: Dict[BalanceKey, BalanceSnapshot] = {}
        errors: Dict[BalanceKey, XcmTransferError] = {}
        for pair, result in zip(pairs, results):
            if isinstance(result, BalanceSnapshot):
                snapshots[pair] = result
            else:
                errors[pair] = result

        report = BalanceReport(snapshots=MappingProxyType(snapshots), errors=MappingProxyType(errors))
        self._latest = report

        logger.info(f"Balances refreshed: {len(snapshots)} ok, {len(errors)} failed")
        return report

    async def close(self):
        await self.foreign_source.close()
