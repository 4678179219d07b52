"""
Network Topology

Static description of the relay chain, its child chains and the assets they
hold. Routes are derived here; they are never persisted.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from .amount import Amount
from .config import TransferConfig
from .errors import UnsupportedRoute

NATIVE_SURFACE = 'native'
FOREIGN_SURFACE = 'foreign'


@dataclass(frozen=True)
class ChainConfig:
    """One chain in the topology"""
    key: str
    name: str
    ws_url: str
    para_id: Optional[int]
    native_asset: str
    xcm_pallet: str
    xcm_call: str
    explorer_url: Optional[str] = None
    foreign_assets: Dict[str, int] = field(default_factory=dict)

    @property
    def is_relay(self) -> bool:
        return self.para_id is None

    def explorer_link(self, tx_hash: Optional[str]) -> Optional[str]:
        if not self.explorer_url or not tx_hash:
            return None
        return self.explorer_url.format(tx_hash=tx_hash)

    def __repr__(self):
        where = "relay" if self.is_relay else f"para {self.para_id}"
        return f"ChainConfig({self.key}: {self.name}, {where})"


@dataclass(frozen=True)
class AssetConfig:
    symbol: str
    decimals: int
    origin_chain: str

    def parse(self, text: str) -> Amount:
        return Amount.from_decimal_string(text, self.decimals)


@dataclass(frozen=True)
class ChainRoute:
    """Directed (source, destination) pair plus the asset being moved"""
    source: ChainConfig
    destination: ChainConfig
    asset: AssetConfig

    def __repr__(self):
        return f"ChainRoute({self.source.key} -> {self.destination.key}, {self.asset.symbol})"


class NetworkTopology:
    """
    Relay chain plus its children

    Features:
    - Chain and asset lookup by key / symbol
    - Route resolution
    - Balance surface selection (native vs foreign ledger)
    """

    def __init__(self, relay_key: str, chains: Dict[str, ChainConfig], assets: Dict[str, AssetConfig]):
        if relay_key not in chains:
            raise ValueError(f"Relay chain {relay_key!r} missing from chain list")
        if not chains[relay_key].is_relay:
            raise ValueError(f"Relay chain {relay_key!r} must not carry a para id")

        self.relay_key = relay_key
        self.chains = chains
        self.assets = assets

        logger.debug(f"Topology: relay={relay_key}, children={[k for k in chains if k != relay_key]}")

    @classmethod
    def from_config(cls, config: TransferConfig) -> 'NetworkTopology':
        chains: Dict[str, ChainConfig] = {}
        for key, data in config.chains.items():
            para_id = data.get('para_id')
            chains[key] = ChainConfig(
                key=key,
                name=data.get('name', key),
                ws_url=data.get('ws_url', ''),
                para_id=int(para_id) if para_id is not None else None,
                native_asset=data['native_asset'],
                xcm_pallet=data.get('xcm_pallet', 'polkadotXcm'),
                xcm_call=data.get('xcm_call', 'reserveTransferAssets'),
                explorer_url=data.get('explorer_url'),
                foreign_assets={sym: int(cid) for sym, cid in (data.get('foreign_assets') or {}).items()},
            )

        assets = {
            symbol: AssetConfig(symbol=symbol, decimals=int(data['decimals']), origin_chain=data['origin'])
            for symbol, data in config.assets.items()
        }

        return cls(config.relay_chain, chains, assets)

    @property
    def relay(self) -> ChainConfig:
        return self.chains[self.relay_key]

    def get_chain(self, key: str) -> ChainConfig:
        try:
            return self.chains[key]
        except KeyError:
            raise UnsupportedRoute(f"Unknown chain: {key}") from None

    def get_asset(self, symbol: str) -> AssetConfig:
        try:
            return self.assets[symbol]
        except KeyError:
            raise UnsupportedRoute(f"Unknown asset: {symbol}") from None

    def find_by_para_id(self, para_id: int) -> Optional[ChainConfig]:
        for chain in self.chains.values():
            if chain.para_id == para_id:
                return chain
        return None

    def route(self, source: str, destination: str, asset: str) -> ChainRoute:
        """
        Resolve a route between two known chains

        Raises:
            UnsupportedRoute: unknown chain/asset or source == destination
        """
        if source == destination:
            raise UnsupportedRoute(f"Source and destination are both {source}")

        return ChainRoute(
            source=self.get_chain(source),
            destination=self.get_chain(destination),
            asset=self.get_asset(asset),
        )

    def balance_surface(self, chain_key: str, asset: str) -> Optional[str]:
        """
        Which ledger holds `asset` on `chain_key`

        Returns:
            'native', 'foreign', or None if the chain does not hold the asset
        """
        chain = self.get_chain(chain_key)
        if chain.native_asset == asset:
            return NATIVE_SURFACE
        if asset in chain.foreign_assets:
            return FOREIGN_SURFACE
        return None

    def holdings(self) -> List[tuple]:
        """Every (chain_key, asset_symbol) pair with a balance surface"""
        pairs = []
        for key, chain in self.chains.items():
            pairs.append((key, chain.native_asset))
            for symbol in chain.foreign_assets:
                pairs.append((key, symbol))
        return pairs
