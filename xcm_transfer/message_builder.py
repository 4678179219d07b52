"""
XCM Message Builder

Builds the (destination, beneficiary, assets) triple for a cross-chain
transfer. Every location is relative to the sending chain:

    relay  -> child     parents 0, X1 Parachain(child)
    child  -> sibling   parents 1, X1 Parachain(sibling)
    child  -> relay     parents 1, Here

The asset is the relay-native token: parents 0 from the relay, 1 from a
child. Amounts are emitted as exact minor-unit strings.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Tuple

from loguru import logger

from .address import account_id_hex
from .amount import Amount
from .config import TransferPolicy
from .errors import AssetMismatchError, InvalidAmountError, UnsupportedRoute
from .topology import ChainConfig, ChainRoute, NetworkTopology

HERE = 'Here'


@dataclass(frozen=True)
class XcmPayload:
    """Arguments for the source chain's XCM transfer extrinsic"""
    route: ChainRoute
    pallet: str
    call: str
    destination: Dict[str, Any]
    beneficiary: Dict[str, Any]
    assets: Dict[str, Any]
    fee_asset_item: int
    weight_limit: str

    @property
    def call_name(self) -> str:
        return f"{self.pallet}.{self.call}"

    def call_args(self) -> Tuple[Any, ...]:
        return (self.destination, self.beneficiary, self.assets, self.fee_asset_item, self.weight_limit)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['route'] = {
            'source': self.route.source.key,
            'destination': self.route.destination.key,
            'asset': self.route.asset.symbol,
        }
        return data


def _location(version: str, parents: int, interior: Any) -> Dict[str, Any]:
    return {version: {'parents': parents, 'interior': interior}}


def _x1(junction: Dict[str, Any]) -> Dict[str, Any]:
    return {'X1': [junction]}


class MessageBuilder:
    """Stateless builder; fee item and weight limit come from policy, never per transfer"""

    def __init__(self, topology: NetworkTopology, policy: TransferPolicy):
        self.topology = topology
        self.policy = policy

    def _parents_to_relay(self, chain: ChainConfig) -> int:
        return 0 if chain.is_relay else 1

    def destination_location(self, route: ChainRoute) -> Tuple[int, Any]:
        """
        (parents, interior) of the destination seen from the source

        Raises:
            UnsupportedRoute: no addressing rule for the pair
        """
        source, destination = route.source, route.destination

        if source.key == destination.key:
            raise UnsupportedRoute(f"No addressing rule for {source.key} -> itself")

        if source.is_relay and not destination.is_relay:
            return 0, _x1({'Parachain': destination.para_id})

        if not source.is_relay and not destination.is_relay:
            return 1, _x1({'Parachain': destination.para_id})

        if not source.is_relay and destination.is_relay:
            return 1, HERE

        raise UnsupportedRoute(f"No addressing rule for {source.key} -> {destination.key}")

    def asset_location(self, route: ChainRoute) -> Tuple[int, Any]:
        """
        (parents, interior) of the asset seen from the source

        Raises:
            UnsupportedRoute: asset not native to the relay or not held by the source
        """
        asset = route.asset

        if asset.origin_chain != self.topology.relay_key:
            raise UnsupportedRoute(
                f"{asset.symbol} is not native to {self.topology.relay_key}; no addressing rule"
            )

        if self.topology.balance_surface(route.source.key, asset.symbol) is None:
            raise UnsupportedRoute(f"{route.source.key} does not hold {asset.symbol}")

        return self._parents_to_relay(route.source), HERE

    def build(self, route: ChainRoute, amount: Amount, beneficiary_address: str) -> XcmPayload:
        """
        Build the transfer payload

        Args:
            route: Resolved chain route
            amount: Amount in the route asset's decimals
            beneficiary_address: SS58 or 0x hex recipient on the destination

        Returns:
            XcmPayload

        Raises:
            UnsupportedRoute: unknown addressing rule
            AssetMismatchError: amount decimals differ from the asset's
            InvalidAmountError: zero amount
            InvalidAddressError: undecodable beneficiary
        """
        if amount.decimals != route.asset.decimals:
            raise AssetMismatchError(
                f"Amount has {amount.decimals} decimals, {route.asset.symbol} uses {route.asset.decimals}"
            )
        if amount.is_zero():
            raise InvalidAmountError("Cannot transfer a zero amount")

        version = self.policy.xcm_version

        dest_parents, dest_interior = self.destination_location(route)
        asset_parents, asset_interior = self.asset_location(route)
        account_id = account_id_hex(beneficiary_address)

        payload = XcmPayload(
            route=route,
            pallet=route.source.xcm_pallet,
            call=route.source.xcm_call,
            destination=_location(version, dest_parents, dest_interior),
            beneficiary=_location(version, 0, _x1({'AccountId32': {'id': account_id}})),
            assets={
                version: [
                    {
                        'id': {'parents': asset_parents, 'interior': asset_interior},
                        'fun': {'Fungible': amount.to_minor_string()},
                    }
                ]
            },
            fee_asset_item=self.policy.fee_asset_item,
            weight_limit=self.policy.weight_limit,
        )

        logger.debug(
            f"XCM payload {route}: {payload.call_name} dest={payload.destination} "
            f"beneficiary={account_id} amount={amount.to_minor_string()} ({amount} {route.asset.symbol})"
        )
        return payload
