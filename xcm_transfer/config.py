"""
Transfer Configuration

Loads xcm_config.yaml and merges it over built-in defaults. Missing file or
missing keys fall back to the defaults below, so a bare checkout works
against Polkadot mainnet endpoints.
"""

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger


DEFAULT_CONFIG: Dict[str, Any] = {
    'relay_chain': 'polkadot',
    'chains': {
        'polkadot': {
            'name': 'Polkadot Relay',
            'ws_url': 'wss://rpc.polkadot.io',
            'para_id': None,
            'native_asset': 'DOT',
            'xcm_pallet': 'xcmPallet',
            'xcm_call': 'transferAssets',
            'explorer_url': 'https://polkadot.subscan.io/extrinsic/{tx_hash}',
        },
        'asset_hub': {
            'name': 'Asset Hub',
            'ws_url': 'wss://polkadot-asset-hub-rpc.polkadot.io',
            'para_id': 1000,
            'native_asset': 'DOT',
            'xcm_pallet': 'polkadotXcm',
            'xcm_call': 'reserveTransferAssets',
            'explorer_url': 'https://assethub-polkadot.subscan.io/extrinsic/{tx_hash}',
        },
        'unique': {
            'name': 'Unique Network',
            'ws_url': 'wss://ws.unique.network',
            'para_id': 2037,
            'native_asset': 'UNQ',
            'xcm_pallet': 'polkadotXcm',
            'xcm_call': 'reserveTransferAssets',
            'explorer_url': 'https://unique.subscan.io/extrinsic/{tx_hash}',
            'foreign_assets': {'DOT': 437},
        },
    },
    'assets': {
        'DOT': {'decimals': 10, 'origin': 'polkadot'},
        'UNQ': {'decimals': 18, 'origin': 'unique'},
    },
    'transfer_policy': {
        'min_transfer': '0.001',
        'max_transfer': '1000',
        'fee_estimate': '0.01',
        'fee_asset_item': 0,
        'weight_limit': 'Unlimited',
        'xcm_version': 'V4',
    },
    'timing': {
        'poll_interval_seconds': 30,
        'refresh_delay_seconds': 3,
        'reset_delay_seconds': 5,
        'attempt_retention_seconds': 300,
        'connect_timeout_seconds': 30,
        'query_timeout_seconds': 15,
    },
    'indexer': {
        'base_url': 'https://polkadot.api.subscan.io',
        'path': '/api/scan/xcm/list',
        'page_size': 25,
        'message_type': 'transfer',
        'timeout_seconds': 10,
        'api_key_env': 'SUBSCAN_API_KEY',
    },
    'foreign_assets': {
        'query_path': 'fungible.balance',
        'rest_base_url': None,
        'rest_path': '/fungible/{collection_id}/balance/{address}',
    },
    'chain_aliases': {
        '0': 'Polkadot Relay',
        'polkadot': 'Polkadot Relay',
        '1000': 'Asset Hub',
        'assethub': 'Asset Hub',
        'statemint': 'Asset Hub',
        '2037': 'Unique Network',
        'unique': 'Unique Network',
    },
}


@dataclass(frozen=True)
class TransferPolicy:
    """Policy constants; the amounts stay decimal strings until an asset is known"""
    min_transfer: str = '0.001'
    max_transfer: str = '1000'
    fee_estimate: str = '0.01'
    fee_asset_item: int = 0
    weight_limit: str = 'Unlimited'
    xcm_version: str = 'V4'


@dataclass(frozen=True)
class TimingPolicy:
    poll_interval_seconds: float = 30
    refresh_delay_seconds: float = 3
    reset_delay_seconds: float = 5
    attempt_retention_seconds: float = 300
    connect_timeout_seconds: float = 30
    query_timeout_seconds: float = 15


@dataclass(frozen=True)
class IndexerSettings:
    base_url: str = 'https://polkadot.api.subscan.io'
    path: str = '/api/scan/xcm/list'
    page_size: int = 25
    message_type: str = 'transfer'
    timeout_seconds: float = 10
    api_key: Optional[str] = None


@dataclass(frozen=True)
class ForeignAssetSettings:
    query_path: str = 'fungible.balance'
    rest_base_url: Optional[str] = None
    rest_path: str = '/fungible/{collection_id}/balance/{address}'


@dataclass
class TransferConfig:
    """Fully merged configuration"""
    raw: Dict[str, Any]
    policy: TransferPolicy
    timing: TimingPolicy
    indexer: IndexerSettings
    foreign_assets: ForeignAssetSettings
    chain_aliases: Dict[str, str] = field(default_factory=dict)

    @property
    def relay_chain(self) -> str:
        return self.raw['relay_chain']

    @property
    def chains(self) -> Dict[str, Dict[str, Any]]:
        return self.raw['chains']

    @property
    def assets(self) -> Dict[str, Dict[str, Any]]:
        return self.raw['assets']


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        logger.warning(f"Config file {config_path} not found, using defaults")
        return {}

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            loaded = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse {config_path}: {e}, using defaults")
        return {}

    if not isinstance(loaded, dict):
        logger.warning(f"Config file {config_path} is not a mapping, using defaults")
        return {}

    return loaded


def build_config(overrides: Optional[Dict[str, Any]] = None) -> TransferConfig:
    """
    Merge overrides over the defaults and build typed sections

    Args:
        overrides: Partial config dict (same shape as xcm_config.yaml)

    Returns:
        TransferConfig
    """
    raw = _deep_merge(DEFAULT_CONFIG, overrides or {})

    indexer_raw = dict(raw['indexer'])
    api_key_env = indexer_raw.pop('api_key_env', None)
    api_key = indexer_raw.pop('api_key', None)
    if api_key is None and api_key_env:
        api_key = os.getenv(api_key_env)

    aliases = {str(k).strip().lower(): str(v) for k, v in raw['chain_aliases'].items()}

    return TransferConfig(
        raw=raw,
        policy=TransferPolicy(**{k: str(v) if k in ('min_transfer', 'max_transfer', 'fee_estimate') else v
                                 for k, v in raw['transfer_policy'].items()}),
        timing=TimingPolicy(**raw['timing']),
        indexer=IndexerSettings(api_key=api_key, **indexer_raw),
        foreign_assets=ForeignAssetSettings(**raw['foreign_assets']),
        chain_aliases=aliases,
    )


def load_config(config_path: str = "xcm_config.yaml") -> TransferConfig:
    """
    Load configuration from YAML and the environment

    Args:
        config_path: Path to the YAML config

    Returns:
        TransferConfig
    """
    load_dotenv()
    overrides = _load_yaml(Path(config_path))
    config = build_config(overrides)

    logger.info(f"Loaded transfer config ({len(config.chains)} chains, relay: {config.relay_chain})")
    logger.debug(f"  Policy: {config.policy}")
    logger.debug(f"  Timing: {config.timing}")
    return config
