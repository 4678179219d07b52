"""
XCM Transfer System

Moves a relay-chain token between the relay chain, a hub parachain and a
destination parachain with cross-consensus messages.

Components:
- amount: Exact fixed-point amounts tagged with decimals
- topology: Relay chain, children and held assets
- chain_connection: Per-chain connections with bounded timeouts
- balance_aggregator: Native and foreign-asset balance snapshots
- polling: Account-bound periodic refresh
- message_builder: Hop-count addressed XCM payloads
- transfer_orchestrator: Transfer state machine
- history_reconciler: Indexer-backed transfer history
- service: Wiring and shutdown

Transfer Lifecycle:
1. Validating - Bounds, then balance >= amount + fee estimate
2. Signing - External wallet signs the payload
3. Submitted - Extrinsic broadcast, status stream watched
4. InBlock - Chain events inspected for ExtrinsicSuccess
5. Finalized - Success or Failure, balances refreshed after a delay
"""

from .amount import Amount
from .balance_aggregator import (
    BalanceAggregator,
    BalanceReport,
    BalanceSnapshot,
    ChainForeignAssetSource,
    ForeignAssetSource,
    RestForeignAssetSource,
)
from .chain_connection import (
    ChainConnection,
    ChainEvent,
    ChainRegistry,
    ChainTransport,
    TxPhase,
    WatchEvent,
    WatchSubscription,
)
from .config import TransferConfig, build_config, load_config
from .errors import (
    AmountOutOfBounds,
    AssetMismatchError,
    ChainUnreachable,
    IndexerUnreachable,
    InsufficientBalance,
    InvalidAddressError,
    InvalidAmountError,
    QueryFailed,
    SignerNotConfigured,
    SigningFailed,
    TransactionFailed,
    UnsupportedRoute,
    XcmTransferError,
)
from .history_reconciler import HistoryReconciler, HistoryRecord, IndexerClient
from .message_builder import MessageBuilder, XcmPayload
from .polling import BalancePoller, PeriodicRefresher
from .service import CrossChainTransferService, configure_logging, graceful_shutdown
from .topology import AssetConfig, ChainConfig, ChainRoute, NetworkTopology
from .transfer_orchestrator import (
    SignedPayload,
    Signer,
    TransferAttempt,
    TransferIntent,
    TransferOrchestrator,
    TransferStatus,
)

__all__ = [
    # Values
    'Amount',

    # Configuration and topology
    'TransferConfig',
    'build_config',
    'load_config',
    'AssetConfig',
    'ChainConfig',
    'ChainRoute',
    'NetworkTopology',

    # Connections
    'ChainConnection',
    'ChainEvent',
    'ChainRegistry',
    'ChainTransport',
    'TxPhase',
    'WatchEvent',
    'WatchSubscription',

    # Balances
    'BalanceAggregator',
    'BalanceReport',
    'BalanceSnapshot',
    'ForeignAssetSource',
    'ChainForeignAssetSource',
    'RestForeignAssetSource',
    'BalancePoller',
    'PeriodicRefresher',

    # Transfers
    'MessageBuilder',
    'XcmPayload',
    'Signer',
    'SignedPayload',
    'TransferAttempt',
    'TransferIntent',
    'TransferOrchestrator',
    'TransferStatus',

    # History
    'HistoryReconciler',
    'HistoryRecord',
    'IndexerClient',

    # Service
    'CrossChainTransferService',
    'configure_logging',
    'graceful_shutdown',

    # Errors
    'XcmTransferError',
    'ChainUnreachable',
    'QueryFailed',
    'AmountOutOfBounds',
    'InsufficientBalance',
    'UnsupportedRoute',
    'SigningFailed',
    'SignerNotConfigured',
    'TransactionFailed',
    'IndexerUnreachable',
    'InvalidAmountError',
    'InvalidAddressError',
    'AssetMismatchError',
]

__version__ = '1.0.0'
__description__ = 'Relay/parachain XCM transfers with balance tracking and history'
