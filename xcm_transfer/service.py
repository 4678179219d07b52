"""
Cross-Chain Transfer Service

Wires configuration, connections, balances, transfers and history into one
object with a single lifecycle:

    service = CrossChainTransferService(load_config(), transport_factory, signer)
    await service.connect()
    service.set_account(address)
    attempt = await service.transfer('polkadot', 'unique', 'DOT', '5')
    ...
    await graceful_shutdown(service)
"""

import asyncio
import sys
from typing import Callable, List, Optional

from loguru import logger

from .balance_aggregator import (
    BalanceAggregator,
    BalanceReport,
    ChainForeignAssetSource,
    ForeignAssetSource,
    RestForeignAssetSource,
)
from .chain_connection import ChainRegistry, ChainTransport
from .config import TransferConfig
from .history_reconciler import HistoryReconciler, HistoryRecord, IndexerClient
from .message_builder import MessageBuilder
from .polling import BalancePoller, PeriodicRefresher
from .topology import ChainConfig, NetworkTopology
from .transfer_orchestrator import Signer, TransferAttempt, TransferIntent, TransferOrchestrator

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO"):
    """Replace loguru's default sink with a stderr sink at `level`"""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)


class CrossChainTransferService:
    """
    Top-level transfer service

    Features:
    - One registry of chain connections built from the topology
    - Balance polling bound to the active account
    - Transfer submission through the orchestrator
    - Indexer history polling
    - Ordered shutdown of every component
    """

    def __init__(
        self,
        config: TransferConfig,
        transport_factory: Callable[[ChainConfig], ChainTransport],
        signer: Optional[Signer],
        foreign_source: Optional[ForeignAssetSource] = None,
        indexer_client: Optional[IndexerClient] = None,
        history_destination: Optional[int] = None
    ):
        """
        Initialize service

        Args:
            config: Loaded configuration
            transport_factory: Builds a transport for each chain
            signer: Wallet signer
            foreign_source: Foreign-asset balance surface (defaults from config)
            indexer_client: Indexer HTTP client (defaults from config)
            history_destination: Destination para id filter for history
        """
        self.config = config
        self.topology = NetworkTopology.from_config(config)
        timing = config.timing

        self.registry = ChainRegistry(
            self.topology,
            transport_factory,
            connect_timeout=timing.connect_timeout_seconds,
            query_timeout=timing.query_timeout_seconds,
        )

        if foreign_source is None:
            if config.foreign_assets.rest_base_url:
                foreign_source = RestForeignAssetSource(
                    config.foreign_assets.rest_base_url,
                    config.foreign_assets.rest_path,
                    timeout_seconds=timing.query_timeout_seconds,
                )
            else:
                foreign_source = ChainForeignAssetSource(self.registry, config.foreign_assets.query_path)

        self.aggregator = BalanceAggregator(self.registry, self.topology, foreign_source)
        self.balance_poller = BalancePoller(
            self.aggregator,
            interval_seconds=timing.poll_interval_seconds,
            on_report=self._on_balance_report,
        )

        self.builder = MessageBuilder(self.topology, config.policy)
        self.orchestrator = TransferOrchestrator(
            self.registry,
            self.topology,
            self.builder,
            self.aggregator,
            signer,
            policy=config.policy,
            timing=timing,
            balance_refresher=self._refresh_after_transfer,
        )

        self.reconciler = HistoryReconciler(
            indexer_client or IndexerClient(config.indexer),
            chain_aliases=config.chain_aliases,
            topology=self.topology,
        )
        self.history_destination = history_destination
        self.history_poller = PeriodicRefresher(
            'History',
            self._fetch_history,
            interval_seconds=timing.poll_interval_seconds,
        )

        self.account: Optional[str] = None
        logger.info(f"Cross-chain transfer service initialized ({len(self.topology.chains)} chains)")

    def _on_balance_report(self, report: BalanceReport):
        for (chain, asset), error in report.errors.items():
            logger.warning(f"Balance for {chain}/{asset} unavailable: {error.code}")

    async def _fetch_history(self, account: str) -> List[HistoryRecord]:
        return await self.reconciler.fetch(account, self.history_destination)

    async def _refresh_after_transfer(self, account: str):
        if self.balance_poller.account == account:
            await self.balance_poller.refresh_now()
        else:
            await self.aggregator.refresh_all(account)

        if self.history_poller.account == account:
            await self.history_poller.refresh_now()

    async def connect(self):
        """
        Connect every chain

        Returns:
            Dict chain_key -> error message (None when connected)
        """
        return await self.registry.connect_all()

    def set_account(self, account: Optional[str]):
        """Switch the active account (None stops polling)"""
        self.account = account
        self.balance_poller.set_account(account)
        self.history_poller.set_account(account)
        if account:
            logger.info(f"Active account: {account}")
        else:
            logger.info("No active account")

    @property
    def balances(self) -> BalanceReport:
        return self.aggregator.latest

    @property
    def history(self):
        return self.reconciler.records

    async def transfer(
        self,
        source_chain: str,
        destination_chain: str,
        asset: str,
        amount: str,
        beneficiary: Optional[str] = None
    ) -> TransferAttempt:
        """
        Submit a transfer from the active account

        Args:
            source_chain: Source chain key
            destination_chain: Destination chain key
            asset: Asset symbol
            amount: Decimal amount string
            beneficiary: Recipient (defaults to the active account)

        Returns:
            TransferAttempt (possibly still in flight)
        """
        if not self.account:
            raise ValueError("No active account")

        intent = TransferIntent(
            source_chain=source_chain,
            destination_chain=destination_chain,
            asset=asset,
            requested_amount=amount,
            beneficiary_address=beneficiary or self.account,
        )
        return await self.orchestrator.submit(intent, self.account)

    async def close(self):
        """Stop polling, cancel watches and close every connection"""
        await asyncio.gather(self.balance_poller.stop(), self.history_poller.stop())
        await self.orchestrator.close()
        await asyncio.gather(
            self.aggregator.close(),
            self.reconciler.close(),
            self.registry.close(),
            return_exceptions=True
        )
        logger.info("Cross-chain transfer service closed")


async def graceful_shutdown(service: CrossChainTransferService, timeout: float = 15.0):
    """
    Shut the service down with a bounded wait

    Steps:
    1. Close the service with a timeout
    2. Cancel any tasks still pending on the loop (except the current one)

    Args:
        service: Service to shut down
        timeout: Maximum time to wait for close (seconds)
    """
    logger.info("Starting graceful shutdown...")

    try:
        await asyncio.wait_for(service.close(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Shutdown timeout after {timeout}s, forcing cleanup")

    current = asyncio.current_task()
    pending = [task for task in asyncio.all_tasks() if not task.done() and task is not current]

    if pending:
        logger.debug(f"Found {len(pending)} remaining background tasks, cancelling...")
        for task in pending:
            task.cancel()
        done, still_pending = await asyncio.wait(pending, timeout=5.0)
        if still_pending:
            logger.warning(f"{len(still_pending)} tasks still pending after cleanup")

    logger.info("✓ Graceful shutdown complete")
