"""
Transfer Orchestrator

Drives a cross-chain transfer through its lifecycle:

    Idle -> Validating -> Signing -> Submitted -> InBlock -> Finalized(Success|Failure)

with Rejected reachable from Validating and Error from Signing, Submitted
and InBlock. Validation order:
1. Amount within [min, max]
2. Free balance covers amount + fee estimate (inclusive)

The watch stream runs in its own task so callers stay responsive. Each
attempt handles exactly one terminal event and releases its subscription
exactly once.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from loguru import logger

from .amount import Amount
from .balance_aggregator import BalanceAggregator
from .chain_connection import ChainRegistry, TxPhase, WatchEvent, WatchSubscription
from .config import TimingPolicy, TransferPolicy
from .errors import (
    AmountOutOfBounds,
    InsufficientBalance,
    InvalidAddressError,
    InvalidAmountError,
    SignerNotConfigured,
    SigningFailed,
    TransactionFailed,
    UnsupportedRoute,
    XcmTransferError,
)
from .message_builder import MessageBuilder, XcmPayload
from .topology import AssetConfig, ChainRoute, NetworkTopology


class TransferStatus(str, Enum):
    IDLE = 'Idle'
    VALIDATING = 'Validating'
    SIGNING = 'Signing'
    SUBMITTED = 'Submitted'
    IN_BLOCK = 'InBlock'
    FINALIZED_SUCCESS = 'Finalized(Success)'
    FINALIZED_FAILURE = 'Finalized(Failure)'
    REJECTED = 'Rejected'
    ERROR = 'Error'


TERMINAL_STATUSES = frozenset({
    TransferStatus.FINALIZED_SUCCESS,
    TransferStatus.FINALIZED_FAILURE,
    TransferStatus.REJECTED,
    TransferStatus.ERROR,
})

ALLOWED_TRANSITIONS = {
    TransferStatus.IDLE: {TransferStatus.VALIDATING},
    TransferStatus.VALIDATING: {TransferStatus.SIGNING, TransferStatus.REJECTED},
    TransferStatus.SIGNING: {TransferStatus.SUBMITTED, TransferStatus.ERROR},
    TransferStatus.SUBMITTED: {TransferStatus.IN_BLOCK, TransferStatus.ERROR},
    TransferStatus.IN_BLOCK: {
        TransferStatus.FINALIZED_SUCCESS,
        TransferStatus.FINALIZED_FAILURE,
        TransferStatus.ERROR,
    },
}

SUCCESS_EVENT = ('system', 'ExtrinsicSuccess')
FAILURE_EVENT = ('system', 'ExtrinsicFailed')


@dataclass(frozen=True)
class TransferIntent:
    """User-declared transfer request"""
    source_chain: str
    destination_chain: str
    asset: str
    requested_amount: str
    beneficiary_address: str


@dataclass(frozen=True)
class SignedPayload:
    payload: XcmPayload
    signer_address: str
    signature: Any


class Signer(ABC):
    """
    Wallet signer (external collaborator)

    Implementations raise SigningFailed when the user refuses or the wallet
    is unavailable.
    """

    @abstractmethod
    async def sign(self, payload: XcmPayload, account_address: str) -> SignedPayload:
        ...


@dataclass
class TransferAttempt:
    """One promoted intent and its lifecycle"""
    id: str
    intent: TransferIntent
    account: str
    status: TransferStatus = TransferStatus.IDLE
    amount: Optional[Amount] = None
    built_payload: Optional[XcmPayload] = None
    tx_hash: Optional[str] = None
    block_hash: Optional[str] = None
    failure_reason: Optional[str] = None
    error_code: Optional[str] = None
    explorer_url: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_transition_at: Optional[datetime] = None
    transitions: List[Tuple[TransferStatus, datetime]] = field(default_factory=list)
    _terminal: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == TransferStatus.FINALIZED_SUCCESS

    def reached(self, status: TransferStatus) -> bool:
        return any(s == status for s, _ in self.transitions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'source_chain': self.intent.source_chain,
            'destination_chain': self.intent.destination_chain,
            'asset': self.intent.asset,
            'requested_amount': self.intent.requested_amount,
            'amount_minor': self.amount.to_minor_string() if self.amount else None,
            'beneficiary': self.intent.beneficiary_address,
            'status': self.status.value,
            'tx_hash': self.tx_hash,
            'block_hash': self.block_hash,
            'failure_reason': self.failure_reason,
            'error_code': self.error_code,
            'explorer_url': self.explorer_url,
            'created_at': self.created_at.isoformat(),
            'last_transition_at': self.last_transition_at.isoformat() if self.last_transition_at else None,
        }


AttemptListener = Callable[[TransferAttempt], None]


class TransferOrchestrator:
    """
    Cross-chain transfer state machine

    Features:
    - Bounds and balance validation before any payload is built
    - Payload construction, signing and submission
    - Non-blocking watch of the submission status stream
    - Delayed balance refresh and display reset after a terminal state
    - Purge of terminal attempts after a retention period
    """

    def __init__(
        self,
        registry: ChainRegistry,
        topology: NetworkTopology,
        builder: MessageBuilder,
        aggregator: BalanceAggregator,
        signer: Optional[Signer],
        policy: Optional[TransferPolicy] = None,
        timing: Optional[TimingPolicy] = None,
        balance_refresher: Optional[Callable[[str], Awaitable[Any]]] = None
    ):
        """
        Initialize orchestrator

        Args:
            registry: Chain connections
            topology: Network topology
            builder: XCM message builder
            aggregator: Balance source for validation
            signer: Wallet signer (required)
            policy: Bounds and fee estimate
            timing: Refresh/reset/retention delays
            balance_refresher: Called with the account after a submitted
                attempt ends; defaults to aggregator.refresh_all
        """
        if signer is None:
            raise SignerNotConfigured("A signer must be configured before transfers can be submitted")

        self.registry = registry
        self.topology = topology
        self.builder = builder
        self.aggregator = aggregator
        self.signer = signer
        self.policy = policy or TransferPolicy()
        self.timing = timing or TimingPolicy()
        self._balance_refresher = balance_refresher or aggregator.refresh_all

        self._attempts: Dict[str, TransferAttempt] = {}
        self._released: Set[str] = set()
        self._watch_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._purge_handles: Dict[str, asyncio.TimerHandle] = {}
        self._listeners: List[AttemptListener] = []
        self._closed = False

        self._current_attempt_id: Optional[str] = None
        self.status = TransferStatus.IDLE
        self.amount_input = ""

        logger.info("Transfer orchestrator initialized")
        logger.info(f"  Bounds: [{self.policy.min_transfer}, {self.policy.max_transfer}]")
        logger.info(f"  Fee estimate: {self.policy.fee_estimate}")

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def attempts(self) -> Mapping[str, TransferAttempt]:
        return MappingProxyType(self._attempts)

    def get_attempt(self, attempt_id: str) -> Optional[TransferAttempt]:
        return self._attempts.get(attempt_id)

    def add_listener(self, listener: AttemptListener):
        self._listeners.append(listener)

    def bounds_for(self, asset: AssetConfig) -> Tuple[Amount, Amount]:
        return asset.parse(self.policy.min_transfer), asset.parse(self.policy.max_transfer)

    def fee_estimate_for(self, asset: AssetConfig) -> Amount:
        return asset.parse(self.policy.fee_estimate)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _notify(self, attempt: TransferAttempt):
        for listener in list(self._listeners):
            try:
                listener(attempt)
            except Exception:
                logger.exception(f"Attempt listener failed for {attempt.id}")

    def _transition(self, attempt: TransferAttempt, new_status: TransferStatus) -> bool:
        if attempt.is_terminal:
            logger.debug(f"Attempt {attempt.id} already {attempt.status.value}, ignoring {new_status.value}")
            return False

        if new_status not in ALLOWED_TRANSITIONS.get(attempt.status, set()):
            raise RuntimeError(
                f"Illegal transition for {attempt.id}: {attempt.status.value} -> {new_status.value}"
            )

        now = datetime.now(timezone.utc)
        attempt.status = new_status
        attempt.last_transition_at = now
        attempt.transitions.append((new_status, now))

        if self._current_attempt_id == attempt.id:
            self.status = new_status

        logger.debug(f"Attempt {attempt.id}: -> {new_status.value}")
        self._notify(attempt)
        return True

    def _finish(self, attempt: TransferAttempt, status: TransferStatus, error: Optional[Exception] = None):
        if attempt.is_terminal:
            logger.debug(f"Duplicate terminal event for {attempt.id} ignored")
            return

        if error is not None:
            attempt.failure_reason = getattr(error, 'message', None) or str(error)
            attempt.error_code = getattr(error, 'code', type(error).__name__)
            attempt.explorer_url = getattr(error, 'explorer_url', None) or attempt.explorer_url

        if not self._transition(attempt, status):
            return

        attempt._terminal.set()

        if status == TransferStatus.FINALIZED_SUCCESS:
            logger.info(
                f"✅ Transfer {attempt.id} completed: {attempt.intent.requested_amount} {attempt.intent.asset} "
                f"{attempt.intent.source_chain} -> {attempt.intent.destination_chain} (tx {attempt.tx_hash})"
            )
        elif status == TransferStatus.REJECTED:
            logger.warning(f"Transfer {attempt.id} rejected: {attempt.failure_reason}")
        else:
            logger.error(f"❌ Transfer {attempt.id} {status.value}: {attempt.failure_reason}")

        if self._closed:
            return

        if status == TransferStatus.REJECTED:
            # Rejected attempts are discarded immediately
            self._attempts.pop(attempt.id, None)
        else:
            self._purge_handles[attempt.id] = asyncio.get_running_loop().call_later(
                self.timing.attempt_retention_seconds, self._purge, attempt.id
            )

        self._spawn(self._after_terminal(attempt))

    def _purge(self, attempt_id: str):
        self._purge_handles.pop(attempt_id, None)
        self._attempts.pop(attempt_id, None)
        self._released.discard(attempt_id)
        logger.debug(f"Attempt {attempt_id} purged")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _after_terminal(self, attempt: TransferAttempt):
        """Delayed balance refresh, input clearing and display reset"""
        if attempt.reached(TransferStatus.SUBMITTED):
            # Indexing lags block inclusion
            await asyncio.sleep(self.timing.refresh_delay_seconds)
            try:
                await self._balance_refresher(attempt.account)
            except XcmTransferError as e:
                logger.warning(f"Balance refresh after {attempt.id} failed: {e}")

            if attempt.succeeded and self._current_attempt_id == attempt.id:
                self.amount_input = ""

        await asyncio.sleep(self.timing.reset_delay_seconds)
        if self._current_attempt_id == attempt.id:
            self.status = TransferStatus.IDLE
            self._current_attempt_id = None
            logger.debug("Transfer display reset to Idle")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate(self, intent: TransferIntent, account: str) -> Tuple[ChainRoute, Amount]:
        """
        Validate an intent against bounds and the source balance

        Args:
            intent: Transfer intent
            account: Sending account

        Returns:
            (route, amount in minor units)

        Raises:
            UnsupportedRoute: unknown chain/asset
            InvalidAmountError: amount text not representable
            AmountOutOfBounds: outside [min, max]
            InsufficientBalance: free < amount + fee estimate
            ChainUnreachable, QueryFailed: source balance unavailable
        """
        route = self.topology.route(intent.source_chain, intent.destination_chain, intent.asset)
        asset = route.asset
        if self.topology.balance_surface(intent.source_chain, asset.symbol) is None:
            raise UnsupportedRoute(f"{intent.source_chain} does not hold {asset.symbol}")
        amount = asset.parse(intent.requested_amount)

        # 1. Bounds
        minimum, maximum = self.bounds_for(asset)
        if amount < minimum:
            raise AmountOutOfBounds(f"Minimum transfer amount is {minimum.to_exact_string()} {asset.symbol}")
        if amount > maximum:
            raise AmountOutOfBounds(f"Maximum transfer amount is {maximum.to_exact_string()} {asset.symbol}")

        # 2. Balance
        snapshot = await self.aggregator.refresh(intent.source_chain, account, asset.symbol)
        fee_estimate = self.fee_estimate_for(asset)
        required = amount + fee_estimate

        if snapshot.free < required:
            shortfall = required - snapshot.free
            raise InsufficientBalance(
                f"Insufficient balance. Available: {snapshot.free.to_exact_string()} {asset.symbol}, "
                f"Required: {required.to_exact_string()} {asset.symbol} "
                f"(fee estimate {fee_estimate.to_exact_string()} {asset.symbol}), "
                f"short by {shortfall.to_exact_string()} {asset.symbol}",
                shortfall=shortfall.to_exact_string(),
                fee_estimate=fee_estimate.to_exact_string(),
            )

        return route, amount

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, intent: TransferIntent, account: str) -> TransferAttempt:
        """
        Validate, sign and submit a transfer

        Returns as soon as the attempt is terminal or its status stream is
        being watched in the background.

        Args:
            intent: Transfer intent
            account: Sending account address

        Returns:
            TransferAttempt
        """
        for other in self._attempts.values():
            if (not other.is_terminal and other.account == account
                    and other.intent.source_chain == intent.source_chain):
                logger.warning(
                    f"Attempt {other.id} still in flight on {intent.source_chain} for this account; "
                    f"concurrent submissions are not deduplicated"
                )

        attempt = TransferAttempt(id=uuid.uuid4().hex[:12], intent=intent, account=account)
        self._attempts[attempt.id] = attempt
        self._current_attempt_id = attempt.id
        self.amount_input = intent.requested_amount

        logger.info(f"Starting transfer: {attempt.id}")
        logger.info(f"  From: {intent.source_chain}")
        logger.info(f"  To: {intent.destination_chain}")
        logger.info(f"  Amount: {intent.requested_amount} {intent.asset}")

        self._transition(attempt, TransferStatus.VALIDATING)

        try:
            route, amount = await self.validate(intent, account)
            attempt.amount = amount
            payload = self.builder.build(route, amount, intent.beneficiary_address)
        except (XcmTransferError, InvalidAmountError, InvalidAddressError) as e:
            self._finish(attempt, TransferStatus.REJECTED, e)
            return attempt

        attempt.built_payload = payload
        logger.info(f"✓ Validation passed, payload {payload.call_name} built")

        self._transition(attempt, TransferStatus.SIGNING)
        try:
            signed = await self.signer.sign(payload, account)
        except SigningFailed as e:
            self._finish(attempt, TransferStatus.ERROR, e)
            return attempt
        except (ConnectionError, OSError, asyncio.TimeoutError) as e:
            self._finish(attempt, TransferStatus.ERROR, SigningFailed(f"Signer unavailable: {e}"))
            return attempt
        except Exception as e:
            logger.error(f"Signer raised {type(e).__name__} for {attempt.id}: {e}")
            self._finish(attempt, TransferStatus.ERROR, SigningFailed(f"Signer error: {e}"))
            return attempt

        try:
            connection = self.registry.get(intent.source_chain)
            subscription = await connection.submit_and_watch(signed)
        except XcmTransferError as e:
            self._finish(attempt, TransferStatus.ERROR, e)
            return attempt

        self._transition(attempt, TransferStatus.SUBMITTED)
        self._watch_tasks[attempt.id] = asyncio.get_running_loop().create_task(
            self._watch(attempt, subscription)
        )
        return attempt

    async def _watch(self, attempt: TransferAttempt, subscription: WatchSubscription):
        try:
            async for event in subscription:
                if self._handle_event(attempt, event):
                    break
            else:
                if not attempt.is_terminal:
                    self._finish(attempt, TransferStatus.ERROR, TransactionFailed(
                        "Status stream ended before block inclusion", self._explorer(attempt)
                    ))
        except asyncio.CancelledError:
            logger.warning(f"Watch for {attempt.id} cancelled")
            if not attempt.is_terminal:
                self._finish(attempt, TransferStatus.ERROR, TransactionFailed(
                    "Watch cancelled before finality - check blockchain explorer for the outcome",
                    self._explorer(attempt)
                ))
            raise
        except Exception as e:
            logger.error(f"Watch stream for {attempt.id} failed: {e}")
            if not attempt.is_terminal:
                self._finish(attempt, TransferStatus.ERROR, TransactionFailed(
                    f"Transaction failed: {e}", self._explorer(attempt)
                ))
        finally:
            self._watch_tasks.pop(attempt.id, None)
            await self._release(attempt, subscription)

    async def _release(self, attempt: TransferAttempt, subscription: WatchSubscription):
        if attempt.id in self._released:
            return
        self._released.add(attempt.id)
        try:
            await subscription.unsubscribe()
            logger.debug(f"Released watch subscription for {attempt.id}")
        except (ConnectionError, OSError, RuntimeError) as e:
            logger.warning(f"Error releasing subscription for {attempt.id}: {e}")

    def _explorer(self, attempt: TransferAttempt) -> Optional[str]:
        chain = self.topology.chains.get(attempt.intent.source_chain)
        return chain.explorer_link(attempt.tx_hash) if chain else None

    def _handle_event(self, attempt: TransferAttempt, event: WatchEvent) -> bool:
        """
        Apply one status event

        Returns:
            True once the attempt is terminal
        """
        if attempt.is_terminal:
            logger.debug(f"Event {event.phase.value} after terminal state for {attempt.id} ignored")
            return True

        if event.tx_hash:
            attempt.tx_hash = event.tx_hash

        logger.info(f"Transaction status ({attempt.id}): {event.phase.value}")

        if event.error:
            self._finish(attempt, TransferStatus.ERROR, TransactionFailed(
                f"Transaction failed: {event.error}", self._explorer(attempt)
            ))
            return True

        if event.phase == TxPhase.BROADCAST:
            return False

        # First inclusion (InBlock, or Finalized seen without InBlock)
        attempt.block_hash = event.block_hash
        self._transition(attempt, TransferStatus.IN_BLOCK)

        if any(e.matches(*SUCCESS_EVENT) for e in event.events):
            self._finish(attempt, TransferStatus.FINALIZED_SUCCESS)
        else:
            failed = [e for e in event.events if e.matches(*FAILURE_EVENT)]
            detail = f" ({failed[0].data})" if failed and failed[0].data is not None else ""
            self._finish(attempt, TransferStatus.FINALIZED_FAILURE, TransactionFailed(
                f"Transaction failed{detail} - check blockchain explorer for details",
                self._explorer(attempt)
            ))
        return True

    async def wait_for_terminal(
        self,
        attempt: Union[TransferAttempt, str],
        timeout: Optional[float] = None
    ) -> TransferAttempt:
        """
        Wait until an attempt reaches a terminal state

        Args:
            attempt: TransferAttempt or its id
            timeout: Seconds to wait (None waits for finality, however long)

        Returns:
            The terminal TransferAttempt
        """
        if isinstance(attempt, str):
            found = self._attempts.get(attempt)
            if found is None:
                raise KeyError(f"Unknown or purged attempt: {attempt}")
            attempt = found
        await asyncio.wait_for(attempt._terminal.wait(), timeout=timeout)
        return attempt

    async def close(self):
        """
        Cancel watches (releasing their subscriptions) and pending timers

        Attempts still being watched end in Error so their waiters return.
        """
        self._closed = True
        tasks = list(self._watch_tasks.values()) + list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for handle in self._purge_handles.values():
            handle.cancel()
        self._purge_handles.clear()

        logger.debug(f"Transfer orchestrator closed ({len(tasks)} tasks cancelled)")
