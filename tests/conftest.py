"""
Shared fakes for the transfer core tests.

The fakes stand in for the external collaborators: chain RPC transport,
watch subscription, wallet signer and indexer client.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from xcm_transfer.chain_connection import ChainEvent, ChainRegistry, ChainTransport, TxPhase, WatchEvent, WatchSubscription
from xcm_transfer.config import build_config
from xcm_transfer.errors import SigningFailed
from xcm_transfer.topology import NetworkTopology
from xcm_transfer.transfer_orchestrator import SignedPayload, Signer

ALICE = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"
ALICE_HEX = "0xd43593c715fdd31c61141abd04a99fd6822c8558854ccde39a5684e7a56da27d"

DOT = 10 ** 10
UNQ = 10 ** 18

SUCCESS = ChainEvent('system', 'ExtrinsicSuccess')
FAILED = ChainEvent('system', 'ExtrinsicFailed', {'dispatchError': 'Module'})


def broadcast(tx_hash: str = "0xabc") -> WatchEvent:
    return WatchEvent(phase=TxPhase.BROADCAST, tx_hash=tx_hash)


def in_block(*events: ChainEvent, block_hash: str = "0xblock") -> WatchEvent:
    return WatchEvent(phase=TxPhase.IN_BLOCK, events=list(events), block_hash=block_hash)


def finalized(*events: ChainEvent, block_hash: str = "0xblock") -> WatchEvent:
    return WatchEvent(phase=TxPhase.FINALIZED, events=list(events), block_hash=block_hash)


class FakeSubscription(WatchSubscription):
    """Replays a fixed list of events; optionally stays open afterwards"""

    def __init__(self, events: List[WatchEvent], hold_open: bool = False, fail_with: Optional[Exception] = None):
        self._events = list(events)
        self.hold_open = hold_open
        self.fail_with = fail_with
        self.unsubscribe_calls = 0

    async def events(self):
        for event in self._events:
            await asyncio.sleep(0)
            yield event
        if self.fail_with is not None:
            raise self.fail_with
        if self.hold_open:
            await asyncio.Event().wait()

    async def unsubscribe(self):
        self.unsubscribe_calls += 1


class FakeTransport(ChainTransport):
    """In-memory chain node"""

    def __init__(self, chain_key: str):
        self.chain_key = chain_key
        self.accounts: Dict[str, Dict[str, int]] = {}
        self.foreign: Dict[str, int] = {}
        self.connect_delay = 0.0
        self.connect_error: Optional[Exception] = None
        self.query_delay = 0.0
        self.query_error: Optional[Exception] = None
        self.raw_account: Any = None
        self.submit_error: Optional[Exception] = None
        self.subscription: Optional[FakeSubscription] = None
        self.submitted: List[Any] = []
        self.queries: List[tuple] = []
        self.closed = False

    def set_balance(self, address: str, free: int, reserved: int = 0):
        self.accounts[address] = {'free': free, 'reserved': reserved}

    async def connect(self):
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error:
            raise self.connect_error

    async def query(self, path: str, *args: Any) -> Any:
        self.queries.append((path, args))
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        if self.query_error:
            raise self.query_error

        if path == 'system.account':
            if self.raw_account is not None:
                return self.raw_account
            data = self.accounts.get(args[0], {'free': 0, 'reserved': 0})
            return {'nonce': 0, 'data': {'free': str(data['free']), 'reserved': str(data['reserved'])}}

        if path == 'fungible.balance':
            address = args[1]['Substrate']
            if address not in self.foreign:
                raise RuntimeError("no ledger entry")
            return {'balance': str(self.foreign[address])}

        raise RuntimeError(f"unknown storage path {path}")

    async def submit_and_watch(self, signed_payload: Any) -> WatchSubscription:
        if self.submit_error:
            raise self.submit_error
        self.submitted.append(signed_payload)
        if self.subscription is None:
            self.subscription = FakeSubscription([broadcast(), in_block(SUCCESS)])
        return self.subscription

    async def close(self):
        self.closed = True


class FakeSigner(Signer):
    def __init__(self, refuse: bool = False, error: Optional[Exception] = None):
        self.refuse = refuse
        self.error = error
        self.calls: List[tuple] = []

    async def sign(self, payload, account_address):
        self.calls.append((payload, account_address))
        if self.error:
            raise self.error
        if self.refuse:
            raise SigningFailed("User rejected the signing request")
        return SignedPayload(payload=payload, signer_address=account_address, signature="0xsig")


class FakeIndexerClient:
    """Indexer client returning queued bodies, optionally gated per call"""

    def __init__(self, bodies: Optional[List[Any]] = None):
        self.bodies = list(bodies or [])
        self.calls: List[Dict[str, Any]] = []
        self.gates: List[asyncio.Event] = []
        self.error: Optional[Exception] = None
        self.closed = False

    async def fetch_page(self, address, dest_para_id=None, page=0, row=None, message_type=None):
        index = len(self.calls)
        self.calls.append({'address': address, 'dest_para_id': dest_para_id})
        if index < len(self.gates):
            await self.gates[index].wait()
        if self.error:
            raise self.error
        return self.bodies[min(index, len(self.bodies) - 1)]

    async def close(self):
        self.closed = True


def indexer_record(message_id: str, origin=0, dest=2037, amount=DOT, timestamp=1700000000, status='success'):
    return {
        'message_hash': message_id,
        'origin_para_id': origin,
        'dest_para_id': dest,
        'origin_block_timestamp': timestamp,
        'status': status,
        'assets': [{'symbol': 'DOT', 'amount': str(amount), 'decimals': 10}],
    }


def indexer_body(*records) -> Dict[str, Any]:
    return {'code': 0, 'message': 'Success', 'data': {'count': len(records), 'list': list(records)}}


async def settle(delay: float = 0.02):
    """Let background tasks (watch, refresh, reset) run"""
    await asyncio.sleep(delay)


FAST_TIMING = {
    'poll_interval_seconds': 30,
    'refresh_delay_seconds': 0,
    'reset_delay_seconds': 0,
    'attempt_retention_seconds': 60,
    'connect_timeout_seconds': 1,
    'query_timeout_seconds': 1,
}


@pytest.fixture
def config():
    return build_config({'timing': FAST_TIMING, 'indexer': {'api_key_env': None}})


@pytest.fixture
def topology(config):
    return NetworkTopology.from_config(config)


@pytest.fixture
def transports():
    return {}


@pytest.fixture
def registry(topology, transports):
    return ChainRegistry(
        topology,
        lambda chain: transports.setdefault(chain.key, FakeTransport(chain.key)),
        connect_timeout=1,
        query_timeout=1,
    )
