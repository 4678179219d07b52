"""
Tests for the transfer state machine.

Validation order, signing, submission and the watch stream are driven
through fake collaborators; timing delays are zero.
"""

import asyncio
from dataclasses import replace

import pytest
import pytest_asyncio

from conftest import (
    ALICE, DOT, FAILED, SUCCESS,
    FakeSigner, FakeSubscription, broadcast, finalized, in_block, settle,
)
from xcm_transfer.balance_aggregator import BalanceAggregator
from xcm_transfer.chain_connection import TxPhase, WatchEvent
from xcm_transfer.errors import SignerNotConfigured
from xcm_transfer.message_builder import MessageBuilder
from xcm_transfer.transfer_orchestrator import (
    TERMINAL_STATUSES,
    TransferIntent,
    TransferOrchestrator,
    TransferStatus,
)

FEE = DOT // 100


class Harness:
    """Orchestrator plus the fakes behind it"""

    def __init__(self, registry, topology, config, transports, signer=None, timing=None):
        self.registry = registry
        self.transports = transports
        self.signer = signer or FakeSigner()
        self.refreshed = []
        self.seen = []

        async def refresher(account):
            self.refreshed.append(account)

        self.orchestrator = TransferOrchestrator(
            registry,
            topology,
            MessageBuilder(topology, config.policy),
            BalanceAggregator(registry, topology),
            self.signer,
            policy=config.policy,
            timing=timing or config.timing,
            balance_refresher=refresher,
        )
        self.orchestrator.add_listener(lambda attempt: self.seen.append(attempt.status))

    def watch(self, *events, chain='polkadot', **kwargs):
        subscription = FakeSubscription(list(events), **kwargs)
        self.transports[chain].subscription = subscription
        return subscription

    async def submit(self, amount='1', source='polkadot', destination='unique', asset='DOT'):
        intent = TransferIntent(source, destination, asset, amount, ALICE)
        return await self.orchestrator.submit(intent, ALICE)


@pytest.fixture
def harness(registry, topology, config, transports):
    return Harness(registry, topology, config, transports)


@pytest_asyncio.fixture
async def connected(harness):
    await harness.registry.connect_all()
    harness.transports['polkadot'].set_balance(ALICE, 100 * DOT)
    return harness


def terminal_count(statuses):
    return sum(1 for s in statuses if s in TERMINAL_STATUSES)


class TestValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ['0.0009', '1000.0000000001', '5000'])
    async def test_out_of_bounds_never_signs(self, harness, amount):
        await harness.registry.connect_all()
        harness.transports['polkadot'].set_balance(ALICE, 10000 * DOT)

        attempt = await harness.submit(amount)

        assert attempt.status == TransferStatus.REJECTED
        assert attempt.error_code == 'AmountOutOfBounds'
        assert TransferStatus.SIGNING not in harness.seen
        assert harness.signer.calls == []
        assert attempt.id not in harness.orchestrator.attempts

    @pytest.mark.asyncio
    async def test_bounds_are_inclusive(self, harness):
        await harness.registry.connect_all()
        harness.transports['polkadot'].set_balance(ALICE, 10000 * DOT)

        low = await harness.submit('0.001')
        high = await harness.submit('1000')

        assert low.status != TransferStatus.REJECTED
        assert high.status != TransferStatus.REJECTED

    @pytest.mark.asyncio
    async def test_balance_exactly_amount_plus_fee_passes(self, harness):
        await harness.registry.connect_all()
        harness.transports['polkadot'].set_balance(ALICE, DOT + FEE)

        attempt = await harness.submit('1')
        await harness.orchestrator.wait_for_terminal(attempt, timeout=1)

        assert attempt.status == TransferStatus.FINALIZED_SUCCESS
        assert len(harness.signer.calls) == 1

    @pytest.mark.asyncio
    async def test_one_minor_unit_short_is_rejected(self, harness):
        await harness.registry.connect_all()
        harness.transports['polkadot'].set_balance(ALICE, DOT + FEE - 1)

        attempt = await harness.submit('1')

        assert attempt.status == TransferStatus.REJECTED
        assert attempt.error_code == 'InsufficientBalance'
        assert '0.0000000001' in attempt.failure_reason
        assert 'fee estimate 0.01 DOT' in attempt.failure_reason
        assert harness.signer.calls == []

    @pytest.mark.asyncio
    async def test_reserved_balance_does_not_count(self, harness):
        await harness.registry.connect_all()
        harness.transports['polkadot'].set_balance(ALICE, DOT, reserved=10 * DOT)

        attempt = await harness.submit('1')

        assert attempt.error_code == 'InsufficientBalance'

    @pytest.mark.asyncio
    async def test_unreadable_balance_rejects(self, harness):
        await harness.registry.connect_all()
        harness.transports['polkadot'].query_error = ConnectionError("dropped")

        attempt = await harness.submit('1')

        assert attempt.status == TransferStatus.REJECTED
        assert attempt.error_code == 'ChainUnreachable'

    @pytest.mark.asyncio
    async def test_unsupported_route_rejects(self, connected):
        attempt = await connected.submit('1', destination='polkadot')

        assert attempt.status == TransferStatus.REJECTED
        assert attempt.error_code == 'UnsupportedRoute'

    @pytest.mark.asyncio
    async def test_source_without_asset_rejects(self, connected):
        attempt = await connected.submit('1', source='polkadot', asset='UNQ')

        assert attempt.error_code == 'UnsupportedRoute'

    @pytest.mark.asyncio
    async def test_malformed_amount_rejects(self, connected):
        attempt = await connected.submit('1.5.2')

        assert attempt.status == TransferStatus.REJECTED
        assert attempt.error_code == 'InvalidAmount'

    @pytest.mark.asyncio
    async def test_rejected_attempt_never_submits(self, connected):
        await connected.submit('0')

        assert connected.transports['polkadot'].submitted == []


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_success_path(self, connected):
        subscription = connected.watch(broadcast('0xabc'), in_block(SUCCESS), finalized(SUCCESS))

        attempt = await connected.submit('5')
        await connected.orchestrator.wait_for_terminal(attempt.id, timeout=1)
        await settle()

        assert attempt.status == TransferStatus.FINALIZED_SUCCESS
        assert attempt.tx_hash == '0xabc'
        assert attempt.block_hash == '0xblock'
        assert [s for s, _ in attempt.transitions] == [
            TransferStatus.VALIDATING,
            TransferStatus.SIGNING,
            TransferStatus.SUBMITTED,
            TransferStatus.IN_BLOCK,
            TransferStatus.FINALIZED_SUCCESS,
        ]
        assert subscription.unsubscribe_calls == 1
        assert attempt.built_payload.assets['V4'][0]['fun'] == {'Fungible': str(5 * DOT)}

    @pytest.mark.asyncio
    async def test_success_side_effects(self, connected):
        connected.watch(broadcast(), in_block(SUCCESS))

        attempt = await connected.submit('5')
        assert connected.orchestrator.amount_input == '5'
        await connected.orchestrator.wait_for_terminal(attempt, timeout=1)
        await settle()

        assert connected.refreshed == [ALICE]
        assert connected.orchestrator.amount_input == ''
        assert connected.orchestrator.status == TransferStatus.IDLE

    @pytest.mark.asyncio
    async def test_in_block_without_success_event_fails(self, connected):
        subscription = connected.watch(broadcast('0xdead'), in_block(FAILED))

        attempt = await connected.submit('5')
        await connected.orchestrator.wait_for_terminal(attempt, timeout=1)
        await settle()

        assert attempt.status == TransferStatus.FINALIZED_FAILURE
        assert attempt.error_code == 'TransactionFailed'
        assert attempt.explorer_url == 'https://polkadot.subscan.io/extrinsic/0xdead'
        assert subscription.unsubscribe_calls == 1
        assert connected.refreshed == [ALICE]
        assert connected.orchestrator.amount_input == '5'

    @pytest.mark.asyncio
    async def test_in_block_with_no_events_fails(self, connected):
        subscription = connected.watch(in_block())

        attempt = await connected.submit('5')
        await connected.orchestrator.wait_for_terminal(attempt, timeout=1)
        await settle()

        assert attempt.status == TransferStatus.FINALIZED_FAILURE
        assert subscription.unsubscribe_calls == 1

    @pytest.mark.asyncio
    async def test_finalized_without_in_block_still_passes_through_in_block(self, connected):
        connected.watch(finalized(SUCCESS))

        attempt = await connected.submit('5')
        await connected.orchestrator.wait_for_terminal(attempt, timeout=1)

        assert attempt.reached(TransferStatus.IN_BLOCK)
        assert attempt.status == TransferStatus.FINALIZED_SUCCESS

    @pytest.mark.asyncio
    async def test_duplicate_terminal_events_are_ignored(self, connected):
        subscription = connected.watch(
            in_block(SUCCESS), finalized(SUCCESS), finalized(FAILED), in_block(),
        )

        attempt = await connected.submit('5')
        await connected.orchestrator.wait_for_terminal(attempt, timeout=1)
        await settle()

        assert attempt.status == TransferStatus.FINALIZED_SUCCESS
        assert terminal_count(connected.seen) == 1
        assert subscription.unsubscribe_calls == 1

    @pytest.mark.asyncio
    async def test_stream_error_event(self, connected):
        subscription = connected.watch(broadcast(), WatchEvent(phase=TxPhase.BROADCAST, error='Invalid Transaction'))

        attempt = await connected.submit('5')
        await connected.orchestrator.wait_for_terminal(attempt, timeout=1)
        await settle()

        assert attempt.status == TransferStatus.ERROR
        assert attempt.error_code == 'TransactionFailed'
        assert 'Invalid Transaction' in attempt.failure_reason
        assert subscription.unsubscribe_calls == 1
        assert connected.refreshed == [ALICE]

    @pytest.mark.asyncio
    async def test_stream_raising_is_error(self, connected):
        subscription = connected.watch(broadcast(), fail_with=ConnectionError("socket closed"))

        attempt = await connected.submit('5')
        await connected.orchestrator.wait_for_terminal(attempt, timeout=1)
        await settle()

        assert attempt.status == TransferStatus.ERROR
        assert subscription.unsubscribe_calls == 1

    @pytest.mark.asyncio
    async def test_stream_ending_early_is_error(self, connected):
        subscription = connected.watch(broadcast())

        attempt = await connected.submit('5')
        await connected.orchestrator.wait_for_terminal(attempt, timeout=1)
        await settle()

        assert attempt.status == TransferStatus.ERROR
        assert subscription.unsubscribe_calls == 1

    @pytest.mark.asyncio
    async def test_submit_does_not_wait_for_finality(self, connected):
        subscription = connected.watch(broadcast(), hold_open=True)

        attempt = await connected.submit('5')
        await settle()

        assert attempt.status == TransferStatus.SUBMITTED
        assert not attempt.is_terminal

        await connected.orchestrator.close()
        assert subscription.unsubscribe_calls == 1

    @pytest.mark.asyncio
    async def test_submit_transport_failure(self, connected):
        connected.transports['polkadot'].submit_error = ConnectionError("socket closed")

        attempt = await connected.submit('5')

        assert attempt.status == TransferStatus.ERROR
        assert attempt.error_code == 'ChainUnreachable'

    @pytest.mark.asyncio
    async def test_node_rejection_is_error(self, connected):
        connected.transports['polkadot'].submit_error = RuntimeError("1010: Invalid Transaction: Inability to pay some fees")

        attempt = await connected.submit('5')

        assert attempt.status == TransferStatus.ERROR
        assert attempt.error_code == 'TransactionFailed'
        assert '1010' in attempt.failure_reason
        assert connected.seen[-1] == TransferStatus.ERROR
        assert connected.orchestrator.status == TransferStatus.ERROR
        await connected.orchestrator.wait_for_terminal(attempt, timeout=1)

    @pytest.mark.asyncio
    async def test_close_ends_watched_attempts(self, connected):
        connected.watch(broadcast(), hold_open=True)
        attempt = await connected.submit('5')
        await settle()

        await connected.orchestrator.close()

        assert attempt.status == TransferStatus.ERROR
        assert attempt.error_code == 'TransactionFailed'
        await connected.orchestrator.wait_for_terminal(attempt)


class TestSigning:

    @pytest.mark.asyncio
    async def test_refusal_is_error(self, registry, topology, config, transports):
        harness = Harness(registry, topology, config, transports, signer=FakeSigner(refuse=True))
        await registry.connect_all()
        transports['polkadot'].set_balance(ALICE, 100 * DOT)

        attempt = await harness.submit('5')

        assert attempt.status == TransferStatus.ERROR
        assert attempt.error_code == 'SigningFailed'
        assert transports['polkadot'].submitted == []
        assert attempt.id in harness.orchestrator.attempts

    @pytest.mark.asyncio
    async def test_unavailable_signer_is_signing_failed(self, registry, topology, config, transports):
        harness = Harness(registry, topology, config, transports, signer=FakeSigner(error=ConnectionError("gone")))
        await registry.connect_all()
        transports['polkadot'].set_balance(ALICE, 100 * DOT)

        attempt = await harness.submit('5')

        assert attempt.error_code == 'SigningFailed'

    @pytest.mark.asyncio
    async def test_crashing_signer_is_signing_failed(self, registry, topology, config, transports):
        harness = Harness(registry, topology, config, transports, signer=FakeSigner(error=RuntimeError("extension crashed")))
        await registry.connect_all()
        transports['polkadot'].set_balance(ALICE, 100 * DOT)

        attempt = await harness.submit('5')

        assert attempt.status == TransferStatus.ERROR
        assert attempt.error_code == 'SigningFailed'
        assert 'extension crashed' in attempt.failure_reason
        assert harness.seen[-1] == TransferStatus.ERROR
        assert transports['polkadot'].submitted == []

    def test_missing_signer_is_configuration_error(self, registry, topology, config):
        with pytest.raises(SignerNotConfigured):
            TransferOrchestrator(
                registry,
                topology,
                MessageBuilder(topology, config.policy),
                BalanceAggregator(registry, topology),
                None,
            )


class TestRetention:

    @pytest.mark.asyncio
    async def test_terminal_attempts_are_purged(self, registry, topology, config, transports):
        timing = replace(config.timing, attempt_retention_seconds=0.01)
        harness = Harness(registry, topology, config, transports, timing=timing)
        await registry.connect_all()
        transports['polkadot'].set_balance(ALICE, 100 * DOT)

        attempt = await harness.submit('5')
        await harness.orchestrator.wait_for_terminal(attempt, timeout=1)
        assert harness.orchestrator.get_attempt(attempt.id) is attempt

        await asyncio.sleep(0.05)
        assert harness.orchestrator.get_attempt(attempt.id) is None

    @pytest.mark.asyncio
    async def test_to_dict(self, connected):
        attempt = await connected.submit('5')
        await connected.orchestrator.wait_for_terminal(attempt, timeout=1)

        data = attempt.to_dict()
        assert data['status'] == 'Finalized(Success)'
        assert data['amount_minor'] == str(5 * DOT)
        assert data['source_chain'] == 'polkadot'
