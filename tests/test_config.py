"""Tests for configuration loading and topology construction."""

import pytest

from xcm_transfer.config import build_config, load_config
from xcm_transfer.topology import FOREIGN_SURFACE, NATIVE_SURFACE, NetworkTopology


def test_defaults():
    config = build_config()

    assert config.relay_chain == 'polkadot'
    assert config.policy.min_transfer == '0.001'
    assert config.policy.max_transfer == '1000'
    assert config.policy.fee_estimate == '0.01'
    assert config.policy.fee_asset_item == 0
    assert config.policy.weight_limit == 'Unlimited'
    assert config.timing.poll_interval_seconds == 30
    assert config.timing.refresh_delay_seconds == 3
    assert config.timing.reset_delay_seconds == 5


def test_overrides_merge_deeply():
    config = build_config({
        'transfer_policy': {'min_transfer': 0.1, 'fee_estimate': '0.1'},
        'chains': {'unique': {'ws_url': 'wss://example.invalid'}},
    })

    assert config.policy.min_transfer == '0.1'
    assert config.policy.fee_estimate == '0.1'
    assert config.policy.max_transfer == '1000'
    assert config.chains['unique']['ws_url'] == 'wss://example.invalid'
    assert config.chains['unique']['para_id'] == 2037


def test_api_key_from_environment(monkeypatch):
    monkeypatch.setenv('TEST_INDEXER_KEY', 'k-123')
    config = build_config({'indexer': {'api_key_env': 'TEST_INDEXER_KEY'}})

    assert config.indexer.api_key == 'k-123'


def test_aliases_are_case_insensitive():
    config = build_config({'chain_aliases': {'Moonbeam': 'Moonbeam'}})
    assert config.chain_aliases['moonbeam'] == 'Moonbeam'


def test_load_yaml(tmp_path):
    path = tmp_path / 'xcm_config.yaml'
    path.write_text(
        "transfer_policy:\n"
        "  min_transfer: '0.1'\n"
        "timing:\n"
        "  poll_interval_seconds: 12\n",
        encoding='utf-8',
    )

    config = load_config(str(path))

    assert config.policy.min_transfer == '0.1'
    assert config.timing.poll_interval_seconds == 12


def test_missing_file_falls_back(tmp_path):
    config = load_config(str(tmp_path / 'absent.yaml'))
    assert config.policy.min_transfer == '0.001'


@pytest.mark.parametrize("content", ["- just\n- a list\n", "key: [unclosed\n"])
def test_unusable_file_falls_back(tmp_path, content):
    path = tmp_path / 'bad.yaml'
    path.write_text(content, encoding='utf-8')

    assert load_config(str(path)).relay_chain == 'polkadot'


def test_topology_from_config(topology):
    assert topology.relay.key == 'polkadot'
    assert topology.relay.is_relay
    assert topology.get_chain('unique').para_id == 2037
    assert topology.balance_surface('unique', 'DOT') == FOREIGN_SURFACE
    assert topology.balance_surface('asset_hub', 'DOT') == NATIVE_SURFACE
    assert topology.balance_surface('polkadot', 'UNQ') is None
    assert sorted(topology.holdings()) == [
        ('asset_hub', 'DOT'), ('polkadot', 'DOT'), ('unique', 'DOT'), ('unique', 'UNQ'),
    ]


def test_relay_must_not_have_para_id():
    config = build_config({'chains': {'polkadot': {'para_id': 5}}})
    with pytest.raises(ValueError):
        NetworkTopology.from_config(config)


def test_explorer_link(topology):
    assert topology.get_chain('asset_hub').explorer_link('0x1') == 'https://assethub-polkadot.subscan.io/extrinsic/0x1'
    assert topology.get_chain('asset_hub').explorer_link(None) is None
