"""Configuration from environment variables."""

from pathlib import Path

import pytest

from cctp_bridge.config import BridgeConfig
from cctp_bridge.constants import IRIS_API_BASE_URL, IRIS_API_SANDBOX_URL
from cctp_bridge.errors import ValidationError
from cctp_bridge.store import JSONFileTransferStore, MemoryTransferStore

#: Well known Anvil test account 0
ANVIL_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
ANVIL_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


def test_defaults():
    config = BridgeConfig.from_env({})
    assert config.network == "testnet"
    assert config.iris_api_url == IRIS_API_SANDBOX_URL
    assert config.poll_interval == 30
    assert config.max_poll_attempts == 60
    assert config.private_key is None
    assert isinstance(config.create_store(), MemoryTransferStore)


def test_from_env(tmp_path):
    config = BridgeConfig.from_env(
        {
            "CCTP_NETWORK": "Mainnet",
            "ATTESTATION_POLL_INTERVAL": "2.5",
            "ATTESTATION_MAX_ATTEMPTS": "10",
            "TRANSFER_STORE_PATH": str(tmp_path / "transfers.json"),
            "JSON_RPC_84532": "http://localhost:8545",
            "JSON_RPC_POLYGON": "http://ignored",
            "BRIDGE_WALLET_PRIVATE_KEY": ANVIL_KEY,
        }
    )
    assert config.network == "mainnet"
    assert config.iris_api_url == IRIS_API_BASE_URL
    assert config.poll_interval == 2.5
    assert config.max_poll_attempts == 10
    assert config.rpc_endpoints == {84532: "http://localhost:8545"}
    assert ANVIL_KEY not in repr(config)

    store = config.create_store()
    assert isinstance(store, JSONFileTransferStore)
    assert store.path == Path(tmp_path / "transfers.json")


def test_explicit_iris_url():
    config = BridgeConfig.from_env({"IRIS_API_URL": "http://localhost:9000"})
    assert config.iris_api_url == "http://localhost:9000"
    assert config.create_attestation_client().session.api_url == "http://localhost:9000"


@pytest.mark.parametrize(
    "environ",
    [
        {"CCTP_NETWORK": "devnet"},
        {"ATTESTATION_MAX_ATTEMPTS": "many"},
        {"RECEIPT_TIMEOUT": "-1"},
    ],
)
def test_bad_values(environ):
    with pytest.raises(ValidationError):
        BridgeConfig.from_env(environ)


def test_rpc_overrides_reach_registry():
    config = BridgeConfig(rpc_endpoints={84532: "http://localhost:8545", 1: "http://mainnet"})
    registry = config.create_registry()
    assert registry.describe(84532).rpc_endpoint == "http://localhost:8545"
    assert 1 not in registry


def test_coordinator_needs_key():
    with pytest.raises(ValidationError):
        BridgeConfig().create_coordinator()


def test_create_coordinator():
    coordinator = BridgeConfig(private_key=ANVIL_KEY, poll_interval=1).create_coordinator()
    try:
        assert coordinator.signer.address == ANVIL_ADDRESS
        assert coordinator.poll_interval == 1
        assert coordinator.approve_before_burn
        assert coordinator.token_reader is coordinator.receipts
    finally:
        coordinator.shutdown()
