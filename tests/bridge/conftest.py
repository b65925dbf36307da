"""Bridge test fixtures."""

import pytest

from cctp_bridge.attestation import AttestationClient
from cctp_bridge.chains import ChainRegistry, get_default_registry
from cctp_bridge.coordinator import TransferCoordinator
from cctp_bridge.errors import SigningRejected
from cctp_bridge.transfer import TransferRequest

from fakes import CHAIN_A, CHAIN_B, RECIPIENT, SENDER, FakeChain, FakeIrisSession


@pytest.fixture()
def registry() -> ChainRegistry:
    return get_default_registry()


@pytest.fixture()
def chain(registry) -> FakeChain:
    return FakeChain(registry)


@pytest.fixture()
def transfer_request() -> TransferRequest:
    """10 USDC from Base Sepolia to Arc Testnet."""
    return TransferRequest(
        source_chain_id=CHAIN_A,
        destination_chain_id=CHAIN_B,
        amount="10.00",
        sender_address=SENDER,
        recipient_address=RECIPIENT,
    )


@pytest.fixture()
def make_coordinator(registry, chain):
    """Build coordinators with instant polling, shut down after the test."""
    created = []

    def _make(iris: FakeIrisSession, **kwargs) -> TransferCoordinator:
        kwargs.setdefault("poll_interval", 0)
        kwargs.setdefault("retry_delay", 0)
        kwargs.setdefault("signer", chain)
        kwargs.setdefault("receipts", chain)
        coordinator = TransferCoordinator(
            registry=registry,
            attestation_client=AttestationClient(iris, timeout=5),
            **kwargs,
        )
        created.append(coordinator)
        return coordinator

    yield _make

    for coordinator in created:
        coordinator.shutdown()


@pytest.fixture()
def signing_rejected() -> SigningRejected:
    return SigningRejected("User declined the PIN challenge")
