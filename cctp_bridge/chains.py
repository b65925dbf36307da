"""Supported CCTP chains.

A static, validated table of chains the bridge can burn on and mint to.
Every chain carries its EVM chain id and its CCTP domain id. The two are
separate keyspaces and the registry keeps them in a strict bijection:
each chain has exactly one domain and each domain maps back to exactly one chain.

The table is validated once, when :py:class:`ChainRegistry` is constructed.
A duplicate chain id, domain or name fails fast with
:py:class:`~cctp_bridge.errors.ChainRegistryError`, instead of surfacing as a
wrong lookup in the middle of a transfer.

Lookups fail closed: an unknown chain id, domain or name raises
:py:class:`~cctp_bridge.errors.ChainNotFound` and is never defaulted.

Example::

    from cctp_bridge.chains import get_default_registry

    registry = get_default_registry()
    base = registry.describe(84532)
    assert registry.describe_by_domain(base.attestation_domain) == base
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterable

from eth_typing import HexAddress

from cctp_bridge.errors import ChainNotFound, ChainRegistryError

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ChainDescriptor:
    """One CCTP-enabled chain.

    Immutable, created at startup.
    """

    #: EVM chain id
    chain_id: int

    #: Human readable name, also the name used by the HTTP API
    name: str

    #: JSON-RPC endpoint
    rpc_endpoint: str

    #: Native USDC token on this chain
    usdc_address: HexAddress

    #: TokenMessenger, where ``depositForBurn()`` is called
    burn_contract_address: HexAddress

    #: MessageTransmitter, where ``receiveMessage()`` is called
    mint_contract_address: HexAddress

    #: CCTP domain id, distinct from :py:attr:`chain_id`
    attestation_domain: int

    #: Whether this is a test network
    testnet: bool = True


#: Testnet chains supported out of the box.
#:
#: Addresses from `CCTP EVM contracts <https://developers.circle.com/cctp/evm-smart-contracts>`__
#: and `Arc contract addresses <https://docs.arc.network/arc/references/contract-addresses>`__.
DEFAULT_CHAINS: tuple[ChainDescriptor, ...] = (
    ChainDescriptor(
        chain_id=11155111,
        name="Ethereum Sepolia",
        rpc_endpoint="https://ethereum-sepolia.publicnode.com",
        usdc_address=HexAddress("0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"),
        burn_contract_address=HexAddress("0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5"),
        mint_contract_address=HexAddress("0x7865fAfC2db2093669d92c0F33AeEF291086BEFD"),
        attestation_domain=0,
    ),
    ChainDescriptor(
        chain_id=43113,
        name="Avalanche Fuji",
        rpc_endpoint="https://api.avax-test.network/ext/bc/C/rpc",
        usdc_address=HexAddress("0x5425890298aed601595a70AB815c96711a31Bc65"),
        burn_contract_address=HexAddress("0xeb08f243E5d3FCFF26A9E38Ae5520A669f4019d0"),
        mint_contract_address=HexAddress("0xa9fB1b3009DCb79E2fe346c16a604B8Fa8aE0a79"),
        attestation_domain=1,
    ),
    ChainDescriptor(
        chain_id=11155420,
        name="OP Sepolia",
        rpc_endpoint="https://sepolia.optimism.io",
        usdc_address=HexAddress("0x5fd84259d66Cd46123540766Be93DFE6D43130D7"),
        burn_contract_address=HexAddress("0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5"),
        mint_contract_address=HexAddress("0x7865fAfC2db2093669d92c0F33AeEF291086BEFD"),
        attestation_domain=2,
    ),
    ChainDescriptor(
        chain_id=421614,
        name="Arbitrum Sepolia",
        rpc_endpoint="https://sepolia-rollup.arbitrum.io/rpc",
        usdc_address=HexAddress("0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d"),
        burn_contract_address=HexAddress("0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5"),
        mint_contract_address=HexAddress("0xaCF1ceeF35caAc005e15888dDb8A3515C41B4872"),
        attestation_domain=3,
    ),
    ChainDescriptor(
        chain_id=84532,
        name="Base Sepolia",
        rpc_endpoint="https://sepolia.base.org",
        usdc_address=HexAddress("0x036CbD53842c5426634e7929541eC2318f3dCF7e"),
        burn_contract_address=HexAddress("0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5"),
        mint_contract_address=HexAddress("0x7865fAfC2db2093669d92c0F33AeEF291086BEFD"),
        attestation_domain=6,
    ),
    ChainDescriptor(
        chain_id=80002,
        name="Polygon Amoy",
        rpc_endpoint="https://rpc-amoy.polygon.technology",
        usdc_address=HexAddress("0x41e94eb019c0762f9bfcf9fb1e58725bfb0e7582"),
        burn_contract_address=HexAddress("0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5"),
        mint_contract_address=HexAddress("0x7865fAfC2db2093669d92c0F33AeEF291086BEFD"),
        attestation_domain=7,
    ),
    ChainDescriptor(
        chain_id=4801,
        name="World Chain Sepolia",
        rpc_endpoint="https://worldchain-sepolia.g.alchemy.com/public",
        usdc_address=HexAddress("0x66145f38cBAC35Ca6F1Dfb4914dF98F1614aeA88"),
        burn_contract_address=HexAddress("0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA"),
        mint_contract_address=HexAddress("0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275"),
        attestation_domain=14,
    ),
    ChainDescriptor(
        chain_id=5042002,
        name="Arc Testnet",
        rpc_endpoint="https://rpc.testnet.arc.network",
        usdc_address=HexAddress("0x3600000000000000000000000000000000000000"),
        burn_contract_address=HexAddress("0x8FE6B999Dc680CcFDD5Bf7EB0974218be2542DAA"),
        mint_contract_address=HexAddress("0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275"),
        attestation_domain=26,
    ),
)

#: CCTP domain id for Arc Testnet
CCTP_DOMAIN_ARC_TESTNET = 26

#: CCTP domain id for World Chain Sepolia
CCTP_DOMAIN_WORLD_CHAIN_SEPOLIA = 14

#: CCTP domain id for Base Sepolia
CCTP_DOMAIN_BASE_SEPOLIA = 6


class ChainRegistry:
    """Lookup table of :py:class:`ChainDescriptor`.

    Pure and read-only after construction, safe to share between threads.
    """

    def __init__(self, chains: Iterable[ChainDescriptor]):
        self._chains: tuple[ChainDescriptor, ...] = tuple(chains)
        self._by_chain_id: dict[int, ChainDescriptor] = {}
        self._by_domain: dict[int, ChainDescriptor] = {}
        self._by_name: dict[str, ChainDescriptor] = {}

        if not self._chains:
            raise ChainRegistryError("Chain registry needs at least one chain")

        for chain in self._chains:
            if chain.chain_id in self._by_chain_id:
                raise ChainRegistryError(f"Duplicate chain id {chain.chain_id}: {self._by_chain_id[chain.chain_id].name} and {chain.name}")
            if chain.attestation_domain in self._by_domain:
                raise ChainRegistryError(f"Duplicate CCTP domain {chain.attestation_domain}: {self._by_domain[chain.attestation_domain].name} and {chain.name}")
            name_key = chain.name.lower()
            if name_key in self._by_name:
                raise ChainRegistryError(f"Duplicate chain name {chain.name}")
            if chain.attestation_domain < 0:
                raise ChainRegistryError(f"Negative CCTP domain for {chain.name}")

            self._by_chain_id[chain.chain_id] = chain
            self._by_domain[chain.attestation_domain] = chain
            self._by_name[name_key] = chain

        assert len(self._by_chain_id) == len(self._by_domain) == len(self._chains), "Chain id and domain keyspaces out of sync"

        logger.debug("Chain registry loaded with %d chains", len(self._chains))

    def __len__(self) -> int:
        return len(self._chains)

    def __contains__(self, chain_id: int) -> bool:
        return chain_id in self._by_chain_id

    def __repr__(self) -> str:
        return f"<ChainRegistry {', '.join(c.name for c in self._chains)}>"

    def describe(self, chain_id: int) -> ChainDescriptor:
        """Look up a chain by EVM chain id.

        :raises ChainNotFound:
            If the chain is not supported.
        """
        chain = self._by_chain_id.get(chain_id)
        if chain is None:
            raise ChainNotFound(f"Chain {chain_id} is not supported. Supported chains: {list(self._by_chain_id.keys())}")
        return chain

    def describe_by_domain(self, domain: int) -> ChainDescriptor:
        """Look up a chain by CCTP domain id.

        :raises ChainNotFound:
            If no supported chain uses this domain.
        """
        chain = self._by_domain.get(domain)
        if chain is None:
            raise ChainNotFound(f"CCTP domain {domain} is not supported. Supported domains: {list(self._by_domain.keys())}")
        return chain

    def describe_by_name(self, name: str) -> ChainDescriptor:
        """Look up a chain by its human readable name, case insensitive.

        :raises ChainNotFound:
            If the name is unknown.
        """
        chain = self._by_name.get(name.strip().lower())
        if chain is None:
            raise ChainNotFound(f"Unknown chain name {name!r}. Supported chains: {', '.join(c.name for c in self._chains)}")
        return chain

    def list_supported(self) -> list[ChainDescriptor]:
        """All chains, in table order."""
        return list(self._chains)

    def supported_routes(self) -> list[tuple[ChainDescriptor, ChainDescriptor]]:
        """Every ordered ``(source, destination)`` pair of distinct chains."""
        return [(source, dest) for source in self._chains for dest in self._chains if source.chain_id != dest.chain_id]

    def with_rpc_endpoints(self, endpoints: dict[int, str]) -> "ChainRegistry":
        """Return a copy of the registry with some RPC endpoints replaced.

        :param endpoints:
            Chain id -> JSON-RPC URL. Unknown chain ids are rejected.
        """
        for chain_id in endpoints:
            self.describe(chain_id)
        return ChainRegistry(replace(c, rpc_endpoint=endpoints[c.chain_id]) if c.chain_id in endpoints else c for c in self._chains)


def get_default_registry() -> ChainRegistry:
    """Registry of :py:data:`DEFAULT_CHAINS`."""
    return ChainRegistry(DEFAULT_CHAINS)
