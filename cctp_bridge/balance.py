"""Unified USDC balance across chains.

Query Circle Gateway's balance endpoint for each chain in parallel and
add the results up.

A chain that cannot be read does not fail the whole lookup. It is
reported with a zero balance and an ``error`` diagnostic, so that a
broken chain is never mistaken for an empty one.

Example::

    from cctp_bridge.balance import create_balance_aggregator

    aggregator = create_balance_aggregator()
    snapshot = aggregator.get_unified_balance("0x...")
    for chain_balance in snapshot.balances:
        print(chain_balance.chain_name, chain_balance.balance, chain_balance.error or "")
    print("Total", snapshot.total_usdc)
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import requests
from eth_typing import HexAddress
from web3 import Web3

from cctp_bridge.chains import (
    CCTP_DOMAIN_ARC_TESTNET,
    CCTP_DOMAIN_BASE_SEPOLIA,
    CCTP_DOMAIN_WORLD_CHAIN_SEPOLIA,
    ChainRegistry,
    get_default_registry,
)
from cctp_bridge.constants import DEFAULT_HTTP_TIMEOUT, GATEWAY_API_TESTNET_URL
from cctp_bridge.errors import BridgeError, ChainNotFound, TransientNetworkError, ValidationError
from cctp_bridge.session import CircleSession, create_circle_session

logger = logging.getLogger(__name__)

#: Domains queried when the caller does not name any: Arc Testnet, World Chain Sepolia, Base Sepolia
DEFAULT_BALANCE_DOMAINS = (
    CCTP_DOMAIN_ARC_TESTNET,
    CCTP_DOMAIN_WORLD_CHAIN_SEPOLIA,
    CCTP_DOMAIN_BASE_SEPOLIA,
)

#: Token symbol the Gateway API expects
GATEWAY_TOKEN = "USDC"


@dataclass(slots=True, frozen=True)
class ChainBalance:
    """USDC balance on one chain."""

    #: CCTP domain
    domain: int

    #: Human readable chain name
    chain_name: str

    #: Balance in USDC, zero if :py:attr:`error` is set
    balance: Decimal

    #: Why the balance could not be read
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "chain": self.chain_name,
            "balance": str(self.balance),
            "error": self.error,
        }


@dataclass(slots=True, frozen=True)
class BalanceSnapshot:
    """Balances of one address, in the order the domains were requested."""

    address: HexAddress

    balances: tuple[ChainBalance, ...]

    #: Sum of the balances that could be read
    total_usdc: Decimal

    @property
    def per_chain_balances(self) -> dict[int, Decimal]:
        return {b.domain: b.balance for b in self.balances}

    @property
    def errors(self) -> dict[int, str]:
        return {b.domain: b.error for b in self.balances if b.error}

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "balances": [b.to_dict() for b in self.balances],
            "perChainBalances": {str(domain): str(balance) for domain, balance in self.per_chain_balances.items()},
            "totalUSDC": str(self.total_usdc),
        }


class BalanceAggregator:
    """Read USDC balances from Circle Gateway, one request per chain.

    Stateless, safe to share between threads.

    :param session:
        Session pointing at the Gateway API.

    :param registry:
        Resolves domains to chain names. Unknown domains are rejected.

    :param max_workers:
        How many chains are queried at the same time.

    :param timeout:
        Upper bound in seconds for one HTTP round trip.
    """

    def __init__(
        self,
        session: CircleSession,
        registry: ChainRegistry,
        max_workers: int = 4,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        assert max_workers > 0
        self.session = session
        self.registry = registry
        self.max_workers = max_workers
        self.timeout = timeout

    def __repr__(self):
        return f"<BalanceAggregator {self.session.api_url}>"

    def fetch_domain_balance(self, address: HexAddress, domain: int) -> Decimal:
        """Read the balance of one address on one chain.

        A chain missing from the response has zero balance.

        :raises TransientNetworkError:
            Transport failure, error status or malformed response.
        """
        body = {
            "token": GATEWAY_TOKEN,
            "sources": [{"depositor": address, "domain": domain}],
        }
        url = f"{self.session.api_url}/v1/balances"
        try:
            response = self.session.post(url, json=body, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            raise TransientNetworkError(f"Gateway balance lookup failed for domain {domain}: {e}") from e

        if not isinstance(data, dict):
            raise TransientNetworkError(f"Unexpected Gateway response for domain {domain}: {data!r:.200}")

        try:
            for entry in data.get("balances", []):
                if int(entry["domain"]) == domain:
                    return Decimal(str(entry["balance"]))
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise TransientNetworkError(f"Malformed Gateway balance for domain {domain}: {data!r}") from e

        return Decimal(0)

    def get_unified_balance(self, address: HexAddress | str, domains: list[int] | None = None) -> BalanceSnapshot:
        """Read balances on several chains in parallel and sum them.

        :param address:
            Depositor address.

        :param domains:
            CCTP domains to query. Default :py:data:`DEFAULT_BALANCE_DOMAINS`.

        :raises ValidationError:
            Bad address or a domain not in the registry.
            Per-chain read failures are not raised, see :py:attr:`ChainBalance.error`.
        """
        if not Web3.is_address(address):
            raise ValidationError(f"Not an EVM address: {address!r}")

        if domains is None:
            domains = list(DEFAULT_BALANCE_DOMAINS)

        names = {}
        for domain in domains:
            try:
                names[domain] = self.registry.describe_by_domain(domain).name
            except ChainNotFound as e:
                raise ValidationError(f"Unsupported domain {domain}") from e

        results: dict[int, ChainBalance] = {}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, max(len(domains), 1)), thread_name_prefix="gateway-balance") as executor:
            futures = {executor.submit(self.fetch_domain_balance, address, domain): domain for domain in names}

            for future in as_completed(futures):
                domain = futures[future]
                try:
                    balance = future.result()
                    results[domain] = ChainBalance(domain=domain, chain_name=names[domain], balance=balance)
                except BridgeError as e:
                    logger.warning("Could not read USDC balance of %s on %s (domain %d): %s", address, names[domain], domain, e)
                    results[domain] = ChainBalance(domain=domain, chain_name=names[domain], balance=Decimal(0), error=str(e))

        balances = tuple(results[domain] for domain in names)
        total = sum((b.balance for b in balances if b.ok), Decimal(0))

        logger.info("Unified USDC balance of %s: %s over %d chains, %d unreadable", address, total, len(balances), len([b for b in balances if not b.ok]))
        return BalanceSnapshot(address=HexAddress(address), balances=balances, total_usdc=total)

    def fetch_gateway_info(self) -> dict:
        """Gateway's own list of supported domains and contracts.

        :raises TransientNetworkError:
            Transport failure or error status.
        """
        try:
            response = self.session.get(f"{self.session.api_url}/v1/info", timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as e:
            raise TransientNetworkError(f"Gateway info lookup failed: {e}") from e


def create_balance_aggregator(
    api_url: str = GATEWAY_API_TESTNET_URL,
    registry: ChainRegistry | None = None,
    max_workers: int = 4,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> BalanceAggregator:
    """Create a :py:class:`BalanceAggregator` with a rate limited, retrying session."""
    return BalanceAggregator(
        create_circle_session(api_url),
        registry or get_default_registry(),
        max_workers=max_workers,
        timeout=timeout,
    )
