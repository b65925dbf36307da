"""Bridge configuration from environment variables.

.. list-table::
    :header-rows: 1

    * - Variable
      - Default
    * - ``CCTP_NETWORK``
      - ``testnet``, or ``mainnet``
    * - ``IRIS_API_URL``
      - Iris sandbox or mainnet URL, by network
    * - ``GATEWAY_API_URL``
      - ``https://gateway-api-testnet.circle.com``
    * - ``ATTESTATION_POLL_INTERVAL``
      - ``30`` seconds
    * - ``ATTESTATION_MAX_ATTEMPTS``
      - ``60``
    * - ``RECEIPT_TIMEOUT``
      - ``300`` seconds
    * - ``HTTP_TIMEOUT``
      - ``30`` seconds
    * - ``TRANSFER_STORE_PATH``
      - unset, records are kept in memory
    * - ``MAX_PARALLEL_TRANSFERS``
      - ``8``
    * - ``BALANCE_MAX_WORKERS``
      - ``4``
    * - ``BRIDGE_WALLET_PRIVATE_KEY``
      - unset, the relayer cannot sign
    * - ``JSON_RPC_<CHAIN_ID>``
      - RPC from the chain table, e.g. ``JSON_RPC_84532`` for Base Sepolia
    * - ``LOG_LEVEL``
      - ``info``
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from cctp_bridge.attestation import AttestationClient, create_attestation_client
from cctp_bridge.balance import BalanceAggregator, create_balance_aggregator
from cctp_bridge.chains import ChainRegistry, get_default_registry
from cctp_bridge.constants import (
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_MAX_POLL_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RECEIPT_TIMEOUT,
    GATEWAY_API_TESTNET_URL,
    IRIS_API_BASE_URL,
    IRIS_API_SANDBOX_URL,
)
from cctp_bridge.coordinator import StateChangeCallback, TransferCoordinator
from cctp_bridge.errors import ValidationError
from cctp_bridge.receipt import Web3ReceiptSource
from cctp_bridge.signer import LocalAccountSigner
from cctp_bridge.store import JSONFileTransferStore, MemoryTransferStore, TransferStore

logger = logging.getLogger(__name__)

#: Iris base URL per ``CCTP_NETWORK``
IRIS_URLS = {
    "testnet": IRIS_API_SANDBOX_URL,
    "mainnet": IRIS_API_BASE_URL,
}


@dataclass(slots=True)
class BridgeConfig:
    """Everything needed to wire up a bridge."""

    network: str = "testnet"
    iris_api_url: str = IRIS_API_SANDBOX_URL
    gateway_api_url: str = GATEWAY_API_TESTNET_URL
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_poll_attempts: int = DEFAULT_MAX_POLL_ATTEMPTS
    receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT
    http_timeout: float = DEFAULT_HTTP_TIMEOUT

    #: JSON store path, ``None`` keeps records in memory
    store_path: Path | None = None

    max_parallel_transfers: int = 8
    balance_max_workers: int = 4

    #: Relayer key, never logged
    private_key: str | None = field(default=None, repr=False)

    #: Chain id -> RPC URL overrides
    rpc_endpoints: dict[int, str] = field(default_factory=dict)

    log_level: str = "info"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BridgeConfig":
        """Read the configuration from environment variables.

        :raises ValidationError:
            A variable has a value that cannot be used.
        """
        if environ is None:
            environ = os.environ

        network = environ.get("CCTP_NETWORK", "testnet").lower()
        if network not in IRIS_URLS:
            raise ValidationError(f"CCTP_NETWORK must be one of {list(IRIS_URLS)}, got {network!r}")

        rpc_endpoints = {}
        for key, value in environ.items():
            if key.startswith("JSON_RPC_") and value:
                suffix = key.removeprefix("JSON_RPC_")
                if suffix.isdigit():
                    rpc_endpoints[int(suffix)] = value

        store_path = environ.get("TRANSFER_STORE_PATH")

        return cls(
            network=network,
            iris_api_url=environ.get("IRIS_API_URL", IRIS_URLS[network]),
            gateway_api_url=environ.get("GATEWAY_API_URL", GATEWAY_API_TESTNET_URL),
            poll_interval=_number(environ, "ATTESTATION_POLL_INTERVAL", DEFAULT_POLL_INTERVAL, float),
            max_poll_attempts=_number(environ, "ATTESTATION_MAX_ATTEMPTS", DEFAULT_MAX_POLL_ATTEMPTS, int),
            receipt_timeout=_number(environ, "RECEIPT_TIMEOUT", DEFAULT_RECEIPT_TIMEOUT, float),
            http_timeout=_number(environ, "HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT, float),
            store_path=Path(store_path).absolute() if store_path else None,
            max_parallel_transfers=_number(environ, "MAX_PARALLEL_TRANSFERS", 8, int),
            balance_max_workers=_number(environ, "BALANCE_MAX_WORKERS", 4, int),
            private_key=environ.get("BRIDGE_WALLET_PRIVATE_KEY") or None,
            rpc_endpoints=rpc_endpoints,
            log_level=environ.get("LOG_LEVEL", "info"),
        )

    def create_registry(self) -> ChainRegistry:
        registry = get_default_registry()
        known = {chain_id: url for chain_id, url in self.rpc_endpoints.items() if chain_id in registry}
        for chain_id in self.rpc_endpoints.keys() - known.keys():
            logger.warning("Ignoring JSON_RPC_%d, chain %d is not a CCTP chain", chain_id, chain_id)
        return registry.with_rpc_endpoints(known)

    def create_store(self) -> TransferStore:
        if self.store_path:
            return JSONFileTransferStore(self.store_path)
        return MemoryTransferStore()

    def create_attestation_client(self) -> AttestationClient:
        return create_attestation_client(self.iris_api_url, timeout=self.http_timeout)

    def create_balance_aggregator(self, registry: ChainRegistry | None = None) -> BalanceAggregator:
        return create_balance_aggregator(
            self.gateway_api_url,
            registry or self.create_registry(),
            max_workers=self.balance_max_workers,
            timeout=self.http_timeout,
        )

    def create_coordinator(
        self,
        registry: ChainRegistry | None = None,
        approve_before_burn: bool = True,
        on_state_change: StateChangeCallback | None = None,
    ) -> TransferCoordinator:
        """Wire a coordinator that signs with :py:attr:`private_key`.

        :raises ValidationError:
            ``BRIDGE_WALLET_PRIVATE_KEY`` is not set.
        """
        if not self.private_key:
            raise ValidationError("BRIDGE_WALLET_PRIVATE_KEY is not configured")

        registry = registry or self.create_registry()
        receipts = Web3ReceiptSource(registry, request_timeout=self.http_timeout)
        signer = LocalAccountSigner.from_private_key(self.private_key, receipts.get_web3)

        return TransferCoordinator(
            registry=registry,
            attestation_client=self.create_attestation_client(),
            signer=signer,
            receipts=receipts,
            store=self.create_store(),
            poll_interval=self.poll_interval,
            max_poll_attempts=self.max_poll_attempts,
            receipt_timeout=self.receipt_timeout,
            max_workers=self.max_parallel_transfers,
            approve_before_burn=approve_before_burn,
            token_reader=receipts,
            on_state_change=on_state_change,
        )


def _number(environ: Mapping[str, str], name: str, default, kind):
    value = environ.get(name)
    if value is None or value == "":
        return default
    try:
        parsed = kind(value)
    except ValueError as e:
        raise ValidationError(f"{name} must be a number, got {value!r}") from e
    if parsed < 0:
        raise ValidationError(f"{name} must not be negative, got {value!r}")
    return parsed
