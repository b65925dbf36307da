"""Chain reads for burns and mints.

- Wait, with an upper bound, until a transaction is mined
- Find the CCTP ``MessageSent`` event in a burn receipt and derive the message hash
- Read USDC balance and allowance before burning

The coordinator talks to chains only through :py:class:`ReceiptSource`
and :py:class:`TokenReader`, so tests can replace them with in-memory fakes.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Mapping, Protocol

import requests
from eth_abi import decode
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TimeExhausted, Web3Exception

from cctp_bridge.chains import ChainRegistry
from cctp_bridge.constants import MESSAGE_SENT_TOPIC
from cctp_bridge.errors import ProtocolViolation, TransferTimeout, TransientNetworkError
from cctp_bridge.transfer import ERC20_ABI
from cctp_bridge.utils import get_url_domain

logger = logging.getLogger(__name__)

#: Receipt ``status`` of a successful transaction
TX_STATUS_SUCCESS = 1


class ReceiptSource(Protocol):
    """Where the coordinator gets transaction receipts from."""

    def wait_for_receipt(self, chain_id: int, tx_hash: str, timeout: float) -> Mapping:
        """Block until the transaction is mined.

        :return:
            Receipt with at least ``status`` and ``logs``.

        :raises TransferTimeout:
            Not mined within *timeout* seconds.

        :raises TransientNetworkError:
            RPC transport failure.
        """


class TokenReader(Protocol):
    """Read-only ERC-20 state checked before a burn.

    Both methods return raw token units and raise
    :py:class:`~cctp_bridge.errors.TransientNetworkError` when the chain cannot be read.
    """

    def balance_of(self, chain_id: int, token: HexAddress, owner: HexAddress) -> int: ...

    def allowance(self, chain_id: int, token: HexAddress, owner: HexAddress, spender: HexAddress) -> int: ...


@dataclass(slots=True, frozen=True)
class MessageSent:
    """CCTP message emitted by a burn."""

    #: Raw CCTP message, relayed to the destination chain
    message: bytes

    #: ``keccak256(message)`` as ``0x`` prefixed hex, the attestation lookup key
    message_hash: str


def is_receipt_success(receipt: Mapping) -> bool:
    return receipt.get("status") == TX_STATUS_SUCCESS


def extract_message_sent(receipt: Mapping, emitter: HexAddress | str | None = None) -> MessageSent:
    """Find the ``MessageSent(bytes)`` event in a burn receipt.

    :param receipt:
        Receipt of a mined ``depositForBurn()``.

    :param emitter:
        If given, only accept the event from this MessageTransmitter address.

    :raises ProtocolViolation:
        The receipt has no such event. A successful burn without a
        traceable message must never be ignored.
    """
    emitter_lower = emitter.lower() if emitter else None

    for log in receipt.get("logs", []):
        topics = log.get("topics") or []
        if not topics:
            continue

        if "0x" + HexBytes(topics[0]).hex().removeprefix("0x") != MESSAGE_SENT_TOPIC:
            continue

        if emitter_lower and str(log.get("address", "")).lower() != emitter_lower:
            logger.debug("Ignoring MessageSent from unexpected emitter %s", log.get("address"))
            continue

        try:
            (message,) = decode(["bytes"], bytes(HexBytes(log["data"])))
        except Exception as e:
            raise ProtocolViolation(f"Undecodable MessageSent event in tx {_tx_hash_of(receipt)}: {e}") from e

        message_hash = "0x" + Web3.keccak(message).hex().removeprefix("0x")
        return MessageSent(message=message, message_hash=message_hash)

    raise ProtocolViolation(f"MessageSent event not found in burn transaction {_tx_hash_of(receipt)}")


class Web3ReceiptSource:
    """Wait for receipts and read USDC state over JSON-RPC, one :py:class:`~web3.Web3` per chain.

    Implements both :py:class:`ReceiptSource` and :py:class:`TokenReader`.

    Connections are created lazily from the registry's RPC endpoints.

    :param registry:
        Chains and their RPC endpoints.

    :param web3_factory:
        Override how a :py:class:`~web3.Web3` is created from an RPC URL.

    :param poll_latency:
        Seconds between ``eth_getTransactionReceipt`` calls.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        web3_factory: Callable[[str], Web3] | None = None,
        poll_latency: float = 2.0,
        request_timeout: float = 30.0,
    ):
        self.registry = registry
        self.poll_latency = poll_latency
        self.request_timeout = request_timeout
        self._web3_factory = web3_factory or self._create_web3
        self._connections: dict[int, Web3] = {}
        self._lock = threading.Lock()

    def _create_web3(self, rpc_url: str) -> Web3:
        return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": self.request_timeout}))

    def get_web3(self, chain_id: int) -> Web3:
        """Cached connection to a chain."""
        with self._lock:
            web3 = self._connections.get(chain_id)
            if web3 is None:
                chain = self.registry.describe(chain_id)
                logger.info("Connecting to %s via %s", chain.name, get_url_domain(chain.rpc_endpoint))
                web3 = self._web3_factory(chain.rpc_endpoint)
                self._connections[chain_id] = web3
            return web3

    def wait_for_receipt(self, chain_id: int, tx_hash: str, timeout: float) -> Mapping:
        web3 = self.get_web3(chain_id)
        try:
            return web3.eth.wait_for_transaction_receipt(
                HexBytes(tx_hash),
                timeout=timeout,
                poll_latency=self.poll_latency,
            )
        except TimeExhausted as e:
            raise TransferTimeout(f"Transaction {tx_hash} not mined on chain {chain_id} within {timeout}s") from e
        except requests.RequestException as e:
            raise TransientNetworkError(f"RPC failure waiting for {tx_hash} on chain {chain_id}: {e}") from e

    def balance_of(self, chain_id: int, token: HexAddress, owner: HexAddress) -> int:
        return self._call_erc20(chain_id, token, "balanceOf", owner)

    def allowance(self, chain_id: int, token: HexAddress, owner: HexAddress, spender: HexAddress) -> int:
        return self._call_erc20(chain_id, token, "allowance", owner, Web3.to_checksum_address(spender))

    def _call_erc20(self, chain_id: int, token: HexAddress, function_name: str, owner: HexAddress, *args) -> int:
        web3 = self.get_web3(chain_id)
        contract = web3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        func = contract.get_function_by_name(function_name)(Web3.to_checksum_address(owner), *args)
        try:
            return int(func.call())
        except (requests.RequestException, Web3Exception) as e:
            raise TransientNetworkError(f"Could not read {function_name}() of {token} on chain {chain_id}: {e}") from e


def _tx_hash_of(receipt: Mapping) -> str:
    tx_hash = receipt.get("transactionHash")
    if tx_hash is None:
        return "<unknown>"
    return "0x" + HexBytes(tx_hash).hex().removeprefix("0x")
