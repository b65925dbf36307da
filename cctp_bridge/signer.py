"""Sign and broadcast bridge transactions.

The coordinator never holds keys. It hands a
:py:class:`~cctp_bridge.transfer.TransactionCallSpec` to a
:py:class:`TransactionSigner` and gets a transaction hash back.

:py:class:`LocalAccountSigner` signs with a private key held in process,
which is what the relayer API and the command line scripts use.
Custody services can be plugged in by implementing the protocol.
"""

import logging
import threading
from typing import Callable, Protocol

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from cctp_bridge.constants import DEFAULT_GAS_LIMIT
from cctp_bridge.errors import SigningRejected, TransientNetworkError
from cctp_bridge.transfer import TransactionCallSpec

logger = logging.getLogger(__name__)


class TransactionSigner(Protocol):
    """Turns call specs into broadcast transactions."""

    #: Address the transactions are sent from
    address: HexAddress

    def sign_and_broadcast(self, spec: TransactionCallSpec) -> str:
        """Sign the call and broadcast it on ``spec.chain_id``.

        :return:
            ``0x`` prefixed transaction hash.

        :raises SigningRejected:
            The signer refused or the node rejected the transaction.

        :raises TransientNetworkError:
            The node could not be reached.
        """


class LocalAccountSigner:
    """Sign with an in-process private key.

    Nonces are tracked locally per chain so that parallel transfers
    from the same account do not collide.

    Example::

        receipts = Web3ReceiptSource(registry)
        signer = LocalAccountSigner.from_private_key(os.environ["BRIDGE_WALLET_PRIVATE_KEY"], receipts.get_web3)

    :param account:
        Signing account.

    :param web3_for_chain:
        Returns a connected :py:class:`~web3.Web3` for a chain id.

    :param gas:
        Gas limit for every call. CCTP calls stay well below the default.
    """

    def __init__(
        self,
        account: LocalAccount,
        web3_for_chain: Callable[[int], Web3],
        gas: int = DEFAULT_GAS_LIMIT,
    ):
        self.account = account
        self.address = HexAddress(account.address)
        self.web3_for_chain = web3_for_chain
        self.gas = gas
        self._nonces: dict[int, int] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<LocalAccountSigner {self.address}>"

    @classmethod
    def from_private_key(cls, private_key: str, web3_for_chain: Callable[[int], Web3], **kwargs) -> "LocalAccountSigner":
        assert private_key.startswith("0x"), "Private key must be 0x prefixed hex"
        return cls(Account.from_key(private_key), web3_for_chain, **kwargs)

    def sign_and_broadcast(self, spec: TransactionCallSpec) -> str:
        web3 = self.web3_for_chain(spec.chain_id)
        contract = web3.eth.contract(address=Web3.to_checksum_address(spec.to), abi=spec.abi)
        func = contract.get_function_by_name(spec.function_name)(*spec.args)

        # One nonce at a time per signer, parallel transfers share the account
        with self._lock:
            try:
                nonce = self._nonces.get(spec.chain_id)
                if nonce is None:
                    nonce = web3.eth.get_transaction_count(self.address, "pending")

                tx = func.build_transaction(
                    {
                        "from": self.address,
                        "chainId": spec.chain_id,
                        "nonce": nonce,
                        "gas": self.gas,
                        "value": spec.value,
                    }
                )
                signed = self.account.sign_transaction(tx)
                tx_hash = web3.eth.send_raw_transaction(signed.raw_transaction)
            except requests.RequestException as e:
                self._nonces.pop(spec.chain_id, None)
                raise TransientNetworkError(f"Could not broadcast {spec.function_name} on chain {spec.chain_id}: {e}") from e
            except Exception as e:
                self._nonces.pop(spec.chain_id, None)
                raise SigningRejected(f"{spec.function_name} on chain {spec.chain_id} rejected: {e}") from e

            self._nonces[spec.chain_id] = nonce + 1

        tx_hash_hex = "0x" + HexBytes(tx_hash).hex().removeprefix("0x")
        logger.info("Broadcast %s() on chain %d, nonce %d, tx %s", spec.function_name, spec.chain_id, nonce, tx_hash_hex)
        return tx_hash_hex
