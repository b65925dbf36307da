"""Circle CCTP cross-chain USDC transfer calls.

Build the on-chain calls of a CCTP transfer as plain data:

- ``approve()`` of USDC to TokenMessenger on the source chain
- ``depositForBurn()`` on TokenMessenger on the source chain
- ``receiveMessage()`` on MessageTransmitter on the destination chain

Nothing here touches the network. Each call is described by a
:py:class:`TransactionCallSpec` which a
:py:class:`~cctp_bridge.signer.TransactionSigner` turns into a signed and
broadcast transaction.

Example of preparing a transfer from Base Sepolia to Arc Testnet::

    from cctp_bridge.chains import get_default_registry
    from cctp_bridge.transfer import BridgeTransactionBuilder, TransferRequest

    builder = BridgeTransactionBuilder(get_default_registry())
    request = TransferRequest(
        source_chain_id=84532,
        destination_chain_id=5042002,
        amount="10.50",
        sender_address="0x...",
        recipient_address="0x...",
    )
    burn = builder.build_burn(request)
    assert burn.args[0] == 10_500_000

The ``burnToken`` is always the native USDC on the source chain.
The destination chain's TokenMinter resolves the local USDC on its own.
"""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal, DecimalException, localcontext
from typing import Any

from eth_abi import encode
from eth_typing import HexAddress, HexStr
from web3 import Web3

from cctp_bridge.chains import ChainDescriptor, ChainRegistry
from cctp_bridge.constants import USDC_DECIMALS, USDC_UNIT
from cctp_bridge.errors import ChainNotFound, ValidationError

logger = logging.getLogger(__name__)

#: Largest raw amount the token contracts accept
MAX_UINT256 = 2**256 - 1

#: TokenMessenger ABI, only the functions we call
TOKEN_MESSENGER_ABI: list[dict] = [
    {
        "name": "depositForBurn",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "amount", "type": "uint256"},
            {"name": "destinationDomain", "type": "uint32"},
            {"name": "mintRecipient", "type": "bytes32"},
            {"name": "burnToken", "type": "address"},
        ],
        "outputs": [{"name": "nonce", "type": "uint64"}],
    },
]

#: MessageTransmitter ABI, only the functions we call
MESSAGE_TRANSMITTER_ABI: list[dict] = [
    {
        "name": "receiveMessage",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "message", "type": "bytes"},
            {"name": "attestation", "type": "bytes"},
        ],
        "outputs": [{"name": "success", "type": "bool"}],
    },
]

#: ERC-20 ABI subset for approvals and balance checks
ERC20_ABI: list[dict] = [
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


@dataclass(slots=True, frozen=True)
class TransferRequest:
    """A caller's request to move USDC between two chains.

    Immutable. Checked by :py:meth:`BridgeTransactionBuilder.validate`.
    """

    #: EVM chain id to burn on
    source_chain_id: int

    #: EVM chain id to mint on
    destination_chain_id: int

    #: Human readable USDC amount as a decimal string, e.g. ``"10.00"``.
    #:
    #: At most 6 decimal places.
    amount: str

    #: Address holding the USDC on the source chain
    sender_address: HexAddress

    #: Address receiving the USDC on the destination chain
    recipient_address: HexAddress

    def to_dict(self) -> dict:
        return {
            "source_chain_id": self.source_chain_id,
            "destination_chain_id": self.destination_chain_id,
            "amount": self.amount,
            "sender_address": self.sender_address,
            "recipient_address": self.recipient_address,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransferRequest":
        return cls(
            source_chain_id=int(data["source_chain_id"]),
            destination_chain_id=int(data["destination_chain_id"]),
            amount=str(data["amount"]),
            sender_address=HexAddress(data["sender_address"]),
            recipient_address=HexAddress(data["recipient_address"]),
        )


@dataclass(slots=True, frozen=True)
class TransactionCallSpec:
    """A contract call ready to be signed.

    Handed to :py:meth:`~cctp_bridge.signer.TransactionSigner.sign_and_broadcast`.
    """

    #: Chain the call is sent on
    chain_id: int

    #: Contract address
    to: HexAddress

    #: Contract function, e.g. ``depositForBurn``
    function_name: str

    #: Positional arguments in ABI order
    args: tuple[Any, ...]

    #: Native token value sent along, always zero for CCTP calls
    value: int = 0

    #: ABI containing :py:attr:`function_name`
    abi: list[dict] = field(default_factory=list, compare=False, repr=False)

    def get_function_abi(self) -> dict:
        for entry in self.abi:
            if entry.get("type") == "function" and entry.get("name") == self.function_name:
                return entry
        raise ValueError(f"Function {self.function_name} not in ABI")


def parse_usdc_amount(amount: str | Decimal) -> int:
    """Convert a human USDC amount to raw 6-decimal token units.

    Truncates, never rounds up. An amount that does not fit in
    6 decimals is rejected instead of silently truncated.

    >>> parse_usdc_amount("10.00")
    10000000

    :raises ValidationError:
        If the amount is not a positive decimal with at most 6 decimal places.
    """
    try:
        value = Decimal(str(amount).strip())
    except DecimalException as e:
        raise ValidationError(f"Amount is not a decimal number: {amount!r}") from e

    if not value.is_finite():
        raise ValidationError(f"Amount must be finite: {amount!r}")

    if value <= 0:
        raise ValidationError(f"Amount must be positive: {amount!r}")

    # Wide enough for any uint256 amount, so scaling never rounds
    try:
        with localcontext() as ctx:
            ctx.prec = 100
            raw = value.scaleb(USDC_DECIMALS)
            truncated = raw.to_integral_value(rounding=ROUND_DOWN)
    except DecimalException as e:
        raise ValidationError(f"Amount out of range: {amount!r}") from e

    if truncated != raw:
        raise ValidationError(f"Amount {amount!r} has more than {USDC_DECIMALS} decimal places")

    if truncated > MAX_UINT256:
        raise ValidationError(f"Amount {amount!r} does not fit in uint256")

    return int(truncated)


def format_usdc_amount(raw: int) -> Decimal:
    """Convert raw 6-decimal token units back to a human USDC amount."""
    return Decimal(raw) / USDC_UNIT


def encode_mint_recipient(address: HexAddress | str) -> bytes:
    """Convert an EVM address to the bytes32 ``mintRecipient`` format.

    CCTP uses bytes32 recipients to support non-EVM chains.
    EVM addresses are left-padded with zeros to 32 bytes.

    :raises ValidationError:
        If the value is not an EVM address.
    """
    if not Web3.is_address(address):
        raise ValidationError(f"Not an EVM address: {address!r}")
    address = Web3.to_checksum_address(address)
    return bytes.fromhex(address[2:].lower().zfill(64))


def encode_call_data(spec: TransactionCallSpec) -> HexStr:
    """ABI encode a call spec as transaction ``data``.

    Useful for wallet services that take raw calldata.
    """
    fn_abi = spec.get_function_abi()
    types = [i["type"] for i in fn_abi["inputs"]]
    signature = f"{fn_abi['name']}({','.join(types)})"
    selector = bytes(Web3.keccak(text=signature)[:4])
    return HexStr("0x" + (selector + encode(types, list(spec.args))).hex())


class BridgeTransactionBuilder:
    """Build :py:class:`TransactionCallSpec` objects for a transfer.

    Pure data transformation on top of a :py:class:`~cctp_bridge.chains.ChainRegistry`.
    """

    def __init__(self, registry: ChainRegistry):
        self.registry = registry

    def validate(self, request: TransferRequest) -> int:
        """Check a transfer request before any state machine starts.

        :return:
            Amount in raw USDC units.

        :raises ValidationError:
            Same source and destination chain, unknown chain,
            bad amount or bad address.
        """
        if request.source_chain_id == request.destination_chain_id:
            raise ValidationError(f"Source and destination chains must be different, both are {request.source_chain_id}")

        self._resolve(request.source_chain_id, "Source")
        self._resolve(request.destination_chain_id, "Destination")

        if not Web3.is_address(request.sender_address):
            raise ValidationError(f"Sender is not an EVM address: {request.sender_address!r}")

        if not Web3.is_address(request.recipient_address):
            raise ValidationError(f"Recipient is not an EVM address: {request.recipient_address!r}")

        return parse_usdc_amount(request.amount)

    def build_approve(self, request: TransferRequest) -> TransactionCallSpec:
        """Build USDC ``approve(TokenMessenger, amount)`` on the source chain.

        Must be mined before the burn.
        """
        amount = self.validate(request)
        source = self.registry.describe(request.source_chain_id)
        return TransactionCallSpec(
            chain_id=source.chain_id,
            to=Web3.to_checksum_address(source.usdc_address),
            function_name="approve",
            args=(Web3.to_checksum_address(source.burn_contract_address), amount),
            abi=ERC20_ABI,
        )

    def build_burn(self, request: TransferRequest) -> TransactionCallSpec:
        """Build ``depositForBurn()`` on the source chain's TokenMessenger.

        - Amount is encoded in raw 6-decimal units
        - Destination domain comes from the chain registry
        - Recipient is left-padded to bytes32

        :raises ValidationError:
            If the request is invalid.
        """
        amount = self.validate(request)
        source = self.registry.describe(request.source_chain_id)
        dest = self.registry.describe(request.destination_chain_id)

        mint_recipient = encode_mint_recipient(request.recipient_address)

        logger.info(
            "Preparing CCTP depositForBurn: amount=%d, %s (domain %d) -> %s (domain %d), recipient=%s",
            amount,
            source.name,
            source.attestation_domain,
            dest.name,
            dest.attestation_domain,
            request.recipient_address,
        )

        return TransactionCallSpec(
            chain_id=source.chain_id,
            to=Web3.to_checksum_address(source.burn_contract_address),
            function_name="depositForBurn",
            args=(
                amount,
                dest.attestation_domain,
                mint_recipient,
                Web3.to_checksum_address(source.usdc_address),
            ),
            abi=TOKEN_MESSENGER_ABI,
        )

    def build_mint(
        self,
        message_bytes: bytes,
        attestation_signature: bytes,
        destination_chain_id: int,
    ) -> TransactionCallSpec:
        """Build ``receiveMessage()`` on the destination chain's MessageTransmitter.

        Anyone can relay the message, no special permissions required.

        :param message_bytes:
            CCTP message from the burn's ``MessageSent`` event.

        :param attestation_signature:
            Signature from the attestation service.

        :raises ValidationError:
            Empty message or signature, or unknown destination chain.
        """
        if not message_bytes:
            raise ValidationError("Message bytes are empty")
        if not attestation_signature:
            raise ValidationError("Attestation signature is empty")

        dest = self._resolve(destination_chain_id, "Destination")

        return TransactionCallSpec(
            chain_id=dest.chain_id,
            to=Web3.to_checksum_address(dest.mint_contract_address),
            function_name="receiveMessage",
            args=(bytes(message_bytes), bytes(attestation_signature)),
            abi=MESSAGE_TRANSMITTER_ABI,
        )

    def _resolve(self, chain_id: int, role: str) -> ChainDescriptor:
        try:
            return self.registry.describe(chain_id)
        except ChainNotFound as e:
            raise ValidationError(f"{role} chain {chain_id} is not supported by CCTP") from e


@dataclass(slots=True, frozen=True)
class TransferEstimate:
    """Static expectation of how long a transfer takes and what it costs."""

    estimated_time: str
    estimated_fee: str
    protocol: str

    def to_dict(self) -> dict:
        return {
            "estimatedTime": self.estimated_time,
            "estimatedFee": self.estimated_fee,
            "protocol": self.protocol,
        }


def estimate_transfer() -> TransferEstimate:
    """Typical CCTP transfer time and cost on testnets.

    CCTP charges no protocol fee, the caller pays gas for the burn and the relayer for the mint.
    Most of the time is spent waiting for source chain finality before Iris signs.
    """
    return TransferEstimate(
        estimated_time="15-25 minutes",
        estimated_fee="~0.01 USDC (gas only)",
        protocol="Circle CCTP",
    )
