"""Circle CCTP constants.

Cross-Chain Transfer Protocol API endpoints, token precision and event
signatures shared by the bridge modules.

CCTP moves USDC across chains with a burn-and-mint flow:

1. Source chain: call ``depositForBurn()`` on TokenMessenger to burn USDC
2. Circle's Iris attestation service signs the ``MessageSent`` event
3. Destination chain: call ``receiveMessage()`` on MessageTransmitter to mint USDC

Per-chain contract addresses and domain ids live in :py:mod:`cctp_bridge.chains`.

- `CCTP documentation <https://developers.circle.com/cctp>`_
- `Supported domains <https://developers.circle.com/cctp/cctp-supported-blockchains>`_
"""

from web3 import Web3

#: Circle Iris attestation API base URL (mainnet).
IRIS_API_BASE_URL = "https://iris-api.circle.com"

#: Circle Iris attestation API base URL (testnets).
IRIS_API_SANDBOX_URL = "https://iris-api-sandbox.circle.com"

#: Circle Gateway API base URL used for unified balance lookups (testnets).
GATEWAY_API_TESTNET_URL = "https://gateway-api-testnet.circle.com"

#: Circle Gateway API base URL (mainnet).
GATEWAY_API_BASE_URL = "https://gateway-api.circle.com"

#: USDC has 6 decimals on every CCTP chain
USDC_DECIMALS = 6

#: Multiplier between human USDC amounts and raw token units
USDC_UNIT = 10**USDC_DECIMALS

#: ``MessageSent(bytes message)`` emitted by MessageTransmitter when USDC is burned.
#:
#: The event data carries the full CCTP message. The attestation lookup key
#: is ``keccak256(message)``.
MESSAGE_SENT_EVENT_SIGNATURE = "MessageSent(bytes)"

#: Topic 0 of the ``MessageSent`` event,
#: ``0x8c5261668696ce22758910d05bab8f186d6eb247ceac2af2e82c7dc17669b036``
MESSAGE_SENT_TOPIC = "0x" + Web3.keccak(text=MESSAGE_SENT_EVENT_SIGNATURE).hex().removeprefix("0x")

#: Seconds between attestation polls
DEFAULT_POLL_INTERVAL = 30.0

#: Attestation poll budget. 60 polls * 30 seconds is roughly 30 minutes.
DEFAULT_MAX_POLL_ATTEMPTS = 60

#: Seconds to wait for a burn or mint transaction to be mined
DEFAULT_RECEIPT_TIMEOUT = 300.0

#: Seconds for a single HTTP round trip to Iris or Gateway
DEFAULT_HTTP_TIMEOUT = 30.0

#: Iris API status strings
ATTESTATION_STATUS_COMPLETE = "complete"
ATTESTATION_STATUS_PENDING_CONFIRMATIONS = "pending_confirmations"

#: Value of the ``attestation`` field while the signature is not ready
ATTESTATION_PENDING_PLACEHOLDER = "PENDING"

#: Gas limit used for burn, approve and receive transactions
DEFAULT_GAS_LIMIT = 1_000_000
