"""Bridge USDC between two CCTP chains with the relayer wallet.

Approves, burns, waits for Circle's attestation and mints, showing
a progress bar over the transfer states. Records are written to
``TRANSFER_STORE_PATH`` when set, so an interrupted run can be resumed
with ``RESUME=true``.

Environment variables
---------------------
- ``BRIDGE_WALLET_PRIVATE_KEY``: Relayer key, pays gas on both chains (required).
- ``FROM_CHAIN``: Source chain name (default: ``Base Sepolia``).
- ``TO_CHAIN``: Destination chain name (default: ``Arc Testnet``).
- ``USDC_AMOUNT``: Human USDC amount (default: ``1``).
- ``RECIPIENT``: Destination address (default: the relayer itself).
- ``RESUME``: Resume unfinished transfers from the store instead of starting a new one.
- ``JSON_RPC_<CHAIN_ID>``: RPC overrides, e.g. ``JSON_RPC_84532``.
- ``LOG_LEVEL``: Logging level (default: ``info``).

Usage::

    BRIDGE_WALLET_PRIVATE_KEY=0x... USDC_AMOUNT=2.5 python scripts/bridge/bridge-usdc.py

    # Pick up after a crash
    TRANSFER_STORE_PATH=/tmp/transfers.json RESUME=true BRIDGE_WALLET_PRIVATE_KEY=0x... python scripts/bridge/bridge-usdc.py
"""

import logging
import os
import threading

from tqdm_loggable.auto import tqdm

from cctp_bridge.config import BridgeConfig
from cctp_bridge.record import TransferRecord, TransferState
from cctp_bridge.transfer import TransferRequest
from cctp_bridge.utils import setup_console_logging

logger = logging.getLogger(__name__)

#: Progress bar steps, in lifecycle order
STATE_ORDER = [s for s in TransferState if s != TransferState.failed]


def main():
    log_level = os.environ.get("LOG_LEVEL", "info")
    setup_console_logging(default_log_level=log_level)

    config = BridgeConfig.from_env()
    assert config.private_key, "BRIDGE_WALLET_PRIVATE_KEY environment variable required"

    resume = os.environ.get("RESUME", "").lower() == "true"

    progress_bar = tqdm(total=len(STATE_ORDER) - 1, desc="CCTP bridge", unit="step")
    lock = threading.Lock()
    reached: dict[str, int] = {}

    def on_state_change(record: TransferRecord):
        with lock:
            if record.state == TransferState.failed:
                progress_bar.set_postfix_str(f"failed: {record.last_error.reason.value}")
                return
            new_ord = STATE_ORDER.index(record.state)
            old_ord = reached.get(record.transfer_id, 0)
            if new_ord > old_ord:
                progress_bar.update(new_ord - old_ord)
                reached[record.transfer_id] = new_ord
            progress_bar.set_description(f"CCTP [{record.state.value}]")
            progress_bar.set_postfix_str(f"polls: {record.attempts}")

    coordinator = config.create_coordinator(approve_before_burn=True, on_state_change=on_state_change)
    registry = coordinator.registry

    try:
        if resume:
            transfer_ids = coordinator.resume()
            print(f"Resuming {len(transfer_ids)} transfers")
        else:
            source = registry.describe_by_name(os.environ.get("FROM_CHAIN", "Base Sepolia"))
            dest = registry.describe_by_name(os.environ.get("TO_CHAIN", "Arc Testnet"))
            recipient = os.environ.get("RECIPIENT", coordinator.signer.address)

            print(f"Relayer: {coordinator.signer.address}")
            print(f"Route: {source.name} (domain {source.attestation_domain}) -> {dest.name} (domain {dest.attestation_domain})")
            print(f"Recipient: {recipient}")

            record = coordinator.initiate(
                TransferRequest(
                    source_chain_id=source.chain_id,
                    destination_chain_id=dest.chain_id,
                    amount=os.environ.get("USDC_AMOUNT", "1"),
                    sender_address=coordinator.signer.address,
                    recipient_address=recipient,
                )
            )
            coordinator.start(record.transfer_id)
            transfer_ids = [record.transfer_id]

        for transfer_id in transfer_ids:
            record = coordinator.wait(transfer_id)
            if record.state == TransferState.completed:
                print(f"\nTransfer {transfer_id} completed")
                print(f"  Burn tx: {record.burn_tx_hash}")
                print(f"  Mint tx: {record.mint_tx_hash}")
            else:
                print(f"\nTransfer {transfer_id} ended in {record.state.value}: {record.last_error}")
    finally:
        progress_bar.close()
        coordinator.shutdown()


if __name__ == "__main__":
    main()
