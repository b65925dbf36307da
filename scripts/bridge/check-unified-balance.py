"""Check an address's USDC balance across CCTP chains.

Queries Circle Gateway for each chain in parallel and prints a table.
Chains that could not be read are shown with their error, not as zero.

Environment variables
---------------------
- ``ADDRESS``: EVM address to query (required).
- ``DOMAINS``: Comma separated CCTP domains (default: Arc Testnet, World Chain Sepolia, Base Sepolia).
- ``GATEWAY_API_URL``: Gateway base URL (default: testnet).
- ``LOG_LEVEL``: Logging level (default: ``info``).

Usage::

    ADDRESS=0x6C2ea51E43Fe1d1D7B4E7a4a2D3c5ad4E0e54E71 python scripts/bridge/check-unified-balance.py

    # Every chain in the table
    DOMAINS=0,1,2,3,6,7,14,26 ADDRESS=0xAbc... python scripts/bridge/check-unified-balance.py
"""

import logging
import os

from tabulate import tabulate

from cctp_bridge.config import BridgeConfig
from cctp_bridge.utils import setup_console_logging

logger = logging.getLogger(__name__)


def main():
    log_level = os.environ.get("LOG_LEVEL", "info")
    setup_console_logging(default_log_level=log_level)

    address = os.environ.get("ADDRESS")
    assert address, "ADDRESS environment variable required"

    domains_str = os.environ.get("DOMAINS")
    domains = [int(d) for d in domains_str.split(",")] if domains_str else None

    config = BridgeConfig.from_env()
    aggregator = config.create_balance_aggregator()

    print(f"Address: {address}")
    print(f"Gateway API: {config.gateway_api_url}")

    snapshot = aggregator.get_unified_balance(address, domains)

    rows = [[b.chain_name, b.domain, f"{b.balance:,.6f}", b.error or ""] for b in snapshot.balances]
    print()
    print(tabulate(rows, headers=["Chain", "Domain", "USDC", "Error"], tablefmt="simple"))
    print(f"\nTotal: {snapshot.total_usdc:,.6f} USDC")

    if snapshot.errors:
        print(f"Warning: {len(snapshot.errors)} chains could not be read, the total is incomplete")


if __name__ == "__main__":
    main()
