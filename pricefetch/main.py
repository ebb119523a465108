#!/usr/bin/env python3
"""PriceFetch Oracle.

Reads the token prices cached by the PriceFetchOracle contract and, when
they are unusable and a signer is configured, refreshes them on-chain with
signed Pyth Hermes updates before reading again.

Configure via CLI flags or env vars (PRIVATE_KEY enables updates).
"""

import argparse
import asyncio
import logging
import os
import sys

from .src.ContractUtility import DEFAULT_ORACLE_ADDRESS, NETWORKS, ContractUtility
from .src.errors import InvalidToken, PriceFetchError
from .src.FeedSource import DEFAULT_HERMES_URL, FeedSource
from .src.OracleReadClient import WEI_PER_ETH, OracleReadClient
from .src.OracleWriteClient import OracleWriteClient
from .src.PriceFormatter import PRICE_NOT_AVAILABLE, NormalizedPrice
from .src.PriceSyncController import PriceSyncController, SyncResult
from .src.Token import Token

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

TABLE_WIDTH = 85


def env_flag(name: str) -> bool:
    """Read a boolean environment variable ("1", "true", "yes", "on")."""
    return (os.environ.get(name) or "").strip().lower() in ("1", "true", "yes", "on")


def render_prices(prices: dict[Token, NormalizedPrice]) -> list[str]:
    """Render prices as console table lines.

    :param prices: Prices to render, in display order.
    :returns: Table lines, including header and summary.
    """
    lines = [
        "=" * TABLE_WIDTH,
        "TOKEN PRICES",
        "=" * TABLE_WIDTH,
        "Token    | Price (USD)         | Confidence       | Last Updated",
        "-" * TABLE_WIDTH,
    ]
    for token, price in prices.items():
        if price.is_valid:
            lines.append(
                f"{token.name:<8} | {price.formatted:<19} | "
                f"{price.confidence_display:<16} | {price.time_ago}"
            )
        else:
            lines.append(f"{token.name:<8} | {PRICE_NOT_AVAILABLE:<19} | {'N/A':<16} | N/A")
    lines.append("=" * TABLE_WIDTH)

    valid = sum(1 for price in prices.values() if price.is_valid)
    lines.append(f"Status: {valid}/{len(prices)} prices available")
    return lines


async def run(args: argparse.Namespace, tokens: list[Token], oracle_address: str) -> SyncResult:
    """Connect, optionally show contract info, and run one sync.

    :param args: Parsed CLI arguments.
    :param tokens: Tokens to report.
    :param oracle_address: PriceFetchOracle address.
    :returns: Result of the sync.
    :raises PriceFetchError: If connectivity or the mandatory first read fails.
    """
    contract_utility = ContractUtility(args.network, private_key=os.environ.get("PRIVATE_KEY"))
    feed_source = FeedSource(args.hermes_url, timeout=args.fetch_timeout)
    try:
        await contract_utility.connect()
        if not await contract_utility.is_deployed(oracle_address):
            raise PriceFetchError(f"No contract found at address {oracle_address}")

        contract = contract_utility.get_oracle_contract(oracle_address)
        read_client = OracleReadClient(contract)

        if args.info:
            info = await read_client.get_contract_info()
            logger.info(f"Contract Address:  {info.contract_address}")
            logger.info(f"Pyth Address:      {info.aggregator_address}")
            logger.info(f"Owner:             {info.owner_address}")
            logger.info(f"Balance:           {info.balance_eth} ETH")

        write_client = OracleWriteClient(
            contract_utility.w3,
            contract,
            contract_utility.signer_address,
            rollback_nonce_on_reject=args.rollback_nonce,
        )
        if write_client.has_signer:
            assert contract_utility.signer_address is not None
            balance = await contract_utility.get_balance(contract_utility.signer_address)
            logger.info(f"Wallet balance:    {balance / WEI_PER_ETH} ETH")
            await write_client.sync_nonce()
        else:
            logger.info("No private key provided - read-only mode")

        controller = PriceSyncController(
            read_client,
            feed_source=feed_source,
            write_client=write_client,
            tokens=tokens,
            min_valid_prices=args.min_valid,
            max_price_age=args.max_price_age,
            batch_reads=args.batch_reads,
            settle_delay=args.settle_delay,
        )
        return await asyncio.wait_for(controller.sync(), timeout=args.timeout)
    finally:
        await FeedSource.close_shared_client()
        await contract_utility.close()


def main() -> None:
    """Main entry point for the PriceFetch Oracle CLI."""
    parser = argparse.ArgumentParser(
        description="PriceFetch Oracle: read and refresh on-chain token prices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Supported tokens:
  {', '.join(t.name for t in Token)}

Examples:
  # Read cached prices (read-only, no PRIVATE_KEY)
  python -m pricefetch.main --tokens eth,usdc

  # Refresh on-chain when fewer than 4 prices are fresh within 10 minutes
  PRIVATE_KEY=0x... python -m pricefetch.main --min-valid 4 --max-price-age 600

Environment variables (CLI args take precedence):
  NETWORK, RPC_URL, ORACLE_ADDRESS, HERMES_URL, TOKENS, MIN_VALID_PRICES,
  MAX_PRICE_AGE, BATCH_READS, FETCH_TIMEOUT, SETTLE_DELAY, SYNC_TIMEOUT,
  PRIVATE_KEY
""",
    )

    parser.add_argument(
        "--network",
        type=str,
        help=f"Network to connect to ({', '.join(NETWORKS)}) or an RPC URL",
        default=os.environ.get("NETWORK") or "base-sepolia",
    )

    parser.add_argument(
        "--oracle-address",
        dest="oracle_address",
        type=str,
        help="Address of the PriceFetchOracle contract",
        default=os.environ.get("ORACLE_ADDRESS"),
    )

    parser.add_argument(
        "--hermes-url",
        dest="hermes_url",
        type=str,
        help=f"Pyth Hermes base URL (default: {DEFAULT_HERMES_URL})",
        default=os.environ.get("HERMES_URL") or DEFAULT_HERMES_URL,
    )

    parser.add_argument(
        "--tokens",
        type=str,
        help="Comma-separated tokens to report (default: all)",
        default=os.environ.get("TOKENS") or ",".join(t.name for t in Token),
    )

    parser.add_argument(
        "--min-valid",
        dest="min_valid",
        type=int,
        help="Usable cached prices required to skip the on-chain refresh (default: 1)",
        default=int(os.environ.get("MIN_VALID_PRICES") or "1"),
    )

    parser.add_argument(
        "--max-price-age",
        dest="max_price_age",
        type=int,
        help="Treat prices older than this many seconds as unusable (default: disabled)",
        default=int(os.environ.get("MAX_PRICE_AGE") or "0"),
    )

    parser.add_argument(
        "--batch-reads",
        dest="batch_reads",
        action="store_true",
        help="Read all prices with one getAllPrices call",
        default=env_flag("BATCH_READS"),
    )

    parser.add_argument(
        "--rollback-nonce",
        dest="rollback_nonce",
        action="store_true",
        help="Give the nonce back when a submission fails for a non-nonce reason",
        default=env_flag("ROLLBACK_NONCE"),
    )

    parser.add_argument(
        "--fetch-timeout",
        dest="fetch_timeout",
        type=float,
        help="Timeout for Hermes requests in seconds (default: 15.0)",
        default=float(os.environ.get("FETCH_TIMEOUT") or "15.0"),
    )

    parser.add_argument(
        "--settle-delay",
        dest="settle_delay",
        type=float,
        help="Seconds to wait after an update before re-reading (default: 3.0)",
        default=float(os.environ.get("SETTLE_DELAY") or "3.0"),
    )

    parser.add_argument(
        "--timeout",
        type=float,
        help="Overall timeout for the sync in seconds (default: 120.0)",
        default=float(os.environ.get("SYNC_TIMEOUT") or "120.0"),
    )

    parser.add_argument(
        "--info",
        action="store_true",
        help="Show contract information before syncing",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Validate arguments
    if args.min_valid < 0:
        parser.error("--min-valid must not be negative")

    if args.max_price_age < 0:
        parser.error("--max-price-age must not be negative")

    if args.fetch_timeout <= 0 or args.timeout <= 0:
        parser.error("timeouts must be positive")

    # Max age 0 means disabled
    if args.max_price_age == 0:
        args.max_price_age = None

    try:
        tokens = Token.parse_list(args.tokens)
    except InvalidToken as e:
        parser.error(str(e))

    oracle_address = args.oracle_address or DEFAULT_ORACLE_ADDRESS.get(args.network)
    if not oracle_address:
        parser.error(f"No oracle address configured for network {args.network}")

    # Log configuration
    logger.info("=" * 60)
    logger.info("PriceFetch Oracle")
    logger.info("=" * 60)
    logger.info(f"Network:           {args.network}")
    logger.info(f"Oracle:            {oracle_address}")
    logger.info(f"Hermes:            {args.hermes_url}")
    logger.info(f"Tokens:            {', '.join(t.name for t in tokens)}")
    logger.info(f"Min Valid:         {args.min_valid}")
    logger.info(
        f"Max Price Age:     {args.max_price_age}s"
        if args.max_price_age
        else "Max Price Age:     disabled"
    )
    logger.info(f"Read Mode:         {'batch' if args.batch_reads else 'per-token'}")
    logger.info("=" * 60)

    try:
        result = asyncio.run(run(args, tokens, oracle_address))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        return
    except asyncio.TimeoutError:
        logger.error(f"Fatal error: sync timed out after {args.timeout}s")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        logger.error(
            "Check that the contract address is correct, the RPC endpoint is "
            "reachable and, for updates, that PRIVATE_KEY is set and funded"
        )
        sys.exit(1)

    for line in render_prices(result.prices):
        logger.info(line)
    if result.refresh_error:
        logger.warning(f"On-chain refresh failed: {result.refresh_error}")
    elif result.refreshed and result.receipt is not None:
        logger.info(f"Prices updated in block {result.receipt['blockNumber']}")


if __name__ == "__main__":
    main()
