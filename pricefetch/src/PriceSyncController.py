"""PriceSyncController: Cache-first price reads with a single on-chain refresh.

State machine per sync request:
    CACHED_LOOKUP  read every configured token from the contract cache;
                   done when enough usable prices were found
    NEEDS_REFRESH  one Hermes fetch for the whole token set, one update
                   transaction, then back to CACHED_LOOKUP exactly once
    DONE           return a NormalizedPrice for every configured token

Per-token read failures become invalid prices. A failed refresh falls back to
the last cached results. Only a failed mandatory first read (an atomic batch
call) propagates to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .errors import ChainCallFailed, InvalidToken, NoSigningIdentity, PriceFetchError
from .PriceFormatter import NormalizedPrice, format_price
from .Token import Token

if TYPE_CHECKING:
    from web3.types import TxReceipt

    from .FeedSource import FeedSource
    from .OracleReadClient import OracleReadClient
    from .OracleWriteClient import OracleWriteClient

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """States of a single sync request."""

    CACHED_LOOKUP = "cached_lookup"
    NEEDS_REFRESH = "needs_refresh"
    DONE = "done"


@dataclass
class SyncResult:
    """Outcome of a sync request.

    :ivar prices: NormalizedPrice for every configured token, in order.
    :ivar refresh_attempted: True if an on-chain update was attempted.
    :ivar refreshed: True if the update transaction was confirmed.
    :ivar refresh_error: Cause of a failed refresh attempt.
    :ivar receipt: Receipt of the confirmed update transaction.
    """

    prices: dict[Token, NormalizedPrice]
    refresh_attempted: bool = False
    refreshed: bool = False
    refresh_error: str | None = None
    receipt: TxReceipt | None = None

    @property
    def valid_count(self) -> int:
        """Number of valid prices."""
        return sum(1 for price in self.prices.values() if price.is_valid)


class PriceSyncController:
    """Orchestrates cached reads, feed fetches and update submissions.

    :ivar read_client: Client for cached on-chain reads.
    :ivar feed_source: Source of signed update payloads, or None.
    :ivar write_client: Client for update submissions, or None.
    :ivar tokens: Tokens to report, in order.
    :ivar min_valid_prices: Usable prices required to skip the refresh.
    :ivar max_price_age: Max age in seconds for a price to count as usable.
    :ivar batch_reads: Read all tokens with one atomic ``getAllPrices`` call.
    :ivar read_throttle: Pause in seconds after each per-token read.
    :ivar settle_delay: Pause in seconds between the update and the re-read.
    """

    def __init__(
        self,
        read_client: OracleReadClient,
        feed_source: FeedSource | None = None,
        write_client: OracleWriteClient | None = None,
        tokens: list[Token] | None = None,
        min_valid_prices: int = 1,
        max_price_age: int | None = None,
        batch_reads: bool = False,
        read_throttle: float = 0.1,
        max_concurrent_reads: int = 1,
        settle_delay: float = 0.0,
    ) -> None:
        """Initialize the controller.

        :param read_client: Client for cached on-chain reads.
        :param feed_source: Source of update payloads (None disables refresh).
        :param write_client: Client for submissions (None disables refresh).
        :param tokens: Tokens to report (default: all supported tokens).
        :param min_valid_prices: Usable prices needed to skip the refresh
            (default: 1, 0 accepts whatever the cache holds).
        :param max_price_age: If set, prices the contract reports as stale
            for this age are not usable (default: None).
        :param batch_reads: Use the atomic batched read (default: False).
        :param read_throttle: Pause after each per-token read (default: 0.1).
        :param max_concurrent_reads: Per-token reads in flight (default: 1).
        :param settle_delay: Pause before re-reading after an update (default: 0).
        :raises ValueError: If numeric settings are out of range.
        :raises InvalidToken: If an empty token list is given.
        """
        if min_valid_prices < 0:
            raise ValueError("min_valid_prices must not be negative")
        if max_concurrent_reads < 1:
            raise ValueError("max_concurrent_reads must be at least 1")
        if max_price_age is not None and max_price_age <= 0:
            raise ValueError("max_price_age must be positive")
        if tokens is not None and not tokens:
            raise InvalidToken("At least one token must be specified")

        self.read_client = read_client
        self.feed_source = feed_source
        self.write_client = write_client
        self.tokens = list(tokens) if tokens is not None else list(Token)
        self.min_valid_prices = min_valid_prices
        self.max_price_age = max_price_age
        self.batch_reads = batch_reads
        self.read_throttle = read_throttle
        self.max_concurrent_reads = max_concurrent_reads
        self.settle_delay = settle_delay

    @property
    def can_refresh(self) -> bool:
        """Check if a refresh is possible (feed source and signer configured)."""
        return (
            self.feed_source is not None
            and self.write_client is not None
            and self.write_client.has_signer
        )

    async def sync(self) -> SyncResult:
        """Run the state machine once and return prices for every token.

        :returns: SyncResult with one NormalizedPrice per configured token.
        :raises ChainCallFailed: If the first batched cached read fails.
        """
        result = SyncResult(prices={})
        state = SyncState.CACHED_LOOKUP

        while state is not SyncState.DONE:
            if state is SyncState.CACHED_LOOKUP:
                if not result.refreshed:
                    result.prices = await self.read_prices()
                else:
                    try:
                        result.prices = await self.read_prices()
                    except ChainCallFailed as e:
                        logger.warning(f"Re-read after update failed, keeping previous prices: {e}")
                state = await self._next_state_after_lookup(result)

            elif state is SyncState.NEEDS_REFRESH:
                result.refresh_attempted = True
                try:
                    result.receipt = await self.refresh()
                except PriceFetchError as e:
                    logger.error(f"Price update failed: {e}")
                    result.refresh_error = str(e)
                    state = SyncState.DONE
                    continue
                result.refreshed = True
                if self.settle_delay > 0:
                    logger.info(f"Waiting {self.settle_delay}s for prices to settle")
                    await asyncio.sleep(self.settle_delay)
                state = SyncState.CACHED_LOOKUP

        logger.info(f"Status: {result.valid_count}/{len(result.prices)} prices available")
        return result

    async def _next_state_after_lookup(self, result: SyncResult) -> SyncState:
        """Decide whether the cached lookup is sufficient."""
        usable = await self._count_usable(result.prices)
        if usable >= self.min_valid_prices:
            return SyncState.DONE
        if result.refresh_attempted:
            logger.warning(
                f"Only {usable} usable prices after update, not retrying again"
            )
            return SyncState.DONE
        if not self.can_refresh:
            logger.info(
                f"Only {usable} usable cached prices and no signer configured "
                "(read-only mode)"
            )
            return SyncState.DONE
        logger.info(f"Only {usable} usable cached prices, refreshing on-chain")
        return SyncState.NEEDS_REFRESH

    async def _count_usable(self, prices: dict[Token, NormalizedPrice]) -> int:
        """Count valid prices that the contract does not report as stale."""
        valid = [token for token, price in prices.items() if price.is_valid]
        if self.max_price_age is None:
            return len(valid)

        usable = 0
        for token in valid:
            try:
                stale = await self.read_client.is_stale(token, self.max_price_age)
            except ChainCallFailed as e:
                logger.warning(f"Staleness check for {token} failed, treating as stale: {e}")
                stale = True
            if not stale:
                usable += 1
        return usable

    async def refresh(self) -> TxReceipt:
        """Fetch fresh payloads for all tokens and submit them in one transaction.

        :returns: Receipt of the confirmed update.
        :raises FeedUnavailable: If the payloads cannot be fetched.
        :raises NoSigningIdentity: If no signer is configured.
        :raises SequenceConflict: If the nonce was rejected.
        :raises UpdateRejected: If the submission failed.
        """
        if not self.can_refresh:
            raise NoSigningIdentity("Refresh requires a feed source and a signing write client")
        assert self.feed_source is not None and self.write_client is not None
        payload = await self.feed_source.fetch_updates(Token.feed_ids(self.tokens))
        return await self.write_client.submit_update(payload)

    async def read_prices(self) -> dict[Token, NormalizedPrice]:
        """Read and normalize the cached price of every configured token.

        :returns: Dict mapping each configured token to a NormalizedPrice.
        :raises ChainCallFailed: Only in batch mode, if the batched call fails.
        """
        if self.batch_reads:
            raw_prices = await self.read_client.get_all_cached_prices()
            return {token: format_price(raw_prices[token]) for token in self.tokens}

        semaphore = asyncio.Semaphore(self.max_concurrent_reads)
        prices = await asyncio.gather(
            *(self._read_one(token, semaphore) for token in self.tokens)
        )
        return dict(zip(self.tokens, prices, strict=True))

    async def _read_one(self, token: Token, semaphore: asyncio.Semaphore) -> NormalizedPrice:
        """Read one token, degrading any failure to an invalid price."""
        async with semaphore:
            try:
                raw = await self.read_client.get_cached_price(token)
                price = format_price(raw)
            except ChainCallFailed as e:
                logger.error(f"Failed to fetch {token} price: {e}")
                price = NormalizedPrice.unavailable(str(e))
            if self.read_throttle > 0:
                # RPC rate-limit throttle
                await asyncio.sleep(self.read_throttle)
            return price
