"""Unit tests for PriceSyncController."""

import time
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from pricefetch.src.errors import (
    ChainCallFailed,
    FeedUnavailable,
    InvalidToken,
    NoSigningIdentity,
    SequenceConflict,
    UpdateRejected,
)
from pricefetch.src.FeedSource import FeedSource
from pricefetch.src.PriceFormatter import PRICE_NOT_AVAILABLE, RawPriceTuple
from pricefetch.src.PriceSyncController import PriceSyncController, SyncResult
from pricefetch.src.Token import Token

PAYLOAD = [b"PNAU"]
RECEIPT = {"status": 1, "blockNumber": 42}


def fresh(mantissa: int = 345678000000) -> RawPriceTuple:
    return RawPriceTuple(mantissa, 150000000, -8, int(time.time()) - 60)


EMPTY = RawPriceTuple(0, 0, 0, 0)


def make_read_client(*rounds: dict) -> MagicMock:
    """Read client whose successive lookups return ``rounds`` in turn.

    Each round maps tokens to a RawPriceTuple or an exception to raise.
    """
    read_client = MagicMock()
    state = {"round": -1}
    seen: set[Token] = set()

    async def get_cached_price(token: Token) -> RawPriceTuple:
        if token in seen or state["round"] < 0:
            state["round"] = min(state["round"] + 1, len(rounds) - 1)
            seen.clear()
        seen.add(token)
        value = rounds[state["round"]][token]
        if isinstance(value, Exception):
            raise value
        return value

    read_client.get_cached_price = AsyncMock(side_effect=get_cached_price)
    read_client.get_all_cached_prices = AsyncMock(side_effect=list(rounds))
    read_client.is_stale = AsyncMock(return_value=False)
    return read_client


def all_tokens(value) -> dict:
    return {token: value for token in Token}


def make_feed_source() -> MagicMock:
    feed_source = MagicMock()
    feed_source.fetch_updates = AsyncMock(return_value=PAYLOAD)
    return feed_source


def make_write_client(has_signer: bool = True) -> MagicMock:
    write_client = MagicMock()
    write_client.has_signer = has_signer
    write_client.submit_update = AsyncMock(return_value=RECEIPT)
    return write_client


def make_controller(read_client, feed_source=None, write_client=None, **kwargs) -> PriceSyncController:
    kwargs.setdefault("read_throttle", 0)
    return PriceSyncController(
        read_client,
        feed_source=feed_source,
        write_client=write_client,
        **kwargs,
    )


class TestControllerInit:
    """Test controller configuration."""

    def test_defaults(self) -> None:
        """Defaults should cover all tokens with a one-valid-price policy."""
        controller = PriceSyncController(MagicMock())
        assert controller.tokens == list(Token)
        assert controller.min_valid_prices == 1
        assert controller.read_throttle == 0.1
        assert controller.batch_reads is False
        assert controller.can_refresh is False

    def test_invalid_values(self) -> None:
        """Out-of-range settings should raise ValueError."""
        with pytest.raises(ValueError, match="min_valid_prices"):
            PriceSyncController(MagicMock(), min_valid_prices=-1)
        with pytest.raises(ValueError, match="max_concurrent_reads"):
            PriceSyncController(MagicMock(), max_concurrent_reads=0)
        with pytest.raises(ValueError, match="max_price_age"):
            PriceSyncController(MagicMock(), max_price_age=0)

    def test_can_refresh_requires_signer(self) -> None:
        """Refresh needs a feed source and a write client with a signer."""
        read_client = MagicMock()
        assert make_controller(read_client, make_feed_source(), make_write_client()).can_refresh
        assert not make_controller(
            read_client, make_feed_source(), make_write_client(has_signer=False)
        ).can_refresh
        assert not make_controller(read_client, None, make_write_client()).can_refresh

    def test_empty_token_list(self) -> None:
        """An explicit empty token list should be rejected, not widened."""
        with pytest.raises(InvalidToken, match="At least one token"):
            PriceSyncController(MagicMock(), tokens=[])


class TestCachedLookup:
    """Test the cache-first path."""

    @pytest.mark.asyncio
    async def test_valid_cache_skips_refresh(self) -> None:
        """A usable cache should finish without touching the feed or chain writes."""
        read_client = make_read_client(all_tokens(fresh()))
        feed_source = make_feed_source()
        write_client = make_write_client()

        result = await make_controller(read_client, feed_source, write_client).sync()

        assert isinstance(result, SyncResult)
        assert list(result.prices) == list(Token)
        assert result.valid_count == 4
        assert result.refresh_attempted is False
        feed_source.fetch_updates.assert_not_awaited()
        write_client.submit_update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_per_token_failure_is_isolated(self) -> None:
        """One failing token should not fail the others."""
        prices = all_tokens(fresh())
        prices[Token.ETH] = ChainCallFailed("getLatestPrice(ETH) failed: reverted")
        read_client = make_read_client(prices)

        result = await make_controller(read_client).sync()

        eth = result.prices[Token.ETH]
        assert eth.is_valid is False
        assert eth.formatted == PRICE_NOT_AVAILABLE
        assert "reverted" in eth.error
        assert result.prices[Token.USDC].is_valid
        assert result.valid_count == 3

    @pytest.mark.asyncio
    async def test_token_subset(self) -> None:
        """Only configured tokens should be read and reported."""
        read_client = make_read_client(all_tokens(fresh()))

        result = await make_controller(read_client, tokens=[Token.USDC, Token.ETH]).sync()

        assert list(result.prices) == [Token.USDC, Token.ETH]
        assert read_client.get_cached_price.await_count == 2

    @pytest.mark.asyncio
    async def test_min_valid_zero_accepts_empty_cache(self) -> None:
        """With min_valid_prices=0 an empty cache is final."""
        read_client = make_read_client(all_tokens(EMPTY))
        write_client = make_write_client()

        result = await make_controller(
            read_client, make_feed_source(), write_client, min_valid_prices=0
        ).sync()

        assert result.valid_count == 0
        assert result.refresh_attempted is False
        write_client.submit_update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_read_throttle(self) -> None:
        """Per-token reads should be spaced by the throttle delay."""
        read_client = make_read_client(all_tokens(fresh()))
        controller = make_controller(read_client, read_throttle=0.1)

        with patch(
            "pricefetch.src.PriceSyncController.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            await controller.sync()

        assert mock_sleep.await_count == 4
        mock_sleep.assert_awaited_with(0.1)


class TestRefresh:
    """Test the NEEDS_REFRESH path."""

    @pytest.mark.asyncio
    async def test_empty_cache_refreshes_once(self) -> None:
        """An empty cache with a signer should refresh, then re-read once."""
        read_client = make_read_client(all_tokens(EMPTY), all_tokens(fresh()))
        feed_source = make_feed_source()
        write_client = make_write_client()

        result = await make_controller(read_client, feed_source, write_client).sync()

        feed_source.fetch_updates.assert_awaited_once_with(Token.feed_ids())
        write_client.submit_update.assert_awaited_once_with(PAYLOAD)
        assert read_client.get_cached_price.await_count == 8
        assert result.refreshed is True
        assert result.receipt == RECEIPT
        assert result.valid_count == 4

    @pytest.mark.asyncio
    async def test_still_empty_after_refresh_does_not_loop(self) -> None:
        """If the re-read is still empty, the controller returns it as is."""
        read_client = make_read_client(all_tokens(EMPTY), all_tokens(EMPTY))
        feed_source = make_feed_source()
        write_client = make_write_client()

        result = await make_controller(read_client, feed_source, write_client).sync()

        assert feed_source.fetch_updates.await_count == 1
        assert write_client.submit_update.await_count == 1
        assert read_client.get_cached_price.await_count == 8
        assert result.refreshed is True
        assert result.valid_count == 0

    @pytest.mark.asyncio
    async def test_refresh_uses_configured_feed_ids(self) -> None:
        """One fetch should cover exactly the configured tokens' feeds."""
        tokens = [Token.ETH, Token.PYUSD]
        read_client = make_read_client(all_tokens(EMPTY), all_tokens(fresh()))
        feed_source = make_feed_source()

        await make_controller(
            read_client, feed_source, make_write_client(), tokens=tokens
        ).sync()

        feed_source.fetch_updates.assert_awaited_once_with(
            [Token.ETH.feed_id, Token.PYUSD.feed_id]
        )

    @pytest.mark.asyncio
    async def test_no_signer_stays_read_only(self) -> None:
        """Without a signer an empty cache is returned without any write."""
        read_client = make_read_client(all_tokens(EMPTY))
        feed_source = make_feed_source()
        write_client = make_write_client(has_signer=False)

        result = await make_controller(read_client, feed_source, write_client).sync()

        assert result.valid_count == 0
        assert result.refresh_attempted is False
        assert all(p.formatted == PRICE_NOT_AVAILABLE for p in result.prices.values())
        feed_source.fetch_updates.assert_not_awaited()
        write_client.submit_update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refresh_without_signer(self) -> None:
        """Calling refresh on a read-only controller should raise NoSigningIdentity."""
        feed_source = make_feed_source()
        controller = make_controller(MagicMock(), feed_source, make_write_client(has_signer=False))

        with pytest.raises(NoSigningIdentity):
            await controller.refresh()

        feed_source.fetch_updates.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_feed_http_500_falls_back_to_cache(self) -> None:
        """A Hermes 500 should end with the cached (invalid) prices, not a crash."""
        read_client = make_read_client(all_tokens(EMPTY))
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        )
        feed_source = FeedSource("https://hermes.test", client=client)
        write_client = make_write_client()

        result = await make_controller(read_client, feed_source, write_client).sync()

        assert result.refresh_attempted is True
        assert result.refreshed is False
        assert "HTTP 500" in result.refresh_error
        assert len(result.prices) == 4
        assert result.valid_count == 0
        write_client.submit_update.assert_not_awaited()
        assert read_client.get_cached_price.await_count == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            SequenceConflict("Nonce 7 rejected"),
            UpdateRejected("insufficient funds"),
            FeedUnavailable("timeout"),
        ],
    )
    async def test_refresh_failure_not_retried(self, error) -> None:
        """Refresh failures should not be retried within one sync."""
        read_client = make_read_client(all_tokens(EMPTY))
        feed_source = make_feed_source()
        write_client = make_write_client()
        if isinstance(error, FeedUnavailable):
            feed_source.fetch_updates.side_effect = error
        else:
            write_client.submit_update.side_effect = error

        result = await make_controller(read_client, feed_source, write_client).sync()

        assert result.refresh_error == str(error)
        assert feed_source.fetch_updates.await_count == 1
        assert write_client.submit_update.await_count <= 1
        assert result.valid_count == 0

    @pytest.mark.asyncio
    async def test_settle_delay(self) -> None:
        """The settle delay should be awaited between update and re-read."""
        read_client = make_read_client(all_tokens(EMPTY), all_tokens(fresh()))
        controller = make_controller(
            read_client, make_feed_source(), make_write_client(), settle_delay=3.0
        )

        with patch(
            "pricefetch.src.PriceSyncController.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            result = await controller.sync()

        mock_sleep.assert_awaited_once_with(3.0)
        assert result.valid_count == 4


class TestStaleness:
    """Test the max_price_age policy."""

    @pytest.mark.asyncio
    async def test_stale_prices_trigger_refresh(self) -> None:
        """Valid but stale prices should not count as usable."""
        read_client = make_read_client(all_tokens(fresh()), all_tokens(fresh()))
        read_client.is_stale.side_effect = [True] * 4 + [False] * 4
        write_client = make_write_client()

        result = await make_controller(
            read_client, make_feed_source(), write_client, max_price_age=300
        ).sync()

        write_client.submit_update.assert_awaited_once()
        read_client.is_stale.assert_any_await(Token.ETH, 300)
        assert result.refreshed is True

    @pytest.mark.asyncio
    async def test_failed_staleness_check_counts_as_stale(self) -> None:
        """A failing staleness check should be treated as stale."""
        read_client = make_read_client(all_tokens(fresh()))
        read_client.is_stale.side_effect = ChainCallFailed("isPriceStale failed")

        result = await make_controller(read_client, max_price_age=300).sync()

        assert result.refresh_attempted is False
        assert result.valid_count == 4

    @pytest.mark.asyncio
    async def test_invalid_prices_skip_staleness_check(self) -> None:
        """Only valid prices should be checked for staleness."""
        read_client = make_read_client(all_tokens(EMPTY))

        await make_controller(read_client, max_price_age=300).sync()

        read_client.is_stale.assert_not_awaited()


class TestBatchReads:
    """Test the batched read mode."""

    @pytest.mark.asyncio
    async def test_batch_read(self) -> None:
        """Batch mode should use one getAllPrices call."""
        read_client = make_read_client(all_tokens(fresh()))

        result = await make_controller(read_client, batch_reads=True).sync()

        read_client.get_all_cached_prices.assert_awaited_once()
        read_client.get_cached_price.assert_not_awaited()
        assert result.valid_count == 4

    @pytest.mark.asyncio
    async def test_batch_failure_propagates(self) -> None:
        """A failed atomic first read is a hard error."""
        read_client = MagicMock()
        read_client.get_all_cached_prices = AsyncMock(side_effect=ChainCallFailed("down"))

        with pytest.raises(ChainCallFailed, match="down"):
            await make_controller(
                read_client, make_feed_source(), make_write_client(), batch_reads=True
            ).sync()

    @pytest.mark.asyncio
    async def test_failed_reread_keeps_previous_prices(self) -> None:
        """A failed re-read after an update should keep the earlier results."""
        read_client = MagicMock()
        read_client.get_all_cached_prices = AsyncMock(
            side_effect=[all_tokens(EMPTY), ChainCallFailed("down")]
        )

        result = await make_controller(
            read_client, make_feed_source(), make_write_client(), batch_reads=True
        ).sync()

        assert result.refreshed is True
        assert len(result.prices) == 4
        assert result.valid_count == 0
