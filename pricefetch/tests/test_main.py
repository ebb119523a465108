"""Unit tests for the CLI helpers."""

import time

from pricefetch.main import env_flag, render_prices
from pricefetch.src.PriceFormatter import NormalizedPrice, RawPriceTuple, format_price
from pricefetch.src.Token import Token


class TestRenderPrices:
    """Test console table rendering."""

    def test_valid_and_invalid_rows(self) -> None:
        """Valid prices show value, confidence and age; invalid ones N/A."""
        now = int(time.time())
        prices = {
            Token.ETH: format_price(RawPriceTuple(345678000000, 150000000, -8, now - 600), now=now),
            Token.USDC: NormalizedPrice.unavailable("reverted"),
        }

        lines = render_prices(prices)

        eth_row = next(line for line in lines if line.startswith("ETH"))
        usdc_row = next(line for line in lines if line.startswith("USDC"))
        assert "$3456.780000" in eth_row
        assert "±1.500000" in eth_row
        assert "10m ago" in eth_row
        assert "Price not available" in usdc_row
        assert lines[-1] == "Status: 1/2 prices available"


class TestEnvFlag:
    """Test boolean env parsing."""

    def test_truthy(self, monkeypatch) -> None:
        """Common truthy spellings should enable the flag."""
        for value in ("1", "true", "YES", " on "):
            monkeypatch.setenv("BATCH_READS", value)
            assert env_flag("BATCH_READS") is True

    def test_falsy(self, monkeypatch) -> None:
        """Unset or other values should disable the flag."""
        monkeypatch.delenv("BATCH_READS", raising=False)
        assert env_flag("BATCH_READS") is False
        monkeypatch.setenv("BATCH_READS", "0")
        assert env_flag("BATCH_READS") is False
