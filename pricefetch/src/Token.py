"""Token: the closed set of currencies served by the oracle contract.

Each member binds the contract-facing ``uint8`` index, the ERC-20 style
decimal count used to scale amounts, and the Pyth feed id used when talking
to Hermes.

.. code-block:: python

    >>> Token.from_name("eth").index
    0
    >>> Token.USDC.to_base_units(Decimal("1.5"))
    1500000
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from .errors import InvalidToken


class Token(Enum):
    """Supported token with its index, decimals and Pyth feed id.

    :ivar index: Enum value used by the oracle contract.
    :ivar decimals: Number of decimals of the token's smallest unit.
    :ivar feed_id: 32-byte Pyth price feed id, ``0x``-prefixed hex.
    """

    # Beta feed ids served for the Base Sepolia deployment.
    ETH = (0, 18, "0xff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace")
    USDC = (1, 6, "0xeaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a")
    USDT = (2, 6, "0x2b89b9dc8fdf9f34709a5b106b472f0f39bb6ca9ce04b0fd7f2e971688e2e53b")
    PYUSD = (3, 6, "0x6ec879b1e9963de5ee97e9c8710b742d6228252a5e2ca12d4ae81d7fe5ee8c5d")

    def __init__(self, index: int, decimals: int, feed_id: str) -> None:
        self.index = index
        self.decimals = decimals
        self.feed_id = feed_id

    def __str__(self) -> str:
        return self.name

    @classmethod
    def from_name(cls, name: str) -> Token:
        """Look up a token by symbol, case-insensitively.

        :param name: Token symbol (e.g., "eth", "USDC").
        :returns: Matching Token.
        :raises InvalidToken: If the symbol is not supported.
        """
        try:
            return cls[name.strip().upper()]
        except (KeyError, AttributeError):
            supported = ", ".join(t.name for t in cls)
            raise InvalidToken(
                f"Unsupported token: {name!r}. Supported: {supported}"
            ) from None

    @classmethod
    def from_index(cls, index: int) -> Token:
        """Look up a token by its contract index.

        :param index: Contract-facing enum value.
        :returns: Matching Token.
        :raises InvalidToken: If no token has this index.
        """
        for token in cls:
            if token.index == index:
                return token
        raise InvalidToken(f"Unsupported token index: {index!r}")

    @classmethod
    def parse_list(cls, tokens_str: str) -> list[Token]:
        """Parse a comma-separated token list, keeping order and dropping repeats.

        :param tokens_str: String like "eth,usdc".
        :returns: List of tokens.
        :raises InvalidToken: If any entry is not supported or the list is empty.
        """
        tokens: list[Token] = []
        for item in tokens_str.split(","):
            if not item.strip():
                continue
            token = cls.from_name(item)
            if token not in tokens:
                tokens.append(token)
        if not tokens:
            raise InvalidToken("At least one token must be specified")
        return tokens

    @classmethod
    def feed_ids(cls, tokens: list[Token] | None = None) -> list[str]:
        """Return the feed ids for ``tokens`` (all tokens by default), in order."""
        return [t.feed_id for t in (tokens if tokens is not None else list(cls))]

    def to_base_units(self, amount: Decimal | int | str) -> int:
        """Scale a human amount to the token's smallest unit (truncating)."""
        return int(Decimal(amount).scaleb(self.decimals))

    def from_base_units(self, units: int) -> Decimal:
        """Scale an amount in the token's smallest unit to a human amount."""
        return Decimal(units).scaleb(-self.decimals)
