"""OracleReadClient: Read-only queries against the PriceFetchOracle contract.

Every call is a single independent ``eth_call`` with no retry. Any failure
(revert, transport error, timeout, undecodable output) surfaces as
:class:`ChainCallFailed`; deciding what a failed read means is left to the
caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from .errors import ChainCallFailed
from .PriceFormatter import RawPriceTuple
from .Token import Token

if TYPE_CHECKING:
    from web3.contract import AsyncContract

logger = logging.getLogger(__name__)

WEI_PER_ETH = 10**18


@dataclass(frozen=True)
class ContractInfo:
    """Metadata reported by ``getContractInfo``.

    :ivar contract_address: Address of the oracle contract itself.
    :ivar aggregator_address: Address of the Pyth contract it reads from.
    :ivar owner_address: Contract owner.
    :ivar contract_balance_wei: Native balance held by the contract.
    """

    contract_address: str
    aggregator_address: str
    owner_address: str
    contract_balance_wei: int

    @property
    def balance_eth(self) -> Decimal:
        """Contract balance in ETH."""
        return Decimal(self.contract_balance_wei) / WEI_PER_ETH


class OracleReadClient:
    """Read-only view of a deployed PriceFetchOracle.

    :ivar contract: Async contract instance bound to the oracle ABI.
    """

    def __init__(self, contract: AsyncContract) -> None:
        """Initialize the read client.

        :param contract: Async contract instance for the oracle.
        """
        self.contract = contract

    @property
    def address(self) -> str:
        """Address of the oracle contract."""
        return self.contract.address

    async def _call(self, description: str, fn: Any) -> Any:
        """Execute a contract function call, mapping failures to ChainCallFailed.

        :param description: Short description used in errors and logs.
        :param fn: Prepared contract function (``contract.functions.x(...)``).
        :returns: Decoded call result.
        :raises ChainCallFailed: If the call fails for any reason.
        """
        try:
            return await fn.call()
        except Exception as e:
            logger.debug(f"{description} failed: {e!r}")
            raise ChainCallFailed(f"{description} failed: {e}") from e

    async def get_cached_price(self, token: Token) -> RawPriceTuple:
        """Read the price currently cached on-chain for ``token``.

        :param token: Token to query.
        :returns: Raw price tuple.
        :raises ChainCallFailed: On revert, timeout or malformed output.
        """
        logger.debug(f"Fetching {token} price (cached)")
        value = await self._call(
            f"getLatestPrice({token})",
            self.contract.functions.getLatestPrice(token.index),
        )
        try:
            return RawPriceTuple.from_chain(value)
        except ValueError as e:
            raise ChainCallFailed(f"getLatestPrice({token}) returned {e}") from e

    async def get_all_cached_prices(self) -> dict[Token, RawPriceTuple]:
        """Read every token's cached price in one atomic batched call.

        :returns: Dict mapping each token to its raw price tuple.
        :raises ChainCallFailed: If the batched call fails as a whole.
        """
        values = await self._call("getAllPrices()", self.contract.functions.getAllPrices())
        tokens = list(Token)
        try:
            return {
                token: RawPriceTuple.from_chain(value)
                for token, value in zip(tokens, values, strict=True)
            }
        except (TypeError, ValueError) as e:
            raise ChainCallFailed(
                f"getAllPrices() returned malformed data for {len(tokens)} tokens: {e}"
            ) from e

    async def is_stale(self, token: Token, max_age_seconds: int) -> bool:
        """Ask the contract whether ``token``'s price is older than ``max_age_seconds``.

        :raises ChainCallFailed: If the call fails.
        """
        return bool(
            await self._call(
                f"isPriceStale({token}, {max_age_seconds})",
                self.contract.functions.isPriceStale(token.index, max_age_seconds),
            )
        )

    async def get_contract_info(self) -> ContractInfo:
        """Read the oracle's aggregator address, owner and balance.

        :raises ChainCallFailed: If the call fails.
        """
        aggregator, owner, balance = await self._call(
            "getContractInfo()", self.contract.functions.getContractInfo()
        )
        return ContractInfo(
            contract_address=self.address,
            aggregator_address=aggregator,
            owner_address=owner,
            contract_balance_wei=int(balance),
        )

    async def get_readable_price(self, token: Token) -> Decimal:
        """Read the contract's own decimal rendering of ``token``'s price.

        :param token: Token to query.
        :returns: Price as a Decimal.
        :raises ChainCallFailed: If the call fails.
        """
        price, decimals = await self._call(
            f"getReadablePrice({token})",
            self.contract.functions.getReadablePrice(token.index),
        )
        return Decimal(int(price)).scaleb(-int(decimals))

    async def calculate_payment_in_token(
        self,
        expense_amount: Decimal | int | str,
        expense_token: Token,
        participants: int,
        payment_token: Token,
    ) -> Decimal:
        """Compute one participant's share of an expense, paid in another token.

        The conversion runs on-chain; amounts are scaled with each token's
        decimals on the way in and out.

        .. code-block:: python

            >>> await client.calculate_payment_in_token(1, Token.ETH, 2, Token.USDC)
            Decimal('1728.390000')

        :param expense_amount: Total expense in ``expense_token`` units.
        :param expense_token: Token the expense is denominated in.
        :param participants: Number of people splitting the expense.
        :param payment_token: Token each participant pays with.
        :returns: Per-participant amount in ``payment_token`` units.
        :raises ValueError: If participants is not positive.
        :raises ChainCallFailed: If the call fails.
        """
        if participants < 1:
            raise ValueError("participants must be at least 1")
        amount = await self._call(
            f"calculatePaymentInToken({expense_token}->{payment_token})",
            self.contract.functions.calculatePaymentInToken(
                expense_token.to_base_units(expense_amount),
                expense_token.index,
                expense_token.decimals,
                participants,
                payment_token.index,
                payment_token.decimals,
            ),
        )
        return payment_token.from_base_units(int(amount))
