"""OracleWriteClient: Price-update transactions against the PriceFetchOracle.

Submission protocol, run as one uninterrupted sequence per attempt:
    1. Query ``getUpdateFee`` for the exact payload
    2. Send ``updatePriceFeeds`` with the fee attached, a fixed gas ceiling
       and the next nonce; the nonce counter advances as soon as it is taken
    3. Wait for the receipt and check its status
    4. If the chain rejects the nonce, re-read the counter and raise
       SequenceConflict so the caller can retry with the corrected value

The nonce counter is owned by this client. Submissions through one client
are serialized by a lock; several clients sharing a signer are not.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .errors import ChainCallFailed, NoSigningIdentity, SequenceConflict, UpdateRejected
from .Token import Token

if TYPE_CHECKING:
    from web3 import AsyncWeb3
    from web3.contract import AsyncContract
    from web3.types import TxReceipt

logger = logging.getLogger(__name__)

# Error fragments nodes use when a nonce is stale or already taken.
NONCE_ERROR_MARKERS = (
    "nonce",
    "already known",
    "replacement transaction underpriced",
)


def is_nonce_conflict(exc: BaseException) -> bool:
    """Check whether a submission error reports a stale or reused nonce.

    :param exc: Exception raised while sending a transaction.
    :returns: True if the error is a sequencing conflict.
    """
    message = str(exc).lower()
    return any(marker in message for marker in NONCE_ERROR_MARKERS)


class OracleWriteClient:
    """Submits signed price updates and tracks the signer's nonce.

    :cvar GAS_LIMIT: Gas ceiling for update transactions.
    :ivar w3: AsyncWeb3 instance with the signer middleware installed.
    :ivar contract: Async contract instance for the oracle.
    :ivar signer_address: Address of the signing account, or None.
    :ivar nonce: Next nonce to use, or None until synced from the chain.
    :ivar receipt_timeout: Seconds to wait for a transaction receipt.
    :ivar rollback_nonce_on_reject: Give the nonce back when a submission
        fails for a non-nonce reason.
    """

    GAS_LIMIT = 1_000_000

    def __init__(
        self,
        w3: AsyncWeb3,
        contract: AsyncContract,
        signer_address: str | None,
        receipt_timeout: float = 120.0,
        rollback_nonce_on_reject: bool = False,
    ) -> None:
        """Initialize the write client.

        :param w3: AsyncWeb3 instance able to sign for ``signer_address``.
        :param contract: Async contract instance for the oracle.
        :param signer_address: Signing account address; None means read-only.
        :param receipt_timeout: Seconds to wait for confirmation (default: 120).
        :param rollback_nonce_on_reject: Restore the nonce after a non-nonce
            failure (default: False, the counter stays advanced).
        """
        self.w3 = w3
        self.contract = contract
        self.signer_address = signer_address
        self.receipt_timeout = receipt_timeout
        self.rollback_nonce_on_reject = rollback_nonce_on_reject
        self.nonce: int | None = None
        self._lock = asyncio.Lock()

    @property
    def has_signer(self) -> bool:
        """Check if a signing identity is configured."""
        return bool(self.signer_address)

    def _require_signer(self) -> str:
        if not self.signer_address:
            raise NoSigningIdentity("Wallet required for price updates")
        return self.signer_address

    async def sync_nonce(self) -> int:
        """Reset the nonce counter from the chain's pending transaction count.

        :returns: The new counter value.
        :raises NoSigningIdentity: If no signer is configured.
        :raises ChainCallFailed: If the count cannot be read.
        """
        address = self._require_signer()
        try:
            self.nonce = await self.w3.eth.get_transaction_count(address, "pending")
        except Exception as e:
            raise ChainCallFailed(f"Failed to read nonce for {address}: {e}") from e
        logger.info(f"Nonce for {address}: {self.nonce}")
        return self.nonce

    async def get_update_fee(self, payload: list[bytes]) -> int:
        """Query the fee, in wei, the oracle charges for ``payload``.

        :raises UpdateRejected: If the fee query fails.
        """
        try:
            return int(await self.contract.functions.getUpdateFee(payload).call())
        except Exception as e:
            raise UpdateRejected(f"Failed to query update fee: {e}") from e

    async def submit_update(self, payload: list[bytes]) -> TxReceipt:
        """Submit ``updatePriceFeeds(payload)`` and wait for one confirmation.

        :param payload: Signed update blobs from the feed source.
        :returns: Receipt of the mined transaction.
        :raises NoSigningIdentity: If no signer is configured.
        :raises SequenceConflict: If the nonce was rejected; the counter has
            been re-read from the chain.
        :raises UpdateRejected: On fee, gas, funds, revert or transport failure.
        """
        return await self._submit(
            "updatePriceFeeds", payload, self.contract.functions.updatePriceFeeds(payload)
        )

    async def submit_update_for_token(self, token: Token, payload: list[bytes]) -> TxReceipt:
        """Submit ``getLatestPriceWithUpdate(token, payload)`` and wait for it.

        Same protocol as :meth:`submit_update`; useful when only one token's
        price needs to be refreshed and read in the same transaction.
        """
        return await self._submit(
            f"getLatestPriceWithUpdate({token})",
            payload,
            self.contract.functions.getLatestPriceWithUpdate(token.index, payload),
        )

    async def _submit(self, description: str, payload: list[bytes], fn: Any) -> TxReceipt:
        """Run the fee -> send -> confirm sequence for a prepared call.

        :param description: Function description used in logs and errors.
        :param payload: Update blobs, used for the fee query.
        :param fn: Prepared payable contract function.
        :returns: Receipt of the mined transaction.
        """
        address = self._require_signer()

        async with self._lock:
            if self.nonce is None:
                await self.sync_nonce()
            assert self.nonce is not None

            fee = await self.get_update_fee(payload)
            logger.info(f"Update fee for {len(payload)} blobs: {fee} wei")

            nonce = self.nonce
            self.nonce += 1
            sent = False

            try:
                tx_params = await fn.build_transaction(
                    {
                        "from": address,
                        "value": fee,
                        "gas": self.GAS_LIMIT,
                        "nonce": nonce,
                    }
                )
                tx_hash = await self.w3.eth.send_transaction(tx_params)
                sent = True
                logger.info(f"{description} sent: {tx_hash.hex()} (nonce {nonce})")
                receipt = await self.w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self.receipt_timeout
                )
            except Exception as e:
                if is_nonce_conflict(e):
                    await self._handle_nonce_conflict(nonce, e)
                # A broadcast transaction keeps its nonce even if the receipt never arrives.
                if self.rollback_nonce_on_reject and not sent:
                    self.nonce = nonce
                logger.error(f"{description} failed: {e}")
                raise UpdateRejected(f"{description} failed: {e}") from e

            if receipt["status"] != 1:
                raise UpdateRejected(
                    f"{description} reverted in block {receipt['blockNumber']}"
                )

            logger.info(f"{description} confirmed in block {receipt['blockNumber']}")
            return receipt

    async def _handle_nonce_conflict(self, nonce: int, exc: Exception) -> None:
        """Resync the counter after a rejected nonce and raise SequenceConflict.

        :param nonce: The nonce the chain rejected.
        :param exc: Original submission error.
        :raises SequenceConflict: Always.
        """
        logger.warning(f"Nonce {nonce} rejected ({exc}), resetting from chain")
        try:
            await self.sync_nonce()
        except ChainCallFailed as sync_error:
            # Next submission retries the resync.
            self.nonce = None
            logger.error(f"Nonce resync failed: {sync_error}")
        raise SequenceConflict(f"Nonce {nonce} rejected: {exc}") from exc
