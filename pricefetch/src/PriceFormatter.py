"""PriceFormatter: Normalize the oracle's fixed-point price tuples.

The contract returns Pyth-style prices as ``(price, conf, expo, publishTime)``
where the value is ``price * 10**expo``. Formatting never raises: bad input
degrades to an explicit invalid :class:`NormalizedPrice` carrying the error.

.. code-block:: python

    >>> raw = RawPriceTuple(mantissa=345678000000, confidence=150000000,
    ...                     exponent=-8, publish_time=1_700_000_000)
    >>> result = format_price(raw, now=1_700_000_600)
    >>> result.formatted
    '$3456.780000'
    >>> result.time_ago
    '10m ago'
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, NamedTuple

logger = logging.getLogger(__name__)

# Publish times at or below this are treated as unset.
MIN_PUBLISH_TIME = 1_000_000_000

# Publish times this far in the future are rejected outright.
MAX_FUTURE_SKEW_SECONDS = 86400

MINUTES_PER_DAY = 1440

NOT_AVAILABLE = "N/A"
PRICE_NOT_AVAILABLE = "Price not available"


class RawPriceTuple(NamedTuple):
    """Price struct as stored by the oracle contract.

    :ivar mantissa: Signed 64-bit price mantissa.
    :ivar confidence: Unsigned 64-bit confidence mantissa.
    :ivar exponent: Signed 32-bit decimal exponent.
    :ivar publish_time: Unix timestamp of the attestation, in seconds.
    """

    mantissa: int
    confidence: int
    exponent: int
    publish_time: int

    @classmethod
    def from_chain(cls, value: Any) -> RawPriceTuple:
        """Build from the ABI-decoded ``(price, conf, expo, publishTime)`` struct.

        :param value: Decoded tuple or list with four integer fields.
        :returns: New RawPriceTuple.
        :raises ValueError: If the value does not have four integer fields.
        """
        try:
            mantissa, confidence, exponent, publish_time = value
            return cls(int(mantissa), int(confidence), int(exponent), int(publish_time))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Malformed price struct {value!r}: {e}") from e


@dataclass(frozen=True)
class NormalizedPrice:
    """Human-readable view of one token price.

    :ivar actual_price: ``mantissa * 10**exponent``.
    :ivar confidence_interval: ``confidence * 10**exponent``.
    :ivar publish_time_utc: Publish time, or None if outside the sane window.
    :ivar age_seconds: Seconds since publication, or None if unknown.
    :ivar time_ago: Age bucketed as "Nm ago" / "Nd ago", or "N/A".
    :ivar is_valid: True iff the price is positive and the mantissa non-zero.
    :ivar formatted: "$x.xxxxxx", or "Price not available" when invalid.
    :ivar mantissa: Raw mantissa, None when the tuple was unusable.
    :ivar exponent: Raw exponent, None when the tuple was unusable.
    :ivar error: Cause of an unusable tuple or failed read.
    """

    actual_price: Decimal
    confidence_interval: Decimal
    publish_time_utc: datetime | None
    age_seconds: int | None
    time_ago: str
    is_valid: bool
    formatted: str
    mantissa: int | None = None
    exponent: int | None = None
    error: str | None = None

    @classmethod
    def unavailable(cls, error: str) -> NormalizedPrice:
        """Return the all-"N/A" invalid result for a failed read or bad tuple.

        :param error: Description of what went wrong.
        :returns: Invalid NormalizedPrice with ``error`` set.
        """
        return cls(
            actual_price=Decimal(0),
            confidence_interval=Decimal(0),
            publish_time_utc=None,
            age_seconds=None,
            time_ago=NOT_AVAILABLE,
            is_valid=False,
            formatted=PRICE_NOT_AVAILABLE,
            error=error,
        )

    @property
    def confidence_display(self) -> str:
        """Confidence as "±x.xxxxxx", or "N/A" when not meaningful."""
        if not self.is_valid or self.confidence_interval <= 0:
            return NOT_AVAILABLE
        return f"±{self.confidence_interval:.6f}"


def format_age(age_seconds: int) -> str:
    """Bucket an age into minutes below one day, days otherwise.

    :param age_seconds: Non-negative age in seconds.
    :returns: String like "12m ago" or "3d ago".
    """
    age_minutes = age_seconds // 60
    if age_minutes < MINUTES_PER_DAY:
        return f"{age_minutes}m ago"
    return f"{age_minutes // MINUTES_PER_DAY}d ago"


def format_price(raw: RawPriceTuple, now: int | None = None) -> NormalizedPrice:
    """Convert a raw contract price tuple into a NormalizedPrice.

    Never raises; malformed tuples yield :meth:`NormalizedPrice.unavailable`.

    :param raw: Tuple as read from the contract.
    :param now: Current Unix time in seconds (default: wall clock).
    :returns: Normalized price, possibly invalid.
    """
    try:
        mantissa = int(raw.mantissa)
        exponent = int(raw.exponent)
        actual_price = Decimal(mantissa).scaleb(exponent)
        confidence_interval = Decimal(int(raw.confidence)).scaleb(exponent)
        publish_time = int(raw.publish_time)
    except (AttributeError, TypeError, ValueError, InvalidOperation) as e:
        logger.warning(f"Price formatting error for {raw!r}: {e}")
        return NormalizedPrice.unavailable(str(e) or type(e).__name__)

    if now is None:
        now = int(time.time())

    publish_time_utc: datetime | None = None
    age_seconds: int | None = None
    time_ago = NOT_AVAILABLE
    if MIN_PUBLISH_TIME < publish_time < now + MAX_FUTURE_SKEW_SECONDS:
        publish_time_utc = datetime.fromtimestamp(publish_time, tz=timezone.utc)
        # A publish time ahead of our clock has no meaningful age.
        if publish_time <= now:
            age_seconds = now - publish_time
            time_ago = format_age(age_seconds)

    is_valid = actual_price > 0 and mantissa != 0
    formatted = f"${actual_price:.6f}" if is_valid else PRICE_NOT_AVAILABLE

    return NormalizedPrice(
        actual_price=actual_price,
        confidence_interval=confidence_interval,
        publish_time_utc=publish_time_utc,
        age_seconds=age_seconds,
        time_ago=time_ago,
        is_valid=is_valid,
        formatted=formatted,
        mantissa=mantissa,
        exponent=exponent,
    )
