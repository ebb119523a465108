"""Exception hierarchy for the price-sync client.

Every failure raised by the clients derives from :class:`PriceFetchError`, so
callers can absorb a whole refresh attempt with a single ``except`` while
still telling the causes apart.
"""


class PriceFetchError(Exception):
    """Base exception for price-sync errors."""

    pass


class FeedUnavailable(PriceFetchError):
    """Raised when the off-chain feed cannot provide update payloads.

    :ivar status_code: HTTP status code, if the request got a response.
    """

    def __init__(self, message: str, status_code: int | None = None):
        """Initialize the error.

        :param message: Human-readable cause.
        :param status_code: HTTP status code from the failed request.
        """
        self.status_code = status_code
        if status_code is not None:
            message = f"HTTP {status_code}: {message}"
        super().__init__(message)


class ChainCallFailed(PriceFetchError):
    """Raised when a read-only contract call reverts, times out or is undecodable."""

    pass


class NoSigningIdentity(PriceFetchError):
    """Raised when a write is attempted without a configured signer."""

    pass


class SequenceConflict(PriceFetchError):
    """Raised when the chain rejects the nonce of a submission.

    The nonce counter has already been re-read from the chain when this is
    raised, so the next submission uses the corrected value.
    """

    pass


class UpdateRejected(PriceFetchError):
    """Raised when an update transaction fails for a non-nonce reason.

    Covers fee query failures, insufficient funds, reverted execution and
    transport errors during submission.
    """

    pass


class InvalidToken(PriceFetchError, ValueError):
    """Raised for a token name or index outside the supported set."""

    pass
