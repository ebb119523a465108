"""FeedSource: Signed price-update payloads from the Pyth Hermes API.

Endpoint: {HERMES_URL}/v2/updates/price/latest?ids[]={id}&...&encoding=hex

The response envelope carries the signed update blobs under
``binary.data`` as hex strings. They are decoded to bytes and handed verbatim
to the oracle's ``updatePriceFeeds``. Payloads are time-sensitive, so they are
fetched fresh for every update attempt and never cached.

A shared ``httpx.AsyncClient`` is used across instances to avoid connection
overhead, unless a client is injected.
"""

from __future__ import annotations

import logging
from typing import ClassVar

import httpx

from .errors import FeedUnavailable

logger = logging.getLogger(__name__)

DEFAULT_HERMES_URL = "https://hermes.pyth.network"


class FeedSource:
    """Client for the Hermes "latest price updates" endpoint.

    :cvar DEFAULT_TIMEOUT: Default HTTP request timeout in seconds.
    :ivar base_url: Hermes base URL.
    :ivar timeout: Request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    DEFAULT_TIMEOUT = 15.0
    UPDATES_PATH = "/v2/updates/price/latest"
    USER_AGENT = "PriceFetch-Oracle/1.0"

    def __init__(
        self,
        base_url: str = DEFAULT_HERMES_URL,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the feed source.

        :param base_url: Hermes base URL (default: public Pyth Hermes).
        :param timeout: Request timeout in seconds (default: 15).
        :param client: Optional HTTP client to use instead of the shared one.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self._client = client

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        :returns: Shared httpx.AsyncClient instance.
        """
        if cls._shared_client is None or cls._shared_client.is_closed:
            cls._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                follow_redirects=True,
            )
        return cls._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        if cls._shared_client is not None and not cls._shared_client.is_closed:
            await cls._shared_client.aclose()
            cls._shared_client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """HTTP client used for requests."""
        return self._client if self._client is not None else self.get_shared_client()

    async def fetch_updates(self, feed_ids: list[str]) -> list[bytes]:
        """Fetch the latest signed price updates for the given feeds.

        Issues exactly one request and does not retry; retry policy belongs
        to the caller.

        :param feed_ids: Pyth feed ids, ``0x``-prefixed or bare hex.
        :returns: Update blobs in response order, ready for ``updatePriceFeeds``.
        :raises FeedUnavailable: On timeout, transport error, non-2xx status
            or a response without the binary payload envelope.
        """
        if not feed_ids:
            raise ValueError("At least one feed id is required")

        url = f"{self.base_url}{self.UPDATES_PATH}"
        params = [("ids[]", feed_id) for feed_id in feed_ids]
        params.append(("encoding", "hex"))
        headers = {"Accept": "application/json", "User-Agent": self.USER_AGENT}

        logger.info(f"Fetching price updates for {len(feed_ids)} feeds from Hermes")
        try:
            response = await self.client.get(
                url, params=params, headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise FeedUnavailable(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FeedUnavailable(f"Request failed: {e}") from e

        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise FeedUnavailable(response.text[:200], status_code=response.status_code)

        updates = self._parse_updates(response)
        logger.info(f"Got {len(updates)} price update blobs from Hermes")
        return updates

    @staticmethod
    def _parse_updates(response: httpx.Response) -> list[bytes]:
        """Extract and decode ``binary.data`` from a Hermes response.

        :param response: Successful Hermes response.
        :returns: Decoded update blobs.
        :raises FeedUnavailable: If the envelope is missing or malformed.
        """
        try:
            data = response.json()["binary"]["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise FeedUnavailable(f"No price update data received from Hermes: {e}") from e

        if not isinstance(data, list) or not data:
            raise FeedUnavailable("No price update data received from Hermes")

        try:
            return [bytes.fromhex(item.removeprefix("0x")) for item in data]
        except (AttributeError, ValueError) as e:
            raise FeedUnavailable(f"Malformed price update data from Hermes: {e}") from e
