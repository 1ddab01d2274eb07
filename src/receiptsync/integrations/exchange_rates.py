"""Exchange rate fetching with a 24 hour local cache."""

import logging
from datetime import datetime

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from receiptsync.config import Settings
from receiptsync.errors import CacheError, NetworkError, ServerError
from receiptsync.local_store import LocalStore
from receiptsync.models import ExchangeRateEntry

logger = logging.getLogger(__name__)


def _is_retryable_error(exception: BaseException) -> bool:
    """Determine if a rate request should be retried.

    Retries on:
    - HTTP 429 (rate limit exceeded)
    - HTTP 503 (service unavailable)
    - Transport errors (connection refused, timeouts, DNS failures)

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if isinstance(exception, httpx.TransportError):
        return True
    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code in (429, 503)
    return False


def cache_key(base: str) -> str:
    return f"exchange_rates:{base.upper()}"


class ExchangeRateService:
    """Serves exchange rates from the local cache, refreshing stale entries.

    Entries older than 24 hours are refetched when online. When offline, or
    when the endpoint cannot be reached or answers with an error, a stale
    entry is returned instead of failing.
    """

    def __init__(
        self,
        store: LocalStore,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or Settings()
        self.http_client = http_client

    def cached(self, base: str) -> ExchangeRateEntry | None:
        raw = self.store.get(cache_key(base))
        if not raw:
            return None
        try:
            return ExchangeRateEntry.model_validate(raw)
        except ValueError:
            logger.warning("[rates] discarding unreadable cache entry for %s", base)
            return None

    def save(self, entry: ExchangeRateEntry) -> None:
        self.store.set(cache_key(entry.base), entry.model_dump(mode="json"))

    @retry(
        retry=retry_if_exception(_is_retryable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(self, url: str) -> dict:
        if self.http_client is not None:
            response = await self.http_client.get(url)
        else:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(url)
        response.raise_for_status()
        return response.json()

    async def fetch(self, base: str) -> ExchangeRateEntry:
        """Fetch live rates for ``base`` and store them in the cache.

        Raises:
            NetworkError: If the endpoint cannot be reached
            ServerError: If the endpoint answers with an error
        """
        base = base.upper()
        url = self.settings.exchange_rate_url.format(base=base)
        try:
            data = await self._request(url)
        except httpx.TransportError as e:
            raise NetworkError(f"Could not reach exchange rate service: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ServerError(
                f"Exchange rate service returned {e.response.status_code}",
                code=str(e.response.status_code),
            ) from e
        except ValueError as e:
            raise ServerError("Exchange rate service returned invalid JSON") from e

        if not isinstance(data, dict):
            raise ServerError("Exchange rate service returned an unexpected payload")
        if data.get("result") == "error" or "rates" not in data:
            raise ServerError(
                f"Exchange rate service error: {data.get('error-type', 'no rates returned')}"
            )
        try:
            rates = {code: float(rate) for code, rate in data["rates"].items()}
        except (AttributeError, TypeError, ValueError) as e:
            raise ServerError("Exchange rate service returned malformed rates") from e
        rates[base] = 1.0
        entry = ExchangeRateEntry(base=base, rates=rates)
        self.save(entry)
        logger.info("[rates] fetched %d rates for %s", len(rates), base)
        return entry

    async def get_rates(
        self, base: str, online: bool = True, now: datetime | None = None
    ) -> ExchangeRateEntry:
        """Return rates for ``base``, refetching stale entries when online.

        Args:
            base: Base currency code
            online: Whether the network may be used
            now: Reference time for the staleness check

        Returns:
            A fresh entry, or a stale one when a refetch is not possible

        Raises:
            CacheError: If offline with nothing cached
            NetworkError: If unreachable with nothing cached
            ServerError: If the endpoint fails with nothing cached
        """
        entry = self.cached(base)
        if entry is not None and not entry.is_stale(now):
            return entry

        if not online:
            if entry is not None:
                logger.info("[rates] offline, using stale rates for %s", base)
                return entry
            raise CacheError(f"No cached exchange rates for {base} while offline")

        try:
            return await self.fetch(base)
        except (NetworkError, ServerError):
            if entry is not None:
                logger.warning("[rates] refetch failed, using stale rates for %s", base)
                return entry
            raise
