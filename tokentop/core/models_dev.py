"""
Live pricing source backed by the models.dev catalogue.

The catalogue is fetched with httpx and kept in a cachetools TTLCache owned
by the client instance, so tests control time and never share state.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx
from cachetools import TTLCache

logger = logging.getLogger(__name__)

MODELS_DEV_API = "https://models.dev/api.json"
DEFAULT_TTL_SECONDS = 3600.0
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_RETRY_AFTER_SECONDS = 60.0

_CATALOGUE_KEY = "catalogue"


class ModelsDevClient:
    """Fetches the models.dev catalogue: ``{provider: {"models": {...}}}``.

    The last good payload outlives the TTL so it can be served when a
    refresh fails.
    """

    def __init__(
        self,
        url: str = MODELS_DEV_API,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.Client] = None,
        retry_after_seconds: float = DEFAULT_RETRY_AFTER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.url = url
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.retry_after_seconds = retry_after_seconds
        self._http_client = http_client
        self._clock = clock
        self._cache: TTLCache = TTLCache(maxsize=1, ttl=ttl_seconds, timer=clock)
        self._last_good: Optional[Dict[str, Any]] = None
        self._failed_at: Optional[float] = None

    def fetch(self) -> Optional[Dict[str, Any]]:
        """Return the catalogue, refreshing it when the cache has expired.

        Failures never raise: the last good payload is served if one exists,
        otherwise None.
        """
        fresh = self._cache.get(_CATALOGUE_KEY)
        if fresh is not None:
            return fresh

        # no refetch inside the retry window after a failed download
        if self._failed_at is not None and self._clock() - self._failed_at < self.retry_after_seconds:
            return self._last_good

        try:
            payload = self._download()
        except (httpx.HTTPError, ValueError) as e:
            self._failed_at = self._clock()
            logger.warning(
                "models.dev fetch failed (%s); %s",
                e,
                "serving cached catalogue" if self._last_good is not None else "no cached catalogue",
            )
            return self._last_good

        self._failed_at = None
        self._cache[_CATALOGUE_KEY] = payload
        self._last_good = payload
        return payload

    def clear_cache(self) -> None:
        self._failed_at = None
        self._last_good = None
        self._cache.clear()

    def _download(self) -> Dict[str, Any]:
        if self._http_client is not None:
            response = self._http_client.get(self.url, timeout=self.timeout_seconds)
        else:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.get(self.url)
        response.raise_for_status()
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("models.dev payload is not an object")
        return payload
