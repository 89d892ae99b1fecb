"""
Singleton place-lookup client with rate limiting using aiolimiter.
"""
from typing import Any, Dict, Optional

from aiohttp import ClientSession, ClientTimeout
from aiolimiter import AsyncLimiter
from loguru import logger

from techindex.config import CONCURRENCY, GOOGLE_PLACES_API_KEY, PLACES_DETAILS_URL, PLACES_TEXTSEARCH_URL

DETAILS_FIELDS = "place_id,name,formatted_address,formatted_phone_number,website,url,types"
STUB_STATUS = "NO_FETCH_WIRED"


class PlacesClient:
    """
    Singleton client for text search + place details lookups.
    Without an API key every lookup returns a stub event body, so the
    pipeline runs end to end offline.
    """
    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not PlacesClient._initialized:
            self.api_key = GOOGLE_PLACES_API_KEY
            # Token bucket: CONCURRENCY requests per second
            self.rate_limiter = AsyncLimiter(max_rate=CONCURRENCY, time_period=1.0)
            self._session: Optional[ClientSession] = None
            PlacesClient._initialized = True

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get_session(self) -> ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=30))
        return self._session

    async def _get_json(self, url: str, params: Dict[str, str]) -> Dict[str, Any]:
        async with self.rate_limiter:
            session = await self._get_session()
            try:
                async with session.get(url, params={**params, "key": self.api_key}) as resp:
                    data = await resp.json()
                    if resp.status != 200:
                        raise RuntimeError(f"Places API HTTP {resp.status}: {data}")
                    return data
            except Exception as e:
                logger.debug(f"⚠️ Places request failed ({url}): {e}")
                raise

    async def lookup(self, query: str) -> Dict[str, Any]:
        """
        Text search for `query`, then fetch details of the top hit.

        Returns:
            Event body: {"topPlaceId", "detailsStatus", "details": {"response": {...}} | None}.
        """
        if not self.enabled:
            return {"topPlaceId": "", "detailsStatus": STUB_STATUS, "details": None}

        search = await self._get_json(PLACES_TEXTSEARCH_URL, {"query": query})
        results = search.get("results") or []
        if not results:
            return {"topPlaceId": "", "detailsStatus": str(search.get("status") or "ZERO_RESULTS"), "details": None}

        place_id = str(results[0].get("place_id") or "")
        details = await self._get_json(PLACES_DETAILS_URL, {"place_id": place_id, "fields": DETAILS_FIELDS})
        return {
            "topPlaceId": place_id,
            "detailsStatus": str(details.get("status") or ""),
            "details": {"response": details},
        }

    async def close(self):
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
