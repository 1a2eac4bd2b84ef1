"""
Pipedrive CRM Integration Module
Read-only REST access used by deal-flow sync:
- Deal change history (/deals/{id}/flow)
- Deal details (/deals/{id})
- Deal listing sorted by update time (/deals)

Rate limiting and HTTP-level retries (429 / 5xx) live here, not in the sync engine.
"""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

# Pipedrive REST API timeout
PIPEDRIVE_TIMEOUT = 30.0

# Pipedrive token-based limit: 40 requests per 2 seconds
PIPEDRIVE_MAX_REQUESTS = 40
PIPEDRIVE_RATE_LIMIT_WINDOW = 2.0  # seconds

# HTTP-level retries for 429 / 5xx before giving up
PIPEDRIVE_HTTP_RETRIES = 3

FLOW_PAGE_SIZE = 100
DEALS_PAGE_SIZE = 500

# Safety cap on /deals pagination (500 * 200 = 100k deals)
MAX_DEAL_PAGES = 200


class PipedriveAPIError(Exception):
    """Pipedrive API error"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PipedriveRateLimiter:
    """Sliding-window rate limiter shared by every client using the same API token"""

    def __init__(self, max_requests: int = PIPEDRIVE_MAX_REQUESTS, window: float = PIPEDRIVE_RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._requests = defaultdict(list)
        self._lock = asyncio.Lock()

    async def acquire(self, key: str):
        """Wait until we can make a request without hitting rate limit"""
        async with self._lock:
            now = time.monotonic()
            self._requests[key] = [t for t in self._requests[key] if now - t < self.window]

            if len(self._requests[key]) >= self.max_requests:
                oldest = min(self._requests[key])
                wait_time = self.window - (now - oldest)
                if wait_time > 0:
                    logger.debug(f"Pipedrive rate limit: waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)
                    now = time.monotonic()
                    self._requests[key] = [t for t in self._requests[key] if now - t < self.window]

            self._requests[key].append(now)


# Global rate limiter instance
_pipedrive_rate_limiter = PipedriveRateLimiter()


class PipedriveCRMClient:
    """Client for the Pipedrive v1 REST API using an API token."""

    def __init__(self, api_token: str, base_url: str = "https://api.pipedrive.com/v1",
                 rate_limiter: Optional[PipedriveRateLimiter] = None):
        if not api_token:
            raise ValueError("Pipedrive API token is required")
        self.api_token = api_token
        self.base_url = base_url.rstrip('/')
        self.rate_limiter = rate_limiter or _pipedrive_rate_limiter

    async def _call(self, endpoint: str, params: Optional[dict] = None) -> dict:
        """GET an endpoint with rate limiting; returns the full JSON body."""
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        query = dict(params or {})
        query["api_token"] = self.api_token

        last_error: Optional[PipedriveAPIError] = None
        for attempt in range(PIPEDRIVE_HTTP_RETRIES + 1):
            await self.rate_limiter.acquire(self.api_token)
            try:
                async with httpx.AsyncClient(timeout=PIPEDRIVE_TIMEOUT) as client:
                    response = await client.get(url, params=query)
            except httpx.TimeoutException:
                last_error = PipedriveAPIError(f"Timeout calling {endpoint}")
            except httpx.RequestError as e:
                last_error = PipedriveAPIError(f"Connection error calling {endpoint}: {e}")
            else:
                if response.status_code == 200:
                    data = response.json()
                    if data.get("success") is False:
                        raise PipedriveAPIError(data.get("error") or "Unknown Pipedrive error", 200)
                    return data

                if response.status_code == 429 or response.status_code >= 500:
                    last_error = PipedriveAPIError(
                        f"API error: {response.status_code}", response.status_code
                    )
                    retry_after = response.headers.get("retry-after")
                    if retry_after and retry_after.isdigit() and attempt < PIPEDRIVE_HTTP_RETRIES:
                        await asyncio.sleep(int(retry_after))
                        continue
                else:
                    logger.error(f"Pipedrive API error: {response.status_code} - {response.text[:200]}")
                    raise PipedriveAPIError(f"API error: {response.status_code}", response.status_code)

            if attempt < PIPEDRIVE_HTTP_RETRIES:
                await asyncio.sleep(2 ** attempt)

        logger.warning(f"Pipedrive call gave up after {PIPEDRIVE_HTTP_RETRIES + 1} attempts: {endpoint}")
        raise last_error

    # ==================== Connection Test ====================

    async def test_connection(self) -> Dict[str, Any]:
        try:
            result = await self._call("users/me")
            user = result.get("data") or {}
            return {
                "ok": True,
                "user": user.get("name"),
                "company": user.get("company_name"),
                "message": "Connection successful!",
            }
        except PipedriveAPIError as e:
            return {"ok": False, "message": str(e)}

    # ==================== Deals ====================

    async def get_deal(self, deal_id: int) -> Dict[str, Any]:
        result = await self._call(f"deals/{deal_id}")
        return result.get("data") or {}

    async def get_deal_flow(self, deal_id: int) -> List[Dict[str, Any]]:
        """Every change-log item for a deal, across all pages."""
        items: List[Dict[str, Any]] = []
        start = 0
        while True:
            result = await self._call(
                f"deals/{deal_id}/flow", {"start": start, "limit": FLOW_PAGE_SIZE}
            )
            items.extend(result.get("data") or [])
            pagination = (result.get("additional_data") or {}).get("pagination") or {}
            if not pagination.get("more_items_in_collection"):
                break
            start = pagination.get("next_start", start + FLOW_PAGE_SIZE)
        return items

    async def list_deals_page(
        self, start: int = 0, limit: int = DEALS_PAGE_SIZE, sort: str = "update_time DESC"
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        """One page of deals. Returns (deals, next_start or None)."""
        result = await self._call("deals", {
            "start": start,
            "limit": limit,
            "status": "all_not_deleted",
            "sort": sort,
        })
        deals = result.get("data") or []
        pagination = (result.get("additional_data") or {}).get("pagination") or {}
        next_start = pagination.get("next_start") if pagination.get("more_items_in_collection") else None
        return deals, next_start
