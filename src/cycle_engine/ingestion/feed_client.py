"""
REST client for the sports results / fixtures provider.

One request is one attempt: failures are classified and raised so the
caller can apply its own retry budget (the collector budgets per fixture).

    - 429             -> RateLimitedError       (transient)
    - 5xx, timeouts,
      connection drop -> TransientNetworkError  (transient)
    - other 4xx       -> FeedError              (permanent)
"""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Optional

import aiohttp

from cycle_engine.errors import CycleEngineError, RateLimitedError, TransientNetworkError
from cycle_engine.utils.clock import Clock, utc_now

from .models import FeedFixture, FeedOdds, FeedResult

logger = logging.getLogger(__name__)


class FeedError(CycleEngineError):
    """Permanent provider error (bad request, unknown fixture, auth)."""

    kind = "FeedError"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ResultsFeedClient:
    """
    Async client for the results feed.

    Usage:
        async with ResultsFeedClient(base_url, api_key) as feed:
            result = await feed.get_result("18535517")
            fixtures = await feed.list_fixtures(start, end)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: Optional[aiohttp.ClientSession] = None,
        rate_limit: float = 5.0,  # requests per second
        timeout: float = 15.0,
        clock: Clock = utc_now,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session
        self._owns_session = session is None
        self._rate_limit = rate_limit
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._clock = clock

        self._request_times: list[float] = []
        self._rate_lock = asyncio.Lock()

    async def __aenter__(self) -> "ResultsFeedClient":
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={"X-Api-Key": self._api_key, "Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def _rate_limit_wait(self) -> None:
        """Sliding one-second window."""
        async with self._rate_lock:
            now = time.monotonic()
            self._request_times = [t for t in self._request_times if now - t < 1.0]
            if len(self._request_times) >= self._rate_limit:
                wait_time = 1.0 - (now - self._request_times[0])
                if wait_time > 0:
                    await asyncio.sleep(wait_time)
            self._request_times.append(time.monotonic())

    async def _get(self, path: str, params: Optional[dict] = None) -> Any:
        session = self._ensure_session()
        url = f"{self._base_url}{path}"
        await self._rate_limit_wait()

        try:
            async with session.get(url, params=params) as response:
                if response.status == 429:
                    raise RateLimitedError(f"Rate limited on {path}", status_code=429)
                if response.status >= 500:
                    text = await response.text()
                    raise TransientNetworkError(
                        f"Server error {response.status} on {path}: {text[:200]}",
                        status_code=response.status,
                    )
                if response.status >= 400:
                    text = await response.text()
                    raise FeedError(
                        f"Feed error {response.status} on {path}: {text[:200]}",
                        status_code=response.status,
                    )
                return await response.json()
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            raise TransientNetworkError(f"Timeout on {path}") from None
        except aiohttp.ContentTypeError as e:
            raise TransientNetworkError(f"Non-JSON response on {path}: {e}") from e
        except aiohttp.ClientError as e:
            raise TransientNetworkError(f"Request failed on {path}: {e}") from e

    # =========================================================================
    # Results
    # =========================================================================

    async def get_result(self, fixture_id: str) -> FeedResult:
        """Status and score of one fixture."""
        data = await self._get(f"/fixtures/{fixture_id}")
        if not isinstance(data, dict):
            raise FeedError(f"Unexpected payload for fixture {fixture_id}: {type(data).__name__}")
        return FeedResult.from_payload(fixture_id, data)

    # =========================================================================
    # Fixtures & odds
    # =========================================================================

    async def list_fixtures(self, start: datetime, end: datetime) -> list[FeedFixture]:
        """Fixtures with kickoff in [start, end]. Unparseable entries are skipped."""
        data = await self._get(
            "/fixtures", params={"from": start.isoformat(), "to": end.isoformat()}
        )
        items = data.get("fixtures", []) if isinstance(data, dict) else data

        fixtures = []
        for item in items or []:
            try:
                fixtures.append(FeedFixture.from_payload(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unparseable fixture {item!r:.120}: {e}")
        return fixtures

    async def get_odds(self, fixture_id: str) -> list[FeedOdds]:
        """Current 1X2 and OU2.5 odds. Markets the provider does not price are omitted."""
        data = await self._get(f"/fixtures/{fixture_id}/odds")
        if not isinstance(data, dict):
            return []
        return FeedOdds.from_payload(fixture_id, data, fallback_time=self._clock())

    async def ping(self) -> bool:
        """Cheap reachability probe for health checks."""
        try:
            now = self._clock()
            await self._get("/fixtures", params={"from": now.isoformat(), "to": now.isoformat()})
            return True
        except CycleEngineError as e:
            logger.warning(f"Results feed ping failed: {e}")
            return False
