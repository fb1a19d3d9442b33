"""Pump.fun frontend API client: coin metadata, 1m candles, creator trades.

The provider throttles aggressively and sits behind an anti-bot layer, so:
- throttling (429/403/503 or a "rate limited" body) is retried with
  exponential backoff up to a fixed attempt ceiling, then RateLimitError;
- timeouts/connection errors share the same schedule, then UpstreamError;
- any other non-success status fails immediately with UpstreamError;
- non-JSON bodies (challenge pages) fail immediately, never retried.
"""

import asyncio
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from src.enricher.pumpfun import endpoints
from src.enricher.pumpfun.exceptions import (
    MalformedResponseError,
    RateLimitError,
    UpstreamError,
)
from src.enricher.pumpfun.models import PumpfunCandle, PumpfunCoin, PumpfunTrade
from src.enricher.rate_limiter import RateLimiter, backoff_delay

THROTTLE_STATUS_CODES = frozenset({403, 429, 503})
RATE_LIMIT_MARKERS = ("rate limit", "ratelimit", "too many requests")
EXCERPT_LEN = 200


def _mentions_rate_limit(text: Any) -> bool:
    if not isinstance(text, str):
        return False
    lowered = text[:1000].lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)


def _excerpt(resp: httpx.Response) -> str:
    try:
        return resp.text[:EXCERPT_LEN]
    except UnicodeDecodeError:
        return ""


class PumpfunClient:
    """Async HTTP client for the pump.fun frontend API (free, no key)."""

    def __init__(
        self,
        base_url: str = endpoints.BASE_URL,
        *,
        rate_limiter: RateLimiter | None = None,
        max_rps: float = 2.0,
        timeout: float = 30.0,
        max_attempts: int = 5,
        backoff_base: float = 2.0,
        backoff_max: float = 60.0,
        candle_limit: int = 1000,
        trades_limit: int = 100,
    ) -> None:
        self._rate_limiter = rate_limiter or RateLimiter(max_rps)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={
                "Accept": "application/json",
                "Accept-Language": "en-US,en;q=0.9",
                "Origin": "https://pump.fun",
                "Referer": "https://pump.fun/",
            },
        )
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._candle_limit = candle_limit
        self._trades_limit = trades_limit
        self._sleep = asyncio.sleep

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Execute a paced request; returns the decoded JSON body."""
        for attempt in range(self._max_attempts):
            is_last = attempt == self._max_attempts - 1
            await self._rate_limiter.acquire()

            try:
                resp = await self._client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                if not is_last:
                    delay = backoff_delay(attempt, self._backoff_base, self._backoff_max)
                    logger.debug(
                        f"[PUMPFUN] {type(e).__name__}, retry {attempt + 1} in {delay}s: {path}"
                    )
                    await self._sleep(delay)
                    continue
                raise UpstreamError(
                    f"{type(e).__name__} after {self._max_attempts} attempts: {path}"
                ) from e

            throttled = resp.status_code in THROTTLE_STATUS_CODES
            data: Any = None
            if not throttled and resp.is_success:
                try:
                    data = resp.json()
                except ValueError as e:
                    if not _mentions_rate_limit(resp.text):
                        raise MalformedResponseError(
                            f"Non-JSON body (HTTP {resp.status_code}): {path}",
                            status=resp.status_code,
                            excerpt=_excerpt(resp),
                        ) from e
                    throttled = True
                else:
                    throttled = isinstance(data, dict) and _mentions_rate_limit(
                        data.get("error") or data.get("message")
                    )
            elif not throttled:
                throttled = _mentions_rate_limit(resp.text)

            if throttled:
                if not is_last:
                    delay = backoff_delay(attempt, self._backoff_base, self._backoff_max)
                    logger.debug(
                        f"[PUMPFUN] {resp.status_code} rate limited, "
                        f"retry {attempt + 1} in {delay}s: {path}"
                    )
                    await self._sleep(delay)
                    continue
                raise RateLimitError(
                    f"Rate limited after {self._max_attempts} attempts: {path}",
                    status=resp.status_code,
                    excerpt=_excerpt(resp),
                )

            if not resp.is_success:
                excerpt = _excerpt(resp)
                raise UpstreamError(
                    f"HTTP {resp.status_code}: {path}: {excerpt}",
                    status=resp.status_code,
                    excerpt=excerpt,
                )

            return data

        raise UpstreamError(f"Request failed after retries: {path}")

    # === Public endpoints ===

    async def get_token(self, mint: str) -> PumpfunCoin:
        """Coin metadata: creator, decimals, total supply, creation time, market cap."""
        data = await self._request("GET", endpoints.COIN.format(mint=quote(mint, safe="")))
        if not isinstance(data, dict):
            raise MalformedResponseError(
                f"Expected object for coin {mint[:12]}, got {type(data).__name__}"
            )
        return PumpfunCoin.model_validate(data)

    async def get_candles(self, mint: str, created_ts: int | None) -> list[PumpfunCandle]:
        """One page of 1m candles anchored at creation, ascending by timestamp.

        Bars without a timestamp or any usable price are dropped.
        """
        params: dict[str, Any] = {
            "interval": "1m",
            "limit": self._candle_limit,
            "currency": "USD",
        }
        if created_ts is not None:
            params["createdTs"] = created_ts
        data = await self._request(
            "GET", endpoints.CANDLES.format(mint=quote(mint, safe="")), params=params
        )
        if isinstance(data, dict):
            data = data.get("candles", [])
        items = data if isinstance(data, list) else []

        candles: list[PumpfunCandle] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            candle = PumpfunCandle.model_validate(item)
            if candle.timestamp is None or candle.price is None:
                continue
            candles.append(candle)
        candles.sort(key=lambda c: c.timestamp)
        return candles

    async def get_creator_buys(
        self,
        mint: str,
        creator: str,
        after_ts: int | None,
        before_ts: int | None,
    ) -> list[PumpfunTrade]:
        """Creator's buys of this coin inside [after_ts, before_ts], ascending."""
        payload: dict[str, Any] = {
            "userAddresses": [creator],
            "limit": self._trades_limit,
        }
        if after_ts is not None:
            payload["afterTs"] = after_ts
        if before_ts is not None:
            payload["beforeTs"] = before_ts
        data = await self._request(
            "POST",
            endpoints.TRADES_BATCH.format(mint=quote(mint, safe="")),
            json=payload,
        )

        # Response maps address → trades; tolerate a bare list too.
        # Only the creator's entry is read, and fills tagged with another
        # wallet are dropped.
        if isinstance(data, dict):
            raw = data.get(creator)
        else:
            raw = data
        items = raw if isinstance(raw, list) else []

        buys: list[PumpfunTrade] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            trade = PumpfunTrade.model_validate(item)
            if trade.user is not None and trade.user != creator:
                continue
            if trade.is_buy and trade.timestamp is not None:
                buys.append(trade)
        buys.sort(key=lambda t: t.timestamp)
        return buys
