"""Tests for the pump.fun client: retry schedule, failure classes, parsing."""

from unittest.mock import AsyncMock

import httpx
import pytest

from src.enricher.pumpfun.client import PumpfunClient
from src.enricher.pumpfun.exceptions import (
    MalformedResponseError,
    RateLimitError,
    UpstreamError,
)

_REQUEST = httpx.Request("GET", "https://frontend-api-v3.pump.fun/coins/X")


def _json(status: int, payload) -> httpx.Response:
    return httpx.Response(status, json=payload, request=_REQUEST)


def _text(status: int, body: str) -> httpx.Response:
    return httpx.Response(status, text=body, request=_REQUEST)


def _client(*responses, **kwargs) -> PumpfunClient:
    """Client whose transport returns (or raises) ``responses`` in order."""
    client = PumpfunClient(max_rps=100.0, **kwargs)
    client._client = AsyncMock()
    client._client.request = AsyncMock(side_effect=list(responses))
    client._sleep = AsyncMock()
    return client


def _sleeps(client: PumpfunClient) -> list[float]:
    return [c.args[0] for c in client._sleep.call_args_list]


class TestRetrySchedule:
    @pytest.mark.asyncio
    async def test_endless_throttling_bounded(self) -> None:
        client = _client(*[_text(429, "slow down")] * 10, max_attempts=5)

        with pytest.raises(RateLimitError) as exc_info:
            await client.get_token("MintA")

        assert client._client.request.await_count == 5
        assert _sleeps(client) == [2, 4, 8, 16]
        assert exc_info.value.status == 429

    @pytest.mark.asyncio
    async def test_sleeps_capped_and_non_decreasing(self) -> None:
        client = _client(
            *[_text(503, "")] * 6, max_attempts=6, backoff_base=2.0, backoff_max=10.0
        )

        with pytest.raises(RateLimitError):
            await client.get_token("MintA")

        sleeps = _sleeps(client)
        assert sleeps == [2, 4, 8, 10, 10]
        assert all(a <= b for a, b in zip(sleeps, sleeps[1:]))

    @pytest.mark.asyncio
    async def test_throttle_then_success(self) -> None:
        client = _client(
            _text(403, "Forbidden"),
            _json(200, {"mint": "MintA", "creator": "C1", "total_supply": 1e15}),
        )

        coin = await client.get_token("MintA")

        assert coin.creator == "C1"
        assert client._client.request.await_count == 2
        assert _sleeps(client) == [2]

    @pytest.mark.asyncio
    async def test_rate_limit_message_in_success_body(self) -> None:
        client = _client(
            _json(200, {"error": "Rate limit exceeded"}),
            _json(200, {"mint": "MintA"}),
        )

        coin = await client.get_token("MintA")

        assert coin.mint == "MintA"
        assert client._client.request.await_count == 2

    @pytest.mark.asyncio
    async def test_rate_limit_text_on_other_status(self) -> None:
        client = _client(_text(400, "Too Many Requests"), _json(200, {"mint": "MintA"}))

        await client.get_token("MintA")

        assert client._client.request.await_count == 2

    @pytest.mark.asyncio
    async def test_timeouts_retried_then_upstream_error(self) -> None:
        client = _client(*[httpx.ReadTimeout("timed out")] * 3, max_attempts=3)

        with pytest.raises(UpstreamError) as exc_info:
            await client.get_token("MintA")

        assert not isinstance(exc_info.value, RateLimitError)
        assert client._client.request.await_count == 3
        assert _sleeps(client) == [2, 4]

    @pytest.mark.asyncio
    async def test_connect_error_recovers(self) -> None:
        client = _client(httpx.ConnectError("refused"), _json(200, {"mint": "MintA"}))

        coin = await client.get_token("MintA")

        assert coin.mint == "MintA"


class TestFailureClasses:
    @pytest.mark.asyncio
    async def test_server_error_not_retried(self) -> None:
        client = _client(_text(500, "internal error " * 40))

        with pytest.raises(UpstreamError) as exc_info:
            await client.get_token("MintA")

        assert client._client.request.await_count == 1
        assert exc_info.value.status == 500
        assert len(exc_info.value.excerpt) == 200

    @pytest.mark.asyncio
    async def test_not_found(self) -> None:
        client = _client(_json(404, {"message": "Not found"}))

        with pytest.raises(UpstreamError) as exc_info:
            await client.get_token("MintA")

        assert exc_info.value.status == 404
        assert not isinstance(exc_info.value, (RateLimitError, MalformedResponseError))

    @pytest.mark.asyncio
    async def test_non_json_body_not_retried(self) -> None:
        client = _client(_text(200, "<html>Just a moment...</html>"))

        with pytest.raises(MalformedResponseError):
            await client.get_token("MintA")

        assert client._client.request.await_count == 1
        client._sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_coin_payload_must_be_object(self) -> None:
        client = _client(_json(200, ["not", "a", "coin"]))

        with pytest.raises(MalformedResponseError):
            await client.get_token("MintA")


class TestEndpoints:
    @pytest.mark.asyncio
    async def test_get_token_path(self) -> None:
        client = _client(_json(200, {"mint": "MintA"}))

        await client.get_token("MintA")

        method, path = client._client.request.call_args.args
        assert method == "GET"
        assert path == "/coins/MintA"

    @pytest.mark.asyncio
    async def test_candles_sorted_and_filtered(self) -> None:
        payload = {
            "candles": [
                {"timestamp": 1_700_000_120, "open": 2, "close": 3},
                {"timestamp": 1_700_000_000, "open": 1, "close": 1.5},
                {"timestamp": None, "close": 9},
                {"timestamp": 1_700_000_060, "open": "x", "close": "y"},
                "garbage",
                {"timestamp": 1_700_000_060, "open": 1.2, "close": None},
            ]
        }
        client = _client(_json(200, payload), candle_limit=500)

        candles = await client.get_candles("MintA", 1_700_000_000_000)

        assert [c.timestamp for c in candles] == [
            1_700_000_000_000,
            1_700_000_060_000,
            1_700_000_120_000,
        ]
        assert [c.price for c in candles] == [1.5, 1.2, 3.0]
        params = client._client.request.call_args.kwargs["params"]
        assert params == {
            "interval": "1m",
            "limit": 500,
            "currency": "USD",
            "createdTs": 1_700_000_000_000,
        }

    @pytest.mark.asyncio
    async def test_candles_bare_list(self) -> None:
        client = _client(_json(200, [{"timestamp": 1_700_000_000_000, "close": 1}]))

        candles = await client.get_candles("MintA", None)

        assert len(candles) == 1
        assert "createdTs" not in client._client.request.call_args.kwargs["params"]

    @pytest.mark.asyncio
    async def test_creator_buys_filtered_and_sorted(self) -> None:
        payload = {
            "Creator1": [
                {"type": "sell", "timestamp": 1_700_000_005, "priceUsd": 0.2},
                {"type": "buy", "timestamp": 1_700_000_030, "priceUsd": 0.15},
                {"type": "buy", "timestamp": 1_700_000_010, "priceUsd": 0.1},
                {"type": "buy", "priceUsd": 0.1},
            ],
            "cursor": "abc",
        }
        client = _client(_json(200, payload), trades_limit=50)

        buys = await client.get_creator_buys(
            "MintA", "Creator1", 1_700_000_000_000, 1_700_003_600_000
        )

        assert [b.timestamp for b in buys] == [1_700_000_010_000, 1_700_000_030_000]
        assert all(b.is_buy for b in buys)

        call = client._client.request.call_args
        assert call.args == ("POST", "/coins/MintA/trades/batch")
        assert call.kwargs["json"] == {
            "userAddresses": ["Creator1"],
            "limit": 50,
            "afterTs": 1_700_000_000_000,
            "beforeTs": 1_700_003_600_000,
        }

    @pytest.mark.asyncio
    async def test_creator_buys_empty(self) -> None:
        client = _client(_json(200, {}))

        assert await client.get_creator_buys("MintA", "Creator1", None, None) == []

    @pytest.mark.asyncio
    async def test_creator_buys_ignore_other_wallets(self) -> None:
        payload = {
            "Creator1": [
                {"type": "buy", "timestamp": 1_700_000_030, "priceUsd": 0.15, "userAddress": "Creator1"},
                {"type": "buy", "timestamp": 1_700_000_001, "priceUsd": 0.01, "userAddress": "Sniper7"},
            ],
            "Sniper7": [{"type": "buy", "timestamp": 1_700_000_000, "priceUsd": 0.01}],
            "errors": [{"type": "buy", "timestamp": 1_700_000_002, "priceUsd": 0.02}],
        }
        client = _client(_json(200, payload))

        buys = await client.get_creator_buys("MintA", "Creator1", None, None)

        assert [b.timestamp for b in buys] == [1_700_000_030_000]
        assert buys[0].user == "Creator1"

    @pytest.mark.asyncio
    async def test_creator_buys_bare_list(self) -> None:
        client = _client(_json(200, [{"type": "buy", "timestamp": 1_700_000_010, "priceUsd": 0.1}]))

        buys = await client.get_creator_buys("MintA", "Creator1", None, None)

        assert len(buys) == 1
