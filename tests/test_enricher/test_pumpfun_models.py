"""Tests for pump.fun payload coercion."""

import math

from src.enricher.pumpfun.models import (
    PumpfunCandle,
    PumpfunCoin,
    PumpfunTrade,
    to_epoch_ms,
    to_finite_float,
)


class TestCoercion:
    def test_finite_float_accepts_numbers_and_strings(self) -> None:
        assert to_finite_float(3) == 3.0
        assert to_finite_float("0.25") == 0.25
        assert to_finite_float(" 1e3 ") == 1000.0

    def test_finite_float_rejects_garbage(self) -> None:
        for value in (None, "", "abc", [], {}, True, float("nan"), float("inf"), "-inf"):
            assert to_finite_float(value) is None

    def test_epoch_seconds_scaled_to_ms(self) -> None:
        assert to_epoch_ms(1_700_000_000) == 1_700_000_000_000

    def test_epoch_ms_kept(self) -> None:
        assert to_epoch_ms(1_700_000_000_123) == 1_700_000_000_123
        assert to_epoch_ms("1700000000123") == 1_700_000_000_123

    def test_iso_string(self) -> None:
        assert to_epoch_ms("2023-11-14T22:13:20Z") == 1_700_000_000_000
        # Naive ISO is read as UTC
        assert to_epoch_ms("2023-11-14T22:13:20") == 1_700_000_000_000

    def test_unusable_timestamps(self) -> None:
        for value in (None, 0, -5, "not a date", float("nan")):
            assert to_epoch_ms(value) is None


class TestPumpfunCoin:
    def test_bad_fields_do_not_fail_payload(self) -> None:
        coin = PumpfunCoin.model_validate(
            {
                "mint": "MintA",
                "creator": "Creator1",
                "decimals": "six",
                "total_supply": "not-a-number",
                "created_timestamp": 1_700_000_000,
                "usd_market_cap": "NaN",
                "name": "Example",
            }
        )
        assert coin.creator == "Creator1"
        assert coin.decimals is None
        assert coin.total_supply is None
        assert coin.usd_market_cap is None
        assert coin.created_timestamp == 1_700_000_000_000

    def test_extra_keys_kept_for_raw_payload(self) -> None:
        coin = PumpfunCoin.model_validate({"mint": "MintA", "symbol": "EX"})
        assert coin.model_dump(mode="json")["symbol"] == "EX"

    def test_blank_creator_is_none(self) -> None:
        assert PumpfunCoin(creator="   ").creator is None


class TestPumpfunCandle:
    def test_close_preferred(self) -> None:
        candle = PumpfunCandle.model_validate({"timestamp": 1, "open": "1", "close": "2"})
        assert candle.price == 2.0

    def test_open_when_close_unusable(self) -> None:
        candle = PumpfunCandle.model_validate({"timestamp": 1, "open": 1.5, "close": "inf"})
        assert candle.price == 1.5

    def test_no_price(self) -> None:
        candle = PumpfunCandle.model_validate({"timestamp": 1, "open": None, "close": "x"})
        assert candle.price is None


class TestPumpfunTrade:
    def test_buy_with_usd_price_alias(self) -> None:
        trade = PumpfunTrade.model_validate(
            {"type": "BUY", "timestamp": 1_700_000_000, "priceUsd": "0.0001", "userAddress": "C"}
        )
        assert trade.is_buy is True
        assert trade.timestamp == 1_700_000_000_000
        assert math.isclose(trade.price, 0.0001)
        assert trade.user == "C"

    def test_sell(self) -> None:
        trade = PumpfunTrade.model_validate({"type": "sell", "timestamp": 1})
        assert trade.is_buy is False

    def test_missing_type_is_not_buy(self) -> None:
        assert PumpfunTrade.model_validate({"timestamp": 1}).is_buy is False
