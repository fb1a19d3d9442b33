"""Pydantic models for pump.fun frontend API responses.

The API is loosely typed: numbers arrive as ints, floats, strings or garbage,
timestamps in seconds or milliseconds. Every numeric field goes through a
coercion that yields a finite float (or ``None``) and never raises, so a
single bad field cannot fail a whole payload.
"""

import math
from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, BeforeValidator, Field

# Epoch values below this are seconds, not milliseconds (~2001-09 in ms)
_MS_THRESHOLD = 1e12


def to_finite_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return number if math.isfinite(number) else None


def to_epoch_ms(value: Any) -> int | None:
    """Epoch seconds, epoch ms or ISO-8601 → epoch ms."""
    number = to_finite_float(value)
    if number is None and isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return int(parsed.timestamp() * 1000)
    if number is None or number <= 0:
        return None
    if number < _MS_THRESHOLD:
        number *= 1000
    return int(number)


def _to_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _to_lower_str(value: Any) -> str | None:
    text = _to_str(value)
    return text.lower() if text else None


FiniteFloat = Annotated[float | None, BeforeValidator(to_finite_float)]
EpochMs = Annotated[int | None, BeforeValidator(to_epoch_ms)]
OptionalStr = Annotated[str | None, BeforeValidator(_to_str)]


class PumpfunCoin(BaseModel):
    """Response from GET /coins/{mint}.

    Unknown keys are kept (``model_extra``) so the full payload can be stored.
    """

    mint: OptionalStr = None
    creator: OptionalStr = None
    decimals: FiniteFloat = None
    total_supply: FiniteFloat = None
    created_timestamp: EpochMs = None
    usd_market_cap: FiniteFloat = None

    model_config = {"extra": "allow"}


class PumpfunCandle(BaseModel):
    """Single 1-minute OHLC bar from /coins/{mint}/candles."""

    timestamp: EpochMs = None
    open: FiniteFloat = None
    high: FiniteFloat = None
    low: FiniteFloat = None
    close: FiniteFloat = None

    model_config = {"extra": "ignore"}

    @property
    def price(self) -> float | None:
        """Close if usable, otherwise open."""
        return self.close if self.close is not None else self.open


class PumpfunTrade(BaseModel):
    """Single fill from /coins/{mint}/trades/batch."""

    type: Annotated[str | None, BeforeValidator(_to_lower_str)] = None  # "buy" or "sell"
    timestamp: EpochMs = None
    price: FiniteFloat = Field(
        None, validation_alias=AliasChoices("priceUsd", "price_usd", "price")
    )
    user: OptionalStr = Field(
        None, validation_alias=AliasChoices("userAddress", "user")
    )
    signature: OptionalStr = None

    model_config = {"extra": "ignore"}

    @property
    def is_buy(self) -> bool:
        return self.type == "buy"
