"""Metric derivation for an enriched token. Pure, no I/O.

Baseline is the creator's first buy (t0, p0). From the window start (t0
rounded up to the next whole minute) the engine scans 1m candles for the
highest market cap inside 1/5/10 minute windows and over the whole page,
and expresses each as a multiple and percentage of the baseline market cap.

Windows with no candles fall back to the baseline market cap (multiple 1.0,
0%), meaning "no observed appreciation" rather than "unknown". A wider
window never reports less than the narrower one it contains, so
ath_1m <= ath_5m <= ath_10m <= ath_all holds for every input.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass, field

from src.enricher.exceptions import InsufficientDataError, NoBaselineError
from src.enricher.pumpfun.models import PumpfunCandle, PumpfunCoin, PumpfunTrade

DEFAULT_DECIMALS = 6
MAX_DECIMALS = 255  # SPL mint decimals is a u8
MINUTE_MS = 60_000

# (column key, window length in minutes; None = open-ended after window start)
WINDOWS: tuple[tuple[str, int | None], ...] = (
    ("1m", 1),
    ("5m", 5),
    ("10m", 10),
    ("all", None),
)

MULTIPLE_PRECISION = 3
PERCENT_PRECISION = 2


@dataclass(frozen=True)
class WindowAth:
    """Highest market cap inside one window after the baseline."""

    minutes: int | None
    mcap: float | None
    at_ms: int | None  # None when the baseline fallback was used
    multiple: float | None
    percent: float | None


@dataclass(frozen=True)
class TokenMetrics:
    creator: str | None
    decimals: int
    supply_display: float
    t0_ms: int
    p0: float | None
    start_mcap: float | None
    window_start_ms: int
    price: float | None
    market_cap: float | None
    fdv: float | None
    windows: dict[str, WindowAth] = field(default_factory=dict)

    @property
    def ath_1m(self) -> WindowAth:
        return self.windows["1m"]

    @property
    def ath_5m(self) -> WindowAth:
        return self.windows["5m"]

    @property
    def ath_10m(self) -> WindowAth:
        return self.windows["10m"]

    @property
    def ath_all(self) -> WindowAth:
        return self.windows["all"]


def _is_finite(value: float | None) -> bool:
    return value is not None and math.isfinite(value)


def effective_decimals(decimals: float | None) -> int:
    """Decimals if a non-negative integer in u8 range, else 6."""
    if (
        not _is_finite(decimals)
        or decimals < 0
        or decimals > MAX_DECIMALS
        or decimals != int(decimals)
    ):
        return DEFAULT_DECIMALS
    return int(decimals)


def display_supply(total_supply: float | None, decimals: float | None) -> float:
    """Raw supply scaled by decimals."""
    if not _is_finite(total_supply) or total_supply <= 0:
        raise InsufficientDataError(f"total_supply is not a positive number: {total_supply!r}")
    return total_supply / (10.0 ** effective_decimals(decimals))


def ceil_to_minute(ts_ms: int) -> int:
    return -(-ts_ms // MINUTE_MS) * MINUTE_MS


def find_baseline(creator_buys: Sequence[PumpfunTrade]) -> PumpfunTrade:
    """Earliest buy; ties keep the first one seen."""
    buys = [t for t in creator_buys if t.is_buy and t.timestamp is not None]
    if not buys:
        raise NoBaselineError("no creator buy in detection window")
    return min(buys, key=lambda t: t.timestamp)


def ratios(ath_mcap: float | None, start_mcap: float | None) -> tuple[float | None, float | None]:
    """(multiple, percent) of ATH vs baseline; None when the baseline is unusable."""
    if ath_mcap is None or not _is_finite(start_mcap) or start_mcap <= 0:
        return None, None
    multiple = ath_mcap / start_mcap
    if not math.isfinite(multiple):
        return None, None
    return (
        round(multiple, MULTIPLE_PRECISION),
        round((multiple - 1) * 100, PERCENT_PRECISION),
    )


def window_aths(
    candles: Sequence[PumpfunCandle],
    *,
    supply: float,
    window_start_ms: int,
    start_mcap: float | None,
) -> dict[str, WindowAth]:
    ordered = sorted(
        (
            c
            for c in candles
            if c.timestamp is not None and c.timestamp >= window_start_ms and c.price is not None
        ),
        key=lambda c: c.timestamp,
    )

    result: dict[str, WindowAth] = {}
    carried: tuple[float | None, int | None] | None = None
    for key, minutes in WINDOWS:
        window_end = None if minutes is None else window_start_ms + minutes * MINUTE_MS

        best_mcap: float | None = None
        best_at: int | None = None
        for candle in ordered:
            if window_end is not None and candle.timestamp > window_end:
                break
            mcap = candle.price * supply
            if not math.isfinite(mcap):
                continue
            # Strict '>' keeps the first maximum on ties
            if best_mcap is None or mcap > best_mcap:
                best_mcap, best_at = mcap, candle.timestamp

        if best_mcap is None:
            best_mcap, best_at = start_mcap, None

        if carried is not None and carried[0] is not None:
            if best_mcap is None or carried[0] > best_mcap:
                best_mcap, best_at = carried

        multiple, percent = ratios(best_mcap, start_mcap)
        result[key] = WindowAth(
            minutes=minutes,
            mcap=best_mcap,
            at_ms=best_at,
            multiple=multiple,
            percent=percent,
        )
        carried = (best_mcap, best_at)
    return result


def current_price(
    coin: PumpfunCoin, candles: Sequence[PumpfunCandle], supply: float
) -> tuple[float | None, float | None]:
    """(price, market_cap): provider market cap first, else last candle."""
    if _is_finite(coin.usd_market_cap) and coin.usd_market_cap > 0 and supply > 0:
        return coin.usd_market_cap / supply, coin.usd_market_cap

    priced = [c for c in candles if c.timestamp is not None and c.price is not None]
    if not priced:
        return None, None
    last = max(priced, key=lambda c: c.timestamp)
    return last.price, last.price * supply


def compute_metrics(
    coin: PumpfunCoin,
    creator_buys: Sequence[PumpfunTrade],
    candles: Sequence[PumpfunCandle],
) -> TokenMetrics:
    """Derive baseline, windowed ATHs and current price for one token.

    Raises InsufficientDataError when supply is unusable and NoBaselineError
    when the creator has no qualifying buy.
    """
    supply = display_supply(coin.total_supply, coin.decimals)

    baseline = find_baseline(creator_buys)
    t0_ms = baseline.timestamp
    p0 = baseline.price
    start_mcap = p0 * supply if _is_finite(p0) else None

    window_start_ms = ceil_to_minute(t0_ms)
    windows = window_aths(
        candles,
        supply=supply,
        window_start_ms=window_start_ms,
        start_mcap=start_mcap,
    )

    price, market_cap = current_price(coin, candles, supply)
    fdv = price * supply if price is not None else None

    return TokenMetrics(
        creator=coin.creator,
        decimals=effective_decimals(coin.decimals),
        supply_display=supply,
        t0_ms=t0_ms,
        p0=p0,
        start_mcap=start_mcap,
        window_start_ms=window_start_ms,
        price=price,
        market_cap=market_cap,
        fdv=fdv,
        windows=windows,
    )
