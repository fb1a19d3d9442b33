"""Enrichment worker loop: claim → fetch → compute → persist.

One token at a time, strictly sequential within a token (coin → creator buys
→ candles → metrics → write-back). Horizontal scaling is done by running
more processes; the skip-locked claim keeps them apart.

Every failure is classified into a state transition:
  RateLimitError          → retry, escalating cooldown (CooldownState)
  UpstreamError           → retry, normal cooldown
  NoBaselineError         → retry, normal cooldown (creator hasn't bought yet)
  MalformedResponseError  → err, long cooldown
  InsufficientDataError   → err, long cooldown
  anything else           → err, long cooldown, logged with traceback
Database failures abandon the claim (restored to its prior status) and pause.
"""

import asyncio
import random
import time

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from src.enricher.exceptions import InsufficientDataError, NoBaselineError
from src.enricher.metric_engine import TokenMetrics, compute_metrics, display_supply
from src.enricher.metrics import EnrichmentMetrics
from src.enricher.metrics import metrics as pipeline_metrics
from src.enricher.pumpfun.client import PumpfunClient
from src.enricher.pumpfun.exceptions import (
    MalformedResponseError,
    RateLimitError,
    UpstreamError,
)
from src.enricher.pumpfun.models import PumpfunCandle, PumpfunCoin, PumpfunTrade
from src.enricher.queue_store import (
    STATUS_ERR,
    STATUS_OK,
    STATUS_RETRY,
    ClaimedToken,
    QueueStore,
    datetime_to_ms,
    ms_to_datetime,
)
from src.enricher.rate_limiter import CooldownState

REASON_MAX_LEN = 200

# Errors that mean "the database is unhappy", not "this token is bad"
PERSISTENCE_ERRORS = (SQLAlchemyError, OSError)


def _reason(tag: str, exc: BaseException) -> str:
    text = str(exc) or type(exc).__name__
    return f"{tag}: {text}"[:REASON_MAX_LEN]


class EnrichmentWorker:
    """Sequential enrichment loop for one process."""

    def __init__(
        self,
        store: QueueStore,
        client: PumpfunClient,
        *,
        cooldown: CooldownState | None = None,
        metrics: EnrichmentMetrics | None = None,
        retry_cooldown_sec: float = 15 * 60,
        err_cooldown_sec: float = 6 * 60 * 60,
        baseline_window_sec: float = 60 * 60,
        pause_sec: float = 3.0,
        pause_jitter_sec: float = 0.0,
        idle_sec: float = 15.0,
        db_error_pause_sec: float = 5.0,
        stuck_processing_sec: float = 15 * 60,
    ) -> None:
        self._store = store
        self._client = client
        self._cooldown = cooldown or CooldownState(5 * 60, 2 * 60 * 60)
        self._metrics = metrics or pipeline_metrics
        self._retry_cooldown_sec = retry_cooldown_sec
        self._err_cooldown_sec = err_cooldown_sec
        self._baseline_window_ms = int(baseline_window_sec * 1000)
        self._pause_sec = pause_sec
        self._pause_jitter_sec = pause_jitter_sec
        self._idle_sec = idle_sec
        self._db_error_pause_sec = db_error_pause_sec
        self._stuck_processing_sec = stuck_processing_sec
        self._sleep = asyncio.sleep

    @property
    def cooldown(self) -> CooldownState:
        return self._cooldown

    async def _fetch(
        self, claim: ClaimedToken
    ) -> tuple[PumpfunCoin, list[PumpfunTrade], list[PumpfunCandle]]:
        coin = await self._client.get_token(claim.mint)

        # Provider fields win; discovery metadata fills gaps
        fallback: dict = {}
        if coin.creator is None and claim.creator:
            fallback["creator"] = claim.creator
        if coin.total_supply is None and claim.total_supply is not None:
            fallback["total_supply"] = claim.total_supply
        if coin.decimals is None and claim.decimals is not None:
            fallback["decimals"] = float(claim.decimals)
        if coin.created_timestamp is None and claim.created_at is not None:
            fallback["created_timestamp"] = datetime_to_ms(claim.created_at)
        if fallback:
            coin = coin.model_copy(update=fallback)

        # Fail fast before spending two more requests on a token we can't use
        display_supply(coin.total_supply, coin.decimals)
        if not coin.creator:
            raise NoBaselineError("creator address unknown")

        created_ts = coin.created_timestamp
        before_ts = created_ts + self._baseline_window_ms if created_ts is not None else None
        buys = await self._client.get_creator_buys(claim.mint, coin.creator, created_ts, before_ts)
        if not buys:
            raise NoBaselineError(
                f"no buy by creator {coin.creator[:12]} within "
                f"{self._baseline_window_ms // 60_000}m of creation"
            )

        candles = await self._client.get_candles(claim.mint, created_ts)
        return coin, buys, candles

    async def process_one(self, claim: ClaimedToken) -> str:
        """Enrich one claimed token and commit its next state. Returns that state.

        Persistence errors propagate so the caller can release the claim.
        """
        t_start = time.monotonic()
        tag: str | None = None
        try:
            coin, buys, candles = await self._fetch(claim)
            token_metrics = compute_metrics(coin, buys, candles)
        except RateLimitError as e:
            tag = "RateLimited"
            self._metrics.record_rate_limited()
            delay = self._cooldown.next_delay()
            status = await self._fail(claim, STATUS_RETRY, _reason(tag, e), delay)
        except MalformedResponseError as e:
            tag = "Malformed"
            status = await self._fail(claim, STATUS_ERR, _reason(tag, e), self._err_cooldown_sec)
        except UpstreamError as e:
            tag = "Upstream"
            status = await self._fail(claim, STATUS_RETRY, _reason(tag, e), self._retry_cooldown_sec)
        except NoBaselineError as e:
            tag = "NoBaseline"
            self._cooldown.reset()
            status = await self._fail(claim, STATUS_RETRY, _reason(tag, e), self._retry_cooldown_sec)
        except InsufficientDataError as e:
            tag = "InsufficientData"
            self._cooldown.reset()
            status = await self._fail(claim, STATUS_ERR, _reason(tag, e), self._err_cooldown_sec)
        except Exception as e:
            tag = "Unexpected"
            logger.opt(exception=True).error(
                f"[ENRICH] Unexpected error for {claim.mint[:12]}: {type(e).__name__}: {e}"
            )
            status = await self._fail(claim, STATUS_ERR, _reason(tag, e), self._err_cooldown_sec)
        else:
            self._cooldown.reset()
            await self._store.commit_ok(
                claim.id,
                token_metrics,
                raw=coin.model_dump(mode="json"),
                total_supply=coin.total_supply,
                created_at=ms_to_datetime(coin.created_timestamp),
            )
            status = STATUS_OK
            _log_ok(claim, token_metrics)

        latency_ms = (time.monotonic() - t_start) * 1000
        self._metrics.record_outcome(status, latency_ms, reason=tag)
        return status

    async def _fail(self, claim: ClaimedToken, status: str, reason: str, delay_sec: float) -> str:
        if status == STATUS_ERR:
            next_at = await self._store.commit_err(claim.id, reason, delay_sec)
            logger.warning(f"[ENRICH] err {claim.mint[:12]} until {next_at:%H:%M:%S}: {reason}")
        else:
            next_at = await self._store.commit_retry(claim.id, reason, delay_sec)
            logger.info(
                f"[ENRICH] retry {claim.mint[:12]} in {delay_sec:.0f}s "
                f"(#{claim.error_count + 1}): {reason}"
            )
        return status

    async def run_once(self) -> bool:
        """Claim and process one token. False when nothing is eligible."""
        claim = await self._store.claim_next()
        if claim is None:
            return False
        try:
            await self.process_one(claim)
        except PERSISTENCE_ERRORS:
            await self._release(claim)
            raise
        return True

    async def _release(self, claim: ClaimedToken) -> None:
        try:
            await self._store.release(claim)
            logger.info(f"[ENRICH] Released {claim.mint[:12]} back to {claim.prior_status or 'NULL'}")
        except PERSISTENCE_ERRORS as e:
            # Left in processing; requeue_stuck picks it up later
            logger.error(f"[ENRICH] Could not release {claim.mint[:12]}: {e}")

    async def requeue_stuck(self) -> int:
        try:
            return await self._store.requeue_stuck(self._stuck_processing_sec)
        except PERSISTENCE_ERRORS as e:
            self._metrics.record_db_error()
            logger.error(f"[ENRICH] Stuck-row sweep failed: {e}")
            return 0

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Loop until stop_event is set (or the task is cancelled)."""
        logger.info(
            f"[ENRICH] Worker started | pause={self._pause_sec}s "
            f"idle={self._idle_sec}s retry={self._retry_cooldown_sec:.0f}s "
            f"err={self._err_cooldown_sec:.0f}s"
        )
        await self.requeue_stuck()
        last_sweep = time.monotonic()

        while stop_event is None or not stop_event.is_set():
            if time.monotonic() - last_sweep >= self._stuck_processing_sec:
                await self.requeue_stuck()
                last_sweep = time.monotonic()

            try:
                processed = await self.run_once()
            except PERSISTENCE_ERRORS as e:
                self._metrics.record_db_error()
                logger.error(
                    f"[ENRICH] Database error, pausing {self._db_error_pause_sec}s: "
                    f"{type(e).__name__}: {e}"
                )
                await self._sleep(self._db_error_pause_sec)
                continue
            except Exception as e:
                logger.opt(exception=True).error(f"[ENRICH] Worker loop error (recovering): {e}")
                await self._sleep(self._db_error_pause_sec)
                continue

            if processed:
                # Pace regardless of outcome to stay under the provider's limits
                jitter = random.uniform(0, self._pause_jitter_sec) if self._pause_jitter_sec > 0 else 0.0
                await self._sleep(self._pause_sec + jitter)
            else:
                self._metrics.record_idle()
                await self._sleep(self._idle_sec)

        logger.info("[ENRICH] Worker stopped")


def _log_ok(claim: ClaimedToken, m: TokenMetrics) -> None:
    parts = [f"[ENRICH] ok {claim.mint[:12]}"]
    if m.start_mcap is not None:
        parts.append(f"start=${m.start_mcap:,.0f}")
    for key in ("1m", "5m", "10m", "all"):
        ath = m.windows[key]
        if ath.multiple is not None:
            parts.append(f"{key}={ath.multiple}x")
    if m.market_cap is not None:
        parts.append(f"mcap=${m.market_cap:,.0f}")
    logger.info(" ".join(parts))


async def stats_reporter(
    store: QueueStore,
    metrics: EnrichmentMetrics | None = None,
    interval_sec: float = 60,
) -> None:
    """Log throughput counters and queue depth periodically."""
    metrics = metrics or pipeline_metrics
    while True:
        await asyncio.sleep(interval_sec)
        parts = [metrics.format_stats_line()]
        try:
            counts = await store.status_counts()
            parts.append("queue " + " ".join(f"{k}={v}" for k, v in sorted(counts.items())))
        except PERSISTENCE_ERRORS as e:
            parts.append(f"queue unavailable ({type(e).__name__})")
        logger.info(f"[STATS] {' | '.join(parts)}")
