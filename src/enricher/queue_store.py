"""Postgres-backed enrichment work queue over the ``tokens`` table.

Claim uses SELECT ... FOR UPDATE SKIP LOCKED, so any number of worker
processes can share one table: a row locked by another transaction is
skipped rather than waited on. The claimed row is flipped to ``processing``
in the same short transaction, and every write-back is its own transaction
from the shared session factory; no connection is held across a cycle.

State machine:
  new / retry / err / NULL → processing   (claim_next)
  processing → ok                          (commit_ok, terminal)
  processing → retry                       (commit_retry)
  processing → err                         (commit_err, longer cooldown)
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from loguru import logger
from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.enricher.metric_engine import TokenMetrics
from src.models.token import Token, TokenSnapshot

STATUS_NEW = "new"
STATUS_PROCESSING = "processing"
STATUS_OK = "ok"
STATUS_RETRY = "retry"
STATUS_ERR = "err"

CLAIMABLE_STATUSES = (STATUS_NEW, STATUS_RETRY, STATUS_ERR)
LAST_ERROR_MAX_LEN = 500


def utcnow() -> datetime:
    """Naive UTC, matching the DateTime columns."""
    return datetime.now(UTC).replace(tzinfo=None)


def ms_to_datetime(ts_ms: int | None) -> datetime | None:
    if ts_ms is None:
        return None
    return datetime.fromtimestamp(ts_ms / 1000, tz=UTC).replace(tzinfo=None)


def datetime_to_ms(value: datetime | None) -> int | None:
    if value is None:
        return None
    return int(value.replace(tzinfo=UTC).timestamp() * 1000)


def append_error(previous: str | None, reason: str) -> str:
    """Append reason to the error log, keeping the most recent text."""
    combined = f"{previous} | {reason}" if previous else reason
    if len(combined) > LAST_ERROR_MAX_LEN:
        combined = combined[-LAST_ERROR_MAX_LEN:]
    return combined


@dataclass(frozen=True)
class ClaimedToken:
    """Detached view of a claimed row, safe to use outside the session."""

    id: int
    mint: str
    creator: str | None
    decimals: int | None
    total_supply: float | None
    created_at: datetime | None
    error_count: int
    prior_status: str | None
    prior_next_attempt_at: datetime | None


class QueueStore:
    """Claim and write-back operations for the enrichment queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        min_token_age_sec: float = 300,
    ) -> None:
        self._session_factory = session_factory
        self._min_token_age = timedelta(seconds=min_token_age_sec)

    def _claim_stmt(self, now: datetime) -> Select[tuple[Token]]:
        """Oldest due, old-enough row; rows locked by other workers are skipped."""
        return (
            select(Token)
            .where(
                or_(
                    Token.enrich_status.in_(CLAIMABLE_STATUSES),
                    Token.enrich_status.is_(None),
                ),
                Token.inserted_at <= now - self._min_token_age,
                or_(Token.next_attempt_at.is_(None), Token.next_attempt_at <= now),
            )
            .order_by(
                func.coalesce(Token.next_attempt_at, Token.inserted_at).asc(),
                Token.id.asc(),
            )
            .limit(1)
            .with_for_update(skip_locked=True)
        )

    async def claim_next(self) -> ClaimedToken | None:
        """Lock and mark one eligible token as processing; None if queue is empty.

        Tokens younger than the minimum age are never claimed.
        """
        now = utcnow()
        stmt = self._claim_stmt(now)

        async with self._session_factory.begin() as session:
            token = (await session.execute(stmt)).scalar_one_or_none()
            if token is None:
                return None

            claimed = ClaimedToken(
                id=token.id,
                mint=token.mint,
                creator=token.creator,
                decimals=token.decimals,
                total_supply=token.total_supply,
                created_at=token.created_at,
                error_count=token.error_count or 0,
                prior_status=token.enrich_status,
                prior_next_attempt_at=token.next_attempt_at,
            )
            token.enrich_status = STATUS_PROCESSING
            token.claimed_at = now

        logger.debug(
            f"[QUEUE] Claimed {claimed.mint[:12]} "
            f"(was {claimed.prior_status or 'NULL'}, errors={claimed.error_count})"
        )
        return claimed

    async def commit_ok(
        self,
        token_id: int,
        metrics: TokenMetrics,
        *,
        raw: dict | None = None,
        total_supply: float | None = None,
        created_at: datetime | None = None,
    ) -> None:
        """Persist derived fields, mark ok, and insert the snapshot once.

        Safe to re-run: a row that is already ok keeps its fields, and the
        snapshot is only inserted if none exists for the mint.
        """
        now = utcnow()
        async with self._session_factory.begin() as session:
            token = await session.get(Token, token_id)
            if token is None:
                logger.warning(f"[QUEUE] commit_ok: token id={token_id} vanished")
                return

            if token.enrich_status == STATUS_OK:
                logger.debug(f"[QUEUE] {token.mint[:12]} already ok, fields kept")
            else:
                self._apply_metrics(token, metrics, raw, total_supply, created_at, now)

            existing = await session.execute(
                select(TokenSnapshot.id).where(TokenSnapshot.mint == token.mint).limit(1)
            )
            if existing.scalar_one_or_none() is None:
                session.add(
                    TokenSnapshot(
                        token_id=token.id,
                        mint=token.mint,
                        captured_at=now,
                        price=token.price,
                        fdv=token.fdv,
                        market_cap=token.market_cap,
                        supply_display=token.supply_display,
                        creator=token.creator,
                        p0=token.p0,
                        start_mcap=token.start_mcap,
                        ath_5m_mcap=token.ath_5m_mcap,
                    )
                )
            else:
                logger.debug(f"[QUEUE] Snapshot for {token.mint[:12]} already exists, skipping")

    @staticmethod
    def _apply_metrics(
        token: Token,
        metrics: TokenMetrics,
        raw: dict | None,
        total_supply: float | None,
        created_at: datetime | None,
        now: datetime,
    ) -> None:
        token.creator = metrics.creator or token.creator
        token.decimals = metrics.decimals
        if total_supply is not None:
            token.total_supply = total_supply
        if created_at is not None:
            token.created_at = created_at
        if raw is not None:
            token.raw = raw

        token.t0 = ms_to_datetime(metrics.t0_ms)
        token.p0 = metrics.p0
        token.start_mcap = metrics.start_mcap
        token.price = metrics.price
        token.market_cap = metrics.market_cap
        token.fdv = metrics.fdv
        token.supply_display = metrics.supply_display
        for key, ath in metrics.windows.items():
            setattr(token, f"ath_{key}_mcap", ath.mcap)
            setattr(token, f"ath_{key}_at", ms_to_datetime(ath.at_ms))
            setattr(token, f"ath_{key}_x", ath.multiple)
            setattr(token, f"ath_{key}_pct", ath.percent)

        token.enrich_status = STATUS_OK
        token.next_attempt_at = None
        token.last_error = None
        token.enriched_at = now

    async def commit_retry(self, token_id: int, reason: str, delay_sec: float) -> datetime:
        """Schedule a retry after delay_sec. Returns the next attempt time."""
        return await self._commit_failure(token_id, STATUS_RETRY, reason, delay_sec)

    async def commit_err(self, token_id: int, reason: str, delay_sec: float) -> datetime:
        """Mark err; the row becomes claimable again after the (long) cooldown."""
        return await self._commit_failure(token_id, STATUS_ERR, reason, delay_sec)

    async def _commit_failure(
        self, token_id: int, status: str, reason: str, delay_sec: float
    ) -> datetime:
        next_attempt_at = utcnow() + timedelta(seconds=delay_sec)
        async with self._session_factory.begin() as session:
            token = await session.get(Token, token_id)
            if token is None:
                logger.warning(f"[QUEUE] {status}: token id={token_id} vanished")
                return next_attempt_at
            if token.enrich_status == STATUS_OK:
                # ok is terminal; a late failure from a duplicate cycle must not undo it
                logger.warning(f"[QUEUE] Ignoring {status} for ok token {token.mint[:12]}")
                return next_attempt_at
            token.enrich_status = status
            token.next_attempt_at = next_attempt_at
            token.last_error = append_error(token.last_error, reason)
            token.error_count = (token.error_count or 0) + 1
        return next_attempt_at

    async def release(self, claim: ClaimedToken) -> None:
        """Return a claimed row to its pre-claim state (abandoned cycle)."""
        async with self._session_factory.begin() as session:
            await session.execute(
                update(Token)
                .where(Token.id == claim.id, Token.enrich_status == STATUS_PROCESSING)
                .values(
                    enrich_status=claim.prior_status,
                    next_attempt_at=claim.prior_next_attempt_at,
                    claimed_at=None,
                )
            )

    async def requeue_stuck(self, older_than_sec: float) -> int:
        """Move rows stuck in processing (crashed worker) back to retry."""
        cutoff = utcnow() - timedelta(seconds=older_than_sec)
        async with self._session_factory.begin() as session:
            result = await session.execute(
                update(Token)
                .where(
                    Token.enrich_status == STATUS_PROCESSING,
                    or_(Token.claimed_at.is_(None), Token.claimed_at < cutoff),
                )
                .values(enrich_status=STATUS_RETRY, next_attempt_at=None)
            )
            count = result.rowcount or 0
        if count:
            logger.warning(f"[QUEUE] Requeued {count} tokens stuck in processing")
        return count

    async def status_counts(self) -> dict[str, int]:
        """Row count per enrich_status (NULL reported as 'new')."""
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Token.enrich_status, func.count()).group_by(Token.enrich_status)
            )
            counts: dict[str, int] = {}
            for status, count in rows.all():
                key = status or STATUS_NEW
                counts[key] = counts.get(key, 0) + count
            return counts
