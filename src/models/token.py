from datetime import datetime

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.models.base import Base


class Token(Base):
    """A discovered token and its enrichment state.

    Rows are inserted bare (mint + status ``new``) by the discovery producer;
    everything below the scheduling block is owned by the enrichment queue.
    """

    __tablename__ = "tokens"

    id: Mapped[int] = mapped_column(primary_key=True)
    mint: Mapped[str] = mapped_column(String(64))
    inserted_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    # Discovery / provider metadata
    creator: Mapped[str | None] = mapped_column(String(64))
    decimals: Mapped[int | None] = mapped_column(Integer)
    total_supply: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    created_at: Mapped[datetime | None] = mapped_column(DateTime)  # provider created_timestamp

    # Scheduling
    enrich_status: Mapped[str | None] = mapped_column(String(16), default="new")
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_error: Mapped[str | None] = mapped_column(String(500))
    error_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime)
    enriched_at: Mapped[datetime | None] = mapped_column(DateTime)

    # Baseline: creator's first buy
    t0: Mapped[datetime | None] = mapped_column(DateTime)
    p0: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    start_mcap: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))

    # Point-in-time market data
    price: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    market_cap: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    fdv: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    supply_display: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))

    # ATH windows after window start (t0 rounded up to the minute)
    ath_1m_mcap: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    ath_1m_at: Mapped[datetime | None] = mapped_column(DateTime)
    ath_1m_x: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    ath_1m_pct: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))

    ath_5m_mcap: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    ath_5m_at: Mapped[datetime | None] = mapped_column(DateTime)
    ath_5m_x: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    ath_5m_pct: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))

    ath_10m_mcap: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    ath_10m_at: Mapped[datetime | None] = mapped_column(DateTime)
    ath_10m_x: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    ath_10m_pct: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))

    ath_all_mcap: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    ath_all_at: Mapped[datetime | None] = mapped_column(DateTime)
    ath_all_x: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    ath_all_pct: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))

    # Last provider coin payload
    raw: Mapped[dict | None] = mapped_column(JSON)

    __table_args__ = (
        UniqueConstraint("mint", name="uq_tokens_mint"),
        Index("idx_tokens_status_next_attempt", "enrich_status", "next_attempt_at"),
        Index("idx_tokens_inserted_at", "inserted_at"),
    )


class TokenSnapshot(Base):
    """Immutable metrics capture taken when a token is enriched. One per mint."""

    __tablename__ = "token_snapshots"

    id: Mapped[int] = mapped_column(primary_key=True)
    token_id: Mapped[int] = mapped_column(ForeignKey("tokens.id", ondelete="CASCADE"))
    mint: Mapped[str] = mapped_column(String(64))
    captured_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    price: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    fdv: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    market_cap: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    supply_display: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    creator: Mapped[str | None] = mapped_column(String(64))
    p0: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    start_mcap: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))
    ath_5m_mcap: Mapped[float | None] = mapped_column(Numeric(asdecimal=False))

    __table_args__ = (
        UniqueConstraint("mint", name="uq_token_snapshots_mint"),
        Index("idx_token_snapshots_captured_at", "captured_at"),
    )
