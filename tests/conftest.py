"""Shared test fixtures."""

from collections.abc import AsyncGenerator
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.enricher.queue_store import utcnow
from src.models.base import Base
from src.models.token import Token


@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory SQLite database per test.

    StaticPool keeps the single in-memory connection alive across the
    short transactions the queue store opens.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()


@pytest.fixture
def insert_token(session_factory):
    """Insert a discovered token row aged ``age_sec`` seconds; returns its id."""

    async def _insert(mint: str, *, age_sec: float = 600, **fields) -> int:
        fields.setdefault("enrich_status", "new")
        legacy_null = fields["enrich_status"] is None
        async with session_factory.begin() as session:
            token = Token(
                mint=mint,
                inserted_at=utcnow() - timedelta(seconds=age_sec),
                **fields,
            )
            session.add(token)
            await session.flush()
            if legacy_null:
                # The ORM column default turns None into 'new'; write a real NULL
                await session.execute(
                    update(Token).where(Token.id == token.id).values(enrich_status=None)
                )
            return token.id

    return _insert


@pytest.fixture
def load_token(session_factory):
    async def _load(token_id: int) -> Token:
        async with session_factory() as session:
            return await session.get(Token, token_id)

    return _load
