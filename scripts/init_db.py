"""Create the tokens / token_snapshots tables if they don't exist.

Usage:
    python scripts/init_db.py
"""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from loguru import logger  # noqa: E402

from src.db.database import close_engine, engine  # noqa: E402
from src.models import Base  # noqa: E402


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")
    await close_engine()


def main() -> None:
    asyncio.run(init_db())


if __name__ == "__main__":
    main()
