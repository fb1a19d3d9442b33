"""Enrichment queue health check: reports database and pipeline status.

Checks:
- Database connectivity and table sizes
- Queue status distribution (new / processing / ok / retry / err)
- Backlog of claimable tokens and rows stuck in processing
- Data freshness (latest snapshot age)
- Most frequent recent error prefixes

Usage:
    python scripts/health_check.py
"""

import asyncio
import sys
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy import func, or_, select, text  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from config.settings import settings  # noqa: E402
from src.db.database import async_session_factory, close_engine  # noqa: E402
from src.enricher.queue_store import (  # noqa: E402
    CLAIMABLE_STATUSES,
    STATUS_PROCESSING,
    QueueStore,
    utcnow,
)
from src.models.token import Token, TokenSnapshot  # noqa: E402

STATUS_OK = "OK"
STATUS_WARN = "WARN"
STATUS_ERROR = "ERROR"


async def check_health() -> dict:
    """Run all health checks and return structured report."""
    report: dict = {"timestamp": utcnow().isoformat(), "checks": {}}

    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
            report["checks"]["database"] = {"status": STATUS_OK}
            await _add_table_stats(session, report)
            await _add_backlog(session, report)
            await _add_freshness(session, report)
            await _add_error_breakdown(session, report)
        store = QueueStore(async_session_factory)
        report["checks"]["queue"] = await store.status_counts()
    except Exception as e:
        report["checks"]["database"] = {"status": STATUS_ERROR, "error": str(e)}

    return report


async def _add_table_stats(session: AsyncSession, report: dict) -> None:
    """Add row counts for both tables."""
    counts = {}
    for name, model in {"tokens": Token, "snapshots": TokenSnapshot}.items():
        count = await session.scalar(select(func.count(model.id)))
        counts[name] = count or 0
    report["checks"]["table_counts"] = counts


async def _add_backlog(session: AsyncSession, report: dict) -> None:
    """Claimable-now backlog and rows stuck in processing."""
    now = utcnow()
    min_age = timedelta(minutes=settings.min_token_age_minutes)
    claimable = await session.scalar(
        select(func.count(Token.id)).where(
            or_(Token.enrich_status.in_(CLAIMABLE_STATUSES), Token.enrich_status.is_(None)),
            Token.inserted_at <= now - min_age,
            or_(Token.next_attempt_at.is_(None), Token.next_attempt_at <= now),
        )
    )
    stuck_cutoff = now - timedelta(seconds=settings.stuck_processing_sec)
    stuck = await session.scalar(
        select(func.count(Token.id)).where(
            Token.enrich_status == STATUS_PROCESSING,
            Token.claimed_at < stuck_cutoff,
        )
    )
    report["checks"]["backlog"] = {
        "claimable_now": claimable or 0,
        "stuck_processing": stuck or 0,
        "status": STATUS_OK if not stuck else STATUS_WARN,
    }


async def _add_freshness(session: AsyncSession, report: dict) -> None:
    """Check how fresh the latest data is."""
    latest_snapshot = await session.scalar(select(func.max(TokenSnapshot.captured_at)))
    latest_token = await session.scalar(select(func.max(Token.inserted_at)))

    now = utcnow()
    freshness = {}

    if latest_snapshot:
        age_min = (now - latest_snapshot).total_seconds() / 60
        freshness["latest_snapshot_age_min"] = round(age_min, 1)
        freshness["latest_snapshot_status"] = (
            STATUS_OK if age_min < 30 else STATUS_WARN if age_min < 120 else STATUS_ERROR
        )
    else:
        freshness["latest_snapshot_status"] = STATUS_ERROR
        freshness["latest_snapshot_age_min"] = None

    if latest_token:
        age_min = (now - latest_token).total_seconds() / 60
        freshness["latest_token_age_min"] = round(age_min, 1)
    else:
        freshness["latest_token_age_min"] = None

    report["checks"]["freshness"] = freshness


async def _add_error_breakdown(session: AsyncSession, report: dict) -> None:
    """Count retry/err rows by the prefix of their most recent reason."""
    result = await session.execute(
        select(Token.last_error).where(Token.last_error.isnot(None)).limit(5000)
    )
    prefixes: dict[str, int] = {}
    for (last_error,) in result.all():
        latest = last_error.rsplit(" | ", 1)[-1]
        prefix = latest.split(":", 1)[0].strip() or "N/A"
        prefixes[prefix] = prefixes.get(prefix, 0) + 1
    report["checks"]["errors"] = dict(sorted(prefixes.items(), key=lambda kv: -kv[1]))


def print_report(report: dict) -> None:
    """Pretty-print the health report."""
    print("=" * 60)
    print(f"HEALTH CHECK: {report['timestamp']}")
    print("=" * 60)

    checks = report["checks"]

    db = checks.get("database", {})
    status = db.get("status", STATUS_ERROR)
    print(f"\n  Database: [{status}]")
    if "error" in db:
        print(f"    Error: {db['error']}")

    counts = checks.get("table_counts", {})
    if counts:
        print("\n  Table counts:")
        for table, count in counts.items():
            print(f"    {table:20s} {count:>8,}")

    queue = checks.get("queue", {})
    if queue:
        print("\n  Queue status:")
        for name, count in sorted(queue.items()):
            print(f"    {name:15s} {count:>8,}")

    backlog = checks.get("backlog", {})
    if backlog:
        print(f"\n  Backlog: [{backlog.get('status')}]")
        print(f"    Claimable now:     {backlog.get('claimable_now', 0):,}")
        print(f"    Stuck processing:  {backlog.get('stuck_processing', 0):,}")

    freshness = checks.get("freshness", {})
    if freshness:
        print("\n  Data freshness:")
        snap_age = freshness.get("latest_snapshot_age_min")
        snap_status = freshness.get("latest_snapshot_status", "N/A")
        print(f"    Latest snapshot: {snap_age or 'N/A'} min ago [{snap_status}]")
        token_age = freshness.get("latest_token_age_min")
        print(f"    Latest token:    {token_age or 'N/A'} min ago")

    errors = checks.get("errors", {})
    if errors:
        print("\n  Last error by cause:")
        for prefix, count in errors.items():
            print(f"    {prefix:20s} {count:>6,}")

    print("\n" + "=" * 60)


async def main() -> None:
    report = await check_health()
    print_report(report)
    await close_engine()


if __name__ == "__main__":
    asyncio.run(main())
