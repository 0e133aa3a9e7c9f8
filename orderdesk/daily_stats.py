"""
Per-day success/failure counters.

Increments are a single INSERT ... ON CONFLICT DO UPDATE at the store, so
concurrent resolutions on the same day never lose an update.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk.errors import StoreFailure
from orderdesk.inventory import get_inventory_stats
from orderdesk.models import DailyStats, Order, OrderStatus, Outcome, utcnow
from orderdesk.schemas import DailyStatsResponse, DailySummaryResponse

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def today_key(now: Optional[datetime] = None) -> str:
    """Date-only key for the UTC calendar day."""
    return (now or utcnow()).strftime("%Y-%m-%d")


def increment(db: Session, outcome: Outcome, now: Optional[datetime] = None, commit: bool = True) -> None:
    """Count one terminal order for today.

    With ``commit=False`` the increment joins the caller's transaction, so
    it lands exactly when the order transition that caused it lands.
    """
    now = now or utcnow()
    key = today_key(now)
    dialect = db.get_bind().dialect.name
    insert = _UPSERT_INSERTS.get(dialect)
    if insert is None:
        raise StoreFailure(f"Atomic counter increment is not supported on {dialect}")

    column = "success_count" if outcome is Outcome.SUCCESS else "failure_count"
    stmt = insert(DailyStats).values(
        date=key,
        success_count=1 if outcome is Outcome.SUCCESS else 0,
        failure_count=1 if outcome is Outcome.FAILURE else 0,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[DailyStats.date],
        set_={column: getattr(DailyStats, column) + 1, "updated_at": now},
    )

    try:
        db.execute(stmt)
        if commit:
            db.commit()
    except SQLAlchemyError as e:
        if commit:
            db.rollback()
        raise StoreFailure(f"Failed to update daily stats: {e}") from e

    logger.info(f"📊 [Daily Stats] {key} +1 {outcome.value}")


def get_today_stats(db: Session, now: Optional[datetime] = None) -> DailyStatsResponse:
    key = today_key(now)
    stats = db.get(DailyStats, key)
    if stats is not None:
        # The row may have been bumped by another session since it was loaded
        db.refresh(stats)
    success = stats.success_count if stats else 0
    failure = stats.failure_count if stats else 0
    total = success + failure

    return DailyStatsResponse(
        date=key,
        success_count=success,
        failure_count=failure,
        total=total,
        success_rate=round(success / total * 100, 1) if total else 0.0,
    )


def get_daily_summary(db: Session, now: Optional[datetime] = None) -> DailySummaryResponse:
    queued = db.query(Order).filter(Order.status == OrderStatus.QUEUED.value).count()
    return DailySummaryResponse(
        today=get_today_stats(db, now),
        inventory=get_inventory_stats(db),
        queued_orders=queued,
    )
