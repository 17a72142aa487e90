"""
Read-side revenue and dashboard rollups.

Only completed payments count as revenue. Every aggregate tolerates an empty
result set and reports zeros.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hotspot_billing.core.repository import CallbackLogRepository, PaymentRepository
from hotspot_billing.database.models import (
    DIRECT_PAYMENT_PLAN_NAME,
    PAYMENT_COMPLETED,
    CallbackLog,
    Payment,
)

logger = structlog.get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReportingService:
    """Revenue reports over reconciled payments."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], recent_limit: int = 5):
        self.session_factory = session_factory
        self.recent_limit = recent_limit

    @staticmethod
    async def _revenue_by_plan(db: AsyncSession, *conditions: Any) -> List[Dict[str, Any]]:
        stmt = (
            select(
                Payment.plan_name,
                func.sum(Payment.amount).label("revenue"),
                func.count(Payment.id).label("count"),
            )
            .where(Payment.status == PAYMENT_COMPLETED, *conditions)
            .group_by(Payment.plan_name)
        )
        result = await db.execute(stmt)

        by_plan: Dict[str, Dict[str, Any]] = {}
        for row in result:
            plan = row.plan_name or DIRECT_PAYMENT_PLAN_NAME
            entry = by_plan.setdefault(plan, {"plan": plan, "revenue": 0, "count": 0})
            entry["revenue"] += int(row.revenue or 0)
            entry["count"] += int(row.count)
        return sorted(by_plan.values(), key=lambda entry: entry["revenue"], reverse=True)

    @staticmethod
    async def _totals(db: AsyncSession, *conditions: Any) -> Dict[str, int]:
        stmt = select(
            func.count(Payment.id).label("count"),
            func.sum(Payment.amount).label("total"),
        ).where(Payment.status == PAYMENT_COMPLETED, *conditions)
        result = await db.execute(stmt)
        row = result.first()
        return {
            "count": int(row.count or 0),
            "total": int(row.total or 0),
        }

    async def revenue_report(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Revenue from completed payments created within ``[start_date, end_date]``.

        Args:
            start_date: Range start (defaults to the epoch)
            end_date: Range end (defaults to now)

        Returns:
            Dict[str, Any]: Totals and per-plan breakdown
        """
        start = _as_utc(start_date) if start_date else EPOCH
        end = _as_utc(end_date) if end_date else datetime.now(timezone.utc)
        conditions = (Payment.created_at >= start, Payment.created_at <= end)

        async with self.session_factory() as db:
            totals = await self._totals(db, *conditions)
            by_plan = await self._revenue_by_plan(db, *conditions)

        logger.info(
            "revenue_report_generated",
            start_date=start.isoformat(),
            end_date=end.isoformat(),
            total_revenue=totals["total"],
            transactions_count=totals["count"],
        )

        return {
            "start_date": start,
            "end_date": end,
            "total_revenue": totals["total"],
            "transactions_count": totals["count"],
            "revenue_by_plan": by_plan,
        }

    async def recent_payments(self, limit: Optional[int] = None) -> List[Payment]:
        """Most recent payments in any status."""
        async with self.session_factory() as db:
            payments = await PaymentRepository(db).list_recent(limit or self.recent_limit)
        return list(payments)

    async def dashboard(self) -> Dict[str, Any]:
        """
        All-time rollup for the admin dashboard.

        Returns:
            Dict[str, Any]: Revenue totals, per-plan breakdown, latest
            transactions and a count of payments per status
        """
        async with self.session_factory() as db:
            totals = await self._totals(db)
            by_plan = await self._revenue_by_plan(db)
            recent = await PaymentRepository(db).list_recent(self.recent_limit)

            stats_result = await db.execute(
                select(Payment.status, func.count(Payment.id)).group_by(Payment.status)
            )
            payment_stats = {status: int(count) for status, count in stats_result}

        return {
            "total_revenue": totals["total"],
            "total_transactions": totals["count"],
            "revenue_by_plan": by_plan,
            "recent_transactions": list(recent),
            "payment_stats": payment_stats,
        }

    async def get_payment(self, payment_id: uuid.UUID) -> Optional[Payment]:
        async with self.session_factory() as db:
            return await PaymentRepository(db).get_by_id(payment_id)

    async def recent_callback_logs(self, limit: int = 50) -> List[CallbackLog]:
        """Latest provider deliveries, newest first."""
        async with self.session_factory() as db:
            return await CallbackLogRepository(db).list_recent(limit)
