"""Aggregates over active reimbursement requests, computed fresh on every call."""

from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import RequestStatus
from app.core.models import ReimbursementRequest

from .repository import restrict_active, storage_errors
from .schemas import RequestStatistics, RequesterTotals


_STATUS_FIELDS = {
    RequestStatus.DRAFT: "draft",
    RequestStatus.PENDING_APPROVAL: "pending_approval",
    RequestStatus.APPROVED: "approved",
    RequestStatus.PAID: "paid",
    RequestStatus.REJECTED: "rejected",
    RequestStatus.CANCELLED: "cancelled",
}


def _decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    return value if isinstance(value, Decimal) else Decimal(str(value))


async def get_statistics(db: AsyncSession, requester_id: Optional[UUID] = None) -> RequestStatistics:
    """Counts per status and amount totals, optionally for one requester."""
    stmt = select(
        ReimbursementRequest.status,
        func.count(ReimbursementRequest.id),
        func.sum(ReimbursementRequest.requested_amount),
        func.sum(ReimbursementRequest.approved_amount),
    )
    stmt = restrict_active(stmt)
    if requester_id is not None:
        stmt = stmt.where(ReimbursementRequest.requester_id == requester_id)
    stmt = stmt.group_by(ReimbursementRequest.status)
    async with storage_errors(db, "computing statistics"):
        rows = (await db.execute(stmt)).all()

    stats = RequestStatistics()
    for status_val, cnt, requested_sum, approved_sum in rows:
        stats.total_requests += cnt
        stats.total_requested += _decimal(requested_sum)
        # SUM skips NULLs, so only requests that carry an approved amount contribute
        stats.total_approved += _decimal(approved_sum)
        status_enum = RequestStatus(status_val)
        setattr(stats, _STATUS_FIELDS[status_enum], cnt)
        if status_enum == RequestStatus.PAID:
            stats.total_paid = _decimal(approved_sum)
    return stats


async def get_requester_totals(db: AsyncSession) -> List[RequesterTotals]:
    """Per-requester count and sums, largest requested total first."""
    requested_total = func.coalesce(func.sum(ReimbursementRequest.requested_amount), 0)
    stmt = restrict_active(
        select(
            ReimbursementRequest.requester_id,
            func.count(ReimbursementRequest.id),
            requested_total,
            func.coalesce(func.sum(ReimbursementRequest.approved_amount), 0),
        )
    ).group_by(ReimbursementRequest.requester_id).order_by(requested_total.desc())
    async with storage_errors(db, "computing requester totals"):
        rows = (await db.execute(stmt)).all()
    return [
        RequesterTotals(
            requester_id=requester_id,
            total_requests=cnt,
            total_requested=_decimal(requested_sum),
            total_approved=_decimal(approved_sum),
        )
        for requester_id, cnt, requested_sum, approved_sum in rows
    ]
