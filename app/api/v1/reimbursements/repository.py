"""Persistence for reimbursement requests: lookups, filtered pages and saves."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.sql import Select

from app.core.enums import ExpenseType, RequestStatus
from app.core.exceptions import TransientError
from app.core.models import ReimbursementRequest
from app.core.schemas import SortDirection

from .validation import as_utc

logger = logging.getLogger(__name__)


# Sortable fields exposed to callers -> mapped column.
SORT_COLUMNS: Dict[str, object] = {
    "created_at": ReimbursementRequest.created_at,
    "updated_at": ReimbursementRequest.updated_at,
    "expense_date": ReimbursementRequest.expense_date,
    "approved_at": ReimbursementRequest.approved_at,
    "requested_amount": ReimbursementRequest.requested_amount,
    "title": ReimbursementRequest.title,
    "status": ReimbursementRequest.status,
}
DEFAULT_SORT_KEY = "created_at"


@dataclass
class RequestFilter:
    requester_id: Optional[UUID] = None
    status: Optional[RequestStatus] = None
    expense_type: Optional[ExpenseType] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    text: Optional[str] = None
    include_inactive: bool = False


def restrict_active(stmt: Select, include_inactive: bool = False) -> Select:
    """Soft-deleted rows are invisible unless explicitly requested. Every query goes through here."""
    if include_inactive:
        return stmt
    return stmt.where(ReimbursementRequest.active.is_(True))


def _apply_filter(stmt: Select, filt: RequestFilter) -> Select:
    stmt = restrict_active(stmt, filt.include_inactive)
    if filt.requester_id is not None:
        stmt = stmt.where(ReimbursementRequest.requester_id == filt.requester_id)
    if filt.status is not None:
        stmt = stmt.where(ReimbursementRequest.status == RequestStatus(filt.status).value)
    if filt.expense_type is not None:
        stmt = stmt.where(ReimbursementRequest.expense_type == ExpenseType(filt.expense_type).value)
    if filt.date_from is not None:
        stmt = stmt.where(ReimbursementRequest.expense_date >= as_utc(filt.date_from))
    if filt.date_to is not None:
        stmt = stmt.where(ReimbursementRequest.expense_date <= as_utc(filt.date_to))
    text = (filt.text or "").strip()
    if text:
        pattern = f"%{text}%"
        stmt = stmt.where(
            or_(
                ReimbursementRequest.title.ilike(pattern),
                ReimbursementRequest.description.ilike(pattern),
            )
        )
    return stmt


def _apply_sort(stmt: Select, sort_key: Optional[str], sort_dir: SortDirection) -> Select:
    col = SORT_COLUMNS.get(sort_key or DEFAULT_SORT_KEY, SORT_COLUMNS[DEFAULT_SORT_KEY])
    order = col.asc() if sort_dir == SortDirection.ASC else col.desc()
    # id as tiebreaker keeps pages stable when the sort column has duplicates
    return stmt.order_by(order, ReimbursementRequest.id.asc())


def _with_details(stmt: Select) -> Select:
    return stmt.options(
        selectinload(ReimbursementRequest.attachments),
        selectinload(ReimbursementRequest.history),
    )


async def find_by_id(
    db: AsyncSession,
    request_id: UUID,
    *,
    with_details: bool = False,
    include_inactive: bool = False,
) -> Optional[ReimbursementRequest]:
    """
    Load one request. with_details eager-loads attachments and history and refreshes
    any copy already in the session, so the caller sees committed state.
    """
    stmt = restrict_active(
        select(ReimbursementRequest).where(ReimbursementRequest.id == request_id),
        include_inactive,
    )
    if with_details:
        stmt = _with_details(stmt).execution_options(populate_existing=True)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def find_page(
    db: AsyncSession,
    filt: RequestFilter,
    sort_key: Optional[str] = None,
    sort_dir: SortDirection = SortDirection.DESC,
    page: int = 1,
    page_size: int = 10,
) -> Tuple[List[ReimbursementRequest], int]:
    """Return (items on page, total matching)."""
    stmt = _apply_filter(select(ReimbursementRequest), filt)

    count_stmt = select(func.count()).select_from(stmt.subquery())
    total = (await db.execute(count_stmt)).scalar() or 0

    stmt = _apply_sort(stmt, sort_key, sort_dir)
    stmt = stmt.options(selectinload(ReimbursementRequest.attachments))
    offset = (page - 1) * page_size
    result = await db.execute(stmt.offset(offset).limit(page_size))
    return list(result.scalars().all()), total


async def find_all(
    db: AsyncSession,
    filt: RequestFilter,
    sort_key: Optional[str] = None,
    sort_dir: SortDirection = SortDirection.DESC,
) -> List[ReimbursementRequest]:
    """Unpaginated variant for the work-queue views."""
    stmt = _apply_sort(_apply_filter(select(ReimbursementRequest), filt), sort_key, sort_dir)
    stmt = stmt.options(selectinload(ReimbursementRequest.attachments))
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def save(db: AsyncSession, request: ReimbursementRequest) -> ReimbursementRequest:
    """Stage the request in the caller's transaction and flush so version checks run now."""
    db.add(request)
    await db.flush()
    return request


@asynccontextmanager
async def storage_errors(db: AsyncSession, action: str) -> AsyncIterator[None]:
    """Reads: roll back and surface driver/database failures as TransientError."""
    try:
        yield
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Storage failure while %s", action)
        raise TransientError() from exc
