"""
Status history for reimbursement requests. Entries are written once, inside the
transition's transaction, and never updated or deleted by the workflow.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import RequestStatus
from app.core.models import StatusHistoryEntry


async def record_status_change(
    db: AsyncSession,
    request_id: UUID,
    previous_status: RequestStatus,
    new_status: RequestStatus,
    actor_id: UUID,
    actor_name: Optional[str] = None,
    note: Optional[str] = None,
) -> StatusHistoryEntry:
    """Append one history entry. Caller must commit."""
    entry = StatusHistoryEntry(
        request_id=request_id,
        previous_status=RequestStatus(previous_status).value,
        new_status=RequestStatus(new_status).value,
        changed_at=datetime.now(timezone.utc),
        actor_id=actor_id,
        actor_name=actor_name,
        note=note,
    )
    db.add(entry)
    return entry


async def list_history(db: AsyncSession, request_id: UUID) -> List[StatusHistoryEntry]:
    """Timeline for one request, oldest first."""
    result = await db.execute(
        select(StatusHistoryEntry)
        .where(StatusHistoryEntry.request_id == request_id)
        .order_by(StatusHistoryEntry.changed_at.asc())
    )
    return list(result.scalars().all())
