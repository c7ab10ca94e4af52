from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user
from app.auth.rbac import PRIVILEGED_ROLES, is_privileged, require_roles
from app.auth.schemas import CurrentUser
from app.core.config import settings
from app.core.enums import ExpenseType, RequestStatus, UserRole
from app.core.exceptions import NotFoundError, ServiceError, UnauthorizedError
from app.core.notifications import NotificationDispatcher, get_notifier
from app.core.schemas import PaginatedResponse, SortDirection
from app.db.session import get_db

from . import service, statistics
from .repository import RequestFilter
from .schemas import (
    HistoryEntryResponse,
    RequestApprove,
    RequestCancel,
    RequestCreate,
    RequestPay,
    RequestReject,
    RequestResponse,
    RequestStatistics,
    RequestSummary,
    RequesterTotals,
    RequestUpdate,
)

router = APIRouter(prefix="/api/v1/reimbursements", tags=["reimbursements"])

OWNER_ADMIN_ROLES = (UserRole.ADMINISTRATOR.value,)


def _http_error(e: ServiceError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.message)


def _not_found() -> HTTPException:
    return _http_error(NotFoundError())


async def _ensure_owner_or_role(
    db: AsyncSession,
    request_id: UUID,
    current_user: CurrentUser,
    roles: Sequence[str],
) -> None:
    """Owner (requester or creator) or one of the given roles; 404 first so ids do not leak."""
    try:
        ownership = await service.get_request_ownership(db, request_id)
    except ServiceError as e:
        raise _http_error(e)
    if ownership is None:
        raise _not_found()
    if current_user.role in roles or current_user.id in ownership:
        return
    raise _http_error(UnauthorizedError())


@router.get("", response_model=PaginatedResponse[RequestSummary])
async def list_requests(
    page: int = Query(1, ge=1),
    page_size: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    requester_id: Optional[UUID] = None,
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    expense_type: Optional[ExpenseType] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = Query(None, description="Case-insensitive match on title or description"),
    sort_by: Optional[str] = Query(None, description="created_at, updated_at, expense_date, approved_at, requested_amount, title, status"),
    sort_dir: SortDirection = SortDirection.DESC,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaginatedResponse[RequestSummary]:
    """Paginated, filterable list. Employees only ever see their own requests."""
    if not is_privileged(current_user):
        requester_id = current_user.id
    filt = RequestFilter(
        requester_id=requester_id,
        status=status_filter,
        expense_type=expense_type,
        date_from=date_from,
        date_to=date_to,
        text=search,
    )
    try:
        return await service.list_requests(db, filt, page, page_size, sort_by, sort_dir)
    except ServiceError as e:
        raise _http_error(e)


@router.get(
    "/pending-approval",
    response_model=List[RequestSummary],
    dependencies=[Depends(require_roles(*PRIVILEGED_ROLES))],
)
async def list_pending_approval(db: AsyncSession = Depends(get_db)) -> List[RequestSummary]:
    """Approval queue, oldest first."""
    try:
        return await service.list_pending_approval(db)
    except ServiceError as e:
        raise _http_error(e)


@router.get(
    "/approved",
    response_model=List[RequestSummary],
    dependencies=[Depends(require_roles(*PRIVILEGED_ROLES))],
)
async def list_approved(db: AsyncSession = Depends(get_db)) -> List[RequestSummary]:
    """Approved requests waiting for payment."""
    try:
        return await service.list_approved(db)
    except ServiceError as e:
        raise _http_error(e)


@router.get("/statistics", response_model=RequestStatistics)
async def get_statistics(
    requester_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> RequestStatistics:
    if not is_privileged(current_user):
        requester_id = current_user.id
    try:
        return await statistics.get_statistics(db, requester_id)
    except ServiceError as e:
        raise _http_error(e)


@router.get(
    "/statistics/by-requester",
    response_model=List[RequesterTotals],
    dependencies=[Depends(require_roles(*PRIVILEGED_ROLES))],
)
async def get_requester_totals(db: AsyncSession = Depends(get_db)) -> List[RequesterTotals]:
    try:
        return await statistics.get_requester_totals(db)
    except ServiceError as e:
        raise _http_error(e)


@router.get("/requester/{requester_id}", response_model=List[RequestSummary])
async def list_by_requester(
    requester_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[RequestSummary]:
    if not is_privileged(current_user) and current_user.id != requester_id:
        raise _http_error(UnauthorizedError("Not allowed to view these requests"))
    try:
        return await service.list_requests_by_requester(db, requester_id)
    except ServiceError as e:
        raise _http_error(e)


@router.get("/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> RequestResponse:
    await _ensure_owner_or_role(db, request_id, current_user, PRIVILEGED_ROLES)
    try:
        result = await service.get_request(db, request_id)
    except ServiceError as e:
        raise _http_error(e)
    if result is None:
        raise _not_found()
    return result


@router.get("/{request_id}/history", response_model=List[HistoryEntryResponse])
async def get_history(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[HistoryEntryResponse]:
    """Status timeline, oldest first."""
    await _ensure_owner_or_role(db, request_id, current_user, PRIVILEGED_ROLES)
    try:
        result = await service.get_history(db, request_id)
    except ServiceError as e:
        raise _http_error(e)
    if result is None:
        raise _not_found()
    return result


@router.post("", response_model=RequestResponse, status_code=status.HTTP_201_CREATED)
async def create_request(
    payload: RequestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> RequestResponse:
    """Create a DRAFT request."""
    try:
        return await service.create_request(db, payload, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/{request_id}", response_model=RequestResponse)
async def update_request(
    request_id: UUID,
    payload: RequestUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> RequestResponse:
    """Edit a DRAFT request. Owner or administrator."""
    await _ensure_owner_or_role(db, request_id, current_user, OWNER_ADMIN_ROLES)
    try:
        result = await service.update_request(db, request_id, payload, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if result is None:
        raise _not_found()
    return result


@router.delete("/{request_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> None:
    """Soft delete a DRAFT request. Owner or administrator."""
    await _ensure_owner_or_role(db, request_id, current_user, OWNER_ADMIN_ROLES)
    try:
        deleted = await service.delete_request(db, request_id, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if not deleted:
        raise _not_found()


@router.post("/{request_id}/submit", response_model=RequestResponse)
async def submit_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> RequestResponse:
    """Send a DRAFT request for approval."""
    await _ensure_owner_or_role(db, request_id, current_user, OWNER_ADMIN_ROLES)
    try:
        result = await service.submit_request(db, request_id, current_user.id, current_user.display_name)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if result is None:
        raise _not_found()
    return result


@router.post(
    "/{request_id}/approve",
    response_model=RequestResponse,
)
async def approve_request(
    request_id: UUID,
    payload: RequestApprove,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*PRIVILEGED_ROLES)),
    notifier: Optional[NotificationDispatcher] = Depends(get_notifier),
) -> RequestResponse:
    """Approve a pending request, possibly for less than requested."""
    try:
        result = await service.approve_request(
            db,
            request_id,
            payload.approved_amount,
            current_user.id,
            current_user.display_name,
            note=payload.note,
            notifier=notifier,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if result is None:
        raise _not_found()
    return result


@router.post("/{request_id}/reject", response_model=RequestResponse)
async def reject_request(
    request_id: UUID,
    payload: RequestReject,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*PRIVILEGED_ROLES)),
    notifier: Optional[NotificationDispatcher] = Depends(get_notifier),
) -> RequestResponse:
    try:
        result = await service.reject_request(
            db,
            request_id,
            payload.note,
            current_user.id,
            current_user.display_name,
            notifier=notifier,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if result is None:
        raise _not_found()
    return result


@router.post("/{request_id}/pay", response_model=RequestResponse)
async def pay_request(
    request_id: UUID,
    payload: RequestPay,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_roles(*PRIVILEGED_ROLES)),
    notifier: Optional[NotificationDispatcher] = Depends(get_notifier),
) -> RequestResponse:
    try:
        result = await service.pay_request(
            db,
            request_id,
            current_user.id,
            current_user.display_name,
            note=payload.note,
            notifier=notifier,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if result is None:
        raise _not_found()
    return result


@router.post("/{request_id}/cancel", response_model=RequestResponse)
async def cancel_request(
    request_id: UUID,
    payload: RequestCancel,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
    notifier: Optional[NotificationDispatcher] = Depends(get_notifier),
) -> RequestResponse:
    """Cancel a DRAFT or pending request. Owner or approver roles."""
    await _ensure_owner_or_role(db, request_id, current_user, PRIVILEGED_ROLES)
    try:
        result = await service.cancel_request(
            db,
            request_id,
            payload.reason,
            current_user.id,
            current_user.display_name,
            notifier=notifier,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if result is None:
        raise _not_found()
    return result
