"""Reimbursement workflow: create, edit, submit, approve, reject, pay, cancel, soft delete."""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.enums import NotificationEvent, RequestOperation, RequestStatus
from app.core.exceptions import (
    ConflictError,
    InvalidArgumentError,
    InvalidStateError,
    ServiceError,
    TransientError,
)
from app.core.models import ReimbursementRequest, RequestAttachment, StatusHistoryEntry
from app.core.notifications import NotificationDispatcher
from app.core.schemas import PaginatedResponse, SortDirection

from . import history, repository
from .repository import RequestFilter, storage_errors
from .schemas import (
    AttachmentResponse,
    HistoryEntryResponse,
    RequestCreate,
    RequestResponse,
    RequestSummary,
    RequestUpdate,
)
from .validation import (
    TARGET_STATUS,
    ValidationResult,
    approved_amount_valid,
    as_utc,
    expense_date_valid,
    note_valid,
    request_fields_valid,
    requested_amount_valid,
    transition_allowed,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure(result: ValidationResult, error_cls=InvalidArgumentError) -> None:
    if not result.ok:
        raise error_cls(result.reason)


# ----- Mapping -----
def _attachment_to_response(a: RequestAttachment) -> AttachmentResponse:
    return AttachmentResponse(
        id=a.id,
        request_id=a.request_id,
        file_name=a.file_name,
        original_file_name=a.original_file_name,
        content_type=a.content_type,
        size_bytes=a.size_bytes,
        formatted_size=a.formatted_size,
        description=a.description,
        is_image=a.is_image,
        is_pdf=a.is_pdf,
        created_at=a.created_at,
    )


def _history_to_response(h: StatusHistoryEntry) -> HistoryEntryResponse:
    return HistoryEntryResponse(
        id=h.id,
        request_id=h.request_id,
        previous_status=h.previous_status,
        new_status=h.new_status,
        change_description=h.change_description,
        changed_at=h.changed_at,
        actor_id=h.actor_id,
        actor_name=h.actor_name,
        note=h.note,
    )


def _request_to_summary(r: ReimbursementRequest) -> RequestSummary:
    return RequestSummary(
        id=r.id,
        requester_id=r.requester_id,
        title=r.title,
        expense_type=r.expense_type,
        requested_amount=r.requested_amount,
        approved_amount=r.approved_amount,
        expense_date=r.expense_date,
        status=r.status,
        status_label=r.current_status.label,
        created_at=r.created_at,
        attachment_count=sum(1 for a in r.attachments if a.active),
    )


def _request_to_response(r: ReimbursementRequest) -> RequestResponse:
    status_enum = r.current_status
    return RequestResponse(
        id=r.id,
        requester_id=r.requester_id,
        title=r.title,
        description=r.description,
        expense_type=r.expense_type,
        requested_amount=r.requested_amount,
        approved_amount=r.approved_amount,
        expense_date=r.expense_date,
        status=status_enum,
        status_label=status_enum.label,
        approval_note=r.approval_note,
        approved_by=r.approved_by,
        approved_at=r.approved_at,
        payment_note=r.payment_note,
        paid_by=r.paid_by,
        paid_at=r.paid_at,
        cancellation_reason=r.cancellation_reason,
        cancelled_at=r.cancelled_at,
        active=r.active,
        created_by=r.created_by,
        updated_by=r.updated_by,
        created_at=r.created_at,
        updated_at=r.updated_at,
        can_edit=transition_allowed(status_enum, RequestOperation.UPDATE).ok,
        can_cancel=transition_allowed(status_enum, RequestOperation.CANCEL).ok,
        can_approve=transition_allowed(status_enum, RequestOperation.APPROVE).ok,
        can_pay=transition_allowed(status_enum, RequestOperation.PAY).ok,
        attachment_count=sum(1 for a in r.attachments if a.active),
        attachments=[_attachment_to_response(a) for a in r.attachments if a.active],
        history=[_history_to_response(h) for h in r.history],
    )


async def _load_response(db: AsyncSession, request_id: UUID) -> Optional[RequestResponse]:
    async with storage_errors(db, f"loading request {request_id}"):
        req = await repository.find_by_id(db, request_id, with_details=True)
    return _request_to_response(req) if req else None


# ----- Unit of work -----
async def _run_transition(
    db: AsyncSession,
    request_id: UUID,
    operation: RequestOperation,
    actor_id: UUID,
    actor_name: Optional[str],
    apply: Callable[[ReimbursementRequest, datetime], None],
    note: Optional[str] = None,
) -> Optional[ReimbursementRequest]:
    """
    Load, guard, apply, record history and commit as one transaction.
    A stale version (another writer committed first) rolls back and retries from the load,
    so the guard is re-evaluated against the fresh state. Returns None when not found.
    """
    attempts = settings.transition_max_retries + 1
    for attempt in range(1, attempts + 1):
        try:
            req = await repository.find_by_id(db, request_id)
            if req is None:
                await db.rollback()
                return None
            previous = req.current_status
            _ensure(transition_allowed(previous, operation), InvalidStateError)

            now = _utcnow()
            apply(req, now)
            target = TARGET_STATUS.get(operation)
            if target is not None:
                req.status = target.value
            req.updated_at = now
            req.updated_by = actor_id
            if target is not None and target != previous:
                await history.record_status_change(
                    db, req.id, previous, target, actor_id, actor_name, note
                )
            await repository.save(db, req)
            await db.commit()
        except StaleDataError:
            await db.rollback()
            logger.warning(
                "Concurrent update on request %s during %s (attempt %s/%s)",
                request_id, operation.value, attempt, attempts,
            )
            continue
        except ServiceError:
            await db.rollback()
            raise
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("Storage failure during %s on request %s", operation.value, request_id)
            raise TransientError() from exc

        if target is not None:
            logger.info(
                "Request %s: %s -> %s by %s", req.id, previous.value, target.value, actor_id
            )
        return req
    raise ConflictError()


def _notify(
    notifier: Optional[NotificationDispatcher],
    req: ReimbursementRequest,
    event: NotificationEvent,
    **details,
) -> None:
    """Fire and forget; the transition is already committed."""
    if notifier is None:
        return
    try:
        notifier.notify(req.requester_id, event, req.id, details)
    except Exception:
        logger.exception("Could not enqueue %s notification for request %s", event.value, req.id)


# ----- Reads -----
async def get_request(db: AsyncSession, request_id: UUID) -> Optional[RequestResponse]:
    """Full request with active attachments and history, or None."""
    return await _load_response(db, request_id)


async def get_request_ownership(db: AsyncSession, request_id: UUID) -> Optional[Tuple[UUID, Optional[UUID]]]:
    """(requester_id, created_by) so callers can enforce owner-only actions."""
    async with storage_errors(db, f"loading request {request_id}"):
        req = await repository.find_by_id(db, request_id)
    if req is None:
        return None
    return req.requester_id, req.created_by


async def list_requests(
    db: AsyncSession,
    filt: RequestFilter,
    page: int = 1,
    page_size: int = 10,
    sort_key: Optional[str] = None,
    sort_dir: SortDirection = SortDirection.DESC,
) -> PaginatedResponse[RequestSummary]:
    page_size = max(1, min(page_size, settings.max_page_size))
    page = max(1, page)
    async with storage_errors(db, "listing requests"):
        rows, total = await repository.find_page(db, filt, sort_key, sort_dir, page, page_size)
    return PaginatedResponse[RequestSummary].build(
        [_request_to_summary(r) for r in rows], total, page, page_size
    )


async def list_requests_by_requester(db: AsyncSession, requester_id: UUID) -> List[RequestSummary]:
    async with storage_errors(db, f"listing requests of {requester_id}"):
        rows = await repository.find_all(db, RequestFilter(requester_id=requester_id))
    return [_request_to_summary(r) for r in rows]


async def list_pending_approval(db: AsyncSession) -> List[RequestSummary]:
    """Approval queue, oldest first."""
    async with storage_errors(db, "listing the approval queue"):
        rows = await repository.find_all(
            db,
            RequestFilter(status=RequestStatus.PENDING_APPROVAL),
            sort_key="created_at",
            sort_dir=SortDirection.ASC,
        )
    return [_request_to_summary(r) for r in rows]


async def list_approved(db: AsyncSession) -> List[RequestSummary]:
    """Approved and awaiting payment, in approval order."""
    async with storage_errors(db, "listing approved requests"):
        rows = await repository.find_all(
            db,
            RequestFilter(status=RequestStatus.APPROVED),
            sort_key="approved_at",
            sort_dir=SortDirection.ASC,
        )
    return [_request_to_summary(r) for r in rows]


async def get_history(db: AsyncSession, request_id: UUID) -> Optional[List[HistoryEntryResponse]]:
    async with storage_errors(db, f"loading history of {request_id}"):
        if await repository.find_by_id(db, request_id) is None:
            return None
        entries = await history.list_history(db, request_id)
    return [_history_to_response(h) for h in entries]


# ----- Create / edit -----
async def create_request(
    db: AsyncSession,
    payload: RequestCreate,
    actor_id: UUID,
) -> RequestResponse:
    """Create a DRAFT request. No history entry: history only records status changes."""
    if payload.requester_id is None:
        raise InvalidArgumentError("requester_id is required")
    now = _utcnow()
    _ensure(request_fields_valid(payload.title, payload.description))
    _ensure(requested_amount_valid(payload.requested_amount))
    _ensure(expense_date_valid(payload.expense_date, now, settings.max_expense_age_days))

    req = ReimbursementRequest(
        requester_id=payload.requester_id,
        title=payload.title.strip(),
        description=payload.description,
        expense_type=payload.expense_type.value,
        requested_amount=payload.requested_amount,
        expense_date=as_utc(payload.expense_date),
        status=RequestStatus.DRAFT.value,
        active=True,
        created_by=actor_id,
        updated_by=actor_id,
        created_at=now,
        updated_at=now,
    )
    try:
        await repository.save(db, req)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Storage failure creating reimbursement request")
        raise TransientError() from exc

    logger.info("Reimbursement request created: %s - %s", req.id, req.title)
    return await _load_response(db, req.id)


async def update_request(
    db: AsyncSession,
    request_id: UUID,
    payload: RequestUpdate,
    actor_id: UUID,
) -> Optional[RequestResponse]:
    """
    Edit a DRAFT request. Omitted fields keep their value; an explicit null clears the
    description. The expense date is always re-checked.
    """

    def apply(req: ReimbursementRequest, now: datetime) -> None:
        title = payload.title.strip() if payload.title is not None else req.title
        description = payload.description if "description" in payload.model_fields_set else req.description
        amount = payload.requested_amount if payload.requested_amount is not None else req.requested_amount
        expense_date = payload.expense_date if payload.expense_date is not None else req.expense_date
        _ensure(request_fields_valid(title, description))
        _ensure(requested_amount_valid(amount))
        _ensure(expense_date_valid(expense_date, now, settings.max_expense_age_days))

        req.title = title
        req.description = description
        req.requested_amount = amount
        req.expense_date = as_utc(expense_date)
        if payload.expense_type is not None:
            req.expense_type = payload.expense_type.value

    req = await _run_transition(db, request_id, RequestOperation.UPDATE, actor_id, None, apply)
    if req is None:
        return None
    logger.info("Reimbursement request updated: %s - %s", req.id, req.title)
    return await _load_response(db, req.id)


async def delete_request(db: AsyncSession, request_id: UUID, actor_id: UUID) -> bool:
    """Soft delete a DRAFT request. False when it does not exist (or is already deleted)."""

    def apply(req: ReimbursementRequest, now: datetime) -> None:
        req.active = False

    req = await _run_transition(db, request_id, RequestOperation.DELETE, actor_id, None, apply)
    if req is None:
        return False
    logger.info("Reimbursement request deleted: %s - %s", req.id, req.title)
    return True


# ----- Transitions -----
async def submit_request(
    db: AsyncSession,
    request_id: UUID,
    actor_id: UUID,
    actor_name: Optional[str] = None,
) -> Optional[RequestResponse]:
    req = await _run_transition(
        db, request_id, RequestOperation.SUBMIT, actor_id, actor_name,
        lambda r, now: None,
        note="Submitted for approval",
    )
    return await _load_response(db, req.id) if req else None


async def approve_request(
    db: AsyncSession,
    request_id: UUID,
    approved_amount: Decimal,
    actor_id: UUID,
    actor_name: Optional[str] = None,
    note: Optional[str] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> Optional[RequestResponse]:
    def apply(req: ReimbursementRequest, now: datetime) -> None:
        _ensure(note_valid("note", note))
        _ensure(approved_amount_valid(approved_amount, req.requested_amount))
        req.approved_amount = approved_amount
        req.approved_by = actor_id
        req.approved_at = now
        req.approval_note = note

    req = await _run_transition(db, request_id, RequestOperation.APPROVE, actor_id, actor_name, apply, note)
    if req is None:
        return None
    _notify(notifier, req, NotificationEvent.APPROVED, approved_amount=str(approved_amount), note=note)
    return await _load_response(db, req.id)


async def reject_request(
    db: AsyncSession,
    request_id: UUID,
    note: str,
    actor_id: UUID,
    actor_name: Optional[str] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> Optional[RequestResponse]:
    def apply(req: ReimbursementRequest, now: datetime) -> None:
        _ensure(note_valid("note", note, required=True))
        req.approved_by = actor_id
        req.approved_at = now
        req.approval_note = note

    req = await _run_transition(db, request_id, RequestOperation.REJECT, actor_id, actor_name, apply, note)
    if req is None:
        return None
    _notify(notifier, req, NotificationEvent.REJECTED, note=note)
    return await _load_response(db, req.id)


async def pay_request(
    db: AsyncSession,
    request_id: UUID,
    actor_id: UUID,
    actor_name: Optional[str] = None,
    note: Optional[str] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> Optional[RequestResponse]:
    def apply(req: ReimbursementRequest, now: datetime) -> None:
        _ensure(note_valid("note", note))
        req.paid_by = actor_id
        req.paid_at = now
        req.payment_note = note

    req = await _run_transition(db, request_id, RequestOperation.PAY, actor_id, actor_name, apply, note)
    if req is None:
        return None
    _notify(notifier, req, NotificationEvent.PAID, amount=str(req.approved_amount), note=note)
    return await _load_response(db, req.id)


async def cancel_request(
    db: AsyncSession,
    request_id: UUID,
    reason: str,
    actor_id: UUID,
    actor_name: Optional[str] = None,
    notifier: Optional[NotificationDispatcher] = None,
) -> Optional[RequestResponse]:
    """Cancel from DRAFT or PENDING_APPROVAL. Approved requests go on to payment."""
    def apply(req: ReimbursementRequest, now: datetime) -> None:
        _ensure(note_valid("reason", reason, required=True))
        req.cancelled_at = now
        req.cancellation_reason = reason

    req = await _run_transition(db, request_id, RequestOperation.CANCEL, actor_id, actor_name, apply, reason)
    if req is None:
        return None
    _notify(notifier, req, NotificationEvent.CANCELLED, reason=reason)
    return await _load_response(db, req.id)
