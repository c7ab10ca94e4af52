from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.v1.reimbursements import service, statistics
from app.api.v1.reimbursements.repository import RequestFilter
from app.api.v1.reimbursements.schemas import RequestCreate, RequestUpdate
from app.core.enums import ExpenseType, NotificationEvent, RequestStatus
from app.core.exceptions import InvalidArgumentError, InvalidStateError, TransientError
from app.core.models import ReimbursementRequest, StatusHistoryEntry


async def _history_count(db: AsyncSession, request_id) -> int:
    result = await db.execute(
        select(func.count()).select_from(StatusHistoryEntry).where(StatusHistoryEntry.request_id == request_id)
    )
    return result.scalar()


@pytest.mark.asyncio
async def test_create_starts_as_active_draft(db_session: AsyncSession, make_request, employee_id) -> None:
    created = await make_request(employee_id, amount="150.00")

    assert created.status == RequestStatus.DRAFT
    assert created.status_label == "Draft"
    assert created.active is True
    assert created.requested_amount == Decimal("150.00")
    assert created.approved_amount is None
    assert created.created_by == employee_id
    assert created.can_edit and created.can_cancel
    assert not created.can_approve and not created.can_pay
    # history only records status changes
    assert created.history == []
    assert await _history_count(db_session, created.id) == 0

    fetched = await service.get_request(db_session, created.id)
    assert fetched.id == created.id
    assert fetched.status == RequestStatus.DRAFT


@pytest.mark.asyncio
async def test_create_rejects_future_or_stale_expense_date(db_session: AsyncSession, employee_id) -> None:
    now = datetime.now(timezone.utc)
    for expense_date in (now + timedelta(days=1), now - timedelta(days=366)):
        payload = RequestCreate(
            requester_id=employee_id,
            title="Conference fee",
            expense_type=ExpenseType.OTHER,
            requested_amount=Decimal("80.00"),
            expense_date=expense_date,
        )
        with pytest.raises(InvalidArgumentError):
            await service.create_request(db_session, payload, employee_id)

    total = (await db_session.execute(select(func.count()).select_from(ReimbursementRequest))).scalar()
    assert total == 0


@pytest.mark.asyncio
async def test_create_rejects_blank_title(db_session: AsyncSession, employee_id) -> None:
    payload = RequestCreate(
        requester_id=employee_id,
        title="   ",
        expense_type=ExpenseType.FOOD,
        requested_amount=Decimal("12.50"),
        expense_date=datetime.now(timezone.utc),
    )
    with pytest.raises(InvalidArgumentError) as exc_info:
        await service.create_request(db_session, payload, employee_id)
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_full_approval_and_payment(db_session: AsyncSession, make_request, employee_id, analyst_id) -> None:
    """DRAFT -> PENDING_APPROVAL -> APPROVED (partial amount) -> PAID."""
    created = await make_request(employee_id, amount="150.00")

    submitted = await service.submit_request(db_session, created.id, employee_id, "Ana")
    assert submitted.status == RequestStatus.PENDING_APPROVAL
    assert submitted.can_approve

    approved = await service.approve_request(
        db_session, created.id, Decimal("120.00"), analyst_id, "Finance", note="Partial: receipt missing"
    )
    assert approved.status == RequestStatus.APPROVED
    assert approved.approved_amount == Decimal("120.00")
    assert approved.approved_by == analyst_id
    assert approved.approved_at is not None
    assert approved.approval_note == "Partial: receipt missing"
    assert approved.can_pay

    paid = await service.pay_request(db_session, created.id, analyst_id, "Finance", note="Wire 42")
    assert paid.status == RequestStatus.PAID
    assert paid.paid_by == analyst_id
    assert paid.paid_at is not None
    assert paid.payment_note == "Wire 42"
    assert paid.approved_amount <= paid.requested_amount

    transitions = [(h.previous_status, h.new_status) for h in paid.history]
    assert transitions == [
        (RequestStatus.DRAFT, RequestStatus.PENDING_APPROVAL),
        (RequestStatus.PENDING_APPROVAL, RequestStatus.APPROVED),
        (RequestStatus.APPROVED, RequestStatus.PAID),
    ]
    assert paid.history[0].actor_name == "Ana"
    assert paid.history[1].actor_id == analyst_id
    assert paid.history[-1].change_description == "Approved → Paid"


@pytest.mark.asyncio
async def test_approve_more_than_requested_changes_nothing(
    db_session: AsyncSession, make_request, employee_id, analyst_id
) -> None:
    created = await make_request(employee_id, amount="150.00")
    await service.submit_request(db_session, created.id, employee_id)

    with pytest.raises(InvalidArgumentError):
        await service.approve_request(db_session, created.id, Decimal("200.00"), analyst_id)

    current = await service.get_request(db_session, created.id)
    assert current.status == RequestStatus.PENDING_APPROVAL
    assert current.approved_amount is None
    assert len(current.history) == 1


@pytest.mark.asyncio
async def test_reject_requires_note(db_session: AsyncSession, make_request, employee_id, analyst_id) -> None:
    created = await make_request(employee_id)
    await service.submit_request(db_session, created.id, employee_id)

    with pytest.raises(InvalidArgumentError):
        await service.reject_request(db_session, created.id, "   ", analyst_id)

    rejected = await service.reject_request(db_session, created.id, "Not a business expense", analyst_id)
    assert rejected.status == RequestStatus.REJECTED
    assert rejected.approval_note == "Not a business expense"
    assert rejected.history[-1].note == "Not a business expense"

    with pytest.raises(InvalidStateError):
        await service.pay_request(db_session, created.id, analyst_id)


@pytest.mark.asyncio
async def test_approve_draft_is_invalid_state(db_session: AsyncSession, make_request, employee_id, analyst_id) -> None:
    created = await make_request(employee_id)

    with pytest.raises(InvalidStateError) as exc_info:
        await service.approve_request(db_session, created.id, Decimal("10.00"), analyst_id)
    assert exc_info.value.status_code == 400

    current = await service.get_request(db_session, created.id)
    assert current.status == RequestStatus.DRAFT
    assert current.history == []


@pytest.mark.asyncio
async def test_cancel_from_draft_and_pending(db_session: AsyncSession, make_request, employee_id) -> None:
    draft = await make_request(employee_id, title="Lunch")
    cancelled = await service.cancel_request(db_session, draft.id, "Duplicate", employee_id)
    assert cancelled.status == RequestStatus.CANCELLED
    assert cancelled.cancellation_reason == "Duplicate"
    assert cancelled.cancelled_at is not None

    pending = await make_request(employee_id, title="Dinner")
    await service.submit_request(db_session, pending.id, employee_id)
    cancelled = await service.cancel_request(db_session, pending.id, "Paid by client", employee_id)
    assert cancelled.status == RequestStatus.CANCELLED
    assert [h.new_status for h in cancelled.history] == [RequestStatus.PENDING_APPROVAL, RequestStatus.CANCELLED]


@pytest.mark.asyncio
async def test_cancel_requires_reason(db_session: AsyncSession, make_request, employee_id) -> None:
    created = await make_request(employee_id)
    with pytest.raises(InvalidArgumentError):
        await service.cancel_request(db_session, created.id, "", employee_id)


@pytest.mark.asyncio
async def test_approved_request_cannot_be_cancelled(
    db_session: AsyncSession, make_request, employee_id, analyst_id
) -> None:
    created = await make_request(employee_id, amount="60.00")
    await service.submit_request(db_session, created.id, employee_id)
    await service.approve_request(db_session, created.id, Decimal("60.00"), analyst_id)

    with pytest.raises(InvalidStateError):
        await service.cancel_request(db_session, created.id, "Changed my mind", employee_id)

    current = await service.get_request(db_session, created.id)
    assert current.status == RequestStatus.APPROVED


@pytest.mark.asyncio
async def test_paid_is_terminal(db_session: AsyncSession, make_request, employee_id, analyst_id) -> None:
    created = await make_request(employee_id, amount="40.00")
    await service.submit_request(db_session, created.id, employee_id)
    await service.approve_request(db_session, created.id, Decimal("40.00"), analyst_id)
    await service.pay_request(db_session, created.id, analyst_id)

    with pytest.raises(InvalidStateError):
        await service.pay_request(db_session, created.id, analyst_id)
    with pytest.raises(InvalidStateError):
        await service.update_request(db_session, created.id, RequestUpdate(title="Edited"), employee_id)

    assert await _history_count(db_session, created.id) == 3


@pytest.mark.asyncio
async def test_update_draft_keeps_omitted_fields(db_session: AsyncSession, make_request, employee_id) -> None:
    created = await make_request(employee_id, title="Train", amount="30.00", description="Return ticket")

    updated = await service.update_request(
        db_session,
        created.id,
        RequestUpdate(requested_amount=Decimal("35.00"), expense_type=ExpenseType.TRANSPORT),
        employee_id,
    )
    assert updated.requested_amount == Decimal("35.00")
    assert updated.title == "Train"
    assert updated.description == "Return ticket"
    assert updated.status == RequestStatus.DRAFT
    assert updated.history == []


@pytest.mark.asyncio
async def test_update_rejects_future_date(db_session: AsyncSession, make_request, employee_id) -> None:
    created = await make_request(employee_id)
    future = datetime.now(timezone.utc) + timedelta(days=2)
    with pytest.raises(InvalidArgumentError):
        await service.update_request(db_session, created.id, RequestUpdate(expense_date=future), employee_id)


@pytest.mark.asyncio
async def test_update_after_submit_is_invalid_state(db_session: AsyncSession, make_request, employee_id) -> None:
    created = await make_request(employee_id, title="Parking")
    await service.submit_request(db_session, created.id, employee_id)

    with pytest.raises(InvalidStateError):
        await service.update_request(db_session, created.id, RequestUpdate(title="Parking garage"), employee_id)

    current = await service.get_request(db_session, created.id)
    assert current.title == "Parking"


@pytest.mark.asyncio
async def test_soft_delete_hides_request(db_session: AsyncSession, make_request, employee_id) -> None:
    created = await make_request(employee_id)

    assert await service.delete_request(db_session, created.id, employee_id) is True
    assert await service.get_request(db_session, created.id) is None
    assert await service.delete_request(db_session, created.id, employee_id) is False

    # the row is kept, only flagged inactive
    row = await db_session.get(ReimbursementRequest, created.id)
    assert row is not None
    assert row.active is False


@pytest.mark.asyncio
async def test_delete_after_submit_is_invalid_state(db_session: AsyncSession, make_request, employee_id) -> None:
    created = await make_request(employee_id)
    await service.submit_request(db_session, created.id, employee_id)
    with pytest.raises(InvalidStateError):
        await service.delete_request(db_session, created.id, employee_id)


@pytest.mark.asyncio
async def test_unknown_request_returns_none(db_session: AsyncSession, analyst_id) -> None:
    missing = uuid4()
    assert await service.get_request(db_session, missing) is None
    assert await service.get_history(db_session, missing) is None
    assert await service.submit_request(db_session, missing, analyst_id) is None
    assert await service.approve_request(db_session, missing, Decimal("1.00"), analyst_id) is None
    assert await service.reject_request(db_session, missing, "no", analyst_id) is None
    assert await service.pay_request(db_session, missing, analyst_id) is None
    assert await service.cancel_request(db_session, missing, "no", analyst_id) is None
    assert await service.update_request(db_session, missing, RequestUpdate(title="x"), analyst_id) is None


@pytest.mark.asyncio
async def test_reads_do_not_change_state(db_session: AsyncSession, make_request, employee_id) -> None:
    created = await make_request(employee_id)
    await make_request(employee_id, title="Second")
    first = await service.get_request(db_session, created.id)
    second = await service.get_request(db_session, created.id)
    assert first == second

    first_page = await service.list_requests(db_session, RequestFilter(requester_id=employee_id))
    second_page = await service.list_requests(db_session, RequestFilter(requester_id=employee_id))
    assert first_page.total == 2
    assert first_page == second_page


@pytest.mark.asyncio
async def test_transitions_enqueue_notifications(
    db_session: AsyncSession, make_request, notifier, employee_id, analyst_id
) -> None:
    created = await make_request(employee_id, amount="75.00")
    await service.submit_request(db_session, created.id, employee_id)
    await service.approve_request(db_session, created.id, Decimal("70.00"), analyst_id, notifier=notifier)
    await service.pay_request(db_session, created.id, analyst_id, notifier=notifier)

    queued = [notifier.queue.get_nowait() for _ in range(notifier.queue.qsize())]
    assert [n.event for n in queued] == [NotificationEvent.APPROVED, NotificationEvent.PAID]
    assert all(n.recipient_id == employee_id for n in queued)
    assert all(n.request_id == created.id for n in queued)
    assert queued[0].details["approved_amount"] == "70.00"


@pytest.mark.asyncio
async def test_failing_notifier_does_not_fail_transition(
    db_session: AsyncSession, make_request, employee_id
) -> None:
    class BrokenNotifier:
        def notify(self, *args, **kwargs) -> None:
            raise RuntimeError("channel down")

    created = await make_request(employee_id)
    cancelled = await service.cancel_request(
        db_session, created.id, "Wrong trip", employee_id, notifier=BrokenNotifier()
    )
    assert cancelled.status == RequestStatus.CANCELLED


async def _failing(*args, **kwargs):
    raise OperationalError("statement", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_storage_failure_on_approve_rolls_back(
    db_session: AsyncSession, session_factory: async_sessionmaker, make_request, employee_id, analyst_id, monkeypatch
) -> None:
    created = await make_request(employee_id, amount="150.00")
    await service.submit_request(db_session, created.id, employee_id)

    monkeypatch.setattr(db_session, "commit", _failing)
    with pytest.raises(TransientError) as exc_info:
        await service.approve_request(db_session, created.id, Decimal("150.00"), analyst_id)
    assert exc_info.value.status_code == 503

    async with session_factory() as fresh:
        current = await service.get_request(fresh, created.id)
        assert current.status == RequestStatus.PENDING_APPROVAL
        assert current.approved_amount is None
        assert await _history_count(fresh, created.id) == 1


@pytest.mark.asyncio
async def test_storage_failure_on_create_leaves_no_row(
    db_session: AsyncSession, session_factory: async_sessionmaker, employee_id, monkeypatch
) -> None:
    payload = RequestCreate(
        requester_id=employee_id,
        title="Hotel night",
        expense_type=ExpenseType.LODGING,
        requested_amount=Decimal("95.00"),
        expense_date=datetime.now(timezone.utc) - timedelta(days=1),
    )
    monkeypatch.setattr(db_session, "commit", _failing)
    with pytest.raises(TransientError) as exc_info:
        await service.create_request(db_session, payload, employee_id)
    assert exc_info.value.status_code == 503

    async with session_factory() as fresh:
        total = (await fresh.execute(select(func.count()).select_from(ReimbursementRequest))).scalar()
        assert total == 0


@pytest.mark.asyncio
async def test_storage_failure_on_reads_is_transient(
    db_session: AsyncSession, make_request, employee_id, monkeypatch
) -> None:
    created = await make_request(employee_id)
    monkeypatch.setattr(db_session, "execute", _failing)

    with pytest.raises(TransientError):
        await service.get_request(db_session, created.id)
    with pytest.raises(TransientError):
        await service.get_history(db_session, created.id)
    with pytest.raises(TransientError):
        await service.list_requests(db_session, RequestFilter())
    with pytest.raises(TransientError):
        await service.list_pending_approval(db_session)
    with pytest.raises(TransientError) as exc_info:
        await statistics.get_statistics(db_session)
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_unknown_request_wins_over_bad_note(db_session: AsyncSession, analyst_id) -> None:
    """A missing request reads as not found, whatever the note looks like."""
    missing = uuid4()
    too_long = "n" * 501
    assert await service.reject_request(db_session, missing, "  ", analyst_id) is None
    assert await service.cancel_request(db_session, missing, "", analyst_id) is None
    assert await service.approve_request(db_session, missing, Decimal("1.00"), analyst_id, note=too_long) is None
    assert await service.pay_request(db_session, missing, analyst_id, note=too_long) is None


@pytest.mark.asyncio
async def test_update_can_clear_description(db_session: AsyncSession, make_request, employee_id) -> None:
    created = await make_request(employee_id, title="Fuel", description="Rental car refill")

    kept = await service.update_request(db_session, created.id, RequestUpdate(title="Fuel top-up"), employee_id)
    assert kept.description == "Rental car refill"

    cleared = await service.update_request(db_session, created.id, RequestUpdate(description=None), employee_id)
    assert cleared.description is None
    assert cleared.title == "Fuel top-up"
