from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.enums import ExpenseType, RequestStatus


# ----- Create / Update -----
class RequestCreate(BaseModel):
    requester_id: UUID
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    expense_type: ExpenseType
    requested_amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    expense_date: datetime = Field(..., description="When the expense happened; not in the future, at most a year old")


class RequestUpdate(BaseModel):
    """Editable fields of a DRAFT request; omitted fields keep their value."""

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    expense_type: Optional[ExpenseType] = None
    requested_amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    expense_date: Optional[datetime] = None


# ----- Transitions -----
class RequestApprove(BaseModel):
    approved_amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    note: Optional[str] = Field(None, max_length=500)


class RequestReject(BaseModel):
    note: str = Field(..., min_length=1, max_length=500, description="Reason for rejection")


class RequestPay(BaseModel):
    note: Optional[str] = Field(None, max_length=500)


class RequestCancel(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


# ----- Responses -----
class AttachmentResponse(BaseModel):
    id: UUID
    request_id: UUID
    file_name: str
    original_file_name: str
    content_type: str
    size_bytes: int
    formatted_size: str
    description: Optional[str] = None
    is_image: bool
    is_pdf: bool
    created_at: datetime

    class Config:
        from_attributes = True


class HistoryEntryResponse(BaseModel):
    id: UUID
    request_id: UUID
    previous_status: RequestStatus
    new_status: RequestStatus
    change_description: str
    changed_at: datetime
    actor_id: UUID
    actor_name: Optional[str] = None
    note: Optional[str] = None

    class Config:
        from_attributes = True


class RequestSummary(BaseModel):
    id: UUID
    requester_id: UUID
    title: str
    expense_type: ExpenseType
    requested_amount: Decimal
    approved_amount: Optional[Decimal] = None
    expense_date: datetime
    status: RequestStatus
    status_label: str
    created_at: datetime
    attachment_count: int = 0


class RequestResponse(RequestSummary):
    description: Optional[str] = None
    approval_note: Optional[str] = None
    approved_by: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    payment_note: Optional[str] = None
    paid_by: Optional[UUID] = None
    paid_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    active: bool
    created_by: Optional[UUID] = None
    updated_by: Optional[UUID] = None
    updated_at: datetime
    can_edit: bool
    can_cancel: bool
    can_approve: bool
    can_pay: bool
    attachments: List[AttachmentResponse] = []
    history: List[HistoryEntryResponse] = []


# ----- Statistics -----
class RequestStatistics(BaseModel):
    total_requests: int = 0
    draft: int = 0
    pending_approval: int = 0
    approved: int = 0
    paid: int = 0
    rejected: int = 0
    cancelled: int = 0
    total_requested: Decimal = Decimal("0")
    total_approved: Decimal = Decimal("0")
    total_paid: Decimal = Decimal("0")


class RequesterTotals(BaseModel):
    requester_id: UUID
    total_requests: int
    total_requested: Decimal
    total_approved: Decimal
