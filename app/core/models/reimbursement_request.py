"""Reimbursement request: the aggregate whose status is driven by the workflow engine."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.enums import RequestStatus
from app.db.session import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReimbursementRequest(Base):
    __tablename__ = "reimbursement_requests"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    requester_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(String(1000), nullable=True)
    expense_type = Column(String(30), nullable=False)
    requested_amount = Column(Numeric(12, 2), nullable=False)
    approved_amount = Column(Numeric(12, 2), nullable=True)
    expense_date = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(30), nullable=False, default=RequestStatus.DRAFT.value, index=True)

    approval_note = Column(Text, nullable=True)
    approved_by = Column(UUID(as_uuid=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    payment_note = Column(Text, nullable=True)
    paid_by = Column(UUID(as_uuid=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    active = Column(Boolean, nullable=False, default=True, index=True)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    updated_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    attachments = relationship(
        "RequestAttachment",
        back_populates="request",
        cascade="all",
        passive_deletes=True,
        order_by="RequestAttachment.created_at",
    )
    history = relationship(
        "StatusHistoryEntry",
        back_populates="request",
        cascade="all",
        passive_deletes=True,
        order_by="StatusHistoryEntry.changed_at",
    )

    # UPDATEs carry "WHERE version = <loaded>"; a concurrent writer makes the flush raise StaleDataError.
    __mapper_args__ = {"version_id_col": version}

    @property
    def current_status(self) -> RequestStatus:
        return RequestStatus(self.status)
