"""Append-only audit trail of reimbursement status changes. One row per transition."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.core.enums import RequestStatus
from app.db.session import Base


class StatusHistoryEntry(Base):
    __tablename__ = "request_status_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id = Column(
        UUID(as_uuid=True),
        ForeignKey("reimbursement_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    previous_status = Column(String(30), nullable=False)
    new_status = Column(String(30), nullable=False)
    changed_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    actor_id = Column(UUID(as_uuid=True), nullable=False)
    actor_name = Column(String(100), nullable=True)
    note = Column(String(500), nullable=True)

    request = relationship("ReimbursementRequest", back_populates="history")

    @property
    def change_description(self) -> str:
        return f"{RequestStatus(self.previous_status).label} → {RequestStatus(self.new_status).label}"
