from app.core.models.reimbursement_request import ReimbursementRequest
from app.core.models.request_attachment import RequestAttachment
from app.core.models.request_status_history import StatusHistoryEntry

__all__ = [
    "ReimbursementRequest",
    "RequestAttachment",
    "StatusHistoryEntry",
]
