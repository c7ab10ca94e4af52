from enum import Enum


class RequestStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]


_STATUS_LABELS = {
    RequestStatus.DRAFT: "Draft",
    RequestStatus.PENDING_APPROVAL: "Pending approval",
    RequestStatus.APPROVED: "Approved",
    RequestStatus.REJECTED: "Rejected",
    RequestStatus.PAID: "Paid",
    RequestStatus.CANCELLED: "Cancelled",
}


class ExpenseType(str, Enum):
    FUEL = "FUEL"
    FOOD = "FOOD"
    TRANSPORT = "TRANSPORT"
    LODGING = "LODGING"
    OFFICE_SUPPLIES = "OFFICE_SUPPLIES"
    OTHER = "OTHER"


class RequestOperation(str, Enum):
    UPDATE = "UPDATE"
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    PAY = "PAY"
    CANCEL = "CANCEL"
    DELETE = "DELETE"


class NotificationEvent(str, Enum):
    APPROVED = "REQUEST_APPROVED"
    REJECTED = "REQUEST_REJECTED"
    PAID = "REQUEST_PAID"
    CANCELLED = "REQUEST_CANCELLED"


class UserRole(str, Enum):
    ADMINISTRATOR = "ADMINISTRATOR"
    FINANCIAL_ANALYST = "FINANCIAL_ANALYST"
    EMPLOYEE = "EMPLOYEE"
