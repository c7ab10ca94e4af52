from fastapi import Depends, HTTPException, status

from app.auth.dependencies import get_current_user
from app.auth.schemas import CurrentUser
from app.core.enums import UserRole


# Roles allowed to run the approval and payment side of the workflow.
PRIVILEGED_ROLES = (UserRole.ADMINISTRATOR.value, UserRole.FINANCIAL_ANALYST.value)


def is_privileged(current_user: CurrentUser) -> bool:
    return current_user.role in PRIVILEGED_ROLES


def require_roles(*roles: str):
    """
    Dependency factory to restrict an endpoint to the given roles.

    Example:
        Depends(require_roles(*PRIVILEGED_ROLES))
    """

    async def _checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return current_user

    return _checker
