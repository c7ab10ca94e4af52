from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class CurrentUser(BaseModel):
    """Authenticated caller as carried by the access token. Used as the actor of every workflow call."""

    id: UUID
    role: str
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or str(self.id)
