import uuid
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class AuthUser(BaseModel):
    """
    Represents an authenticated user from a Supabase JWT.

    Organization membership is carried in ``app_metadata`` (set server-side by
    the auth provider, not editable by the user): ``org_id`` and ``org_role``.
    """

    user_id: str = Field(..., alias="sub")
    email: Optional[EmailStr] = None
    role: str = "authenticated"
    app_metadata: dict = Field(default_factory=dict)

    model_config = {"populate_by_name": True}

    @property
    def org_id(self) -> Optional[uuid.UUID]:
        raw = self.app_metadata.get("org_id")
        if not raw:
            return None
        try:
            return uuid.UUID(str(raw))
        except ValueError:
            return None

    @property
    def org_role(self) -> Optional[str]:
        return self.app_metadata.get("org_role")
