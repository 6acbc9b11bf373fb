from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AuthUser(BaseModel):
    """
    Represents an authenticated user decoded from a Supabase access token.

    Only identity comes from the token. Application roles (coach, client,
    admin) are looked up server-side and never read from claims.
    """

    user_id: str = Field(..., alias="sub")
    email: Optional[str] = None
    role: str = "authenticated"

    model_config = ConfigDict(populate_by_name=True)
