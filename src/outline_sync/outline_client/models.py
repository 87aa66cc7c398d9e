"""Pydantic models for Outline API entities."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

Role = Literal["admin", "member", "viewer", "guest"]


class User(BaseModel):
    """Outline user."""

    id: str
    name: str = ""
    email: str = ""
    role: Role = "member"
    is_suspended: bool = Field(default=False, alias="isSuspended")
    last_active_at: datetime | None = Field(default=None, alias="lastActiveAt")

    model_config = {"populate_by_name": True}

    @property
    def email_key(self) -> str:
        """Lowercased email used for matching against directory persons."""
        return self.email.strip().lower()

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Group(BaseModel):
    """Outline group."""

    id: str
    name: str
    member_count: int = Field(default=0, alias="memberCount")

    model_config = {"populate_by_name": True}


class Collection(BaseModel):
    """Outline collection."""

    id: str
    name: str
    permission: str | None = None
    private: bool | None = None

    model_config = {"populate_by_name": True}
