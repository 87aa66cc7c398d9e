"""Pydantic models for directory API entities."""

from pydantic import BaseModel, Field, field_validator


class Unit(BaseModel):
    """Organizational unit a person is affiliated with."""

    id: str | None = None
    name: str
    label: str | None = None

    model_config = {"populate_by_name": True}

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: object) -> object:
        return str(v) if v is not None else v


class Person(BaseModel):
    """Directory person."""

    id: str
    email: str | None = None
    display_name: str | None = Field(default=None, alias="display")
    units: list[Unit] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: object) -> object:
        return str(v) if v is not None else v

    @property
    def email_key(self) -> str:
        """Lowercased email used for matching against Outline users."""
        return (self.email or "").strip().lower()


class GroupMember(BaseModel):
    """Entry of a directory group member listing (a person or a nested group)."""

    id: str
    type: str = "person"
    email: str | None = None
    name: str | None = None

    model_config = {"populate_by_name": True}

    @field_validator("id", mode="before")
    @classmethod
    def _id_to_str(cls, v: object) -> object:
        return str(v) if v is not None else v

    @property
    def is_group(self) -> bool:
        return self.type == "group"


class Authorization(BaseModel):
    """A right granted to a person on a resource (a unit)."""

    person_id: str = Field(alias="persid")
    resource_id: str | None = Field(default=None, alias="resourceid")
    resource_name: str = Field(alias="reslabel")

    model_config = {"populate_by_name": True}

    @field_validator("person_id", "resource_id", mode="before")
    @classmethod
    def _id_to_str(cls, v: object) -> object:
        return str(v) if v is not None else v
