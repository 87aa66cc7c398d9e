"""Organizational directory API client."""

from .client import (
    DirectoryClient,
    DirectoryError,
    DirectoryLookupError,
    DirectoryNotFound,
)
from .models import Authorization, GroupMember, Person, Unit

__all__ = [
    "DirectoryClient",
    "DirectoryError",
    "DirectoryLookupError",
    "DirectoryNotFound",
    "Authorization",
    "GroupMember",
    "Person",
    "Unit",
]
