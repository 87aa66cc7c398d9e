"""Outline API client."""

from .client import (
    OutlineClient,
    OutlineError,
    WorkspaceMutationConflict,
    WorkspaceMutationError,
)
from .models import Collection, Group, Role, User

__all__ = [
    "OutlineClient",
    "OutlineError",
    "WorkspaceMutationConflict",
    "WorkspaceMutationError",
    "Collection",
    "Group",
    "Role",
    "User",
]
