"""Per-run memo of Outline listings."""

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from ..outline_client import OutlineClient, User

logger = logging.getLogger(__name__)


class SnapshotKind(str, Enum):
    USERS = "users"
    GROUPS = "groups"
    COLLECTIONS = "collections"


class SnapshotCache:
    """
    Memoizes Outline listings for the lifetime of one sync run.

    ``get(kind)`` fetches on first use and after ``invalidate(kind)``; any
    mutation that changes a listing must invalidate it so the next read sees
    the change. Group member lists are memoized the same way through
    ``members()`` and ``invalidate_members()``. Nothing is persisted.
    """

    def __init__(self, client: OutlineClient):
        self.client = client
        self._fetchers: dict[SnapshotKind, Callable[[], list[Any]]] = {
            SnapshotKind.USERS: self._fetch_active_users,
            SnapshotKind.GROUPS: client.list_groups,
            SnapshotKind.COLLECTIONS: client.list_collections,
        }
        self._data: dict[SnapshotKind, list[Any]] = {}
        self._members: dict[str, list[User]] = {}

    def _fetch_active_users(self) -> list[User]:
        return [u for u in self.client.list_users() if not u.is_suspended]

    def get(self, kind: SnapshotKind | str) -> list[Any]:
        """Return the cached listing for ``kind``, fetching it if needed."""
        kind = SnapshotKind(kind)
        if kind not in self._data:
            self._data[kind] = self._fetchers[kind]()
            logger.debug("Fetched %d %s", len(self._data[kind]), kind.value)
        return self._data[kind]

    def invalidate(self, kind: SnapshotKind | str) -> None:
        self._data.pop(SnapshotKind(kind), None)

    def invalidate_all(self) -> None:
        self._data.clear()
        self._members.clear()

    def members(self, group_id: str) -> list[User]:
        """Return the cached member list of a group, fetching it if needed."""
        if group_id not in self._members:
            self._members[group_id] = self.client.group_members(group_id)
        return self._members[group_id]

    def invalidate_members(self, group_id: str | None = None) -> None:
        if group_id is None:
            self._members.clear()
        else:
            self._members.pop(group_id, None)
