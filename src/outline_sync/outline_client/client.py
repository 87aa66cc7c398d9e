"""Outline API client."""

from __future__ import annotations

import logging
import random
import time
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from .models import Collection, Group, Role, User

T = TypeVar("T", bound=BaseModel)

logger = logging.getLogger(__name__)

# Retry configuration
RETRY_STATUS_CODES = {429, 502, 503, 504}
MAX_RETRIES = 3
MAX_RETRY_DELAY = 16
PAGE_SIZE = 100

# Fragments of Outline validation messages that mean the change is already in place
_CONFLICT_MARKERS = ("already a member", "already exists", "already been taken")


class OutlineError(Exception):
    """Base exception for Outline API errors."""

    def __init__(self, message: str, status_code: int | None = None, response: Any = None):
        full_message = message
        if response:
            full_message = f"{message} - Response: {str(response)[:500]}"
        super().__init__(full_message)
        self.status_code = status_code
        self.response = response


class WorkspaceMutationError(OutlineError):
    """A create/add/remove/delete/update call failed."""


class WorkspaceMutationConflict(OutlineError):
    """The mutation was already applied ("already a member", "already exists")."""


def _is_conflict(response: httpx.Response) -> bool:
    if response.status_code == 409:
        return True
    if response.status_code != 400:
        return False
    try:
        body = response.json()
    except ValueError:
        return False
    message = str(body.get("message") or body.get("error") or "").lower()
    return any(marker in message for marker in _CONFLICT_MARKERS)


class OutlineClient:
    """Synchronous client for the Outline RPC API."""

    def __init__(
        self,
        base_url: str,
        api_token: str,
        timeout: float = 10.0,
        max_retries: int = MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the Outline client.

        Args:
            base_url: API root (e.g., https://wiki.example.org/api)
            api_token: Outline API token
            timeout: Request timeout in seconds
            max_retries: Attempts made for rate-limited or unavailable responses
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self.max_retries = max_retries
        self._transport = transport
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> OutlineClient:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def _request(self, path: str, json: dict[str, Any] | None = None) -> Any:
        """POST to an RPC endpoint and return the decoded body."""
        logger.debug("Outline API request: POST %s", path)
        try:
            response = self.client.post(path, json=json or {})
        except httpx.HTTPError as e:
            raise OutlineError(f"POST {path} failed: {e}") from e

        if response.status_code == 401:
            raise OutlineError("Unauthorized - check your OUTLINE_API_TOKEN", 401)
        if response.status_code == 403:
            raise OutlineError(f"Forbidden - insufficient permissions for {path}", 403)
        if _is_conflict(response):
            raise WorkspaceMutationConflict(
                f"Already applied: {path}", response.status_code, response.text
            )
        if response.status_code >= 400:
            raise OutlineError(
                f"API error on {path}: {response.status_code}",
                response.status_code,
                response.text,
            )

        if not response.content:
            return None
        return response.json()

    def _request_with_retry(self, path: str, json: dict[str, Any] | None = None) -> Any:
        """
        POST with exponential backoff retry.

        Retries on 429 (rate limit), 502, 503, 504 (server errors) with
        backoff 1s, 2s, 4s... capped at MAX_RETRY_DELAY plus 0-1s jitter.
        """
        for retry_count in range(self.max_retries):
            try:
                return self._request(path, json=json)
            except OutlineError as e:
                if e.status_code not in RETRY_STATUS_CODES:
                    raise
                if retry_count >= self.max_retries - 1:
                    raise

                delay = min(2**retry_count, MAX_RETRY_DELAY) + random.uniform(0, 1)
                logger.warning(
                    f"Outline request failed ({e.status_code}), "
                    f"retry {retry_count + 1}/{self.max_retries} in {delay:.1f}s"
                )
                time.sleep(delay)

        raise OutlineError("Max retries exceeded", None)

    def _mutate(self, path: str, json: dict[str, Any]) -> Any:
        """Run a state-changing call, surfacing failures as WorkspaceMutationError."""
        try:
            payload = self._request_with_retry(path, json=json)
        except WorkspaceMutationConflict:
            raise
        except OutlineError as e:
            raise WorkspaceMutationError(str(e), e.status_code) from e
        return (payload or {}).get("data")

    def _parse(self, model: type[T], data: Any, path: str) -> T:
        """Validate a single-object payload, surfacing bad shapes as OutlineError."""
        try:
            return model.model_validate(data or {})
        except ValidationError as e:
            raise OutlineError(f"Unexpected payload from {path}: {e}") from e

    def _paginate(
        self,
        path: str,
        model: type[T],
        body: dict[str, Any] | None = None,
        key: str | None = None,
        limit: int = PAGE_SIZE,
    ) -> list[T]:
        """
        Fetch every page of a list endpoint.

        Args:
            path: RPC endpoint
            model: Pydantic model class to parse results
            body: Extra request body fields
            key: Key holding the items when ``data`` is an object rather than a list
            limit: Items per page
        """
        items: list[T] = []
        offset = 0

        while True:
            payload = self._request_with_retry(
                path, json={**(body or {}), "offset": offset, "limit": limit}
            )
            data = (payload or {}).get("data") or []
            if isinstance(data, dict):
                data = data.get(key or "", []) or []

            for raw in data:
                if not raw:
                    continue
                try:
                    items.append(model.model_validate(raw))
                except ValidationError as validation_error:
                    logger.warning(f"Skipping invalid item from {path}: {validation_error}")

            # Stop when the API returns fewer items than we asked for (last page)
            if len(data) < limit:
                break
            offset += limit
            logger.debug(f"Pagination: {path} fetched {len(items)} items so far")

        return items

    # ==================== Auth ====================

    def auth_info(self) -> dict[str, Any]:
        """Get the authenticated user and team."""
        payload = self._request_with_retry("/auth.info")
        return (payload or {}).get("data") or {}

    # ==================== Users ====================

    def list_users(self, filter: str | None = "active") -> list[User]:
        """List users, by default only active (non-suspended) ones."""
        body = {"filter": filter} if filter else {}
        return self._paginate("/users.list", User, body)

    def user_info(self, user_id: str) -> User:
        """Get a single user."""
        payload = self._request_with_retry("/users.info", json={"id": user_id})
        return self._parse(User, (payload or {}).get("data"), "/users.info")

    def update_user_role(self, user_id: str, role: Role) -> None:
        """Change a user's role (admin, member, viewer)."""
        self._mutate("/users.update_role", {"id": user_id, "role": role})

    def suspend_user(self, user_id: str) -> None:
        """Suspend a user."""
        self._mutate("/users.suspend", {"id": user_id})

    # ==================== Groups ====================

    def list_groups(self) -> list[Group]:
        """List all groups."""
        return self._paginate("/groups.list", Group, key="groups")

    def create_group(self, name: str) -> Group | None:
        """Create a group. Returns None when a group with that name already exists."""
        try:
            data = self._mutate("/groups.create", {"name": name})
        except WorkspaceMutationConflict:
            logger.warning("Group '%s' already exists", name)
            return None
        return self._parse(Group, data, "/groups.create")

    def delete_group(self, group_id: str) -> None:
        """Delete a group."""
        self._mutate("/groups.delete", {"id": group_id})

    def group_members(self, group_id: str) -> list[User]:
        """List the users in a group."""
        return self._paginate("/groups.memberships", User, {"id": group_id}, key="users")

    def add_group_member(self, group_id: str, user_id: str) -> bool:
        """Add a user to a group. Returns False if the user was already a member."""
        try:
            self._mutate("/groups.add_user", {"id": group_id, "userId": user_id})
        except WorkspaceMutationConflict:
            logger.debug("User %s is already a member of group %s", user_id, group_id)
            return False
        return True

    def remove_group_member(self, group_id: str, user_id: str) -> None:
        """Remove a user from a group."""
        self._mutate("/groups.remove_user", {"id": group_id, "userId": user_id})

    # ==================== Collections ====================

    def list_collections(self) -> list[Collection]:
        """List all collections."""
        return self._paginate("/collections.list", Collection)

    def create_collection(
        self,
        name: str,
        permission: str | None = "read",
        private: bool = False,
    ) -> Collection | None:
        """Create a collection. Returns None when one with that name already exists."""
        try:
            data = self._mutate(
                "/collections.create",
                {"name": name, "permission": permission, "private": private},
            )
        except WorkspaceMutationConflict:
            logger.warning("Collection '%s' already exists", name)
            return None
        return self._parse(Collection, data, "/collections.create")

    def delete_collection(self, collection_id: str) -> None:
        """Delete a collection and its documents."""
        self._mutate("/collections.delete", {"id": collection_id})

    def collection_group_memberships(self, collection_id: str) -> list[Group]:
        """List the groups a collection is shared with."""
        return self._paginate(
            "/collections.group_memberships", Group, {"id": collection_id}, key="groups"
        )

    def add_collection_group(
        self,
        collection_id: str,
        group_id: str,
        permission: str = "read_write",
    ) -> bool:
        """Share a collection with a group. Returns False if it already was."""
        try:
            self._mutate(
                "/collections.add_group",
                {"id": collection_id, "groupId": group_id, "permission": permission},
            )
        except WorkspaceMutationConflict:
            return False
        return True
