"""Organizational directory API client."""

from __future__ import annotations

import logging
import random
import time
from collections import deque
from collections.abc import Iterable
from typing import Any

import httpx
from pydantic import ValidationError

from .models import Authorization, GroupMember, Person, Unit

logger = logging.getLogger(__name__)

# Retry configuration
RETRY_STATUS_CODES = {429, 502, 503, 504}
MAX_RETRIES = 3
MAX_RETRY_DELAY = 16


class DirectoryError(Exception):
    """Base exception for directory API errors.

    Raised as-is for authentication and authorization failures, which are
    configuration problems rather than per-entity lookup failures.
    """

    def __init__(self, message: str, status_code: int | None = None, response: Any = None):
        full_message = message
        if response:
            full_message = f"{message} - Response: {str(response)[:500]}"
        super().__init__(full_message)
        self.status_code = status_code
        self.response = response


class DirectoryLookupError(DirectoryError):
    """A single lookup failed (timeout, transport error, server error)."""


class DirectoryNotFound(DirectoryError):
    """The requested person or group does not exist in the directory."""


class DirectoryClient:
    """Synchronous client for the organizational directory REST API."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 10.0,
        max_groups: int = 200,
        max_retries: int = MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the directory client.

        Args:
            base_url: Directory API base URL
            username: HTTP basic auth username
            password: HTTP basic auth password
            timeout: Request timeout in seconds
            max_groups: Maximum number of groups visited by a recursive expansion
            max_retries: Attempts made for rate-limited or unavailable responses
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_groups = max_groups
        self.max_retries = max_retries
        self._auth = (username, password)
        self._transport = transport
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.base_url,
                auth=self._auth,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> DirectoryClient:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Make an HTTP request to the API."""
        try:
            response = self.client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            raise DirectoryLookupError(f"{method} {path} failed: {e}") from e

        if response.status_code in (401, 403):
            raise DirectoryError(
                "Directory API rejected the credentials - check EPFL_API_USERNAME/PASSWORD",
                response.status_code,
            )
        if response.status_code == 404:
            raise DirectoryNotFound(f"Not found: {path}", 404)
        if response.status_code >= 400:
            raise DirectoryLookupError(
                f"API error: {response.status_code}",
                response.status_code,
                response.text,
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    def _request_with_retry(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """
        Make an HTTP request with exponential backoff retry.

        Retries on 429 (rate limit), 502, 503, 504 (server errors) with
        backoff 1s, 2s, 4s... capped at MAX_RETRY_DELAY plus 0-1s jitter.
        """
        for retry_count in range(self.max_retries):
            try:
                return self._request(method, path, params=params, json=json)
            except DirectoryLookupError as e:
                if e.status_code not in RETRY_STATUS_CODES:
                    raise
                if retry_count >= self.max_retries - 1:
                    raise

                delay = min(2**retry_count, MAX_RETRY_DELAY) + random.uniform(0, 1)
                logger.warning(
                    f"Directory request failed ({e.status_code}), "
                    f"retry {retry_count + 1}/{self.max_retries} in {delay:.1f}s"
                )
                time.sleep(delay)

        raise DirectoryLookupError("Max retries exceeded", None)

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self._request_with_retry("GET", path, params=params)

    # ==================== Persons ====================

    def get_person(self, identifier: str) -> Person:
        """
        Get a person by email or directory id.

        Raises:
            DirectoryNotFound: If the directory has no such person
            DirectoryLookupError: If the lookup failed
        """
        data = self._get(f"/persons/{identifier}")
        if not data or not data.get("id"):
            raise DirectoryNotFound(f"No person found for {identifier}", 404)
        return Person.model_validate(data)

    def get_units(self, person_id: str) -> list[Unit]:
        """Get the units a person is affiliated with."""
        data = self._get("/units", {"persid": person_id}) or {}
        units = [Unit.model_validate(u) for u in data.get("units") or [] if u]
        logger.debug("Directory returned %d unit(s) for person %s", len(units), person_id)
        return units

    # ==================== Groups ====================

    def _list_group_members(self, group: str) -> list[GroupMember]:
        data = self._get(f"/groups/{group}/members") or {}
        return [GroupMember.model_validate(m) for m in data.get("members") or [] if m]

    def get_group_members(self, group_name: str, recursive: bool = True) -> list[Person]:
        """
        Get the persons belonging to a directory group.

        With ``recursive`` set, nested groups are expanded breadth-first over
        a visited set of group identifiers, so cycles terminate and no group
        is fetched twice. At most ``max_groups`` groups are visited. Persons
        are deduplicated by id and returned in discovery order.
        """
        persons: dict[str, Person] = {}
        visited: set[str] = set()
        queue: deque[str] = deque([group_name])

        while queue:
            group = queue.popleft()
            if group in visited:
                continue
            if len(visited) >= self.max_groups:
                logger.warning(
                    "Stopped expanding %s after %d groups (%d still queued)",
                    group_name,
                    len(visited),
                    len(queue) + 1,
                )
                break
            visited.add(group)

            for member in self._list_group_members(group):
                if member.is_group:
                    if recursive and member.id not in visited:
                        queue.append(member.id)
                elif member.id not in persons:
                    persons[member.id] = Person(
                        id=member.id,
                        email=member.email,
                        display_name=member.name,
                    )

        logger.debug(
            "Expanded directory group %s: %d person(s) across %d group(s)",
            group_name,
            len(persons),
            len(visited),
        )
        return list(persons.values())

    def add_group_members(self, group_name: str, person_ids: Iterable[str]) -> None:
        """Add persons to a directory group."""
        ids = list(person_ids)
        if not ids:
            return
        self._request_with_retry("POST", f"/groups/{group_name}/members", json={"ids": ids})

    def remove_group_member(self, group_name: str, person_id: str) -> None:
        """Remove a person from a directory group."""
        self._request_with_retry("DELETE", f"/groups/{group_name}/members/{person_id}")

    # ==================== Authorizations ====================

    def get_authorizations(self, right_id: str) -> list[Authorization]:
        """Get every authorization record granting the given right."""
        data = self._get("/authorizations", {"authid": right_id, "type": "right"}) or {}
        records = []
        for raw in data.get("authorizations") or []:
            if not raw:
                continue
            try:
                records.append(Authorization.model_validate(raw))
            except ValidationError as validation_error:
                logger.warning(f"Skipping invalid authorization record: {validation_error}")
        return records
