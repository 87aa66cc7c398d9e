"""Shared fixtures: in-memory Outline and directory clients."""

import itertools
from collections.abc import Iterable

import pytest

from outline_sync.config import AppConfig, DirectoryConfig, OutlineConfig, SyncConfig
from outline_sync.directory_client import (
    Authorization,
    DirectoryError,
    DirectoryLookupError,
    DirectoryNotFound,
    GroupMember,
    Person,
    Unit,
)
from outline_sync.outline_client import (
    Collection,
    Group,
    OutlineError,
    User,
    WorkspaceMutationError,
)
from outline_sync.sync import AllowlistPolicy, ReconciliationEngine, SnapshotCache

SERVICE_EMAIL = "admin@epfl.ch"
DIRECTORY_ADMIN_GROUP = "outline-admins"


class FakeOutline:
    """Outline workspace held in memory, exposing the OutlineClient methods."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.users: dict[str, User] = {}
        self.groups: dict[str, Group] = {}
        self.memberships: dict[str, list[str]] = {}
        self.collections: dict[str, Collection] = {}
        self.collection_groups: dict[str, dict[str, str]] = {}
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()
        self.fail_reads: set[str] = set()
        self.list_calls = 0

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _mutation(self, name: str, *args: object) -> None:
        if name in self.fail_on:
            raise WorkspaceMutationError(f"{name} failed", 500)
        self.calls.append((name, *args))

    def _read(self, name: str) -> None:
        if name in self.fail_reads:
            raise OutlineError(f"{name} failed", 500)

    # Seeding helpers

    def add_user(self, email: str, role: str = "member", suspended: bool = False) -> User:
        user = User(
            id=self._next_id("user"),
            name=email.split("@")[0],
            email=email,
            role=role,
            is_suspended=suspended,
        )
        self.users[user.id] = user
        return user

    def add_group(self, name: str, members: Iterable[User] = ()) -> Group:
        group = Group(id=self._next_id("group"), name=name)
        self.groups[group.id] = group
        self.memberships[group.id] = [u.id for u in members]
        return group

    def add_collection(self, name: str, linked: Iterable[Group] = ()) -> Collection:
        collection = Collection(id=self._next_id("coll"), name=name, permission="read")
        self.collections[collection.id] = collection
        self.collection_groups[collection.id] = {g.id: "read_write" for g in linked}
        return collection

    # Lookups for assertions

    def group_named(self, name: str) -> Group | None:
        return next((g for g in self.groups.values() if g.name == name), None)

    def collection_named(self, name: str) -> Collection | None:
        return next((c for c in self.collections.values() if c.name == name), None)

    def member_emails(self, group_name: str) -> set[str]:
        group = self.group_named(group_name)
        assert group is not None, f"group {group_name} does not exist"
        return {self.users[uid].email for uid in self.memberships[group.id]}

    def mutation_names(self) -> list[str]:
        return [c[0] for c in self.calls]

    # OutlineClient interface

    def auth_info(self) -> dict:
        return {"user": {"email": SERVICE_EMAIL}}

    def list_users(self, filter: str | None = "active") -> list[User]:
        self._read("list_users")
        self.list_calls += 1
        users = self.users.values()
        if filter == "active":
            users = [u for u in users if not u.is_suspended]
        return [u.model_copy() for u in users]

    def user_info(self, user_id: str) -> User:
        self._read("user_info")
        return self.users[user_id].model_copy()

    def update_user_role(self, user_id: str, role: str) -> None:
        self._mutation("update_user_role", user_id, role)
        self.users[user_id].role = role

    def suspend_user(self, user_id: str) -> None:
        self._mutation("suspend_user", user_id)
        self.users[user_id].is_suspended = True

    def list_groups(self) -> list[Group]:
        self._read("list_groups")
        self.list_calls += 1
        return [g.model_copy() for g in self.groups.values()]

    def create_group(self, name: str) -> Group | None:
        self._mutation("create_group", name)
        if self.group_named(name):
            return None
        return self.add_group(name).model_copy()

    def delete_group(self, group_id: str) -> None:
        self._mutation("delete_group", group_id)
        del self.groups[group_id]
        del self.memberships[group_id]
        for links in self.collection_groups.values():
            links.pop(group_id, None)

    def group_members(self, group_id: str) -> list[User]:
        self._read("group_members")
        return [self.users[uid].model_copy() for uid in self.memberships[group_id]]

    def add_group_member(self, group_id: str, user_id: str) -> bool:
        self._mutation("add_group_member", group_id, user_id)
        if user_id in self.memberships[group_id]:
            return False
        self.memberships[group_id].append(user_id)
        return True

    def remove_group_member(self, group_id: str, user_id: str) -> None:
        self._mutation("remove_group_member", group_id, user_id)
        self.memberships[group_id].remove(user_id)

    def list_collections(self) -> list[Collection]:
        self._read("list_collections")
        return [c.model_copy() for c in self.collections.values()]

    def create_collection(
        self, name: str, permission: str | None = "read", private: bool = False
    ) -> Collection | None:
        self._mutation("create_collection", name, permission, private)
        if self.collection_named(name):
            return None
        collection = self.add_collection(name)
        collection.permission = permission
        collection.private = private
        return collection.model_copy()

    def delete_collection(self, collection_id: str) -> None:
        self._mutation("delete_collection", collection_id)
        del self.collections[collection_id]
        del self.collection_groups[collection_id]

    def collection_group_memberships(self, collection_id: str) -> list[Group]:
        self._read("collection_group_memberships")
        return [self.groups[gid].model_copy() for gid in self.collection_groups[collection_id]]

    def add_collection_group(
        self, collection_id: str, group_id: str, permission: str = "read_write"
    ) -> bool:
        self._mutation("add_collection_group", collection_id, group_id, permission)
        links = self.collection_groups[collection_id]
        if group_id in links:
            return False
        links[group_id] = permission
        return True

    def close(self) -> None:
        pass


class FakeDirectory:
    """Directory held in memory, exposing the DirectoryClient methods."""

    def __init__(self) -> None:
        self._ids = itertools.count(100000)
        self.persons: dict[str, Person] = {}
        self.units: dict[str, list[Unit]] = {}
        self.groups: dict[str, list[GroupMember]] = {}
        self.authorizations: dict[str, list[Authorization]] = {}
        self.lookup_failures: set[str] = set()
        self.failing_groups: set[str] = set()
        self.reject_credentials = False
        self.calls: list[tuple] = []

    def add_person(self, email: str, units: Iterable[str] = ()) -> Person:
        person = Person(id=str(next(self._ids)), email=email, display_name=email.split("@")[0])
        self.persons[person.id] = person
        self.units[person.id] = [Unit(name=u) for u in units]
        return person

    def add_group(self, name: str, persons: Iterable[Person] = (), groups: Iterable[str] = ()):
        members = [GroupMember(id=p.id, email=p.email, name=p.display_name) for p in persons]
        members += [GroupMember(id=g, type="group", name=g) for g in groups]
        self.groups[name] = members

    def grant(self, right_id: str, person: Person, unit_name: str) -> None:
        self.authorizations.setdefault(right_id, []).append(
            Authorization(person_id=person.id, resource_name=unit_name)
        )

    def _check_credentials(self) -> None:
        if self.reject_credentials:
            raise DirectoryError("Directory API rejected the credentials", 401)

    def get_person(self, identifier: str) -> Person:
        self._check_credentials()
        if identifier.lower() in self.lookup_failures:
            raise DirectoryLookupError(f"GET /persons/{identifier} failed: timed out")
        if identifier in self.persons:
            return self.persons[identifier]
        for person in self.persons.values():
            if person.email_key == identifier.lower():
                return person
        raise DirectoryNotFound(f"No person found for {identifier}", 404)

    def get_units(self, person_id: str) -> list[Unit]:
        self._check_credentials()
        return list(self.units.get(person_id, []))

    def get_group_members(self, group_name: str, recursive: bool = True) -> list[Person]:
        self._check_credentials()
        if group_name in self.failing_groups:
            raise DirectoryLookupError(f"GET /groups/{group_name}/members failed", 503)
        persons: dict[str, Person] = {}
        visited: set[str] = set()
        queue = [group_name]
        while queue:
            group = queue.pop(0)
            if group in visited:
                continue
            visited.add(group)
            for member in self.groups.get(group, []):
                if member.is_group:
                    if recursive:
                        queue.append(member.id)
                elif member.id not in persons:
                    persons[member.id] = self.persons.get(member.id) or Person(
                        id=member.id, email=member.email
                    )
        return list(persons.values())

    def add_group_members(self, group_name: str, person_ids: Iterable[str]) -> None:
        ids = list(person_ids)
        self.calls.append(("add_group_members", group_name, ids))
        members = self.groups.setdefault(group_name, [])
        members += [GroupMember(id=pid) for pid in ids]

    def remove_group_member(self, group_name: str, person_id: str) -> None:
        self.calls.append(("remove_group_member", group_name, person_id))
        self.groups[group_name] = [m for m in self.groups[group_name] if m.id != person_id]

    def get_authorizations(self, right_id: str) -> list[Authorization]:
        self._check_credentials()
        if right_id in self.failing_groups:
            raise DirectoryLookupError("GET /authorizations failed", 503)
        return list(self.authorizations.get(right_id, []))

    def close(self) -> None:
        pass


@pytest.fixture
def outline() -> FakeOutline:
    fake = FakeOutline()
    fake.add_user(SERVICE_EMAIL, role="admin")
    return fake


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def settings() -> SyncConfig:
    return SyncConfig(directory_admin_group=DIRECTORY_ADMIN_GROUP)


@pytest.fixture
def make_engine(outline, directory, settings):
    """Build a fresh engine (with its own snapshot) over the shared fakes."""

    def _make(
        allowed_units: list[str] | None = None,
        sync_settings: SyncConfig | None = None,
    ) -> ReconciliationEngine:
        return ReconciliationEngine(
            outline,
            directory,
            SnapshotCache(outline),
            AllowlistPolicy(allowed_units),
            sync_settings or settings,
            service_email=SERVICE_EMAIL,
        )

    return _make


@pytest.fixture
def app_config(settings) -> AppConfig:
    return AppConfig(
        outline=OutlineConfig(base_url="https://wiki.example.org", api_token="outline-secret"),
        directory=DirectoryConfig(
            url="https://api.example.org/v1", username="sync", password="directory-secret"
        ),
        sync=settings,
    )
