"""Reconciliation engine: converges Outline onto the organizational directory."""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TypeVar

from ..config import SyncConfig
from ..directory_client import (
    DirectoryClient,
    DirectoryError,
    DirectoryLookupError,
    DirectoryNotFound,
    Unit,
)
from ..outline_client import Collection, Group, OutlineClient, OutlineError, Role, User
from .allowlist import AllowlistPolicy
from .snapshot import SnapshotCache, SnapshotKind

logger = logging.getLogger(__name__)

PHASE_UNITS = "units"
PHASE_AUTHORIZATIONS = "authorizations"
PHASE_ADMINS = "admins"
PHASE_COLLECTIONS = "collections"

ROLE_ADMIN: Role = "admin"
ROLE_VIEWER: Role = "viewer"

NamedT = TypeVar("NamedT", Group, Collection)


class PhaseAborted(Exception):
    """A phase-critical step failed; the rest of the phase is skipped."""


@dataclass
class PhaseResult:
    """Result of one reconciliation phase."""

    phase: str
    groups_created: int = 0
    groups_deleted: int = 0
    groups_retained: int = 0
    members_added: int = 0
    members_removed: int = 0
    users_suspended: int = 0
    admins_promoted: int = 0
    admins_demoted: int = 0
    collections_created: int = 0
    collections_deleted: int = 0
    collections_linked: int = 0
    access_added: int = 0
    access_removed: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    aborted: bool = False
    duration_seconds: float = 0.0

    @property
    def mutations(self) -> int:
        """Number of changes applied to Outline and the directory."""
        return (
            self.groups_created
            + self.groups_deleted
            + self.members_added
            + self.members_removed
            + self.users_suspended
            + self.admins_promoted
            + self.admins_demoted
            + self.collections_created
            + self.collections_deleted
            + self.collections_linked
            + self.access_added
            + self.access_removed
        )

    @property
    def success(self) -> bool:
        return not self.aborted and len(self.errors) == 0

    def counters(self) -> dict[str, int]:
        """Non-zero counters, for summaries."""
        names = (
            "groups_created",
            "groups_deleted",
            "groups_retained",
            "members_added",
            "members_removed",
            "users_suspended",
            "admins_promoted",
            "admins_demoted",
            "collections_created",
            "collections_deleted",
            "collections_linked",
            "access_added",
            "access_removed",
        )
        return {n: getattr(self, n) for n in names if getattr(self, n)}


@dataclass
class AuthorizationGrants:
    """Authorization records for one right, restricted to allowed units."""

    person_ids: set[str] = field(default_factory=set)
    # person id -> {lowercased unit name: unit name as the directory spells it}
    units_by_person: dict[str, dict[str, str]] = field(default_factory=dict)
    # person id -> lowercased email (only persons the directory could resolve)
    emails: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def unit_names(self) -> set[str]:
        return {lname for units in self.units_by_person.values() for lname in units}

    def units_for_email(self, email: str) -> set[str]:
        units: set[str] = set()
        for person_id, person_email in self.emails.items():
            if person_email == email:
                units.update(self.units_by_person.get(person_id, {}))
        return units


def find_by_name(items: Iterable[NamedT], name: str) -> NamedT | None:
    """Find an item by exact name, falling back to a case-insensitive match."""
    items = list(items)
    for item in items:
        if item.name == name:
            return item
    lowered = name.lower()
    for item in items:
        if item.name.lower() == lowered:
            return item
    return None


class ReconciliationEngine:
    """
    Computes the desired Outline state from the directory and applies the diff.

    Each ``sync_*`` method is one phase and returns a :class:`PhaseResult`.
    Phases assume they run in the order units, authorizations, admins,
    collections (see :mod:`outline_sync.sync.orchestrator`). Errors on a
    single user, group or collection are recorded and the phase goes on;
    errors on phase-critical reads abort only the current phase.
    """

    def __init__(
        self,
        outline: OutlineClient,
        directory: DirectoryClient,
        snapshot: SnapshotCache,
        allowlist: AllowlistPolicy,
        settings: SyncConfig,
        service_email: str = "",
    ):
        """
        Initialize the engine.

        Args:
            outline: Outline API client
            directory: Directory API client
            snapshot: Per-run cache of Outline listings
            allowlist: Allowed-unit policy
            settings: Sync settings (admin group, allowlisted collections, ...)
            service_email: Outline account running the sync, never modified
        """
        self.outline = outline
        self.directory = directory
        self.snapshot = snapshot
        self.allowlist = allowlist
        self.settings = settings
        self.service_email = service_email.strip().lower()
        self.admin_group_key = settings.admin_group_name.lower()
        self._grants: AuthorizationGrants | None = None

    # ==================== Phase driver ====================

    def run_phase(self, phase: str) -> PhaseResult:
        """Run one phase by name."""
        phases: dict[str, Callable[[], PhaseResult]] = {
            PHASE_UNITS: self.sync_units,
            PHASE_AUTHORIZATIONS: self.sync_authorizations,
            PHASE_ADMINS: self.sync_admins,
            PHASE_COLLECTIONS: self.sync_collections,
        }
        if phase not in phases:
            raise ValueError(f"Unknown phase: {phase}")
        return phases[phase]()

    def _run(self, phase: str, body: Callable[[PhaseResult], None]) -> PhaseResult:
        result = PhaseResult(phase=phase)
        start = time.monotonic()
        try:
            body(result)
        except PhaseAborted as e:
            self._abort(result, str(e))
        except (OutlineError, DirectoryError) as e:
            self._abort(result, f"{type(e).__name__}: {e}")
        result.duration_seconds = time.monotonic() - start
        return result

    def _abort(self, result: PhaseResult, reason: str) -> None:
        result.aborted = True
        result.errors.append(reason)
        logger.error("Phase aborted: %s", reason, extra={"phase": result.phase})

    def _record_error(self, result: PhaseResult, action: str, exc: Exception, **extra: str) -> None:
        message = f"{action} failed: {exc}"
        result.errors.append(message)
        logger.error(message, extra={"phase": result.phase, **extra})

    def _warn(self, result: PhaseResult, message: str, **extra: object) -> None:
        result.warnings.append(message)
        logger.warning(message, extra={"phase": result.phase, **extra})

    # ==================== Shared lookups and mutations ====================

    def _is_admin_group(self, name: str) -> bool:
        return name.lower() == self.admin_group_key

    def _is_reserved_unit(self, unit_name: str, result: PhaseResult) -> bool:
        """A unit named like the admin group never drives admin group membership."""
        if not self._is_admin_group(unit_name):
            return False
        message = f"Unit '{unit_name}' has the admin group name, skipping its membership"
        if message not in result.warnings:
            self._warn(result, message, unit=unit_name)
        return True

    def _active_users(self) -> list[User]:
        return [
            u for u in self.snapshot.get(SnapshotKind.USERS) if u.email_key != self.service_email
        ]

    def _ensure_group(self, name: str, result: PhaseResult) -> Group | None:
        """Find a group by name or create it. Returns None if creation failed."""
        group = find_by_name(self.snapshot.get(SnapshotKind.GROUPS), name)
        if group is not None:
            return group

        logger.info("Creating group", extra={"phase": result.phase, "group_name": name})
        try:
            created = self.outline.create_group(name)
        except OutlineError as e:
            self._record_error(result, f"Creating group '{name}'", e, group_name=name)
            return None
        self.snapshot.invalidate(SnapshotKind.GROUPS)

        if created is None:
            # Outline reports it exists although our listing missed it
            return find_by_name(self.snapshot.get(SnapshotKind.GROUPS), name)

        result.groups_created += 1
        logger.info(
            "Group created",
            extra={"phase": result.phase, "group_id": created.id, "group_name": name},
        )
        return created

    def _group_members(self, group: Group, result: PhaseResult) -> list[User] | None:
        try:
            return self.snapshot.members(group.id)
        except OutlineError as e:
            self._record_error(
                result, f"Listing members of group '{group.name}'", e, group_name=group.name
            )
            return None

    def _ensure_member(self, group: Group, user: User, result: PhaseResult) -> None:
        """Add a user to a group unless already a member."""
        members = self._group_members(group, result)
        if members is not None and any(m.id == user.id for m in members):
            return

        extra = {"phase": result.phase, "group_name": group.name, "email": user.email}
        try:
            added = self.outline.add_group_member(group.id, user.id)
        except OutlineError as e:
            self._record_error(
                result, f"Adding {user.email} to group '{group.name}'", e, group_name=group.name
            )
            return
        self.snapshot.invalidate_members(group.id)

        if added:
            result.members_added += 1
            logger.info("User added to group", extra=extra)
        else:
            logger.info("User is already a member of group", extra=extra)

    def _remove_member(self, group: Group, user: User, result: PhaseResult, reason: str) -> None:
        extra = {
            "phase": result.phase,
            "group_name": group.name,
            "email": user.email,
            "reason": reason,
        }
        logger.info("Removing user from group", extra=extra)
        try:
            self.outline.remove_group_member(group.id, user.id)
        except OutlineError as e:
            self._record_error(
                result, f"Removing {user.email} from group '{group.name}'", e, group_name=group.name
            )
            return
        self.snapshot.invalidate_members(group.id)
        result.members_removed += 1

    def _delete_group_if_empty(self, group: Group, result: PhaseResult) -> None:
        """Delete an obsolete group, but only when it has no members right now."""
        try:
            # Read fresh, never from the snapshot, right before deciding
            members = self.outline.group_members(group.id)
        except OutlineError as e:
            self._record_error(
                result, f"Listing members of group '{group.name}'", e, group_name=group.name
            )
            return

        if members:
            result.groups_retained += 1
            self._warn(
                result,
                f"Obsolete group '{group.name}' still has {len(members)} member(s), not deleting",
                group_name=group.name,
                member_count=len(members),
            )
            return

        logger.info(
            "Deleting group as it is no longer needed",
            extra={"phase": result.phase, "group_id": group.id, "group_name": group.name},
        )
        try:
            self.outline.delete_group(group.id)
        except OutlineError as e:
            self._record_error(result, f"Deleting group '{group.name}'", e, group_name=group.name)
            return
        self.snapshot.invalidate(SnapshotKind.GROUPS)
        self.snapshot.invalidate_members(group.id)
        result.groups_deleted += 1

    # ==================== Units phase ====================

    def sync_units(self) -> PhaseResult:
        """Align unit groups and their memberships with directory affiliations."""
        return self._run(PHASE_UNITS, self._sync_units)

    def _lookup_units(self, user: User, result: PhaseResult) -> list[Unit] | None:
        """
        Get the allowed units of one Outline user.

        Returns an empty list for users the directory no longer knows (after
        suspending them) and None when the units could not be determined.
        """
        if not user.email_key:
            self._warn(result, f"User {user.id} has no email, skipping", user_id=user.id)
            return None

        try:
            person = self.directory.get_person(user.email)
        except DirectoryNotFound:
            self._suspend(user, result)
            return []
        except DirectoryLookupError as e:
            self._warn(result, f"Directory lookup failed for {user.email}: {e}", email=user.email)
            return None

        try:
            units = self.directory.get_units(person.id)
        except DirectoryNotFound:
            units = []
        except DirectoryLookupError as e:
            self._warn(result, f"Unit lookup failed for {user.email}: {e}", email=user.email)
            return None

        allowed = self.allowlist.filter(units)
        logger.info(
            "Retrieved units for user",
            extra={
                "phase": result.phase,
                "email": user.email,
                "person_id": person.id,
                "total_units": len(units),
                "allowed_units": len(allowed),
            },
        )
        return allowed

    def _suspend(self, user: User, result: PhaseResult) -> None:
        logger.warning(
            "Person no longer exists in the directory, suspending user",
            extra={"phase": result.phase, "email": user.email, "user_id": user.id},
        )
        try:
            self.outline.suspend_user(user.id)
        except OutlineError as e:
            self._record_error(result, f"Suspending {user.email}", e, email=user.email)
            return
        self.snapshot.invalidate(SnapshotKind.USERS)
        result.users_suspended += 1

    def _sync_units(self, result: PhaseResult) -> None:
        users = self._active_users()
        groups = self.snapshot.get(SnapshotKind.GROUPS)
        if not users:
            raise PhaseAborted("No active users found, sync cannot proceed")

        logger.info(
            "Starting user synchronization",
            extra={
                "phase": result.phase,
                "active_users": len(users),
                "existing_groups": len(groups),
                "allowed_units_mode": self.allowlist.describe(),
            },
        )

        # user id -> allowed units, None when unknown this run
        user_units: dict[str, list[Unit] | None] = {}
        for user in users:
            user_units[user.id] = self._lookup_units(user, result)

        valid_group_names = {self.admin_group_key}
        for user in users:
            for unit in user_units[user.id] or []:
                if self._is_reserved_unit(unit.name, result):
                    continue
                valid_group_names.add(unit.name.lower())
                group = self._ensure_group(unit.name, result)
                if group is not None:
                    self._ensure_member(group, user, result)

        grants: AuthorizationGrants | None = None
        if self.settings.authorizations_enabled:
            try:
                grants = self._authorization_grants()
            except DirectoryError as e:
                self._record_error(result, "Loading authorizations", e)
            else:
                valid_group_names |= grants.unit_names()

        self.snapshot.invalidate(SnapshotKind.GROUPS)
        for group in list(self.snapshot.get(SnapshotKind.GROUPS)):
            if self._is_admin_group(group.name) or group.name.lower() in valid_group_names:
                continue
            self._delete_group_if_empty(group, result)

        if self.settings.authorizations_enabled and grants is None:
            self._warn(result, "Authorizations unavailable, skipping membership removals")
            return

        users_by_id = {u.id: u for u in users}
        for group in list(self.snapshot.get(SnapshotKind.GROUPS)):
            group_key = group.name.lower()
            if self._is_admin_group(group.name) or group_key not in valid_group_names:
                continue

            members = self._group_members(group, result)
            for member in list(members or []):
                user = users_by_id.get(member.id)
                if user is None:
                    continue
                units = user_units.get(user.id)
                if units is None:
                    continue
                if any(u.name.lower() == group_key for u in units):
                    continue
                if grants is not None and group_key in grants.units_for_email(user.email_key):
                    continue
                self._remove_member(group, user, result, reason="unit affiliation ended")

        logger.info("User synchronization completed", extra={"phase": result.phase})

    # ==================== Authorizations phase ====================

    def sync_authorizations(self) -> PhaseResult:
        """Grant unit group access to holders of the configured right."""
        return self._run(PHASE_AUTHORIZATIONS, self._sync_authorizations)

    def _authorization_grants(self) -> AuthorizationGrants:
        """Load authorization grants once per run."""
        if self._grants is not None:
            return self._grants

        right_id = self.settings.authorization_right_id
        if not right_id:
            raise PhaseAborted("No authorization right configured")

        grants = AuthorizationGrants()
        records = self.directory.get_authorizations(right_id)
        for record in records:
            if not self.allowlist.is_allowed(record.resource_name):
                continue
            grants.person_ids.add(record.person_id)
            units = grants.units_by_person.setdefault(record.person_id, {})
            units.setdefault(record.resource_name.lower(), record.resource_name)

        for person_id in sorted(grants.person_ids):
            try:
                person = self.directory.get_person(person_id)
            except (DirectoryNotFound, DirectoryLookupError) as e:
                message = f"Cannot resolve authorized person {person_id}: {e}"
                grants.warnings.append(message)
                logger.warning(message, extra={"person_id": person_id})
                continue
            if person.email_key:
                grants.emails[person_id] = person.email_key

        logger.info(
            "Retrieved authorizations",
            extra={
                "records": len(records),
                "persons": len(grants.person_ids),
                "units": len(grants.unit_names()),
            },
        )
        self._grants = grants
        return grants

    def _sync_access_group(self, grants: AuthorizationGrants, result: PhaseResult) -> None:
        access_group = self.settings.access_group
        if not access_group:
            return

        try:
            current = {p.id for p in self.directory.get_group_members(access_group, recursive=False)}
        except DirectoryLookupError as e:
            self._record_error(result, f"Listing directory group '{access_group}'", e)
            return

        to_add = sorted(grants.person_ids - current)
        to_remove = sorted(current - grants.person_ids)
        extra = {"phase": result.phase, "directory_group": access_group}

        if to_add:
            logger.info("Adding persons to access group", extra={**extra, "person_ids": to_add})
            try:
                self.directory.add_group_members(access_group, to_add)
            except DirectoryError as e:
                self._record_error(result, f"Adding {len(to_add)} person(s) to '{access_group}'", e)
            else:
                result.access_added += len(to_add)

        for person_id in to_remove:
            logger.info("Removing person from access group", extra={**extra, "person_id": person_id})
            try:
                self.directory.remove_group_member(access_group, person_id)
            except DirectoryError as e:
                self._record_error(result, f"Removing {person_id} from '{access_group}'", e)
                continue
            result.access_removed += 1

    def _sync_authorizations(self, result: PhaseResult) -> None:
        grants = self._authorization_grants()
        result.warnings.extend(grants.warnings)

        self._sync_access_group(grants, result)

        users_by_email = {u.email_key: u for u in self._active_users()}
        for person_id in sorted(grants.units_by_person):
            email = grants.emails.get(person_id)
            user = users_by_email.get(email) if email else None
            if user is None:
                logger.debug(
                    "Authorized person has no Outline account",
                    extra={"phase": result.phase, "person_id": person_id},
                )
                continue
            for unit_name in grants.units_by_person[person_id].values():
                if self._is_reserved_unit(unit_name, result):
                    continue
                group = self._ensure_group(unit_name, result)
                if group is not None:
                    self._ensure_member(group, user, result)

        logger.info("Authorization synchronization completed", extra={"phase": result.phase})

    # ==================== Admins phase ====================

    def sync_admins(self) -> PhaseResult:
        """Align Outline admins and the admin group with the directory admin group."""
        return self._run(PHASE_ADMINS, self._sync_admins)

    def _promote(self, user: User, result: PhaseResult) -> None:
        extra = {"phase": result.phase, "email": user.email, "user_id": user.id}
        if user.is_admin:
            return
        # Confirm against the live record before writing
        current = self.outline.user_info(user.id)
        if current.is_admin:
            logger.info("User is already an admin", extra=extra)
            return

        logger.info("Making user an admin", extra=extra)
        try:
            self.outline.update_user_role(user.id, ROLE_ADMIN)
        except OutlineError as e:
            self._record_error(result, f"Promoting {user.email}", e, email=user.email)
            return
        self.snapshot.invalidate(SnapshotKind.USERS)
        result.admins_promoted += 1

    def _demote(self, user: User, result: PhaseResult) -> None:
        extra = {"phase": result.phase, "email": user.email, "user_id": user.id}
        current = self.outline.user_info(user.id)
        if not current.is_admin:
            logger.info("User is not an admin, no action needed", extra=extra)
            return

        logger.info("Removing admin role from user", extra=extra)
        try:
            self.outline.update_user_role(user.id, ROLE_VIEWER)
        except OutlineError as e:
            self._record_error(result, f"Demoting {user.email}", e, email=user.email)
            return
        self.snapshot.invalidate(SnapshotKind.USERS)
        result.admins_demoted += 1

    def _sync_admins(self, result: PhaseResult) -> None:
        admin_group = self._ensure_group(self.settings.admin_group_name, result)
        if admin_group is None:
            raise PhaseAborted(f"Admin group '{self.settings.admin_group_name}' is unavailable")

        directory_admins = self.directory.get_group_members(
            self.settings.directory_admin_group, recursive=True
        )
        admin_emails = {p.email_key for p in directory_admins if p.email_key}
        users = self._active_users()
        users_by_email = {u.email_key: u for u in users}

        logger.info(
            "Starting admin synchronization",
            extra={
                "phase": result.phase,
                "directory_admins": len(directory_admins),
                "outline_admins": sum(1 for u in users if u.is_admin),
            },
        )

        for person in directory_admins:
            user = users_by_email.get(person.email_key) if person.email_key else None
            if user is None:
                logger.warning(
                    "User not found for admin",
                    extra={"phase": result.phase, "email": person.email, "person_id": person.id},
                )
                continue
            self._ensure_member(admin_group, user, result)
            try:
                self._promote(user, result)
            except OutlineError as e:
                self._record_error(result, f"Reading role of {user.email}", e, email=user.email)

        admin_members = self._group_members(admin_group, result) or []
        admin_member_ids = {m.id for m in admin_members}
        for user in users:
            if not user.is_admin or user.email_key in admin_emails:
                continue
            try:
                self._demote(user, result)
            except OutlineError as e:
                self._record_error(result, f"Reading role of {user.email}", e, email=user.email)
            if user.id in admin_member_ids:
                self._remove_member(admin_group, user, result, reason="no longer a directory admin")

        # Drift: members that are not admins, or not directory admins
        self.snapshot.invalidate_members(admin_group.id)
        current_users = {u.id: u for u in self._active_users()}
        for member in list(self._group_members(admin_group, result) or []):
            if member.email_key == self.service_email:
                continue
            current = current_users.get(member.id, member)
            if current.is_admin and member.email_key in admin_emails:
                continue
            self._remove_member(admin_group, member, result, reason="not an admin")

        logger.info("Admin synchronization completed", extra={"phase": result.phase})

    # ==================== Collections phase ====================

    def sync_collections(self) -> PhaseResult:
        """Mirror unit groups as collections and drop collections left without a group."""
        return self._run(PHASE_COLLECTIONS, self._sync_collections)

    def _ensure_collection(self, name: str, result: PhaseResult) -> Collection | None:
        collection = find_by_name(self.snapshot.get(SnapshotKind.COLLECTIONS), name)
        if collection is not None:
            return collection

        extra = {"phase": result.phase, "collection_name": name}
        logger.info("Creating collection", extra=extra)
        try:
            created = self.outline.create_collection(
                name,
                permission=self.settings.collection_permission,
                private=self.settings.collection_private,
            )
        except OutlineError as e:
            self._record_error(result, f"Creating collection '{name}'", e, collection_name=name)
            return None
        self.snapshot.invalidate(SnapshotKind.COLLECTIONS)

        if created is None:
            return find_by_name(self.snapshot.get(SnapshotKind.COLLECTIONS), name)
        result.collections_created += 1
        logger.info("Collection created", extra={**extra, "collection_id": created.id})
        return created

    def _ensure_collection_link(
        self, collection: Collection, group: Group, result: PhaseResult
    ) -> None:
        extra = {
            "phase": result.phase,
            "collection_name": collection.name,
            "group_name": group.name,
        }
        try:
            linked = self.outline.collection_group_memberships(collection.id)
        except OutlineError as e:
            self._record_error(
                result, f"Listing groups of collection '{collection.name}'", e, **extra
            )
            return
        if any(g.id == group.id for g in linked):
            return

        logger.info("Adding group to collection", extra=extra)
        try:
            added = self.outline.add_collection_group(
                collection.id, group.id, permission=self.settings.group_permission
            )
        except OutlineError as e:
            self._record_error(
                result, f"Adding group '{group.name}' to collection '{collection.name}'", e
            )
            return
        if added:
            result.collections_linked += 1

    def _sync_collections(self, result: PhaseResult) -> None:
        groups = [
            g for g in self.snapshot.get(SnapshotKind.GROUPS) if not self._is_admin_group(g.name)
        ]
        collections = self.snapshot.get(SnapshotKind.COLLECTIONS)
        logger.info(
            "Starting collection synchronization",
            extra={"phase": result.phase, "groups": len(groups), "collections": len(collections)},
        )

        for group in groups:
            collection = self._ensure_collection(group.name, result)
            if collection is not None:
                self._ensure_collection_link(collection, group, result)

        group_names = {g.name.lower() for g in groups}
        allowed = set(self.settings.allowed_collections)
        for collection in list(self.snapshot.get(SnapshotKind.COLLECTIONS)):
            name_key = collection.name.lower()
            if name_key == self.admin_group_key or name_key in allowed or name_key in group_names:
                continue

            logger.info(
                "Deleting collection as it no longer has a corresponding group",
                extra={
                    "phase": result.phase,
                    "collection_id": collection.id,
                    "collection_name": collection.name,
                },
            )
            try:
                self.outline.delete_collection(collection.id)
            except OutlineError as e:
                self._record_error(
                    result,
                    f"Deleting collection '{collection.name}'",
                    e,
                    collection_name=collection.name,
                )
                continue
            self.snapshot.invalidate(SnapshotKind.COLLECTIONS)
            result.collections_deleted += 1

        logger.info("Collection synchronization completed", extra={"phase": result.phase})
