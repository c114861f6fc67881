"""
Reconciliation Engine (classification)

Compares the persisted relationships of one organization with a fresh
directory snapshot and its normalized grant map, and produces a
ReconciliationPlan. Every persisted relationship ends up in exactly one
state:

- ACTIVE   user present and active, edge still granted
- STALE    user suspended, archived, disabled or guest
- REMOVED  user hard-deleted, or edge no longer granted (revoked)

and every granted edge missing from the store becomes NEW. Kept users get
their directory-owned columns (name, provider id, status flags) refreshed.

classify_relationships is pure: the same inputs always yield the same plan.
Applying the plan is the job of ReconciliationService.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

from src.shadow_it_sync.providers.snapshot import DirectorySnapshot, DirectoryUser
from src.shadow_it_sync.sync.normalizer import NormalizedGrants
from src.shadow_it_sync.sync.state import PersistedState, UserRecord


class StalePolicy(str, enum.Enum):
    DELETE = "delete"
    RETAIN = "retain"


class RelationshipState(str, enum.Enum):
    ACTIVE = "ACTIVE"
    STALE = "STALE"
    REMOVED = "REMOVED"
    NEW = "NEW"


class UserStatus(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"
    DISABLED = "disabled"
    GUEST = "guest"
    HARD_DELETED = "hard_deleted"

    @property
    def is_stale(self) -> bool:
        return self in (UserStatus.SUSPENDED, UserStatus.ARCHIVED, UserStatus.DISABLED, UserStatus.GUEST)


def user_status(user: Optional[DirectoryUser]) -> UserStatus:
    """Directory status of a persisted user; suspension wins over archival."""
    if user is None:
        return UserStatus.HARD_DELETED
    if user.suspended:
        return UserStatus.SUSPENDED
    if user.archived:
        return UserStatus.ARCHIVED
    if not user.account_enabled:
        return UserStatus.DISABLED
    if user.is_guest:
        return UserStatus.GUEST
    return UserStatus.ACTIVE


PROFILE_FIELDS = ("name", "provider_user_id", "suspended", "archived", "account_enabled", "user_type")


def directory_profile(user: DirectoryUser) -> Dict[str, Any]:
    """User columns the directory owns; blank names and ids never overwrite stored ones."""
    profile = {
        "suspended": bool(user.suspended),
        "archived": bool(user.archived),
        "account_enabled": bool(user.account_enabled),
        "user_type": user.user_type or "Member",
    }
    if user.name:
        profile["name"] = user.name
    if user.user_id:
        profile["provider_user_id"] = user.user_id
    return profile


def profile_changes(record: UserRecord, user: DirectoryUser) -> Tuple[Tuple[str, Any], ...]:
    profile = directory_profile(user)
    return tuple(
        (name, profile[name]) for name in PROFILE_FIELDS
        if name in profile and getattr(record, name) != profile[name]
    )


@dataclass(frozen=True)
class RelationshipDecision:
    state: RelationshipState
    user_email: str
    application_name: str
    relationship_id: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class UserRemoval:
    user_id: int
    email: str
    status: UserStatus


@dataclass(frozen=True)
class ScopeUpdate:
    relationship_id: int
    scopes: FrozenSet[str]


@dataclass(frozen=True)
class NewUser:
    email: str
    name: Optional[str] = None
    provider_user_id: Optional[str] = None
    suspended: bool = False
    archived: bool = False
    account_enabled: bool = True
    user_type: Optional[str] = "Member"


@dataclass(frozen=True)
class UserUpdate:
    """Directory-derived fields of a kept user that changed since the last pass."""
    user_id: int
    email: str
    changes: Tuple[Tuple[str, Any], ...]

    @property
    def values(self) -> Dict[str, Any]:
        return dict(self.changes)


@dataclass(frozen=True)
class NewApplication:
    key: str
    name: str
    provider_app_id: Optional[str] = None


@dataclass(frozen=True)
class NewRelationship:
    email: str
    app_key: str
    scopes: FrozenSet[str]
    # Existing target row; None means the application is created in this pass
    application_id: Optional[int] = None


@dataclass
class ReconciliationPlan:
    policy: StalePolicy = StalePolicy.DELETE
    decisions: List[RelationshipDecision] = field(default_factory=list)
    relationships_to_delete: List[int] = field(default_factory=list)
    scope_updates: List[ScopeUpdate] = field(default_factory=list)
    relationships_to_touch: List[int] = field(default_factory=list)
    users_to_delete: List[UserRemoval] = field(default_factory=list)
    user_updates: List[UserUpdate] = field(default_factory=list)
    stale_users: List[UserRemoval] = field(default_factory=list)
    new_users: List[NewUser] = field(default_factory=list)
    new_applications: List[NewApplication] = field(default_factory=list)
    new_relationships: List[NewRelationship] = field(default_factory=list)
    applications_to_delete: List[int] = field(default_factory=list)
    application_names: Dict[int, str] = field(default_factory=dict)

    def users_with_status(self, status: UserStatus) -> List[str]:
        """Emails of users classified with `status` (removed or, when retained, reported)."""
        pool = self.users_to_delete + [u for u in self.stale_users if u not in self.users_to_delete]
        return sorted(u.email for u in pool if u.status is status)

    def decisions_in(self, state: RelationshipState) -> List[RelationshipDecision]:
        return [d for d in self.decisions if d.state is state]

    @property
    def revoked(self) -> List[Tuple[str, str]]:
        return sorted(
            (d.user_email, d.application_name)
            for d in self.decisions
            if d.state is RelationshipState.REMOVED and d.reason == "revoked"
        )

    def removed_relationships_by_app(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        deleted = set(self.relationships_to_delete)
        for decision in self.decisions:
            if decision.relationship_id in deleted:
                counts[decision.application_name] = counts.get(decision.application_name, 0) + 1
        return dict(sorted(counts.items()))

    @property
    def has_changes(self) -> bool:
        return bool(
            self.relationships_to_delete or self.scope_updates or self.users_to_delete
            or self.user_updates or self.new_users or self.new_applications or self.new_relationships
            or self.applications_to_delete
        )


def classify_relationships(
    persisted: PersistedState,
    snapshot: DirectorySnapshot,
    grants: NormalizedGrants,
    policy: StalePolicy = StalePolicy.DELETE,
) -> ReconciliationPlan:
    """
    Classify every persisted relationship and every granted edge.

    Args:
        persisted: Current store contents for the organization
        snapshot: Fresh directory snapshot
        grants: Grant map built from the same snapshot
        policy: What happens to relationships of stale users

    Returns:
        ReconciliationPlan listing every mutation needed, in no particular
        execution order. Lists are sorted so identical inputs give identical plans.
    """
    plan = ReconciliationPlan(policy=StalePolicy(policy))
    directory = snapshot.users_by_email()
    apps_by_key = persisted.applications_by_key()
    rels_by_user = persisted.relationships_by_user()
    plan.application_names = {app_id: app.name for app_id, app in persisted.applications.items()}

    deleted_rel_ids: Set[int] = set()
    covered: Set[Tuple[str, str]] = set()

    for user in sorted(persisted.users.values(), key=lambda u: (u.email, u.id)):
        source = directory.get(user.email)
        status = user_status(source)
        user_rels = sorted(rels_by_user.get(user.id, []), key=lambda r: r.id)

        if status is UserStatus.HARD_DELETED or (status.is_stale and plan.policy is StalePolicy.DELETE):
            plan.users_to_delete.append(UserRemoval(user.id, user.email, status))
        else:
            changes = profile_changes(user, source)
            if changes:
                plan.user_updates.append(UserUpdate(user.id, user.email, changes))
        if status.is_stale:
            plan.stale_users.append(UserRemoval(user.id, user.email, status))

        for rel in user_rels:
            app = persisted.applications.get(rel.application_id)
            app_name = app.name if app else str(rel.application_id)

            if status is UserStatus.HARD_DELETED:
                plan.decisions.append(RelationshipDecision(
                    RelationshipState.REMOVED, user.email, app_name, rel.id, status.value))
                deleted_rel_ids.add(rel.id)
                continue

            if status.is_stale:
                plan.decisions.append(RelationshipDecision(
                    RelationshipState.STALE, user.email, app_name, rel.id, status.value))
                if plan.policy is StalePolicy.DELETE:
                    deleted_rel_ids.add(rel.id)
                continue

            app_key = app.key if app else ""
            if app and grants.has_edge(user.email, app_key):
                plan.decisions.append(RelationshipDecision(
                    RelationshipState.ACTIVE, user.email, app_name, rel.id))
                covered.add((user.email, app_key))
                merged = rel.scopes | frozenset(grants.scopes_for(user.email, app_key))
                if merged != rel.scopes:
                    plan.scope_updates.append(ScopeUpdate(rel.id, merged))
                else:
                    plan.relationships_to_touch.append(rel.id)
            else:
                plan.decisions.append(RelationshipDecision(
                    RelationshipState.REMOVED, user.email, app_name, rel.id, "revoked"))
                deleted_rel_ids.add(rel.id)

    # Granted edges not yet in the store
    persisted_emails = {u.email for u in persisted.users.values()}
    planned_users: Set[str] = set()
    new_app_targets: Dict[int, int] = {}
    for app_key in sorted(grants.applications):
        granted = grants.applications[app_key]
        existing_rows = apps_by_key.get(app_key, [])
        target_id = existing_rows[0].id if existing_rows else None
        for email in sorted(granted.users):
            if (email, app_key) in covered:
                continue
            if email not in persisted_emails and email not in planned_users:
                source = directory.get(email)
                profile = directory_profile(source) if source else {}
                plan.new_users.append(NewUser(email=email, **profile))
                planned_users.add(email)
            plan.new_relationships.append(NewRelationship(
                email=email,
                app_key=app_key,
                scopes=frozenset(granted.users[email]),
                application_id=target_id,
            ))
            plan.decisions.append(RelationshipDecision(
                RelationshipState.NEW, email, existing_rows[0].name if existing_rows else granted.name))
            if target_id is not None:
                new_app_targets[target_id] = new_app_targets.get(target_id, 0) + 1
        if target_id is None and granted.users:
            plan.new_applications.append(NewApplication(
                key=app_key,
                name=granted.name,
                provider_app_id=min(granted.client_ids) if granted.client_ids else None,
            ))

    # Applications left without relationships
    for app_id, rels in sorted(persisted.relationships_by_application().items()):
        remaining = [r for r in rels if r.id not in deleted_rel_ids]
        if not remaining and not new_app_targets.get(app_id) and app_id in persisted.applications:
            plan.applications_to_delete.append(app_id)

    plan.relationships_to_delete = sorted(deleted_rel_ids)
    plan.relationships_to_touch.sort()
    plan.scope_updates.sort(key=lambda u: u.relationship_id)
    return plan
