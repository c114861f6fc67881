"""
Grant Normalizer

Turns a DirectorySnapshot into the canonical grant map:

    application key -> {user email -> scopes}

Three sources feed the map and are unioned per (user, application):
individual assignments, group assignments expanded to active non-guest
members, and per-user OAuth token grants.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from src.shadow_it_sync.providers.snapshot import DirectorySnapshot, DirectoryUser
from src.utils.logging import get_logger

logger = get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_app_name(name: Optional[str]) -> str:
    """Deduplication key: lower-cased, trimmed, inner whitespace collapsed."""
    return _WHITESPACE.sub(" ", (name or "").strip()).lower()


@dataclass
class NormalizedApplication:
    key: str
    name: str
    client_ids: Set[str] = field(default_factory=set)
    users: Dict[str, Set[str]] = field(default_factory=dict)

    def add_user(self, email: str, scopes: Iterable[str]) -> None:
        self.users.setdefault(email, set()).update(s for s in scopes if s)

    def offer_name(self, candidate: str) -> None:
        # Smallest display-name variant wins so the choice is order independent
        candidate = candidate.strip()
        if candidate and candidate < self.name:
            self.name = candidate

    @property
    def all_scopes(self) -> Set[str]:
        scopes: Set[str] = set()
        for user_scopes in self.users.values():
            scopes |= user_scopes
        return scopes

    def users_by_scope_set(self) -> Dict[FrozenSet[str], Set[str]]:
        """scope-set -> {emails} view of this application's users."""
        view: Dict[FrozenSet[str], Set[str]] = {}
        for email, scopes in self.users.items():
            view.setdefault(frozenset(scopes), set()).add(email)
        return view


@dataclass
class NormalizedGrants:
    applications: Dict[str, NormalizedApplication] = field(default_factory=dict)

    def application(self, display_name: str) -> NormalizedApplication:
        key = normalize_app_name(display_name)
        app = self.applications.get(key)
        if app is None:
            app = NormalizedApplication(key=key, name=display_name.strip())
            self.applications[key] = app
        else:
            app.offer_name(display_name)
        return app

    def get(self, key: str) -> Optional[NormalizedApplication]:
        return self.applications.get(key)

    def has_edge(self, email: str, app_key: str) -> bool:
        app = self.applications.get(app_key)
        return app is not None and email in app.users

    def scopes_for(self, email: str, app_key: str) -> Set[str]:
        app = self.applications.get(app_key)
        if app is None:
            return set()
        return set(app.users.get(email, set()))

    def edge_count(self) -> int:
        return sum(len(app.users) for app in self.applications.values())

    def emails(self) -> Set[str]:
        result: Set[str] = set()
        for app in self.applications.values():
            result.update(app.users)
        return result


def normalize_snapshot(snapshot: DirectorySnapshot) -> NormalizedGrants:
    """
    Build the grant map for a snapshot.

    Only active users (not suspended, archived, disabled or guest) get
    edges. Users are identified by normalized email; a user granted the
    same application by several sources appears once with the union of
    their scopes.
    """
    grants = NormalizedGrants()

    def active(user_id: str) -> Optional[DirectoryUser]:
        user = snapshot.users.get(user_id)
        if user is None or not user.is_active or not user.normalized_email:
            return None
        return user

    for assignment in snapshot.assignments:
        app_name = assignment.app_name or assignment.app_id
        if assignment.is_group:
            group = snapshot.groups.get(assignment.principal_id)
            if group is None:
                logger.debug(f"Group {assignment.principal_id} for {app_name} was not fetched; skipping")
                continue
            members = [m for m in (active(uid) for uid in sorted(group.member_ids)) if m]
            if not members:
                continue
            app = grants.application(app_name)
            app.client_ids.add(assignment.app_id)
            for member in members:
                app.add_user(member.normalized_email, assignment.scopes)
        else:
            user = active(assignment.principal_id)
            if user is None:
                continue
            app = grants.application(app_name)
            app.client_ids.add(assignment.app_id)
            app.add_user(user.normalized_email, assignment.scopes)

    for grant in snapshot.grants:
        user = active(grant.user_id)
        if user is None:
            continue
        app = grants.application(grant.app_name or grant.app_id)
        app.client_ids.add(grant.app_id)
        app.add_user(user.normalized_email, grant.scopes)

    logger.debug(f"Normalized {len(grants.applications)} applications with {grants.edge_count()} user edges")
    return grants


def broad_assignment_floor(active_user_count: int, threshold: float, min_users: int) -> int:
    return max(min_users, math.floor(active_user_count * threshold))


def find_broad_assignments(
    grants: NormalizedGrants,
    active_user_count: int,
    threshold: float = 0.8,
    min_users: int = 10,
) -> List[str]:
    """
    Applications granted to at least max(min_users, floor(active * threshold))
    users. Likely tenant-wide or all-users assignments; informational only.
    """
    floor = broad_assignment_floor(active_user_count, threshold, min_users)
    return sorted(app.name for app in grants.applications.values() if len(app.users) >= floor)
