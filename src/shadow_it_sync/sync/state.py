"""
Persisted state as plain records.

A detached, read-only view of one organization's users, applications and
relationships, loaded once per pass so classification and merge planning
stay pure.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from src.shadow_it_sync.sync.normalizer import normalize_app_name


@dataclass(frozen=True)
class UserRecord:
    id: int
    email: str
    name: Optional[str] = None
    provider_user_id: Optional[str] = None
    suspended: bool = False
    archived: bool = False
    account_enabled: bool = True
    user_type: Optional[str] = "Member"


@dataclass(frozen=True)
class ApplicationRecord:
    id: int
    name: str
    created_at: datetime
    all_scopes: FrozenSet[str] = frozenset()
    risk_level: str = "LOW"
    total_permissions: int = 0
    user_count: int = 0
    provider_app_id: Optional[str] = None
    owner: Optional[str] = None
    notes: Optional[str] = None
    management_status: Optional[str] = None

    @property
    def key(self) -> str:
        return normalize_app_name(self.name)

    @property
    def sort_key(self):
        return (self.created_at, self.id)


@dataclass(frozen=True)
class RelationshipRecord:
    id: int
    user_id: int
    application_id: int
    scopes: FrozenSet[str] = frozenset()
    first_seen: Optional[datetime] = None
    last_used: Optional[datetime] = None


@dataclass
class PersistedState:
    organization_id: int
    users: Dict[int, UserRecord] = field(default_factory=dict)
    applications: Dict[int, ApplicationRecord] = field(default_factory=dict)
    relationships: List[RelationshipRecord] = field(default_factory=list)

    def users_by_email(self) -> Dict[str, UserRecord]:
        return {u.email: u for u in self.users.values()}

    def applications_by_key(self) -> Dict[str, List[ApplicationRecord]]:
        """Key -> rows sharing it, oldest first."""
        index: Dict[str, List[ApplicationRecord]] = {}
        for app in self.applications.values():
            index.setdefault(app.key, []).append(app)
        for rows in index.values():
            rows.sort(key=lambda a: a.sort_key)
        return index

    def relationships_by_user(self) -> Dict[int, List[RelationshipRecord]]:
        index: Dict[int, List[RelationshipRecord]] = {}
        for rel in self.relationships:
            index.setdefault(rel.user_id, []).append(rel)
        return index

    def relationships_by_application(self) -> Dict[int, List[RelationshipRecord]]:
        index: Dict[int, List[RelationshipRecord]] = {}
        for rel in self.relationships:
            index.setdefault(rel.application_id, []).append(rel)
        return index
