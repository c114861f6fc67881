"""
Provider-agnostic directory snapshot.

Everything is keyed by stable provider identifiers (user id, client id,
group id), never by display names.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

GUEST_USER_TYPE = "Guest"


def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    value = email.strip().lower()
    return value or None


@dataclass(frozen=True)
class DirectoryUser:
    user_id: str
    email: Optional[str]
    name: Optional[str] = None
    suspended: bool = False
    archived: bool = False
    account_enabled: bool = True
    user_type: str = "Member"

    @property
    def normalized_email(self) -> Optional[str]:
        return normalize_email(self.email)

    @property
    def is_guest(self) -> bool:
        return (self.user_type or "").lower() == GUEST_USER_TYPE.lower()

    @property
    def is_active(self) -> bool:
        """Active member: not suspended, archived, disabled or a guest."""
        return not (self.suspended or self.archived or not self.account_enabled or self.is_guest)


@dataclass(frozen=True)
class DirectoryGroup:
    group_id: str
    name: Optional[str] = None
    member_ids: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class AppAssignment:
    """Application assigned to a single user or to a whole group."""
    app_id: str
    app_name: str
    principal_type: str  # "User" or "Group"
    principal_id: str
    scopes: FrozenSet[str] = frozenset()

    @property
    def is_group(self) -> bool:
        return self.principal_type.lower() == "group"


@dataclass(frozen=True)
class TokenGrant:
    """Per-user OAuth consent."""
    user_id: str
    app_id: str
    app_name: str
    scopes: FrozenSet[str] = frozenset()


@dataclass
class DirectorySnapshot:
    provider: str
    users: Dict[str, DirectoryUser] = field(default_factory=dict)
    groups: Dict[str, DirectoryGroup] = field(default_factory=dict)
    assignments: List[AppAssignment] = field(default_factory=list)
    grants: List[TokenGrant] = field(default_factory=list)
    fetched_at: Optional[datetime] = None

    def users_by_email(self) -> Dict[str, DirectoryUser]:
        """Index users by normalized email; the first user listed wins on collisions."""
        index: Dict[str, DirectoryUser] = {}
        for user in self.users.values():
            email = user.normalized_email
            if email and email not in index:
                index[email] = user
        return index

    def active_user_count(self) -> int:
        return sum(1 for u in self.users.values() if u.is_active and u.normalized_email)
