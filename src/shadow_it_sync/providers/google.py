"""
Google Workspace directory client.

Lists every directory user (suspended and archived included) through the
Admin SDK Directory API, then the OAuth tokens each active user has
granted to third-party applications. Workspace has no group-based app
assignment, so snapshots from this client carry no assignments or groups.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.shadow_it_sync.providers.base import DirectoryClient, PageRequest
from src.shadow_it_sync.providers.credentials import GOOGLE
from src.shadow_it_sync.providers.snapshot import DirectorySnapshot, DirectoryUser, TokenGrant
from src.utils.error_handling import ProviderError
from src.utils.logging import get_logger

logger = get_logger(__name__)

DIRECTORY_API = "https://admin.googleapis.com/admin/directory/v1"
USER_PAGE_SIZE = 500


class GoogleDirectoryClient(DirectoryClient):
    provider = GOOGLE

    def _next_page(self, payload: Dict[str, Any], url: str,
                   params: Optional[Dict[str, Any]]) -> Optional[PageRequest]:
        token = payload.get("nextPageToken")
        if not token:
            return None
        next_params = dict(params or {})
        next_params["pageToken"] = token
        return url, next_params

    async def list_users(self) -> List[DirectoryUser]:
        raw_users = await self._paginate(
            f"{DIRECTORY_API}/users",
            {"customer": "my_customer", "maxResults": USER_PAGE_SIZE, "projection": "basic"},
            items_key="users",
        )
        users = []
        for raw in raw_users:
            if not raw.get("id"):
                continue
            users.append(DirectoryUser(
                user_id=raw["id"],
                email=raw.get("primaryEmail"),
                name=(raw.get("name") or {}).get("fullName"),
                suspended=bool(raw.get("suspended", False)),
                archived=bool(raw.get("archived", False)),
            ))
        return users

    async def list_tokens(self, user: DirectoryUser) -> List[TokenGrant]:
        """OAuth tokens issued by one user; a user deleted mid-run has none."""
        try:
            items = await self._paginate(f"{DIRECTORY_API}/users/{user.user_id}/tokens", items_key="items")
        except ProviderError as e:
            if e.status_code == 404:
                logger.debug(f"User {user.email} disappeared before tokens were listed")
                return []
            raise

        grants = []
        for item in items:
            app_id = item.get("clientId")
            if not app_id:
                continue
            grants.append(TokenGrant(
                user_id=user.user_id,
                app_id=app_id,
                app_name=item.get("displayText") or app_id,
                scopes=frozenset(item.get("scopes") or []),
            ))
        return grants

    async def fetch_snapshot(self) -> DirectorySnapshot:
        users = await self.list_users()
        logger.info(
            f"Fetched {len(users)} Google users "
            f"({sum(1 for u in users if u.suspended)} suspended, {sum(1 for u in users if u.archived)} archived)"
        )

        token_owners = [u for u in users if u.is_active]
        per_user = await self.pool.map(self.list_tokens, token_owners)
        grants = [grant for user_grants in per_user for grant in user_grants]
        logger.info(f"Fetched {len(grants)} OAuth tokens for {len(token_owners)} active users")

        return DirectorySnapshot(
            provider=self.provider,
            users={u.user_id: u for u in users},
            grants=grants,
            fetched_at=datetime.now(timezone.utc).replace(tzinfo=None),
        )
