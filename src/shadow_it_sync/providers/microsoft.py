"""
Microsoft Graph directory client.

Builds a snapshot from:
- /users (accountEnabled, userType)
- /servicePrincipals and each principal's appRoleAssignedTo
- /groups/{id}/members for groups that hold an assignment
- /oauth2PermissionGrants (delegated, per-user consent)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from src.shadow_it_sync.providers.base import DirectoryClient, PageRequest
from src.shadow_it_sync.providers.credentials import MICROSOFT, decode_jwt_claims
from src.shadow_it_sync.providers.snapshot import (
    AppAssignment,
    DirectoryGroup,
    DirectorySnapshot,
    DirectoryUser,
    TokenGrant,
)
from src.shadow_it_sync.sync.risk import APP_ROLE_PREFIX
from src.utils.error_handling import ProviderError
from src.utils.logging import get_logger

logger = get_logger(__name__)

GRAPH_API = "https://graph.microsoft.com/v1.0"
PAGE_SIZE = 999
DEFAULT_ROLE_ID = "00000000-0000-0000-0000-000000000000"
INTEGRATED_APP_TAG = "WindowsAzureActiveDirectoryIntegratedApp"
USER_ODATA_TYPE = "#microsoft.graph.user"


class MicrosoftDirectoryClient(DirectoryClient):
    provider = MICROSOFT

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.tenant_id: Optional[str] = None

    def _next_page(self, payload: Dict[str, Any], url: str,
                   params: Optional[Dict[str, Any]]) -> Optional[PageRequest]:
        next_link = payload.get("@odata.nextLink")
        # nextLink already carries every query parameter
        return (next_link, None) if next_link else None

    async def resolve_tenant_id(self) -> Optional[str]:
        """Tenant id from the `tid` claim of the refreshed id_token."""
        if self.tenant_id:
            return self.tenant_id
        await self.token_manager.get_access_token()
        id_token = self.token_manager.id_token
        if id_token:
            self.tenant_id = decode_jwt_claims(id_token).get("tid")
        if not self.tenant_id:
            logger.warning("No tenant id in the Microsoft id_token; continuing without it")
        return self.tenant_id

    async def list_users(self) -> List[DirectoryUser]:
        raw_users = await self._paginate(
            f"{GRAPH_API}/users",
            {"$select": "id,mail,userPrincipalName,displayName,accountEnabled,userType", "$top": PAGE_SIZE},
        )
        users = []
        for raw in raw_users:
            if not raw.get("id"):
                continue
            users.append(DirectoryUser(
                user_id=raw["id"],
                email=raw.get("mail") or raw.get("userPrincipalName"),
                name=raw.get("displayName"),
                account_enabled=raw.get("accountEnabled") is not False,
                user_type=raw.get("userType") or "Member",
            ))
        return users

    async def list_service_principals(self) -> List[Dict[str, Any]]:
        return await self._paginate(
            f"{GRAPH_API}/servicePrincipals",
            {"$select": "id,appId,displayName,appRoles,tags", "$top": PAGE_SIZE},
        )

    async def list_permission_grants(self) -> List[Dict[str, Any]]:
        return await self._paginate(f"{GRAPH_API}/oauth2PermissionGrants")

    async def list_app_role_assignments(self, service_principal: Dict[str, Any]) -> List[AppAssignment]:
        sp_id = service_principal["id"]
        try:
            items = await self._paginate(f"{GRAPH_API}/servicePrincipals/{sp_id}/appRoleAssignedTo")
        except ProviderError as e:
            if e.status_code == 404:
                return []
            raise

        roles = {
            role.get("id"): role.get("value") or role.get("displayName")
            for role in service_principal.get("appRoles") or []
        }
        assignments = []
        for item in items:
            principal_type = item.get("principalType")
            if principal_type not in ("User", "Group") or not item.get("principalId"):
                continue
            role_value = roles.get(item.get("appRoleId"))
            scopes = frozenset()
            if role_value and item.get("appRoleId") != DEFAULT_ROLE_ID:
                scopes = frozenset({f"{APP_ROLE_PREFIX} {role_value}"})
            assignments.append(AppAssignment(
                app_id=service_principal.get("appId") or sp_id,
                app_name=service_principal.get("displayName") or item.get("resourceDisplayName") or sp_id,
                principal_type=principal_type,
                principal_id=item["principalId"],
                scopes=scopes,
            ))
        return assignments

    async def list_group_members(self, group_id: str) -> DirectoryGroup:
        async def load() -> DirectoryGroup:
            members = await self._paginate(
                f"{GRAPH_API}/groups/{group_id}/members",
                {"$select": "id,accountEnabled,userType", "$top": PAGE_SIZE},
            )
            member_ids = frozenset(
                m["id"] for m in members
                if m.get("id") and m.get("@odata.type", USER_ODATA_TYPE) == USER_ODATA_TYPE
            )
            return DirectoryGroup(group_id=group_id, member_ids=member_ids)

        return await self.cache.get_or_load(("group_members", group_id), load)

    async def fetch_snapshot(self) -> DirectorySnapshot:
        tenant_id = await self.resolve_tenant_id()
        logger.info(f"Fetching Microsoft directory for tenant {tenant_id or 'unknown'}")

        users = await self.list_users()
        service_principals = await self.list_service_principals()
        sp_by_id = {sp["id"]: sp for sp in service_principals if sp.get("id")}

        grants: List[TokenGrant] = []
        granted_sp_ids: Set[str] = set()
        skipped_tenant_wide = 0
        for raw in await self.list_permission_grants():
            if raw.get("consentType") != "Principal" or not raw.get("principalId"):
                skipped_tenant_wide += 1
                continue
            sp = sp_by_id.get(raw.get("clientId"))
            if sp is None:
                continue
            granted_sp_ids.add(sp["id"])
            grants.append(TokenGrant(
                user_id=raw["principalId"],
                app_id=sp.get("appId") or sp["id"],
                app_name=sp.get("displayName") or sp["id"],
                scopes=frozenset((raw.get("scope") or "").split()),
            ))
        if skipped_tenant_wide:
            logger.info(f"Skipped {skipped_tenant_wide} tenant-wide (AllPrincipals) permission grants")

        # Role assignments only matter for integrated apps and apps users consented to
        candidates = [
            sp for sp in service_principals
            if sp.get("id") and (sp["id"] in granted_sp_ids or INTEGRATED_APP_TAG in (sp.get("tags") or []))
        ]
        per_sp = await self.pool.map(self.list_app_role_assignments, candidates)
        assignments = [a for sp_assignments in per_sp for a in sp_assignments]

        group_ids = sorted({a.principal_id for a in assignments if a.is_group})
        groups = await self.pool.map(self.list_group_members, group_ids)

        logger.info(
            f"Fetched {len(users)} users, {len(grants)} delegated grants, "
            f"{len(assignments)} app role assignments, {len(groups)} assigned groups"
        )
        return DirectorySnapshot(
            provider=self.provider,
            users={u.user_id: u for u in users},
            groups={g.group_id: g for g in groups},
            assignments=assignments,
            grants=grants,
            fetched_at=datetime.now(timezone.utc).replace(tzinfo=None),
        )
