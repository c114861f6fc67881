"""
Database operations for Shadow IT reconciliation.
Provides async SQLAlchemy operations over organizations, users, applications
and user-application relationships.

Key features:
- Async engine and session management
- Tagged lookups for organizations and credentials
- Idempotent batch mutations used by the reconciliation engine
- Risk field recomputation that only writes on change
- Run history tracking
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import select, delete, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional, Sequence

from .models import (
    Base, Organization, SyncCredential, User, Application, UserApplication,
    OrganizationSettings, ReconciliationRun, RunStatus, utcnow,
)
from src.config.settings import settings
from src.shadow_it_sync.providers.credentials import ProviderCredentials
from src.shadow_it_sync.providers.snapshot import normalize_email
from src.shadow_it_sync.sync.normalizer import normalize_app_name
from src.shadow_it_sync.sync.reconciliation import NewApplication, NewUser, ScopeUpdate, UserUpdate
from src.shadow_it_sync.sync.risk import RiskScoringConfig, compute_risk_level
from src.shadow_it_sync.sync.state import (
    ApplicationRecord, PersistedState, RelationshipRecord, UserRecord,
)
from src.utils.error_handling import (
    Found, NotFound, TransientFailure, FatalFailure, LookupResult,
    CredentialError, MergeConflictError, PersistenceError,
)
from src.utils.logging import logger


def _sorted_scopes(scopes: Iterable[str]) -> List[str]:
    return sorted({s.strip() for s in scopes if s and s.strip()})


class DatabaseOperations:
    def __init__(self, database_url: Optional[str] = None):
        """Initialize async database engine"""
        self.database_url = database_url or settings.DATABASE_URL
        engine_args: Dict[str, Any] = {"pool_pre_ping": True}
        if self.database_url.startswith("sqlite"):
            engine_args["connect_args"] = {"timeout": 30, "check_same_thread": False}
            if ":memory:" in self.database_url or self.database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
                # One shared connection, or every session sees an empty database
                engine_args["poolclass"] = StaticPool
        if "poolclass" not in engine_args:
            engine_args.update(pool_size=5, max_overflow=10)

        self.engine = create_async_engine(self.database_url, **engine_args)
        self.SessionLocal = async_sessionmaker(
            self.engine,
            expire_on_commit=False
        )
        self._initialized = False

    async def init_db(self):
        """Create tables"""
        if not self._initialized:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._initialized = True

    async def close(self):
        """Close database connection"""
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session with automatic commit/rollback.

        Yields:
            AsyncSession: Database session

        Raises:
            Exception: On database errors, session is rolled back

        Usage:
            async with db.get_session() as session:
                await session.execute(stmt)
        """
        async with self.SessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Database session error: {str(e)}")
                raise

    @asynccontextmanager
    async def write_session(self, operation: str, batch_size: Optional[int] = None) -> AsyncGenerator[AsyncSession, None]:
        """Session for a mutation; database failures become PersistenceError."""
        try:
            async with self.get_session() as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"{operation} failed: {e.__class__.__name__}",
                operation=operation,
                batch_size=batch_size,
                original_exception=e,
            )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_organization(self, organization_id: int) -> LookupResult[Organization]:
        try:
            async with self.get_session() as session:
                org = await session.get(Organization, organization_id)
        except SQLAlchemyError as e:
            return TransientFailure(PersistenceError(
                f"Could not load organization {organization_id}",
                operation="get_organization", original_exception=e))
        if org is None:
            return NotFound(f"organization {organization_id}")
        return Found(org)

    async def get_active_credentials(self, organization_id: int) -> LookupResult[ProviderCredentials]:
        """Newest stored credential with a refresh token."""
        try:
            async with self.get_session() as session:
                org = await session.get(Organization, organization_id)
                result = await session.execute(
                    select(SyncCredential)
                    .where(
                        SyncCredential.organization_id == organization_id,
                        SyncCredential.refresh_token.isnot(None),
                        SyncCredential.refresh_token != "",
                    )
                    .order_by(SyncCredential.created_at.desc(), SyncCredential.id.desc())
                    .limit(1)
                )
                row = result.scalars().first()
        except SQLAlchemyError as e:
            return TransientFailure(PersistenceError(
                f"Could not load credentials for organization {organization_id}",
                operation="get_active_credentials", original_exception=e))

        if row is None:
            return NotFound(f"credentials for organization {organization_id}")
        provider = (row.provider or (org.auth_provider if org else "") or "").lower()
        if not provider:
            return FatalFailure(CredentialError(
                "Stored credential has no provider", organization_id=str(organization_id)))
        return Found(ProviderCredentials(
            organization_id=organization_id,
            provider=provider,
            refresh_token=row.refresh_token,
            scope=row.scope,
            credential_id=row.id,
        ))

    async def list_organization_ids(self) -> List[int]:
        async with self.get_session() as session:
            result = await session.execute(select(Organization.id).order_by(Organization.id))
            return list(result.scalars().all())

    async def get_scoring_config(self, organization_id: int) -> RiskScoringConfig:
        async with self.get_session() as session:
            result = await session.execute(
                select(OrganizationSettings).where(OrganizationSettings.organization_id == organization_id)
            )
            row = result.scalars().first()
        if row is None:
            return RiskScoringConfig()
        return RiskScoringConfig.from_stored(row.bucket_weights, row.ai_multipliers, row.scope_multipliers)

    async def load_state(self, organization_id: int) -> PersistedState:
        """Detached snapshot of an organization's users, applications and relationships."""
        try:
            async with self.get_session() as session:
                users = (await session.execute(
                    select(User).where(User.organization_id == organization_id)
                )).scalars().all()
                apps = (await session.execute(
                    select(Application).where(Application.organization_id == organization_id)
                )).scalars().all()
                rels = (await session.execute(
                    select(UserApplication)
                    .join(Application, UserApplication.application_id == Application.id)
                    .where(Application.organization_id == organization_id)
                )).scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Could not load state for organization {organization_id}",
                operation="load_state", original_exception=e)

        return PersistedState(
            organization_id=organization_id,
            users={
                u.id: UserRecord(
                    id=u.id,
                    email=normalize_email(u.email) or u.email,
                    name=u.name,
                    provider_user_id=u.provider_user_id,
                    suspended=bool(u.suspended),
                    archived=bool(u.archived),
                    account_enabled=bool(u.account_enabled),
                    user_type=u.user_type,
                )
                for u in users
            },
            applications={
                a.id: ApplicationRecord(
                    id=a.id,
                    name=a.name,
                    created_at=a.created_at,
                    all_scopes=frozenset(a.all_scopes or []),
                    risk_level=a.risk_level,
                    total_permissions=a.total_permissions or 0,
                    user_count=a.user_count or 0,
                    provider_app_id=a.provider_app_id,
                    owner=a.owner,
                    notes=a.notes,
                    management_status=a.management_status,
                )
                for a in apps
            },
            relationships=[
                RelationshipRecord(
                    id=r.id,
                    user_id=r.user_id,
                    application_id=r.application_id,
                    scopes=frozenset(r.scopes or []),
                    first_seen=r.first_seen,
                    last_used=r.last_used,
                )
                for r in rels
            ],
        )

    async def count_rows(self, organization_id: int) -> Dict[str, int]:
        """Row counts per table for one organization."""
        async with self.get_session() as session:
            users = await session.scalar(
                select(func.count(User.id)).where(User.organization_id == organization_id))
            apps = await session.scalar(
                select(func.count(Application.id)).where(Application.organization_id == organization_id))
            rels = await session.scalar(
                select(func.count(UserApplication.id))
                .join(Application, UserApplication.application_id == Application.id)
                .where(Application.organization_id == organization_id))
        return {"users": users or 0, "applications": apps or 0, "relationships": rels or 0}

    # ------------------------------------------------------------------
    # Reconciliation mutations (each call is one batch)
    # ------------------------------------------------------------------

    async def delete_relationships(self, relationship_ids: Sequence[int]) -> int:
        async with self.write_session("delete_relationships", len(relationship_ids)) as session:
            result = await session.execute(
                delete(UserApplication).where(UserApplication.id.in_(list(relationship_ids)))
            )
            return result.rowcount or 0

    async def delete_users(self, organization_id: int, user_ids: Sequence[int]) -> int:
        async with self.write_session("delete_users", len(user_ids)) as session:
            # Relationships go first even where the backend ignores ON DELETE CASCADE
            await session.execute(
                delete(UserApplication).where(UserApplication.user_id.in_(list(user_ids)))
            )
            result = await session.execute(
                delete(User).where(User.organization_id == organization_id, User.id.in_(list(user_ids)))
            )
            return result.rowcount or 0

    async def insert_users(self, organization_id: int, users: Sequence[NewUser]) -> int:
        async with self.write_session("insert_users", len(users)) as session:
            emails = {normalize_email(u.email) for u in users} - {None}
            existing = set((await session.execute(
                select(func.lower(func.trim(User.email))).where(
                    User.organization_id == organization_id,
                    func.lower(func.trim(User.email)).in_(list(emails)),
                )
            )).scalars().all())
            added = 0
            for new_user in users:
                email = normalize_email(new_user.email)
                if email is None or email in existing:
                    continue
                session.add(User(
                    organization_id=organization_id,
                    email=email,
                    name=new_user.name,
                    provider_user_id=new_user.provider_user_id,
                    suspended=new_user.suspended,
                    archived=new_user.archived,
                    account_enabled=new_user.account_enabled,
                    user_type=new_user.user_type,
                ))
                existing.add(email)
                added += 1
            return added

    async def update_users(self, organization_id: int, updates: Sequence[UserUpdate]) -> int:
        """Write refreshed directory fields onto existing users."""
        async with self.write_session("update_users", len(updates)) as session:
            updated = 0
            for item in updates:
                result = await session.execute(
                    update(User)
                    .where(User.organization_id == organization_id, User.id == item.user_id)
                    .values(**item.values)
                )
                updated += result.rowcount or 0
            return updated

    async def insert_applications(self, organization_id: int, apps: Sequence[NewApplication]) -> int:
        async with self.write_session("insert_applications", len(apps)) as session:
            rows = (await session.execute(
                select(Application.name).where(Application.organization_id == organization_id)
            )).scalars().all()
            existing_keys = {normalize_app_name(name) for name in rows}
            added = 0
            for app in apps:
                if app.key in existing_keys:
                    continue
                session.add(Application(
                    organization_id=organization_id,
                    name=app.name,
                    provider_app_id=app.provider_app_id,
                    all_scopes=[],
                ))
                existing_keys.add(app.key)
                added += 1
            return added

    async def insert_relationships(self, rows: Sequence[Dict[str, Any]]) -> int:
        """Insert {user_id, application_id, scopes} rows; an existing pair gets its scopes unioned."""
        async with self.write_session("insert_relationships", len(rows)) as session:
            now = utcnow()
            added = 0
            for row in rows:
                result = await session.execute(
                    select(UserApplication).where(
                        UserApplication.user_id == row["user_id"],
                        UserApplication.application_id == row["application_id"],
                    )
                )
                current = result.scalars().first()
                if current is not None:
                    merged = _sorted_scopes(set(current.scopes or []) | set(row["scopes"]))
                    if merged != list(current.scopes or []):
                        current.scopes = merged
                    current.last_used = now
                    continue
                session.add(UserApplication(
                    user_id=row["user_id"],
                    application_id=row["application_id"],
                    scopes=_sorted_scopes(row["scopes"]),
                    first_seen=now,
                    last_used=now,
                ))
                added += 1
            return added

    async def update_relationship_scopes(self, updates: Sequence[ScopeUpdate]) -> int:
        async with self.write_session("update_relationship_scopes", len(updates)) as session:
            now = utcnow()
            for item in updates:
                await session.execute(
                    update(UserApplication)
                    .where(UserApplication.id == item.relationship_id)
                    .values(scopes=_sorted_scopes(item.scopes), last_used=now, updated_at=now)
                )
            return len(updates)

    async def touch_relationships(self, relationship_ids: Sequence[int]) -> int:
        async with self.write_session("touch_relationships", len(relationship_ids)) as session:
            result = await session.execute(
                update(UserApplication)
                .where(UserApplication.id.in_(list(relationship_ids)))
                .values(last_used=utcnow())
            )
            return result.rowcount or 0

    async def delete_applications_if_empty(self, application_ids: Sequence[int]) -> List[int]:
        """Delete the given applications that have no relationships left; returns deleted ids."""
        async with self.write_session("delete_applications", len(application_ids)) as session:
            still_used = set((await session.execute(
                select(UserApplication.application_id)
                .where(UserApplication.application_id.in_(list(application_ids)))
                .distinct()
            )).scalars().all())
            empty = [app_id for app_id in application_ids if app_id not in still_used]
            if empty:
                await session.execute(delete(Application).where(Application.id.in_(empty)))
            return empty

    async def update_refresh_token(self, credential_id: int, refresh_token: str) -> None:
        async with self.write_session("update_refresh_token") as session:
            await session.execute(
                update(SyncCredential)
                .where(SyncCredential.id == credential_id)
                .values(refresh_token=refresh_token, updated_at=utcnow())
            )

    # ------------------------------------------------------------------
    # Risk fields
    # ------------------------------------------------------------------

    async def recompute_application_risk(self, organization_id: int,
                                         application_ids: Optional[Iterable[int]] = None,
                                         keep_stored_scopes: bool = False) -> int:
        """
        Re-derive all_scopes, risk_level, total_permissions and user_count.
        Rows are only written when a value changes.

        all_scopes is the union of the relationship scopes; with
        keep_stored_scopes (after a merge) the stored all_scopes is kept in
        that union. risk_level and total_permissions always come from the
        resulting all_scopes.

        Returns:
            Number of applications updated
        """
        async with self.write_session("recompute_application_risk") as session:
            query = select(Application).where(Application.organization_id == organization_id)
            if application_ids is not None:
                query = query.where(Application.id.in_(list(application_ids)))
            apps = (await session.execute(query)).scalars().all()
            if not apps:
                return 0

            rel_rows = (await session.execute(
                select(UserApplication.application_id, UserApplication.scopes)
                .where(UserApplication.application_id.in_([a.id for a in apps]))
            )).all()
            scopes_by_app: Dict[int, set] = {}
            users_by_app: Dict[int, int] = {}
            for app_id, scopes in rel_rows:
                scopes_by_app.setdefault(app_id, set()).update(scopes or [])
                users_by_app[app_id] = users_by_app.get(app_id, 0) + 1

            changed = 0
            for app in apps:
                scopes = set(scopes_by_app.get(app.id, set()))
                if keep_stored_scopes:
                    scopes.update(app.all_scopes or [])
                all_scopes = _sorted_scopes(scopes)
                assessment = compute_risk_level(all_scopes)
                values = {
                    "risk_level": assessment.level.value,
                    "total_permissions": assessment.permission_count,
                    "user_count": users_by_app.get(app.id, 0),
                    "all_scopes": all_scopes,
                }
                current = {
                    "risk_level": app.risk_level,
                    "total_permissions": app.total_permissions,
                    "user_count": app.user_count,
                    "all_scopes": list(app.all_scopes or []),
                }
                if values != current:
                    for key, value in values.items():
                        setattr(app, key, value)
                    changed += 1
            if changed:
                logger.debug(f"Updated risk fields on {changed} applications")
            return changed

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    async def repoint_relationship(self, session: AsyncSession, relationship_id: int,
                                   target_application_id: int) -> None:
        """
        Move a relationship onto another application.

        Raises:
            MergeConflictError: The user already has an edge to the target
        """
        rel = await session.get(UserApplication, relationship_id)
        if rel is None:
            return
        result = await session.execute(
            select(UserApplication.id).where(
                UserApplication.user_id == rel.user_id,
                UserApplication.application_id == target_application_id,
            )
        )
        if result.scalar() is not None:
            raise MergeConflictError(
                f"User {rel.user_id} already linked to application {target_application_id}",
                user_id=rel.user_id,
                application_id=target_application_id,
            )
        rel.application_id = target_application_id
        await session.flush()

    async def merge_relationship_into(self, session: AsyncSession, relationship_id: int,
                                      user_id: int, target_application_id: int) -> None:
        """Fold a duplicate edge into the user's edge on the target application, then delete it."""
        duplicate = await session.get(UserApplication, relationship_id)
        target = (await session.execute(
            select(UserApplication).where(
                UserApplication.user_id == user_id,
                UserApplication.application_id == target_application_id,
            )
        )).scalars().first()
        if duplicate is None or target is None:
            return

        target.scopes = _sorted_scopes(set(target.scopes or []) | set(duplicate.scopes or []))
        firsts = [d for d in (target.first_seen, duplicate.first_seen) if d]
        lasts = [d for d in (target.last_used, duplicate.last_used) if d]
        target.first_seen = min(firsts) if firsts else None
        target.last_used = max(lasts) if lasts else None
        await session.delete(duplicate)
        await session.flush()

    async def finalize_merge(self, session: AsyncSession, primary_id: int, duplicate_ids: Sequence[int],
                             all_scopes: Iterable[str], annotations: Dict[str, Any]) -> None:
        primary = await session.get(Application, primary_id)
        primary.all_scopes = _sorted_scopes(set(primary.all_scopes or []) | set(all_scopes))
        for key, value in annotations.items():
            setattr(primary, key, value)
        await session.execute(delete(Application).where(Application.id.in_(list(duplicate_ids))))

    # ------------------------------------------------------------------
    # Run history
    # ------------------------------------------------------------------

    async def create_run(self, organization_id: int, operation: str, dry_run: bool = False) -> int:
        async with self.write_session("create_run") as session:
            run = ReconciliationRun(
                organization_id=organization_id,
                operation=operation,
                dry_run=dry_run,
                status=RunStatus.STARTED,
                start_time=utcnow(),
            )
            session.add(run)
            await session.flush()
            return run.id

    async def finish_run(self, run_id: int, status: RunStatus, counts: Optional[Dict[str, Any]] = None,
                         error_message: Optional[str] = None) -> None:
        async with self.write_session("finish_run") as session:
            run = await session.get(ReconciliationRun, run_id)
            if run is None:
                raise ValueError(f"Reconciliation run with ID {run_id} not found")
            run.status = status
            run.counts = counts
            run.error_message = error_message
            run.end_time = utcnow()

    async def get_run_history(self, organization_id: int, limit: int = 5) -> List[ReconciliationRun]:
        async with self.get_session() as session:
            result = await session.execute(
                select(ReconciliationRun)
                .where(ReconciliationRun.organization_id == organization_id)
                .order_by(ReconciliationRun.start_time.desc(), ReconciliationRun.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
