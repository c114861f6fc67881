"""
Reconciliation Service

Orchestrates one reconciliation pass per organization:
- Credential lookup and directory snapshot fetch
- Grant normalization and relationship classification
- Batched application of the plan (skipped entirely in dry-run)
- Risk recomputation and run history tracking

Core Components:
- ReconciliationService: per-organization and multi-organization runs,
  with organization-level retries and an inter-organization delay
- ReconciliationResult: per-organization outcome, serialized in camelCase
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from src.config.settings import settings
from src.shadow_it_sync.db.models import RunStatus
from src.shadow_it_sync.db.operations import DatabaseOperations
from src.shadow_it_sync.providers import create_directory_client
from src.shadow_it_sync.providers.base import DirectoryClient
from src.shadow_it_sync.providers.credentials import ProviderCredentials
from src.shadow_it_sync.sync.dedup import ApplicationMerger
from src.shadow_it_sync.sync.normalizer import find_broad_assignments, normalize_snapshot
from src.shadow_it_sync.sync.pool import BatchReport, run_in_batches
from src.shadow_it_sync.sync.reconciliation import (
    ReconciliationPlan,
    StalePolicy,
    UserStatus,
    classify_relationships,
)
from src.utils.error_handling import (
    BaseError,
    ConfigurationError,
    CredentialError,
    FatalFailure,
    Found,
    LookupResult,
    NotFound,
    RunInProgressError,
    TransientFailure,
    format_error_for_response,
)
from src.utils.logging import generate_correlation_id, get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

STATUS_FAILED = "failed"
STATUS_NO_CHANGES = "no_changes"
STATUS_CHANGED = "changed"
STATUS_PARTIAL = "partial"
STATUS_PLANNED = "planned"

SUMMARY_FIELDS = (
    "removedUsers",
    "removedRelationships",
    "removedApplications",
    "suspendedUsers",
    "archivedUsers",
    "hardDeletedUsers",
    "addedUsers",
    "addedApplications",
    "addedRelationships",
)


@dataclass
class ReconciliationResult:
    organization_id: int
    dry_run: bool
    success: bool = False
    status: str = STATUS_FAILED
    removed_users: int = 0
    removed_relationships: int = 0
    removed_applications: int = 0
    suspended_users: int = 0
    archived_users: int = 0
    hard_deleted_users: int = 0
    guest_users: int = 0
    disabled_users: int = 0
    updated_users: int = 0
    added_users: int = 0
    added_applications: int = 0
    added_relationships: int = 0
    updated_relationships: int = 0
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    retry_count: int = 0

    @classmethod
    def from_plan(cls, organization_id: int, dry_run: bool, plan: ReconciliationPlan,
                  broad_assignments: Sequence[str] = ()) -> "ReconciliationResult":
        """Planned counts; a live run overwrites the mutation counts with what was applied."""
        removed_app_names = sorted(
            plan.application_names.get(app_id, str(app_id)) for app_id in plan.applications_to_delete
        )
        return cls(
            organization_id=organization_id,
            dry_run=dry_run,
            removed_users=len(plan.users_to_delete),
            removed_relationships=len(plan.relationships_to_delete),
            removed_applications=len(plan.applications_to_delete),
            suspended_users=len(plan.users_with_status(UserStatus.SUSPENDED)),
            archived_users=len(plan.users_with_status(UserStatus.ARCHIVED)),
            hard_deleted_users=len(plan.users_with_status(UserStatus.HARD_DELETED)),
            guest_users=len(plan.users_with_status(UserStatus.GUEST)),
            disabled_users=len(plan.users_with_status(UserStatus.DISABLED)),
            updated_users=len(plan.user_updates),
            added_users=len(plan.new_users),
            added_applications=len(plan.new_applications),
            added_relationships=len(plan.new_relationships),
            updated_relationships=len(plan.scope_updates),
            details={
                "removedUserEmails": sorted(u.email for u in plan.users_to_delete),
                "removedApplicationNames": removed_app_names,
                "relationshipsByApp": plan.removed_relationships_by_app(),
                "suspendedUserEmails": plan.users_with_status(UserStatus.SUSPENDED),
                "archivedUserEmails": plan.users_with_status(UserStatus.ARCHIVED),
                "hardDeletedUserEmails": plan.users_with_status(UserStatus.HARD_DELETED),
                "revokedRelationships": [
                    {"email": email, "application": app} for email, app in plan.revoked
                ],
                "broadAssignments": list(broad_assignments),
                "stalePolicy": plan.policy.value,
            },
        )

    @classmethod
    def failure(cls, organization_id: int, dry_run: bool, error: Exception,
                retry_count: int = 0) -> "ReconciliationResult":
        return cls(
            organization_id=organization_id,
            dry_run=dry_run,
            success=False,
            status=STATUS_FAILED,
            error=error.message if isinstance(error, BaseError) else str(error),
            errors=[error.to_dict() if isinstance(error, BaseError) else format_error_for_response(error)],
            retry_count=retry_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "organizationId": self.organization_id,
            "dryRun": self.dry_run,
            "success": self.success,
            "status": self.status,
            "removedUsers": self.removed_users,
            "removedRelationships": self.removed_relationships,
            "removedApplications": self.removed_applications,
            "suspendedUsers": self.suspended_users,
            "archivedUsers": self.archived_users,
            "hardDeletedUsers": self.hard_deleted_users,
            "guestUsers": self.guest_users,
            "disabledUsers": self.disabled_users,
            "updatedUsers": self.updated_users,
            "addedUsers": self.added_users,
            "addedApplications": self.added_applications,
            "addedRelationships": self.added_relationships,
            "updatedRelationships": self.updated_relationships,
            "details": self.details,
            "error": self.error,
            "errors": self.errors,
            "retryCount": self.retry_count,
        }


ClientFactory = Callable[[ProviderCredentials], DirectoryClient]


class ReconciliationService:
    """
    Runs reconciliation and deduplication for organizations.

    Usage:
        service = ReconciliationService()
        result = await service.run_reconciliation(42, dry_run=True)
    """

    def __init__(
        self,
        db: Optional[DatabaseOperations] = None,
        client_factory: ClientFactory = create_directory_client,
        policy: Optional[StalePolicy] = None,
        org_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        batch_size: Optional[int] = None,
        batch_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db or DatabaseOperations()
        self.client_factory = client_factory
        self.policy = StalePolicy(policy or settings.STALE_RELATIONSHIP_POLICY)
        self.org_delay = settings.ORG_DELAY_SECONDS if org_delay is None else org_delay
        self.max_retries = settings.ORG_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = settings.ORG_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.batch_size = batch_size or settings.DB_BATCH_SIZE
        self.batch_delay = settings.DB_BATCH_DELAY_SECONDS if batch_delay is None else batch_delay
        self._sleep = sleep
        self.merger = ApplicationMerger(self.db)
        self._running: Set[int] = set()
        self._initialized = False

    async def _initialize(self) -> None:
        if not self._initialized:
            await self.db.init_db()
            self._initialized = True

    def is_running(self, organization_id: int) -> bool:
        return organization_id in self._running

    @asynccontextmanager
    async def _exclusive(self, organization_id: int):
        if organization_id in self._running:
            raise RunInProgressError(organization_id)
        self._running.add(organization_id)
        try:
            yield
        finally:
            self._running.discard(organization_id)

    @asynccontextmanager
    async def _correlated(self, organization_id: int):
        previous = get_correlation_id()
        set_correlation_id(generate_correlation_id(f"org{organization_id}"))
        try:
            yield
        finally:
            set_correlation_id(previous)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def run_reconciliation(self, organization_id: int, dry_run: bool = True) -> ReconciliationResult:
        """
        Reconcile one organization, retrying failures other than credential
        and configuration errors up to `max_retries` times.

        Raises:
            RunInProgressError: A live run for this organization is already executing
        """
        async with self._correlated(organization_id):
            if dry_run:
                return await self._run_with_retries(organization_id, dry_run)
            async with self._exclusive(organization_id):
                return await self._run_with_retries(organization_id, dry_run)

    async def _run_with_retries(self, organization_id: int, dry_run: bool) -> ReconciliationResult:
        attempt = 0
        while True:
            try:
                result = await self._reconcile(organization_id, dry_run)
                result.retry_count = attempt
                return result
            except (CredentialError, ConfigurationError) as e:
                e.log(logger)
                return ReconciliationResult.failure(organization_id, dry_run, e, attempt)
            except Exception as e:
                if attempt >= self.max_retries:
                    logger.error(f"Organization {organization_id} failed after {attempt + 1} attempts: {e}")
                    return ReconciliationResult.failure(organization_id, dry_run, e, attempt)
                attempt += 1
                logger.warning(
                    f"Organization {organization_id} attempt {attempt} failed ({e}); "
                    f"retrying in {self.retry_delay}s"
                )
                await self._sleep(self.retry_delay)

    def _unwrap(self, lookup: LookupResult, organization_id: int):
        if isinstance(lookup, Found):
            return lookup.value
        if isinstance(lookup, NotFound):
            if lookup.what.startswith("credentials"):
                raise CredentialError(f"No active {lookup.what}", organization_id=str(organization_id))
            raise ConfigurationError(f"Unknown {lookup.what}")
        if isinstance(lookup, (TransientFailure, FatalFailure)):
            raise lookup.error
        raise TypeError(f"Unexpected lookup result {lookup!r}")

    async def _reconcile(self, organization_id: int, dry_run: bool) -> ReconciliationResult:
        await self._initialize()
        self._unwrap(await self.db.get_organization(organization_id), organization_id)
        credentials = self._unwrap(await self.db.get_active_credentials(organization_id), organization_id)

        mode = "dry-run" if dry_run else "live"
        logger.info(f"Reconciling organization {organization_id} ({credentials.provider}, {mode})")

        client = self.client_factory(credentials)
        async with client:
            snapshot = await client.fetch_snapshot()
        rotated_token = client.token_manager.rotated_refresh_token

        grants = normalize_snapshot(snapshot)
        broad = find_broad_assignments(
            grants,
            snapshot.active_user_count(),
            settings.BROAD_ASSIGNMENT_THRESHOLD,
            settings.BROAD_ASSIGNMENT_MIN_USERS,
        )
        if broad:
            logger.info(f"Broadly assigned applications: {', '.join(broad)}")

        state = await self.db.load_state(organization_id)
        plan = classify_relationships(state, snapshot, grants, self.policy)
        result = ReconciliationResult.from_plan(organization_id, dry_run, plan, broad)

        if dry_run:
            result.success = True
            result.status = STATUS_PLANNED if plan.has_changes else STATUS_NO_CHANGES
            logger.info(
                f"Dry run for organization {organization_id}: {result.removed_relationships} relationships "
                f"to remove, {result.added_relationships} to add, {result.removed_users} users to remove"
            )
            return result

        if rotated_token and credentials.credential_id:
            await self.db.update_refresh_token(credentials.credential_id, rotated_token)
            logger.info(f"Stored rotated refresh token for organization {organization_id}")

        run_id = await self.db.create_run(organization_id, "reconciliation")
        try:
            await self._apply(organization_id, plan, result)
        except Exception as e:
            await self.db.finish_run(run_id, RunStatus.FAILED, self._counts(result), str(e))
            raise

        result.success = True
        if result.errors:
            result.status = STATUS_PARTIAL
        elif plan.has_changes:
            result.status = STATUS_CHANGED
        else:
            result.status = STATUS_NO_CHANGES
        await self.db.finish_run(
            run_id,
            RunStatus.FAILED if result.errors else RunStatus.SUCCESS,
            self._counts(result),
            "; ".join(e.get("message", "") for e in result.errors) or None,
        )
        logger.info(
            f"Organization {organization_id} reconciled ({result.status}): "
            f"-{result.removed_relationships}/+{result.added_relationships} relationships, "
            f"-{result.removed_users}/+{result.added_users} users, "
            f"-{result.removed_applications}/+{result.added_applications} applications"
        )
        return result

    @staticmethod
    def _counts(result: ReconciliationResult) -> Dict[str, Any]:
        data = result.to_dict()
        return {key: data[key] for key in SUMMARY_FIELDS + ("updatedUsers", "updatedRelationships")}

    async def _batches(self, result: ReconciliationResult, items, processor, operation: str) -> BatchReport:
        report = await run_in_batches(items, processor, self.batch_size, self.batch_delay, operation)
        result.errors.extend(e.to_dict() for e in report.errors)
        return report

    async def _apply(self, organization_id: int, plan: ReconciliationPlan, result: ReconciliationResult) -> None:
        """Apply a plan in dependency order; every step is idempotent."""
        report = await self._batches(
            result, plan.relationships_to_delete, self.db.delete_relationships, "delete_relationships")
        result.removed_relationships = report.processed

        async def delete_users(chunk):
            await self.db.delete_users(organization_id, chunk)

        report = await self._batches(
            result, [u.user_id for u in plan.users_to_delete], delete_users, "delete_users")
        result.removed_users = report.processed

        async def update_users(chunk):
            await self.db.update_users(organization_id, chunk)

        report = await self._batches(result, plan.user_updates, update_users, "update_users")
        result.updated_users = report.processed

        added = {"users": 0, "applications": 0, "relationships": 0, "removed_apps": []}

        async def insert_users(chunk):
            added["users"] += await self.db.insert_users(organization_id, chunk)

        async def insert_applications(chunk):
            added["applications"] += await self.db.insert_applications(organization_id, chunk)

        await self._batches(result, plan.new_users, insert_users, "insert_users")
        await self._batches(result, plan.new_applications, insert_applications, "insert_applications")
        result.added_users = added["users"]
        result.added_applications = added["applications"]

        # Resolve ids of rows created above
        state = await self.db.load_state(organization_id)
        user_ids = {u.email: u.id for u in state.users.values()}
        app_ids = {key: rows[0].id for key, rows in state.applications_by_key().items()}
        rows = []
        for rel in plan.new_relationships:
            user_id = user_ids.get(rel.email)
            app_id = rel.application_id or app_ids.get(rel.app_key)
            if user_id is None or app_id is None:
                logger.warning(f"Skipping new relationship {rel.email} -> {rel.app_key}: row was not created")
                continue
            rows.append({"user_id": user_id, "application_id": app_id, "scopes": rel.scopes})

        async def insert_relationships(chunk):
            added["relationships"] += await self.db.insert_relationships(chunk)

        await self._batches(result, rows, insert_relationships, "insert_relationships")
        result.added_relationships = added["relationships"]

        report = await self._batches(
            result, plan.scope_updates, self.db.update_relationship_scopes, "update_relationship_scopes")
        result.updated_relationships = report.processed
        await self._batches(result, plan.relationships_to_touch, self.db.touch_relationships, "touch_relationships")

        async def delete_applications(chunk):
            added["removed_apps"].extend(await self.db.delete_applications_if_empty(chunk))

        await self._batches(result, plan.applications_to_delete, delete_applications, "delete_applications")
        result.removed_applications = len(added["removed_apps"])
        result.details["removedApplicationNames"] = sorted(
            plan.application_names.get(app_id, str(app_id)) for app_id in added["removed_apps"]
        )

        result.details["riskUpdates"] = await self.db.recompute_application_risk(organization_id)

    async def run_for_organizations(self, organization_ids: Optional[Sequence[int]] = None,
                                    dry_run: bool = True) -> Dict[str, Any]:
        """
        Reconcile organizations one after another with a fixed delay between
        them. A failing organization never stops the rest. Live runs are
        followed by deduplication for each organization that succeeded.
        """
        await self._initialize()
        ids = list(organization_ids) if organization_ids else await self.db.list_organization_ids()
        logger.info(f"Starting {'dry-run' if dry_run else 'live'} reconciliation for {len(ids)} organizations")

        results: List[Dict[str, Any]] = []
        for index, organization_id in enumerate(ids):
            try:
                result = await self.run_reconciliation(organization_id, dry_run)
            except BaseError as e:
                e.log(logger)
                result = ReconciliationResult.failure(organization_id, dry_run, e)
            except Exception as e:
                logger.exception(f"Organization {organization_id} failed unexpectedly: {e}")
                result = ReconciliationResult.failure(organization_id, dry_run, e)
            entry = result.to_dict()

            if not dry_run and result.success:
                try:
                    entry["deduplication"] = await self.run_deduplication(organization_id)
                except BaseError as e:
                    e.log(logger)
                    entry["deduplication"] = format_error_for_response(e)
                except Exception as e:
                    logger.exception(f"Deduplication failed for organization {organization_id}: {e}")
                    entry["deduplication"] = format_error_for_response(e)

            results.append(entry)
            if index < len(ids) - 1 and self.org_delay:
                logger.debug(f"Waiting {self.org_delay}s before the next organization")
                await self._sleep(self.org_delay)

        successful = sum(1 for r in results if r["success"])
        summary = {
            "totalOrganizations": len(ids),
            "successfulOrganizations": successful,
            "failedOrganizations": len(ids) - successful,
            "dryRun": dry_run,
        }
        for name in SUMMARY_FIELDS:
            summary[name] = sum(r[name] for r in results)
        logger.info(f"Reconciliation finished: {successful}/{len(ids)} organizations succeeded")
        return {"summary": summary, "results": results}

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    async def run_deduplication(self, organization_id: int) -> Dict[str, Any]:
        """
        Merge duplicate applications of one organization.

        Raises:
            RunInProgressError: A live run for this organization is already executing
            PersistenceError: A merge could not be written
        """
        await self._initialize()
        async with self._correlated(organization_id), self._exclusive(organization_id):
            run_id = await self.db.create_run(organization_id, "deduplication")
            try:
                result = await self.merger.run(organization_id)
            except Exception as e:
                await self.db.finish_run(run_id, RunStatus.FAILED, None, str(e))
                raise
            data = result.to_dict()
            await self.db.finish_run(
                run_id,
                RunStatus.SUCCESS,
                {k: v for k, v in data.items() if k != "details"},
            )
            return data
