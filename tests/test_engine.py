"""ReconciliationService against an in-memory database."""

import pytest
from sqlalchemy.exc import OperationalError

from src.shadow_it_sync.db.models import RunStatus
from src.shadow_it_sync.sync.engine import (
    STATUS_CHANGED,
    STATUS_FAILED,
    STATUS_NO_CHANGES,
    STATUS_PARTIAL,
    STATUS_PLANNED,
)
from src.shadow_it_sync.sync.reconciliation import StalePolicy
from src.shadow_it_sync.sync.risk import compute_risk_level
from src.utils.error_handling import (
    CredentialError,
    Found,
    PersistenceError,
    ProviderTransientError,
    RunInProgressError,
)

from tests.conftest import directory_user, grant, snapshot


async def seed_directory(seed):
    """alice and bob on Zoom, bob also on Dropbox."""
    org = await seed.organization()
    alice = await seed.user(org, "alice@example.com")
    bob = await seed.user(org, "bob@example.com")
    zoom = await seed.application(org, "Zoom", ["openid"], owner="it@example.com",
                                  notes="Approved vendor", management_status="Managed")
    dropbox = await seed.application(org, "Dropbox", ["files"])
    await seed.relationship(alice, zoom, ["openid"])
    await seed.relationship(bob, zoom, ["openid"])
    await seed.relationship(bob, dropbox, ["files"])
    return org


def current_directory():
    """bob is suspended; carol is new and granted Notion."""
    return snapshot(
        [directory_user("alice"), directory_user("bob", suspended=True), directory_user("carol")],
        grants=[
            grant("alice", "Zoom", "openid"),
            grant("bob", "Dropbox", "files"),
            grant("carol", "Notion", "Files.ReadWrite.All"),
        ],
    )


async def test_dry_run_reports_plan_without_writing(db, seed, make_service):
    org = await seed_directory(seed)
    before = await db.count_rows(org)
    service = make_service({org: current_directory()}, rotated_refresh_token="rotated")

    result = await service.run_reconciliation(org, dry_run=True)

    assert result.success
    assert result.status == STATUS_PLANNED
    assert result.removed_users == 1
    assert result.suspended_users == 1
    assert result.removed_relationships == 2
    assert result.removed_applications == 1
    assert result.added_users == 1
    assert result.added_applications == 1
    assert result.added_relationships == 1
    assert result.details["suspendedUserEmails"] == ["bob@example.com"]
    assert result.details["removedApplicationNames"] == ["Dropbox"]
    assert result.details["relationshipsByApp"] == {"Dropbox": 1, "Zoom": 1}

    assert await db.count_rows(org) == before
    assert await db.get_run_history(org) == []
    credentials = (await db.get_active_credentials(org)).value
    assert credentials.refresh_token == "refresh-token"


async def test_live_run_applies_plan(db, seed, make_service):
    org = await seed_directory(seed)
    service = make_service({org: current_directory()})

    result = await service.run_reconciliation(org, dry_run=False)

    assert result.success
    assert result.status == STATUS_CHANGED
    assert (result.removed_users, result.removed_relationships, result.removed_applications) == (1, 2, 1)
    assert (result.added_users, result.added_applications, result.added_relationships) == (1, 1, 1)
    assert await db.count_rows(org) == {"users": 2, "applications": 2, "relationships": 2}

    state = await db.load_state(org)
    assert sorted(u.email for u in state.users.values()) == ["alice@example.com", "carol@example.com"]
    apps = {a.name: a for a in state.applications.values()}
    assert set(apps) == {"Zoom", "Notion"}
    assert apps["Notion"].risk_level == "HIGH"
    assert apps["Notion"].user_count == 1
    assert apps["Notion"].all_scopes == {"Files.ReadWrite.All"}
    assert apps["Zoom"].user_count == 1

    runs = await db.get_run_history(org)
    assert len(runs) == 1
    assert runs[0].status is RunStatus.SUCCESS
    assert runs[0].counts["addedUsers"] == 1
    assert runs[0].end_time is not None


async def test_live_run_preserves_annotations(db, seed, make_service):
    org = await seed_directory(seed)
    service = make_service({org: current_directory()})

    await service.run_reconciliation(org, dry_run=False)

    zoom = next(a for a in (await db.load_state(org)).applications.values() if a.name == "Zoom")
    assert zoom.owner == "it@example.com"
    assert zoom.notes == "Approved vendor"
    assert zoom.management_status == "Managed"


async def test_second_live_run_is_a_no_op(db, seed, make_service):
    org = await seed_directory(seed)
    service = make_service({org: current_directory()})

    await service.run_reconciliation(org, dry_run=False)
    counts = await db.count_rows(org)
    second = await service.run_reconciliation(org, dry_run=False)

    assert second.success
    assert second.status == STATUS_NO_CHANGES
    assert second.added_relationships == 0
    assert second.removed_relationships == 0
    assert await db.count_rows(org) == counts


async def test_dry_run_with_nothing_to_do(db, seed, make_service):
    org = await seed.organization()
    service = make_service({org: snapshot([directory_user("alice")])})

    result = await service.run_reconciliation(org)

    assert result.status == STATUS_NO_CHANGES
    assert result.dry_run


async def test_retain_policy_keeps_stale_relationships(db, seed, make_service):
    org = await seed_directory(seed)
    service = make_service({org: current_directory()}, policy=StalePolicy.RETAIN)

    result = await service.run_reconciliation(org, dry_run=False)

    assert result.suspended_users == 1
    assert result.removed_users == 0
    assert result.updated_users == 2
    state = await db.load_state(org)
    bob = state.users_by_email()["bob@example.com"]
    assert bob.suspended
    assert bob.name == "Bob"
    assert {a.name for a in state.applications.values()} == {"Zoom", "Dropbox", "Notion"}


async def test_rotated_refresh_token_is_stored_on_live_runs(db, seed, make_service):
    org = await seed.organization()
    service = make_service({org: snapshot([directory_user("alice")])}, rotated_refresh_token="rotated")

    await service.run_reconciliation(org, dry_run=False)

    lookup = await db.get_active_credentials(org)
    assert isinstance(lookup, Found)
    assert lookup.value.refresh_token == "rotated"


async def test_credential_errors_are_not_retried(db, seed, make_service):
    org = await seed.organization()
    service = make_service({org: CredentialError("refresh token revoked")}, max_retries=3)

    result = await service.run_reconciliation(org)

    assert not result.success
    assert result.status == STATUS_FAILED
    assert result.retry_count == 0
    assert result.error == "refresh token revoked"
    assert service.client_factory_calls == [org]


async def test_missing_credentials_fail_without_calling_provider(db, seed, make_service):
    org = await seed.organization(refresh_token=None)
    service = make_service({})

    result = await service.run_reconciliation(org)

    assert not result.success
    assert "credentials" in result.error
    assert service.client_factory_calls == []


async def test_unknown_organization_fails(db, make_service):
    service = make_service({})
    result = await service.run_reconciliation(404)
    assert not result.success
    assert result.errors[0]["error_type"] == "ConfigurationError"


async def test_transient_errors_are_retried(db, seed, make_service):
    org = await seed.organization()
    outcomes = [ProviderTransientError("503 from provider"), snapshot([directory_user("alice")])]
    service = make_service({org: outcomes}, max_retries=2)

    result = await service.run_reconciliation(org)

    assert result.success
    assert result.retry_count == 1
    assert service.client_factory_calls == [org, org]


async def test_retries_are_bounded(db, seed, make_service):
    org = await seed.organization()
    service = make_service({org: ProviderTransientError("still down")}, max_retries=1)

    result = await service.run_reconciliation(org)

    assert not result.success
    assert result.retry_count == 1
    assert len(service.client_factory_calls) == 2


async def test_failed_batches_make_the_run_partial(db, seed, make_service, monkeypatch):
    org = await seed_directory(seed)
    service = make_service({org: current_directory()})

    async def failing_touch(ids):
        raise PersistenceError("disk full", operation="touch_relationships", batch_size=len(ids))

    monkeypatch.setattr(db, "touch_relationships", failing_touch)
    result = await service.run_reconciliation(org, dry_run=False)

    assert result.success
    assert result.status == STATUS_PARTIAL
    assert result.errors[0]["context"]["operation"] == "touch_relationships"
    assert (await db.get_run_history(org))[0].status is RunStatus.FAILED


async def test_live_runs_are_exclusive_per_organization(db, seed, make_service):
    org = await seed.organization()
    service = make_service({org: snapshot([directory_user("alice")])})
    service._running.add(org)

    with pytest.raises(RunInProgressError):
        await service.run_reconciliation(org, dry_run=False)

    # dry runs never take the lock
    assert (await service.run_reconciliation(org, dry_run=True)).success


async def test_run_for_organizations_continues_after_failure(db, seed, make_service):
    broken = await seed.organization("Broken")
    healthy = await seed.organization("Healthy")
    service = make_service({
        broken: CredentialError("expired"),
        healthy: snapshot([directory_user("alice")], grants=[grant("alice", "Zoom", "openid")]),
    })

    report = await service.run_for_organizations(dry_run=True)

    summary = report["summary"]
    assert summary["totalOrganizations"] == 2
    assert summary["successfulOrganizations"] == 1
    assert summary["failedOrganizations"] == 1
    assert summary["addedRelationships"] == 1
    assert [r["organizationId"] for r in report["results"]] == [broken, healthy]
    assert report["results"][0]["status"] == STATUS_FAILED


async def test_live_batch_run_deduplicates_afterwards(db, seed, make_service):
    org = await seed.organization()
    alice = await seed.user(org, "alice@example.com")
    first = await seed.application(org, "Slack", ["chat:read"])
    second = await seed.application(org, "slack", ["chat:write"])
    await seed.relationship(alice, first, ["chat:read"])
    await seed.relationship(alice, second, ["chat:write"])
    service = make_service({org: snapshot([directory_user("alice")], grants=[grant("alice", "Slack", "chat:read")])})

    report = await service.run_for_organizations([org], dry_run=False)

    entry = report["results"][0]
    assert entry["success"]
    assert entry["deduplication"]["mergedGroups"] == 1
    assert await db.count_rows(org) == {"users": 1, "applications": 1, "relationships": 1}


async def test_database_failure_in_one_organization_does_not_stop_the_batch(db, seed, make_service, monkeypatch):
    first = await seed.organization("First")
    second = await seed.organization("Second")
    service = make_service({
        first: snapshot([directory_user("alice")], grants=[grant("alice", "Zoom", "openid")]),
        second: snapshot([directory_user("bob")], grants=[grant("bob", "Miro", "boards:read")]),
    })
    create_run = db.create_run

    async def locked_for_first_dedup(organization_id, operation, dry_run=False):
        if organization_id == first and operation == "deduplication":
            raise OperationalError("INSERT INTO reconciliation_runs", {}, Exception("database is locked"))
        return await create_run(organization_id, operation, dry_run)

    monkeypatch.setattr(db, "create_run", locked_for_first_dedup)
    report = await service.run_for_organizations(dry_run=False)

    assert service.client_factory_calls == [first, second]
    first_entry, second_entry = report["results"]
    assert first_entry["success"]
    assert first_entry["deduplication"]["error_type"] == "OperationalError"
    assert second_entry["success"]
    assert second_entry["deduplication"]["mergedGroups"] == 0
    assert await db.count_rows(second) == {"users": 1, "applications": 1, "relationships": 1}


async def test_unexpected_reconciliation_error_is_recorded_per_organization(db, seed, make_service, monkeypatch):
    first = await seed.organization("First")
    second = await seed.organization("Second")
    service = make_service({
        first: snapshot([directory_user("alice")]),
        second: snapshot([directory_user("bob")], grants=[grant("bob", "Miro", "boards:read")]),
    }, max_retries=0)
    run_reconciliation = service.run_reconciliation

    async def crash_first(organization_id, dry_run=True):
        if organization_id == first:
            raise RuntimeError("event loop hiccup")
        return await run_reconciliation(organization_id, dry_run)

    monkeypatch.setattr(service, "run_reconciliation", crash_first)
    report = await service.run_for_organizations(dry_run=True)

    assert report["summary"]["failedOrganizations"] == 1
    assert report["summary"]["successfulOrganizations"] == 1
    assert report["results"][0]["errors"][0]["error_type"] == "RuntimeError"
    assert report["results"][1]["addedRelationships"] == 1


async def test_application_fields_follow_removed_scopes(db, seed, make_service):
    org = await seed.organization()
    alice = await seed.user(org, "alice@example.com")
    bob = await seed.user(org, "bob@example.com")
    notion = await seed.application(org, "Notion", ["Files.ReadWrite.All", "openid"])
    await seed.relationship(alice, notion, ["openid"])
    await seed.relationship(bob, notion, ["Files.ReadWrite.All"])
    # bob is gone from the directory
    service = make_service({org: snapshot([directory_user("alice")], grants=[grant("alice", "Notion", "openid")])})

    result = await service.run_reconciliation(org, dry_run=False)

    assert result.hard_deleted_users == 1
    app = (await db.load_state(org)).applications[notion]
    assert app.all_scopes == {"openid"}
    assert app.total_permissions == len(app.all_scopes)
    assert app.risk_level == compute_risk_level(app.all_scopes).level.value == "LOW"
    assert app.user_count == 1


async def test_stored_emails_match_the_directory_case_insensitively(db, seed, make_service):
    org = await seed.organization()
    alice = await seed.user(org, "Alice@Example.com ")
    zoom = await seed.application(org, "Zoom", ["openid"])
    await seed.relationship(alice, zoom, ["openid"])
    service = make_service({org: snapshot([directory_user("alice")], grants=[grant("alice", "Zoom", "openid")])})

    planned = await service.run_reconciliation(org, dry_run=True)

    assert planned.hard_deleted_users == 0
    assert planned.removed_relationships == 0
    assert planned.added_users == 0
    assert planned.added_relationships == 0

    await service.run_reconciliation(org, dry_run=False)

    state = await db.load_state(org)
    assert list(state.users) == [alice]
    assert state.users[alice].email == "alice@example.com"
    assert await db.count_rows(org) == {"users": 1, "applications": 1, "relationships": 1}
