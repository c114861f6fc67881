"""DatabaseOperations: lookups, idempotent mutations and risk fields."""

import pytest

from src.shadow_it_sync.db.models import OrganizationSettings, UserApplication
from src.shadow_it_sync.sync.reconciliation import NewApplication, NewUser, UserUpdate
from src.shadow_it_sync.sync.risk import AIStatus
from src.utils.error_handling import Found, NotFound, PersistenceError


async def test_lookups_distinguish_absence(db, seed):
    org = await seed.organization(provider="microsoft")
    bare = await seed.organization("Bare", refresh_token=None)

    assert isinstance(await db.get_organization(org), Found)
    assert isinstance(await db.get_organization(999), NotFound)

    credentials = await db.get_active_credentials(org)
    assert isinstance(credentials, Found)
    assert credentials.value.provider == "microsoft"
    assert isinstance(await db.get_active_credentials(bare), NotFound)


async def test_relationship_pair_is_unique(db, seed):
    org = await seed.organization()
    user = await seed.user(org, "alice@example.com")
    app = await seed.application(org, "Zoom")
    await seed.relationship(user, app, ["openid"])

    added = await db.insert_relationships([{"user_id": user, "application_id": app, "scopes": {"email"}}])

    assert added == 0
    state = await db.load_state(org)
    assert len(state.relationships) == 1
    assert state.relationships[0].scopes == {"openid", "email"}

    with pytest.raises(PersistenceError):
        async with db.write_session("raw_insert") as session:
            session.add(UserApplication(user_id=user, application_id=app, scopes=[]))


async def test_inserts_skip_existing_rows(db, seed):
    org = await seed.organization()
    await seed.user(org, "alice@example.com")
    await seed.application(org, "Zoom")

    assert await db.insert_users(org, [NewUser("alice@example.com"), NewUser("bob@example.com")]) == 1
    assert await db.insert_applications(org, [NewApplication("zoom", "ZOOM"), NewApplication("miro", "Miro")]) == 1
    assert await db.count_rows(org) == {"users": 2, "applications": 2, "relationships": 0}


async def test_deleting_a_user_cascades_to_relationships(db, seed):
    org = await seed.organization()
    user = await seed.user(org, "alice@example.com")
    app = await seed.application(org, "Zoom")
    await seed.relationship(user, app)

    assert await db.delete_users(org, [user]) == 1
    assert await db.delete_applications_if_empty([app]) == [app]
    assert await db.count_rows(org) == {"users": 0, "applications": 0, "relationships": 0}


async def test_risk_fields_are_only_written_on_change(db, seed):
    org = await seed.organization()
    user = await seed.user(org, "alice@example.com")
    app = await seed.application(org, "Gmail Helper", ["openid"])
    await seed.relationship(user, app, ["openid", "https://mail.google.com/"])

    assert await db.recompute_application_risk(org) == 1
    assert await db.recompute_application_risk(org) == 0

    record = (await db.load_state(org)).applications[app]
    assert record.risk_level == "HIGH"
    assert record.total_permissions == 2
    assert record.user_count == 1


async def test_scoring_config_defaults_and_stored_overrides(db, seed):
    org = await seed.organization()
    assert (await db.get_scoring_config(org)).weights.security_access == 25

    async with db.get_session() as session:
        session.add(OrganizationSettings(
            organization_id=org,
            bucket_weights={"dataPrivacy": 40, "securityAccess": 20, "businessImpact": 20,
                            "aiGovernance": 10, "vendorProfile": 10},
            ai_multipliers={"native": {"aiGovernance": 3.0}},
        ))

    config = await db.get_scoring_config(org)
    assert config.weights.data_privacy == 40
    assert config.ai_multipliers[AIStatus.NATIVE].ai_governance == 3.0


async def test_run_history_newest_first(db, seed):
    org = await seed.organization()
    first = await db.create_run(org, "reconciliation")
    second = await db.create_run(org, "deduplication")

    runs = await db.get_run_history(org)
    assert [r.id for r in runs] == [second, first]


async def test_user_emails_are_normalized_on_insert_and_load(db, seed):
    org = await seed.organization()
    bob = await seed.user(org, "Bob@Example.com")

    added = await db.insert_users(org, [NewUser("bob@example.com"), NewUser(" Carol@Example.com", suspended=True)])

    assert added == 1
    state = await db.load_state(org)
    assert state.users[bob].email == "bob@example.com"
    carol = state.users_by_email()["carol@example.com"]
    assert carol.suspended


async def test_update_users_writes_directory_fields(db, seed):
    org = await seed.organization()
    alice = await seed.user(org, "alice@example.com")

    updated = await db.update_users(org, [
        UserUpdate(alice, "alice@example.com", (("name", "Alice"), ("archived", True), ("user_type", "Guest"))),
    ])

    assert updated == 1
    record = (await db.load_state(org)).users[alice]
    assert (record.name, record.archived, record.user_type) == ("Alice", True, "Guest")


async def test_application_fields_derive_from_one_scope_set(db, seed):
    org = await seed.organization()
    alice = await seed.user(org, "alice@example.com")
    app = await seed.application(org, "Box", ["Files.ReadWrite.All", "openid"])
    await seed.relationship(alice, app, ["openid"])

    await db.recompute_application_risk(org)

    record = (await db.load_state(org)).applications[app]
    assert record.all_scopes == {"openid"}
    assert record.total_permissions == len(record.all_scopes) == 1
    assert record.risk_level == "LOW"


async def test_merge_recompute_keeps_stored_scopes(db, seed):
    org = await seed.organization()
    alice = await seed.user(org, "alice@example.com")
    app = await seed.application(org, "Box", ["Files.ReadWrite.All"])
    await seed.relationship(alice, app, [" openid "])

    await db.recompute_application_risk(org, [app], keep_stored_scopes=True)

    record = (await db.load_state(org)).applications[app]
    assert record.all_scopes == {"Files.ReadWrite.All", "openid"}
    assert record.total_permissions == 2
    assert record.risk_level == "HIGH"


async def test_run_history_write_failures_become_persistence_errors(db):
    with pytest.raises(PersistenceError) as excinfo:
        await db.create_run(999, "reconciliation")
    assert excinfo.value.context["operation"] == "create_run"
