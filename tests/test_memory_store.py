from datetime import timedelta

import pytest

from baluster.storage.common import (
    COLLECTION_APPLICATIONS,
    COLLECTION_ORGANIZATIONS,
    COLLECTION_SERVICE_KEYS,
    generate_id,
)
from baluster.storage.errors import ConstraintViolation, StoreError, TransactionFailed
from baluster.storage.memory import MemoryStore
from baluster.storage.models import (
    Application,
    ApplicationAccess,
    AuditAction,
    AuditHistory,
    Organization,
    OrganizationMember,
    ServiceKey,
    User,
    utcnow,
)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def _audit(entity, action=AuditAction.CREATED):
    return AuditHistory(
        id=generate_id(),
        entity_id=entity.id,
        organization_id=entity.organization_id,
        action=action,
        created_by_user_id="u1",
        created_by_github_id="g1",
        created_by_username="octo",
    )


def _app(org_id="org-1", name="mail", **kwargs):
    return Application(id=generate_id(), organization_id=org_id, name=name, **kwargs)


class TestAtomicBatches:
    def test_entity_and_audit_written_together(self, store):
        app = _app()
        store.create_with_audit(COLLECTION_APPLICATIONS, app, _audit(app))
        assert store.get_entity(COLLECTION_APPLICATIONS, "org-1", app.id).name == "mail"
        assert len(store.get_history(COLLECTION_APPLICATIONS, "org-1", app.id)) == 1

    def test_duplicate_create_applies_nothing(self, store):
        app = _app()
        store.create_with_audit(COLLECTION_APPLICATIONS, app, _audit(app))
        second_audit = _audit(app)
        with pytest.raises(ConstraintViolation):
            store.create_with_audit(COLLECTION_APPLICATIONS, app, second_audit)
        assert len(store.get_history(COLLECTION_APPLICATIONS, "org-1", app.id)) == 1

    def test_update_of_missing_entity_writes_no_audit(self, store):
        app = _app()
        with pytest.raises(TransactionFailed):
            store.update_with_audit(COLLECTION_APPLICATIONS, app, _audit(app, AuditAction.UPDATED))
        assert store.get_history(COLLECTION_APPLICATIONS, "org-1", app.id) == []

    def test_delete_of_missing_entity_fails(self, store):
        app = _app()
        with pytest.raises(TransactionFailed):
            store.delete_with_audit(COLLECTION_APPLICATIONS, app, _audit(app, AuditAction.DELETED))

    def test_audit_must_match_entity(self, store):
        app = _app()
        other = _app(org_id="org-2")
        with pytest.raises(TransactionFailed):
            store.create_with_audit(COLLECTION_APPLICATIONS, app, _audit(other))
        assert store.get_entity(COLLECTION_APPLICATIONS, "org-1", app.id) is None

    def test_delete_keeps_history(self, store):
        app = _app()
        store.create_with_audit(COLLECTION_APPLICATIONS, app, _audit(app))
        store.delete_with_audit(COLLECTION_APPLICATIONS, app, _audit(app, AuditAction.DELETED))
        assert store.get_entity(COLLECTION_APPLICATIONS, "org-1", app.id) is None
        actions = [r.action for r in store.get_history(COLLECTION_APPLICATIONS, "org-1", app.id)]
        assert actions == [AuditAction.CREATED, AuditAction.DELETED]


class TestQueries:
    def test_list_newest_first_and_count_excludes_audit(self, store):
        older = _app(name="older", created_at=utcnow() - timedelta(hours=1))
        newer = _app(name="newer")
        for app in (older, newer):
            store.create_with_audit(COLLECTION_APPLICATIONS, app, _audit(app))
        store.update_with_audit(COLLECTION_APPLICATIONS, older, _audit(older, AuditAction.UPDATED))
        assert [a.name for a in store.list_by_organization(COLLECTION_APPLICATIONS, "org-1")] == [
            "newer",
            "older",
        ]
        assert store.count_by_organization(COLLECTION_APPLICATIONS, "org-1") == 2
        assert store.count_by_organization(COLLECTION_APPLICATIONS, "org-2") == 0

    def test_entities_are_partitioned_by_organization(self, store):
        app = _app()
        store.create_with_audit(COLLECTION_APPLICATIONS, app, _audit(app))
        assert store.get_entity(COLLECTION_APPLICATIONS, "org-2", app.id) is None
        assert store.list_by_organization(COLLECTION_APPLICATIONS, "org-2") == []

    def test_returned_entities_are_copies(self, store):
        app = _app(permissions=["read"])
        store.create_with_audit(COLLECTION_APPLICATIONS, app, _audit(app))
        fetched = store.get_entity(COLLECTION_APPLICATIONS, "org-1", app.id)
        fetched.permissions.append("admin")
        assert store.get_entity(COLLECTION_APPLICATIONS, "org-1", app.id).permissions == ["read"]

    def test_hash_lookups(self, store):
        key = ServiceKey(
            id=generate_id(),
            organization_id="org-1",
            name="w",
            token_value="hash-1",
            applications=[ApplicationAccess("a", "mail", ["read"])],
        )
        store.create_with_audit(COLLECTION_SERVICE_KEYS, key, _audit(key))
        assert store.find_service_key_by_hash_in_org("org-1", "hash-1").id == key.id
        assert store.find_service_key_by_hash_in_org("org-2", "hash-1") is None
        assert store.find_service_key_by_hash("hash-1").organization_id == "org-1"
        assert store.find_service_key_by_hash("hash-2") is None
        store.delete_with_audit(COLLECTION_SERVICE_KEYS, key, _audit(key, AuditAction.DELETED))
        assert store.find_service_key_by_hash("hash-1") is None


class TestLegacyDocuments:
    def test_missing_discriminator_reads_as_primary_entity(self, store):
        store.collections[COLLECTION_SERVICE_KEYS]["org-1"] = {
            "legacy-key": {
                "id": "legacy-key",
                "partition_key": "org-1",
                "organization_id": "org-1",
                "name": "old",
                "token_value": "legacy-hash",
                "applications": [
                    {"application_id": "a", "application_name": "mail", "permissions": ["read"]}
                ],
                "created_at": "2023-01-01T00:00:00Z",
                "updated_at": "2023-01-01T00:00:00Z",
            }
        }
        store._rebuild_index(COLLECTION_SERVICE_KEYS)
        key = store.find_service_key_by_hash_in_org("org-1", "legacy-hash")
        assert key.name == "old"
        assert key.expires_at is None
        assert key.applications[0].permissions == ["read"]
        assert store.count_by_organization(COLLECTION_SERVICE_KEYS, "org-1") == 1

    def test_malformed_document_raises_store_error(self, store):
        store.collections[COLLECTION_APPLICATIONS]["org-1"] = {
            "bad": {"id": "bad", "partition_key": "org-1", "created_at": "not-a-date"}
        }
        with pytest.raises(StoreError):
            store.get_entity(COLLECTION_APPLICATIONS, "org-1", "bad")


class TestMembership:
    def test_join_record_membership(self, store):
        org = Organization(id="org-1", name="Acme")
        store.create_organization_with_membership(org, OrganizationMember.new("org-1", "u1"))
        assert store.is_organization_member("org-1", "u1") is True
        assert store.is_organization_member("org-1", "u2") is False
        assert store.is_organization_member("org-unknown", "u1") is False

    def test_legacy_member_list_still_grants_membership(self, store):
        org = Organization(id="org-1", name="Acme", member_ids=["legacy-user"])
        store.create_organization_with_membership(org, OrganizationMember.new("org-1", "u1"))
        assert store.is_organization_member("org-1", "legacy-user") is True
        assert [o.id for o in store.list_organizations_for_member("legacy-user")] == ["org-1"]
        assert {m.user_id for m in store.list_members("org-1")} == {"u1", "legacy-user"}

    def test_membership_must_target_new_org(self, store):
        org = Organization(id="org-1", name="Acme")
        with pytest.raises(TransactionFailed):
            store.create_organization_with_membership(org, OrganizationMember.new("org-2", "u1"))
        assert store.get_organization("org-1") is None

    def test_organizations_listed_by_name_without_duplicates(self, store):
        for org_id, name in (("o-b", "Beta"), ("o-a", "Alpha")):
            org = Organization(id=org_id, name=name, member_ids=["u1"])
            store.create_organization_with_membership(org, OrganizationMember.new(org_id, "u1"))
        assert [o.name for o in store.list_organizations_for_member("u1")] == ["Alpha", "Beta"]

    def test_add_and_remove_member(self, store):
        org = Organization(id="org-1", name="Acme", member_ids=["u2"])
        store.create_organization_with_membership(org, OrganizationMember.new("org-1", "u1"))
        store.add_member("org-1", "u3")
        assert store.is_organization_member("org-1", "u3") is True
        assert store.remove_member("org-1", "u2") is True
        assert store.is_organization_member("org-1", "u2") is False
        assert store.remove_member("org-1", "nobody") is False
        with pytest.raises(TransactionFailed):
            store.add_member("org-missing", "u1")


class TestUsers:
    def test_lookup_by_github_id_and_id(self, store):
        user = store.upsert_user(User(id="u1", github_id="gh-1", username="octo"))
        assert store.get_user_by_github_id("gh-1").id == "u1"
        assert store.get_user_by_id("u1", "gh-1").username == "octo"
        # Empty hint falls back to a scan across partitions
        assert store.get_user_by_id("u1").github_id == "gh-1"
        assert store.get_user_by_id("u1", "gh-other") is None
        store.delete_user(user)
        assert store.get_user_by_github_id("gh-1") is None


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path), persist=True)
        app = _app()
        first.create_with_audit(COLLECTION_APPLICATIONS, app, _audit(app))
        org = Organization(id="org-1", name="Acme")
        first.create_organization_with_membership(org, OrganizationMember.new("org-1", "u1"))

        second = MemoryStore(fs_root=str(tmp_path), persist=True)
        assert second.get_entity(COLLECTION_APPLICATIONS, "org-1", app.id).name == "mail"
        assert second.is_organization_member("org-1", "u1") is True
        assert (tmp_path / "state" / "memory_store.json").exists()
        assert COLLECTION_ORGANIZATIONS in second.collections

    def test_corrupt_state_file_raises(self, tmp_path):
        state_dir = tmp_path / "state"
        state_dir.mkdir()
        (state_dir / "memory_store.json").write_text("{not json")
        with pytest.raises(StoreError):
            MemoryStore(fs_root=str(tmp_path), persist=True)
