"""
Test suite for identity module

Tests the role directory used for claim checks and notification recipients.
"""

import pytest

from docflow.storage import InMemoryStorage
from docflow.audit import AuditTrail, AuditAction
from docflow.identity import Actor, StorageRoleDirectory


@pytest.fixture
def storage():
    """Create in-memory storage for testing"""
    return InMemoryStorage()


@pytest.fixture
def audit_manager(storage):
    return AuditTrail(storage)


@pytest.fixture
def directory(storage, audit_manager):
    users = StorageRoleDirectory(storage, audit_manager)
    users.register_user(Actor(id="alice", full_name="Alice", organization_id="ORG1", roles={"legal"}))
    users.register_user(Actor(id="bob", organization_id="ORG2", roles={"legal"}))
    return users


class TestRoleDirectory:
    """Test role lookups and changes"""

    def test_user_has_role(self, directory):
        assert directory.user_has_role("alice", "legal")
        assert not directory.user_has_role("alice", "admin")
        assert not directory.user_has_role("nobody", "legal")

    def test_grant_and_revoke(self, directory, audit_manager):
        assert directory.grant_role("alice", "admin")
        assert directory.user_has_role("alice", "admin")

        assert directory.revoke_role("alice", "legal")
        assert directory.get_user("alice").roles == {"admin"}
        assert not directory.grant_role("nobody", "admin")

        assert len(audit_manager.get_events_by_action(AuditAction.ROLE_GRANTED)) == 1
        assert len(audit_manager.get_events_by_action(AuditAction.ROLE_REVOKED)) == 1

    def test_users_with_role_scoped_to_organization(self, directory):
        assert [u.id for u in directory.users_with_role("ORG1", "legal")] == ["alice"]
        assert [u.id for u in directory.users_with_role(None, "legal")] == ["alice", "bob"]

    def test_actor_round_trip(self):
        actor = Actor(id="carol", full_name="", email="c@example.com", roles={"b", "a"})

        restored = Actor.from_dict(actor.to_dict())

        assert restored == actor
        assert restored.display_name == "carol"
