"""Unit tests for auth/registry.py -- per-user project authorizations.

Covers:
- get_authorization returns None for an unlinked project
- grant adds an entry and returns the reloaded user
- grant is a no-op for an existing project, even with different flags
- update changes flags on an existing entry and fails on a missing one
"""

import pytest

from auth.registry import AuthorizationRegistry
from core.errors import NotFoundError
from core.models import PersonInfo, User


@pytest.fixture
def registry(store) -> AuthorizationRegistry:
    return AuthorizationRegistry(store)


@pytest.fixture
def user(store) -> User:
    person_id = store.create_person(
        PersonInfo(tax_id="11144477735", name="Maria da Silva", username="mariasilva_0", birth_date="1990-05-17")
    )
    user_id = store.create_user(User(email="a@x.com", type="person", person_id=person_id), "pw123456")
    return store.find_by_id(user_id)


class TestGrant:
    def test_unlinked_project_has_no_authorization(self, registry, user):
        assert registry.get_authorization(user, "p1") is None

    def test_grant_adds_entry(self, registry, user):
        updated = registry.grant(user, "p1", verified=True, acl_ref="admins")
        authorization = registry.get_authorization(updated, "p1")
        assert authorization is not None
        assert authorization.verified is True
        assert authorization.acl_ref == "admins"

    def test_second_grant_leaves_first_entry(self, registry, user):
        user = registry.grant(user, "p1", verified=False, acl_ref="readers")
        user = registry.grant(user, "p1", verified=True, acl_ref="admins")
        assert list(user.projects) == ["p1"]
        assert user.projects["p1"].verified is False
        assert user.projects["p1"].acl_ref == "readers"

    def test_stale_user_object_still_single_entry(self, registry, user, store):
        """A grant racing on an outdated User falls back to the unique constraint."""
        registry.grant(user, "p1", verified=True)
        registry.grant(user, "p1", verified=False)
        assert list(store.find_by_id(user.id).projects) == ["p1"]
        assert store.find_by_id(user.id).projects["p1"].verified is True


class TestUpdate:
    def test_update_existing(self, registry, user):
        user = registry.grant(user, "p1")
        user = registry.update(user, "p1", verified=True, acl_ref="admins")
        assert user.projects["p1"].verified is True
        assert user.projects["p1"].acl_ref == "admins"

    def test_update_missing_raises(self, registry, user):
        with pytest.raises(NotFoundError, match="Project does not have authorization"):
            registry.update(user, "p1", verified=True)
