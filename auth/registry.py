"""
auth/registry.py -- Per-user project authorization records.

Answers "is user U authorized for project P, and with what ACL / verification
state?" and grants new authorizations.

grant() is idempotent: an existing authorization for the project is left
untouched even when verified / acl_ref differ. Upgrades go through update(),
which is the explicit administrative path.
"""

from __future__ import annotations

from typing import Optional

from auth.store import IdentityStore
from core.errors import NotFoundError
from core.models import ProjectAuthorization, User


class AuthorizationRegistry:
    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    @staticmethod
    def get_authorization(user: User, project_id: str) -> Optional[ProjectAuthorization]:
        """Return the user's authorization for project_id, or None."""
        return user.projects.get(project_id)

    def grant(
        self, user: User, project_id: str, verified: bool = False, acl_ref: Optional[str] = None
    ) -> User:
        """Link user to project if not already linked. Returns the reloaded user.

        The insert is conditional at the database level, so two concurrent
        grants for the same pair still leave exactly one entry.
        """
        if project_id not in user.projects:
            self.store.record_project_authorization(user.id, project_id, verified=verified, acl_ref=acl_ref)
        return self._reload(user)

    def update(
        self,
        user: User,
        project_id: str,
        verified: Optional[bool] = None,
        acl_ref: Optional[str] = None,
    ) -> User:
        """Change verified / acl_ref on an existing authorization.

        Raises NotFoundError if the user holds no authorization for project_id.
        """
        if not self.store.update_project_authorization(user.id, project_id, verified=verified, acl_ref=acl_ref):
            raise NotFoundError("Project does not have authorization")
        return self._reload(user)

    def _reload(self, user: User) -> User:
        fresh = self.store.find_by_id(user.id)
        if fresh is None:
            raise NotFoundError("User not found")
        return fresh
