"""
core/models.py -- Domain dataclasses for the identity provider.

Pattern: Data class (pure data container, zero logic). Stores map rows to these
shapes; the registry, evaluator and orchestrator do the work.

Timestamps are ISO 8601 strings set by the store. deleted_at is the soft-delete
tombstone: a record is "not deleted" exactly when deleted_at is None.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

USER_TYPES = ("person", "company")


@dataclass
class ProjectAuthorization:
    """A user's relationship to one project.

    verified and acl_ref are only ever changed by administrative action, never
    by the user. acl_ref is an Acl id, or a role-table group name when the
    caller authorizes against a static role table.
    """

    project_id: str
    verified: bool = False
    acl_ref: Optional[str] = None


@dataclass
class User:
    """An identity record. Exactly one of person_id / company_id is set, matching type.

    projects is keyed by project id, so "at most one authorization per
    (user, project)" holds by construction.
    """

    email: str
    type: str  # "person" | "company"
    hashed_password: str = ""
    person_id: Optional[str] = None
    company_id: Optional[str] = None
    projects: dict[str, ProjectAuthorization] = field(default_factory=dict)
    id: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    deleted_at: Optional[str] = None


@dataclass
class PersonInfo:
    """Registry data for a person, keyed by a digits-only CPF."""

    tax_id: str
    name: str
    username: str
    birth_date: str  # YYYY-MM-DD
    mother: str = ""
    gender: str = ""
    country: str = "br"
    id: Optional[str] = None
    created_at: str = ""
    deleted_at: Optional[str] = None


@dataclass
class CompanyInfo:
    """Registry data for a company, keyed by a digits-only CNPJ.

    founded_at plays the role birth_date plays for people: registration
    cross-checks it against the caller-supplied date.
    """

    tax_id: str
    username: str
    company_name: str
    founded_at: str  # YYYY-MM-DD
    fantasy_name: str = ""
    legal_nature: str = ""
    responsible: str = ""
    address: dict[str, Any] = field(default_factory=dict)
    country: str = "br"
    id: Optional[str] = None
    created_at: str = ""
    deleted_at: Optional[str] = None


@dataclass
class Project:
    """A client application users can be authorized against."""

    name: str
    site: str
    secret: str
    id: Optional[str] = None
    created_at: str = ""
    deleted_at: Optional[str] = None


@dataclass
class Module:
    """A project feature area. route is the resource pattern it guards (may end in '*')."""

    name: str
    project_id: str
    route: str
    id: Optional[str] = None
    deleted_at: Optional[str] = None


@dataclass
class AclAction:
    """An action an ACL can grant on a module. name is the HTTP method."""

    name: str
    id: Optional[str] = None
    deleted_at: Optional[str] = None


@dataclass
class AclPermission:
    module_id: str
    actions: list[str] = field(default_factory=list)  # AclAction ids


@dataclass
class Acl:
    """Named permission set scoped to a project."""

    name: str
    project_id: str
    permissions: list[AclPermission] = field(default_factory=list)
    id: Optional[str] = None
    created_at: str = ""
    deleted_at: Optional[str] = None


@dataclass
class Permission:
    """Evaluator input: a resource pattern and the methods allowed on it."""

    resource: str
    methods: list[str] = field(default_factory=list)


@dataclass
class Role:
    """One entry of a caller-supplied role table."""

    group: str
    permissions: list[Permission] = field(default_factory=list)
